from .setup import router as setup_router

__all__ = ["setup_router"]
