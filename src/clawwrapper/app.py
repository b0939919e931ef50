"""ClawWrapper FastAPI application."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import PlainTextResponse

from . import __version__
from .errors import WrapperError
from .routes import setup_router
from .service import get_wrapper_service, start_wrapper_service, stop_wrapper_service


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    # Legacy config migration + boot-time gateway start when already configured.
    await start_wrapper_service()
    try:
        yield
    finally:
        await stop_wrapper_service()


app = FastAPI(
    title="ClawWrapper",
    description="Supervising reverse proxy for the OpenClaw gateway (setup + backup/restore).",
    version=__version__,
    lifespan=_lifespan,
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)


@app.exception_handler(WrapperError)
async def _wrapper_error_handler(_request: Request, exc: WrapperError):
    headers = None
    if exc.status_code == 401:
        headers = get_wrapper_service().auth_policy.challenge_headers()
    return PlainTextResponse(f"{exc}\n", status_code=exc.status_code, headers=headers)


@app.get("/healthz")
async def healthz():
    """Public health check. Never includes secrets."""
    svc = get_wrapper_service()
    configured = svc.store.exists()
    reachable = await svc.probe.probe_once() if configured else False
    sup = svc.supervisor
    return {
        "ok": True,
        "wrapper": {
            "configured": configured,
            "stateDir": str(svc.config.state_dir),
            "workspaceDir": str(svc.config.workspace_dir),
        },
        "gateway": {
            "target": svc.config.gateway.base_url,
            "state": sup.state.value,
            "reachable": reachable,
            "lastError": sup.last_error,
            "lastExit": sup.last_exit,
            "lastDoctorAt": sup.snapshot()["last_doctor_at"],
        },
    }


app.include_router(setup_router)


# Everything else is tunneled to the gateway; registered last so admin routes win.
@app.api_route(
    "/{path:path}",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"],
    include_in_schema=False,
)
async def proxy_http(request: Request, path: str):
    del path
    return await get_wrapper_service().router.handle_http(request)


@app.websocket("/{path:path}")
async def proxy_websocket(websocket: WebSocket, path: str):
    del path
    await get_wrapper_service().router.handle_websocket(websocket)
