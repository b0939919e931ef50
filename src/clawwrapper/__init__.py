"""clawwrapper: supervising reverse proxy for a CLI-only gateway backend."""

__version__ = "0.1.0"
