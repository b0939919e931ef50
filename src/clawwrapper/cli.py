from __future__ import annotations

import argparse
import copy
import logging
import os
import sys


def _stderr(line: str) -> None:
    print(str(line), file=sys.stderr)


def _configure_console_logging(level: int = logging.INFO) -> None:
    """Best-effort console logging config shared with uvicorn's log format."""
    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    datefmt = "%H:%M:%S"
    formatter = logging.Formatter(fmt, datefmt=datefmt)
    root = logging.getLogger()
    if root.handlers:
        for h in list(root.handlers):
            h.setFormatter(formatter)
        root.setLevel(int(level))
        return
    logging.basicConfig(level=int(level), format=fmt, datefmt=datefmt)


def _build_uvicorn_log_config(*, uvicorn) -> dict:
    """Return a uvicorn log_config dict matching the console logging format."""
    base = getattr(getattr(uvicorn, "config", None), "LOGGING_CONFIG", None)
    if not isinstance(base, dict):
        return {}
    log_config = copy.deepcopy(base)

    datefmt = "%H:%M:%S"
    default_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    access_fmt = '%(asctime)s [%(levelname)s] %(name)s: %(client_addr)s - "%(request_line)s" %(status_code)s'

    fmts = log_config.setdefault("formatters", {})
    fmts["default"] = {"()": "logging.Formatter", "fmt": default_fmt, "datefmt": datefmt}
    # Access records carry client_addr/request_line/status_code; only uvicorn's formatter provides them.
    fmts["access"] = {"()": "uvicorn.logging.AccessFormatter", "fmt": access_fmt, "datefmt": datefmt, "use_colors": False}
    return log_config


def _is_public_bind_host(host: str) -> bool:
    h = str(host or "").strip().lower()
    return h in {"0.0.0.0", "::"}


def _is_weak_password(password: str) -> bool:
    p = str(password or "").strip()
    if not p:
        return True
    if p.lower() in {"password", "changeme", "admin", "setup", "openclaw", "root", "secret"}:
        return True
    return len(p) < 12


def main(argv: list[str] | None = None) -> None:
    _configure_console_logging()
    parser = argparse.ArgumentParser(prog="clawwrapper", description="ClawWrapper (supervising proxy for the OpenClaw gateway)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    serve = sub.add_parser("serve", help="Run the wrapper HTTP/WebSocket server")
    serve.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    serve.add_argument(
        "--port",
        type=int,
        default=None,
        help="Bind port (default: OPENCLAW_PUBLIC_PORT, PORT, or 8080)",
    )
    serve.add_argument("--reload", action="store_true", help="Enable auto-reload (dev only)")

    args = parser.parse_args(argv)

    if args.cmd == "serve":
        from .config import WrapperConfig

        cfg = WrapperConfig.from_env()
        port = int(args.port) if args.port is not None else cfg.public_port

        # Startup self-checks: the admin surface is unusable without a password.
        if not cfg.setup_password:
            _stderr("[WARN] SETUP_PASSWORD is not set. /setup will refuse every request until it is.")
        elif _is_weak_password(cfg.setup_password) and _is_public_bind_host(str(args.host)):
            _stderr(
                "[WARN] SETUP_PASSWORD looks weak while binding to a non-loopback host. "
                "Use a long random value (>=12 chars)."
            )

        try:
            import uvicorn
        except Exception as e:
            raise SystemExit(
                "ClawWrapper HTTP server dependencies are missing.\n"
                "Install with: `pip install clawwrapper`\n"
                f"(import failed: {e})"
            )

        run_kwargs: dict[str, object] = {
            "host": str(args.host),
            "port": port,
            "reload": bool(args.reload),
        }
        log_config = _build_uvicorn_log_config(uvicorn=uvicorn)
        if log_config:
            run_kwargs["log_config"] = log_config

        # Keep the public port visible to the app's startup log when overridden on the CLI.
        os.environ["OPENCLAW_PUBLIC_PORT"] = str(port)
        uvicorn.run("clawwrapper.app:app", **run_kwargs)
        return

    raise SystemExit(f"Unknown command: {args.cmd}")


if __name__ == "__main__":  # pragma: no cover
    main()
