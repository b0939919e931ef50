from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def _env(name: str, fallback: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name)
    if v is not None and str(v).strip():
        return str(v).strip()
    if fallback:
        v2 = os.getenv(fallback)
        if v2 is not None and str(v2).strip():
            return str(v2).strip()
    return None


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return int(default)
    try:
        return int(raw)
    except Exception:
        logger.warning("Ignoring invalid integer for %s: %r", name, raw)
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return float(default)
    try:
        return float(raw)
    except Exception:
        logger.warning("Ignoring invalid number for %s: %r", name, raw)
        return float(default)


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name)
    if raw is None:
        return bool(default)
    if raw.lower() in _TRUTHY:
        return True
    if raw.lower() in _FALSY:
        return False
    return bool(default)


@dataclass(frozen=True)
class GatewayEndpoint:
    """Internal address the backend gateway listens on (loopback only)."""

    host: str
    port: int

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def ws_base_url(self) -> str:
        return f"ws://{self.host}:{self.port}"


@dataclass(frozen=True)
class WrapperConfig:
    public_port: int
    state_dir: Path
    workspace_dir: Path
    data_root: Path
    config_path_override: Optional[Path]
    setup_password: Optional[str]
    gateway: GatewayEndpoint
    backend_node: str
    backend_entry: str

    import_max_bytes: int = 250 * 1024 * 1024
    config_max_chars: int = 500_000
    ready_timeout_s: float = 20.0
    ready_interval_s: float = 0.25
    stop_grace_s: float = 0.75
    kill_after_grace: bool = True
    diagnostics_cooldown_s: float = 300.0
    command_timeout_s: float = 120.0

    @classmethod
    def from_env(cls) -> "WrapperConfig":
        # Some platforms inject PORT=3000; the public port override wins.
        public_port = _env_int("OPENCLAW_PUBLIC_PORT", _env_int("PORT", 8080))

        state_raw = _env("OPENCLAW_STATE_DIR")
        state_dir = Path(state_raw).expanduser() if state_raw else Path.home() / ".openclaw"
        workspace_raw = _env("OPENCLAW_WORKSPACE_DIR")
        workspace_dir = Path(workspace_raw).expanduser() if workspace_raw else state_dir / "workspace"

        override_raw = _env("OPENCLAW_CONFIG_PATH")
        override = Path(override_raw).expanduser() if override_raw else None

        gateway = GatewayEndpoint(
            host=_env("INTERNAL_GATEWAY_HOST") or "127.0.0.1",
            port=_env_int("INTERNAL_GATEWAY_PORT", 18789),
        )

        return cls(
            public_port=public_port,
            state_dir=state_dir.resolve(),
            workspace_dir=workspace_dir.resolve(),
            data_root=Path(_env("CLAWWRAPPER_DATA_ROOT") or "/data").expanduser().resolve(),
            config_path_override=override.resolve() if override is not None else None,
            setup_password=_env("SETUP_PASSWORD"),
            gateway=gateway,
            backend_node=_env("OPENCLAW_NODE") or "node",
            backend_entry=_env("OPENCLAW_ENTRY") or "/openclaw/dist/entry.js",
            import_max_bytes=_env_int("CLAWWRAPPER_IMPORT_MAX_BYTES", 250 * 1024 * 1024),
            config_max_chars=_env_int("CLAWWRAPPER_CONFIG_MAX_CHARS", 500_000),
            ready_timeout_s=_env_float("CLAWWRAPPER_READY_TIMEOUT_S", 20.0),
            ready_interval_s=_env_float("CLAWWRAPPER_READY_INTERVAL_S", 0.25),
            stop_grace_s=_env_float("CLAWWRAPPER_STOP_GRACE_S", 0.75),
            kill_after_grace=_env_bool("CLAWWRAPPER_KILL_AFTER_GRACE", True),
            diagnostics_cooldown_s=_env_float("CLAWWRAPPER_DIAGNOSTICS_COOLDOWN_S", 300.0),
            command_timeout_s=_env_float("CLAWWRAPPER_COMMAND_TIMEOUT_S", 120.0),
        )

    @property
    def token_path(self) -> Path:
        return self.state_dir / "gateway.token"

    def backend_argv(self, *args: str) -> list[str]:
        """Run the built CLI entry directly (avoids PATH/global-install mismatches)."""
        return [self.backend_node, self.backend_entry, *args]

    def backend_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["OPENCLAW_STATE_DIR"] = str(self.state_dir)
        env["OPENCLAW_WORKSPACE_DIR"] = str(self.workspace_dir)
        return env


def resolve_gateway_token(cfg: WrapperConfig) -> str:
    """Return a gateway token that is stable across restarts.

    Order: `OPENCLAW_GATEWAY_TOKEN`, then `<state_dir>/gateway.token`, else a
    freshly generated token persisted there (mode 0600, best-effort).
    """
    env_tok = _env("OPENCLAW_GATEWAY_TOKEN")
    if env_tok:
        return env_tok

    path = cfg.token_path
    try:
        existing = path.read_text(encoding="utf-8").strip()
        if existing:
            return existing
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not read %s: %s", path, e)

    generated = secrets.token_hex(32)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(generated)
    except OSError as e:
        logger.warning("Could not persist gateway token to %s: %s", path, e)
    return generated
