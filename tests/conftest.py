from __future__ import annotations

from pathlib import Path

import pytest


_ISOLATED_ENV = (
    "PORT",
    "OPENCLAW_PUBLIC_PORT",
    "OPENCLAW_CONFIG_PATH",
    "OPENCLAW_GATEWAY_TOKEN",
    "OPENCLAW_NODE",
    "OPENCLAW_ENTRY",
    "INTERNAL_GATEWAY_HOST",
    "INTERNAL_GATEWAY_PORT",
    "SETUP_PASSWORD",
    "CLAWWRAPPER_IMPORT_MAX_BYTES",
    "CLAWWRAPPER_CONFIG_MAX_CHARS",
    "CLAWWRAPPER_READY_TIMEOUT_S",
    "CLAWWRAPPER_READY_INTERVAL_S",
    "CLAWWRAPPER_STOP_GRACE_S",
    "CLAWWRAPPER_KILL_AFTER_GRACE",
    "CLAWWRAPPER_DIAGNOSTICS_COOLDOWN_S",
    "CLAWWRAPPER_COMMAND_TIMEOUT_S",
)


@pytest.fixture(autouse=True)
def _isolate_wrapper_env(monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory) -> None:
    # Never touch a developer's real ~/.openclaw or /data volume from tests.
    for name in _ISOLATED_ENV:
        monkeypatch.delenv(name, raising=False)

    base = Path(str(tmp_path_factory.mktemp("clawwrapper-test-env")))
    data_root = base / "data"
    (data_root / ".openclaw").mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("CLAWWRAPPER_DATA_ROOT", str(data_root))
    monkeypatch.setenv("OPENCLAW_STATE_DIR", str(data_root / ".openclaw"))
    monkeypatch.setenv("OPENCLAW_WORKSPACE_DIR", str(data_root / "workspace"))
    monkeypatch.setenv("OPENCLAW_ENTRY", str(base / "missing-entry.js"))


@pytest.fixture(autouse=True)
def _reset_wrapper_service():
    yield
    import clawwrapper.service as service_mod

    service_mod._service = None
    service_mod._boot_task = None
