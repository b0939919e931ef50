from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from clawwrapper.errors import ProcessNotReadyError
from clawwrapper.service import build_wrapper_service

from fakes import GATEWAY_TOKEN, FakeProbe, FakeSpawner, make_config, mark_configured, patch_backend_cli


@pytest.mark.basic
def test_start_failure_collects_redacted_doctor_output(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    calls = patch_backend_cli(monkeypatch, b"doctor: gateway token sk-secretsecretsecret rejected\n", returncode=1)
    cfg = make_config(tmp_path)
    mark_configured(cfg)
    svc = build_wrapper_service(cfg, gateway_token=GATEWAY_TOKEN, spawn=FakeSpawner(), probe=FakeProbe(ready=False))

    async def _run() -> None:
        with pytest.raises(ProcessNotReadyError):
            await svc.supervisor.ensure_running()
        for _ in range(100):
            if svc.supervisor.last_doctor_output is not None:
                break
            await asyncio.sleep(0.01)
        await svc.supervisor.shutdown()
        await svc.router.aclose()

    asyncio.run(_run())

    out = svc.supervisor.last_doctor_output
    assert out is not None
    assert "doctor: gateway token" in out
    assert "sk-secretsecretsecret" not in out
    assert calls[-1][-1] == "doctor"
