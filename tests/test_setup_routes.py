from __future__ import annotations

import io
import tarfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

import clawwrapper.console as console

from fakes import GATEWAY_TOKEN, SETUP_PASSWORD, install_service, mark_configured, patch_backend_cli


AUTH = ("admin", SETUP_PASSWORD)


@pytest.fixture(autouse=True)
def _no_backend_cli(monkeypatch: pytest.MonkeyPatch) -> None:
    patch_backend_cli(monkeypatch, b"OpenClaw 2026.1.0\n")


@pytest.mark.basic
def test_setup_healthz_is_public(tmp_path: Path) -> None:
    install_service(tmp_path)
    from clawwrapper.app import app

    with TestClient(app) as client:
        r = client.get("/setup/healthz")
        assert r.status_code == 200
        assert r.json() == {"ok": True}


@pytest.mark.basic
def test_setup_requires_basic_auth(tmp_path: Path) -> None:
    install_service(tmp_path)
    from clawwrapper.app import app

    with TestClient(app) as client:
        r = client.get("/setup/api/status")
        assert r.status_code == 401
        assert r.headers["www-authenticate"] == 'Basic realm="OpenClaw Setup"'
        assert r.text.strip() == "Auth required"

        r2 = client.get("/setup/api/status", auth=("admin", "wrong-password"))
        assert r2.status_code == 401
        assert r2.text.strip() == "Invalid password"

        r3 = client.get("/setup", auth=AUTH)
        assert r3.status_code == 200
        assert "openclaw.devices.approve" in r3.text


@pytest.mark.basic
def test_setup_errors_when_password_unset(tmp_path: Path) -> None:
    install_service(tmp_path, setup_password=None)
    from clawwrapper.app import app

    with TestClient(app) as client:
        r = client.get("/setup/api/status", auth=AUTH)
        assert r.status_code == 500
        assert "SETUP_PASSWORD is not set" in r.text


@pytest.mark.basic
def test_status_and_debug_never_leak_secrets(tmp_path: Path) -> None:
    svc, _ = install_service(tmp_path)
    mark_configured(svc.config)
    from clawwrapper.app import app

    with TestClient(app) as client:
        r = client.get("/setup/api/status", auth=AUTH)
        assert r.status_code == 200, r.text
        body = r.json()
        assert body["configured"] is True
        assert body["gatewayTarget"] == "http://127.0.0.1:18789"
        assert body["openclawVersion"] == "OpenClaw 2026.1.0"

        r2 = client.get("/setup/api/debug", auth=AUTH)
        assert r2.status_code == 200, r2.text
        debug = r2.json()
        assert debug["wrapper"]["gatewayTokenFromEnv"] is False
        assert debug["wrapper"]["configPath"] == str(svc.config.state_dir / "openclaw.json")

        for text in (r.text, r2.text):
            assert GATEWAY_TOKEN not in text
            assert SETUP_PASSWORD not in text


@pytest.mark.basic
def test_console_run_rejects_unknown_and_invalid(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    install_service(tmp_path)

    async def _boom(*args, **kwargs):
        raise AssertionError("subprocess must not be spawned")

    monkeypatch.setattr(console.asyncio, "create_subprocess_exec", _boom)
    from clawwrapper.app import app

    with TestClient(app) as client:
        r = client.post("/setup/api/console/run", json={"cmd": "bash", "arg": "-c id"}, auth=AUTH)
        assert r.status_code == 400
        assert r.json() == {"ok": False, "error": "Command not allowed"}

        for bad in ["abc;id", "a|b", "a b"]:
            r2 = client.post("/setup/api/console/run", json={"cmd": "openclaw.devices.approve", "arg": bad}, auth=AUTH)
            assert r2.status_code == 400
            assert r2.json()["ok"] is False

        r3 = client.post("/setup/api/console/run", json={"cmd": "gateway.stop"}, auth=AUTH)
        assert r3.status_code == 200
        assert r3.json() == {"ok": True, "output": "Gateway stopped (wrapper-managed).\n"}


@pytest.mark.basic
def test_console_run_reports_start_failure_when_unconfigured(tmp_path: Path) -> None:
    _, spawner = install_service(tmp_path)
    from clawwrapper.app import app

    with TestClient(app) as client:
        r = client.post("/setup/api/console/run", json={"cmd": "gateway.start"}, auth=AUTH)
        assert r.status_code == 200
        body = r.json()
        assert body["ok"] is False
        assert body["output"].startswith("Gateway not started:")
    assert spawner.calls == []


@pytest.mark.basic
def test_devices_pending_extracts_request_ids(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    install_service(tmp_path)
    calls = patch_backend_cli(monkeypatch, b"Pending:\n  requestId=abc123def  (sk-secretsecretsecret)\n")
    from clawwrapper.app import app

    with TestClient(app) as client:
        r = client.get("/setup/api/devices/pending", auth=AUTH)
        assert r.status_code == 200
        body = r.json()
        assert body["requestIds"] == ["abc123def"]
        assert "sk-secretsecretsecret" not in body["output"]
    assert calls[-1][-2:] == ["devices", "list"]


@pytest.mark.basic
def test_device_and_pairing_approve_reject_bad_values_without_subprocess(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    install_service(tmp_path)

    async def _boom(*args, **kwargs):
        raise AssertionError("subprocess must not be spawned")

    monkeypatch.setattr(console.asyncio, "create_subprocess_exec", _boom)
    from clawwrapper.app import app

    with TestClient(app) as client:
        r = client.post("/setup/api/devices/approve", json={}, auth=AUTH)
        assert r.status_code == 400
        assert r.json() == {"ok": False, "error": "Missing device request ID"}

        for bad in ["abc;id", "../x", "a b", "$(id)"]:
            r2 = client.post("/setup/api/devices/approve", json={"requestId": bad}, auth=AUTH)
            assert r2.status_code == 400
            assert r2.json() == {"ok": False, "error": "Invalid device request ID"}

        r3 = client.post("/setup/api/pairing/approve", json={"channel": "telegram"}, auth=AUTH)
        assert r3.status_code == 400
        assert r3.json()["error"] == "Missing pairing code"

        r4 = client.post("/setup/api/pairing/approve", json={"channel": "tele gram", "code": "ABC123"}, auth=AUTH)
        assert r4.status_code == 400
        assert r4.json()["error"] == "Invalid channel"

        r5 = client.post("/setup/api/pairing/approve", json={"channel": "telegram", "code": "1;rm -rf /"}, auth=AUTH)
        assert r5.status_code == 400
        assert r5.json()["error"] == "Invalid pairing code"

        r6 = client.post("/setup/api/devices/approve", json={"requestId": "abc"}, auth=("admin", "wrong"))
        assert r6.status_code == 401


@pytest.mark.basic
def test_device_and_pairing_approve_run_fixed_argv(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    install_service(tmp_path)
    calls = patch_backend_cli(monkeypatch, b"approved (token sk-secretsecretsecret)\n")
    from clawwrapper.app import app

    with TestClient(app) as client:
        r = client.post("/setup/api/devices/approve", json={"requestId": "req_123"}, auth=AUTH)
        assert r.status_code == 200
        assert r.json()["ok"] is True
        assert "sk-secretsecretsecret" not in r.json()["output"]

        r2 = client.post("/setup/api/pairing/approve", json={"channel": "telegram", "code": "ABC-123"}, auth=AUTH)
        assert r2.status_code == 200
        assert "sk-secretsecretsecret" not in r2.json()["output"]

    assert calls[-2][-3:] == ["devices", "approve", "req_123"]
    assert calls[-1][-4:] == ["pairing", "approve", "telegram", "ABC-123"]


@pytest.mark.basic
def test_pairing_approve_failure_is_reported_as_server_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    install_service(tmp_path)
    patch_backend_cli(monkeypatch, b"no such pairing code\n", returncode=1)
    from clawwrapper.app import app

    with TestClient(app) as client:
        r = client.post("/setup/api/pairing/approve", json={"channel": "telegram", "code": "ABC123"}, auth=AUTH)
        assert r.status_code == 500
        assert r.json() == {"ok": False, "output": "no such pairing code\n"}


@pytest.mark.basic
def test_config_raw_write_backs_up_and_restarts(tmp_path: Path) -> None:
    svc, spawner = install_service(tmp_path)
    from clawwrapper.app import app

    with TestClient(app) as client:
        r = client.get("/setup/api/config/raw", auth=AUTH)
        assert r.status_code == 200
        assert r.json()["exists"] is False
        assert r.json()["content"] == ""

        r2 = client.post("/setup/api/config/raw", json={"content": '{"v": 1}'}, auth=AUTH)
        assert r2.status_code == 200, r2.text
        assert r2.json()["ok"] is True
        assert r2.json()["restarted"] is True

        r3 = client.post("/setup/api/config/raw", json={"content": '{"v": 2}'}, auth=AUTH)
        assert r3.status_code == 200

        r4 = client.get("/setup/api/config/raw", auth=AUTH)
        assert r4.json()["content"] == '{"v": 2}'
        assert r4.json()["path"] == str(svc.config.state_dir / "openclaw.json")

    backups = svc.store.backups()
    assert len(backups) == 1
    assert backups[0].read_text(encoding="utf-8") == '{"v": 1}'
    assert len(spawner.calls) == 2


@pytest.mark.basic
def test_config_raw_write_enforces_size_ceiling(tmp_path: Path) -> None:
    svc, _ = install_service(tmp_path, config_max_chars=16)
    from clawwrapper.app import app

    with TestClient(app) as client:
        r = client.post("/setup/api/config/raw", json={"content": "x" * 17}, auth=AUTH)
        assert r.status_code == 413
        assert r.json()["ok"] is False
    assert svc.store.exists() is False


@pytest.mark.basic
def test_reset_deletes_config_and_stops_gateway(tmp_path: Path) -> None:
    svc, _ = install_service(tmp_path)
    mark_configured(svc.config)
    from clawwrapper.app import app

    with TestClient(app) as client:
        assert client.get("/healthz").json()["wrapper"]["configured"] is True
        r = client.post("/setup/api/reset", auth=AUTH)
        assert r.status_code == 200
        assert r.text.startswith("OK - deleted config file")
        assert svc.store.exists() is False
        assert svc.supervisor.current is None

        r2 = client.get("/", follow_redirects=False)
        assert r2.status_code == 302


@pytest.mark.basic
def test_export_streams_gzip_archive(tmp_path: Path) -> None:
    svc, _ = install_service(tmp_path)
    mark_configured(svc.config, '{"exported": true}')
    from clawwrapper.app import app

    with TestClient(app) as client:
        r = client.get("/setup/export", auth=AUTH)
        assert r.status_code == 200
        assert r.headers["content-type"] == "application/gzip"
        assert 'filename="openclaw-backup-' in r.headers["content-disposition"]

    with tarfile.open(fileobj=io.BytesIO(r.content), mode="r:gz") as tar:
        member = tar.extractfile(".openclaw/openclaw.json")
        assert member is not None
        assert member.read() == b'{"exported": true}'


@pytest.mark.basic
def test_import_rejects_declared_oversize_payload(tmp_path: Path) -> None:
    install_service(tmp_path)
    from clawwrapper.app import app

    with TestClient(app) as client:
        r = client.post(
            "/setup/import",
            content=b"x",
            headers={"content-type": "application/gzip", "content-length": str(300 * 1024 * 1024)},
            auth=AUTH,
        )
        assert r.status_code == 413
        assert "Payload too large" in r.text


@pytest.mark.basic
def test_import_rejects_streamed_oversize_payload(tmp_path: Path) -> None:
    install_service(tmp_path, import_max_bytes=32)
    from clawwrapper.app import app

    with TestClient(app) as client:
        r = client.post("/setup/import", content=b"x" * 100, auth=AUTH)
        assert r.status_code == 413


@pytest.mark.basic
def test_import_rejects_traversal_and_leaves_root_untouched(tmp_path: Path) -> None:
    svc, _ = install_service(tmp_path)
    mark_configured(svc.config, "original")

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name in ["workspace/fine.txt", "../../etc/passwd"]:
            info = tarfile.TarInfo(name)
            info.size = 4
            tar.addfile(info, io.BytesIO(b"evil"))

    from clawwrapper.app import app

    with TestClient(app) as client:
        r = client.post("/setup/import", content=buf.getvalue(), auth=AUTH)
        assert r.status_code == 400
        assert "Unsafe archive entry" in r.text

    assert (svc.config.state_dir / "openclaw.json").read_text(encoding="utf-8") == "original"
    assert not (svc.config.workspace_dir / "fine.txt").exists()


@pytest.mark.basic
def test_import_restores_archive_and_resumes_gateway(tmp_path: Path) -> None:
    svc, spawner = install_service(tmp_path)

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        payload = b'{"restored": true}'
        info = tarfile.TarInfo(".openclaw/openclaw.json")
        info.size = len(payload)
        tar.addfile(info, io.BytesIO(payload))

    from clawwrapper.app import app

    with TestClient(app) as client:
        r = client.post("/setup/import", content=buf.getvalue(), auth=AUTH)
        assert r.status_code == 200, r.text
        assert r.text.startswith("OK - imported backup into")
        assert svc.store.read_raw().content == '{"restored": true}'
        assert len(spawner.calls) == 1
