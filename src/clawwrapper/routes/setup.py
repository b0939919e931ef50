from __future__ import annotations

import html
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel

from ..console import extract_device_request_ids, redact_secrets
from ..errors import CommandNotAllowedError, InvalidArgumentError, WrapperError
from ..security import require_setup_auth
from ..service import get_wrapper_service


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/setup")


class ConfigWriteRequest(BaseModel):
    content: str


class ConsoleRunRequest(BaseModel):
    cmd: str = ""
    arg: Optional[str] = None


class DeviceApproveRequest(BaseModel):
    requestId: Optional[str] = None


class PairingApproveRequest(BaseModel):
    channel: Optional[str] = None
    code: Optional[str] = None


@router.get("/healthz")
async def setup_healthz() -> Dict[str, Any]:
    return {"ok": True}


@router.get("", response_class=HTMLResponse, dependencies=[Depends(require_setup_auth)])
async def setup_page():
    svc = get_wrapper_service()
    options = "".join(
        f'<option value="{html.escape(cid)}">{html.escape(cid)}</option>' for cid in svc.executor.command_ids()
    )
    configured = "yes" if svc.store.exists() else "no"
    return HTMLResponse(
        content=(
            "<html><head><title>OpenClaw Setup</title>"
            "<meta name=\"robots\" content=\"noindex,nofollow\"/>"
            "</head><body style=\"font-family: system-ui, -apple-system, Segoe UI, Roboto, sans-serif; max-width: 900px; margin: 40px auto;\">"
            "<h2>OpenClaw Setup</h2>"
            f"<p><b>Configured</b>: <code>{configured}</code></p>"
            "<p><a href=\"/openclaw\" target=\"_blank\">Open OpenClaw UI</a> | "
            "<a href=\"/setup/export\" target=\"_blank\">Download backup (.tar.gz)</a> | "
            "<a href=\"/setup/api/debug\" target=\"_blank\">Debug info</a></p>"
            "<h3>Debug console</h3>"
            f"<select id=\"cmd\">{options}</select> "
            "<input id=\"arg\" placeholder=\"argument (optional)\"/> "
            "<button id=\"run\">Run</button>"
            "<pre id=\"out\" style=\"white-space: pre-wrap\"></pre>"
            "<h3>Import backup</h3>"
            "<p>Restores into the storage volume and restarts the gateway.</p>"
            "<input id=\"importFile\" type=\"file\" accept=\".tar.gz,application/gzip\"/> "
            "<button id=\"importRun\">Import</button>"
            "<pre id=\"importOut\" style=\"white-space: pre-wrap\"></pre>"
            "<script>"
            "document.getElementById('run').onclick = async () => {"
            "  const r = await fetch('/setup/api/console/run', {method: 'POST', headers: {'content-type': 'application/json'},"
            "    body: JSON.stringify({cmd: document.getElementById('cmd').value, arg: document.getElementById('arg').value})});"
            "  const j = await r.json();"
            "  document.getElementById('out').textContent = j.output || j.error || '';"
            "};"
            "document.getElementById('importRun').onclick = async () => {"
            "  const f = document.getElementById('importFile').files[0];"
            "  if (!f) return;"
            "  const r = await fetch('/setup/import', {method: 'POST', headers: {'content-type': 'application/gzip'}, body: f});"
            "  document.getElementById('importOut').textContent = await r.text();"
            "};"
            "</script>"
            "</body></html>"
        )
    )


@router.get("/api/status", dependencies=[Depends(require_setup_auth)])
async def setup_status() -> Dict[str, Any]:
    svc = get_wrapper_service()
    _, version = await svc.executor.run_cli(["--version"])
    return {
        "configured": svc.store.exists(),
        "gatewayTarget": svc.config.gateway.base_url,
        "gateway": svc.supervisor.snapshot(),
        "openclawVersion": redact_secrets(version).strip(),
    }


@router.get("/api/debug", dependencies=[Depends(require_setup_auth)])
async def setup_debug() -> Dict[str, Any]:
    svc = get_wrapper_service()
    cfg = svc.config
    _, version = await svc.executor.run_cli(["--version"])
    return {
        "wrapper": {
            "publicPort": cfg.public_port,
            "stateDir": str(cfg.state_dir),
            "workspaceDir": str(cfg.workspace_dir),
            "dataRoot": str(cfg.data_root),
            "configPath": str(svc.store.resolve()),
            "configured": svc.store.exists(),
            "gatewayTokenFromEnv": svc.token_from_env,
            "gatewayTokenPersisted": cfg.token_path.exists(),
            "gateway": svc.supervisor.snapshot(),
            "lastDoctorOutput": svc.supervisor.last_doctor_output,
        },
        "openclaw": {
            "entry": cfg.backend_entry,
            "node": cfg.backend_node,
            "version": redact_secrets(version).strip(),
        },
    }


@router.get("/api/config/raw", dependencies=[Depends(require_setup_auth)])
async def setup_config_get() -> Dict[str, Any]:
    state = get_wrapper_service().store.read_raw()
    return {"ok": True, "path": str(state.path), "exists": state.exists, "content": state.content}


@router.post("/api/config/raw", dependencies=[Depends(require_setup_auth)])
async def setup_config_set(body: ConfigWriteRequest):
    svc = get_wrapper_service()
    limit = svc.config.config_max_chars
    if len(body.content) > limit:
        return JSONResponse({"ok": False, "error": f"Config too large (max {limit} chars)"}, status_code=413)

    path = svc.store.write_raw(body.content)
    logger.info("[config] wrote %s", path)

    out: Dict[str, Any] = {"ok": True, "path": str(path), "restarted": False}
    if svc.store.exists():
        try:
            await svc.supervisor.restart()
            out["restarted"] = True
        except WrapperError as e:
            out["restartError"] = str(e)
    return out


@router.post("/api/console/run", dependencies=[Depends(require_setup_auth)])
async def setup_console_run(body: ConsoleRunRequest):
    svc = get_wrapper_service()
    try:
        result = await svc.executor.run(body.cmd, body.arg)
    except (CommandNotAllowedError, InvalidArgumentError) as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
    return {"ok": result.ok, "output": result.output}


@router.get("/api/devices/pending", dependencies=[Depends(require_setup_auth)])
async def setup_devices_pending() -> Dict[str, Any]:
    svc = get_wrapper_service()
    code, output = await svc.executor.run_cli(["devices", "list"])
    return {
        "ok": code == 0,
        "requestIds": extract_device_request_ids(output),
        "output": redact_secrets(output),
    }


@router.post("/api/devices/approve", dependencies=[Depends(require_setup_auth)])
async def setup_devices_approve(body: DeviceApproveRequest):
    svc = get_wrapper_service()
    try:
        result = await svc.executor.run("openclaw.devices.approve", body.requestId)
    except InvalidArgumentError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
    return JSONResponse({"ok": result.ok, "output": result.output}, status_code=200 if result.ok else 500)


@router.post("/api/pairing/approve", dependencies=[Depends(require_setup_auth)])
async def setup_pairing_approve(body: PairingApproveRequest):
    svc = get_wrapper_service()
    try:
        result = await svc.executor.approve_pairing(body.channel, body.code)
    except InvalidArgumentError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
    return JSONResponse({"ok": result.ok, "output": result.output}, status_code=200 if result.ok else 500)


@router.post("/api/reset", response_class=PlainTextResponse, dependencies=[Depends(require_setup_auth)])
async def setup_reset():
    svc = get_wrapper_service()
    await svc.supervisor.stop()
    removed = svc.store.reset()
    logger.info("[reset] removed %s", ", ".join(str(p) for p in removed) or "nothing")
    return PlainTextResponse("OK - deleted config file. You can rerun setup now.\n")


@router.get("/export", dependencies=[Depends(require_setup_auth)])
async def setup_export():
    archive = get_wrapper_service().archive
    return StreamingResponse(
        archive.iter_export(),
        media_type="application/gzip",
        headers={"content-disposition": f'attachment; filename="{archive.export_filename()}"'},
    )


@router.post("/import", response_class=PlainTextResponse, dependencies=[Depends(require_setup_auth)])
async def setup_import(request: Request):
    archive = get_wrapper_service().archive
    text = await archive.import_archive(request.stream(), content_length=request.headers.get("content-length"))
    return PlainTextResponse(text)
