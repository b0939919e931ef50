from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from .archive import SecureArchiveImporter
from .config import WrapperConfig, _env, resolve_gateway_token
from .config_store import ConfigStateStore
from .console import CommandAllowlistExecutor, default_console_commands
from .errors import WrapperError
from .proxy import ReverseProxyRouter
from .readiness import ReadinessProbe
from .security import SetupAuthPolicy, load_setup_auth_policy_from_env
from .supervisor import ProcessSupervisor


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WrapperService:
    """Composition root: config store + supervisor + proxy + admin helpers."""

    config: WrapperConfig
    store: ConfigStateStore
    probe: ReadinessProbe
    supervisor: ProcessSupervisor
    executor: CommandAllowlistExecutor
    archive: SecureArchiveImporter
    router: ReverseProxyRouter
    auth_policy: SetupAuthPolicy
    token_from_env: bool = False


_service: Optional[WrapperService] = None
_boot_task: Optional[asyncio.Future] = None


def get_wrapper_service() -> WrapperService:
    global _service
    if _service is None:
        _service = create_default_wrapper_service()
    return _service


def _lifecycle_handlers(supervisor: ProcessSupervisor):
    async def restart() -> Tuple[bool, str]:
        try:
            await supervisor.restart()
        except WrapperError as e:
            return False, f"Gateway restart failed: {e}\n"
        return True, "Gateway restarted (wrapper-managed).\n"

    async def stop() -> Tuple[bool, str]:
        await supervisor.stop()
        return True, "Gateway stopped (wrapper-managed).\n"

    async def start() -> Tuple[bool, str]:
        try:
            await supervisor.ensure_running()
        except WrapperError as e:
            return False, f"Gateway not started: {e}\n"
        return True, "Gateway started.\n"

    return default_console_commands(restart=restart, stop=stop, start=start)


def build_wrapper_service(
    config: WrapperConfig,
    *,
    gateway_token: str,
    auth_policy: Optional[SetupAuthPolicy] = None,
    spawn=None,
    probe: Optional[ReadinessProbe] = None,
    proxy_transport=None,
    ws_connect=None,
    token_from_env: bool = False,
) -> WrapperService:
    store = ConfigStateStore(state_dir=config.state_dir, override_path=config.config_path_override)
    probe = probe or ReadinessProbe(
        config.gateway,
        interval_s=config.ready_interval_s,
        timeout_s=config.ready_timeout_s,
    )

    executor: Optional[CommandAllowlistExecutor] = None

    async def diagnostics() -> str:
        if executor is None:
            raise RuntimeError("console executor is not wired yet")
        return await executor.doctor_output()

    supervisor = ProcessSupervisor(
        config=config,
        store=store,
        probe=probe,
        gateway_token=gateway_token,
        spawn=spawn,
        diagnostics=diagnostics,
    )
    executor = CommandAllowlistExecutor(config=config, commands=_lifecycle_handlers(supervisor))
    archive = SecureArchiveImporter(config=config, store=store, supervisor=supervisor)
    router = ReverseProxyRouter(
        endpoint=config.gateway,
        supervisor=supervisor,
        store=store,
        transport=proxy_transport,
        ws_connect=ws_connect,
    )
    return WrapperService(
        config=config,
        store=store,
        probe=probe,
        supervisor=supervisor,
        executor=executor,
        archive=archive,
        router=router,
        auth_policy=auth_policy or SetupAuthPolicy(password=config.setup_password),
        token_from_env=token_from_env,
    )


def create_default_wrapper_service() -> WrapperService:
    cfg = WrapperConfig.from_env()
    return build_wrapper_service(
        cfg,
        gateway_token=resolve_gateway_token(cfg),
        auth_policy=load_setup_auth_policy_from_env(),
        token_from_env=_env("OPENCLAW_GATEWAY_TOKEN") is not None,
    )


async def _boot_start(svc: WrapperService) -> None:
    logger.info("[wrapper] config detected; starting gateway...")
    try:
        await svc.supervisor.ensure_running()
        logger.info("[wrapper] gateway ready")
    except WrapperError as e:
        logger.error("[wrapper] gateway failed to start at boot: %s", e)


async def start_wrapper_service() -> None:
    global _boot_task
    svc = get_wrapper_service()
    cfg = svc.config
    svc.store.migrate_legacy()

    logger.info("[wrapper] listening on :%s", cfg.public_port)
    logger.info("[wrapper] state dir: %s", cfg.state_dir)
    logger.info("[wrapper] workspace dir: %s", cfg.workspace_dir)
    logger.info("[wrapper] gateway target: %s", cfg.gateway.base_url)
    logger.info("[wrapper] gateway token: %s", "from env" if svc.token_from_env else "persisted/generated")
    if not svc.auth_policy.enabled:
        logger.warning("[wrapper] SETUP_PASSWORD is not set; /setup will error.")

    # Auto-start so polling channels come up without a first request.
    if svc.store.exists():
        _boot_task = asyncio.ensure_future(_boot_start(svc))


async def stop_wrapper_service() -> None:
    global _service, _boot_task
    if _service is None:
        return
    try:
        if _boot_task is not None and not _boot_task.done():
            _boot_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _boot_task
        await _service.supervisor.shutdown()
        await _service.router.aclose()
    finally:
        _boot_task = None
        _service = None
