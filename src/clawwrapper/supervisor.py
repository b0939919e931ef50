"""Backend gateway process supervisor.

Lifecycle:

    stopped -> starting -> running -> stopping -> stopped
                  |           |
                  +-> failed <+

`ensure_running()` is single-flight: concurrent callers attach to the same
in-flight start attempt and observe its outcome. There is no automatic
restart on crash; the next `ensure_running()` (proxied request, admin
action) starts a fresh child.
"""

from __future__ import annotations

import asyncio
import contextlib
import datetime
import enum
import logging
import signal
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .config import WrapperConfig
from .config_store import ConfigStateStore
from .errors import NotConfiguredError, ProcessNotReadyError, ProcessSpawnError


logger = logging.getLogger(__name__)

Spawner = Callable[[List[str], Dict[str, str]], Awaitable[Any]]
DiagnosticsCollector = Callable[[], Awaitable[str]]

_MAX_DIAGNOSTICS_CHARS = 50_000


class ProcessState(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


_ALLOWED_TRANSITIONS: Dict[ProcessState, frozenset] = {
    ProcessState.STOPPED: frozenset({ProcessState.STARTING}),
    ProcessState.STARTING: frozenset({ProcessState.RUNNING, ProcessState.FAILED}),
    ProcessState.RUNNING: frozenset({ProcessState.STOPPING, ProcessState.FAILED}),
    ProcessState.STOPPING: frozenset({ProcessState.STOPPED}),
    # failed -> stopping reaps a child left behind by a readiness timeout.
    ProcessState.FAILED: frozenset({ProcessState.STARTING, ProcessState.STOPPING}),
}


class IllegalTransitionError(RuntimeError):
    pass


def _now_utc_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def _describe_exit(rc: Optional[int]) -> Dict[str, Any]:
    code: Optional[int] = None
    sig: Optional[str] = None
    if isinstance(rc, int):
        if rc < 0:
            try:
                sig = signal.Signals(-rc).name
            except ValueError:
                sig = str(-rc)
        else:
            code = rc
    return {"code": code, "signal": sig, "at": _now_utc_iso()}


@dataclass(frozen=True)
class ManagedProcess:
    """The current backend child. Replaced on every (re)start, never mutated."""

    process: Any
    pid: int
    started_at: str


async def spawn_subprocess(argv: List[str], env: Dict[str, str]) -> Any:
    # stdout/stderr are inherited so backend logs land in the wrapper's output.
    return await asyncio.create_subprocess_exec(*argv, env=env, stdin=asyncio.subprocess.DEVNULL)


class ProcessSupervisor:
    def __init__(
        self,
        *,
        config: WrapperConfig,
        store: ConfigStateStore,
        probe: Any,
        gateway_token: str,
        spawn: Optional[Spawner] = None,
        diagnostics: Optional[DiagnosticsCollector] = None,
    ):
        self._cfg = config
        self._store = store
        self._probe = probe
        self._token = gateway_token
        self._spawn = spawn or spawn_subprocess
        self._diagnostics = diagnostics

        self._state = ProcessState.STOPPED
        self._current: Optional[ManagedProcess] = None
        self._inflight: Optional[asyncio.Future] = None
        self._lock = asyncio.Lock()
        self._background: Set[asyncio.Future] = set()

        self._last_error: Optional[str] = None
        self._last_exit: Optional[Dict[str, Any]] = None
        self._last_doctor_at: Optional[str] = None
        self._last_doctor_monotonic: Optional[float] = None
        self._last_doctor_output: Optional[str] = None
        self._spawn_count = 0
        self._holds = 0
        self._hold_reason: Optional[str] = None

    # ----------------------------
    # Introspection
    # ----------------------------

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def current(self) -> Optional[ManagedProcess]:
        return self._current

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def last_exit(self) -> Optional[Dict[str, Any]]:
        return dict(self._last_exit) if self._last_exit else None

    @property
    def last_doctor_output(self) -> Optional[str]:
        return self._last_doctor_output

    @property
    def spawn_count(self) -> int:
        return self._spawn_count

    def snapshot(self) -> Dict[str, Any]:
        """HTTP-safe status (never includes the gateway token or argv)."""
        cur = self._current
        return {
            "state": self._state.value,
            "pid": cur.pid if cur is not None else None,
            "started_at": cur.started_at if cur is not None else None,
            "starting": self._inflight is not None and not self._inflight.done(),
            "last_error": self._last_error,
            "last_exit": self.last_exit,
            "last_doctor_at": self._last_doctor_at,
            "held": self._hold_reason if self._holds else None,
        }

    # ----------------------------
    # Public API
    # ----------------------------

    async def ensure_running(self) -> None:
        if self._state is ProcessState.RUNNING and self._current is not None:
            return
        self._check_not_held()
        if self._inflight is None or self._inflight.done():
            if not self._store.exists():
                raise NotConfiguredError()
            task = asyncio.ensure_future(self.start())
            task.add_done_callback(self._on_start_done)
            self._inflight = task
        # A cancelled waiter (client disconnect) must not cancel the shared attempt.
        await asyncio.shield(self._inflight)

    async def start(self) -> None:
        async with self._lock:
            await self._start_locked()

    async def stop(self, sig: signal.Signals = signal.SIGTERM) -> None:
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            with contextlib.suppress(Exception):
                await asyncio.shield(inflight)
        async with self._lock:
            await self._stop_locked(sig)

    @contextlib.asynccontextmanager
    async def held(self, reason: str) -> AsyncIterator[None]:
        """Stop the gateway and refuse every start until the block exits."""
        self._holds += 1
        self._hold_reason = reason
        try:
            await self.stop()
            yield
        finally:
            self._holds -= 1
            if not self._holds:
                self._hold_reason = None

    async def restart(self) -> None:
        await self.stop()
        await self.ensure_running()

    async def shutdown(self) -> None:
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            inflight.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await inflight
        async with self._lock:
            await self._stop_locked(signal.SIGTERM)
        for task in list(self._background):
            task.cancel()
        for task in list(self._background):
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

    # ----------------------------
    # Internals
    # ----------------------------

    def _transition(self, new: ProcessState) -> None:
        old = self._state
        if new not in _ALLOWED_TRANSITIONS[old]:
            raise IllegalTransitionError(f"Illegal gateway state transition: {old.value} -> {new.value}")
        self._state = new
        logger.debug("[gateway] %s -> %s", old.value, new.value)

    def _check_not_held(self) -> None:
        if self._holds:
            raise ProcessNotReadyError(f"Gateway start refused: {self._hold_reason}")

    def _fail(self, message: str) -> None:
        self._last_error = message
        logger.error(message)
        self._transition(ProcessState.FAILED)

    def _on_start_done(self, task: asyncio.Future) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            # Mark the exception as retrieved; waiters already received it.
            task.exception()

    def _track(self, coro: Awaitable[Any]) -> asyncio.Future:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _gateway_argv(self) -> List[str]:
        return self._cfg.backend_argv(
            "gateway",
            "run",
            "--bind",
            "loopback",
            "--port",
            str(self._cfg.gateway.port),
            "--auth",
            "token",
            "--token",
            self._token,
        )

    async def _start_locked(self) -> None:
        if self._state is ProcessState.RUNNING and self._current is not None:
            return
        self._check_not_held()
        if not self._store.exists():
            raise NotConfiguredError()
        if self._current is not None:
            # Leftover child from a readiness timeout; never run two at once.
            await self._stop_locked(signal.SIGTERM)

        self._cfg.state_dir.mkdir(parents=True, exist_ok=True)
        self._cfg.workspace_dir.mkdir(parents=True, exist_ok=True)

        self._last_error = None
        self._transition(ProcessState.STARTING)

        try:
            managed, ready = await self._spawn_and_wait()
        except asyncio.CancelledError:
            if self._state is ProcessState.STARTING:
                self._fail("[gateway] start cancelled")
            raise

        if not ready:
            rc = managed.process.returncode
            if rc is not None:
                reason = f"Gateway exited before becoming ready ({_describe_exit(rc)})"
            else:
                reason = "Gateway did not become ready in time"
            self._fail(f"[gateway] start failure: {reason}")
            self._schedule_diagnostics()
            raise ProcessNotReadyError(reason, hint=self._last_error)

        self._transition(ProcessState.RUNNING)
        logger.info("[gateway] ready pid=%s", managed.pid)

    async def _spawn_and_wait(self) -> Tuple[ManagedProcess, bool]:
        try:
            proc = await self._spawn(self._gateway_argv(), self._cfg.backend_env())
        except OSError as e:
            msg = f"[gateway] spawn error: {e}"
            self._fail(msg)
            self._schedule_diagnostics()
            raise ProcessSpawnError(msg) from e

        managed = ManagedProcess(process=proc, pid=int(proc.pid), started_at=_now_utc_iso())
        self._current = managed
        self._spawn_count += 1
        logger.info("[gateway] spawned pid=%s target=%s", managed.pid, self._cfg.gateway.base_url)
        self._track(self._watch(managed))

        ready = await self._probe.wait_ready(
            timeout_s=self._cfg.ready_timeout_s,
            alive=lambda: proc.returncode is None,
        )
        return managed, ready

    async def _stop_locked(self, sig: signal.Signals) -> None:
        managed = self._current
        if managed is None:
            return

        self._transition(ProcessState.STOPPING)
        proc = managed.process
        try:
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.send_signal(sig)
                try:
                    await asyncio.wait_for(proc.wait(), timeout=self._cfg.stop_grace_s)
                except asyncio.TimeoutError:
                    if self._cfg.kill_after_grace:
                        logger.warning("[gateway] pid=%s ignored %s; killing", managed.pid, sig.name)
                        with contextlib.suppress(ProcessLookupError):
                            proc.kill()
                        with contextlib.suppress(asyncio.TimeoutError):
                            await asyncio.wait_for(proc.wait(), timeout=self._cfg.stop_grace_s)
                    else:
                        logger.warning("[gateway] pid=%s still running after grace window", managed.pid)
        except asyncio.CancelledError:
            # Never leave an orphan behind a cancelled stop.
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
            raise
        finally:
            if self._current is managed:
                self._current = None
            self._transition(ProcessState.STOPPED)
            logger.info("[gateway] stopped pid=%s", managed.pid)

    async def _watch(self, managed: ManagedProcess) -> None:
        rc = await managed.process.wait()
        self._last_exit = _describe_exit(rc)
        if self._current is not managed:
            return
        self._current = None
        if self._state is ProcessState.RUNNING:
            self._fail(
                f"[gateway] exited unexpectedly code={self._last_exit['code']} signal={self._last_exit['signal']}"
            )
        else:
            logger.info("[gateway] exited code=%s signal=%s", self._last_exit["code"], self._last_exit["signal"])

    def _schedule_diagnostics(self) -> None:
        if self._diagnostics is None:
            return
        now = time.monotonic()
        # Avoid a diagnostics storm under crash loops.
        if self._last_doctor_monotonic is not None and now - self._last_doctor_monotonic < self._cfg.diagnostics_cooldown_s:
            return
        self._last_doctor_monotonic = now
        self._last_doctor_at = _now_utc_iso()
        self._track(self._collect_diagnostics())

    async def _collect_diagnostics(self) -> None:
        if self._diagnostics is None:
            raise RuntimeError("diagnostics collector is not configured")
        try:
            out = await self._diagnostics()
        except Exception as e:
            out = f"doctor failed: {e}"
        out = str(out or "")
        if len(out) > _MAX_DIAGNOSTICS_CHARS:
            out = out[:_MAX_DIAGNOSTICS_CHARS] + "\n... (truncated)\n"
        self._last_doctor_output = out
