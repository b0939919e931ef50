from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from .config import WrapperConfig
from .errors import CommandNotAllowedError, InvalidArgumentError


logger = logging.getLogger(__name__)

_SAFE_ARG_RE = re.compile(r"^[A-Za-z0-9_-]+$")
# Config paths are dotted (e.g. gateway.port); still never shell-interpreted.
_SAFE_CONFIG_PATH_RE = re.compile(r"^[A-Za-z0-9_.-]+$")

_SECRET_PATTERNS: Tuple[re.Pattern, ...] = (
    re.compile(r"(sk-[A-Za-z0-9_-]{10,})"),
    re.compile(r"(gho_[A-Za-z0-9_]{10,})"),
    re.compile(r"(xox[baprs]-[A-Za-z0-9-]{10,})"),
    re.compile(r"(AA[A-Za-z0-9_-]{10,}:\S{10,})"),
)

_REQUEST_ID_PATTERNS: Tuple[re.Pattern, ...] = (
    re.compile(r"requestId\s*(?:=|:)\s*([A-Za-z0-9_-]{6,})"),
    re.compile(r'"requestId"\s*:\s*"([A-Za-z0-9_-]{6,})"'),
)

LifecycleHandler = Callable[[], Awaitable[Tuple[bool, str]]]


def redact_secrets(text: Optional[str]) -> str:
    """Best-effort display hygiene for command output. Not a security boundary."""
    if not text:
        return ""
    out = str(text)
    for pat in _SECRET_PATTERNS:
        out = pat.sub("[REDACTED]", out)
    return out


def extract_device_request_ids(text: Optional[str]) -> List[str]:
    s = str(text or "")
    seen: Dict[str, None] = {}
    for pat in _REQUEST_ID_PATTERNS:
        for m in pat.finditer(s):
            seen.setdefault(m.group(1), None)
    return list(seen.keys())


@dataclass(frozen=True)
class CommandParam:
    """The single caller-supplied parameter a command may accept."""

    name: str
    required: bool = True
    pattern: Optional[re.Pattern] = _SAFE_ARG_RE
    int_range: Optional[Tuple[int, int]] = None
    default: Optional[str] = None

    def normalize(self, raw: Optional[str]) -> Optional[str]:
        value = str(raw or "").strip()
        if not value:
            if self.required:
                raise InvalidArgumentError(f"Missing {self.name}")
            return self.default
        if self.int_range is not None:
            lo, hi = self.int_range
            try:
                n = int(value)
            except ValueError:
                if self.default is None:
                    raise InvalidArgumentError(f"Invalid {self.name}")
                n = int(self.default)
            return str(max(lo, min(hi, n)))
        if self.pattern is not None and not self.pattern.match(value):
            raise InvalidArgumentError(f"Invalid {self.name}")
        return value


@dataclass(frozen=True)
class AllowlistCommand:
    id: str
    argv: Tuple[str, ...] = ()
    param: Optional[CommandParam] = None
    handler: Optional[LifecycleHandler] = None
    label: str = ""

    def build_argv(self, arg: Optional[str]) -> List[str]:
        out = list(self.argv)
        if self.param is not None:
            value = self.param.normalize(arg)
            if value is not None:
                out.append(value)
        return out


@dataclass(frozen=True)
class CommandResult:
    ok: bool
    output: str
    exit_code: int = 0


def default_console_commands(
    *,
    restart: LifecycleHandler,
    stop: LifecycleHandler,
    start: LifecycleHandler,
) -> Dict[str, AllowlistCommand]:
    specs = [
        # Wrapper-managed lifecycle.
        AllowlistCommand(id="gateway.restart", handler=restart, label="gateway.restart (wrapper-managed)"),
        AllowlistCommand(id="gateway.stop", handler=stop, label="gateway.stop (wrapper-managed)"),
        AllowlistCommand(id="gateway.start", handler=start, label="gateway.start (wrapper-managed)"),
        # Backend CLI helpers.
        AllowlistCommand(id="openclaw.version", argv=("--version",), label="openclaw --version"),
        AllowlistCommand(id="openclaw.status", argv=("status",), label="openclaw status"),
        AllowlistCommand(id="openclaw.health", argv=("health",), label="openclaw health"),
        AllowlistCommand(id="openclaw.doctor", argv=("doctor",), label="openclaw doctor"),
        AllowlistCommand(
            id="openclaw.logs.tail",
            argv=("logs", "--tail"),
            param=CommandParam(name="line count", required=False, pattern=None, int_range=(50, 1000), default="200"),
            label="openclaw logs --tail N",
        ),
        AllowlistCommand(
            id="openclaw.config.get",
            argv=("config", "get"),
            param=CommandParam(name="config path", pattern=_SAFE_CONFIG_PATH_RE),
            label="openclaw config get <path>",
        ),
        # Device pairing (fixes "disconnected (1008): pairing required").
        AllowlistCommand(id="openclaw.devices.list", argv=("devices", "list"), label="openclaw devices list"),
        AllowlistCommand(
            id="openclaw.devices.approve",
            argv=("devices", "approve"),
            param=CommandParam(name="device request ID"),
            label="openclaw devices approve <requestId>",
        ),
        AllowlistCommand(id="openclaw.plugins.list", argv=("plugins", "list"), label="openclaw plugins list"),
        AllowlistCommand(
            id="openclaw.plugins.enable",
            argv=("plugins", "enable"),
            param=CommandParam(name="plugin name"),
            label="openclaw plugins enable <name>",
        ),
    ]
    return {s.id: s for s in specs}


# `pairing approve` takes two values, so it lives outside the single-parameter console table.
_PAIRING_CHANNEL = CommandParam(name="channel")
_PAIRING_CODE = CommandParam(name="pairing code")


class CommandAllowlistExecutor:
    """Runs a closed set of diagnostic commands. Never uses a shell."""

    def __init__(self, *, config: WrapperConfig, commands: Dict[str, AllowlistCommand]):
        self._cfg = config
        # Closed at construction; never mutated afterwards.
        self._commands: Dict[str, AllowlistCommand] = dict(commands)

    def command_ids(self) -> List[str]:
        return list(self._commands.keys())

    def resolve(self, cmd: str, arg: Optional[str] = None) -> Tuple[AllowlistCommand, List[str]]:
        """Validate `cmd`/`arg` and return the command plus its argv (no side effects)."""
        command = self._commands.get(str(cmd or "").strip())
        if command is None:
            raise CommandNotAllowedError()
        return command, command.build_argv(arg)

    async def run(self, cmd: str, arg: Optional[str] = None) -> CommandResult:
        command, argv = self.resolve(cmd, arg)
        if command.handler is not None:
            ok, output = await command.handler()
            return CommandResult(ok=ok, output=output)
        code, output = await self.run_cli(argv)
        return CommandResult(ok=code == 0, output=redact_secrets(output), exit_code=code)

    async def approve_pairing(self, channel: Optional[str], code: Optional[str]) -> CommandResult:
        argv = ["pairing", "approve", str(_PAIRING_CHANNEL.normalize(channel)), str(_PAIRING_CODE.normalize(code))]
        rc, output = await self.run_cli(argv)
        return CommandResult(ok=rc == 0, output=redact_secrets(output), exit_code=rc)

    async def run_cli(self, args: List[str]) -> Tuple[int, str]:
        """Run the backend CLI with a fixed argv. Returns (exit code, combined output)."""
        argv = self._cfg.backend_argv(*args)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=self._cfg.backend_env(),
            )
        except OSError as e:
            return 127, f"\n[spawn error] {e}\n"

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self._cfg.command_timeout_s)
        except asyncio.TimeoutError:
            proc.kill()
            stdout, _ = await proc.communicate()
            text = (stdout or b"").decode("utf-8", errors="replace")
            return 124, f"{text}\n[timeout] command exceeded {self._cfg.command_timeout_s:.0f}s\n"

        text = (stdout or b"").decode("utf-8", errors="replace")
        return int(proc.returncode or 0), text

    async def doctor_output(self) -> str:
        _, output = await self.run_cli(["doctor"])
        return redact_secrets(output)
