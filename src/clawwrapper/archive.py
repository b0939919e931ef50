"""Backup export/import of the persisted state (config dir + workspace).

Import is restricted to a single storage root and is fail-closed: one unsafe
entry rejects the whole archive before anything on disk is touched.
Restoration is additive; files not present in the archive are left alone.
"""

from __future__ import annotations

import asyncio
import contextlib
import datetime
import gzip
import logging
import os
import queue
import re
import tarfile
import tempfile
import threading
import zlib
from pathlib import Path
from typing import Any, AsyncIterator, Iterator, List, Optional, Sequence, Union

from .config import WrapperConfig
from .config_store import ConfigStateStore
from .errors import ArchiveValidationError, PayloadTooLargeError, WrapperError


logger = logging.getLogger(__name__)

_DRIVE_LETTER_RE = re.compile(r"^[A-Za-z]:[\\/]")
_SEGMENT_SPLIT_RE = re.compile(r"[\\/]")


def is_safe_archive_path(name: Optional[str]) -> bool:
    """True when `name` is a relative path that cannot escape the extraction root."""
    p = str(name or "")
    if not p:
        return False
    if p.startswith("/") or p.startswith("\\"):
        return False
    if _DRIVE_LETTER_RE.match(p):
        return False
    if ".." in _SEGMENT_SPLIT_RE.split(p):
        return False
    return True


def is_under_dir(path: Union[str, Path], root: Union[str, Path]) -> bool:
    abs_path = Path(path).resolve()
    abs_root = Path(root).resolve()
    return abs_path == abs_root or abs_root in abs_path.parents


def validate_members(members: Sequence[tarfile.TarInfo]) -> None:
    """Raise ArchiveValidationError on the first unsafe member."""
    for m in members:
        if not is_safe_archive_path(m.name):
            raise ArchiveValidationError(f"Unsafe archive entry: {m.name!r}")
        if m.issym() or m.islnk():
            if not is_safe_archive_path(m.linkname):
                raise ArchiveValidationError(f"Unsafe link target in archive entry {m.name!r}: {m.linkname!r}")
        elif not (m.isfile() or m.isdir()):
            raise ArchiveValidationError(f"Unsupported archive entry type: {m.name!r}")


_EXPORT_CHUNK_BYTES = 64 * 1024
_EXPORT_QUEUE_DEPTH = 8
_EXPORT_DONE = object()


class _ExportAborted(Exception):
    pass


class _QueueSink:
    """Write-only file object handing fixed-size compressed chunks to a bounded queue."""

    def __init__(self, chunks: "queue.Queue[Any]", aborted: threading.Event, chunk_bytes: int = _EXPORT_CHUNK_BYTES):
        self._chunks = chunks
        self._aborted = aborted
        self._chunk_bytes = int(chunk_bytes)
        self._buf = bytearray()

    def write(self, data: bytes) -> int:
        self._buf += data
        while len(self._buf) >= self._chunk_bytes:
            self.put(bytes(self._buf[: self._chunk_bytes]))
            del self._buf[: self._chunk_bytes]
        return len(data)

    def flush(self) -> None:
        return None

    def finish(self) -> None:
        if self._buf:
            self.put(bytes(self._buf))
            self._buf.clear()
        self.put(_EXPORT_DONE)

    def put(self, item: Any) -> None:
        # Blocks while the reader is behind; gives up once the reader is gone.
        while True:
            if self._aborted.is_set():
                raise _ExportAborted()
            try:
                self._chunks.put(item, timeout=0.1)
                return
            except queue.Full:
                continue


def _portable(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.uid = 0
    info.gid = 0
    info.uname = ""
    info.gname = ""
    return info


def _backup_filename() -> str:
    stamp = datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
    return f"openclaw-backup-{stamp}.tar.gz"


class SecureArchiveImporter:
    def __init__(
        self,
        *,
        config: WrapperConfig,
        store: ConfigStateStore,
        supervisor: Any,
    ):
        self._cfg = config
        self._store = store
        self._supervisor = supervisor

    @property
    def data_root(self) -> Path:
        return self._cfg.data_root

    @property
    def max_bytes(self) -> int:
        return int(self._cfg.import_max_bytes)

    def roots_under_data_root(self) -> bool:
        return is_under_dir(self._cfg.state_dir, self.data_root) and is_under_dir(self._cfg.workspace_dir, self.data_root)

    # ----------------------------
    # Export
    # ----------------------------

    def export_filename(self) -> str:
        return _backup_filename()

    def _export_base_and_roots(self) -> tuple[Path, List[Path]]:
        state = self._cfg.state_dir.resolve()
        workspace = self._cfg.workspace_dir.resolve()
        # Relative to the storage root when possible, so archives restore cleanly.
        base = self.data_root.resolve() if self.roots_under_data_root() else Path(state.anchor)

        roots: List[Path] = []
        for r in (state, workspace):
            if any(is_under_dir(r, kept) for kept in roots):
                continue
            roots = [kept for kept in roots if not is_under_dir(kept, r)]
            roots.append(r)
        return base, roots

    def iter_export(self) -> Iterator[bytes]:
        """Yield a gzip-compressed tar of the state and workspace dirs in bounded chunks.

        The tar is written by a worker thread into a bounded queue, so memory
        stays flat regardless of file sizes. Closing the generator early
        (client disconnect) stops the worker.
        """
        self._cfg.state_dir.mkdir(parents=True, exist_ok=True)
        self._cfg.workspace_dir.mkdir(parents=True, exist_ok=True)

        chunks: "queue.Queue[Any]" = queue.Queue(maxsize=_EXPORT_QUEUE_DEPTH)
        aborted = threading.Event()
        sink = _QueueSink(chunks, aborted)
        worker = threading.Thread(target=self._write_export, args=(sink,), name="clawwrapper-export", daemon=True)
        worker.start()
        try:
            while True:
                item = chunks.get()
                if item is _EXPORT_DONE:
                    return
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            aborted.set()
            worker.join(timeout=5.0)

    def _write_export(self, sink: _QueueSink) -> None:
        count = 0
        try:
            base, roots = self._export_base_and_roots()
            with tarfile.open(fileobj=sink, mode="w|gz", format=tarfile.PAX_FORMAT) as tar:
                for root in roots:
                    for path in self._walk(root):
                        arcname = os.path.relpath(path, base)
                        try:
                            tar.add(str(path), arcname=arcname, recursive=False, filter=_portable)
                        except OSError as e:
                            # Files can disappear while the backend is running.
                            logger.warning("[export] skipped %s: %s", path, e)
                            continue
                        count += 1
            sink.finish()
        except _ExportAborted:
            logger.info("[export] download closed after %s entries; aborted", count)
            return
        except Exception as e:
            logger.error("[export] failed after %s entries: %s", count, e)
            with contextlib.suppress(_ExportAborted):
                sink.put(e)
            return
        logger.info("[export] archived %s entries relative to %s", count, base)

    @staticmethod
    def _walk(root: Path) -> Iterator[Path]:
        yield root
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            for name in list(dirnames):
                full = Path(dirpath) / name
                if full.is_symlink():
                    # Not descended into by os.walk; archived as a link.
                    dirnames.remove(name)
                yield full
            for name in sorted(filenames):
                yield Path(dirpath) / name

    # ----------------------------
    # Import
    # ----------------------------

    def check_roots(self) -> None:
        if not self.roots_under_data_root():
            raise ArchiveValidationError(
                "Import is only supported when OPENCLAW_STATE_DIR and OPENCLAW_WORKSPACE_DIR "
                f"are under {self.data_root}."
            )

    def check_declared_length(self, content_length: Optional[Union[str, int]]) -> None:
        if content_length is None or content_length == "":
            return
        try:
            declared = int(content_length)
        except (TypeError, ValueError):
            return
        if declared > self.max_bytes:
            raise PayloadTooLargeError(f"Payload too large (max {self.max_bytes} bytes)")

    async def spool(self, chunks: AsyncIterator[bytes]) -> Path:
        """Copy the upload to a temp file, enforcing the byte ceiling while reading."""
        fd, name = tempfile.mkstemp(prefix="openclaw-import-", suffix=".tar.gz")
        path = Path(name)
        total = 0
        try:
            with os.fdopen(fd, "wb") as f:
                async for chunk in chunks:
                    if not chunk:
                        continue
                    total += len(chunk)
                    if total > self.max_bytes:
                        raise PayloadTooLargeError(f"Payload too large (max {self.max_bytes} bytes)")
                    await asyncio.to_thread(f.write, chunk)
            if total == 0:
                raise ArchiveValidationError("Empty body")
        except BaseException:
            with contextlib.suppress(OSError):
                path.unlink()
            raise
        return path

    @staticmethod
    def _read_members(archive: Path) -> List[tarfile.TarInfo]:
        try:
            with tarfile.open(str(archive), mode="r:gz") as tar:
                members = tar.getmembers()
        except (tarfile.TarError, EOFError, zlib.error, gzip.BadGzipFile) as e:
            raise ArchiveValidationError(f"Invalid archive: {e}") from e
        validate_members(members)
        return members

    def validate_archive(self, archive: Path) -> List[str]:
        return [m.name for m in self._read_members(archive)]

    def _extract(self, archive: Path) -> int:
        root = self.data_root
        root.mkdir(parents=True, exist_ok=True)
        try:
            with tarfile.open(str(archive), mode="r:gz") as tar:
                members = tar.getmembers()
                validate_members(members)
                if hasattr(tarfile, "data_filter"):
                    tar.extractall(path=str(root), members=members, filter="data")
                else:
                    tar.extractall(path=str(root), members=members)
        except (tarfile.TarError, EOFError, zlib.error, gzip.BadGzipFile) as e:
            raise ArchiveValidationError(f"Invalid archive: {e}") from e
        return len(members)

    async def import_archive(
        self,
        chunks: AsyncIterator[bytes],
        *,
        content_length: Optional[Union[str, int]] = None,
    ) -> str:
        """Restore an uploaded archive into the storage root. Returns a plain-text summary."""
        self.check_roots()
        self.check_declared_length(content_length)

        archive = await self.spool(chunks)
        try:
            names = await asyncio.to_thread(self.validate_archive, archive)
            logger.info("[import] archive validated (%s entries); stopping gateway", len(names))

            # Never overwrite live files underneath a running backend, nor let a
            # proxied request start one until extraction is done.
            async with self._supervisor.held("restore in progress"):
                extracted = await asyncio.to_thread(self._extract, archive)
            logger.info("[import] extracted %s entries into %s", extracted, self.data_root)
        finally:
            with contextlib.suppress(OSError):
                archive.unlink()

        if not self._store.exists():
            return f"OK - imported backup into {self.data_root}. Gateway not started (not configured).\n"

        try:
            await self._supervisor.ensure_running()
        except WrapperError as e:
            logger.error("[import] gateway failed to resume: %s", e)
            return f"OK - imported backup into {self.data_root}, but the gateway failed to start: {e}\n"
        return f"OK - imported backup into {self.data_root} and restarted gateway.\n"
