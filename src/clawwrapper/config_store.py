"""Persisted backend configuration file (resolution, backups, legacy migration).

Writes are last-write-wins: the wrapper runs on a single event loop, so
concurrent admin requests are serialized by the loop, not by a lock here.
"""

from __future__ import annotations

import datetime
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional


logger = logging.getLogger(__name__)

CANONICAL_CONFIG_NAME = "openclaw.json"
LEGACY_CONFIG_NAMES = ("clawdbot.json", "moltbot.json")


def _backup_stamp() -> str:
    # Filesystem-safe ISO timestamp (no ':' or '.').
    return datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")


@dataclass(frozen=True)
class ConfigurationState:
    path: Path
    exists: bool
    content: str


class ConfigStateStore:
    def __init__(self, *, state_dir: Path, override_path: Optional[Path] = None):
        self._state_dir = Path(state_dir)
        self._override = Path(override_path) if override_path is not None else None

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    @property
    def canonical_path(self) -> Path:
        return self._state_dir / CANONICAL_CONFIG_NAME

    def candidates(self) -> List[Path]:
        if self._override is not None:
            return [self._override]
        return [self.canonical_path]

    def resolve(self) -> Path:
        """First existing candidate, else the canonical path (even if it doesn't exist yet)."""
        cands = self.candidates()
        for p in cands:
            if p.exists():
                return p
        return cands[0]

    def exists(self) -> bool:
        try:
            return any(p.exists() for p in self.candidates())
        except OSError:
            return False

    def read_raw(self) -> ConfigurationState:
        path = self.resolve()
        if not path.exists():
            return ConfigurationState(path=path, exists=False, content="")
        return ConfigurationState(path=path, exists=True, content=path.read_text(encoding="utf-8"))

    def write_raw(self, content: str) -> Path:
        """Back up the current file (if any), then overwrite it. Returns the written path."""
        path = self.resolve()
        path.parent.mkdir(parents=True, exist_ok=True)

        if path.exists():
            backup = self._next_backup_path(path)
            shutil.copyfile(path, backup)
            logger.info("Backed up %s to %s", path.name, backup.name)

        fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(str(content))
        return path

    def backups(self) -> List[Path]:
        path = self.resolve()
        return sorted(path.parent.glob(f"{path.name}.bak-*"))

    def reset(self) -> List[Path]:
        """Delete config file(s) so setup can be rerun. Workspace and credentials are kept."""
        removed: List[Path] = []
        for p in self.candidates():
            try:
                p.unlink()
                removed.append(p)
            except FileNotFoundError:
                continue
        return removed

    def migrate_legacy(self) -> Optional[Path]:
        """One-time rename of a legacy config filename to the canonical name.

        Skipped when an explicit override path is configured or the canonical
        file already exists. Failures are logged and ignored.
        """
        if self._override is not None:
            return None
        canonical = self.canonical_path
        if canonical.exists():
            return None
        for legacy in LEGACY_CONFIG_NAMES:
            legacy_path = self._state_dir / legacy
            try:
                if legacy_path.exists():
                    legacy_path.rename(canonical)
                    logger.info("[migration] Renamed %s -> %s", legacy, CANONICAL_CONFIG_NAME)
                    return canonical
            except OSError as e:
                logger.warning("[migration] Failed to rename %s: %s", legacy, e)
        return None

    @staticmethod
    def _next_backup_path(path: Path) -> Path:
        base = path.with_name(f"{path.name}.bak-{_backup_stamp()}")
        candidate = base
        n = 1
        while candidate.exists():
            candidate = base.with_name(f"{base.name}-{n}")
            n += 1
        return candidate
