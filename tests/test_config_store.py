from __future__ import annotations

import stat
from pathlib import Path

import pytest

from clawwrapper.config_store import ConfigStateStore


@pytest.mark.basic
def test_resolve_defaults_to_canonical_path_when_missing(tmp_path: Path) -> None:
    store = ConfigStateStore(state_dir=tmp_path / "state")
    assert store.resolve() == tmp_path / "state" / "openclaw.json"
    assert store.exists() is False

    state = store.read_raw()
    assert state.exists is False
    assert state.content == ""


@pytest.mark.basic
def test_override_path_wins(tmp_path: Path) -> None:
    override = tmp_path / "elsewhere" / "custom.json"
    store = ConfigStateStore(state_dir=tmp_path / "state", override_path=override)
    (tmp_path / "state").mkdir()
    (tmp_path / "state" / "openclaw.json").write_text("{}", encoding="utf-8")

    assert store.resolve() == override
    assert store.exists() is False

    written = store.write_raw('{"a": 1}')
    assert written == override
    assert store.read_raw().content == '{"a": 1}'


@pytest.mark.basic
def test_write_raw_creates_one_backup_per_write_with_prior_content(tmp_path: Path) -> None:
    store = ConfigStateStore(state_dir=tmp_path)
    store.write_raw("v0")
    assert store.backups() == []

    store.write_raw("v1")
    store.write_raw("v2")

    backups = store.backups()
    assert len(backups) == 2
    assert backups[0] != backups[1]
    assert [b.read_text(encoding="utf-8") for b in backups] == ["v0", "v1"]
    assert all(b.name.startswith("openclaw.json.bak-") for b in backups)
    assert store.read_raw().content == "v2"


@pytest.mark.basic
def test_written_config_is_owner_only(tmp_path: Path) -> None:
    store = ConfigStateStore(state_dir=tmp_path)
    path = store.write_raw("{}")
    assert stat.S_IMODE(path.stat().st_mode) == 0o600


@pytest.mark.basic
def test_reset_removes_config_but_keeps_backups(tmp_path: Path) -> None:
    store = ConfigStateStore(state_dir=tmp_path)
    store.write_raw("v0")
    store.write_raw("v1")

    removed = store.reset()
    assert removed == [tmp_path / "openclaw.json"]
    assert store.exists() is False
    assert len(list(tmp_path.glob("openclaw.json.bak-*"))) == 1
    assert store.reset() == []


@pytest.mark.basic
def test_migrate_legacy_renames_first_legacy_file(tmp_path: Path) -> None:
    (tmp_path / "clawdbot.json").write_text('{"legacy": true}', encoding="utf-8")
    (tmp_path / "moltbot.json").write_text('{"older": true}', encoding="utf-8")
    store = ConfigStateStore(state_dir=tmp_path)

    assert store.migrate_legacy() == tmp_path / "openclaw.json"
    assert (tmp_path / "openclaw.json").read_text(encoding="utf-8") == '{"legacy": true}'
    assert not (tmp_path / "clawdbot.json").exists()
    # One-time: a second call is a no-op.
    assert store.migrate_legacy() is None
    assert (tmp_path / "moltbot.json").exists()


@pytest.mark.basic
def test_migrate_legacy_skipped_when_canonical_or_override_present(tmp_path: Path) -> None:
    (tmp_path / "openclaw.json").write_text("current", encoding="utf-8")
    (tmp_path / "clawdbot.json").write_text("legacy", encoding="utf-8")
    assert ConfigStateStore(state_dir=tmp_path).migrate_legacy() is None
    assert (tmp_path / "openclaw.json").read_text(encoding="utf-8") == "current"

    other = tmp_path / "other"
    other.mkdir()
    (other / "clawdbot.json").write_text("legacy", encoding="utf-8")
    store = ConfigStateStore(state_dir=other, override_path=tmp_path / "override.json")
    assert store.migrate_legacy() is None
    assert (other / "clawdbot.json").exists()
