"""Tests for backup sets."""
from __future__ import annotations

import json
import stat
from datetime import UTC, datetime
from pathlib import Path

import pytest

from asfctl.backups import (
    MANIFEST_NAME,
    BackupError,
    compute_checksum,
    create_backup_set,
    list_backup_sets,
    read_backup_set,
    restore_bot_files,
)

NOW = datetime(2026, 10, 19, 12, 30, 45, tzinfo=UTC)


def _installation(root: Path) -> tuple[list[Path], list[Path]]:
    config_dir = root / "config"
    config_dir.mkdir(parents=True)
    daemon = config_dir / "ASF.json"
    daemon.write_text('{"IPCPort": 1242}\n', encoding="utf-8")
    compose = root / "docker-compose.yml"
    compose.write_text("services: {}\n", encoding="utf-8")
    bot = config_dir / "mybot.json"
    bot.write_text('{"SteamLogin": "me"}\n', encoding="utf-8")
    return [daemon, compose, root / "missing.conf"], [bot]


def test_create_backup_set_copies_files_and_writes_manifest(tmp_path: Path) -> None:
    """Artifacts and bot files are copied flat with checksums recorded."""
    root = tmp_path / "asf"
    artifacts, bots = _installation(root)

    backup = create_backup_set(root, artifacts, bots, now=NOW)

    assert backup.path == root / "backup_20261019_123045"
    assert stat.S_IMODE(backup.path.stat().st_mode) == 0o700
    names = sorted(entry["name"] for entry in backup.files)
    assert names == ["ASF.json", "docker-compose.yml", "mybot.json"]
    assert backup.bot_files == ["mybot.json"]
    for entry in backup.files:
        assert entry["sha256"] == compute_checksum(backup.path / entry["name"])

    manifest = json.loads((backup.path / MANIFEST_NAME).read_text(encoding="utf-8"))
    assert manifest["created_at"] == "2026-10-19T12:30:45Z"
    assert manifest["bot_files"] == ["mybot.json"]


def test_backup_names_never_collide(tmp_path: Path) -> None:
    """Two backups within the same second get distinct directories."""
    root = tmp_path / "asf"
    artifacts, bots = _installation(root)

    first = create_backup_set(root, artifacts, bots, now=NOW)
    second = create_backup_set(root, artifacts, bots, now=NOW)

    assert first.path != second.path
    assert second.name == "backup_20261019_123045_1"
    assert [entry.name for entry in list_backup_sets(root)] == [first.name, second.name]


def test_read_backup_set_round_trip(tmp_path: Path) -> None:
    """Reading a backup set returns what was written."""
    root = tmp_path / "asf"
    artifacts, bots = _installation(root)
    backup = create_backup_set(root, artifacts, bots, now=NOW)

    loaded = read_backup_set(backup.path)

    assert loaded.files == backup.files
    assert loaded.bot_files == backup.bot_files


def test_read_backup_set_rejects_corrupt_manifest(tmp_path: Path) -> None:
    """Corrupt manifests raise BackupError."""
    backup_dir = tmp_path / "backup_20260101_000000"
    backup_dir.mkdir()
    (backup_dir / MANIFEST_NAME).write_text("{not json", encoding="utf-8")

    with pytest.raises(BackupError):
        read_backup_set(backup_dir)


def test_list_backup_sets_ignores_other_directories(tmp_path: Path) -> None:
    """Only ``backup_*`` directories are listed."""
    (tmp_path / "config").mkdir()
    (tmp_path / "backup_20260101_000000").mkdir()

    entries = list_backup_sets(tmp_path)

    assert [entry.name for entry in entries] == ["backup_20260101_000000"]
    assert list_backup_sets(tmp_path / "missing") == []


def test_restore_bot_files_copies_back(tmp_path: Path) -> None:
    """Bot files recorded in the manifest are restored into the config tree."""
    root = tmp_path / "asf"
    artifacts, bots = _installation(root)
    backup = create_backup_set(root, artifacts, bots, now=NOW)
    bots[0].unlink()

    restored = restore_bot_files(backup, root / "config")

    assert restored == [root / "config" / "mybot.json"]
    assert restored[0].read_text(encoding="utf-8") == '{"SteamLogin": "me"}\n'


def test_create_backup_set_reports_copy_failure(tmp_path: Path) -> None:
    """A bot file that vanished fails the whole backup."""
    root = tmp_path / "asf"
    artifacts, _ = _installation(root)

    with pytest.raises(BackupError, match="ghost.json"):
        create_backup_set(root, artifacts, [root / "config" / "ghost.json"], now=NOW)
