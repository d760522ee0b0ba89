"""Backup sets taken before an existing installation is overwritten.

A backup set is a directory ``<root>/backup_<YYYYmmdd_HHMMSS>`` holding flat
copies of the daemon config, the compose manifest, the proxy vhost and every
per-bot credential file, plus a ``manifest.json`` describing what was copied
and the SHA-256 of each file. Backup sets accumulate across runs; pruning
them is left to the operator.
"""
from __future__ import annotations

import hashlib
import json
import os
import shutil
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

BACKUP_PREFIX = "backup_"
MANIFEST_NAME = "manifest.json"


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


def _now() -> datetime:
    return datetime.now(tz=UTC)


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(slots=True)
class BackupSet:
    """A snapshot of artifacts copied out of an installation."""

    path: Path
    created_at: str
    files: list[dict[str, str]] = field(default_factory=list)
    bot_files: list[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        """Return the directory name of the backup set."""
        return self.path.name

    def to_dict(self) -> dict[str, object]:
        """Return the JSON-serialisable manifest payload."""
        return {
            "created_at": self.created_at,
            "files": list(self.files),
            "bot_files": list(self.bot_files),
        }


def allocate_backup_dir(root: Path, *, now: datetime | None = None) -> Path:
    """Return an unused ``backup_<timestamp>`` directory path under *root*."""
    stamp = (now or _now()).strftime("%Y%m%d_%H%M%S")
    candidate = root / f"{BACKUP_PREFIX}{stamp}"
    counter = 1
    while candidate.exists():
        candidate = root / f"{BACKUP_PREFIX}{stamp}_{counter}"
        counter += 1
    return candidate


def create_backup_set(
    root: Path,
    artifacts: Iterable[Path],
    bot_files: Sequence[Path] = (),
    *,
    now: datetime | None = None,
) -> BackupSet:
    """Copy *artifacts* and *bot_files* into a fresh backup set under *root*.

    Missing artifacts are skipped; any copy failure raises :class:`BackupError`
    naming the file involved, leaving the live installation untouched.
    """
    moment = now or _now()
    destination = allocate_backup_dir(root, now=moment)
    backup = BackupSet(
        path=destination,
        created_at=moment.isoformat(timespec="seconds").replace("+00:00", "Z"),
    )
    try:
        destination.mkdir(parents=True, exist_ok=False)
        os.chmod(destination, 0o700)
    except OSError as exc:
        raise BackupError(f"Failed to create backup directory {destination}: {exc}") from exc

    def _copy(source: Path, *, bot: bool) -> None:
        target = destination / source.name
        try:
            shutil.copy2(source, target)
        except OSError as exc:
            raise BackupError(f"Failed to back up {source} to {target}: {exc}") from exc
        backup.files.append(
            {"source": str(source), "name": source.name, "sha256": compute_checksum(target)}
        )
        if bot:
            backup.bot_files.append(source.name)

    for path in artifacts:
        if path.is_file():
            _copy(path, bot=False)
    for path in bot_files:
        _copy(path, bot=True)

    try:
        (destination / MANIFEST_NAME).write_text(
            json.dumps(backup.to_dict(), indent=2) + "\n",
            encoding="utf-8",
        )
    except OSError as exc:
        raise BackupError(f"Failed to write backup manifest in {destination}: {exc}") from exc
    return backup


def read_backup_set(path: Path) -> BackupSet:
    """Load the backup set stored at *path*."""
    manifest = path / MANIFEST_NAME
    try:
        data = json.loads(manifest.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return BackupSet(path=path, created_at="")
    except (OSError, json.JSONDecodeError) as exc:
        raise BackupError(f"Backup manifest corrupted ({manifest}): {exc}") from exc
    if not isinstance(data, dict):
        raise BackupError(f"Backup manifest must be a JSON object ({manifest}).")
    files = [dict(item) for item in data.get("files", []) if isinstance(item, dict)]
    bots = [str(item) for item in data.get("bot_files", [])]
    return BackupSet(
        path=path,
        created_at=str(data.get("created_at", "")),
        files=files,
        bot_files=bots,
    )


def list_backup_sets(root: Path) -> list[BackupSet]:
    """Return the backup sets under *root*, oldest first."""
    if not root.is_dir():
        return []
    return [
        read_backup_set(child)
        for child in sorted(root.iterdir())
        if child.is_dir() and child.name.startswith(BACKUP_PREFIX)
    ]


def restore_bot_files(backup: BackupSet, config_dir: Path) -> list[Path]:
    """Copy the bot credential files recorded in *backup* into *config_dir*."""
    restored: list[Path] = []
    config_dir.mkdir(parents=True, exist_ok=True)
    for name in backup.bot_files:
        source = backup.path / name
        target = config_dir / name
        try:
            shutil.copy2(source, target)
        except OSError as exc:
            raise BackupError(f"Failed to restore {source} to {target}: {exc}") from exc
        restored.append(target)
    return restored


__all__ = [
    "BACKUP_PREFIX",
    "BackupError",
    "BackupSet",
    "MANIFEST_NAME",
    "allocate_backup_dir",
    "compute_checksum",
    "create_backup_set",
    "list_backup_sets",
    "read_backup_set",
    "restore_bot_files",
]
