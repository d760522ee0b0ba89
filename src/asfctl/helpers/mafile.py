"""Import Steam Desktop Authenticator ``.maFile`` documents into ASF."""
from __future__ import annotations

import json
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

CONTAINER_CONFIG_DIR = "/app/config"


class MaFileError(RuntimeError):
    """Raised when a ``.maFile`` cannot be imported."""


@dataclass(frozen=True)
class ImportedMaFile:
    """A ``.maFile`` copied into the daemon config tree."""

    bot: str
    source: Path
    path: Path
    authenticator: dict[str, object]

    @property
    def container_path(self) -> str:
        """Return the file location as seen from inside the container."""
        return f"{CONTAINER_CONFIG_DIR}/{self.path.name}"

    @property
    def import_command(self) -> str:
        """Return the IPC command that imports the authenticator."""
        return f"2fa import {self.bot} {self.container_path}"


def load_mafile(path: Path) -> dict[str, object]:
    """Read and parse the ``.maFile`` at *path*."""
    if not path.is_file():
        raise MaFileError(f"File not found at {path}.")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as exc:
        raise MaFileError(f"Failed to read {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise MaFileError(f"{path} is not a valid .maFile: {exc}") from exc
    if not isinstance(data, dict):
        raise MaFileError(f"{path} is not a valid .maFile: expected a JSON object.")
    return data


def check_bot_name(bot: str) -> str:
    """Return *bot* stripped, refusing names that are not a single file name.

    The name becomes ``<bot>.json`` in the config tree and a word of IPC
    commands, so separators, whitespace and dot-only names are rejected.
    """
    bot = bot.strip()
    if not bot:
        raise MaFileError("Bot name cannot be empty.")
    if bot in {".", ".."} or any(char in bot for char in "/\\") or bot.split() != [bot]:
        raise MaFileError(f"Invalid bot name {bot!r}: use a single word without path separators.")
    return bot


def import_mafile(source: Path, bot: str, config_dir: Path) -> ImportedMaFile:
    """Copy *source* into *config_dir* for *bot*."""
    bot = check_bot_name(bot)
    authenticator = load_mafile(source)
    target = config_dir / source.name
    try:
        config_dir.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
    except OSError as exc:
        raise MaFileError(f"Failed to copy {source} to {target}: {exc}") from exc
    return ImportedMaFile(bot=bot, source=source, path=target, authenticator=authenticator)


def build_bot_config(
    authenticator: dict[str, object],
    *,
    login: str = "your_steam_username",
    password: str = "your_steam_password",
) -> dict[str, object]:
    """Return a bot configuration embedding *authenticator*."""
    return {
        "SteamLogin": login,
        "SteamPassword": password,
        "Enabled": True,
        "UseNewerAuthenticatorFormat": True,
        "SteamAuthenticator": authenticator,
    }


def write_bot_config(
    config_dir: Path,
    bot: str,
    document: dict[str, object],
    *,
    owner: tuple[int, int] = (1000, 1000),
) -> Path:
    """Write ``<bot>.json`` readable only by the container user."""
    if not document.get("SteamLogin") or not document.get("SteamPassword"):
        raise MaFileError("Username and password cannot be empty.")
    bot = check_bot_name(bot)
    path = config_dir / f"{bot}.json"
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(document, handle, indent=2)
            handle.write("\n")
        os.chmod(path, 0o600)
        if os.geteuid() == 0:
            os.chown(path, *owner)
    except OSError as exc:
        raise MaFileError(f"Failed to write {path}: {exc}") from exc
    return path


__all__ = [
    "ImportedMaFile",
    "MaFileError",
    "build_bot_config",
    "check_bot_name",
    "import_mafile",
    "load_mafile",
    "write_bot_config",
]
