"""Installation state detection.

An installation is *present* when the install root is a directory and the
compose manifest exists inside it. Every other combination, including a root
directory without a manifest, is treated as absent. State is probed fresh on
every run and never cached.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .config import WEB_SERVERS, InstallerSettings

DAEMON_CONFIG_NAME = "ASF.json"
COMPOSE_FILE_NAME = "docker-compose.yml"


class InstallState(Enum):
    """Coarse classification of the install root."""

    ABSENT = "absent"
    PRESENT = "present"


@dataclass(frozen=True)
class InstallationState:
    """Snapshot of what is on disk before reconciliation."""

    state: InstallState
    root: Path
    compose_manifest: Path | None = None
    daemon_config: Path | None = None
    vhosts: tuple[Path, ...] = ()
    bot_files: tuple[Path, ...] = ()

    @property
    def present(self) -> bool:
        """Return True when an existing installation was found."""
        return self.state is InstallState.PRESENT

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "state": self.state.value,
            "root": str(self.root),
            "compose_manifest": str(self.compose_manifest) if self.compose_manifest else None,
            "daemon_config": str(self.daemon_config) if self.daemon_config else None,
            "vhosts": [str(path) for path in self.vhosts],
            "bot_files": [str(path) for path in self.bot_files],
        }


def bot_credential_files(config_dir: Path) -> tuple[Path, ...]:
    """Return per-bot ``*.json`` files directly under *config_dir*."""
    if not config_dir.is_dir():
        return ()
    return tuple(
        sorted(
            path
            for path in config_dir.glob("*.json")
            if path.is_file() and path.name != DAEMON_CONFIG_NAME
        )
    )


def vhost_path(settings: InstallerSettings, server: str, domain: str) -> Path:
    """Return the site file location for *server* and *domain*."""
    if server == "apache2":
        return settings.apache_sites_available / f"asf-{domain}.conf"
    return settings.nginx_sites_available / f"asf-{domain}"


def vhost_candidates(settings: InstallerSettings, domain: str) -> tuple[Path, ...]:
    """Return the vhost locations either web server would use for *domain*."""
    return tuple(vhost_path(settings, server, domain) for server in WEB_SERVERS)


def detect(
    root: Path,
    settings: InstallerSettings | None = None,
    *,
    domain: str | None = None,
) -> InstallationState:
    """Classify *root* as :attr:`InstallState.PRESENT` or :attr:`InstallState.ABSENT`."""
    manifest = root / COMPOSE_FILE_NAME
    if not (root.is_dir() and manifest.is_file()):
        return InstallationState(state=InstallState.ABSENT, root=root)

    config_dir = root / "config"
    daemon_config = config_dir / DAEMON_CONFIG_NAME
    vhosts: tuple[Path, ...] = ()
    if settings is not None and domain is not None:
        vhosts = tuple(path for path in vhost_candidates(settings, domain) if path.exists())
    return InstallationState(
        state=InstallState.PRESENT,
        root=root,
        compose_manifest=manifest,
        daemon_config=daemon_config if daemon_config.is_file() else None,
        vhosts=vhosts,
        bot_files=bot_credential_files(config_dir),
    )


__all__ = [
    "COMPOSE_FILE_NAME",
    "DAEMON_CONFIG_NAME",
    "InstallState",
    "InstallationState",
    "bot_credential_files",
    "detect",
    "vhost_candidates",
    "vhost_path",
]
