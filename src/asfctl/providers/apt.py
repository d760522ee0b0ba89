"""APT provider: package installation and the Docker CE repository."""
from __future__ import annotations

import os
import shutil
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .process import run_command

DOCKER_GPG_URL = "https://download.docker.com/linux/ubuntu/gpg"
DOCKER_REPO_URL = "https://download.docker.com/linux/ubuntu"
DOCKER_PREREQUISITES = (
    "apt-transport-https",
    "ca-certificates",
    "curl",
    "software-properties-common",
    "gnupg",
    "lsb-release",
)
DOCKER_PACKAGES = ("docker-ce", "docker-ce-cli", "containerd.io", "docker-compose-plugin")
COMPOSE_PACKAGE = "docker-compose-plugin"


class AptError(RuntimeError):
    """Raised when package installation fails."""


@dataclass(slots=True)
class AptProvider:
    """Install Debian/Ubuntu packages non-interactively."""

    apt_bin: str = "apt-get"
    keyring: Path = Path("/usr/share/keyrings/docker-archive-keyring.gpg")
    sources_list: Path = Path("/etc/apt/sources.list.d/docker.list")
    which: Callable[[str], str | None] = field(default=shutil.which)

    def command_exists(self, name: str) -> bool:
        """Return True when *name* resolves on ``PATH``."""
        return self.which(name) is not None

    def update(self) -> subprocess.CompletedProcess[str]:
        """Refresh the package index."""
        return self._apt("update")

    def install(self, packages: Sequence[str]) -> subprocess.CompletedProcess[str]:
        """Install *packages*."""
        return self._apt("install", "-y", *packages)

    def add_docker_repository(self) -> None:
        """Install Docker's signing key and register its stable repository."""
        key = run_command(["curl", "-fsSL", DOCKER_GPG_URL], error=AptError)
        run_command(
            ["gpg", "--batch", "--yes", "--dearmor", "-o", str(self.keyring)],
            error=AptError,
            input_data=key.stdout.encode("utf-8"),
        )
        arch = run_command(["dpkg", "--print-architecture"], error=AptError).stdout.strip()
        codename = run_command(["lsb_release", "-cs"], error=AptError).stdout.strip()
        entry = (
            f"deb [arch={arch} signed-by={self.keyring}] {DOCKER_REPO_URL} {codename} stable\n"
        )
        try:
            self.sources_list.parent.mkdir(parents=True, exist_ok=True)
            self.sources_list.write_text(entry, encoding="utf-8")
        except OSError as exc:
            raise AptError(f"Failed to write {self.sources_list}: {exc}") from exc

    def install_docker_engine(self) -> None:
        """Install Docker CE and the compose plugin from Docker's repository."""
        self.update()
        self.install(DOCKER_PREREQUISITES)
        self.add_docker_repository()
        self.update()
        self.install(DOCKER_PACKAGES)

    # ------------------------------------------------------------------
    def _apt(self, *args: str) -> subprocess.CompletedProcess[str]:
        env = dict(os.environ)
        env["DEBIAN_FRONTEND"] = "noninteractive"
        return run_command([self.apt_bin, *args], error=AptError, env=env)


__all__ = [
    "AptError",
    "AptProvider",
    "COMPOSE_PACKAGE",
    "DOCKER_PACKAGES",
    "DOCKER_PREREQUISITES",
]
