"""Process gateway: the only way the reconciler touches running services.

The reconciler depends on the :class:`ProcessGateway` protocol. The concrete
:class:`SystemGateway` composes the apt, docker, systemd and site providers
and translates their failures into :class:`ApplyError`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from ..config import InstallerSettings
from .apt import COMPOSE_PACKAGE, AptError, AptProvider
from .docker import DockerComposeProvider, DockerError
from .sites import ApacheSiteProvider, NginxSiteProvider, SiteError
from .systemd import SystemdError, SystemdProvider

CONTAINER_SERVICE = "asf"
RUNTIMES = ("docker", "compose", "apache2", "nginx")

_PROVIDER_ERRORS = (AptError, DockerError, SiteError, SystemdError)


class ApplyError(RuntimeError):
    """Raised when an external process call did not have the expected effect."""


class ProcessGateway(Protocol):
    """Calls the reconciler needs from the container runtime and web server."""

    def ensure_installed(self, runtime: str) -> None:
        """Install *runtime* unless it is already available."""

    def stop(self, service: str) -> None:
        """Stop *service*."""

    def start(self, service: str) -> None:
        """Start *service*; succeeds when it is already running."""

    def status(self, service: str) -> bool:
        """Return True when *service* is running."""

    def enable_site(self, server: str, site_path: Path) -> None:
        """Enable the vhost at *site_path* for *server*."""

    def installed_web_servers(self) -> frozenset[str]:
        """Return the web servers present on the host."""


@dataclass(slots=True)
class SystemGateway:
    """Gateway backed by apt, docker compose and systemd on the local host."""

    docker: DockerComposeProvider
    apt: AptProvider = field(default_factory=AptProvider)
    systemd: SystemdProvider = field(default_factory=SystemdProvider)
    apache: ApacheSiteProvider = field(default_factory=ApacheSiteProvider)
    nginx: NginxSiteProvider = field(default_factory=NginxSiteProvider)

    @classmethod
    def from_settings(cls, settings: InstallerSettings) -> SystemGateway:
        """Build a gateway for the installation described by *settings*."""
        return cls(
            docker=DockerComposeProvider(
                project_dir=settings.root,
                container_name=settings.container_name,
            ),
            nginx=NginxSiteProvider(sites_enabled=settings.nginx_sites_enabled),
        )

    def ensure_installed(self, runtime: str) -> None:
        """Install *runtime* (``docker``, ``compose``, ``apache2`` or ``nginx``)."""
        if runtime not in RUNTIMES:
            raise ApplyError(f"Unknown runtime '{runtime}'; expected one of {', '.join(RUNTIMES)}.")
        try:
            if runtime == "docker":
                if not self.apt.command_exists("docker"):
                    self.apt.install_docker_engine()
                    self.systemd.enable("docker")
                    self.systemd.start("docker")
            elif runtime == "compose":
                if not self.docker.compose_available():
                    self.apt.install([COMPOSE_PACKAGE])
                    if not self.docker.compose_available():
                        raise ApplyError(
                            "Docker Compose v2 is still unavailable after installing "
                            f"{COMPOSE_PACKAGE}."
                        )
            elif not self.apt.command_exists(runtime):
                self.apt.update()
                self.apt.install([runtime])
        except _PROVIDER_ERRORS as exc:
            raise ApplyError(f"Failed to install {runtime}: {exc}") from exc

    def stop(self, service: str) -> None:
        """Stop the container project or a system service."""
        try:
            if service == CONTAINER_SERVICE:
                self.docker.down()
            else:
                self.systemd.stop(service)
        except _PROVIDER_ERRORS as exc:
            raise ApplyError(f"Failed to stop {service}: {exc}") from exc

    def start(self, service: str) -> None:
        """Start the container project or a system service."""
        try:
            if service == CONTAINER_SERVICE:
                self.docker.up()
            else:
                self.systemd.start(service)
        except _PROVIDER_ERRORS as exc:
            raise ApplyError(f"Failed to start {service}: {exc}") from exc

    def status(self, service: str) -> bool:
        """Return True when *service* is running."""
        try:
            if service == CONTAINER_SERVICE:
                return self.docker.is_running()
            return self.systemd.is_active(service)
        except _PROVIDER_ERRORS:
            return False

    def enable_site(self, server: str, site_path: Path) -> None:
        """Enable *site_path* for *server*, enabling Apache modules as needed."""
        try:
            if server == "apache2":
                self.apache.enable_modules()
                self.apache.enable(site_path)
            else:
                self.nginx.enable(site_path)
                self.nginx.test_config()
        except (_PROVIDER_ERRORS + (OSError,)) as exc:
            raise ApplyError(f"Failed to enable {server} site {site_path}: {exc}") from exc

    def installed_web_servers(self) -> frozenset[str]:
        """Return which of ``apache2`` and ``nginx`` are installed."""
        return frozenset(name for name in ("apache2", "nginx") if self.apt.command_exists(name))


__all__ = [
    "ApplyError",
    "CONTAINER_SERVICE",
    "ProcessGateway",
    "RUNTIMES",
    "SystemGateway",
]
