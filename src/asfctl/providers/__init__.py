"""Provider interfaces for asfctl."""
from __future__ import annotations

from .apt import AptError, AptProvider
from .docker import DockerComposeProvider, DockerError
from .gateway import CONTAINER_SERVICE, ApplyError, ProcessGateway, SystemGateway
from .sites import ApacheSiteProvider, NginxSiteProvider, SiteError
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "ApacheSiteProvider",
    "ApplyError",
    "AptError",
    "AptProvider",
    "CONTAINER_SERVICE",
    "DockerComposeProvider",
    "DockerError",
    "NginxSiteProvider",
    "ProcessGateway",
    "SiteError",
    "SystemGateway",
    "SystemdError",
    "SystemdProvider",
]
