"""Site enabling for the Apache and Nginx reverse proxies."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from .process import run_command

APACHE_MODULES = ("proxy", "proxy_http", "proxy_wstunnel", "ssl", "rewrite", "headers")


class SiteError(RuntimeError):
    """Raised when a web server site cannot be enabled."""


@dataclass(slots=True)
class ApacheSiteProvider:
    """Enable Apache sites and modules through the Debian ``a2*`` helpers."""

    a2enmod_bin: str = "a2enmod"
    a2ensite_bin: str = "a2ensite"
    a2query_bin: str = "a2query"

    def enable_modules(
        self,
        modules: Sequence[str] = APACHE_MODULES,
    ) -> subprocess.CompletedProcess[str]:
        """Enable the proxy and TLS modules the vhost relies on."""
        return run_command([self.a2enmod_bin, *modules], error=SiteError)

    def is_enabled(self, site: str) -> bool:
        """Return True when ``a2query`` reports *site* enabled."""
        result = run_command([self.a2query_bin, "-s", site], error=SiteError, check=False)
        return result.returncode == 0

    def enable(self, site_path: Path) -> None:
        """Enable the site whose file is *site_path* unless already enabled."""
        site = site_path.name.removesuffix(".conf")
        if self.is_enabled(site):
            return
        run_command([self.a2ensite_bin, site], error=SiteError)


@dataclass(slots=True)
class NginxSiteProvider:
    """Enable Nginx sites via symlinks in ``sites-enabled``."""

    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    nginx_bin: str = "nginx"

    def enabled_path(self, site_path: Path) -> Path:
        """Return the symlink location for *site_path*."""
        return self.sites_enabled / site_path.name

    def enable(self, site_path: Path) -> None:
        """Enable the site by creating a symlink in sites-enabled."""
        target = self.enabled_path(site_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists() or target.is_symlink():
            try:
                if target.resolve() == site_path.resolve():
                    return
            except FileNotFoundError:
                # Broken symlink; replace it with a fresh one.
                pass
            target.unlink()
        target.symlink_to(site_path)

    def is_enabled(self, site_path: Path) -> bool:
        """Return True when the site is enabled via a sites-enabled symlink."""
        target = self.enabled_path(site_path)
        if not target.is_symlink():
            return False
        try:
            return target.resolve() == site_path.resolve()
        except FileNotFoundError:
            return False

    def test_config(self) -> subprocess.CompletedProcess[str]:
        """Run ``nginx -t`` to validate the configuration."""
        return run_command([self.nginx_bin, "-t"], error=SiteError)


__all__ = ["APACHE_MODULES", "ApacheSiteProvider", "NginxSiteProvider", "SiteError"]
