"""Systemd provider for the host services asfctl depends on."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass

from .process import run_command


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Start, stop and query system services (``docker``, ``apache2``, ``nginx``)."""

    systemctl_bin: str = "systemctl"

    def enable(self, service: str) -> subprocess.CompletedProcess[str]:
        """Enable *service* at boot."""
        return self._systemctl("enable", service)

    def start(self, service: str) -> subprocess.CompletedProcess[str]:
        """Start *service*; a running service is left as is."""
        return self._systemctl("start", service)

    def stop(self, service: str) -> subprocess.CompletedProcess[str]:
        """Stop *service*."""
        return self._systemctl("stop", service)

    def restart(self, service: str) -> subprocess.CompletedProcess[str]:
        """Restart *service*."""
        return self._systemctl("restart", service)

    def is_active(self, service: str) -> bool:
        """Return True when ``systemctl is-active`` reports *service* active."""
        result = self._systemctl("is-active", service, check=False)
        return result.returncode == 0 and result.stdout.strip() == "active"

    def status(self, service: str) -> subprocess.CompletedProcess[str]:
        """Return the status output for *service*."""
        return self._systemctl("status", service, check=False)

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        service: str,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        return run_command(
            [self.systemctl_bin, command, service],
            error=SystemdError,
            check=check,
        )


__all__ = ["SystemdError", "SystemdProvider"]
