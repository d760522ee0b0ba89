"""Decide which reverse proxy an installation uses."""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from .config import WEB_SERVERS
from .render import UnsupportedWebServer


@dataclass(frozen=True)
class WebServerPlan:
    """Outcome of :func:`plan_web_server`."""

    server: str
    install: bool
    installed: frozenset[str]

    @property
    def operator_may_choose(self) -> bool:
        """Return True when no web server is installed yet."""
        return not self.installed


def plan_web_server(installed: Iterable[str], preference: str) -> WebServerPlan:
    """Map the detected web servers and the configured preference to a plan.

    The preference always wins; it is installed when missing. An unknown
    preference raises :class:`UnsupportedWebServer` rather than falling back
    to whichever server happens to be installed.
    """
    detected = frozenset(name for name in installed if name in WEB_SERVERS)
    server = preference.strip()
    if server not in WEB_SERVERS:
        raise UnsupportedWebServer(
            f"WEB_SERVER must be one of {', '.join(WEB_SERVERS)}; got {preference!r}."
        )
    return WebServerPlan(server=server, install=server not in detected, installed=detected)


__all__ = ["WebServerPlan", "plan_web_server"]
