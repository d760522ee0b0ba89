"""Spot authentication prompts in the ASF container log.

ASF logs one record per line as ``date|process|level|logger|message`` where
the logger is the bot name. :func:`scan` filters a (possibly endless) stream
of such lines lazily and yields an :class:`AuthPrompt` for every line that
asks the operator for a code.
"""
from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from enum import Enum

LOG_FIELD_SEPARATOR = "|"
_LOGGER_FIELD = 3


class PromptMarker(Enum):
    """Substrings that identify authentication related log lines."""

    GET_USER_INPUT = "GetUserInput"
    STEAM_GUARD = "SteamGuard"
    AUTHENTICATOR = "Authenticator"
    AUTHENTICATION_CODE = "authentication code"

    @property
    def needs_code(self) -> bool:
        """Return True when the operator has to supply a code."""
        return self is not PromptMarker.AUTHENTICATOR


@dataclass(frozen=True)
class AuthPrompt:
    """A log line that asks the operator for input."""

    line: str
    marker: PromptMarker
    bot: str | None

    @property
    def command(self) -> str:
        """Return the IPC command the operator should enter."""
        verb = "2fa" if self.marker is PromptMarker.STEAM_GUARD else "input"
        return f"{verb} {self.bot or '<bot>'} <code>"


_MATCH_ORDER = (
    PromptMarker.STEAM_GUARD,
    PromptMarker.GET_USER_INPUT,
    PromptMarker.AUTHENTICATION_CODE,
    PromptMarker.AUTHENTICATOR,
)


def match_marker(line: str) -> PromptMarker | None:
    """Return the most specific marker found in *line*.

    SteamGuard wins over the generic markers, and any marker that asks for a
    code wins over a bare ``Authenticator`` mention.
    """
    for marker in _MATCH_ORDER:
        if marker.value in line:
            return marker
    return None


def bot_name(line: str) -> str | None:
    """Extract the bot name from an ASF log line."""
    parts = line.split(LOG_FIELD_SEPARATOR)
    if len(parts) > _LOGGER_FIELD + 1:
        name = parts[_LOGGER_FIELD].strip()
        return name or None
    inner = [part.strip() for part in parts[1:-1] if part.strip()]
    if not inner:
        return None
    return inner[0].split()[0]


def scan(lines: Iterable[str]) -> Iterator[AuthPrompt]:
    """Yield prompts that need a code from *lines*, consuming them lazily."""
    for line in lines:
        marker = match_marker(line)
        if marker is None or not marker.needs_code:
            continue
        yield AuthPrompt(line=line, marker=marker, bot=bot_name(line))


def guidance(prompt: AuthPrompt, domain: str) -> list[str]:
    """Return the instructions shown for *prompt*."""
    return [
        "Authentication Required!",
        prompt.line,
        "To provide the code via the web interface:",
        f"1. Go to https://{domain}",
        f"2. In the command line tab, enter: {prompt.command}",
    ]


__all__ = [
    "AuthPrompt",
    "PromptMarker",
    "bot_name",
    "guidance",
    "match_marker",
    "scan",
]
