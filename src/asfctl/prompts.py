"""Operator interaction for asfctl.

Everything that blocks on a human goes through a :class:`Prompter` so the
reconciler and operator tools can be exercised without a terminal. The
console implementation uses Typer prompts and a Rich console; the
non-interactive implementation answers with defaults and never blocks.
"""
from __future__ import annotations

import shutil
import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Protocol

import typer
from rich.console import Console

EDITOR_PREFERENCE: tuple[str, ...] = ("nano", "vim", "vi")


class PromptUnavailableError(RuntimeError):
    """Raised when an answer is required but no operator is attached."""


class Prompter(Protocol):
    """Interactive collaborator used by the reconciler and operator tools."""

    def notify(self, message: str) -> None:
        """Show *message* to the operator."""

    def pause(self, message: str) -> None:
        """Block until the operator acknowledges *message*."""

    def edit_file(self, path: Path) -> bool:
        """Open *path* in an editor, returning ``False`` when none is available."""

    def confirm(self, message: str, *, default: bool = False) -> bool:
        """Ask a yes/no question."""

    def ask(self, message: str, *, default: str | None = None) -> str:
        """Ask for a line of text."""

    def ask_secret(self, message: str) -> str:
        """Ask for a line of text without echoing it."""

    def choose(self, message: str, choices: Sequence[str], *, default: str) -> str:
        """Ask the operator to pick one of *choices*."""


def find_editor(
    preference: Sequence[str] = EDITOR_PREFERENCE,
    *,
    which: Callable[[str], str | None] = shutil.which,
) -> str | None:
    """Return the first editor from *preference* found on ``PATH``."""
    for name in preference:
        resolved = which(name)
        if resolved:
            return resolved
    return None


class ConsolePrompter:
    """Prompter backed by the controlling terminal."""

    def __init__(
        self,
        console: Console | None = None,
        *,
        editors: Sequence[str] = EDITOR_PREFERENCE,
    ) -> None:
        """Bind the prompter to *console* and an editor preference list."""
        self.console = console or Console()
        self.editors = tuple(editors)

    def notify(self, message: str) -> None:
        """Print *message*."""
        self.console.print(message)

    def pause(self, message: str) -> None:
        """Wait for a key press."""
        typer.pause(message)

    def edit_file(self, path: Path) -> bool:
        """Open *path* in the first available editor."""
        editor = find_editor(self.editors)
        if editor is None:
            self.console.print(
                f"[red]No text editor found. Please edit {path} manually.[/red]"
            )
            return False
        subprocess.run([editor, str(path)], check=False)  # noqa: S603
        return True

    def confirm(self, message: str, *, default: bool = False) -> bool:
        """Ask a yes/no question on the terminal."""
        return typer.confirm(message, default=default)

    def ask(self, message: str, *, default: str | None = None) -> str:
        """Ask for a line of text on the terminal."""
        answer: str = typer.prompt(message, default=default or "", show_default=bool(default))
        return answer.strip()

    def ask_secret(self, message: str) -> str:
        """Ask for hidden input on the terminal."""
        answer: str = typer.prompt(message, default="", hide_input=True, show_default=False)
        return answer

    def choose(self, message: str, choices: Sequence[str], *, default: str) -> str:
        """Offer a numbered menu and return the selected entry."""
        self.console.print(message)
        for index, choice in enumerate(choices, start=1):
            self.console.print(f"{index}) {choice}")
        default_index = str(list(choices).index(default) + 1) if default in choices else "1"
        while True:
            raw = typer.prompt(
                f"Enter your choice (1-{len(choices)})",
                default=default_index,
            ).strip()
            if raw.isdigit() and 1 <= int(raw) <= len(choices):
                return choices[int(raw) - 1]
            self.console.print(f"[red]Invalid choice. Please enter 1-{len(choices)}.[/red]")


class NonInteractivePrompter:
    """Prompter for unattended runs: defaults only, never blocks."""

    def __init__(self, console: Console | None = None) -> None:
        """Bind the prompter to *console* for notifications."""
        self.console = console or Console()

    def notify(self, message: str) -> None:
        """Print *message*."""
        self.console.print(message)

    def pause(self, message: str) -> None:
        """Do not wait."""

    def edit_file(self, path: Path) -> bool:
        """Report where the file lives instead of opening an editor."""
        self.console.print(f"[yellow]Please edit {path} and run asfctl again.[/yellow]")
        return False

    def confirm(self, message: str, *, default: bool = False) -> bool:
        """Return *default*."""
        return default

    def ask(self, message: str, *, default: str | None = None) -> str:
        """Return *default* or fail when an answer is required."""
        if default is None:
            raise PromptUnavailableError(f"An answer is required for: {message}")
        return default

    def ask_secret(self, message: str) -> str:
        """Fail: secrets cannot be defaulted."""
        raise PromptUnavailableError(f"An answer is required for: {message}")

    def choose(self, message: str, choices: Sequence[str], *, default: str) -> str:
        """Return *default*."""
        return default


__all__ = [
    "ConsolePrompter",
    "EDITOR_PREFERENCE",
    "NonInteractivePrompter",
    "PromptUnavailableError",
    "Prompter",
    "find_editor",
]
