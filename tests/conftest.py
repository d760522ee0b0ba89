"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from asfctl.config import EnvConfig, InstallerSettings, write_env


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@dataclass
class FakeGateway:
    """Recording stand-in for the process gateway."""

    installed: set[str] = field(default_factory=set)
    running: set[str] = field(default_factory=set)
    broken: set[str] = field(default_factory=set)
    calls: list[tuple[str, ...]] = field(default_factory=list)

    def ensure_installed(self, runtime: str) -> None:
        self.calls.append(("ensure_installed", runtime))
        self.installed.add(runtime)

    def stop(self, service: str) -> None:
        self.calls.append(("stop", service))
        self.running.discard(service)

    def start(self, service: str) -> None:
        self.calls.append(("start", service))
        if service not in self.broken:
            self.running.add(service)

    def status(self, service: str) -> bool:
        return service in self.running

    def enable_site(self, server: str, site_path: Path) -> None:
        self.calls.append(("enable_site", server, str(site_path)))

    def installed_web_servers(self) -> frozenset[str]:
        return frozenset(name for name in self.installed if name in {"apache2", "nginx"})


@dataclass
class FakePrompter:
    """Prompter answering from queues and recording what it was asked."""

    answers: list[str] = field(default_factory=list)
    confirmations: list[bool] = field(default_factory=list)
    choice: str | None = None
    asked: list[str] = field(default_factory=list)

    def notify(self, message: str) -> None:
        self.asked.append(f"notify:{message}")

    def pause(self, message: str) -> None:
        self.asked.append(f"pause:{message}")

    def edit_file(self, path: Path) -> bool:
        self.asked.append(f"edit:{path}")
        return True

    def confirm(self, message: str, *, default: bool = False) -> bool:
        self.asked.append(f"confirm:{message}")
        return self.confirmations.pop(0) if self.confirmations else default

    def ask(self, message: str, *, default: str | None = None) -> str:
        self.asked.append(f"ask:{message}")
        return self.answers.pop(0) if self.answers else (default or "")

    def ask_secret(self, message: str) -> str:
        return self.ask(message)

    def choose(self, message: str, choices: Sequence[str], *, default: str) -> str:
        self.asked.append(f"choose:{message}")
        return self.choice or default


@pytest.fixture
def settings(tmp_path: Path) -> InstallerSettings:
    """Return installer settings with every location under ``tmp_path``."""
    return InstallerSettings(
        root=tmp_path / "opt" / "asf",
        apache_sites_available=tmp_path / "apache2" / "sites-available",
        nginx_sites_available=tmp_path / "nginx" / "sites-available",
        nginx_sites_enabled=tmp_path / "nginx" / "sites-enabled",
        logs_dir=tmp_path / "logs",
        templates_dir=tmp_path / "templates",
        certificate=tmp_path / "ssl" / "cert.pem",
        certificate_key=tmp_path / "ssl" / "key.pem",
    )


@pytest.fixture
def gateway() -> FakeGateway:
    """Return a fresh recording gateway."""
    return FakeGateway()


@pytest.fixture
def prompter() -> FakePrompter:
    """Return a fresh scripted prompter."""
    return FakePrompter()


@pytest.fixture
def env_writer(settings: InstallerSettings) -> Callable[..., EnvConfig]:
    """Return a helper that writes a valid ``.env`` for *settings*."""

    def _write(**values: str) -> EnvConfig:
        config = EnvConfig(
            main_domain="example.org",
            ipc_password="s3cret-password",
            crypt_key="Y3J5cHQta2V5",
            source=settings.env_path,
        )
        for key, value in values.items():
            config = config.with_value(key, value)
        write_env(settings.env_path, config)
        return config

    return _write
