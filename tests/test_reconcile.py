"""Scenario tests for the reconciliation state machine."""
from __future__ import annotations

import json
import stat
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from asfctl.backups import BackupError
from asfctl.config import EnvConfig, InstallerSettings, MissingDomain, load_env
from asfctl.logging import StructuredLogger
from asfctl.providers.gateway import ApplyError
from asfctl.reconcile import (
    CRASH_FILE,
    Reconciler,
    ReconcileState,
    write_artifact,
)
from asfctl.render import RenderedArtifact, UnsupportedWebServer

S = ReconcileState


def _snapshot(root: Path) -> dict[str, bytes]:
    return {
        str(path.relative_to(root)): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


def _clock(start: datetime | None = None) -> Callable[[], datetime]:
    moments = iter(
        (start or datetime(2026, 10, 19, 8, 0, tzinfo=UTC)) + timedelta(seconds=offset)
        for offset in range(1000)
    )
    return lambda: next(moments)


def _reconciler(settings: InstallerSettings, gateway, **kwargs: object) -> Reconciler:
    kwargs.setdefault("clock", _clock())
    return Reconciler(settings, gateway, **kwargs)  # type: ignore[arg-type]


def test_fresh_root_with_nginx_installs_everything(
    settings: InstallerSettings,
    gateway,
    env_writer: Callable[..., EnvConfig],
) -> None:
    """A fresh root walks every state except BACKUP_COMPLETE."""
    env_writer(WEB_SERVER="nginx")

    result = _reconciler(settings, gateway).run()

    assert result.ok, result.error
    assert result.history == [
        S.INIT,
        S.CONFIG_LOADED,
        S.STATE_DETECTED,
        S.RENDERED,
        S.APPLIED,
        S.DONE,
    ]
    assert result.backup is None
    assert result.web_server == "nginx"
    root = settings.root
    daemon = json.loads((root / "config" / "ASF.json").read_text(encoding="utf-8"))
    assert daemon["IPCPassword"] == "s3cret-password"
    assert daemon["IPCPort"] == 1242
    assert (root / "docker-compose.yml").is_file()
    assert (root / "plugins").is_dir()
    site = settings.nginx_sites_available / "asf-asf.example.org"
    assert "return 301 https://$host$request_uri;" in site.read_text(encoding="utf-8")
    helper = root / "asf-auth-helper.sh"
    assert stat.S_IMODE(helper.stat().st_mode) == 0o755
    assert not list(root.glob("backup_*"))
    assert ("ensure_installed", "nginx") in gateway.calls
    assert ("enable_site", "nginx", str(site)) in gateway.calls
    assert ("stop", "asf") not in gateway.calls
    assert gateway.calls[-2:] == [("start", "asf"), ("start", "nginx")]
    assert len(result.changed) == len(result.artifacts) == 6


def test_fresh_root_server_name_is_full_domain(
    settings: InstallerSettings,
    gateway,
    env_writer: Callable[..., EnvConfig],
) -> None:
    """The Nginx vhost serves the subdomain of the main domain."""
    env_writer(MAIN_DOMAIN="foo.com", ASF_SUBDOMAIN="bot", WEB_SERVER="nginx", ASF_PORT="1242")

    result = _reconciler(settings, gateway).run()

    assert result.state is S.DONE
    site = settings.nginx_sites_available / "asf-bot.foo.com"
    assert "server_name bot.foo.com;" in site.read_text(encoding="utf-8")
    daemon = json.loads((settings.config_dir / "ASF.json").read_text(encoding="utf-8"))
    assert daemon["IPCPort"] == 1242


def test_present_install_backs_up_and_preserves_bot_files(
    settings: InstallerSettings,
    gateway,
    env_writer: Callable[..., EnvConfig],
) -> None:
    """Updating an existing install makes exactly one backup set and keeps bots."""
    env_writer()
    assert _reconciler(settings, gateway).run().ok
    bot = settings.config_dir / "mybot.json"
    bot.write_text('{"SteamLogin": "me", "Enabled": true}\n', encoding="utf-8")
    env_writer(ASF_PORT="1300")

    result = _reconciler(settings, gateway).run()

    assert result.ok, result.error
    assert S.BACKUP_COMPLETE in result.history
    backups = list(settings.root.glob("backup_*"))
    assert len(backups) == 1
    assert (backups[0] / "mybot.json").read_bytes() == bot.read_bytes()
    assert (backups[0] / "ASF.json").is_file()
    assert (backups[0] / "docker-compose.yml").is_file()
    assert result.restored == [bot]
    daemon = json.loads((settings.config_dir / "ASF.json").read_text(encoding="utf-8"))
    assert daemon["IPCPort"] == 1300
    assert bot.read_text(encoding="utf-8") == '{"SteamLogin": "me", "Enabled": true}\n'
    assert ("stop", "asf") in gateway.calls


def test_reconcile_is_idempotent(
    settings: InstallerSettings,
    gateway,
    env_writer: Callable[..., EnvConfig],
) -> None:
    """A second run with unchanged configuration changes no artifact."""
    env_writer()
    first = _reconciler(settings, gateway).run()
    before = {artifact.path: artifact.path.read_bytes() for artifact in first.artifacts}

    second = _reconciler(settings, gateway).run()

    assert second.ok
    assert second.changed == []
    assert second.artifacts == first.artifacts
    assert {path: path.read_bytes() for path in before} == before


def test_missing_domain_fails_before_detection_without_writes(
    settings: InstallerSettings,
    gateway,
    env_writer: Callable[..., EnvConfig],
) -> None:
    """The placeholder domain halts the run before anything is touched."""
    env_writer(MAIN_DOMAIN="example.com")
    before = _snapshot(settings.root)

    result = _reconciler(settings, gateway).run()

    assert result.state is S.FAILED
    assert result.history == [S.INIT, S.FAILED]
    assert result.failed_after is S.INIT
    assert isinstance(result.error, MissingDomain)
    assert _snapshot(settings.root) == before
    assert gateway.calls == []


def test_unsupported_web_server_renders_no_artifacts(
    settings: InstallerSettings,
    gateway,
    env_writer: Callable[..., EnvConfig],
) -> None:
    """``caddy`` is refused and no artifact is produced."""
    env_writer(WEB_SERVER="caddy")

    result = _reconciler(settings, gateway).run()

    assert isinstance(result.error, UnsupportedWebServer)
    assert result.artifacts == []
    assert not (settings.root / "docker-compose.yml").exists()


def test_missing_env_file_is_created_and_offered(
    settings: InstallerSettings,
    gateway,
    prompter,
) -> None:
    """The first run creates the env file, opens it and fails until edited."""
    result = _reconciler(settings, gateway, prompter=prompter).run()

    assert isinstance(result.error, MissingDomain)
    env_path = settings.env_path
    assert stat.S_IMODE(env_path.stat().st_mode) == 0o600
    assert load_env(env_path).ipc_password
    assert f"edit:{env_path}" in prompter.asked


def test_operator_choice_of_web_server_is_persisted(
    settings: InstallerSettings,
    gateway,
    prompter,
    env_writer: Callable[..., EnvConfig],
) -> None:
    """With nothing installed, an interactive operator may pick the server."""
    env_writer()
    prompter.choice = "nginx"

    result = _reconciler(settings, gateway, prompter=prompter, interactive=True).run()

    assert result.ok, result.error
    assert result.web_server == "nginx"
    assert load_env(settings.env_path).web_server == "nginx"
    assert (settings.nginx_sites_available / "asf-asf.example.org").is_file()
    assert not settings.apache_sites_available.exists()


def test_installed_web_server_skips_the_question(
    settings: InstallerSettings,
    gateway,
    prompter,
    env_writer: Callable[..., EnvConfig],
) -> None:
    """The configured server is used as-is once any server is installed."""
    env_writer()
    gateway.installed.add("nginx")
    prompter.choice = "nginx"

    result = _reconciler(settings, gateway, prompter=prompter, interactive=True).run()

    assert result.web_server == "apache2"
    assert not any(item.startswith("choose:") for item in prompter.asked)


def test_services_not_running_fail_apply(
    settings: InstallerSettings,
    gateway,
    env_writer: Callable[..., EnvConfig],
) -> None:
    """A service that does not come up fails the run after rendering."""
    env_writer()
    gateway.broken.add("apache2")

    result = _reconciler(settings, gateway).run()

    assert isinstance(result.error, ApplyError)
    assert result.failed_after is S.RENDERED
    assert "apache2" in str(result.error)


def test_backup_failure_leaves_installation_untouched(
    settings: InstallerSettings,
    gateway,
    env_writer: Callable[..., EnvConfig],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """No artifact is overwritten when the backup cannot be taken."""
    env_writer()
    assert _reconciler(settings, gateway).run().ok
    env_writer(ASF_PORT="1300")
    compose_before = settings.compose_file.read_bytes()
    daemon_before = (settings.config_dir / "ASF.json").read_bytes()

    def fail_backup(*args: object, **kwargs: object) -> None:
        raise BackupError("disk full")

    monkeypatch.setattr("asfctl.reconcile.create_backup_set", fail_backup)

    result = _reconciler(settings, gateway).run()

    assert isinstance(result.error, BackupError)
    assert result.failed_after is S.STATE_DETECTED
    assert settings.compose_file.read_bytes() == compose_before
    assert (settings.config_dir / "ASF.json").read_bytes() == daemon_before


def test_crash_marker_is_removed(
    settings: InstallerSettings,
    gateway,
    env_writer: Callable[..., EnvConfig],
) -> None:
    """A stale daemon crash marker does not survive reconciliation."""
    env_writer()
    crash = settings.config_dir / CRASH_FILE
    crash.parent.mkdir(parents=True)
    crash.write_text("crashed\n", encoding="utf-8")

    assert _reconciler(settings, gateway).run().ok
    assert not crash.exists()


def test_transitions_are_logged(
    settings: InstallerSettings,
    gateway,
    env_writer: Callable[..., EnvConfig],
) -> None:
    """Each transition is recorded as a step of the reconcile operation."""
    env_writer()
    logger = StructuredLogger(settings.logs_dir)

    result = _reconciler(settings, gateway, logger=logger).run()

    record = json.loads(logger.path.read_text(encoding="utf-8").splitlines()[-1])
    assert record["command"] == "reconcile"
    assert record["result"]["status"] == "success"
    assert [step["name"] for step in record["steps"]] == [
        f"reconcile.{state.value}" for state in result.history[1:]
    ]


def test_tls_preflight_is_reported_not_fatal(
    settings: InstallerSettings,
    gateway,
    env_writer: Callable[..., EnvConfig],
) -> None:
    """Missing certificates are reported but do not fail the run."""
    env_writer()

    result = _reconciler(settings, gateway).run()

    assert result.ok
    assert result.tls is not None
    assert result.tls.has_errors


def test_write_artifact_reports_changes(tmp_path: Path) -> None:
    """Writing identical content reports no change but fixes the mode."""
    artifact = RenderedArtifact(name="demo", path=tmp_path / "a" / "demo.sh", content=b"x\n",
                                mode=0o755)

    assert write_artifact(artifact) is True
    artifact.path.chmod(0o600)
    assert write_artifact(artifact) is False
    assert stat.S_IMODE(artifact.path.stat().st_mode) == 0o755
    assert [path.name for path in artifact.path.parent.iterdir()] == ["demo.sh"]


def test_installed_web_server_is_not_reinstalled(
    settings: InstallerSettings,
    gateway,
    env_writer: Callable[..., EnvConfig],
) -> None:
    """Only a missing web server is installed; docker is always ensured."""
    gateway.installed.add("nginx")
    env_writer(WEB_SERVER="nginx")

    result = _reconciler(settings, gateway).run()

    assert result.ok, result.error
    assert result.web_server_plan is not None
    assert result.web_server_plan.install is False
    assert ("ensure_installed", "docker") in gateway.calls
    assert ("ensure_installed", "nginx") not in gateway.calls


def test_preferred_server_installed_next_to_other_server(
    settings: InstallerSettings,
    gateway,
    env_writer: Callable[..., EnvConfig],
) -> None:
    """Another installed server does not replace the configured one."""
    gateway.installed.add("apache2")
    env_writer(WEB_SERVER="nginx")

    result = _reconciler(settings, gateway).run()

    assert result.ok, result.error
    assert result.web_server == "nginx"
    assert ("ensure_installed", "nginx") in gateway.calls
    assert ("ensure_installed", "apache2") not in gateway.calls
