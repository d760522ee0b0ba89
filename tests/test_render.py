"""Tests for artifact rendering."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from asfctl.config import EnvConfig, InstallerSettings, InvalidPort
from asfctl.discovery import InstallationState, InstallState
from asfctl.render import (
    RenderedArtifact,
    UnsupportedWebServer,
    daemon_config_document,
    render,
)
from asfctl.templates import TemplateEngine


def _config(**overrides: str) -> EnvConfig:
    config = EnvConfig(main_domain="example.org", ipc_password="pw!", crypt_key="a2V5")
    for key, value in overrides.items():
        config = config.with_value(key, value)
    return config


def _absent(settings: InstallerSettings) -> InstallationState:
    return InstallationState(state=InstallState.ABSENT, root=settings.root)


def _by_name(artifacts: list[RenderedArtifact]) -> dict[str, RenderedArtifact]:
    return {artifact.name: artifact for artifact in artifacts}


def test_render_is_pure_and_deterministic(settings: InstallerSettings) -> None:
    """Identical inputs render identical artifacts and touch no files."""
    first = render(_config(), _absent(settings), settings)
    second = render(_config(), _absent(settings), settings)

    assert first == second
    assert not settings.root.exists()
    assert not settings.apache_sites_available.exists()


def test_render_produces_full_artifact_set(settings: InstallerSettings) -> None:
    """Every document of an installation is rendered with its location and mode."""
    artifacts = _by_name(render(_config(), _absent(settings), settings))

    assert set(artifacts) == {
        "daemon-config",
        "plugin-config",
        "compose-manifest",
        "apache-vhost",
        "auth-helper",
        "mafile-helper",
    }
    root = settings.root
    assert artifacts["daemon-config"].path == root / "config" / "ASF.json"
    assert artifacts["daemon-config"].owner == (1000, 1000)
    assert artifacts["plugin-config"].path == (
        root / "config" / "plugins" / "SteamTokenDumper" / "ASF.json"
    )
    assert artifacts["compose-manifest"].path == root / "docker-compose.yml"
    assert artifacts["apache-vhost"].path == (
        settings.apache_sites_available / "asf-asf.example.org.conf"
    )
    assert artifacts["auth-helper"].mode == 0o755
    assert artifacts["mafile-helper"].mode == 0o755


def test_daemon_config_document_fields() -> None:
    """The daemon config carries the IPC password and port."""
    document = daemon_config_document(_config(ASF_PORT="8080"))

    assert document["IPCPort"] == 8080
    assert document["IPCPassword"] == "pw!"
    assert document["WebProxyIPCPassword"] == "pw!"
    assert document["IPCEnabled"] is True
    assert document["Headless"] is False
    assert document["CurrentCulture"] == "de-DE"


def test_json_artifacts_are_pretty_printed(settings: InstallerSettings) -> None:
    """JSON artifacts parse back and end with a newline."""
    artifacts = _by_name(render(_config(), _absent(settings), settings))

    daemon = artifacts["daemon-config"].text
    assert daemon.endswith("\n")
    assert json.loads(daemon)["IPCPassword"] == "pw!"
    assert json.loads(artifacts["plugin-config"].text) == {"Enabled": False}


def test_compose_manifest_content(settings: InstallerSettings) -> None:
    """The compose manifest pins the image, restart policy and secrets."""
    artifacts = _by_name(
        render(_config(TZ="UTC", ASF_RESTART_POLICY="always"), _absent(settings), settings)
    )
    compose = artifacts["compose-manifest"].text

    assert "image: justarchi/archisteamfarm:latest" in compose
    assert "restart: always" in compose
    assert "ASF_CRYPTKEY=a2V5" in compose
    assert "TZ=UTC" in compose
    assert 'network_mode: "host"' in compose
    assert "version:" not in compose


def test_apache_vhost_content(settings: InstallerSettings) -> None:
    """Apache redirects HTTP and proxies HTTPS to the IPC port."""
    artifacts = _by_name(render(_config(ASF_PORT="1300"), _absent(settings), settings))
    site = artifacts["apache-vhost"].text

    assert "Redirect permanent / https://asf.example.org/" in site
    assert "ProxyPass / http://localhost:1300/" in site
    assert "ServerAdmin webmaster@example.org" in site
    assert f"SSLCertificateFile {settings.certificate}" in site
    assert "${APACHE_LOG_DIR}/asf-asf.example.org-error.log" in site


def test_nginx_vhost_content(settings: InstallerSettings) -> None:
    """Nginx redirects with the request host and forwards proxy headers."""
    artifacts = _by_name(render(_config(WEB_SERVER="nginx"), _absent(settings), settings))

    assert "apache-vhost" not in artifacts
    vhost = artifacts["nginx-vhost"]
    assert vhost.path == settings.nginx_sites_available / "asf-asf.example.org"
    site = vhost.text
    assert "return 301 https://$host$request_uri;" in site
    assert "proxy_pass http://localhost:1242;" in site
    assert "proxy_set_header X-Forwarded-Proto $scheme;" in site
    assert "ssl_protocols TLSv1.2 TLSv1.3;" in site


def test_helper_scripts_reference_root_and_domain(settings: InstallerSettings) -> None:
    """Helper scripts delegate to the CLI with the install root and domain."""
    artifacts = _by_name(render(_config(), _absent(settings), settings))

    auth = artifacts["auth-helper"].text
    assert auth.startswith("#!/bin/sh")
    assert 'ASF_DOMAIN="asf.example.org"' in auth
    assert f'--root "{settings.root}" auth-watch' in auth
    assert "import-mafile" in artifacts["mafile-helper"].text


def test_unsupported_web_server_renders_nothing(settings: InstallerSettings) -> None:
    """Anything but apache2 or nginx is refused."""
    with pytest.raises(UnsupportedWebServer):
        render(_config(WEB_SERVER="caddy"), _absent(settings), settings)


def test_invalid_port_is_refused(settings: InstallerSettings) -> None:
    """The IPC port must be numeric."""
    with pytest.raises(InvalidPort):
        render(_config(ASF_PORT="http"), _absent(settings), settings)


def test_override_templates_take_precedence(settings: InstallerSettings) -> None:
    """Templates in the override directory shadow the built-in ones."""
    override = settings.templates_dir / "nginx" / "site.conf.j2"
    override.parent.mkdir(parents=True)
    override.write_text("custom {{ server_name }}\n", encoding="utf-8")

    artifacts = _by_name(
        render(
            _config(WEB_SERVER="nginx"),
            _absent(settings),
            settings,
            templates=TemplateEngine.with_overrides(settings.templates_dir),
        )
    )

    assert artifacts["nginx-vhost"].content == b"custom asf.example.org\n"


def test_render_defaults_settings_to_state_root(tmp_path: Path) -> None:
    """Without settings the artifacts are rooted at the detected root."""
    state = InstallationState(state=InstallState.ABSENT, root=tmp_path / "asf")

    artifacts = _by_name(render(_config(), state))

    assert artifacts["compose-manifest"].path == tmp_path / "asf" / "docker-compose.yml"
