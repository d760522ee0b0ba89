"""Render every document an installation consists of.

:func:`render` is a pure function of the configuration, the detected
installation state and the installer settings. It never touches the
filesystem: it returns :class:`RenderedArtifact` values which the reconciler
writes once the whole set rendered successfully. Rendering the same inputs
twice yields byte-identical artifacts.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from .config import WEB_SERVERS, EnvConfig, InstallerSettings
from .discovery import COMPOSE_FILE_NAME, DAEMON_CONFIG_NAME, InstallationState, vhost_path
from .templates import TemplateEngine

TELEMETRY_PLUGIN = "SteamTokenDumper"
DAEMON_CULTURE = "de-DE"


class RenderError(RuntimeError):
    """Raised when the artifact set cannot be produced."""


class UnsupportedWebServer(RenderError):
    """``WEB_SERVER`` names something other than ``apache2`` or ``nginx``."""


@dataclass(frozen=True)
class RenderedArtifact:
    """A generated document and where it belongs."""

    name: str
    path: Path
    content: bytes
    mode: int = 0o644
    owner: tuple[int, int] | None = None

    @property
    def text(self) -> str:
        """Return the artifact content decoded as UTF-8."""
        return self.content.decode("utf-8")


def check_web_server(config: EnvConfig) -> str:
    """Return the configured web server or raise :class:`UnsupportedWebServer`."""
    server = config.web_server.strip()
    if server not in WEB_SERVERS:
        location = f" in {config.source}" if config.source is not None else ""
        raise UnsupportedWebServer(
            f"WEB_SERVER must be one of {', '.join(WEB_SERVERS)}; got {config.web_server!r}"
            f"{location}."
        )
    return server


def daemon_config_document(config: EnvConfig) -> dict[str, object]:
    """Return the ASF global configuration payload."""
    return {
        "Headless": False,
        "IPCEnabled": True,
        "IPCSIP": "*",
        "IPCPort": config.port_number,
        "IPCPassword": config.ipc_password,
        "SteamProtocols": 7,
        "ConnectionTimeout": 90,
        "MaxFarmingTime": 10,
        "FarmingDelay": 15,
        "AcceptConfirmationsPeriod": 10,
        "IPC": True,
        "WebProxyIPCAuthentication": True,
        "WebProxyIPCPassword": config.ipc_password,
        "BlockedBots": [],
        "SteamMasterClanID": 0,
        "CurrentCulture": DAEMON_CULTURE,
    }


def _json_bytes(payload: object) -> bytes:
    return (json.dumps(payload, indent=2) + "\n").encode("utf-8")


def render(
    config: EnvConfig,
    state: InstallationState,
    settings: InstallerSettings | None = None,
    *,
    templates: TemplateEngine | None = None,
) -> list[RenderedArtifact]:
    """Return the full artifact set for *config* rooted at ``state.root``."""
    server = check_web_server(config)
    settings = settings or InstallerSettings(root=state.root)
    engine = templates or TemplateEngine.with_overrides(settings.templates_dir)
    root = state.root
    config_dir = root / "config"
    owner = (settings.container_uid, settings.container_gid)
    domain = config.domain
    port = config.port_number

    compose = engine.render_to_string(
        "docker/docker-compose.yml.j2",
        {
            "container_name": settings.container_name,
            "image": settings.image,
            "restart_policy": config.restart_policy,
            "crypt_key": config.crypt_key,
            "timezone": config.timezone,
        },
    )
    site_template = "apache/site.conf.j2" if server == "apache2" else "nginx/site.conf.j2"
    site = engine.render_to_string(
        site_template,
        {
            "server_name": domain,
            "main_domain": config.main_domain,
            "certificate": str(settings.certificate),
            "certificate_key": str(settings.certificate_key),
            "upstream_port": port,
            "error_log": f"asf-{domain}-error.log",
            "access_log": f"asf-{domain}-access.log",
        },
    )
    script_context = {"domain": domain, "root": str(root)}
    auth_helper = engine.render_to_string("scripts/auth-helper.sh.j2", script_context)
    mafile_helper = engine.render_to_string("scripts/import-mafile.sh.j2", script_context)

    return [
        RenderedArtifact(
            name="daemon-config",
            path=config_dir / DAEMON_CONFIG_NAME,
            content=_json_bytes(daemon_config_document(config)),
            mode=0o644,
            owner=owner,
        ),
        RenderedArtifact(
            name="plugin-config",
            path=config_dir / "plugins" / TELEMETRY_PLUGIN / DAEMON_CONFIG_NAME,
            content=_json_bytes({"Enabled": False}),
            mode=0o644,
            owner=owner,
        ),
        RenderedArtifact(
            name="compose-manifest",
            path=root / COMPOSE_FILE_NAME,
            content=compose.encode("utf-8"),
            mode=0o644,
        ),
        RenderedArtifact(
            name=f"{'apache' if server == 'apache2' else 'nginx'}-vhost",
            path=vhost_path(settings, server, domain),
            content=site.encode("utf-8"),
            mode=0o644,
        ),
        RenderedArtifact(
            name="auth-helper",
            path=root / "asf-auth-helper.sh",
            content=auth_helper.encode("utf-8"),
            mode=0o755,
        ),
        RenderedArtifact(
            name="mafile-helper",
            path=root / "asf-import-mafile.sh",
            content=mafile_helper.encode("utf-8"),
            mode=0o755,
        ),
    ]


__all__ = [
    "RenderError",
    "RenderedArtifact",
    "UnsupportedWebServer",
    "check_web_server",
    "daemon_config_document",
    "render",
]
