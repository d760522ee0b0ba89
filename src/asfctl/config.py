"""Configuration handling for asfctl.

Two kinds of configuration live here:

``EnvConfig``
    The operator-facing ``.env`` file (``/opt/asf/.env`` by default). It is a
    flat ``KEY=value`` document created on first run with generated secrets,
    edited by hand, and re-read and re-validated on every run.

``InstallerSettings``
    Where asfctl puts things on the host. Values are resolved in order:

    1. Built-in defaults.
    2. ``/etc/asfctl/settings.yml`` (or the file named by ``ASFCTL_SETTINGS_FILE``).
    3. Environment variables prefixed with ``ASFCTL_``.
    4. Explicit overrides supplied programmatically (CLI flags).

    Environment values are coerced via PyYAML's ``safe_load`` so numbers are
    parsed naturally, e.g. ``export ASFCTL_CONTAINER_UID=1001``.
"""
from __future__ import annotations

import base64
import os
import re
import secrets
import string
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import TYPE_CHECKING

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered by packaging
    raise RuntimeError(
        "PyYAML is required to load asfctl settings. Install with "
        "`pip install asfctl` or ensure PyYAML>=6.0 is available."
    ) from exc

if TYPE_CHECKING:
    from .prompts import Prompter


PLACEHOLDER_DOMAIN = "example.com"
WEB_SERVERS = ("apache2", "nginx")
PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*()-+="
PASSWORD_LENGTH = 32
CRYPT_KEY_BYTES = 32

ENV_PREFIX = "ASFCTL_"
SETTINGS_ENV_VAR = f"{ENV_PREFIX}SETTINGS_FILE"
DEFAULT_SETTINGS_FILE = Path("/etc/asfctl/settings.yml")

# Maps .env keys to EnvConfig attributes, in file order.
ENV_KEYS: dict[str, str] = {
    "MAIN_DOMAIN": "main_domain",
    "ASF_SUBDOMAIN": "asf_subdomain",
    "ASF_IPC_PASSWORD": "ipc_password",
    "ASF_CRYPT_KEY": "crypt_key",
    "WEB_SERVER": "web_server",
    "ASF_RESTART_POLICY": "restart_policy",
    "ASF_PORT": "port",
    "TZ": "timezone",
}

_ENV_SECTIONS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Domain Settings", ("MAIN_DOMAIN", "ASF_SUBDOMAIN")),
    ("Security", ("ASF_IPC_PASSWORD", "ASF_CRYPT_KEY")),
    ("Web Server (apache2 or nginx)", ("WEB_SERVER",)),
    ("Docker Settings", ("ASF_RESTART_POLICY", "ASF_PORT")),
    ("Time Zone", ("TZ",)),
)

_ENV_LINE = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.*?)\s*$")


class ConfigError(RuntimeError):
    """Raised when configuration is missing or invalid."""


class MissingDomain(ConfigError):
    """``MAIN_DOMAIN`` is empty or still the placeholder."""


class MissingSubdomain(ConfigError):
    """``ASF_SUBDOMAIN`` is empty."""


class InvalidPort(ConfigError):
    """``ASF_PORT`` is not a usable TCP port."""


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Return a random IPC password drawn from :data:`PASSWORD_ALPHABET`."""
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def generate_crypt_key() -> str:
    """Return a base64-encoded 32 byte random key."""
    return base64.b64encode(secrets.token_bytes(CRYPT_KEY_BYTES)).decode("ascii")


def parse_port(value: str, *, location: Path | None = None) -> int:
    """Return *value* as a TCP port number or raise :class:`InvalidPort`."""
    where = f" in {location}" if location is not None else ""
    try:
        port = int(value.strip())
    except ValueError:
        raise InvalidPort(f"ASF_PORT must be an integer, got {value!r}{where}.") from None
    if not 1 <= port <= 65535:
        raise InvalidPort(f"ASF_PORT must be between 1 and 65535, got {port}{where}.")
    return port


@dataclass(frozen=True)
class EnvConfig:
    """Immutable snapshot of the ``.env`` configuration."""

    main_domain: str = PLACEHOLDER_DOMAIN
    asf_subdomain: str = "asf"
    ipc_password: str = ""
    crypt_key: str = ""
    web_server: str = "apache2"
    restart_policy: str = "unless-stopped"
    port: str = "1242"
    timezone: str = "Europe/Berlin"
    extra: tuple[tuple[str, str], ...] = ()
    source: Path | None = field(default=None, compare=False)

    @property
    def domain(self) -> str:
        """Return the fully qualified domain ASF is served on."""
        return f"{self.asf_subdomain}.{self.main_domain}"

    @property
    def port_number(self) -> int:
        """Return ``ASF_PORT`` as an integer (raises :class:`InvalidPort`)."""
        return parse_port(self.port, location=self.source)

    @property
    def url(self) -> str:
        """Return the public HTTPS URL."""
        return f"https://{self.domain}"

    def to_mapping(self) -> dict[str, str]:
        """Return the ``KEY -> value`` mapping persisted in the env file."""
        mapping = {key: str(getattr(self, attr)) for key, attr in ENV_KEYS.items()}
        mapping.update(dict(self.extra))
        return mapping

    @classmethod
    def from_mapping(
        cls,
        mapping: Mapping[str, str],
        *,
        source: Path | None = None,
    ) -> EnvConfig:
        """Build a configuration from *mapping*, keeping defaults for missing keys."""
        values: dict[str, object] = {}
        extra: list[tuple[str, str]] = []
        for key, value in mapping.items():
            attr = ENV_KEYS.get(key)
            if attr is None:
                extra.append((key, value))
            else:
                values[attr] = value
        return cls(**values, extra=tuple(extra), source=source)  # type: ignore[arg-type]

    def with_value(self, key: str, value: str) -> EnvConfig:
        """Return a copy with ``KEY`` set to *value*."""
        attr = ENV_KEYS.get(key)
        if attr is not None:
            return replace(self, **{attr: value})
        extra = [(name, item) for name, item in self.extra if name != key]
        extra.append((key, value))
        return replace(self, extra=tuple(extra))


def validate(config: EnvConfig) -> None:
    """Raise a :class:`ConfigError` subclass when *config* cannot be rendered."""
    location = config.source if config.source is not None else ".env"
    domain = config.main_domain.strip()
    if not domain or domain == PLACEHOLDER_DOMAIN:
        raise MissingDomain(
            f"MAIN_DOMAIN is not set or still has the default value {PLACEHOLDER_DOMAIN!r}. "
            f"Edit {location} and set a valid domain."
        )
    if not config.asf_subdomain.strip():
        raise MissingSubdomain(
            f"ASF_SUBDOMAIN is not set. Edit {location} and set a valid subdomain."
        )
    parse_port(config.port, location=config.source)


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1]
    return value


def parse_env(text: str) -> dict[str, str]:
    """Parse ``KEY=value`` lines, ignoring comments and blank lines."""
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        match = _ENV_LINE.match(line)
        if match is None:
            continue
        key, value = match.groups()
        values[key] = _unquote(value)
    return values


def format_env(config: EnvConfig) -> str:
    """Render *config* as an annotated env file."""
    mapping = config.to_mapping()
    lines = ["# ASF Environment Configuration", ""]
    for title, keys in _ENV_SECTIONS:
        lines.append(f"# {title}")
        lines.extend(f"{key}={mapping[key]}" for key in keys)
        lines.append("")
    if config.extra:
        lines.append("# Additional Settings")
        lines.extend(f"{key}={value}" for key, value in config.extra)
        lines.append("")
    return "\n".join(lines)


def _atomic_write_text(path: Path, text: str, mode: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except OSError as exc:
        raise ConfigError(f"Failed to write {path}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)


def write_env(path: Path, config: EnvConfig) -> None:
    """Persist *config* to *path* with owner-only permissions."""
    _atomic_write_text(path, format_env(config), 0o600)


def load_env(path: Path) -> EnvConfig:
    """Read the env file at *path* and overlay it on the defaults."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to read {path}: {exc}") from exc
    return EnvConfig.from_mapping(parse_env(text), source=path)


def init_env(path: Path) -> EnvConfig:
    """Create a fresh env file at *path* with generated secrets."""
    config = EnvConfig(
        ipc_password=generate_password(),
        crypt_key=generate_crypt_key(),
        source=path,
    )
    write_env(path, config)
    return config


def load_or_init(path: Path, prompter: Prompter | None = None) -> EnvConfig:
    """Load the env file at *path*, creating and offering it for editing when absent.

    When the file is created the operator is given a chance to edit it in an
    interactive editor before it is read back. Without a *prompter* (or when
    no editor is installed) the path is reported and the defaults are used,
    which then fail validation until the file is edited.
    """
    if not path.exists():
        init_env(path)
        if prompter is not None:
            prompter.notify(f"Default configuration created at {path}.")
            prompter.pause("Press any key to open it for editing...")
            prompter.edit_file(path)
    return load_env(path)


def update_env_value(path: Path, key: str, value: str) -> None:
    """Rewrite ``KEY`` in the env file at *path*, appending it when missing."""
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise ConfigError(f"Failed to read {path}: {exc}") from exc
    replaced = False
    updated: list[str] = []
    for line in lines:
        match = _ENV_LINE.match(line)
        if match is not None and match.group(1) == key and not line.lstrip().startswith("#"):
            if not replaced:
                updated.append(f"{key}={value}")
                replaced = True
            continue
        updated.append(line)
    if not replaced:
        updated.append(f"{key}={value}")
    _atomic_write_text(path, "\n".join(updated) + "\n", 0o600)


@dataclass(frozen=True)
class InstallerSettings:
    """Resolved filesystem locations and runtime constants."""

    root: Path = Path("/opt/asf")
    env_file: Path | None = None
    apache_sites_available: Path = Path("/etc/apache2/sites-available")
    nginx_sites_available: Path = Path("/etc/nginx/sites-available")
    nginx_sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    logs_dir: Path = Path("/var/log/asfctl")
    templates_dir: Path = Path("/etc/asfctl/templates")
    certificate: Path = Path("/etc/ssl/cert.pem")
    certificate_key: Path = Path("/etc/ssl/key.pem")
    container_uid: int = 1000
    container_gid: int = 1000
    container_name: str = "asf"
    image: str = "justarchi/archisteamfarm:latest"

    @property
    def env_path(self) -> Path:
        """Return the env file location (``<root>/.env`` unless overridden)."""
        return self.env_file if self.env_file is not None else self.root / ".env"

    @property
    def config_dir(self) -> Path:
        """Return the daemon config tree mounted into the container."""
        return self.root / "config"

    @property
    def plugins_dir(self) -> Path:
        """Return the plugins tree mounted into the container."""
        return self.root / "plugins"

    @property
    def compose_file(self) -> Path:
        """Return the path of the compose manifest."""
        return self.root / "docker-compose.yml"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            payload[item.name] = str(value) if isinstance(value, Path) else value
        return payload


_PATH_SETTINGS = {
    item.name for item in fields(InstallerSettings) if item.name not in {
        "container_uid",
        "container_gid",
        "container_name",
        "image",
    }
}
_INT_SETTINGS = {"container_uid", "container_gid"}


def load_settings(
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> InstallerSettings:
    """Resolve :class:`InstallerSettings` from defaults, file, environment and overrides."""
    environ = os.environ if env is None else env
    raw: dict[str, object] = {}

    settings_file = Path(environ.get(SETTINGS_ENV_VAR, str(DEFAULT_SETTINGS_FILE)))
    if settings_file.exists():
        raw.update(_load_yaml_file(settings_file))

    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX) or key == SETTINGS_ENV_VAR:
            continue
        raw[key[len(ENV_PREFIX):].lower()] = _coerce_value(value)

    for key, value in (overrides or {}).items():
        if value is not None:
            raw[key] = value

    return _build_settings(raw)


def _load_yaml_file(path: Path) -> dict[str, object]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Failed to read settings file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Settings file {path} must contain a mapping.")
    return {str(key): value for key, value in data.items()}


def _coerce_value(raw: str) -> object:
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


def _build_settings(raw: Mapping[str, object]) -> InstallerSettings:
    known = {item.name for item in fields(InstallerSettings)}
    values: dict[str, object] = {}
    for key, value in raw.items():
        if key not in known:
            raise ConfigError(f"Unknown setting '{key}'.")
        if key in _PATH_SETTINGS:
            values[key] = Path(str(value)).expanduser()
        elif key in _INT_SETTINGS:
            if isinstance(value, bool) or not isinstance(value, (int, str)):
                raise ConfigError(f"Setting '{key}' must be an integer.")
            try:
                values[key] = int(value)
            except ValueError:
                raise ConfigError(f"Setting '{key}' must be an integer, got {value!r}.") from None
        else:
            values[key] = str(value)
    return InstallerSettings(**values)  # type: ignore[arg-type]


__all__ = [
    "CRYPT_KEY_BYTES",
    "ConfigError",
    "ENV_KEYS",
    "EnvConfig",
    "InstallerSettings",
    "InvalidPort",
    "MissingDomain",
    "MissingSubdomain",
    "PASSWORD_ALPHABET",
    "PASSWORD_LENGTH",
    "PLACEHOLDER_DOMAIN",
    "WEB_SERVERS",
    "format_env",
    "generate_crypt_key",
    "generate_password",
    "init_env",
    "load_env",
    "load_or_init",
    "load_settings",
    "parse_env",
    "parse_port",
    "update_env_value",
    "validate",
    "write_env",
]
