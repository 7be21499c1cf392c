"""Lifecycle configuration and the layered resolver that builds it."""

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from .errors import ConfigError

ENV_DOMAIN = "LETSENCRYPT_DOMAIN"
ENV_EMAIL = "LETSENCRYPT_EMAIL"
ENV_STAGING = "LETSENCRYPT_STAGING"
ENV_CONFIG_FILE = "CERT_LIFECYCLE_CONFIG"

# Environment variable -> LifecycleConfig field
ENV_FIELDS = {
    ENV_EMAIL: "contact_email",
    ENV_STAGING: "staging",
    "CERT_LIFECYCLE_PROJECT_DIR": "project_dir",
    "CERT_LIFECYCLE_CERTS_DIR": "certs_dir",
    "CERT_LIFECYCLE_WEBROOT_DIR": "webroot_dir",
    "CERT_LIFECYCLE_LOGS_DIR": "logs_dir",
    "CERT_LIFECYCLE_VALIDITY_DAYS": "default_validity_days",
}

# Paths on the host; agent_* paths live inside the ACME container
HOST_PATH_FIELDS = ("project_dir", "certs_dir", "webroot_dir", "logs_dir")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass
class LifecycleConfig:
    """Paths, defaults and collaborator names for one lifecycle run.

    ``certs_dir``, ``webroot_dir`` and ``logs_dir`` default to the layout the
    compose project mounts into the nginx and certbot containers, relative to
    ``project_dir``.
    """

    project_dir: Path = field(default_factory=Path.cwd)
    certs_dir: Path | None = None
    webroot_dir: Path | None = None
    logs_dir: Path | None = None
    contact_email: str | None = None
    staging: bool = False
    default_validity_days: int = 365
    key_size: int = 2048
    compose_command: tuple[str, ...] = ("docker", "compose")
    compose_profile: str = "nginx"
    proxy_service: str = "nginx"
    acme_service: str = "certbot"
    agent_webroot: str = "/var/www/certbot"
    agent_certs_dir: str = "/etc/letsencrypt"
    reload_command: tuple[str, ...] = ("nginx", "-s", "reload")
    config_test_command: tuple[str, ...] = ("nginx", "-t")
    startup_timeout: float = 30.0
    ready_host: str | None = None
    ready_port: int = 80

    def __post_init__(self) -> None:
        self.project_dir = Path(self.project_dir)
        if self.certs_dir is None:
            self.certs_dir = self.project_dir / "nginx" / "certs"
        if self.webroot_dir is None:
            self.webroot_dir = self.project_dir / "certbot" / "www"
        if self.logs_dir is None:
            self.logs_dir = self.project_dir / "certbot" / "logs"
        self.certs_dir = Path(self.certs_dir)
        self.webroot_dir = Path(self.webroot_dir)
        self.logs_dir = Path(self.logs_dir)
        self.compose_command = tuple(self.compose_command)
        self.reload_command = tuple(self.reload_command)
        self.config_test_command = tuple(self.config_test_command)

    @property
    def fullchain_path(self) -> Path:
        return self.certs_dir / "fullchain.pem"

    @property
    def private_key_path(self) -> Path:
        return self.certs_dir / "privkey.pem"

    @property
    def live_dir(self) -> Path:
        return self.certs_dir / "live"


def parse_bool(value: Any, name: str) -> bool:
    """Parse true/false style values from the environment or a config file."""
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(f"{name} must be true or false, got {value!r}")


def parse_positive_int(value: Any, name: str) -> int:
    """Parse a strictly positive integer, rejecting bools and fractional values."""
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a positive integer, got {value!r}")
    if isinstance(value, int):
        number = value
    else:
        text = str(value).strip()
        if not (text.isascii() and text.isdigit()):
            raise ConfigError(f"{name} must be a positive integer, got {value!r}")
        number = int(text)
    if number <= 0:
        raise ConfigError(f"{name} must be a positive integer, got {value!r}")
    return number


def load_config_file(path: Path) -> dict[str, Any]:
    """Load a JSON object of LifecycleConfig field values.

    Raises:
        ConfigError: If the file is missing, not JSON, or not an object
    """
    try:
        data = json.loads(path.read_text())
    except FileNotFoundError as e:
        raise ConfigError(f"config file not found: {path}") from e
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"config file {path} is not readable JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a JSON object")
    return data


def _coerce(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name == "staging":
        return parse_bool(value, name)
    if name in ("default_validity_days", "key_size", "ready_port"):
        return parse_positive_int(value, name)
    if name == "startup_timeout":
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{name} must be a number, got {value!r}") from e
    if name in ("compose_command", "reload_command", "config_test_command"):
        return tuple(value.split()) if isinstance(value, str) else tuple(value)
    if name in HOST_PATH_FIELDS:
        return Path(value).expanduser()
    return value


def resolve_config(
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
    config_file: Path | None = None,
) -> LifecycleConfig:
    """Resolve a LifecycleConfig once, before any lifecycle step runs.

    Precedence per field: explicit override > environment variable > JSON
    config file > compiled-in default. ``None`` overrides are ignored so that
    unset CLI options fall through.

    Args:
        overrides: Explicit values, usually parsed CLI arguments
        environ: Environment mapping (default: ``os.environ``)
        config_file: JSON config path; falls back to ``CERT_LIFECYCLE_CONFIG``

    Returns:
        Fully populated LifecycleConfig

    Raises:
        ConfigError: On unknown keys or unparseable values
    """
    environ = os.environ if environ is None else environ
    known = {f.name for f in fields(LifecycleConfig)}
    values: dict[str, Any] = {}

    if config_file is None and environ.get(ENV_CONFIG_FILE):
        config_file = Path(environ[ENV_CONFIG_FILE])
    if config_file is not None:
        file_values = load_config_file(Path(config_file))
        unknown = sorted(set(file_values) - known)
        if unknown:
            raise ConfigError(f"unknown keys in config file {config_file}: {', '.join(unknown)}")
        values.update(file_values)

    for env_name, field_name in ENV_FIELDS.items():
        if environ.get(env_name):
            values[field_name] = environ[env_name]

    for name, value in (overrides or {}).items():
        if name not in known:
            raise ConfigError(f"unknown configuration option: {name}")
        if value is not None:
            values[name] = value

    coerced = {name: _coerce(name, value) for name, value in values.items()}
    return LifecycleConfig(**{k: v for k, v in coerced.items() if v is not None})


def resolve_domain(explicit: str | None, environ: Mapping[str, str] | None = None) -> str:
    """Return the primary domain from the argument or ``LETSENCRYPT_DOMAIN``.

    Raises:
        ConfigError: If neither provides a non-empty domain
    """
    environ = os.environ if environ is None else environ
    domain = (explicit or environ.get(ENV_DOMAIN, "")).strip()
    if not domain:
        raise ConfigError(f"a primary domain is required (argument or {ENV_DOMAIN})")
    return domain
