"""roomwatch configuration loading and validation.

Reads ``roomwatch.toml``, resolves ``${VAR}`` references, parses every
section, and returns a validated :class:`AppConfig` dataclass.

Example::

    [database]
    host = "db.internal"
    port = 5432
    user = "ingest"
    password = "${ROOMWATCH_DB_PASSWORD}"
    name = "live_metrics"

    [tunnel]
    host = "bastion.internal"
    user = "deploy"
    private_key = "~/.ssh/id_ed25519"

    [monitor]
    interval_seconds = 60
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from roomwatch.credentials import (
    DEFAULT_CREDENTIAL_SUFFIX,
    DEFAULT_CREDENTIAL_TTL_S,
    DEFAULT_SECRET_KEY,
    DEFAULT_SENTINEL_PORT,
    DEFAULT_XOR_KEY,
)

ENV_CONFIG_PATH = "ROOMWATCH_CONFIG"
DEFAULT_CONFIG_PATH = Path("roomwatch.toml")

DEFAULT_POLL_INTERVAL_S = 60
MIN_POLL_INTERVAL_S = 5
MAX_POLL_INTERVAL_S = 3600

DEFAULT_API_BASE_URL = "https://business.oceanengine.com"
DEFAULT_API_TIMEOUT_S = 10.0

# Pattern matching ${VAR_NAME}
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class EphemeralCredentialConfig:
    """Parameters of the rotating database credential scheme."""

    suffix: str = DEFAULT_CREDENTIAL_SUFFIX
    secret_key: str = DEFAULT_SECRET_KEY
    xor_key: str = DEFAULT_XOR_KEY
    sentinel_port: int = DEFAULT_SENTINEL_PORT
    ttl_s: int = DEFAULT_CREDENTIAL_TTL_S


@dataclass
class DatabaseConfig:
    """Remote relational store settings from ``[database]``."""

    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = ""
    name: str = "postgres"
    min_pool_size: int = 1
    max_pool_size: int = 10
    ephemeral: EphemeralCredentialConfig = field(default_factory=EphemeralCredentialConfig)

    def __repr__(self) -> str:
        return (
            f"DatabaseConfig(host={self.host!r}, port={self.port!r}, "
            f"user={self.user!r}, name={self.name!r})"
        )


@dataclass
class TunnelConfig:
    """SSH tunnel settings from ``[tunnel]``.

    ``private_key`` may be a filesystem path or the key text itself.  When a
    key is present, ``password`` is used as its passphrase.

    The bastion's host key is checked against ``known_hosts`` (a file path;
    empty means ``~/.ssh/known_hosts``).  ``verify_host_key = false`` turns
    the check off.
    """

    host: str = ""
    port: int = 22
    user: str = ""
    password: str = ""
    private_key: str = ""
    use_key: bool = False
    known_hosts: str = ""
    verify_host_key: bool = True

    @property
    def enabled(self) -> bool:
        """True when host and user are set and some authentication is present."""
        if not self.host.strip() or not self.user.strip():
            return False
        return bool(self.password.strip()) or bool(self.private_key.strip())

    def __repr__(self) -> str:
        return (
            f"TunnelConfig(host={self.host!r}, port={self.port!r}, "
            f"user={self.user!r}, use_key={self.use_key!r}, "
            f"verify_host_key={self.verify_host_key!r})"
        )


@dataclass
class MonitorConfig:
    """Polling settings from ``[monitor]``.

    The credential loop reads ``interval_seconds`` on every tick, so mutating
    this object at runtime is observed without a restart.
    """

    interval_seconds: int = DEFAULT_POLL_INTERVAL_S

    def set_interval(self, seconds: int) -> int:
        self.interval_seconds = _clamp_interval(seconds)
        return self.interval_seconds


@dataclass
class DebugConfig:
    """Verbose tracing toggles from ``[debug]``."""

    network: bool = False
    sql: bool = False
    live_room: bool = False


@dataclass
class LoggingConfig:
    """Logging configuration from ``[logging]``."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class ApiConfig:
    """Remote dashboard API settings from ``[api]``."""

    base_url: str = DEFAULT_API_BASE_URL
    timeout_s: float = DEFAULT_API_TIMEOUT_S


@dataclass
class StoreConfig:
    """Local account store settings from ``[store]``."""

    path: str = "roomwatch.db"


@dataclass
class AppConfig:
    """Fully parsed roomwatch configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    tunnel: TunnelConfig = field(default_factory=TunnelConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    debug: DebugConfig = field(default_factory=DebugConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    store: StoreConfig = field(default_factory=StoreConfig)


# ---------------------------------------------------------------------------
# Environment variable resolution
# ---------------------------------------------------------------------------


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]
    if isinstance(value, str):
        return _resolve_string(value)
    return value


def _resolve_string(s: str) -> str:
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)
    if missing:
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {', '.join(missing)}"
        )
    return result


# ---------------------------------------------------------------------------
# Section parsers
# ---------------------------------------------------------------------------


def _clamp_interval(seconds: Any) -> int:
    try:
        value = int(seconds)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"monitor.interval_seconds must be an integer, got {seconds!r}") from exc
    if value < MIN_POLL_INTERVAL_S:
        return MIN_POLL_INTERVAL_S
    if value > MAX_POLL_INTERVAL_S:
        return MAX_POLL_INTERVAL_S
    return value


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    raw = data.get(name, {})
    if not isinstance(raw, dict):
        raise ConfigError(f"[{name}] must be a TOML table")
    return raw


def _str(section: dict[str, Any], path: str, key: str, default: str) -> str:
    value = section.get(key, default)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ConfigError(f"{path}.{key} must be a string")
    return value


def _int(section: dict[str, Any], path: str, key: str, default: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{path}.{key} must be an integer")
    return value


def _bool(section: dict[str, Any], path: str, key: str, default: bool) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{path}.{key} must be a boolean")
    return value


def _parse_database(raw: dict[str, Any]) -> DatabaseConfig:
    ephemeral_raw = raw.get("ephemeral", {})
    if not isinstance(ephemeral_raw, dict):
        raise ConfigError("[database.ephemeral] must be a TOML table")
    defaults = EphemeralCredentialConfig()
    ephemeral = EphemeralCredentialConfig(
        suffix=_str(ephemeral_raw, "database.ephemeral", "suffix", defaults.suffix),
        secret_key=_str(ephemeral_raw, "database.ephemeral", "secret_key", defaults.secret_key),
        xor_key=_str(ephemeral_raw, "database.ephemeral", "xor_key", defaults.xor_key),
        sentinel_port=_int(
            ephemeral_raw, "database.ephemeral", "sentinel_port", defaults.sentinel_port
        ),
        ttl_s=_int(ephemeral_raw, "database.ephemeral", "ttl_s", defaults.ttl_s),
    )
    if ephemeral.ttl_s <= 0:
        raise ConfigError("database.ephemeral.ttl_s must be positive")

    db = DatabaseConfig(
        host=_str(raw, "database", "host", "localhost"),
        port=_int(raw, "database", "port", 5432),
        user=_str(raw, "database", "user", "postgres"),
        password=_str(raw, "database", "password", ""),
        name=_str(raw, "database", "name", "postgres"),
        min_pool_size=_int(raw, "database", "min_pool_size", 1),
        max_pool_size=_int(raw, "database", "max_pool_size", 10),
        ephemeral=ephemeral,
    )
    if not 0 < db.port < 65536:
        raise ConfigError(f"database.port out of range: {db.port}")
    if db.min_pool_size < 0 or db.max_pool_size < max(db.min_pool_size, 1):
        raise ConfigError("database pool sizes must satisfy 0 <= min <= max and max >= 1")
    return db


def _parse_tunnel(raw: dict[str, Any]) -> TunnelConfig:
    return TunnelConfig(
        host=_str(raw, "tunnel", "host", ""),
        port=_int(raw, "tunnel", "port", 22),
        user=_str(raw, "tunnel", "user", ""),
        password=_str(raw, "tunnel", "password", ""),
        private_key=_str(raw, "tunnel", "private_key", ""),
        use_key=_bool(raw, "tunnel", "use_key", False),
        known_hosts=_str(raw, "tunnel", "known_hosts", ""),
        verify_host_key=_bool(raw, "tunnel", "verify_host_key", True),
    )


def _parse_logging(raw: dict[str, Any]) -> LoggingConfig:
    fmt = _str(raw, "logging", "format", "text")
    if fmt not in ("text", "json"):
        raise ConfigError(f"logging.format must be 'text' or 'json', got {fmt!r}")
    log_root = raw.get("log_root")
    if log_root is not None and not isinstance(log_root, str):
        raise ConfigError("logging.log_root must be a string when set")
    return LoggingConfig(level=_str(raw, "logging", "level", "INFO"), format=fmt, log_root=log_root)


def _parse_api(raw: dict[str, Any]) -> ApiConfig:
    timeout = raw.get("timeout_s", DEFAULT_API_TIMEOUT_S)
    if isinstance(timeout, bool) or not isinstance(timeout, int | float) or timeout <= 0:
        raise ConfigError("api.timeout_s must be a positive number")
    return ApiConfig(
        base_url=_str(raw, "api", "base_url", DEFAULT_API_BASE_URL).rstrip("/"),
        timeout_s=float(timeout),
    )


def parse_config(data: dict[str, Any]) -> AppConfig:
    """Build an :class:`AppConfig` from an already-decoded TOML mapping."""
    data = resolve_env_vars(data)

    monitor_raw = _section(data, "monitor")
    debug_raw = _section(data, "debug")

    return AppConfig(
        database=_parse_database(_section(data, "database")),
        tunnel=_parse_tunnel(_section(data, "tunnel")),
        monitor=MonitorConfig(
            interval_seconds=_clamp_interval(
                monitor_raw.get("interval_seconds", DEFAULT_POLL_INTERVAL_S)
            )
        ),
        debug=DebugConfig(
            network=_bool(debug_raw, "debug", "network", False),
            sql=_bool(debug_raw, "debug", "sql", False),
            live_room=_bool(debug_raw, "debug", "live_room", False),
        ),
        logging=_parse_logging(_section(data, "logging")),
        api=_parse_api(_section(data, "api")),
        store=StoreConfig(path=_str(_section(data, "store"), "store", "path", "roomwatch.db")),
    )


def load_config(path: Path | None = None) -> AppConfig:
    """Load and validate a roomwatch TOML file.

    Parameters
    ----------
    path:
        Config file path.  Defaults to ``$ROOMWATCH_CONFIG`` and then
        ``./roomwatch.toml``.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    if path is None:
        path = Path(os.environ.get(ENV_CONFIG_PATH, str(DEFAULT_CONFIG_PATH)))

    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    return parse_config(data)
