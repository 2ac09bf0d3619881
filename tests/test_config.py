"""Tests for roomwatch.config: TOML loading, env substitution, validation."""

from __future__ import annotations

import pytest

from roomwatch.config import (
    DEFAULT_POLL_INTERVAL_S,
    MAX_POLL_INTERVAL_S,
    MIN_POLL_INTERVAL_S,
    ConfigError,
    MonitorConfig,
    TunnelConfig,
    load_config,
    parse_config,
    resolve_env_vars,
)

pytestmark = pytest.mark.unit


def _write(tmp_path, text: str):
    path = tmp_path / "roomwatch.toml"
    path.write_text(text)
    return path


class TestDefaults:
    def test_empty_config_uses_defaults(self):
        config = parse_config({})
        assert config.database.port == 5432
        assert config.database.ephemeral.sentinel_port == 51888
        assert config.database.ephemeral.ttl_s == 600
        assert config.monitor.interval_seconds == DEFAULT_POLL_INTERVAL_S
        assert config.api.base_url == "https://business.oceanengine.com"
        assert config.api.timeout_s == 10.0
        assert config.logging.format == "text"
        assert config.tunnel.enabled is False
        assert config.tunnel.verify_host_key is True

    def test_full_file(self, tmp_path):
        path = _write(
            tmp_path,
            """
[database]
host = "db.internal"
port = 51888
user = "metrics"
password = "metrics88888888"
name = "live"

[tunnel]
host = "bastion.internal"
user = "deploy"
private_key = "/keys/id_ed25519"
known_hosts = "/keys/known_hosts"

[monitor]
interval_seconds = 30

[debug]
sql = true

[logging]
level = "DEBUG"
format = "json"

[store]
path = "/var/lib/roomwatch/accounts.db"
""",
        )
        config = load_config(path)
        assert config.database.host == "db.internal"
        assert config.database.port == 51888
        assert config.tunnel.enabled is True
        assert config.tunnel.known_hosts == "/keys/known_hosts"
        assert config.tunnel.verify_host_key is True
        assert config.monitor.interval_seconds == 30
        assert config.debug.sql is True
        assert config.debug.network is False
        assert config.logging.format == "json"
        assert config.store.path == "/var/lib/roomwatch/accounts.db"


class TestEnvVars:
    def test_substitutes_nested_values(self, monkeypatch):
        monkeypatch.setenv("RW_DB_PASSWORD", "s3cret")
        resolved = resolve_env_vars({"database": {"password": "${RW_DB_PASSWORD}"}, "n": 3})
        assert resolved == {"database": {"password": "s3cret"}, "n": 3}

    def test_missing_variable_raises(self, monkeypatch):
        monkeypatch.delenv("RW_MISSING", raising=False)
        with pytest.raises(ConfigError, match="RW_MISSING"):
            parse_config({"database": {"password": "${RW_MISSING}"}})

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        path = _write(tmp_path, '[database]\nname = "from_env"\n')
        monkeypatch.setenv("ROOMWATCH_CONFIG", str(path))
        assert load_config().database.name == "from_env"


class TestValidation:
    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.toml")

    def test_invalid_toml(self, tmp_path):
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(_write(tmp_path, "[database\n"))

    @pytest.mark.parametrize(
        "data",
        [
            {"database": {"port": "5432"}},
            {"database": {"port": 70000}},
            {"database": {"min_pool_size": 5, "max_pool_size": 2}},
            {"database": {"ephemeral": {"ttl_s": 0}}},
            {"logging": {"format": "xml"}},
            {"api": {"timeout_s": 0}},
            {"debug": {"sql": "yes"}},
            {"monitor": {"interval_seconds": "soon"}},
            {"monitor": []},
        ],
    )
    def test_rejects_bad_values(self, data):
        with pytest.raises(ConfigError):
            parse_config(data)

    def test_interval_is_clamped(self):
        assert parse_config({"monitor": {"interval_seconds": 1}}).monitor.interval_seconds == (
            MIN_POLL_INTERVAL_S
        )
        assert parse_config({"monitor": {"interval_seconds": 10**6}}).monitor.interval_seconds == (
            MAX_POLL_INTERVAL_S
        )


def test_monitor_set_interval_clamps_and_returns_value():
    monitor = MonitorConfig()
    assert monitor.set_interval(120) == 120
    assert monitor.interval_seconds == 120
    assert monitor.set_interval(0) == MIN_POLL_INTERVAL_S


@pytest.mark.parametrize(
    ("kwargs", "enabled"),
    [
        ({"host": "h", "user": "u", "password": "p"}, True),
        ({"host": "h", "user": "u", "private_key": "KEY"}, True),
        ({"host": "h", "user": "u"}, False),
        ({"host": " ", "user": "u", "password": "p"}, False),
        ({"host": "h", "user": "", "password": "p"}, False),
    ],
)
def test_tunnel_enabled(kwargs, enabled):
    assert TunnelConfig(**kwargs).enabled is enabled


def test_reprs_hide_secrets():
    config = parse_config(
        {"database": {"password": "hunter2"}, "tunnel": {"password": "hunter3"}}
    )
    assert "hunter2" not in repr(config.database)
    assert "hunter3" not in repr(config.tunnel)
