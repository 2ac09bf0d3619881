"""Tests for the roomwatch CLI."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from click.testing import CliRunner

from roomwatch import __version__
from roomwatch.cli import cli
from roomwatch.db import ConnectionTestResult
from roomwatch.models import RoomSnapshot

pytestmark = pytest.mark.unit


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "roomwatch.toml"
    path.write_text(f'[store]\npath = "{tmp_path / "accounts.db"}"\n')
    return path


@pytest.fixture(autouse=True)
def _no_logging_setup(monkeypatch):
    monkeypatch.setattr("roomwatch.cli.configure_logging", MagicMock())


def _invoke(config_file, *args):
    return CliRunner().invoke(cli, ["--config", str(config_file), *args])


def _add(config_file, login="ops@example.com"):
    return _invoke(
        config_file,
        "accounts",
        "add",
        "--name",
        "Main shop",
        "--login",
        login,
        "--org",
        "1790000000000001",
        "--cookie",
        "sessionid=abc",
        "--csrf-token",
        "csrf-abc",
    )


def test_version():
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_accounts_list_empty(config_file):
    result = _invoke(config_file, "accounts", "list")
    assert result.exit_code == 0, result.output
    assert "No accounts configured" in result.output


def test_accounts_add_then_list(config_file):
    added = _add(config_file)
    assert added.exit_code == 0, added.output
    assert "Added account 1: Main shop" in added.output

    listed = _invoke(config_file, "accounts", "list")
    assert "ops@example.com" in listed.output
    assert "1 account(s), 0 invalid" in listed.output


def test_accounts_add_duplicate_fails(config_file):
    _add(config_file)
    result = _add(config_file)
    assert result.exit_code == 1
    assert "already exists" in result.output


def test_bad_config_exits(tmp_path):
    path = tmp_path / "roomwatch.toml"
    path.write_text("[logging]\nformat = 'xml'\n")
    result = _invoke(path, "accounts", "list")
    assert result.exit_code == 1
    assert "Config error" in result.output


def test_run_rejects_malformed_room(config_file):
    result = _invoke(config_file, "run", "--room", "not-a-room")
    assert result.exit_code == 2
    assert "ACCOUNT_ID:ROOM_ID" in result.output


def test_test_connection_success(config_file, monkeypatch):
    check = AsyncMock(
        return_value=ConnectionTestResult(
            success=True,
            response_time_ms=12,
            used_tunnel=True,
            details={"server_version": "PostgreSQL 16.2"},
        )
    )
    monkeypatch.setattr("roomwatch.cli.check_connection", check)
    result = _invoke(config_file, "test-connection")
    assert result.exit_code == 0
    assert "Connected via SSH tunnel in 12ms" in result.output
    assert "PostgreSQL 16.2" in result.output


def test_test_connection_failure(config_file, monkeypatch):
    check = AsyncMock(
        return_value=ConnectionTestResult(
            success=False, response_time_ms=3, used_tunnel=False, error="refused"
        )
    )
    monkeypatch.setattr("roomwatch.cli.check_connection", check)
    result = _invoke(config_file, "test-connection")
    assert result.exit_code == 1
    assert "Connection failed after 3ms: refused" in result.output


def test_accounts_validate_reports_unreachable_dashboard(config_file, monkeypatch):
    _add(config_file)
    fetch = AsyncMock(
        return_value=RoomSnapshot(
            account_id=1,
            account_name="Main shop",
            organization_id="1790000000000001",
            error="connection refused",
            status_code=-1,
        )
    )
    monkeypatch.setattr("roomwatch.rooms.RoomDirectory.fetch_live_rooms", fetch)

    result = _invoke(config_file, "accounts", "validate")
    assert result.exit_code == 1
    assert "account 1: unchecked (connection refused)" in result.output

    listed = _invoke(config_file, "accounts", "list")
    assert "1 account(s), 0 invalid" in listed.output
