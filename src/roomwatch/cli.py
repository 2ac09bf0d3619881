"""CLI for roomwatch: run the monitor, manage accounts, check the database."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import click

from roomwatch import __version__
from roomwatch.app import AppContext
from roomwatch.config import AppConfig, ConfigError, load_config
from roomwatch.core.logging import configure_logging
from roomwatch.db import ConnectionManager, check_connection
from roomwatch.errors import DatabaseInitError, DuplicateAccountError
from roomwatch.models import AccountCreate
from roomwatch.schema import ensure_metrics_schema

logger = logging.getLogger(__name__)


def _load(ctx: click.Context) -> AppConfig:
    config_path: Path | None = ctx.obj.get("config_path")
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
        debug_network=config.debug.network,
    )
    return config


def _parse_room(value: str) -> tuple[int, str]:
    account, _, room = value.partition(":")
    if not account.isdigit() or not room:
        raise click.BadParameter(f"expected ACCOUNT_ID:ROOM_ID, got {value!r}")
    return int(account), room


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to roomwatch.toml (default: $ROOMWATCH_CONFIG or ./roomwatch.toml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """roomwatch: poll live-room metrics into PostgreSQL."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command()
@click.option(
    "--room",
    "rooms",
    multiple=True,
    help="Queue a room at startup, as ACCOUNT_ID:ROOM_ID (repeatable)",
)
@click.pass_context
def run(ctx: click.Context, rooms: tuple[str, ...]) -> None:
    """Start the monitor queue and the credential loop until interrupted."""
    config = _load(ctx)
    seeds = [_parse_room(room) for room in rooms]
    asyncio.run(_run(config, seeds))


async def _run(config: AppConfig, seeds: list[tuple[int, str]]) -> None:
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    app = AppContext(config)
    try:
        await app.start()
    except DatabaseInitError as exc:
        click.echo(f"Database connection failed: {exc}", err=True)
        await app.shutdown()
        sys.exit(1)

    for account_id, room_id in seeds:
        result = await app.monitor.add_to_monitor_queue(account_id, room_id)
        status = "queued" if result.success else "skipped"
        click.echo(f"  {status}: {account_id}:{room_id} ({result.message})")

    stats = app.monitor.get_stats()
    click.echo(
        f"roomwatch running: {stats.total} room(s) queued, polling every {stats.poll_interval_s}s"
    )
    await shutdown_event.wait()
    await app.shutdown()


# ---------------------------------------------------------------------------
# accounts
# ---------------------------------------------------------------------------


@cli.group()
def accounts() -> None:
    """Manage dashboard accounts in the local store."""


@accounts.command("list")
@click.pass_context
def accounts_list(ctx: click.Context) -> None:
    """List stored accounts."""
    config = _load(ctx)

    async def _list() -> None:
        app = AppContext(config)
        try:
            await app.open()
        finally:
            await app.client.aclose()
        rows = app.cache.get_all()
        if not rows:
            click.echo("No accounts configured")
            return
        click.echo(f"{'ID':<6} {'Name':<24} {'Login':<24} {'Organization':<20} {'Valid'}")
        click.echo("-" * 84)
        for account in rows:
            click.echo(
                f"{account.id:<6} {account.account_name:<24} {account.login_name:<24} "
                f"{account.organization_id:<20} {'yes' if account.is_valid else 'no'}"
            )
        stats = app.cache.get_stats()
        click.echo(f"\n{stats['total']} account(s), {stats['invalid']} invalid")

    asyncio.run(_list())


@accounts.command("add")
@click.option("--name", "account_name", required=True, help="Display name")
@click.option("--login", "login_name", required=True, help="Dashboard login name")
@click.option("--org", "organization_id", required=True, help="Organization (group) id")
@click.option("--cookie", required=True, help="Session cookie header value")
@click.option("--csrf-token", required=True, help="CSRF token")
@click.option("--remark", default=None, help="Free-form note")
@click.pass_context
def accounts_add(
    ctx: click.Context,
    account_name: str,
    login_name: str,
    organization_id: str,
    cookie: str,
    csrf_token: str,
    remark: str | None,
) -> None:
    """Add an account with an existing session cookie."""
    config = _load(ctx)
    data = AccountCreate(
        account_name=account_name,
        login_name=login_name,
        organization_id=organization_id,
        cookie=cookie,
        csrf_token=csrf_token,
        remark=remark,
    )

    async def _add() -> int:
        app = AppContext(config)
        await app.open()
        try:
            account = await app.cache.add(data)
        finally:
            await app.client.aclose()
        return account.id

    try:
        account_id = asyncio.run(_add())
    except DuplicateAccountError as exc:
        click.echo(str(exc), err=True)
        sys.exit(1)
    click.echo(f"Added account {account_id}: {account_name}")


@accounts.command("validate")
@click.pass_context
def accounts_validate(ctx: click.Context) -> None:
    """Check every account's session against the dashboard."""
    config = _load(ctx)

    async def _validate() -> int:
        app = AppContext(config)
        await app.open()
        try:
            results = await app.credential_loop.validate_all_accounts()
        finally:
            await app.client.aclose()
        for result in results:
            if result.soft_failure:
                state = f"unchecked ({result.error})"
            elif result.is_valid:
                state = "valid"
            else:
                state = f"invalid ({result.error})"
            click.echo(f"  account {result.account_id}: {state}")
        return sum(1 for result in results if result.soft_failure or not result.is_valid)

    failed = asyncio.run(_validate())
    if failed:
        sys.exit(1)


# ---------------------------------------------------------------------------
# database
# ---------------------------------------------------------------------------


@cli.command("test-connection")
@click.pass_context
def test_connection_cmd(ctx: click.Context) -> None:
    """Open a throwaway connection to the metrics database."""
    config = _load(ctx)
    result = asyncio.run(check_connection(config.database, config.tunnel))
    via = " via SSH tunnel" if result.used_tunnel else ""
    if not result.success:
        click.echo(f"Connection failed{via} after {result.response_time_ms}ms: {result.error}")
        sys.exit(1)
    click.echo(f"Connected{via} in {result.response_time_ms}ms")
    for key, value in result.details.items():
        click.echo(f"  {key}: {value}")


@cli.command("init-schema")
@click.pass_context
def init_schema(ctx: click.Context) -> None:
    """Create the metrics tables if they do not exist."""
    config = _load(ctx)

    async def _init() -> None:
        db = ConnectionManager(debug_sql=config.debug.sql)
        try:
            await db.initialize(config.database, config.tunnel)
            await ensure_metrics_schema(db)
        finally:
            await db.close()

    try:
        asyncio.run(_init())
    except DatabaseInitError as exc:
        click.echo(f"Database connection failed: {exc}", err=True)
        sys.exit(1)
    click.echo("Metrics schema is up to date")
