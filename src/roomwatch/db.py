"""Connection pool management for the remote metrics database.

:class:`ConnectionManager` owns one asyncpg pool, reached either directly or
through an :class:`~roomwatch.tunnel.SSHTunnel`.  When the configured password
matches the rotating-credential trigger, credentials are derived at connect
time and the pool is rebuilt once they expire (see
:mod:`roomwatch.credentials`).

Writes are chunked and submitted sequentially; every statement is retried on
deadlock with exponential backoff plus jitter.  Tables marked high-contention
in :mod:`roomwatch.schema` use smaller chunks, a short pause between chunks,
and run each chunk in an explicit READ COMMITTED transaction.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

import asyncpg

from roomwatch.config import DatabaseConfig, TunnelConfig
from roomwatch.connectors.metrics import deadlock_retries_total, record_rows_written
from roomwatch.credentials import EphemeralCredential, build_credential
from roomwatch.errors import DatabaseInitError, DatabaseNotInitializedError
from roomwatch.schema import conflict_keys_for, is_high_contention, quote_identifier
from roomwatch.tunnel import SSHTunnel

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BATCH_SIZE = 10
HIGH_CONTENTION_BATCH_SIZE = 3
HIGH_CONTENTION_PAUSE_S = (0.01, 0.03)

DEFAULT_MAX_RETRIES = 5
DEFAULT_RETRY_BASE_DELAY_S = 0.05
DEFAULT_RETRY_JITTER_S = 0.05

OLD_POOL_CLOSE_DELAY_S = 1.0

# Session default; high-contention chunks lower this per transaction.
DEFAULT_ISOLATION = "repeatable read"

_DEADLOCK_SQLSTATE = "40P01"
_DEADLOCK_MARKERS = ("deadlock detected", "deadlock found")


@dataclass
class WriteResult:
    """Aggregate outcome of a chunked write."""

    affected_rows: int = 0
    batches: int = 0


@dataclass
class ConnectionTestResult:
    success: bool
    response_time_ms: int
    used_tunnel: bool
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Deadlock retry
# ---------------------------------------------------------------------------


def is_deadlock_error(exc: BaseException) -> bool:
    """Return True when *exc* is a PostgreSQL deadlock (SQLSTATE 40P01)."""
    if isinstance(exc, asyncpg.exceptions.DeadlockDetectedError):
        return True
    if getattr(exc, "sqlstate", None) == _DEADLOCK_SQLSTATE:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _DEADLOCK_MARKERS)


def backoff_delay(
    attempt: int,
    base_delay_s: float = DEFAULT_RETRY_BASE_DELAY_S,
    jitter_s: float = DEFAULT_RETRY_JITTER_S,
) -> float:
    """Delay before retry number *attempt* (1-based): ``base * 2**(attempt-1) + U(0, jitter)``."""
    return base_delay_s * 2 ** (attempt - 1) + random.uniform(0, jitter_s)


async def retry_on_deadlock(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay_s: float = DEFAULT_RETRY_BASE_DELAY_S,
    jitter_s: float = DEFAULT_RETRY_JITTER_S,
) -> T:
    """Run *operation*, retrying only deadlock errors, up to *max_retries* attempts.

    The last deadlock is re-raised once attempts are exhausted; any other
    error propagates from the attempt that raised it.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as exc:
            if not is_deadlock_error(exc) or attempt >= max_retries:
                raise
            delay = backoff_delay(attempt, base_delay_s, jitter_s)
            deadlock_retries_total.inc()
            logger.warning(
                "Deadlock detected (attempt %d/%d), retrying in %.0fms",
                attempt,
                max_retries,
                delay * 1000,
            )
            await asyncio.sleep(delay)
            attempt += 1


# ---------------------------------------------------------------------------
# SQL builders
# ---------------------------------------------------------------------------


def parse_affected_rows(status: str | None) -> int:
    """Extract the row count from an asyncpg command tag (``"INSERT 0 5"`` -> 5)."""
    if not status:
        return 0
    tail = status.rsplit(" ", 1)[-1]
    return int(tail) if tail.isdigit() else 0


def _columns_of(rows: Sequence[Mapping[str, Any]]) -> list[str]:
    columns = list(rows[0].keys())
    if not columns:
        raise ValueError("rows must have at least one column")
    return columns


def _values_clause(columns: list[str], rows: Sequence[Mapping[str, Any]]) -> tuple[str, list]:
    args: list[Any] = []
    groups: list[str] = []
    for row in rows:
        placeholders = []
        for column in columns:
            args.append(row.get(column))
            placeholders.append(f"${len(args)}")
        groups.append(f"({', '.join(placeholders)})")
    return ", ".join(groups), args


def build_insert_sql(table: str, rows: Sequence[Mapping[str, Any]]) -> tuple[str, list]:
    columns = _columns_of(rows)
    values, args = _values_clause(columns, rows)
    column_list = ", ".join(quote_identifier(c) for c in columns)
    return f"INSERT INTO {quote_identifier(table)} ({column_list}) VALUES {values}", args


def build_upsert_sql(
    table: str,
    rows: Sequence[Mapping[str, Any]],
    conflict_keys: Sequence[str],
    update_fields: Sequence[str] | None = None,
) -> tuple[str, list]:
    """Build ``INSERT ... ON CONFLICT (keys) DO UPDATE SET col = EXCLUDED.col``.

    ``update_fields=None`` updates every column except ``id`` and the keys.
    An empty update list degrades to ``DO NOTHING``.
    """
    columns = _columns_of(rows)
    if update_fields is None:
        update_fields = [c for c in columns if c != "id" and c not in conflict_keys]
    values, args = _values_clause(columns, rows)
    column_list = ", ".join(quote_identifier(c) for c in columns)
    key_list = ", ".join(quote_identifier(k) for k in conflict_keys)
    if update_fields:
        assignments = ", ".join(
            f"{quote_identifier(c)} = EXCLUDED.{quote_identifier(c)}" for c in update_fields
        )
        action = f"DO UPDATE SET {assignments}"
    else:
        action = "DO NOTHING"
    sql = (
        f"INSERT INTO {quote_identifier(table)} ({column_list}) VALUES {values} "
        f"ON CONFLICT ({key_list}) {action}"
    )
    return sql, args


def _where_clause(where: Mapping[str, Any], start: int) -> tuple[str, list]:
    if not where:
        raise ValueError("where must not be empty")
    parts = []
    args = []
    for offset, (column, value) in enumerate(where.items()):
        args.append(value)
        parts.append(f"{quote_identifier(column)} = ${start + offset}")
    return " AND ".join(parts), args


# ---------------------------------------------------------------------------
# ConnectionManager
# ---------------------------------------------------------------------------


class ConnectionManager:
    """Owns the asyncpg pool to the remote metrics database.

    Parameters
    ----------
    pool_factory:
        Coroutine creating the pool; ``asyncpg.create_pool`` by default.
    tunnel_factory:
        Callable building the tunnel from ``(tunnel_config, host, port)``.
    old_pool_close_delay_s:
        How long a replaced pool stays open for in-flight queries after a
        credential rebuild.
    debug_sql:
        Log every write statement at INFO.
    """

    def __init__(
        self,
        *,
        pool_factory: Callable[..., Awaitable[Any]] = asyncpg.create_pool,
        tunnel_factory: Callable[[TunnelConfig, str, int], SSHTunnel] = SSHTunnel,
        old_pool_close_delay_s: float = OLD_POOL_CLOSE_DELAY_S,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay_s: float = DEFAULT_RETRY_BASE_DELAY_S,
        debug_sql: bool = False,
    ) -> None:
        self._pool_factory = pool_factory
        self._tunnel_factory = tunnel_factory
        self._old_pool_close_delay_s = old_pool_close_delay_s
        self._max_retries = max_retries
        self._retry_base_delay_s = retry_base_delay_s
        self.debug_sql = debug_sql

        self._pool: Any = None
        self._database: DatabaseConfig | None = None
        self._tunnel_config: TunnelConfig | None = None
        self._tunnel: SSHTunnel | None = None
        self._credential: EphemeralCredential | None = None
        self._rebuild_task: asyncio.Task | None = None
        self._pending_closes: dict[asyncio.Task, Any] = {}
        self.rebuild_count = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._pool is not None

    @property
    def uses_tunnel(self) -> bool:
        return self._tunnel is not None

    @property
    def credential(self) -> EphemeralCredential | None:
        return self._credential

    async def initialize(
        self, database: DatabaseConfig, tunnel: TunnelConfig | None = None
    ) -> None:
        """Tear down any existing pool and connect with *database*.

        The tunnel is used only when *tunnel* names a host and user and
        carries a password or private key.

        Raises
        ------
        DatabaseInitError
            If the tunnel, the pool, or the probe query fails.
        """
        await self.close()
        self._database = database
        self._tunnel_config = tunnel

        try:
            if tunnel is not None and tunnel.enabled:
                self._tunnel = self._tunnel_factory(tunnel, database.host, database.port)
                await self._tunnel.open()
            self._pool = await self._create_pool()
            async with self._pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
        except Exception as exc:
            logger.error("Database initialization failed: %s", exc)
            await self.close()
            raise DatabaseInitError(f"Database initialization failed: {exc}") from exc

        logger.info(
            "Connected to %s/%s (%s, %s credentials)",
            database.host,
            database.name,
            "tunneled" if self._tunnel is not None else "direct",
            "rotating" if self._credential and self._credential.derived else "static",
        )

    def _endpoint(self) -> tuple[str, int]:
        assert self._database is not None
        if self._tunnel is not None:
            return self._tunnel.local_host, self._tunnel.local_port
        return self._database.host, self._database.port

    async def _create_pool(self) -> Any:
        database = self._database
        if database is None:
            raise DatabaseNotInitializedError("No database configuration; call initialize() first")

        policy = database.ephemeral
        # The trigger is evaluated against the configured port, not the tunnel's local port.
        credential = build_credential(
            database.user,
            database.password,
            database.port,
            suffix=policy.suffix,
            secret_key=policy.secret_key,
            xor_key=policy.xor_key,
            sentinel_port=policy.sentinel_port,
        )
        host, port = self._endpoint()
        pool = await self._pool_factory(
            host=host,
            port=port,
            user=credential.username,
            password=credential.password,
            database=database.name,
            min_size=database.min_pool_size,
            max_size=database.max_pool_size,
            server_settings={
                "application_name": "roomwatch",
                "default_transaction_isolation": DEFAULT_ISOLATION,
            },
        )
        self._credential = credential
        return pool

    def _credential_expired(self) -> bool:
        if self._credential is None or self._database is None:
            return False
        return self._credential.is_expired(self._database.ephemeral.ttl_s)

    async def get_pool(self) -> Any:
        """Return the live pool, rebuilding it first if the credential expired.

        Concurrent callers share one rebuild.
        """
        if self._credential_expired():
            task = self._rebuild_task
            if task is None:
                task = asyncio.create_task(self._rebuild_pool())
                self._rebuild_task = task
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if not task.cancelled() or (current is not None and current.cancelling()):
                    raise
                raise DatabaseNotInitializedError(
                    "Database was closed while the pool was being rebuilt"
                ) from None
            finally:
                if self._rebuild_task is task and task.done():
                    self._rebuild_task = None
        if self._pool is None:
            raise DatabaseNotInitializedError(
                "Database is not initialized; call initialize() first"
            )
        return self._pool

    async def _rebuild_pool(self) -> None:
        logger.info("Database credentials expired, rebuilding pool")
        old_pool = self._pool
        self._pool = await self._create_pool()
        self.rebuild_count += 1
        if old_pool is not None:
            self._schedule_close(old_pool)
        logger.info("Database pool rebuilt")

    def _schedule_close(self, pool: Any) -> None:
        async def _close_later() -> None:
            await asyncio.sleep(self._old_pool_close_delay_s)
            await pool.close()
            logger.debug("Closed replaced database pool")

        task = asyncio.create_task(_close_later())
        self._pending_closes[task] = pool
        task.add_done_callback(lambda done: self._pending_closes.pop(done, None))

    async def close(self) -> None:
        """Close the pool and tunnel and forget the current configuration."""
        if self._rebuild_task is not None:
            self._rebuild_task.cancel()
            try:
                await self._rebuild_task
            except (asyncio.CancelledError, Exception):
                logger.debug("Pending pool rebuild abandoned during close")
            self._rebuild_task = None

        # Replaced pools still waiting out their grace period are closed now.
        pending, self._pending_closes = self._pending_closes, {}
        for task, old_pool in pending.items():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            await old_pool.close()

        if self._pool is not None:
            pool, self._pool = self._pool, None
            await pool.close()
            logger.info("Database pool closed")

        if self._tunnel is not None:
            tunnel, self._tunnel = self._tunnel, None
            await tunnel.close()

        self._database = None
        self._tunnel_config = None
        self._credential = None

    async def is_connected(self) -> bool:
        """Probe the pool with ``SELECT 1``."""
        if self._pool is None:
            return False
        try:
            pool = await self.get_pool()
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
        except Exception as exc:
            logger.warning("Database connectivity probe failed: %s", exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def query(self, sql: str, *args: Any) -> list[Any]:
        pool = await self.get_pool()
        return await pool.fetch(sql, *args)

    async def fetchrow(self, sql: str, *args: Any) -> Any:
        pool = await self.get_pool()
        return await pool.fetchrow(sql, *args)

    async def fetchval(self, sql: str, *args: Any) -> Any:
        pool = await self.get_pool()
        return await pool.fetchval(sql, *args)

    async def select(
        self,
        table: str,
        where: Mapping[str, Any] | None = None,
        fields: Sequence[str] = ("*",),
    ) -> list[Any]:
        field_list = ", ".join(f if f == "*" else quote_identifier(f) for f in fields)
        sql = f"SELECT {field_list} FROM {quote_identifier(table)}"
        args: list[Any] = []
        if where:
            clause, args = _where_clause(where, 1)
            sql += f" WHERE {clause}"
        return await self.query(sql, *args)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _execute_write(self, sql: str, args: Sequence[Any], *, read_committed: bool) -> str:
        if self.debug_sql:
            logger.info("SQL %s (%d params)", sql[:200], len(args))
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            if read_committed:
                async with conn.transaction(isolation="read_committed"):
                    return await conn.execute(sql, *args)
            return await conn.execute(sql, *args)

    async def _retrying(self, operation: Callable[[], Awaitable[T]]) -> T:
        return await retry_on_deadlock(
            operation,
            max_retries=self._max_retries,
            base_delay_s=self._retry_base_delay_s,
        )

    async def execute(self, sql: str, *args: Any) -> str:
        """Run a single write statement with deadlock retry."""
        return await self._retrying(
            functools.partial(self._execute_write, sql, args, read_committed=False)
        )

    async def _write_chunks(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        batch_size: int,
        build: Callable[[Sequence[Mapping[str, Any]]], tuple[str, list]],
    ) -> WriteResult:
        if not rows:
            raise ValueError("rows must not be empty")
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")

        high_contention = is_high_contention(table)
        if high_contention:
            batch_size = min(batch_size, HIGH_CONTENTION_BATCH_SIZE)

        result = WriteResult()
        for start in range(0, len(rows), batch_size):
            if start and high_contention:
                await asyncio.sleep(random.uniform(*HIGH_CONTENTION_PAUSE_S))
            sql, args = build(rows[start : start + batch_size])
            status = await self._retrying(
                functools.partial(
                    self._execute_write, sql, args, read_committed=high_contention
                )
            )
            result.affected_rows += parse_affected_rows(status)
            result.batches += 1

        record_rows_written(table, result.affected_rows)
        logger.debug(
            "Wrote %d row(s) to %s in %d batch(es), %d affected",
            len(rows),
            table,
            result.batches,
            result.affected_rows,
        )
        return result

    async def insert(self, table: str, row: Mapping[str, Any]) -> WriteResult:
        return await self.insert_batch(table, [row])

    async def insert_batch(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> WriteResult:
        return await self._write_chunks(
            table, rows, batch_size, functools.partial(build_insert_sql, table)
        )

    async def insert_batch_on_conflict_update(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        update_fields: Sequence[str] | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        conflict_keys: Sequence[str] | None = None,
    ) -> WriteResult:
        """Upsert *rows* into *table* keyed on its natural key.

        Parameters
        ----------
        update_fields:
            Columns overwritten on conflict.  ``None`` means every non-key column.
        conflict_keys:
            Overrides the natural key registered in :mod:`roomwatch.schema`.
        """
        keys = tuple(conflict_keys) if conflict_keys else conflict_keys_for(table)

        def _build(chunk: Sequence[Mapping[str, Any]]) -> tuple[str, list]:
            return build_upsert_sql(table, chunk, keys, update_fields)

        return await self._write_chunks(table, rows, batch_size, _build)

    async def update(
        self, table: str, data: Mapping[str, Any], where: Mapping[str, Any]
    ) -> WriteResult:
        if not data:
            raise ValueError("data must not be empty")
        args = list(data.values())
        assignments = ", ".join(
            f"{quote_identifier(column)} = ${index}" for index, column in enumerate(data, start=1)
        )
        clause, where_args = _where_clause(where, len(args) + 1)
        sql = f"UPDATE {quote_identifier(table)} SET {assignments} WHERE {clause}"
        status = await self.execute(sql, *args, *where_args)
        return WriteResult(affected_rows=parse_affected_rows(status), batches=1)

    async def delete(self, table: str, where: Mapping[str, Any]) -> WriteResult:
        clause, args = _where_clause(where, 1)
        status = await self.execute(f"DELETE FROM {quote_identifier(table)} WHERE {clause}", *args)
        return WriteResult(affected_rows=parse_affected_rows(status), batches=1)

    async def transaction(self, fn: Callable[[Any], Awaitable[T]]) -> T:
        """Run ``fn(conn)`` in one transaction on one connection.

        Commits on success, rolls back on any exception, and always releases
        the connection.  A deadlock rolls back and re-runs the whole callback.
        """

        async def _run() -> T:
            pool = await self.get_pool()
            async with pool.acquire() as conn:
                async with conn.transaction():
                    return await fn(conn)

        return await self._retrying(_run)


async def check_connection(
    database: DatabaseConfig,
    tunnel: TunnelConfig | None = None,
    *,
    manager: ConnectionManager | None = None,
) -> ConnectionTestResult:
    """Open a throwaway connection and report whether it works."""
    manager = manager or ConnectionManager()
    start = time.perf_counter()
    try:
        await manager.initialize(database, tunnel)
        version = await manager.fetchval("SELECT version()")
        used_tunnel = manager.uses_tunnel
        return ConnectionTestResult(
            success=True,
            response_time_ms=int((time.perf_counter() - start) * 1000),
            used_tunnel=used_tunnel,
            details={
                "server_version": version,
                "database": database.name,
                "host": database.host,
                "port": database.port,
            },
        )
    except DatabaseInitError as exc:
        return ConnectionTestResult(
            success=False,
            response_time_ms=int((time.perf_counter() - start) * 1000),
            used_tunnel=tunnel is not None and tunnel.enabled,
            error=str(exc),
        )
    finally:
        await manager.close()
