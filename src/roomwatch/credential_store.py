"""Durable account store backed by a local SQLite ``accounts`` table.

The store is the persistent copy of every operator account.  At runtime the
:class:`~roomwatch.cache.AccountCache` owns the accounts and writes through
to this store before touching its in-memory copy.

Each call opens a short-lived connection in a worker thread so the event
loop is never blocked on disk I/O.  WAL mode lets readers proceed while a
write is in flight.

Usage::

    store = CredentialStore(Path("roomwatch.db"))
    await store.ensure_table()
    account = await store.create(AccountCreate(...))
    await store.update_valid_status(account.id, False)
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import Any

from roomwatch.errors import AccountNotFoundError, DuplicateAccountError
from roomwatch.models import Account, AccountCreate, AccountUpdate, now_ms

logger = logging.getLogger(__name__)

_TABLE = "accounts"

_ACCOUNTS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_TABLE} (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    account_name    TEXT NOT NULL,
    login_name      TEXT NOT NULL,
    credential_blob TEXT NOT NULL DEFAULT '',
    organization_id TEXT NOT NULL,
    cookie          TEXT NOT NULL DEFAULT '',
    csrf_token      TEXT NOT NULL DEFAULT '',
    remark          TEXT,
    is_valid        INTEGER NOT NULL DEFAULT 1,
    created_at      INTEGER NOT NULL,
    updated_at      INTEGER NOT NULL,
    UNIQUE (organization_id, login_name)
)
"""

_ACCOUNTS_INDEX_DDL = (
    f"CREATE INDEX IF NOT EXISTS idx_accounts_is_valid ON {_TABLE} (is_valid)",
    f"CREATE INDEX IF NOT EXISTS idx_accounts_updated ON {_TABLE} (updated_at DESC)",
)

# Columns a caller may change through update(); is_valid goes through its own methods.
_UPDATABLE_COLUMNS = (
    "account_name",
    "login_name",
    "credential_blob",
    "organization_id",
    "cookie",
    "csrf_token",
    "remark",
)


def _row_to_account(row: sqlite3.Row) -> Account:
    data: dict[str, Any] = dict(row)
    data["is_valid"] = bool(data["is_valid"])
    return Account.model_validate(data)


class CredentialStore:
    """Async facade over the SQLite ``accounts`` table.

    Parameters
    ----------
    path:
        Database file.  ``":memory:"`` is not supported because every
        operation uses its own connection.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    async def _run(self, fn, *args: Any) -> Any:
        def _call() -> Any:
            conn = self._connect()
            try:
                with conn:
                    return fn(conn, *args)
            finally:
                conn.close()

        return await asyncio.to_thread(_call)

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def ensure_table(self) -> None:
        """Create the accounts table and its indexes if missing."""
        self._path.parent.mkdir(parents=True, exist_ok=True)

        def _create(conn: sqlite3.Connection) -> None:
            conn.execute(_ACCOUNTS_TABLE_DDL)
            for ddl in _ACCOUNTS_INDEX_DDL:
                conn.execute(ddl)

        await self._run(_create)
        logger.debug("Account store ready at %s", self._path)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_all(self) -> list[Account]:
        """Return every account, most recently updated first."""

        def _list(conn: sqlite3.Connection) -> list[Account]:
            rows = conn.execute(f"SELECT * FROM {_TABLE} ORDER BY updated_at DESC, id DESC")
            return [_row_to_account(row) for row in rows.fetchall()]

        return await self._run(_list)

    async def get_by_id(self, account_id: int) -> Account | None:
        def _get(conn: sqlite3.Connection) -> Account | None:
            row = conn.execute(f"SELECT * FROM {_TABLE} WHERE id = ?", (account_id,)).fetchone()
            return _row_to_account(row) if row is not None else None

        return await self._run(_get)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, data: AccountCreate) -> Account:
        """Insert a new, valid account and return it with its assigned id.

        Raises
        ------
        DuplicateAccountError
            If ``(organization_id, login_name)`` is already taken.
        """
        ts = now_ms()

        def _insert(conn: sqlite3.Connection) -> Account:
            try:
                cursor = conn.execute(
                    f"""
                    INSERT INTO {_TABLE} (
                        account_name, login_name, credential_blob, organization_id,
                        cookie, csrf_token, remark, is_valid, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                    """,
                    (
                        data.account_name,
                        data.login_name,
                        data.credential_blob,
                        data.organization_id,
                        data.cookie,
                        data.csrf_token,
                        data.remark,
                        ts,
                        ts,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateAccountError(
                    f"Account {data.login_name!r} already exists in organization "
                    f"{data.organization_id!r}"
                ) from exc
            row = conn.execute(
                f"SELECT * FROM {_TABLE} WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
            return _row_to_account(row)

        account = await self._run(_insert)
        logger.info("Created account %d (%s)", account.id, account.account_name)
        return account

    async def update_valid_status(self, account_id: int, is_valid: bool) -> None:
        def _update(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                f"UPDATE {_TABLE} SET is_valid = ?, updated_at = ? WHERE id = ?",
                (1 if is_valid else 0, now_ms(), account_id),
            )
            return cursor.rowcount

        if await self._run(_update) == 0:
            raise AccountNotFoundError(account_id)

    async def update_credentials(self, account_id: int, cookie: str, csrf_token: str) -> None:
        """Replace the session cookie and CSRF token and mark the account valid."""

        def _update(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                f"""
                UPDATE {_TABLE}
                SET cookie = ?, csrf_token = ?, is_valid = 1, updated_at = ?
                WHERE id = ?
                """,
                (cookie, csrf_token, now_ms(), account_id),
            )
            return cursor.rowcount

        if await self._run(_update) == 0:
            raise AccountNotFoundError(account_id)

    async def update(self, account_id: int, data: AccountUpdate) -> None:
        """Apply a partial update.  Unset fields are left unchanged."""
        changes = {
            column: getattr(data, column)
            for column in _UPDATABLE_COLUMNS
            if getattr(data, column) is not None
        }
        if data.is_valid is not None:
            changes["is_valid"] = 1 if data.is_valid else 0
        if not changes:
            return
        changes["updated_at"] = now_ms()

        assignments = ", ".join(f"{column} = ?" for column in changes)

        def _update(conn: sqlite3.Connection) -> int:
            try:
                cursor = conn.execute(
                    f"UPDATE {_TABLE} SET {assignments} WHERE id = ?",
                    (*changes.values(), account_id),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateAccountError(str(exc)) from exc
            return cursor.rowcount

        if await self._run(_update) == 0:
            raise AccountNotFoundError(account_id)

    async def delete(self, account_id: int) -> bool:
        """Delete an account.  Returns False when it did not exist."""

        def _delete(conn: sqlite3.Connection) -> int:
            return conn.execute(f"DELETE FROM {_TABLE} WHERE id = ?", (account_id,)).rowcount

        deleted = await self._run(_delete) > 0
        if deleted:
            logger.info("Deleted account %d", account_id)
        return deleted
