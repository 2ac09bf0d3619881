"""In-memory account cache with write-through to the durable store.

All mutations share one ``asyncio.Lock``: the durable write happens first,
then the in-memory copy is changed, and no other mutation can interleave
between the two.  Reads are synchronous and return copies.

A second, unlocked map holds the most recent :class:`RoomSnapshot` per
account.  Snapshots are replaced wholesale, last write wins.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, TypeVar

from roomwatch.errors import AccountNotFoundError, CacheNotInitializedError
from roomwatch.models import Account, AccountCreate, AccountUpdate, RoomSnapshot, now_ms

if TYPE_CHECKING:
    from roomwatch.credential_store import CredentialStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AccountCache:
    """Runtime owner of operator accounts.

    Parameters
    ----------
    store:
        The durable :class:`~roomwatch.credential_store.CredentialStore`.
    """

    def __init__(self, store: CredentialStore) -> None:
        self._store = store
        self._accounts: dict[int, Account] = {}
        self._live_rooms: dict[int, RoomSnapshot] = {}
        self._lock = asyncio.Lock()
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Load every account from the store.  Later calls are no-ops."""
        if self._initialized:
            return
        async with self._lock:
            if self._initialized:
                return
            accounts = await self._store.list_all()
            self._accounts = {account.id: account for account in accounts}
            self._initialized = True
        logger.info("Account cache initialized with %d account(s)", len(self._accounts))

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise CacheNotInitializedError(
                "AccountCache has not been initialized; await initialize() first"
            )

    async def _locked(self, operation: Callable[[], Awaitable[T]]) -> T:
        self._require_initialized()
        async with self._lock:
            return await operation()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_all(self) -> list[Account]:
        self._require_initialized()
        return [account.model_copy() for account in self._accounts.values()]

    def get_valid(self) -> list[Account]:
        self._require_initialized()
        return [account.model_copy() for account in self._accounts.values() if account.is_valid]

    def get_by_id(self, account_id: int) -> Account | None:
        self._require_initialized()
        account = self._accounts.get(account_id)
        return account.model_copy() if account is not None else None

    def get_stats(self) -> dict[str, int]:
        self._require_initialized()
        valid = sum(1 for account in self._accounts.values() if account.is_valid)
        total = len(self._accounts)
        return {"total": total, "valid": valid, "invalid": total - valid}

    # ------------------------------------------------------------------
    # Mutations (durable write first, then memory, all under the lock)
    # ------------------------------------------------------------------

    async def add(self, data: AccountCreate) -> Account:
        async def _add() -> Account:
            account = await self._store.create(data)
            self._accounts[account.id] = account
            logger.info("Cached new account %d (%s)", account.id, account.account_name)
            return account.model_copy()

        return await self._locked(_add)

    async def update(self, account_id: int, data: AccountUpdate) -> Account:
        async def _update() -> Account:
            return await self._apply_update(account_id, data)

        return await self._locked(_update)

    async def modify(
        self, account_id: int, build: Callable[[Account], AccountUpdate]
    ) -> Account:
        """Read-modify-write one account atomically with respect to other mutations.

        *build* receives a copy of the current cached account and returns the
        partial update to apply.
        """

        async def _modify() -> Account:
            current = self._accounts.get(account_id)
            if current is None:
                raise AccountNotFoundError(account_id)
            return await self._apply_update(account_id, build(current.model_copy()))

        return await self._locked(_modify)

    async def _apply_update(self, account_id: int, data: AccountUpdate) -> Account:
        await self._store.update(account_id, data)
        fresh = await self._store.get_by_id(account_id)
        if fresh is None:
            raise AccountNotFoundError(account_id)
        self._accounts[account_id] = fresh
        return fresh.model_copy()

    async def delete(self, account_id: int) -> None:
        async def _delete() -> None:
            await self._store.delete(account_id)
            self._accounts.pop(account_id, None)
            self._live_rooms.pop(account_id, None)
            logger.info("Removed account %d from cache", account_id)

        await self._locked(_delete)

    async def update_valid_status(self, account_id: int, is_valid: bool) -> None:
        async def _update() -> None:
            await self._store.update_valid_status(account_id, is_valid)
            account = self._accounts.get(account_id)
            if account is not None:
                self._accounts[account_id] = account.model_copy(
                    update={"is_valid": is_valid, "updated_at": now_ms()}
                )
            logger.info(
                "Account %d marked %s", account_id, "valid" if is_valid else "invalid"
            )

        await self._locked(_update)

    async def update_credentials(self, account_id: int, cookie: str, csrf_token: str) -> None:
        """Store a fresh cookie/CSRF pair and mark the account valid again."""

        async def _update() -> None:
            await self._store.update_credentials(account_id, cookie, csrf_token)
            account = self._accounts.get(account_id)
            if account is not None:
                self._accounts[account_id] = account.model_copy(
                    update={
                        "cookie": cookie,
                        "csrf_token": csrf_token,
                        "is_valid": True,
                        "updated_at": now_ms(),
                    }
                )
            logger.info("Credentials refreshed for account %d", account_id)

        await self._locked(_update)

    async def refresh(self) -> None:
        """Reload the full account set from the store, replacing memory wholesale."""

        async def _refresh() -> None:
            accounts = await self._store.list_all()
            self._accounts = {account.id: account for account in accounts}
            logger.debug("Account cache refreshed: %d account(s)", len(self._accounts))

        if not self._initialized:
            await self.initialize()
            return
        await self._locked(_refresh)

    # ------------------------------------------------------------------
    # Live-room side cache (unlocked)
    # ------------------------------------------------------------------

    def set_live_rooms(self, account_id: int, snapshot: RoomSnapshot) -> None:
        self._live_rooms[account_id] = snapshot

    def get_live_rooms(self, account_id: int) -> RoomSnapshot | None:
        return self._live_rooms.get(account_id)

    def clear_live_rooms(self, account_id: int) -> None:
        self._live_rooms.pop(account_id, None)

    def clear_all_live_rooms(self) -> None:
        self._live_rooms.clear()
