"""Room listings and the credential guard.

:class:`CredentialGuard` is the single place that reacts to an expired
session: it flips the account invalid through the cache and publishes
:class:`~roomwatch.core.events.AccountStatusChanged`.  The dashboard client
calls it through its ``on_credential_expired`` hook.  User-facing notices are
sent by the credential loop, once per account.

:class:`RoomDirectory` fetches the live-room listing for an account and keeps
the last good snapshot in the cache's side map.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from roomwatch.connectors.dashboard import ApiErr
from roomwatch.connectors.metrics import credential_invalidations_total
from roomwatch.core.events import AccountStatusChanged
from roomwatch.models import RoomSnapshot

if TYPE_CHECKING:
    from roomwatch.cache import AccountCache
    from roomwatch.connectors.dashboard import RemoteMetricsClient
    from roomwatch.core.events import EventBus
    from roomwatch.models import Account

logger = logging.getLogger(__name__)


class CredentialGuard:
    """Marks accounts invalid when the dashboard rejects their session."""

    def __init__(self, cache: AccountCache, events: EventBus) -> None:
        self._cache = cache
        self._events = events

    async def invalidate(self, account: Account) -> None:
        current = self._cache.get_by_id(account.id)
        if current is None:
            logger.warning("Credential expiry reported for unknown account %d", account.id)
            return
        if not current.is_valid:
            logger.debug("Account %d already marked invalid", account.id)
            return

        await self._cache.update_valid_status(account.id, False)
        credential_invalidations_total.inc()
        await self._events.publish(AccountStatusChanged(account_id=account.id, is_valid=False))


class RoomDirectory:
    """Resolves accounts from the cache and lists their broadcasting rooms."""

    def __init__(self, cache: AccountCache, client: RemoteMetricsClient) -> None:
        self._cache = cache
        self._client = client

    def check_account_valid(self, account_id: int) -> Account | None:
        """Return the cached account when it exists and is valid, else None."""
        account = self._cache.get_by_id(account_id)
        if account is None:
            logger.warning("Account %d not found", account_id)
            return None
        if not account.is_valid:
            logger.debug("Account %d credentials invalid, skipping request", account_id)
            return None
        return account

    async def fetch_live_rooms(self, account_id: int) -> RoomSnapshot | None:
        """Fetch the listing for *account_id* regardless of its validity flag.

        Returns None for an unknown account.  A successful listing replaces the
        cached snapshot; a failed one leaves the previous snapshot in place.
        """
        account = self._cache.get_by_id(account_id)
        if account is None:
            logger.error("Account %d not found", account_id)
            return None

        result = await self._client.get_live_list(account)
        if isinstance(result, ApiErr) or result.data is None:
            error = result.message if isinstance(result, ApiErr) else "Empty listing"
            logger.warning(
                "Failed to get live rooms for account %d, not caching: %s", account_id, error
            )
            return RoomSnapshot(
                account_id=account.id,
                account_name=account.account_name,
                organization_id=account.organization_id,
                success=False,
                error=error,
                status_code=result.code if isinstance(result, ApiErr) else None,
            )

        snapshot = RoomSnapshot(
            account_id=account.id,
            account_name=account.account_name,
            organization_id=account.organization_id,
            listing=result.data,
            success=True,
        )
        logger.info(
            "Caching live rooms for account %d, count: %d", account_id, len(result.data.rooms)
        )
        self._cache.set_live_rooms(account_id, snapshot)
        return snapshot
