"""Tests for CredentialValidationLoop."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import make_account_create, make_listing

from roomwatch.cache import AccountCache
from roomwatch.config import MonitorConfig
from roomwatch.connectors.dashboard import (
    CREDENTIAL_EXPIRED_CODE,
    MALFORMED_RESPONSE_CODE,
    TRANSPORT_ERROR_CODE,
)
from roomwatch.core.credential_loop import CredentialValidationLoop
from roomwatch.core.events import AccountStatusChanged, EventBus
from roomwatch.models import RoomSnapshot

pytestmark = pytest.mark.unit

OK = True
EXPIRED = CREDENTIAL_EXPIRED_CODE


def _snapshot(account_id: int, outcome: bool | int) -> RoomSnapshot:
    """A listing result: ``True`` for success, otherwise the failure code."""
    success = outcome is True
    return RoomSnapshot(
        account_id=account_id,
        account_name="Main shop",
        organization_id="1790000000000001",
        listing=make_listing() if success else None,
        success=success,
        error=None if success else "login expired",
        status_code=None if success else outcome,
    )


def _loop(cache: AccountCache, outcomes: dict[int, bool | int] | None = None):
    outcomes = outcomes if outcomes is not None else {}

    async def _fetch(account_id: int):
        if account_id not in outcomes:
            return None
        return _snapshot(account_id, outcomes[account_id])

    rooms = MagicMock()
    rooms.fetch_live_rooms = AsyncMock(side_effect=_fetch)
    events = EventBus()
    changes: list[AccountStatusChanged] = []
    events.subscribe(changes.append, AccountStatusChanged)
    notifier = MagicMock()
    loop = CredentialValidationLoop(
        cache=cache,
        rooms=rooms,
        monitor_config=MonitorConfig(interval_seconds=3600),
        events=events,
        notifier=notifier,
    )
    return loop, outcomes, changes, notifier


class TestValidateAccount:
    async def test_valid(self, cache: AccountCache) -> None:
        account = await cache.add(make_account_create())
        loop, *_ = _loop(cache, {account.id: OK})
        result = await loop.validate_account(account.id)
        assert (result.is_valid, result.status_code) == (True, 200)

    async def test_rejected_session_is_invalid(self, cache: AccountCache) -> None:
        account = await cache.add(make_account_create())
        loop, *_ = _loop(cache, {account.id: EXPIRED})
        result = await loop.validate_account(account.id)
        assert (result.is_valid, result.status_code) == (False, CREDENTIAL_EXPIRED_CODE)
        assert result.soft_failure is False
        assert result.error == "login expired"
        assert cache.get_by_id(account.id).is_valid is True

    @pytest.mark.parametrize(
        "code", [TRANSPORT_ERROR_CODE, MALFORMED_RESPONSE_CODE, 500, None]
    )
    async def test_other_failures_are_soft(self, cache: AccountCache, code) -> None:
        account = await cache.add(make_account_create())
        loop, *_ = _loop(cache, {account.id: code})
        result = await loop.validate_account(account.id)
        assert result.soft_failure is True
        assert result.is_valid is True
        assert result.status_code == code

    async def test_soft_failure_reports_current_flag(self, cache: AccountCache) -> None:
        account = await cache.add(make_account_create())
        await cache.update_valid_status(account.id, False)
        loop, *_ = _loop(cache, {account.id: 500})
        result = await loop.validate_account(account.id)
        assert (result.soft_failure, result.is_valid) == (True, False)

    async def test_unknown(self, cache: AccountCache) -> None:
        loop, *_ = _loop(cache)
        result = await loop.validate_account(5)
        assert result.is_valid is False
        assert result.soft_failure is False
        assert result.error == "Account 5 not found"

    async def test_exception_is_soft(self, cache: AccountCache) -> None:
        account = await cache.add(make_account_create())
        loop, *_ = _loop(cache)
        loop._rooms.fetch_live_rooms.side_effect = RuntimeError("socket closed")
        result = await loop.validate_account(account.id)
        assert (result.soft_failure, result.is_valid) == (True, True)
        assert result.error == "socket closed"


class TestStatusUpdates:
    async def test_concurrent_updates_share_one_write(self, cache: AccountCache) -> None:
        account = await cache.add(make_account_create())
        loop, _, changes, notifier = _loop(cache)
        original = cache.update_valid_status
        cache.update_valid_status = AsyncMock(side_effect=original)

        await asyncio.gather(
            *(loop.update_account_status(account.id, False) for _ in range(5))
        )

        assert cache.update_valid_status.await_count == 1
        assert len(changes) == 1
        notifier.notify.assert_called_once()
        assert loop._status_updates == {}

    async def test_no_event_when_unchanged(self, cache: AccountCache) -> None:
        account = await cache.add(make_account_create())
        loop, _, changes, notifier = _loop(cache)
        await loop.update_account_status(account.id, True)
        assert changes == []
        notifier.notify.assert_not_called()


class TestPollCredentials:
    async def test_notifies_once_until_recovered(self, cache: AccountCache) -> None:
        account = await cache.add(make_account_create())
        loop, outcomes, changes, notifier = _loop(cache, {})

        outcomes[account.id] = EXPIRED
        await loop.poll_credentials()
        await loop.poll_credentials()
        assert notifier.notify.call_count == 1
        title, body = notifier.notify.call_args.args
        assert title == "Account credentials expired"
        assert '"Main shop"' in body
        assert cache.get_by_id(account.id).is_valid is False

        outcomes[account.id] = OK
        await loop.poll_credentials()
        assert cache.get_by_id(account.id).is_valid is True

        outcomes[account.id] = EXPIRED
        await loop.poll_credentials()
        assert notifier.notify.call_count == 2
        assert [change.is_valid for change in changes] == [False, True, False]

    async def test_soft_failures_leave_status_alone(self, cache: AccountCache) -> None:
        account = await cache.add(make_account_create())
        loop, outcomes, changes, notifier = _loop(cache, {})

        for code in (TRANSPORT_ERROR_CODE, 500):
            outcomes[account.id] = code
            await loop.poll_credentials()
            await loop.validate_all_accounts()

        assert cache.get_by_id(account.id).is_valid is True
        assert changes == []
        notifier.notify.assert_not_called()

        await cache.update_valid_status(account.id, False)
        await loop.poll_credentials()
        assert cache.get_by_id(account.id).is_valid is False

    async def test_checks_every_account(self, cache: AccountCache) -> None:
        first = await cache.add(make_account_create())
        second = await cache.add(make_account_create(organization_id="1790000000000002"))
        loop, *_ = _loop(cache, {first.id: OK, second.id: EXPIRED})

        results = await loop.poll_credentials()

        assert {result.account_id: result.is_valid for result in results} == {
            first.id: True,
            second.id: False,
        }
        assert cache.get_stats() == {"total": 2, "valid": 1, "invalid": 1}

    async def test_reentrant_cycle_skipped(self, cache: AccountCache) -> None:
        account = await cache.add(make_account_create())
        loop, *_ = _loop(cache, {account.id: OK})
        release = asyncio.Event()

        async def _slow(account_id):
            await release.wait()
            return _snapshot(account_id, True)

        loop._rooms.fetch_live_rooms.side_effect = _slow
        first = asyncio.create_task(loop.poll_credentials())
        await asyncio.sleep(0)
        assert await loop.poll_credentials() == []
        release.set()
        assert len(await first) == 1

    async def test_validate_all_accounts_is_sequential_and_records(
        self, cache: AccountCache
    ) -> None:
        account = await cache.add(make_account_create())
        loop, *_ = _loop(cache, {account.id: EXPIRED})
        results = await loop.validate_all_accounts()
        assert [result.is_valid for result in results] == [False]
        assert cache.get_by_id(account.id).is_valid is False


async def test_start_runs_a_cycle_and_stop_cancels_timer(cache: AccountCache) -> None:
    account = await cache.add(make_account_create())
    loop, outcomes, *_ = _loop(cache, {account.id: OK})

    loop.start()
    assert loop.running is True
    loop.start()
    await asyncio.sleep(0.01)
    loop.update_interval()
    await loop.stop()

    assert loop.running is False
    loop._rooms.fetch_live_rooms.assert_awaited()
