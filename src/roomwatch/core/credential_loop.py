"""Periodic credential validation for every cached account.

Independent of the monitor queue: each tick fetches the live-room listing of
every account concurrently and records whether the session still works.
A rejected session (code 403) marks the account invalid and a successful
listing marks it valid.  Other failures leave the flag alone.  Users are
notified once per account when it turns invalid, and again only after it has
recovered.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from opentelemetry import trace

from roomwatch.connectors.dashboard import CREDENTIAL_EXPIRED_CODE
from roomwatch.core.events import AccountStatusChanged, LoggingNotifier
from roomwatch.core.logging import set_account_context
from roomwatch.models import ValidationResult

if TYPE_CHECKING:
    from roomwatch.cache import AccountCache
    from roomwatch.config import MonitorConfig
    from roomwatch.core.events import EventBus, Notifier
    from roomwatch.rooms import RoomDirectory

logger = logging.getLogger(__name__)


class CredentialValidationLoop:
    def __init__(
        self,
        *,
        cache: AccountCache,
        rooms: RoomDirectory,
        monitor_config: MonitorConfig,
        events: EventBus,
        notifier: Notifier | None = None,
    ) -> None:
        self._cache = cache
        self._rooms = rooms
        self._monitor_config = monitor_config
        self._events = events
        self._notifier = notifier or LoggingNotifier()

        self._running = False
        self._polling = False
        self._timer_task: asyncio.Task | None = None
        self._cycle_tasks: set[asyncio.Task] = set()
        self._notified: set[int] = set()
        self._status_updates: dict[int, asyncio.Task] = {}
        self._tracer = trace.get_tracer("roomwatch")

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._running:
            logger.warning("Credential validation loop already running")
            return
        self._running = True
        self._spawn_cycle()
        self._timer_task = asyncio.create_task(self._timer_loop())
        logger.info("Credential validation loop started")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        task, self._timer_task = self._timer_task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Credential validation loop stopped")

    def update_interval(self) -> None:
        """Re-arm the timer after ``MonitorConfig.interval_seconds`` changed."""
        if not self._running:
            return
        if self._timer_task is not None:
            self._timer_task.cancel()
        self._timer_task = asyncio.create_task(self._timer_loop())
        logger.info(
            "Credential validation interval updated to %ds",
            self._monitor_config.interval_seconds,
        )

    async def _timer_loop(self) -> None:
        while True:
            await asyncio.sleep(self._monitor_config.interval_seconds)
            self._spawn_cycle()

    def _spawn_cycle(self) -> None:
        task = asyncio.create_task(self.poll_credentials())
        self._cycle_tasks.add(task)
        task.add_done_callback(self._cycle_tasks.discard)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def validate_account(self, account_id: int) -> ValidationResult:
        """Probe one account by fetching its listing.  Does not record the result.

        Only a rejected session makes the result invalid.  Any other failure is
        returned as a soft failure carrying the account's current flag.
        """
        try:
            snapshot = await self._rooms.fetch_live_rooms(account_id)
        except Exception as exc:
            logger.exception("Account %d validation failed", account_id)
            return self._soft_failure(account_id, None, str(exc))

        if snapshot is None:
            return ValidationResult(
                account_id=account_id, is_valid=False, error=f"Account {account_id} not found"
            )
        if snapshot.success:
            return ValidationResult(account_id=account_id, is_valid=True, status_code=200)
        if snapshot.status_code == CREDENTIAL_EXPIRED_CODE:
            return ValidationResult(
                account_id=account_id,
                is_valid=False,
                status_code=CREDENTIAL_EXPIRED_CODE,
                error=snapshot.error or "Account credentials are invalid or expired",
            )
        return self._soft_failure(account_id, snapshot.status_code, snapshot.error)

    def _soft_failure(
        self, account_id: int, status_code: int | None, error: str | None
    ) -> ValidationResult:
        logger.warning(
            "Account %d could not be validated, keeping current status: %s", account_id, error
        )
        account = self._cache.get_by_id(account_id)
        return ValidationResult(
            account_id=account_id,
            is_valid=account is not None and account.is_valid,
            status_code=status_code,
            error=error,
            soft_failure=True,
        )

    async def update_account_status(self, account_id: int, is_valid: bool) -> None:
        """Record *is_valid* for the account; concurrent calls share one update."""
        inflight = self._status_updates.get(account_id)
        if inflight is not None:
            await asyncio.shield(inflight)
            return

        task = asyncio.create_task(self._apply_status(account_id, is_valid))
        self._status_updates[account_id] = task
        task.add_done_callback(lambda _: self._status_updates.pop(account_id, None))
        await asyncio.shield(task)

    async def _apply_status(self, account_id: int, is_valid: bool) -> None:
        account = self._cache.get_by_id(account_id)
        if account is None:
            logger.warning("Cannot record status for unknown account %d", account_id)
            return
        try:
            await self._cache.update_valid_status(account_id, is_valid)
        except Exception:
            logger.exception("Failed to update account %d status", account_id)
            return

        if account.is_valid != is_valid:
            await self._events.publish(
                AccountStatusChanged(account_id=account_id, is_valid=is_valid)
            )

        if is_valid:
            self._notified.discard(account_id)
        elif account_id not in self._notified:
            self._notified.add(account_id)
            self._notifier.notify(
                "Account credentials expired",
                f'The login for account "{account.account_name}" has expired, '
                "please log in again",
            )

    async def poll_credentials(self) -> list[ValidationResult]:
        """One validation cycle over every cached account, run concurrently."""
        if self._polling:
            logger.info("Credential validation already in progress, skipping")
            return []

        self._polling = True
        try:
            accounts = self._cache.get_all()
            with self._tracer.start_as_current_span("roomwatch.credentials.validate") as span:
                span.set_attribute("roomwatch.account_count", len(accounts))
                results = await asyncio.gather(
                    *(self._validate_and_record(account.id) for account in accounts)
                )
            valid = sum(1 for result in results if result.is_valid)
            logger.info(
                "Credential validation completed: %d/%d account(s) valid", valid, len(results)
            )
            return list(results)
        except Exception:
            logger.exception("Credential validation cycle failed")
            return []
        finally:
            self._polling = False

    async def _validate_and_record(self, account_id: int) -> ValidationResult:
        set_account_context(account_id)
        result = await self.validate_account(account_id)
        if not result.soft_failure:
            await self.update_account_status(account_id, result.is_valid)
        return result

    async def validate_single_account(self, account_id: int) -> ValidationResult:
        return await self.validate_account(account_id)

    async def validate_all_accounts(self) -> list[ValidationResult]:
        """Validate and record every account one after another."""
        results = []
        for account in self._cache.get_all():
            result = await self.validate_account(account.id)
            results.append(result)
            if not result.soft_failure:
                await self.update_account_status(account.id, result.is_valid)
        return results
