"""Monitor queue: the set of rooms being polled and the poll cycle itself.

Rooms enter the queue only after the account's session has been probed and
the room has been found, with complete identity, in a fresh listing.  Each
poll cycle groups active rooms by account, checks every room is still
broadcasting (evicting those that are not), then runs the nine facets for
the room concurrently.

Timer semantics: a background task sleeps ``MonitorConfig.interval_seconds``
between ticks and spawns each cycle in its own task, so a slow cycle never
delays the cadence.  A tick that fires while a cycle is still running is
dropped by the cycle's reentrancy guard.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import Callable
from typing import TYPE_CHECKING

from opentelemetry import trace

from roomwatch.connectors.dashboard import ROOM_STATUS_LIVE, ApiErr
from roomwatch.connectors.metrics import poll_cycles_total, room_evictions_total
from roomwatch.core.events import LoggingNotifier, PollCompleted, RoomAdded, RoomRemoved
from roomwatch.core.logging import set_account_context
from roomwatch.facets import FacetResult
from roomwatch.models import MonitorQueueEntry, QueueOperationResult, QueueStats, now_ms

if TYPE_CHECKING:
    from roomwatch.cache import AccountCache
    from roomwatch.config import DatabaseConfig, MonitorConfig, TunnelConfig
    from roomwatch.connectors.dashboard import RemoteMetricsClient
    from roomwatch.core.events import EventBus, Notifier
    from roomwatch.db import ConnectionManager
    from roomwatch.facets import FacetSet
    from roomwatch.models import Account
    from roomwatch.rooms import RoomDirectory

logger = logging.getLogger(__name__)

# Window of the credential probe run before a room is admitted.
PROBE_WINDOW_S = 3600
PROBE_FLOW_DIMS = 5
# Flows and room metrics are re-read over the 24 hours before the broadcast start.
LOOKBACK_S = 24 * 3600
# After the first poll, incremental facets re-read the last three minutes.
INCREMENTAL_OVERLAP_S = 3 * 60

QueueKey = tuple[int, str]


class MonitorQueueScheduler:
    """Owns the monitor queue and drives the periodic poll.

    Parameters
    ----------
    cache:
        Account cache used to resolve and refresh accounts.
    client:
        Dashboard client used for the admission probe and liveness check.
    rooms:
        Room directory used for listings and validity checks.
    db:
        Connection manager; initialized on :meth:`start`, closed on :meth:`stop`.
    facets:
        The facet jobs run for every live room.
    monitor_config:
        Live poll interval, shared with the credential loop.
    database_config / tunnel_config:
        Passed to ``db.initialize`` on start.
    events / notifier:
        Event bus for queue changes; notifier for eviction notices.
    clock:
        Epoch-seconds clock, injectable for tests.
    debug_rooms:
        Log every facet result at INFO.
    """

    def __init__(
        self,
        *,
        cache: AccountCache,
        client: RemoteMetricsClient,
        rooms: RoomDirectory,
        db: ConnectionManager,
        facets: FacetSet,
        monitor_config: MonitorConfig,
        events: EventBus,
        database_config: DatabaseConfig | None = None,
        tunnel_config: TunnelConfig | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], float] = time.time,
        debug_rooms: bool = False,
    ) -> None:
        self._cache = cache
        self._client = client
        self._rooms = rooms
        self._db = db
        self._facets = facets
        self._monitor_config = monitor_config
        self._events = events
        self._database_config = database_config
        self._tunnel_config = tunnel_config
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock
        self.debug_rooms = debug_rooms

        self._queue: dict[QueueKey, MonitorQueueEntry] = {}
        self._running = False
        self._polling = False
        self._timer_task: asyncio.Task | None = None
        self._cycle_tasks: set[asyncio.Task] = set()
        self._tracer = trace.get_tracer("roomwatch")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    @property
    def polling(self) -> bool:
        return self._polling

    async def start(self) -> None:
        """Connect the database, run one cycle now, then poll on the interval."""
        if self._running:
            logger.warning("Monitor queue already running")
            return

        if self._database_config is not None:
            await self._db.initialize(self._database_config, self._tunnel_config)

        self._running = True
        self._spawn_cycle()
        self._arm_timer()
        logger.info(
            "Monitor queue started (interval %ds)", self._monitor_config.interval_seconds
        )

    async def stop(self) -> None:
        """Stop the timer, let any in-flight cycle finish, then close the database."""
        if not self._running:
            return
        self._running = False

        await self._cancel_timer()
        if self._cycle_tasks:
            logger.info("Waiting for %d in-flight poll cycle(s)", len(self._cycle_tasks))
            await asyncio.gather(*self._cycle_tasks, return_exceptions=True)

        await self._db.close()
        logger.info("Monitor queue stopped")

    def set_poll_interval(self, seconds: int) -> int:
        """Change the poll interval and re-arm the timer.  Returns the applied value."""
        applied = self._monitor_config.set_interval(seconds)
        if self._running:
            if self._timer_task is not None:
                self._timer_task.cancel()
            self._arm_timer()
        logger.info("Poll interval updated to %ds", applied)
        return applied

    def _arm_timer(self) -> None:
        self._timer_task = asyncio.create_task(self._timer_loop())

    async def _cancel_timer(self) -> None:
        task, self._timer_task = self._timer_task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _timer_loop(self) -> None:
        while True:
            await asyncio.sleep(self._monitor_config.interval_seconds)
            self._spawn_cycle()

    def _spawn_cycle(self) -> None:
        task = asyncio.create_task(self.poll_once())
        self._cycle_tasks.add(task)
        task.add_done_callback(self._cycle_tasks.discard)

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    async def _resolve_account(self, account_id: int) -> Account | None:
        """Look the account up, refreshing the cache once if it is missing."""
        account = self._cache.get_by_id(account_id)
        if account is None:
            logger.info("Account %d not in cache, refreshing", account_id)
            await self._cache.refresh()
            account = self._cache.get_by_id(account_id)
        return account

    async def _probe_credentials(self, account: Account, room_id: str) -> str | None:
        """Run a one-hour flow request for *room_id*; return an error message or None."""
        now_s = int(self._clock())
        result = await self._client.get_flow_list(
            account, [room_id], now_s - PROBE_WINDOW_S, now_s, PROBE_FLOW_DIMS
        )
        if isinstance(result, ApiErr):
            return f"Credential check failed: code={result.code} message={result.message}"
        return None

    async def add_to_monitor_queue(self, account_id: int, room_id: str) -> QueueOperationResult:
        try:
            account = await self._resolve_account(account_id)
            if account is None:
                return QueueOperationResult(success=False, message="Account not found")

            error = await self._probe_credentials(account, room_id)
            if error is not None:
                return QueueOperationResult(success=False, message=error)

            # The probe may have flipped the account invalid.
            account = self._cache.get_by_id(account_id)
            if account is None or not account.is_valid:
                return QueueOperationResult(
                    success=False, message="Account credentials are invalid, please log in again"
                )

            snapshot = await self._rooms.fetch_live_rooms(account_id)
            if snapshot is None:
                return QueueOperationResult(success=False, message="Empty listing response")
            if not snapshot.success:
                return QueueOperationResult(
                    success=False, message=f"Listing failed: {snapshot.error or 'unknown error'}"
                )
            if snapshot.listing is None:
                return QueueOperationResult(success=False, message="Could not get room data")

            room = snapshot.listing.find(room_id)
            if room is None:
                return QueueOperationResult(
                    success=False, message="Room not found or not accessible"
                )
            if not room.has_identity():
                return QueueOperationResult(
                    success=False, message="Incomplete room data, cannot monitor"
                )

            key = (account_id, room_id)
            if key in self._queue:
                return QueueOperationResult(
                    success=False, message="Room already in monitor queue"
                )

            now = now_ms()
            entry = MonitorQueueEntry(
                room_id=room_id,
                account_id=account_id,
                account_name=account.account_name,
                organization_id=account.organization_id,
                anchor_nickname=room.nickname,
                added_at=now,
                last_updated=now,
                room=room.model_copy(deep=True),
            )
            self._queue[key] = entry
        except Exception as exc:
            logger.exception("Failed to add room %s for account %d", room_id, account_id)
            return QueueOperationResult(success=False, message=str(exc) or "Add failed")

        logger.info(
            "Room %s (%s) added to monitor queue for account %d",
            room_id,
            entry.anchor_nickname,
            account_id,
        )
        await self._events.publish(RoomAdded(entry=entry.model_copy()))
        return QueueOperationResult(
            success=True, message="Room added to monitor queue", entry=entry.model_copy()
        )

    async def _drop(self, key: QueueKey, reason: str) -> MonitorQueueEntry | None:
        entry = self._queue.pop(key, None)
        if entry is not None:
            logger.info("Room %s removed from monitor queue (%s)", key[1], reason)
            await self._events.publish(
                RoomRemoved(account_id=key[0], room_id=key[1], reason=reason)
            )
        return entry

    async def remove_from_monitor_queue(
        self, account_id: int, room_id: str
    ) -> QueueOperationResult:
        try:
            if await self._resolve_account(account_id) is None:
                return QueueOperationResult(success=False, message="Account not found")
        except Exception as exc:
            logger.exception("Failed to remove room %s for account %d", room_id, account_id)
            return QueueOperationResult(success=False, message=str(exc) or "Remove failed")

        entry = await self._drop((account_id, room_id), "removed")
        if entry is None:
            return QueueOperationResult(success=False, message="Room not in monitor queue")
        return QueueOperationResult(
            success=True, message="Room removed from monitor queue", entry=entry
        )

    async def clear_account_queue(self, account_id: int) -> QueueOperationResult:
        try:
            if await self._resolve_account(account_id) is None:
                return QueueOperationResult(success=False, message="Account not found")
        except Exception as exc:
            logger.exception("Failed to clear queue for account %d", account_id)
            return QueueOperationResult(success=False, message=str(exc) or "Clear failed")

        keys = [key for key in self._queue if key[0] == account_id]
        if not keys:
            return QueueOperationResult(success=False, message="Account has no monitored rooms")

        removed = []
        for key in keys:
            entry = await self._drop(key, "cleared")
            if entry is not None:
                removed.append(entry)
        return QueueOperationResult(
            success=True,
            message=f"Cleared account queue, removed {len(removed)} room(s)",
            entries=removed,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_monitor_queue(self) -> list[MonitorQueueEntry]:
        return [entry.model_copy(deep=True) for entry in self._queue.values()]

    def get_monitor_queue_by_account(self, account_id: int) -> list[MonitorQueueEntry]:
        return [
            entry.model_copy(deep=True)
            for key, entry in self._queue.items()
            if key[0] == account_id
        ]

    def is_in_monitor_queue(self, account_id: int, room_id: str) -> bool:
        return (account_id, room_id) in self._queue

    def get_stats(self) -> QueueStats:
        entries = list(self._queue.values())
        return QueueStats(
            total=len(entries),
            active=sum(1 for entry in entries if entry.is_active),
            accounts=len({entry.account_id for entry in entries}),
            polling=self._polling,
            running=self._running,
            poll_interval_s=self._monitor_config.interval_seconds,
        )

    # ------------------------------------------------------------------
    # Poll cycle
    # ------------------------------------------------------------------

    async def poll_once(self) -> bool:
        """Run one poll cycle.  Returns False when skipped because one is in progress."""
        if self._polling:
            logger.warning("Poll already in progress, skipping")
            poll_cycles_total.labels(outcome="skipped").inc()
            return False

        self._polling = True
        try:
            active = [entry for entry in self._queue.values() if entry.is_active]
            if not active:
                logger.debug("No active rooms to monitor")
                poll_cycles_total.labels(outcome="empty").inc()
                return True

            logger.info("Polling %d active room(s)", len(active))
            started = time.monotonic()

            groups: dict[int, list[MonitorQueueEntry]] = defaultdict(list)
            for entry in active:
                groups[entry.account_id].append(entry)

            with self._tracer.start_as_current_span("roomwatch.monitor.poll") as span:
                span.set_attribute("roomwatch.room_count", len(active))
                span.set_attribute("roomwatch.account_count", len(groups))
                await asyncio.gather(
                    *(
                        self._poll_account(account_id, entries)
                        for account_id, entries in groups.items()
                    )
                )

            now = now_ms()
            for entry in active:
                if self._queue.get(entry.key) is entry:
                    entry.last_updated = now

            duration_ms = int((time.monotonic() - started) * 1000)
            logger.info("Poll completed in %dms, processed %d room(s)", duration_ms, len(active))
            poll_cycles_total.labels(outcome="ok").inc()
            await self._events.publish(
                PollCompleted(duration_ms=duration_ms, room_count=len(active))
            )
        except Exception:
            poll_cycles_total.labels(outcome="error").inc()
            logger.exception("Poll cycle failed")
        finally:
            self._polling = False
        return True

    async def _poll_account(self, account_id: int, entries: list[MonitorQueueEntry]) -> None:
        set_account_context(account_id)
        results = await asyncio.gather(
            *(self._poll_room(entry) for entry in entries), return_exceptions=True
        )
        for entry, result in zip(entries, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Error polling room %s for account %d",
                    entry.room_id,
                    account_id,
                    exc_info=result,
                )

    async def _is_live(self, entry: MonitorQueueEntry) -> bool:
        account = self._rooms.check_account_valid(entry.account_id)
        if account is None:
            return False
        result = await self._client.get_room_attributes(
            account, [entry.room_id], ("room_status",)
        )
        if isinstance(result, ApiErr) or not result.data:
            return False
        return result.data[0].room_status == ROOM_STATUS_LIVE

    async def _poll_room(self, entry: MonitorQueueEntry) -> list[FacetResult]:
        room = entry.room
        if not await self._is_live(entry):
            await self._drop(entry.key, "offline")
            room_evictions_total.inc()
            self._notifier.notify(
                "Monitoring stopped",
                f'Cannot keep monitoring "{room.room_id}-{room.nickname}", it may have '
                "ended and was removed from the queue",
            )
            return []

        now_s = int(self._clock())
        # Listings without a broadcast start fall back to the admission time.
        live_st = room.metrics.live_st or entry.added_at // 1000
        if not room.start_time:
            room.start_time = live_st
        else:
            room.start_time = now_s - INCREMENTAL_OVERLAP_S

        lookback_start = live_st - LOOKBACK_S
        jobs = [
            facet.run(entry.account_id, room, lookback_start, now_s)
            for facet in self._facets.lookback
        ]
        jobs += [
            facet.run(entry.account_id, room, room.start_time, now_s)
            for facet in self._facets.incremental
        ]
        results = await asyncio.gather(*jobs)

        if self.debug_rooms:
            for result in results:
                logger.info(
                    "[room %s] %s: %s (%s)",
                    room.room_id,
                    result.facet,
                    "ok" if result.success else "failed",
                    result.message,
                )

        failed = [result.facet for result in results if not result.success]
        if failed:
            logger.warning(
                "Room %s: %d/%d facet(s) failed: %s",
                room.room_id,
                len(failed),
                len(results),
                ", ".join(failed),
            )
        return results
