"""Application context: builds and wires every long-lived component.

Nothing in roomwatch is a module-level singleton.  :class:`AppContext` owns
one instance of each service and hands the shared ones (cache, event bus,
monitor config) to the components that need them.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from roomwatch.cache import AccountCache
from roomwatch.connectors.dashboard import RemoteMetricsClient
from roomwatch.core.credential_loop import CredentialValidationLoop
from roomwatch.core.events import EventBus, LoggingNotifier
from roomwatch.core.monitor_queue import MonitorQueueScheduler
from roomwatch.credential_store import CredentialStore
from roomwatch.db import ConnectionManager
from roomwatch.facets import FacetSet
from roomwatch.rooms import CredentialGuard, RoomDirectory

if TYPE_CHECKING:
    import httpx

    from roomwatch.config import AppConfig
    from roomwatch.core.events import Notifier

logger = logging.getLogger(__name__)


class AppContext:
    """Every service of a running roomwatch process.

    Args:
        config: Parsed application config.
        notifier: Sink for user-facing notices; defaults to the log.
        http_client: Optional pre-built httpx client for the dashboard.
        db: Optional pre-built connection manager.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        notifier: Notifier | None = None,
        http_client: httpx.AsyncClient | None = None,
        db: ConnectionManager | None = None,
    ) -> None:
        self.config = config
        self.notifier = notifier or LoggingNotifier()
        self.events = EventBus()

        self.store = CredentialStore(config.store.path)
        self.cache = AccountCache(self.store)
        self.guard = CredentialGuard(self.cache, self.events)
        self.client = RemoteMetricsClient(
            config.api.base_url,
            config.api.timeout_s,
            http_client=http_client,
            on_credential_expired=self.guard.invalidate,
            debug=config.debug.network,
        )
        self.rooms = RoomDirectory(self.cache, self.client)
        self.db = db or ConnectionManager(debug_sql=config.debug.sql)
        self.facets = FacetSet(self.client, self.rooms, self.db)

        self.monitor = MonitorQueueScheduler(
            cache=self.cache,
            client=self.client,
            rooms=self.rooms,
            db=self.db,
            facets=self.facets,
            monitor_config=config.monitor,
            events=self.events,
            database_config=config.database,
            tunnel_config=config.tunnel,
            notifier=self.notifier,
            debug_rooms=config.debug.live_room,
        )
        self.credential_loop = CredentialValidationLoop(
            cache=self.cache,
            rooms=self.rooms,
            monitor_config=config.monitor,
            events=self.events,
            notifier=self.notifier,
        )

    async def open(self) -> None:
        """Create the account table and load the cache."""
        await self.store.ensure_table()
        await self.cache.initialize()

    async def start(self) -> None:
        await self.open()
        await self.monitor.start()
        self.credential_loop.start()
        logger.info("roomwatch started")

    def set_poll_interval(self, seconds: int) -> int:
        """Apply a new interval to both loops."""
        applied = self.monitor.set_poll_interval(seconds)
        self.credential_loop.update_interval()
        return applied

    async def shutdown(self) -> None:
        await self.credential_loop.stop()
        await self.monitor.stop()
        await self.client.aclose()
        self.cache.clear_all_live_rooms()
        logger.info("roomwatch stopped")
