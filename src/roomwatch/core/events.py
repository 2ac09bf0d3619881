"""Domain events and the notifier seam.

The ingestion core never talks to a UI.  It publishes events on an
:class:`EventBus` that any front end may subscribe to, and sends
human-readable notices through a :class:`Notifier`.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol

from roomwatch.models import MonitorQueueEntry, now_ms

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RoomAdded:
    entry: MonitorQueueEntry
    at: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class RoomRemoved:
    account_id: int
    room_id: str
    reason: str = "removed"
    at: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class PollCompleted:
    duration_ms: int
    room_count: int
    at: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class AccountStatusChanged:
    account_id: int
    is_valid: bool
    at: int = field(default_factory=now_ms)


Event = RoomAdded | RoomRemoved | PollCompleted | AccountStatusChanged
Handler = Callable[[Event], Awaitable[None] | None]


class EventBus:
    """Fan out events to subscribers in subscription order.

    A failing subscriber is logged and skipped; it never affects the
    publisher or the other subscribers.
    """

    def __init__(self) -> None:
        self._handlers: list[tuple[type | None, Handler]] = []

    def subscribe(self, handler: Handler, event_type: type | None = None) -> Callable[[], None]:
        """Register *handler*, optionally for a single event type.

        Returns a callable that removes the subscription.
        """
        entry = (event_type, handler)
        self._handlers.append(entry)

        def _unsubscribe() -> None:
            if entry in self._handlers:
                self._handlers.remove(entry)

        return _unsubscribe

    async def publish(self, event: Event) -> None:
        for event_type, handler in list(self._handlers):
            if event_type is not None and not isinstance(event, event_type):
                continue
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event handler %r failed for %s", handler, type(event).__name__)


# ---------------------------------------------------------------------------
# Notifier
# ---------------------------------------------------------------------------


class Notifier(Protocol):
    def notify(self, title: str, body: str) -> None: ...


class LoggingNotifier:
    """Default notifier: writes notices to the log at WARNING."""

    def notify(self, title: str, body: str) -> None:
        logger.warning("%s: %s", title, body)
