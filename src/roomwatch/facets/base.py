"""Abstract base class for metric facets.

A facet fetches one kind of metric for one room from the dashboard and
upserts the rows into its remote table.  :meth:`Facet.run` never raises:
every failure is logged, counted, and reported in the returned
:class:`FacetResult` so one broken facet cannot affect the others.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from roomwatch.connectors.dashboard import ApiErr
from roomwatch.connectors.metrics import facet_failures_total
from roomwatch.schema import conflict_keys_for

if TYPE_CHECKING:
    from roomwatch.connectors.dashboard import ApiResult, RemoteMetricsClient
    from roomwatch.db import ConnectionManager
    from roomwatch.models import Account, RoomInfo
    from roomwatch.rooms import RoomDirectory

logger = logging.getLogger(__name__)


@dataclass
class FacetResult:
    facet: str
    success: bool
    message: str
    count: int = 0


def to_datetime(epoch_s: int | float | None) -> datetime | None:
    """Epoch seconds to an aware UTC datetime; ``None`` and 0 map to None."""
    if not epoch_s:
        return None
    return datetime.fromtimestamp(epoch_s, tz=UTC)


def to_int(value: Any) -> int:
    """Parse a dashboard count (usually a numeric string) leniently, defaulting to 0."""
    if value is None or value == "":
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return 0


def to_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class Facet(abc.ABC):
    """One fetch-and-push job.

    Subclasses set :attr:`name` and :attr:`table`, and implement
    :meth:`fetch` and :meth:`to_rows`.  :attr:`update_fields` lists the
    columns overwritten on conflict; ``None`` overwrites every non-key column.
    """

    name: str
    table: str
    update_fields: tuple[str, ...] | None = None

    def __init__(
        self,
        client: RemoteMetricsClient,
        rooms: RoomDirectory,
        db: ConnectionManager,
    ) -> None:
        self._client = client
        self._rooms = rooms
        self._db = db

    @abc.abstractmethod
    async def fetch(
        self, account: Account, room: RoomInfo, start_time: int, end_time: int
    ) -> ApiResult:
        """Call the dashboard endpoint backing this facet."""
        ...

    @abc.abstractmethod
    def to_rows(
        self, data: Any, room: RoomInfo, start_time: int, end_time: int
    ) -> list[dict[str, Any]]:
        """Map decoded response data to rows of :attr:`table`."""
        ...

    def _fail(self, room: RoomInfo, message: str) -> FacetResult:
        facet_failures_total.labels(facet=self.name).inc()
        logger.warning("[%s] room %s: %s", self.name, room.room_id, message)
        return FacetResult(self.name, False, message)

    def _dedupe(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Keep the last row per natural key; one upsert cannot touch a row twice."""
        keys = conflict_keys_for(self.table)
        unique: dict[tuple, dict[str, Any]] = {}
        for row in rows:
            unique[tuple(row.get(key) for key in keys)] = row
        return list(unique.values())

    async def run(
        self, account_id: int, room: RoomInfo, start_time: int, end_time: int
    ) -> FacetResult:
        account = self._rooms.check_account_valid(account_id)
        if account is None:
            return FacetResult(self.name, False, "Account credentials invalid, skipped")

        try:
            result = await self.fetch(account, room, start_time, end_time)
            if isinstance(result, ApiErr):
                return self._fail(room, f"Fetch failed ({result.code}): {result.message}")

            # The session may have expired while the request was in flight.
            if self._rooms.check_account_valid(account_id) is None:
                return self._fail(room, "Account became invalid during fetch")

            if result.data is None:
                return FacetResult(self.name, True, "No data", 0)

            rows = self._dedupe(self.to_rows(result.data, room, start_time, end_time))
            if not rows:
                return FacetResult(self.name, True, "No data", 0)

            await self._db.insert_batch_on_conflict_update(
                self.table, rows, self.update_fields
            )
        except Exception as exc:
            facet_failures_total.labels(facet=self.name).inc()
            logger.exception("[%s] room %s: fetch-and-push failed", self.name, room.room_id)
            return FacetResult(self.name, False, str(exc) or type(exc).__name__)

        logger.debug("[%s] pushed %d row(s) for room %s", self.name, len(rows), room.room_id)
        return FacetResult(self.name, True, f"Pushed {len(rows)} row(s)", len(rows))
