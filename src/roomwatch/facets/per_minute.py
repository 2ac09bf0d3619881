"""Per-minute time series: the full metric set and the watch-count series.

Both write to high-contention tables; rows are keyed by the minute label
(``timeline``) so re-polling an overlapping window overwrites in place.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from roomwatch.facets.base import Facet, to_datetime, to_int
from roomwatch.schema import (
    PER_MINUTE_METRIC_COLUMNS,
    PER_MINUTE_METRICS,
    WATCH_COUNT_PER_MINUTE_METRICS,
)

if TYPE_CHECKING:
    from roomwatch.connectors.dashboard import ApiResult, PerMinuteItem
    from roomwatch.models import Account, RoomInfo

PER_MINUTE_DIMS = 9
WATCH_COUNT_SUB_DIMS = 5


class PerMinuteMetricsFacet(Facet):
    name = "per_minute"
    table = PER_MINUTE_METRICS
    update_fields = (*PER_MINUTE_METRIC_COLUMNS, "timestamp")

    async def fetch(
        self, account: Account, room: RoomInfo, start_time: int, end_time: int
    ) -> ApiResult[list[PerMinuteItem]]:
        return await self._client.get_per_minute_metrics(
            account,
            [room.room_id],
            start_time,
            end_time,
            PER_MINUTE_DIMS,
            fields=PER_MINUTE_METRIC_COLUMNS,
            limit=-1,
        )

    def to_rows(
        self, data: list[PerMinuteItem], room: RoomInfo, start_time: int, end_time: int
    ) -> list[dict[str, Any]]:
        rows = []
        for item in data:
            row: dict[str, Any] = {"unique_id": room.unique_id, "room_id": room.room_id}
            for column in PER_MINUTE_METRIC_COLUMNS:
                row[column] = to_int(item.metrics.get(column))
            row["timeline"] = item.time
            row["timestamp"] = to_datetime(item.timestamp)
            rows.append(row)
        return rows


class WatchCountFacet(Facet):
    name = "watch_count"
    table = WATCH_COUNT_PER_MINUTE_METRICS
    update_fields = ("total_live_watch_cnt", "timestamp")

    async def fetch(
        self, account: Account, room: RoomInfo, start_time: int, end_time: int
    ) -> ApiResult[list[PerMinuteItem]]:
        return await self._client.get_per_minute_metrics(
            account,
            [room.room_id],
            start_time,
            end_time,
            PER_MINUTE_DIMS,
            sub_dims=WATCH_COUNT_SUB_DIMS,
            fields=("total_live_watch_cnt",),
            metric_type="watch_count",
        )

    def to_rows(
        self, data: list[PerMinuteItem], room: RoomInfo, start_time: int, end_time: int
    ) -> list[dict[str, Any]]:
        return [
            {
                "unique_id": room.unique_id,
                "room_id": room.room_id,
                "total_live_watch_cnt": to_int(item.value),
                "timeline": item.time,
                "timestamp": to_datetime(item.timestamp),
            }
            for item in data
        ]
