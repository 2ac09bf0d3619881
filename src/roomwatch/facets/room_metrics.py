"""Cumulative room metrics merged with the room's live attributes."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from roomwatch.connectors.dashboard import MALFORMED_RESPONSE_CODE, ApiErr, ApiOk
from roomwatch.facets.base import Facet, to_datetime, to_float
from roomwatch.schema import ROOM_METRIC_COLUMNS, ROOM_METRICS

if TYPE_CHECKING:
    from roomwatch.connectors.dashboard import ApiResult
    from roomwatch.models import Account, RoomInfo


class RoomMetricsFacet(Facet):
    """One row per room, overwritten on every poll.

    The attributes call runs first; without it the row would lose
    ``online_user_count``, so its failure fails the facet.
    """

    name = "room_metrics"
    table = ROOM_METRICS
    update_fields = ROOM_METRIC_COLUMNS

    async def fetch(
        self, account: Account, room: RoomInfo, start_time: int, end_time: int
    ) -> ApiResult[dict[str, Any]]:
        attributes = await self._client.get_room_attributes(account, [room.room_id])
        if isinstance(attributes, ApiErr):
            return attributes
        if not attributes.data:
            return ApiErr(code=MALFORMED_RESPONSE_CODE, message="No attributes returned")

        metrics = await self._client.get_room_metrics(
            account, [room.room_id], start_time, end_time
        )
        if isinstance(metrics, ApiErr):
            return metrics
        if metrics.data is None:
            return ApiErr(code=MALFORMED_RESPONSE_CODE, message="No metrics returned")

        merged = {**metrics.data, **attributes.data[0].model_dump(exclude_none=True)}
        return ApiOk(data=merged, request_id=metrics.request_id)

    def to_rows(
        self, data: dict[str, Any], room: RoomInfo, start_time: int, end_time: int
    ) -> list[dict[str, Any]]:
        row: dict[str, Any] = {"unique_id": room.unique_id, "room_id": room.room_id}
        for column in ROOM_METRIC_COLUMNS:
            row[column] = to_float(data.get(column))
        row["started_at"] = to_datetime(start_time)
        row["ended_at"] = to_datetime(end_time)
        return [row]
