"""Traffic-source breakdown of a room's viewers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from roomwatch.facets.base import Facet, to_datetime, to_int
from roomwatch.schema import FLOWS

if TYPE_CHECKING:
    from roomwatch.connectors.dashboard import ApiResult, FlowItem
    from roomwatch.models import Account, RoomInfo

ALL_FLOWS_DIMS = 5
ORGANIC_FLOWS_DIMS = 10


class FlowFacet(Facet):
    """Flow list for one group (``all`` or ``organic``), keyed by label."""

    table = FLOWS

    def __init__(self, *args: Any, group: str = "all", dims: int = ALL_FLOWS_DIMS) -> None:
        super().__init__(*args)
        self.group = group
        self.dims = dims
        self.name = f"flows_{group}"

    async def fetch(
        self, account: Account, room: RoomInfo, start_time: int, end_time: int
    ) -> ApiResult[list[FlowItem]]:
        return await self._client.get_flow_list(
            account, [room.room_id], start_time, end_time, self.dims
        )

    def to_rows(
        self, data: list[FlowItem], room: RoomInfo, start_time: int, end_time: int
    ) -> list[dict[str, Any]]:
        return [
            {
                "unique_id": room.unique_id,
                "room_id": room.room_id,
                "flows_group": self.group,
                "flows_label": item.name,
                "flows_value": to_int(item.value),
                "started_at": to_datetime(start_time),
                "ended_at": to_datetime(end_time),
            }
            for item in data
        ]
