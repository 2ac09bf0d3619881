"""Viewer comments posted in a room."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from roomwatch.facets.base import Facet, to_datetime
from roomwatch.schema import COMMENTS

if TYPE_CHECKING:
    from roomwatch.connectors.dashboard import ApiResult, CommentItem
    from roomwatch.models import Account, RoomInfo


class CommentFacet(Facet):
    name = "comments"
    table = COMMENTS
    update_fields = (
        "unique_id",
        "creator",
        "creator_id",
        "comment_text",
        "create_timestamp",
    )

    async def fetch(
        self, account: Account, room: RoomInfo, start_time: int, end_time: int
    ) -> ApiResult[list[CommentItem]]:
        return await self._client.get_comments(account, [room.room_id], start_time, end_time)

    def to_rows(
        self, data: list[CommentItem], room: RoomInfo, start_time: int, end_time: int
    ) -> list[dict[str, Any]]:
        return [
            {
                "unique_id": room.unique_id,
                "room_id": room.room_id,
                "creator": item.creator,
                "creator_id": item.creator_id,
                "comment_id": item.id,
                "comment_text": item.text,
                "create_timestamp": to_datetime(item.create_timestamp),
            }
            for item in data
        ]
