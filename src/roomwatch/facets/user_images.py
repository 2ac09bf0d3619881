"""Audience demographics (age, gender, region) of a room."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from roomwatch.facets.base import Facet, to_datetime, to_int
from roomwatch.schema import USER_IMAGES

if TYPE_CHECKING:
    from roomwatch.connectors.dashboard import ApiResult, UserImageItem
    from roomwatch.models import Account, RoomInfo

USER_IMAGE_DIMS = {
    "region": 1,
    "gender": 3,
    "age": 4,
}


class UserImageFacet(Facet):
    table = USER_IMAGES
    update_fields = ("user_image_value", "started_at")

    def __init__(self, *args: Any, group: str) -> None:
        super().__init__(*args)
        if group not in USER_IMAGE_DIMS:
            raise ValueError(f"Unknown user image group {group!r}")
        self.group = group
        self.name = f"user_image_{group}"

    async def fetch(
        self, account: Account, room: RoomInfo, start_time: int, end_time: int
    ) -> ApiResult[list[UserImageItem]]:
        return await self._client.get_user_image(
            account, [room.room_id], start_time, end_time, USER_IMAGE_DIMS[self.group]
        )

    def to_rows(
        self, data: list[UserImageItem], room: RoomInfo, start_time: int, end_time: int
    ) -> list[dict[str, Any]]:
        return [
            {
                "unique_id": room.unique_id,
                "room_id": room.room_id,
                "user_image_group": self.group,
                "user_image_label": item.label,
                "user_image_value": to_int(item.count),
                "started_at": to_datetime(start_time),
                "ended_at": to_datetime(end_time),
            }
            for item in data
        ]
