"""Metric facets: one fetch-and-push job per kind of room metric."""

from __future__ import annotations

from typing import TYPE_CHECKING

from roomwatch.facets.base import Facet, FacetResult
from roomwatch.facets.comments import CommentFacet
from roomwatch.facets.flows import ALL_FLOWS_DIMS, ORGANIC_FLOWS_DIMS, FlowFacet
from roomwatch.facets.per_minute import PerMinuteMetricsFacet, WatchCountFacet
from roomwatch.facets.room_metrics import RoomMetricsFacet
from roomwatch.facets.user_images import UserImageFacet

if TYPE_CHECKING:
    from roomwatch.connectors.dashboard import RemoteMetricsClient
    from roomwatch.db import ConnectionManager
    from roomwatch.rooms import RoomDirectory

__all__ = [
    "CommentFacet",
    "Facet",
    "FacetResult",
    "FacetSet",
    "FlowFacet",
    "PerMinuteMetricsFacet",
    "RoomMetricsFacet",
    "UserImageFacet",
    "WatchCountFacet",
]


class FacetSet:
    """The nine jobs run for every live room on each poll.

    ``lookback`` facets read the rolling 24-hour window ending now;
    ``incremental`` facets read from the room's observed start time.
    """

    def __init__(
        self,
        client: RemoteMetricsClient,
        rooms: RoomDirectory,
        db: ConnectionManager,
    ) -> None:
        deps = (client, rooms, db)
        self.lookback: tuple[Facet, ...] = (
            FlowFacet(*deps, group="all", dims=ALL_FLOWS_DIMS),
            FlowFacet(*deps, group="organic", dims=ORGANIC_FLOWS_DIMS),
            RoomMetricsFacet(*deps),
        )
        self.incremental: tuple[Facet, ...] = (
            WatchCountFacet(*deps),
            PerMinuteMetricsFacet(*deps),
            CommentFacet(*deps),
            UserImageFacet(*deps, group="age"),
            UserImageFacet(*deps, group="gender"),
            UserImageFacet(*deps, group="region"),
        )

    def __iter__(self):
        yield from self.lookback
        yield from self.incremental

    def __len__(self) -> int:
        return len(self.lookback) + len(self.incremental)
