"""Tests for the metric facets: fetch, row mapping, and failure isolation."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import make_room

from roomwatch.connectors.dashboard import (
    ApiErr,
    ApiOk,
    CommentItem,
    FlowItem,
    PerMinuteItem,
    RoomAttributes,
    UserImageItem,
)
from roomwatch.facets import (
    CommentFacet,
    FacetSet,
    FlowFacet,
    PerMinuteMetricsFacet,
    RoomMetricsFacet,
    UserImageFacet,
    WatchCountFacet,
)
from roomwatch.facets.base import to_datetime, to_float, to_int
from roomwatch.models import Account
from roomwatch.schema import (
    COMMENTS,
    FLOWS,
    PER_MINUTE_METRIC_COLUMNS,
    PER_MINUTE_METRICS,
    ROOM_METRICS,
    USER_IMAGES,
    WATCH_COUNT_PER_MINUTE_METRICS,
)

pytestmark = pytest.mark.unit

START = 1_760_000_000
END = START + 600

ACCOUNT = Account(
    id=1,
    account_name="Main shop",
    login_name="ops@example.com",
    organization_id="1790000000000001",
)


def _deps(valid: bool = True):
    client = MagicMock()
    for name in (
        "get_flow_list",
        "get_room_metrics",
        "get_room_attributes",
        "get_user_image",
        "get_comments",
        "get_per_minute_metrics",
    ):
        setattr(client, name, AsyncMock())
    rooms = MagicMock()
    rooms.check_account_valid.return_value = ACCOUNT if valid else None
    db = MagicMock()
    db.insert_batch_on_conflict_update = AsyncMock()
    return client, rooms, db


def _pushed(db) -> tuple[str, list[dict], tuple | None]:
    table, rows, update_fields = db.insert_batch_on_conflict_update.call_args.args
    return table, rows, update_fields


class TestConverters:
    def test_to_datetime(self):
        assert to_datetime(0) is None
        assert to_datetime(None) is None
        assert to_datetime(START) == datetime.fromtimestamp(START, tz=UTC)

    @pytest.mark.parametrize(
        ("value", "expected"), [("12", 12), (7, 7), ("3.9", 3), ("", 0), (None, 0), ("n/a", 0)]
    )
    def test_to_int(self, value, expected):
        assert to_int(value) == expected

    @pytest.mark.parametrize(
        ("value", "expected"), [("1.5", 1.5), (2, 2.0), ("", None), ("x", None)]
    )
    def test_to_float(self, value, expected):
        assert to_float(value) == expected


class TestRun:
    async def test_invalid_account_is_skipped(self):
        client, rooms, db = _deps(valid=False)
        result = await FlowFacet(client, rooms, db).run(1, make_room(), START, END)
        assert result.success is False
        assert "skipped" in result.message
        client.get_flow_list.assert_not_awaited()
        db.insert_batch_on_conflict_update.assert_not_awaited()

    async def test_api_error_fails_without_push(self):
        client, rooms, db = _deps()
        client.get_flow_list.return_value = ApiErr(code=500, message="busy")
        result = await FlowFacet(client, rooms, db).run(1, make_room(), START, END)
        assert result.success is False
        assert "500" in result.message
        db.insert_batch_on_conflict_update.assert_not_awaited()

    async def test_account_invalidated_during_fetch(self):
        client, rooms, db = _deps()
        rooms.check_account_valid.side_effect = [ACCOUNT, None]
        client.get_flow_list.return_value = ApiOk(data=[FlowItem(name="x", value="1")])
        result = await FlowFacet(client, rooms, db).run(1, make_room(), START, END)
        assert result.success is False
        db.insert_batch_on_conflict_update.assert_not_awaited()

    async def test_empty_data_is_success_without_push(self):
        client, rooms, db = _deps()
        client.get_comments.return_value = ApiOk(data=[])
        result = await CommentFacet(client, rooms, db).run(1, make_room(), START, END)
        assert (result.success, result.count) == (True, 0)
        db.insert_batch_on_conflict_update.assert_not_awaited()

    async def test_write_failure_is_reported_not_raised(self):
        client, rooms, db = _deps()
        client.get_flow_list.return_value = ApiOk(data=[FlowItem(name="x", value="1")])
        db.insert_batch_on_conflict_update.side_effect = RuntimeError("pool closed")
        result = await FlowFacet(client, rooms, db).run(1, make_room(), START, END)
        assert result.success is False
        assert result.message == "pool closed"

    async def test_duplicate_keys_collapse_to_last(self):
        client, rooms, db = _deps()
        client.get_flow_list.return_value = ApiOk(
            data=[FlowItem(name="Feed", value="1"), FlowItem(name="Feed", value="9")]
        )
        result = await FlowFacet(client, rooms, db).run(1, make_room(), START, END)
        assert result.count == 1
        _, rows, _ = _pushed(db)
        assert rows[0]["flows_value"] == 9


class TestFlows:
    async def test_rows(self):
        client, rooms, db = _deps()
        client.get_flow_list.return_value = ApiOk(
            data=[FlowItem(name="Feed", value="120"), FlowItem(name="Search", value="4")]
        )
        facet = FlowFacet(client, rooms, db, group="organic", dims=10)
        result = await facet.run(1, make_room(), START, END)

        assert result.success is True
        assert result.count == 2
        assert facet.name == "flows_organic"
        client.get_flow_list.assert_awaited_once_with(
            ACCOUNT, ["7400000000000000001"], START, END, 10
        )
        table, rows, update_fields = _pushed(db)
        assert table == FLOWS
        assert update_fields is None
        assert rows[0] == {
            "unique_id": "anchor_one",
            "room_id": "7400000000000000001",
            "flows_group": "organic",
            "flows_label": "Feed",
            "flows_value": 120,
            "started_at": to_datetime(START),
            "ended_at": to_datetime(END),
        }


class TestUserImages:
    def test_unknown_group_rejected(self):
        with pytest.raises(ValueError):
            UserImageFacet(*_deps(), group="income")

    @pytest.mark.parametrize(("group", "dims"), [("region", 1), ("gender", 3), ("age", 4)])
    async def test_dims_per_group(self, group, dims):
        client, rooms, db = _deps()
        client.get_user_image.return_value = ApiOk(data=[UserImageItem(label="18-23", count="5")])
        await UserImageFacet(client, rooms, db, group=group).run(1, make_room(), START, END)
        assert client.get_user_image.call_args.args[-1] == dims
        table, rows, update_fields = _pushed(db)
        assert table == USER_IMAGES
        assert rows[0]["user_image_group"] == group
        assert rows[0]["user_image_value"] == 5
        assert update_fields == ("user_image_value", "started_at")


class TestComments:
    async def test_rows(self):
        client, rooms, db = _deps()
        client.get_comments.return_value = ApiOk(
            data=[
                CommentItem(
                    id=99, text="hello", creator="viewer", creator_id=5, create_timestamp=START
                )
            ]
        )
        await CommentFacet(client, rooms, db).run(1, make_room(), START, END)
        table, rows, _ = _pushed(db)
        assert table == COMMENTS
        assert rows[0]["comment_id"] == 99
        assert rows[0]["comment_text"] == "hello"
        assert rows[0]["create_timestamp"] == to_datetime(START)


class TestRoomMetrics:
    async def test_merges_attributes_over_metrics(self):
        client, rooms, db = _deps()
        client.get_room_attributes.return_value = ApiOk(
            data=[RoomAttributes(room_status="2", online_user_count="321")]
        )
        client.get_room_metrics.return_value = ApiOk(
            data={"stat_cost": "12.5", "total_live_watch_cnt": "1000", "unknown": "x"}
        )
        result = await RoomMetricsFacet(client, rooms, db).run(1, make_room(), START, END)

        assert result.success is True
        table, rows, _ = _pushed(db)
        assert table == ROOM_METRICS
        row = rows[0]
        assert row["online_user_count"] == 321.0
        assert row["stat_cost"] == 12.5
        assert row["total_live_watch_cnt"] == 1000.0
        assert "unknown" not in row

    async def test_attribute_failure_fails_facet(self):
        client, rooms, db = _deps()
        client.get_room_attributes.return_value = ApiOk(data=[])
        result = await RoomMetricsFacet(client, rooms, db).run(1, make_room(), START, END)
        assert result.success is False
        client.get_room_metrics.assert_not_awaited()


class TestPerMinute:
    async def test_full_metric_rows(self):
        client, rooms, db = _deps()
        client.get_per_minute_metrics.return_value = ApiOk(
            data=[
                PerMinuteItem(
                    time="10:01",
                    timestamp=START + 60,
                    metrics={"live_form_submit_count": "3"},
                )
            ]
        )
        await PerMinuteMetricsFacet(client, rooms, db).run(1, make_room(), START, END)

        kwargs = client.get_per_minute_metrics.call_args.kwargs
        assert kwargs["limit"] == -1
        assert tuple(kwargs["fields"]) == PER_MINUTE_METRIC_COLUMNS
        table, rows, update_fields = _pushed(db)
        assert table == PER_MINUTE_METRICS
        assert rows[0]["timeline"] == "10:01"
        assert rows[0]["live_form_submit_count"] == 3
        assert rows[0]["live_groupbuy_order_count"] == 0
        assert "timestamp" in update_fields

    async def test_watch_count_rows(self):
        client, rooms, db = _deps()
        client.get_per_minute_metrics.return_value = ApiOk(
            data=[PerMinuteItem(time="10:02", timestamp=START + 120, name="watch", value="42")]
        )
        await WatchCountFacet(client, rooms, db).run(1, make_room(), START, END)

        kwargs = client.get_per_minute_metrics.call_args.kwargs
        assert kwargs["sub_dims"] == 5
        assert kwargs["metric_type"] == "watch_count"
        table, rows, _ = _pushed(db)
        assert table == WATCH_COUNT_PER_MINUTE_METRICS
        assert rows[0]["total_live_watch_cnt"] == 42


def test_facet_set_layout():
    facets = FacetSet(*_deps())
    assert len(facets) == 9
    assert [facet.name for facet in facets.lookback] == [
        "flows_all",
        "flows_organic",
        "room_metrics",
    ]
    assert {facet.name for facet in facets.incremental} == {
        "watch_count",
        "per_minute",
        "comments",
        "user_image_age",
        "user_image_gender",
        "user_image_region",
    }
