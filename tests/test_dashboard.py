"""Tests for the dashboard HTTP client, driven through httpx.MockTransport."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from roomwatch.connectors.dashboard import (
    CREDENTIAL_EXPIRED_CODE,
    FLOW_LIST_PATH,
    LIVE_LIST_PATH,
    MALFORMED_RESPONSE_CODE,
    PER_MINUTE_PATH,
    TRANSPORT_ERROR_CODE,
    ApiErr,
    ApiOk,
    RemoteMetricsClient,
    decode_envelope,
)
from roomwatch.models import Account

pytestmark = pytest.mark.unit

BASE_URL = "https://dashboard.test"


def _account(**overrides) -> Account:
    data = {
        "id": 1,
        "account_name": "Main shop",
        "login_name": "ops@example.com",
        "organization_id": "1790000000000001",
        "cookie": "sessionid=abc",
        "csrf_token": "csrf-abc",
    }
    data.update(overrides)
    return Account(**data)


def _client(handler, **kwargs) -> tuple[RemoteMetricsClient, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    http = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(_record))
    return RemoteMetricsClient(BASE_URL, 5.0, http_client=http, **kwargs), seen


def _envelope(data=None, code: int = 0, msg: str = "") -> httpx.Response:
    return httpx.Response(
        200, json={"code": code, "data": data, "msg": msg, "request_id": "req-1"}
    )


class TestDecodeEnvelope:
    def test_success(self):
        result = decode_envelope({"code": 0, "data": {"a": 1}, "request_id": "r"})
        assert isinstance(result, ApiOk)
        assert result.ok is True
        assert result.data == {"a": 1}
        assert result.request_id == "r"

    def test_error_code(self):
        result = decode_envelope({"code": 40001, "msg": "bad param"})
        assert isinstance(result, ApiErr)
        assert (result.code, result.message) == (40001, "bad param")
        assert result.credential_expired is False

    def test_credential_expired(self):
        result = decode_envelope({"code": 403, "msg": "login expired"})
        assert isinstance(result, ApiErr)
        assert result.credential_expired is True

    @pytest.mark.parametrize("payload", [[], "oops", {"data": {}}, {"code": "x"}])
    def test_not_an_envelope(self, payload):
        result = decode_envelope(payload)
        assert isinstance(result, ApiErr)
        assert result.code == MALFORMED_RESPONSE_CODE

    def test_null_data_is_success(self):
        result = decode_envelope({"code": 0, "data": None}, dict)
        assert isinstance(result, ApiOk)
        assert result.data is None

    def test_undecodable_data(self):
        result = decode_envelope({"code": 0, "data": [1, 2]}, dict)
        assert isinstance(result, ApiErr)
        assert result.code == MALFORMED_RESPONSE_CODE


class TestLiveList:
    async def test_request_shape_and_decoding(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return _envelope(
                {
                    "list": [
                        {
                            "room_id": "7400000000000000001",
                            "user_id": "u-1",
                            "nickname": "Anchor One",
                            "metrics": {"live_st": 1760000000, "stat_cost": 12.5},
                        }
                    ],
                    "ies_count": 1,
                }
            )

        client, seen = _client(handler)
        result = await client.get_live_list(_account())

        assert isinstance(result, ApiOk)
        room = result.data.find("7400000000000000001")
        assert room is not None
        assert room.metrics.live_st == 1760000000
        assert room.has_identity() is True

        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == LIVE_LIST_PATH
        assert request.url.params["group_id"] == "1790000000000001"
        assert request.headers["cookie"] == "sessionid=abc"
        assert request.headers["x-csrftoken"] == "csrf-abc"
        assert "cc_id=1790000000000001" in request.headers["referer"]
        body = json.loads(request.content)
        assert body["page"] == 1
        assert "live_st" in body["metrics"]


class TestFailures:
    async def test_credential_expired_invokes_hook(self):
        hook = AsyncMock()
        client, _ = _client(lambda request: _envelope(code=403, msg="expired"),
                            on_credential_expired=hook)
        account = _account()

        result = await client.get_flow_list(account, ["r1"], 0, 60, 5)

        assert isinstance(result, ApiErr)
        assert result.code == CREDENTIAL_EXPIRED_CODE
        hook.assert_awaited_once_with(account)

    async def test_failing_hook_still_returns_error(self):
        hook = AsyncMock(side_effect=RuntimeError("database is locked"))
        client, _ = _client(lambda request: _envelope(code=403, msg="expired"),
                            on_credential_expired=hook)

        result = await client.get_live_list(_account())

        assert isinstance(result, ApiErr)
        assert result.code == CREDENTIAL_EXPIRED_CODE
        hook.assert_awaited_once()

    async def test_other_error_codes_do_not_invoke_hook(self):
        hook = AsyncMock()
        client, _ = _client(lambda request: _envelope(code=500, msg="busy"),
                            on_credential_expired=hook)
        result = await client.get_comments(_account(), ["r1"], 0, 60)
        assert isinstance(result, ApiErr)
        assert result.code == 500
        hook.assert_not_awaited()

    async def test_transport_error_is_returned(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client, _ = _client(handler)
        result = await client.get_room_attributes(_account(), ["r1"])
        assert isinstance(result, ApiErr)
        assert result.code == TRANSPORT_ERROR_CODE
        assert "connection refused" in result.message

    async def test_non_json_body(self):
        client, _ = _client(lambda request: httpx.Response(502, text="<html>bad gateway</html>"))
        result = await client.get_user_image(_account(), ["r1"], 0, 60, 4)
        assert isinstance(result, ApiErr)
        assert result.code == MALFORMED_RESPONSE_CODE
        assert "502" in result.message


class TestEndpoints:
    async def test_flow_list(self):
        client, seen = _client(
            lambda request: _envelope([{"name": "Recommended", "value": "120"}])
        )
        result = await client.get_flow_list(_account(), ["r1"], 100, 200, 10)
        assert isinstance(result, ApiOk)
        assert result.data[0].name == "Recommended"
        assert seen[0].url.path == FLOW_LIST_PATH
        assert json.loads(seen[0].content) == {
            "startTime": 100,
            "endTime": 200,
            "roomIds": ["r1"],
            "dims": 10,
        }

    async def test_room_attributes_single_object_is_listed(self):
        client, _ = _client(lambda request: _envelope({"room_status": "2", "extra": "kept"}))
        result = await client.get_room_attributes(_account(), ["r1"], ("room_status",))
        assert isinstance(result, ApiOk)
        assert len(result.data) == 1
        assert result.data[0].is_live is True

    async def test_per_minute_optional_fields(self):
        client, seen = _client(
            lambda request: _envelope(
                [{"time": "10:01", "timeStamp": 1760000060, "name": "watch", "value": "7"}]
            )
        )
        result = await client.get_per_minute_metrics(
            _account(),
            ["r1"],
            0,
            60,
            9,
            sub_dims=5,
            fields=["total_live_watch_cnt"],
            metric_type="watch_count",
        )
        assert isinstance(result, ApiOk)
        assert result.data[0].timestamp == 1760000060
        assert seen[0].url.path == PER_MINUTE_PATH
        body = json.loads(seen[0].content)
        assert body["subDims"] == 5
        assert body["type"] == "watch_count"
        assert "limit" not in body

    async def test_room_metrics_returns_dict(self):
        client, _ = _client(lambda request: _envelope({"stat_cost": "3.5"}))
        result = await client.get_room_metrics(_account(), ["r1"], 0, 60)
        assert isinstance(result, ApiOk)
        assert result.data == {"stat_cost": "3.5"}


async def test_aclose_leaves_injected_client_open():
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: _envelope()))
    client = RemoteMetricsClient(BASE_URL, http_client=http)
    await client.aclose()
    assert http.is_closed is False
    await http.aclose()


async def test_owned_client_closed_on_exit():
    async with RemoteMetricsClient(BASE_URL) as client:
        inner = client._http_client
    assert inner.is_closed is True
