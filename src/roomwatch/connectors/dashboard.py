"""HTTP client for the live-analytics dashboard API.

Every endpoint is a JSON POST authenticated by the account's session cookie
and CSRF token.  Responses share one envelope::

    {"code": 0, "data": ..., "msg": "", "request_id": "..."}

``code == 0`` is success.  ``code == 403`` means the session expired; the
client reports it through the ``on_credential_expired`` hook before
returning.  Any other code is a soft failure.  Transport and decoding errors
are also returned as :class:`ApiErr` (never raised) so callers handle one
result shape.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from typing_extensions import TypeAliasType

from roomwatch.config import DEFAULT_API_BASE_URL, DEFAULT_API_TIMEOUT_S
from roomwatch.connectors.metrics import record_api_call
from roomwatch.models import LiveListing

if TYPE_CHECKING:
    from roomwatch.models import Account

logger = logging.getLogger(__name__)

CREDENTIAL_EXPIRED_CODE = 403
TRANSPORT_ERROR_CODE = -1
MALFORMED_RESPONSE_CODE = -2

_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/141.0.0.0 Safari/537.36"
)

# Endpoint paths
LIVE_LIST_PATH = "/nbs/api/bm/operate/live/ies_list"
ROOM_METRICS_PATH = "/nbs/api/statistics/bm/live_show/online_room/metrics/"
ROOM_ATTRIBUTES_PATH = "/nbs/api/statistics/bm/live_show/online_room/attributes"
FLOW_LIST_PATH = "/nbs/api/statistics/bm/live_show/flow/list"
USER_IMAGE_PATH = "/nbs/api/statistics/bm/live_show/user_image/list"
COMMENT_LIST_PATH = "/nbs/api/statistics/bm/live_show/comment/list"
PER_MINUTE_PATH = "/nbs/api/statistics/bm/live_show/per_minute_metrics"

DEFAULT_LIVE_LIST_METRICS = (
    "live_st",
    "live_dt",
    "total_live_watch_cnt",
    "total_live_avg_watch_duration",
    "total_live_follow_cnt",
    "total_live_comment_cnt",
    "total_live_like_cnt",
    "live_card_icon_component_click_count",
    "stat_cost",
)

DEFAULT_ROOM_METRIC_FIELDS = (
    "distinct_ad_id",
    "distinct_promotion_id",
    "live_app_active_count",
    "live_app_active_pay_count",
    "live_app_download_start_count",
    "live_app_install_finish_count",
    "live_card_icon_component_click_count",
    "live_form_submit_count",
    "live_groupbuy_order_count",
    "live_groupbuy_pay_click_count",
    "live_groupbuy_product_click_count",
    "stat_live_groupbuy_order_gmv",
    "total_live_avg_watch_duration",
    "total_live_comment_cnt",
    "total_live_follow_cnt",
    "total_live_like_cnt",
    "total_live_watch_cnt",
    "stat_cost",
)

DEFAULT_ROOM_ATTRIBUTES = ("room_status", "online_user_count", "room_end_time")

# Value of ``room_status`` while a room is broadcasting.
ROOM_STATUS_LIVE = "2"


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


T = TypeVar("T")


class ApiOk(BaseModel, Generic[T]):
    """Successful response carrying decoded ``data`` (may be None)."""

    data: T | None = None
    request_id: str | None = None

    @property
    def ok(self) -> bool:
        return True


class ApiErr(BaseModel):
    """Failed response: non-zero envelope code, transport error or bad payload."""

    code: int
    message: str = ""
    request_id: str | None = None

    @property
    def ok(self) -> bool:
        return False

    @property
    def credential_expired(self) -> bool:
        return self.code == CREDENTIAL_EXPIRED_CODE


ApiResult = TypeAliasType("ApiResult", ApiOk[T] | ApiErr, type_params=(T,))


# ---------------------------------------------------------------------------
# Payload models
# ---------------------------------------------------------------------------


class RoomAttributes(BaseModel):
    """One entry of the attributes endpoint.  All values arrive as strings."""

    model_config = ConfigDict(extra="allow")

    room_status: str | None = None
    online_user_count: str | None = None
    room_end_time: str | None = None
    room_id: str | None = None
    room_title: str | None = None
    room_start_time: str | None = None

    @property
    def is_live(self) -> bool:
        return self.room_status == ROOM_STATUS_LIVE


class FlowItem(BaseModel):
    name: str
    value: str = "0"


class UserImageItem(BaseModel):
    label: str
    count: str = "0"


class CommentItem(BaseModel):
    id: int
    text: str = ""
    creator: str = ""
    creator_id: int | None = None
    create_timestamp: int


class PerMinuteItem(BaseModel):
    """A per-minute sample; ``name``/``value`` in watch-count mode, ``metrics`` otherwise."""

    model_config = ConfigDict(populate_by_name=True)

    time: str = ""
    timestamp: int | None = Field(default=None, alias="timeStamp")
    name: str | None = None
    value: str | None = None
    metrics: dict[str, str] = Field(default_factory=dict)


CredentialExpiredHook = Callable[["Account"], Awaitable[None]]


def decode_envelope(payload: Any, decode: Callable[[Any], Any] | None = None) -> ApiResult:
    """Turn a raw response body into :class:`ApiOk` or :class:`ApiErr`."""
    if not isinstance(payload, dict) or "code" not in payload:
        return ApiErr(code=MALFORMED_RESPONSE_CODE, message="Response is not an API envelope")

    request_id = payload.get("request_id")
    try:
        code = int(payload["code"])
    except (TypeError, ValueError):
        return ApiErr(code=MALFORMED_RESPONSE_CODE, message=f"Bad code {payload['code']!r}")

    if code != 0:
        return ApiErr(code=code, message=str(payload.get("msg") or ""), request_id=request_id)

    data = payload.get("data")
    if data is not None and decode is not None:
        try:
            data = decode(data)
        except ValidationError as exc:
            return ApiErr(
                code=MALFORMED_RESPONSE_CODE,
                message=f"Could not decode data: {exc.error_count()} error(s)",
                request_id=request_id,
            )
        except (TypeError, ValueError) as exc:
            return ApiErr(
                code=MALFORMED_RESPONSE_CODE,
                message=f"Could not decode data: {exc}",
                request_id=request_id,
            )
    return ApiOk(data=data, request_id=request_id)


def _list_of(model: type[BaseModel]) -> Callable[[Any], list]:
    def _decode(data: Any) -> list:
        if not isinstance(data, list):
            data = [data]
        return [model.model_validate(item) for item in data]

    return _decode


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class RemoteMetricsClient:
    """Async client for the dashboard endpoints.

    Parameters
    ----------
    base_url:
        Dashboard origin.
    timeout_s:
        Per-request timeout.
    http_client:
        Optional pre-built ``httpx.AsyncClient`` (tests inject one with a
        ``MockTransport``).  The client is closed by :meth:`aclose` only when
        this object created it.
    on_credential_expired:
        Awaited with the account whenever a response carries code 403.
    debug:
        Log every request and response body at INFO.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_API_BASE_URL,
        timeout_s: float = DEFAULT_API_TIMEOUT_S,
        *,
        http_client: httpx.AsyncClient | None = None,
        on_credential_expired: CredentialExpiredHook | None = None,
        debug: bool = False,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            base_url=self._base_url, timeout=timeout_s
        )
        self.on_credential_expired = on_credential_expired
        self.debug = debug

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()

    async def __aenter__(self) -> RemoteMetricsClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _headers(self, account: Account, referer: str | None = None) -> dict[str, str]:
        return {
            "accept": "application/json, text/plain, */*",
            "cache-control": "no-cache",
            "cookie": account.cookie,
            "pragma": "no-cache",
            "referer": referer or f"{self._base_url}/site/index",
            "user-agent": _USER_AGENT,
            "x-csrf-token": account.csrf_token,
            "x-csrftoken": account.csrf_token,
        }

    async def _post(
        self,
        endpoint: str,
        path: str,
        account: Account,
        body: dict[str, Any],
        *,
        decode: Callable[[Any], Any] | None = None,
        params: dict[str, str] | None = None,
        referer: str | None = None,
    ) -> ApiResult:
        if self.debug:
            logger.info("[api] POST %s account=%d body=%s", path, account.id, body)

        start = time.perf_counter()
        try:
            response = await self._http_client.post(
                path,
                json=body,
                params=params,
                headers=self._headers(account, referer),
            )
            payload = response.json()
        except httpx.HTTPError as exc:
            record_api_call(endpoint, "transport_error", time.perf_counter() - start)
            logger.warning("[api] %s failed for account %d: %s", endpoint, account.id, exc)
            return ApiErr(code=TRANSPORT_ERROR_CODE, message=str(exc) or type(exc).__name__)
        except ValueError:
            record_api_call(endpoint, "transport_error", time.perf_counter() - start)
            logger.warning(
                "[api] %s returned non-JSON body (HTTP %d) for account %d",
                endpoint,
                response.status_code,
                account.id,
            )
            return ApiErr(
                code=MALFORMED_RESPONSE_CODE, message=f"Non-JSON body (HTTP {response.status_code})"
            )

        latency = time.perf_counter() - start
        result = decode_envelope(payload, decode)

        if self.debug:
            logger.info("[api] %s -> %s in %.0fms", path, payload.get("code"), latency * 1000)

        if isinstance(result, ApiErr):
            if result.credential_expired:
                record_api_call(endpoint, "credential_expired", latency)
                logger.error(
                    "Account %d (%s) credentials expired on %s",
                    account.id,
                    account.account_name,
                    endpoint,
                )
                if self.on_credential_expired is not None:
                    try:
                        await self.on_credential_expired(account)
                    except Exception:
                        logger.exception(
                            "Credential expiry hook failed for account %d", account.id
                        )
            else:
                record_api_call(endpoint, "error", latency)
                logger.warning(
                    "[api] %s for account %d returned code %d: %s",
                    endpoint,
                    account.id,
                    result.code,
                    result.message,
                )
        else:
            record_api_call(endpoint, "ok", latency)
        return result

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def get_live_list(
        self, account: Account, request: dict[str, Any] | None = None
    ) -> ApiResult[LiveListing]:
        """List the organization's rooms that are currently broadcasting."""
        body = request or {
            "page": 1,
            "limit": 100,
            "live_type": "1",
            "promotion_status": "0",
            "search_key": "",
            "metrics": list(DEFAULT_LIVE_LIST_METRICS),
        }
        return await self._post(
            "live_list",
            LIVE_LIST_PATH,
            account,
            body,
            decode=LiveListing.model_validate,
            params={"group_id": account.organization_id},
            referer=f"{self._base_url}/site/operate/bp/live?cc_id={account.organization_id}",
        )

    async def get_room_metrics(
        self,
        account: Account,
        room_ids: Sequence[str],
        start_time: int,
        end_time: int,
        fields: Sequence[str] = DEFAULT_ROOM_METRIC_FIELDS,
    ) -> ApiResult[dict[str, Any]]:
        body = {
            "roomIds": list(room_ids),
            "startTime": start_time,
            "endTime": end_time,
            "fields": list(fields),
        }
        return await self._post("room_metrics", ROOM_METRICS_PATH, account, body, decode=dict)

    async def get_room_attributes(
        self,
        account: Account,
        room_ids: Sequence[str],
        attributes: Sequence[str] = DEFAULT_ROOM_ATTRIBUTES,
    ) -> ApiResult[list[RoomAttributes]]:
        """Attributes per room, in the order of *room_ids*."""
        body = {"roomIds": list(room_ids), "attributes": list(attributes)}
        return await self._post(
            "room_attributes",
            ROOM_ATTRIBUTES_PATH,
            account,
            body,
            decode=_list_of(RoomAttributes),
        )

    async def get_flow_list(
        self,
        account: Account,
        room_ids: Sequence[str],
        start_time: int,
        end_time: int,
        dims: int,
    ) -> ApiResult[list[FlowItem]]:
        body = {
            "startTime": start_time,
            "endTime": end_time,
            "roomIds": list(room_ids),
            "dims": dims,
        }
        return await self._post(
            "flow", FLOW_LIST_PATH, account, body, decode=_list_of(FlowItem)
        )

    async def get_user_image(
        self,
        account: Account,
        room_ids: Sequence[str],
        start_time: int,
        end_time: int,
        dims: int,
    ) -> ApiResult[list[UserImageItem]]:
        body = {
            "startTime": start_time,
            "endTime": end_time,
            "roomIds": list(room_ids),
            "dims": dims,
        }
        return await self._post(
            "user_image", USER_IMAGE_PATH, account, body, decode=_list_of(UserImageItem)
        )

    async def get_comments(
        self,
        account: Account,
        room_ids: Sequence[str],
        start_time: int,
        end_time: int,
    ) -> ApiResult[list[CommentItem]]:
        body = {"startTime": start_time, "endTime": end_time, "roomIds": list(room_ids)}
        return await self._post(
            "comment", COMMENT_LIST_PATH, account, body, decode=_list_of(CommentItem)
        )

    async def get_per_minute_metrics(
        self,
        account: Account,
        room_ids: Sequence[str],
        start_time: int,
        end_time: int,
        dims: int,
        *,
        sub_dims: int | None = None,
        fields: Sequence[str] | None = None,
        metric_type: str | None = None,
        limit: int | None = None,
    ) -> ApiResult[list[PerMinuteItem]]:
        body: dict[str, Any] = {
            "startTime": start_time,
            "endTime": end_time,
            "roomIds": list(room_ids),
            "dims": dims,
        }
        if sub_dims is not None:
            body["subDims"] = sub_dims
        if fields is not None:
            body["fields"] = list(fields)
        if metric_type is not None:
            body["type"] = metric_type
        if limit is not None:
            body["limit"] = limit
        return await self._post(
            "per_minute", PER_MINUTE_PATH, account, body, decode=_list_of(PerMinuteItem)
        )
