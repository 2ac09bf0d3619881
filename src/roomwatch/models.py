"""Pydantic models shared by the cache, the monitor queue and the facets.

Timestamps are epoch milliseconds unless the field name says otherwise
(``live_st`` and ``start_time`` are epoch seconds, matching the dashboard API).
"""

from __future__ import annotations

import time

from pydantic import BaseModel, ConfigDict, Field


def now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class Account(BaseModel):
    """One dashboard operator account as stored in the local account store."""

    id: int
    account_name: str
    login_name: str
    credential_blob: str = ""
    organization_id: str
    cookie: str = ""
    csrf_token: str = ""
    remark: str | None = None
    is_valid: bool = True
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)

    def __repr__(self) -> str:
        return (
            f"Account(id={self.id!r}, account_name={self.account_name!r}, "
            f"organization_id={self.organization_id!r}, is_valid={self.is_valid!r})"
        )


class AccountCreate(BaseModel):
    """Fields required to create an account (``id`` and timestamps are assigned)."""

    account_name: str
    login_name: str
    credential_blob: str = ""
    organization_id: str
    cookie: str = ""
    csrf_token: str = ""
    remark: str | None = None


class AccountUpdate(BaseModel):
    """Partial update; ``None`` fields are left unchanged."""

    account_name: str | None = None
    login_name: str | None = None
    credential_blob: str | None = None
    organization_id: str | None = None
    cookie: str | None = None
    csrf_token: str | None = None
    remark: str | None = None
    is_valid: bool | None = None


# ---------------------------------------------------------------------------
# Live rooms
# ---------------------------------------------------------------------------


class LiveMetrics(BaseModel):
    """Cumulative metrics returned with each room of the live listing."""

    model_config = ConfigDict(extra="allow")

    live_st: int = 0
    live_dt: int = 0
    total_live_watch_cnt: float = 0
    total_live_avg_watch_duration: float = 0
    total_live_follow_cnt: float = 0
    total_live_comment_cnt: float = 0
    total_live_like_cnt: float = 0
    live_card_icon_component_click_count: float = 0
    stat_cost: float = 0


class RoomInfo(BaseModel):
    """A broadcasting room as listed for an account.

    ``start_time`` is the observed start used to bound per-minute, comment and
    user-image windows.  It is unset at admission, set to ``metrics.live_st``
    (or the admission time when the listing has none) on the first poll, and
    moved to "now minus three minutes" on every later poll.
    """

    model_config = ConfigDict(extra="allow")

    user_id: str = ""
    unique_id: str = ""
    nickname: str = ""
    avatar_thumb: str = ""
    room_id: str = ""
    stream_url: str = ""
    status: int = 0
    user_count: int = 0
    promotion_status: str = ""
    metrics: LiveMetrics = Field(default_factory=LiveMetrics)
    start_time: int | None = None

    def has_identity(self) -> bool:
        return bool(self.user_id and self.nickname and self.room_id)


class LiveOverview(BaseModel):
    model_config = ConfigDict(extra="allow")

    line_online_count: int = 0
    promotion_count: int = 0
    cumulative_views_count: float = 0
    avg_views_count: float = 0


class LiveListing(BaseModel):
    """Decoded ``data`` of the live-room listing endpoint."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    rooms: list[RoomInfo] = Field(default_factory=list, alias="list")
    overview: LiveOverview = Field(default_factory=LiveOverview)
    ies_count: int = 0

    def find(self, room_id: str) -> RoomInfo | None:
        for room in self.rooms:
            if room.room_id == room_id:
                return room
        return None


class RoomSnapshot(BaseModel):
    """The last listing fetched for one account.  Replaced wholesale."""

    account_id: int
    account_name: str
    organization_id: str
    listing: LiveListing | None = None
    fetched_at: int = Field(default_factory=now_ms)
    success: bool = False
    error: str | None = None
    status_code: int | None = None


# ---------------------------------------------------------------------------
# Monitor queue
# ---------------------------------------------------------------------------


class MonitorQueueEntry(BaseModel):
    room_id: str
    account_id: int
    account_name: str
    organization_id: str
    anchor_nickname: str
    added_at: int = Field(default_factory=now_ms)
    last_updated: int = Field(default_factory=now_ms)
    is_active: bool = True
    room: RoomInfo

    @property
    def key(self) -> tuple[int, str]:
        return (self.account_id, self.room_id)


class QueueOperationResult(BaseModel):
    """Outcome of a queue mutation.  Validation failures are reported here, not raised."""

    success: bool
    message: str
    entry: MonitorQueueEntry | None = None
    entries: list[MonitorQueueEntry] = Field(default_factory=list)


class QueueStats(BaseModel):
    total: int
    active: int
    accounts: int
    polling: bool
    running: bool
    poll_interval_s: float


# ---------------------------------------------------------------------------
# Credential validation
# ---------------------------------------------------------------------------


class ValidationResult(BaseModel):
    """Outcome of one credential check.

    ``soft_failure`` marks a check that failed for any reason other than the
    dashboard rejecting the session.  Such results carry the account's current
    flag in ``is_valid`` and are never recorded.
    """

    account_id: int
    is_valid: bool
    status_code: int | None = None
    error: str | None = None
    soft_failure: bool = False
    timestamp: int = Field(default_factory=now_ms)
