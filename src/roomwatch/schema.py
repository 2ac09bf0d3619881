"""Remote metrics tables: DDL, natural keys and write-contention classes.

Every facet writes through an upsert keyed on the table's natural key, so the
key registered here must match a UNIQUE constraint in the DDL.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from roomwatch.db import ConnectionManager

logger = logging.getLogger(__name__)

_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

ROOM_METRICS = "sl_live_room_metrics"
PER_MINUTE_METRICS = "sl_live_room_per_minute_metrics"
WATCH_COUNT_PER_MINUTE_METRICS = "sl_live_room_watch_count_per_minute_metrics"
FLOWS = "sl_live_room_flows"
USER_IMAGES = "sl_live_room_user_images"
COMMENTS = "sl_live_room_comments"


@dataclass(frozen=True)
class MetricsTable:
    name: str
    conflict_keys: tuple[str, ...]
    high_contention: bool = False


TABLES: dict[str, MetricsTable] = {
    ROOM_METRICS: MetricsTable(ROOM_METRICS, ("unique_id", "room_id")),
    PER_MINUTE_METRICS: MetricsTable(
        PER_MINUTE_METRICS, ("unique_id", "room_id", "timeline"), high_contention=True
    ),
    WATCH_COUNT_PER_MINUTE_METRICS: MetricsTable(
        WATCH_COUNT_PER_MINUTE_METRICS, ("unique_id", "room_id", "timeline"), high_contention=True
    ),
    FLOWS: MetricsTable(FLOWS, ("room_id", "flows_group", "flows_label")),
    USER_IMAGES: MetricsTable(USER_IMAGES, ("room_id", "user_image_group", "user_image_label")),
    COMMENTS: MetricsTable(COMMENTS, ("room_id", "comment_id")),
}


def quote_identifier(name: str) -> str:
    """Validate *name* as a plain SQL identifier and return it double-quoted."""
    if _IDENTIFIER_PATTERN.fullmatch(name) is None:
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return f'"{name}"'


def conflict_keys_for(table: str) -> tuple[str, ...]:
    table_def = TABLES.get(table)
    if table_def is None:
        raise ValueError(
            f"No natural key registered for table {table!r}; pass conflict_keys explicitly"
        )
    return table_def.conflict_keys


def is_high_contention(table: str) -> bool:
    table_def = TABLES.get(table)
    return table_def is not None and table_def.high_contention


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

PER_MINUTE_METRIC_COLUMNS = (
    "live_app_active_count",
    "live_app_download_start_count",
    "live_app_install_finish_count",
    "live_card_icon_component_click_count",
    "live_form_submit_count",
    "live_groupbuy_order_count",
    "live_groupbuy_pay_click_count",
    "live_groupbuy_product_click_count",
    "live_in_wechat_pay_count",
    "live_premium_payment",
    "stat_live_groupbuy_order_gmv",
    "total_live_comment_cnt",
    "total_live_dislike_cnt",
    "total_live_dislike_ucnt",
    "total_live_follow_cnt",
    "total_live_gift_amount",
    "total_live_gift_cnt",
    "total_live_like_cnt",
    "total_live_pcu",
    "total_live_watch_cnt",
    "work_wechat_added_count",
)

ROOM_METRIC_COLUMNS = (
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
    "online_user_count",
)


def _column_block(columns: tuple[str, ...], sql_type: str) -> str:
    return ",\n".join(f"    {column} {sql_type}" for column in columns)


_DDL: tuple[str, ...] = (
    f"""
CREATE TABLE IF NOT EXISTS {ROOM_METRICS} (
    id         BIGSERIAL PRIMARY KEY,
    unique_id  TEXT NOT NULL,
    room_id    TEXT NOT NULL,
{_column_block(ROOM_METRIC_COLUMNS, "DOUBLE PRECISION")},
    started_at TIMESTAMPTZ,
    ended_at   TIMESTAMPTZ,
    UNIQUE (unique_id, room_id)
)
""",
    f"""
CREATE TABLE IF NOT EXISTS {PER_MINUTE_METRICS} (
    id          BIGSERIAL PRIMARY KEY,
    unique_id   TEXT NOT NULL,
    room_id     TEXT NOT NULL,
{_column_block(PER_MINUTE_METRIC_COLUMNS, "BIGINT NOT NULL DEFAULT 0")},
    timeline    TEXT NOT NULL,
    "timestamp" TIMESTAMPTZ,
    UNIQUE (unique_id, room_id, timeline)
)
""",
    f"""
CREATE TABLE IF NOT EXISTS {WATCH_COUNT_PER_MINUTE_METRICS} (
    id                   BIGSERIAL PRIMARY KEY,
    unique_id            TEXT NOT NULL,
    room_id              TEXT NOT NULL,
    total_live_watch_cnt BIGINT NOT NULL DEFAULT 0,
    timeline             TEXT NOT NULL,
    "timestamp"          TIMESTAMPTZ,
    UNIQUE (unique_id, room_id, timeline)
)
""",
    f"""
CREATE TABLE IF NOT EXISTS {FLOWS} (
    id          BIGSERIAL PRIMARY KEY,
    unique_id   TEXT NOT NULL,
    room_id     TEXT NOT NULL,
    flows_group TEXT NOT NULL,
    flows_label TEXT NOT NULL,
    flows_value BIGINT NOT NULL DEFAULT 0,
    started_at  TIMESTAMPTZ,
    ended_at    TIMESTAMPTZ,
    UNIQUE (room_id, flows_group, flows_label)
)
""",
    f"""
CREATE TABLE IF NOT EXISTS {USER_IMAGES} (
    id               BIGSERIAL PRIMARY KEY,
    unique_id        TEXT NOT NULL,
    room_id          TEXT NOT NULL,
    user_image_group TEXT NOT NULL,
    user_image_label TEXT NOT NULL,
    user_image_value BIGINT NOT NULL DEFAULT 0,
    started_at       TIMESTAMPTZ,
    ended_at         TIMESTAMPTZ,
    UNIQUE (room_id, user_image_group, user_image_label)
)
""",
    f"""
CREATE TABLE IF NOT EXISTS {COMMENTS} (
    id               BIGSERIAL PRIMARY KEY,
    unique_id        TEXT NOT NULL,
    room_id          TEXT NOT NULL,
    creator          TEXT,
    creator_id       BIGINT,
    comment_id       BIGINT NOT NULL,
    comment_text     TEXT,
    create_timestamp TIMESTAMPTZ,
    UNIQUE (room_id, comment_id)
)
""",
)


async def ensure_metrics_schema(db: ConnectionManager) -> None:
    """Create every metrics table if it does not exist."""
    pool = await db.get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            for ddl in _DDL:
                await conn.execute(ddl)
    logger.info("Metrics schema ensured (%d tables)", len(_DDL))
