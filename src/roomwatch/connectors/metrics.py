"""Prometheus metrics for the ingestion core.

Metrics exported:
- roomwatch_api_calls_total: Counter of dashboard API calls by endpoint and outcome
- roomwatch_api_latency_seconds: Histogram of dashboard API latency
- roomwatch_rows_written_total: Counter of rows upserted by table
- roomwatch_deadlock_retries_total: Counter of deadlock retries
- roomwatch_poll_cycles_total: Counter of monitor poll cycles by outcome
- roomwatch_room_evictions_total: Counter of rooms evicted as no longer live
- roomwatch_credential_invalidations_total: Counter of accounts flipped invalid
- roomwatch_facet_failures_total: Counter of facet fetch-and-push failures
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

api_calls_total = Counter(
    "roomwatch_api_calls_total",
    "Total number of dashboard API calls",
    labelnames=["endpoint", "outcome"],
)

api_latency_seconds = Histogram(
    "roomwatch_api_latency_seconds",
    "Latency of dashboard API calls in seconds",
    labelnames=["endpoint"],
    buckets=(0.05, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 10.0),
)

rows_written_total = Counter(
    "roomwatch_rows_written_total",
    "Total number of rows affected by upserts",
    labelnames=["table"],
)

deadlock_retries_total = Counter(
    "roomwatch_deadlock_retries_total",
    "Total number of write retries after a deadlock",
)

poll_cycles_total = Counter(
    "roomwatch_poll_cycles_total",
    "Total number of monitor poll cycles",
    labelnames=["outcome"],
)

room_evictions_total = Counter(
    "roomwatch_room_evictions_total",
    "Total number of rooms removed from the monitor queue after going offline",
)

credential_invalidations_total = Counter(
    "roomwatch_credential_invalidations_total",
    "Total number of accounts marked invalid after a credential-expired response",
)

facet_failures_total = Counter(
    "roomwatch_facet_failures_total",
    "Total number of facet fetch-and-push failures",
    labelnames=["facet"],
)


def record_api_call(endpoint: str, outcome: str, latency: float | None = None) -> None:
    """Record one dashboard API call.

    Args:
        endpoint: Short endpoint name (e.g. "live_list", "flow")
        outcome: "ok", "error", "credential_expired" or "transport_error"
        latency: Optional latency in seconds
    """
    api_calls_total.labels(endpoint=endpoint, outcome=outcome).inc()
    if latency is not None:
        api_latency_seconds.labels(endpoint=endpoint).observe(latency)


def record_rows_written(table: str, count: int) -> None:
    if count > 0:
        rows_written_total.labels(table=table).inc(count)
