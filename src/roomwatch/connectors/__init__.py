"""Connectors to the remote live-analytics dashboard.

Connectors are transport-only adapters that:
- Call the dashboard's JSON endpoints with an account's session cookie
- Decode the shared response envelope into ``ApiOk`` / ``ApiErr``
- Report expired credentials through a hook instead of raising
- Export per-endpoint Prometheus counters
"""

__all__ = ["dashboard", "metrics"]
