"""roomwatch: live-room metrics ingestion for dashboard operator accounts."""

__version__ = "0.1.0"
