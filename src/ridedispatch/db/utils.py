"""Database utility functions."""

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Current UTC time as a naive datetime, the form every Ledger column stores."""
    return datetime.now(UTC).replace(tzinfo=None)
