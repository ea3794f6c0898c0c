"""Helpers for working with timezone-aware datetimes.

Timestamps are persisted as naive UTC so SQLite and Postgres compare them the
same way.
"""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current time as a naive UTC datetime."""

    return datetime.now(timezone.utc).replace(tzinfo=None)
