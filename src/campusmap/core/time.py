"""
Clock and timezone normalization.

All persisted timestamps are timezone-aware UTC so comparisons like
"start time must be in the future" never mix naive and aware datetimes.
"""

from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    """Current time as an aware UTC datetime (monkeypatch this in tests)."""
    return datetime.now(timezone.utc)


def ensure_tz(dt: datetime, tz_name: str) -> datetime:
    """Ensure `dt` has tzinfo; attach `tz_name` if naive."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=ZoneInfo(tz_name))
    return dt


def to_utc(dt: datetime, tz_name: str = "UTC") -> datetime:
    """Normalize `dt` to UTC, treating naive values as `tz_name` local time."""
    return ensure_tz(dt, tz_name).astimezone(timezone.utc)

