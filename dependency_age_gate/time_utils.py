"""
Shared datetime helpers.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Optional

SECONDS_PER_DAY = 24 * 60 * 60


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Return a timezone-aware UTC datetime."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp and normalize it to UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None
    return ensure_utc(parsed)


def coerce_datetime(value) -> Optional[datetime]:
    """Turn a YAML scalar (date, datetime or string) into a UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    return parse_timestamp(str(value).strip())


def cutoff_for(now: datetime, minimum_age_days: int) -> datetime:
    """Latest release date that still satisfies the minimum age."""
    return now - timedelta(days=minimum_age_days)


def age_in_days(now: datetime, released_at: datetime) -> int:
    return round((now - released_at).total_seconds() / SECONDS_PER_DAY)
