"""Timestamp and duration helpers.

Every clock read in the pipeline goes through here so tests can pin "now".
"""

import math
from datetime import datetime, timezone
from typing import Optional


def now_utc() -> datetime:
    """Return current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def iso_timestamp(dt: Optional[datetime] = None) -> str:
    """ISO-8601 timestamp used in reports and classified errors."""
    if dt is None:
        dt = now_utc()
    return dt.isoformat()


def duration_ms(start: datetime, end: Optional[datetime] = None) -> float:
    """Milliseconds elapsed between two timestamps (end defaults to now)."""
    if end is None:
        end = now_utc()
    return (end - start).total_seconds() * 1000


def as_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def seconds_until(dt: datetime, now: Optional[datetime] = None) -> float:
    """Seconds from now until dt (negative when dt is in the past)."""
    if now is None:
        now = now_utc()
    return (as_utc(dt) - as_utc(now)).total_seconds()


def days_until(dt: datetime, now: Optional[datetime] = None) -> int:
    """Whole days until dt, rounded up like a calendar countdown."""
    return math.ceil(seconds_until(dt, now) / 86400)
