"""
Time helpers - UTC normalization and calendar month boundaries
"""

from datetime import datetime, date, timedelta, UTC
from typing import Optional


def utc_now() -> datetime:
    """Current time, timezone-aware UTC"""
    return datetime.now(UTC)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to aware UTC

    SQLite returns naive datetimes even for DateTime(timezone=True) columns,
    so every value read back from storage goes through this before comparison.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def start_of_month(value: datetime) -> datetime:
    """First instant of the calendar month containing value (UTC)"""
    value = as_utc(value)
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def start_of_next_month(value: datetime) -> datetime:
    """First instant of the calendar month after value (UTC)"""
    first = start_of_month(value)
    if first.month == 12:
        return first.replace(year=first.year + 1, month=1)
    return first.replace(month=first.month + 1)


def is_same_month(a: datetime, b: datetime) -> bool:
    """True if both datetimes fall into the same calendar month (UTC)"""
    a, b = as_utc(a), as_utc(b)
    return a.year == b.year and a.month == b.month


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """[start, end) UTC range of a calendar day"""
    start = datetime(day.year, day.month, day.day, tzinfo=UTC)
    return start, start + timedelta(days=1)


def usage_date(value: datetime) -> str:
    """Ledger day bucket, yyyy-MM-dd"""
    return as_utc(value).strftime("%Y-%m-%d")
