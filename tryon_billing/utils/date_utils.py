"""Date manipulation utilities"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: str | datetime | None) -> datetime | None:
    """Parse ISO-8601 (including a trailing Z) into an aware datetime"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def format_datetime(value: datetime) -> str:
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def first_day_of_month(from_date: datetime) -> datetime:
    """Midnight UTC on the first day of from_date's month"""
    return ensure_utc(from_date).replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def first_day_of_next_month(from_date: datetime) -> datetime:
    """Monthly period end used by annual plans"""
    start = first_day_of_month(from_date)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def days_elapsed(since: datetime, now: datetime) -> int:
    """Whole days between two instants, floored"""
    return (ensure_utc(now) - ensure_utc(since)).days
