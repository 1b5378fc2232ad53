"""
Date and time helpers.

Everything inside the engine is a timezone-aware UTC datetime; values read back
from SQLite lose their tzinfo and are normalized with ``as_utc``.
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .exceptions import ValidationError

UTC = timezone.utc


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (``Z`` suffix accepted) into aware UTC."""
    if not value:
        return None
    return as_utc(datetime.fromisoformat(value.replace('Z', '+00:00')))


def to_iso(value: datetime) -> str:
    return as_utc(value).isoformat().replace('+00:00', 'Z')


def date_key(value) -> str:
    """Canonical ``YYYY-MM-DD`` key for a date or datetime."""
    if isinstance(value, datetime):
        value = value.date()
    return value.isoformat()


def parse_date_key(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"Invalid date '{value}', expected YYYY-MM-DD")


def parse_hhmm(value: str) -> Tuple[int, int]:
    """Parse ``HH:MM`` into ``(hours, minutes)``."""
    try:
        parsed = time.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid time '{value}', expected HH:MM")
    if len(value) != 5:
        raise ValidationError(f"Invalid time '{value}', expected HH:MM")
    return parsed.hour, parsed.minute


def get_zone(tz_name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone '{tz_name}'")


def at_local_time(day: date, hhmm: str, tz_name: str = "UTC") -> datetime:
    """UTC instant of wall-clock ``hhmm`` on ``day`` in ``tz_name``."""
    hours, minutes = parse_hhmm(hhmm)
    local = datetime(day.year, day.month, day.day, hours, minutes, tzinfo=get_zone(tz_name))
    return local.astimezone(UTC)


def local_parts(value: datetime, tz_name: str = "UTC") -> Tuple[date, int, int]:
    """Local calendar date, hour and minute of an instant."""
    local = as_utc(value).astimezone(get_zone(tz_name))
    return local.date(), local.hour, local.minute


def js_weekday(value) -> int:
    """Weekday numbered 0=Sunday .. 6=Saturday."""
    return (value.weekday() + 1) % 7


def date_range(start: date, end: date):
    """Inclusive list of dates from ``start`` to ``end``."""
    days = []
    current = start
    while current <= end:
        days.append(current)
        current += timedelta(days=1)
    return days
