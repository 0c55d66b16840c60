"""Time Utilities - UTC timestamps, formatting and durations"""
from datetime import datetime, timezone, timedelta
from typing import Any, Optional
from dateutil import parser as date_parser


_UNIT_MS = {
    "milliseconds": 1,
    "seconds": 1000,
    "minutes": 60 * 1000,
    "hours": 60 * 60 * 1000,
    "days": 24 * 60 * 60 * 1000,
}


def utc_now() -> datetime:
    """Get current UTC datetime"""
    return datetime.now(timezone.utc)


def format_iso(dt: datetime) -> str:
    """
    Format datetime to ISO 8601 string

    Args:
        dt: Datetime object

    Returns:
        ISO formatted string with Z suffix for UTC
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")


def parse_iso(iso_string: str) -> datetime:
    """
    Parse ISO 8601 string to datetime

    Args:
        iso_string: ISO formatted datetime string

    Returns:
        Datetime object in UTC
    """
    dt = date_parser.isoparse(iso_string)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def coerce_datetime(value: Any) -> Optional[datetime]:
    """Datetime from a datetime, ISO string or epoch milliseconds; None if unparseable"""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        try:
            return parse_iso(value)
        except (ValueError, OverflowError):
            return None
    return None


def duration_to_ms(value: float, unit: str = "milliseconds") -> float:
    """
    Convert a duration to milliseconds

    Raises:
        ValueError: unknown unit
    """
    unit_value = getattr(unit, "value", unit)
    if unit_value not in _UNIT_MS:
        raise ValueError(f"Unknown time unit: {unit}")
    return float(value) * _UNIT_MS[unit_value]


def elapsed_ms(since: datetime, now: Optional[datetime] = None) -> float:
    """Milliseconds elapsed since ``since`` (negative if in the future)"""
    now = now or utc_now()
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    return (now - since).total_seconds() * 1000


def add_milliseconds(dt: datetime, ms: float) -> datetime:
    """Add milliseconds to datetime"""
    return dt + timedelta(milliseconds=ms)
