"""
Timezone utilities resolving UTC instants to the wall-clock time used for
CAO classification (night, weekend and holiday work are judged in local time).
"""

from datetime import date, datetime
from datetime import time as datetime_time
from datetime import timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

from core.config import CAO_TIMEZONE


def get_default_timezone() -> str:
    """
    Get the timezone used for CAO wall-clock rules.

    Returns:
        str: IANA timezone string (Europe/Amsterdam unless configured otherwise)
    """
    return CAO_TIMEZONE


def ensure_timezone_aware(dt: datetime, default_tz: Optional[str] = None) -> datetime:
    """
    Ensure a datetime is timezone-aware, defaulting to UTC if naive.

    Args:
        dt: datetime object
        default_tz: Optional default timezone if dt is naive

    Returns:
        datetime: timezone-aware datetime
    """
    if dt.tzinfo is None:
        if default_tz:
            return dt.replace(tzinfo=ZoneInfo(default_tz))
        return dt.replace(tzinfo=timezone.utc)
    return dt


def to_utc(dt: datetime) -> datetime:
    """Normalize any datetime to an aware UTC datetime (naive means UTC)."""
    return ensure_timezone_aware(dt).astimezone(timezone.utc)


def from_utc_to_local(utc_dt: datetime, tz: Optional[str] = None) -> datetime:
    """
    Convert UTC datetime to local datetime in the specified timezone.

    Args:
        utc_dt: UTC datetime (naive values are treated as UTC)
        tz: IANA timezone string, defaults to the CAO timezone

    Returns:
        datetime: Local datetime in the specified timezone
    """
    return to_utc(utc_dt).astimezone(ZoneInfo(tz or get_default_timezone()))


def local_start_of_day(local_date: date, tz: Optional[str] = None) -> datetime:
    """Start of ``local_date`` (00:00 local) expressed in UTC."""
    target_tz = ZoneInfo(tz or get_default_timezone())
    local_start = datetime.combine(local_date, datetime_time.min, tzinfo=target_tz)
    return local_start.astimezone(timezone.utc)


def get_week_range(utc_ref: datetime, tz: Optional[str] = None) -> Tuple[date, datetime, datetime]:
    """
    Get the Monday-to-Sunday week containing a reference instant.

    Args:
        utc_ref: Reference UTC datetime
        tz: IANA timezone string, defaults to the CAO timezone

    Returns:
        Tuple containing:
        - week_start: local date of the Monday
        - start_dt: week start in UTC (inclusive)
        - end_dt: next week's start in UTC (exclusive)
    """
    local_date = from_utc_to_local(utc_ref, tz).date()

    # weekday() returns 0=Monday, 6=Sunday
    week_start = local_date - timedelta(days=local_date.weekday())
    start_dt = local_start_of_day(week_start, tz)
    end_dt = local_start_of_day(week_start + timedelta(days=7), tz)
    return week_start, start_dt, end_dt


def format_utc_datetime(dt: Optional[datetime]) -> Optional[str]:
    """
    Format a datetime as an ISO 8601 string with 'Z' suffix.

    Naive datetimes are assumed to be UTC; aware ones are converted to UTC.
    """
    if dt is None:
        return None

    iso_string = to_utc(dt).isoformat()
    if iso_string.endswith("+00:00"):
        return iso_string[: -len("+00:00")] + "Z"
    return iso_string
