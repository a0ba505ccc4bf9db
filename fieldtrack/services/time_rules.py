"""
Time rules and timezone conversions.
Stored datetimes are naive UTC; day boundaries are taken in the tenant's local timezone.
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple
import pytz
from ..config import settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    """Normalize an aware or naive-UTC datetime to naive UTC."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(pytz.UTC).replace(tzinfo=None)


def utc_to_local(utc_datetime: datetime, timezone_str: Optional[str] = None) -> datetime:
    """
    Convert UTC datetime to local timezone.

    Args:
        utc_datetime: UTC datetime (naive or timezone-aware)
        timezone_str: Timezone string (defaults to TZ_DEFAULT)

    Returns:
        Local datetime (timezone-aware)
    """
    tz = pytz.timezone(timezone_str or settings.tz_default)
    if utc_datetime.tzinfo is None:
        utc_dt = utc_datetime.replace(tzinfo=pytz.UTC)
    else:
        utc_dt = utc_datetime.astimezone(pytz.UTC)
    return utc_dt.astimezone(tz)


def local_to_utc(local_datetime: datetime, timezone_str: Optional[str] = None) -> datetime:
    """
    Convert a naive local datetime to naive UTC.

    Args:
        local_datetime: Local datetime (naive)
        timezone_str: Timezone string (defaults to TZ_DEFAULT)

    Returns:
        Naive UTC datetime
    """
    tz = pytz.timezone(timezone_str or settings.tz_default)
    if local_datetime.tzinfo is None:
        local_dt = tz.localize(local_datetime)
    else:
        local_dt = local_datetime.astimezone(tz)
    return local_dt.astimezone(pytz.UTC).replace(tzinfo=None)


def local_date(utc_datetime: datetime, timezone_str: Optional[str] = None) -> date:
    return utc_to_local(utc_datetime, timezone_str).date()


def local_day_bounds(day: date, timezone_str: Optional[str] = None) -> Tuple[datetime, datetime]:
    """
    Local midnight-to-midnight window of a calendar day, as naive UTC [start, end).
    """
    start = local_to_utc(datetime.combine(day, time(0, 0)), timezone_str)
    end = local_to_utc(datetime.combine(day + timedelta(days=1), time(0, 0)), timezone_str)
    return start, end


def combine_local(day: date, time_val: time, timezone_str: Optional[str] = None) -> datetime:
    """Combine a local date and time into naive UTC."""
    return local_to_utc(datetime.combine(day, time_val), timezone_str)


def parse_clock(value: Optional[str]) -> Optional[time]:
    """
    Parse "HH:MM" or "H:MM AM/PM" into a time. Returns None for empty or malformed input.
    """
    if not value:
        return None
    raw = value.strip().upper()
    for fmt in ("%H:%M", "%I:%M %p", "%I:%M%p", "%I %p"):
        try:
            return datetime.strptime(raw, fmt).time()
        except ValueError:
            continue
    return None


def format_clock(utc_datetime: Optional[datetime], timezone_str: Optional[str] = None) -> Optional[str]:
    """Local wall-clock time as "h:MM AM"."""
    if utc_datetime is None:
        return None
    local = utc_to_local(utc_datetime, timezone_str)
    hour = local.hour % 12 or 12
    suffix = "AM" if local.hour < 12 else "PM"
    return f"{hour}:{local.minute:02d} {suffix}"


def parse_timestamp(value) -> Optional[datetime]:
    """Stored JSON timestamps are ISO strings; return naive UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    try:
        return to_naive_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None
