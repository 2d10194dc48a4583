"""
Time helpers
Wall-clock "HH:MM" arithmetic and contractor time zone conversions
"""

import re
from datetime import date, datetime, timedelta, timezone
from typing import Optional

import pytz

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d(:[0-5]\d)?$")
# Request bodies take minutes precision only
HH_MM_REGEX = r"^([01]\d|2[0-3]):[0-5]\d$"
MINUTES_PER_DAY = 24 * 60


def is_valid_time_str(value: Optional[str]) -> bool:
    """Check HH:MM (or HH:MM:SS) format"""
    return bool(value) and bool(TIME_PATTERN.match(value))


def time_to_minutes(time_str: str) -> int:
    """Convert HH:MM to minutes since midnight"""
    parts = time_str.split(":")
    return int(parts[0]) * 60 + int(parts[1])


def minutes_to_time_str(minutes: int) -> str:
    """Convert minutes since midnight to HH:MM"""
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def hours_to_minutes(hours: float) -> int:
    """Convert a duration in (fractional) hours to whole minutes"""
    return int(round(hours * 60))


def get_zone(tz_name: str) -> pytz.BaseTzInfo:
    """Resolve an IANA time zone name (raises pytz.UnknownTimeZoneError)"""
    return pytz.timezone(tz_name)


def is_valid_zone(tz_name: Optional[str]) -> bool:
    """Check that a time zone name is known"""
    if not tz_name:
        return False
    try:
        get_zone(tz_name)
    except pytz.UnknownTimeZoneError:
        return False
    return True


def today_in_zone(tz_name: str, now: Optional[datetime] = None) -> date:
    """Current calendar date in the given time zone"""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(get_zone(tz_name)).date()


def localize(day: date, minutes: int, tz_name: str) -> datetime:
    """Contractor-local wall-clock minute on a day, as an aware datetime"""
    naive = datetime.combine(day, datetime.min.time()) + timedelta(minutes=minutes)
    return get_zone(tz_name).localize(naive)


def to_utc(day: date, minutes: int, tz_name: str) -> datetime:
    """Contractor-local wall-clock minute on a day, converted to UTC"""
    return localize(day, minutes, tz_name).astimezone(timezone.utc)


def date_range(start: date, end: date):
    """Yield each calendar day from start to end inclusive"""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)
