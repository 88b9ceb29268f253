"""
Timezone helpers for tenant-local calendars.

All booking data is stored in UTC. Day boundaries, schedule hours and
anything shown to people are tenant-local wall-clock times, so conversion
happens here and nowhere else.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import NamedTuple
from zoneinfo import ZoneInfo

WEEKDAY_NAMES = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


class DayRange(NamedTuple):
    start_utc: datetime
    end_utc: datetime
    local_date: date


def get_tz(tz_name: str) -> ZoneInfo:
    return ZoneInfo(tz_name)


def weekday_name(day: date) -> str:
    """Lower-case English weekday name ('monday'..'sunday')."""
    return WEEKDAY_NAMES[day.weekday()]


def wall_time_exists(day: date, wall_time: time, tz: ZoneInfo) -> bool:
    """False for wall-clock times skipped by a DST jump."""
    local = datetime.combine(day, wall_time).replace(tzinfo=tz)
    round_trip = local.astimezone(timezone.utc).astimezone(tz)
    return round_trip.replace(tzinfo=None) == local.replace(tzinfo=None)


def local_to_utc(day: date, wall_time: time, tz: ZoneInfo) -> datetime:
    """
    Convert a tenant-local date + wall time to an aware UTC datetime.

    Ambiguous times (DST fall-back) resolve to the first occurrence.
    Raises ValueError for times that do not exist locally.
    """
    if not wall_time_exists(day, wall_time, tz):
        raise ValueError(f"{day.isoformat()} {wall_time.strftime('%H:%M')} does not exist in {tz.key}")
    local = datetime.combine(day, wall_time).replace(tzinfo=tz, fold=0)
    return local.astimezone(timezone.utc)


def local_day_bounds(day: date, tz: ZoneInfo) -> DayRange:
    """Half-open UTC range [local midnight, next local midnight)."""
    start = datetime.combine(day, time.min).replace(tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min).replace(tzinfo=tz)
    return DayRange(start.astimezone(timezone.utc), end.astimezone(timezone.utc), day)


def today_range(tz: ZoneInfo, now: datetime | None = None) -> DayRange:
    now = now or datetime.now(timezone.utc)
    return local_day_bounds(now.astimezone(tz).date(), tz)


def local_today(tz: ZoneInfo, now: datetime | None = None) -> date:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(tz).date()


def parse_local_datetime(value: str, tz: ZoneInfo) -> datetime:
    """
    Parse 'YYYY-MM-DDTHH:MM' (optionally with seconds) as tenant-local
    wall time and return UTC. Offsets in the string are honoured as-is.
    """
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        return parsed.astimezone(timezone.utc)
    return local_to_utc(parsed.date(), parsed.time(), tz)


def format_time(dt: datetime, tz: ZoneInfo) -> str:
    """Format like '2:30 PM' in the tenant timezone."""
    return dt.astimezone(tz).strftime("%-I:%M %p")


def format_date(dt: datetime, tz: ZoneInfo) -> str:
    """Format like 'Wednesday, May 15' in the tenant timezone."""
    return dt.astimezone(tz).strftime("%A, %B %-d")
