"""
Slot availability engine.

Computes which start times are bookable for one staff member on one local
day, given:

    - the staff member's weekly recurring schedule (one row per weekday)
    - ad-hoc time blocks (vacations, lunch, errands)
    - existing bookings that still hold the chair
    - tenant-local day boundaries

Slot generation is a linear scan over fixed increments (30 minutes by
default) from the schedule's opening time. A candidate is kept when
[start, start + duration) fits inside the open window, starts after "now",
and overlaps no busy interval.

The pure functions at the top do no I/O and are what the tests exercise;
load_staff_availability() and find_conflicts() wrap them with queries.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import get_settings
from .dates import get_tz, local_day_bounds, wall_time_exists, weekday_name
from .models import BLOCKING_STATUSES, Booking, StaffSchedule, TimeBlock, Weekday

settings = get_settings()
logger = logging.getLogger(__name__)


# ────────────────────────────────────────────────────────────────
# Value Types
# ────────────────────────────────────────────────────────────────

@dataclass(frozen=True, order=True)
class Interval:
    """Half-open UTC interval [start, end)."""

    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("Interval bounds must be timezone-aware")
        if self.end <= self.start:
            raise ValueError(f"Interval end must be after start ({self.start} >= {self.end})")

    def overlaps(self, other: "Interval") -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, other: "Interval") -> bool:
        return self.start <= other.start and other.end <= self.end


@dataclass(frozen=True)
class DaySchedule:
    """One weekday row of a staff member's recurring schedule."""

    day: str
    start_time: time
    end_time: time
    is_active: bool = True

    @classmethod
    def from_model(cls, row: StaffSchedule) -> "DaySchedule":
        return cls(
            day=Weekday(row.day).value,
            start_time=row.start_time,
            end_time=row.end_time,
            is_active=row.is_active,
        )


@dataclass(frozen=True)
class Slot:
    staff_id: int
    start: datetime
    end: datetime

    def local_label(self, tz: ZoneInfo) -> str:
        return self.start.astimezone(tz).strftime("%H:%M")


# ────────────────────────────────────────────────────────────────
# Pure Engine
# ────────────────────────────────────────────────────────────────

def resolve_day_schedule(schedules: Iterable[DaySchedule], day: date) -> Optional[DaySchedule]:
    """Return the schedule row for day's weekday, or None when closed."""
    name = weekday_name(day)
    for schedule in schedules:
        if schedule.day == name:
            if not schedule.is_active or schedule.end_time <= schedule.start_time:
                return None
            return schedule
    return None


def compute_open_window(schedule: Optional[DaySchedule], day: date, tz: ZoneInfo) -> Optional[Interval]:
    """Convert a schedule row's wall-clock hours on day to a UTC interval."""
    if schedule is None:
        return None
    start = datetime.combine(day, schedule.start_time).replace(tzinfo=tz).astimezone(timezone.utc)
    end = datetime.combine(day, schedule.end_time).replace(tzinfo=tz).astimezone(timezone.utc)
    if end <= start:
        return None
    return Interval(start, end)


def generate_slots(
    window: Interval,
    busy: Sequence[Interval],
    duration: timedelta,
    *,
    tz: ZoneInfo,
    step: timedelta = timedelta(minutes=30),
    now: Optional[datetime] = None,
) -> list[Interval]:
    """
    Emit candidate slots inside window that avoid every busy interval.

    Candidates advance in local wall-clock steps so that a schedule
    opening at 10:00 keeps producing :00/:30 labels across DST changes.
    Wall times that do not exist locally are skipped.
    """
    if duration <= timedelta(0):
        raise ValueError("duration must be positive")
    if step <= timedelta(0):
        raise ValueError("step must be positive")

    local_open = window.start.astimezone(tz)
    cursor = local_open.replace(tzinfo=None)
    last_start = window.end.astimezone(tz).replace(tzinfo=None)

    slots: list[Interval] = []
    seen: set[datetime] = set()
    while cursor <= last_start:
        if not wall_time_exists(cursor.date(), cursor.time(), tz):
            cursor += step
            continue
        slot_start = cursor.replace(tzinfo=tz).astimezone(timezone.utc)
        if slot_start >= window.end:
            break
        slot_end = slot_start + duration
        cursor += step

        if slot_end > window.end or slot_start in seen:
            continue
        # Skip slots that have already started
        if now is not None and slot_start <= now:
            continue
        candidate = Interval(slot_start, slot_end)
        if any(candidate.overlaps(b) for b in busy):
            continue
        seen.add(slot_start)
        slots.append(candidate)

    slots.sort()
    return slots


def compute_available_slots(
    schedules: Iterable[DaySchedule],
    busy: Sequence[Interval],
    day: date,
    duration_minutes: int,
    tz: ZoneInfo,
    *,
    now: Optional[datetime] = None,
    step_minutes: int = 30,
) -> list[Interval]:
    """Schedule row -> open window -> slots, for one staff member and day."""
    if duration_minutes <= 0:
        raise ValueError("duration_minutes must be positive")
    schedule = resolve_day_schedule(schedules, day)
    window = compute_open_window(schedule, day, tz)
    if window is None:
        return []
    return generate_slots(
        window,
        busy,
        timedelta(minutes=duration_minutes),
        tz=tz,
        step=timedelta(minutes=step_minutes),
        now=now,
    )


def is_slot_available(
    schedules: Iterable[DaySchedule],
    busy: Sequence[Interval],
    start: datetime,
    duration_minutes: int,
    tz: ZoneInfo,
    *,
    now: Optional[datetime] = None,
    step_minutes: int = 30,
) -> bool:
    """True when start is one of the generated slots for its local day."""
    day = start.astimezone(tz).date()
    slots = compute_available_slots(
        schedules, busy, day, duration_minutes, tz, now=now, step_minutes=step_minutes
    )
    return any(slot.start == start for slot in slots)


# ────────────────────────────────────────────────────────────────
# Database Loaders
# ────────────────────────────────────────────────────────────────

async def load_schedules(session: AsyncSession, tenant_id: int, staff_id: int) -> list[DaySchedule]:
    result = await session.execute(
        select(StaffSchedule).where(
            StaffSchedule.tenant_id == tenant_id,
            StaffSchedule.staff_id == staff_id,
        )
    )
    return [DaySchedule.from_model(row) for row in result.scalars().all()]


async def load_busy_intervals(
    session: AsyncSession,
    tenant_id: int,
    staff_id: int,
    window: Interval,
    exclude_booking_id: Optional[uuid.UUID] = None,
) -> list[Interval]:
    """
    Bookings in BLOCKING_STATUSES and time blocks that overlap window.

    Overlap, not "starts inside", so a late booking that runs past
    midnight still blocks the next morning.
    """
    booking_query = select(Booking.start_time, Booking.end_time).where(
        Booking.tenant_id == tenant_id,
        Booking.staff_id == staff_id,
        Booking.status.in_(BLOCKING_STATUSES),
        Booking.start_time < window.end,
        Booking.end_time > window.start,
    )
    if exclude_booking_id is not None:
        booking_query = booking_query.where(Booking.id != exclude_booking_id)
    bookings = (await session.execute(booking_query)).all()

    blocks = (
        await session.execute(
            select(TimeBlock.start_time, TimeBlock.end_time).where(
                TimeBlock.tenant_id == tenant_id,
                TimeBlock.staff_id == staff_id,
                TimeBlock.start_time < window.end,
                TimeBlock.end_time > window.start,
            )
        )
    ).all()

    return sorted(Interval(start, end) for start, end in [*bookings, *blocks])


async def load_staff_availability(
    session: AsyncSession,
    tenant_id: int,
    tz_name: str,
    staff_id: int,
    day: date,
    duration_minutes: int,
    now: Optional[datetime] = None,
    exclude_booking_id: Optional[uuid.UUID] = None,
) -> list[Slot]:
    """Bookable slots for staff_id on the tenant-local day."""
    tz = get_tz(tz_name)
    now = now or datetime.now(timezone.utc)
    day_range = local_day_bounds(day, tz)
    if day_range.end_utc <= now:
        return []

    schedules = await load_schedules(session, tenant_id, staff_id)
    busy = await load_busy_intervals(
        session,
        tenant_id,
        staff_id,
        Interval(day_range.start_utc, day_range.end_utc),
        exclude_booking_id=exclude_booking_id,
    )
    intervals = compute_available_slots(
        schedules,
        busy,
        day,
        duration_minutes,
        tz,
        now=now,
        step_minutes=settings.slot_interval_minutes,
    )
    logger.debug(
        f"Availability staff={staff_id} day={day.isoformat()} "
        f"busy={len(busy)} slots={len(intervals)}"
    )
    return [Slot(staff_id=staff_id, start=i.start, end=i.end) for i in intervals]


async def find_conflicts(
    session: AsyncSession,
    tenant_id: int,
    staff_id: int,
    interval: Interval,
    exclude_booking_id: Optional[uuid.UUID] = None,
) -> list[Interval]:
    """Busy intervals overlapping interval (bookings and blocks)."""
    return await load_busy_intervals(
        session, tenant_id, staff_id, interval, exclude_booking_id=exclude_booking_id
    )
