"""
Weekly staff schedules and ad-hoc time blocks.

Schedules are stored as wall-clock hours per weekday and interpreted in the
tenant timezone by the availability engine. Time blocks are entered as local
wall times and stored in UTC.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Iterable, Optional, Sequence

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from . import audit
from .booking_lifecycle import BookingValidationError
from .core.config import get_settings
from .dates import WEEKDAY_NAMES, get_tz, local_to_utc
from .models import Profile, StaffSchedule, TimeBlock, Weekday
from .tenancy.context import TenantContext
from .tenancy.queries import get_staff_by_id, require_owned, scoped_select

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_REASON = "Unavailable"
# Showcase defaults: Monday to Saturday open, Sunday closed
DEFAULT_OPEN_DAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday")


@dataclass
class DayHours:
    day: str
    is_active: bool = True
    start_time: Optional[time] = None
    end_time: Optional[time] = None


def _normalize_day(value: str) -> Weekday:
    try:
        return Weekday(value.strip().lower())
    except ValueError:
        raise BookingValidationError(f"Unknown weekday: {value!r}", details={"day": value})


async def get_weekly_schedule(
    session: AsyncSession, ctx: TenantContext, staff_id: int
) -> list[StaffSchedule]:
    await get_staff_by_id(session, ctx.tenant_id, staff_id, active_only=False)
    result = await session.execute(
        scoped_select(StaffSchedule, ctx.tenant_id).where(StaffSchedule.staff_id == staff_id)
    )
    rows = {Weekday(r.day).value: r for r in result.scalars().all()}
    return [rows[name] for name in WEEKDAY_NAMES if name in rows]


async def save_weekly_schedule(
    session: AsyncSession,
    ctx: TenantContext,
    staff_id: int,
    days: Iterable[DayHours],
    *,
    actor_id: Optional[int] = None,
) -> list[StaffSchedule]:
    """
    Upsert all seven weekdays for a staff member.

    Weekdays missing from days are saved as closed; missing hours fall back
    to DEFAULT_DAY_START / DEFAULT_DAY_END.
    """
    settings = get_settings()
    staff = await get_staff_by_id(session, ctx.tenant_id, staff_id, active_only=False)

    by_day: dict[Weekday, DayHours] = {}
    for entry in days:
        by_day[_normalize_day(entry.day)] = entry

    existing = {
        Weekday(r.day): r
        for r in (
            await session.execute(
                scoped_select(StaffSchedule, ctx.tenant_id).where(StaffSchedule.staff_id == staff.id)
            )
        ).scalars().all()
    }

    saved: list[StaffSchedule] = []
    for weekday in Weekday:
        entry = by_day.get(weekday, DayHours(day=weekday.value, is_active=False))
        start = entry.start_time or settings.default_day_start_time
        end = entry.end_time or settings.default_day_end_time
        if end <= start:
            raise BookingValidationError(
                f"{weekday.value.capitalize()}: closing time must be after opening time.",
                details={"day": weekday.value},
            )

        row = existing.get(weekday)
        if row is None:
            row = StaffSchedule(tenant_id=ctx.tenant_id, staff_id=staff.id, day=weekday)
            session.add(row)
        row.is_active = entry.is_active
        row.start_time = start
        row.end_time = end
        saved.append(row)

    await audit.log_activity(
        session,
        tenant_id=ctx.tenant_id,
        actor_id=actor_id,
        action=audit.AUDIT_UPDATE,
        entity=audit.ENTITY_SETTINGS,
        entity_id=staff.id,
        metadata={"open_days": [Weekday(r.day).value for r in saved if r.is_active]},
    )
    await session.commit()
    logger.info(f"Saved weekly schedule for staff {staff.id} in tenant {ctx.tenant_id}")
    return saved


async def seed_default_schedule(
    session: AsyncSession,
    tenant_id: int,
    staff: Profile,
) -> list[StaffSchedule]:
    """Mon-Sat open with the configured default hours. Does not commit."""
    settings = get_settings()
    rows = [
        StaffSchedule(
            tenant_id=tenant_id,
            staff_id=staff.id,
            day=weekday,
            is_active=weekday.value in DEFAULT_OPEN_DAYS,
            start_time=settings.default_day_start_time,
            end_time=settings.default_day_end_time,
        )
        for weekday in Weekday
    ]
    session.add_all(rows)
    await session.flush()
    return rows


# ────────────────────────────────────────────────────────────────
# Time blocks
# ────────────────────────────────────────────────────────────────

async def add_time_block(
    session: AsyncSession,
    ctx: TenantContext,
    staff_id: int,
    *,
    day: date,
    start_time: time,
    end_time: time,
    reason: Optional[str] = None,
    actor_id: Optional[int] = None,
) -> TimeBlock:
    """Block a staff member's local wall-clock range on day (tenant timezone)."""
    staff = await get_staff_by_id(session, ctx.tenant_id, staff_id, active_only=False)
    tz = get_tz(ctx.timezone)
    try:
        start_utc = local_to_utc(day, start_time, tz)
        end_utc = local_to_utc(day, end_time, tz)
    except ValueError as e:
        raise BookingValidationError(str(e))
    if end_utc <= start_utc:
        raise BookingValidationError("The block must end after it starts.")

    block = TimeBlock(
        tenant_id=ctx.tenant_id,
        staff_id=staff.id,
        start_time=start_utc,
        end_time=end_utc,
        reason=(reason or "").strip() or DEFAULT_BLOCK_REASON,
    )
    session.add(block)
    await session.flush()
    await audit.log_activity(
        session,
        tenant_id=ctx.tenant_id,
        actor_id=actor_id,
        action=audit.AUDIT_CREATE,
        entity=audit.ENTITY_SETTINGS,
        entity_id=block.id,
        metadata={"staff_id": staff.id, "kind": "time_block"},
    )
    await session.commit()
    return block


async def delete_time_block(
    session: AsyncSession,
    ctx: TenantContext,
    block_id: int,
    *,
    actor_id: Optional[int] = None,
) -> None:
    block = await require_owned(session, TimeBlock, block_id, ctx.tenant_id)
    if block is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Time block not found")
    await session.delete(block)
    await audit.log_activity(
        session,
        tenant_id=ctx.tenant_id,
        actor_id=actor_id,
        action=audit.AUDIT_DELETE,
        entity=audit.ENTITY_SETTINGS,
        entity_id=block_id,
        metadata={"kind": "time_block"},
    )
    await session.commit()


async def list_upcoming_blocks(
    session: AsyncSession,
    ctx: TenantContext,
    staff_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Sequence[TimeBlock]:
    """Blocks that have not ended yet, soonest first."""
    now = now or datetime.now(timezone.utc)
    query = scoped_select(TimeBlock, ctx.tenant_id).where(TimeBlock.end_time > now)
    if staff_id is not None:
        query = query.where(TimeBlock.staff_id == staff_id)
    result = await session.execute(query.order_by(TimeBlock.start_time))
    return result.scalars().all()
