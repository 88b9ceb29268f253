"""
Booking lifecycle operations.

Each operation validates input, applies a state transition, writes an audit
entry, commits, and then runs best-effort side effects (broadcast events and
notifications). Side-effect failures are logged and never undo the booking.

Double-booking is prevented by the partial unique index on
(staff_id, start_time) plus a post-insert overlap re-check for bookings that
overlap without sharing a start time.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import audit, broadcast
from .availability import Interval, find_conflicts, load_staff_availability
from .booking_lifecycle import (
    RESCHEDULABLE_STATUSES,
    BookingStateError,
    BookingValidationError,
    GuestCheckoutDisabledError,
    SlotTakenError,
    transition,
)
from .core.config import get_settings
from .dates import format_date, format_time, get_tz, local_today
from .emailer import send_booking_confirmation, send_staff_new_booking
from .models import Booking, BookingOrigin, BookingStatus, NoShow, Profile, utcnow
from .tenancy.context import TenantContext
from .tenancy.queries import get_booking_by_id, get_service_by_id, get_staff_by_id, scoped_select

logger = logging.getLogger(__name__)

DEFAULT_WALK_IN_NAME = "Walk-in client"
DEFAULT_NO_SHOW_REASON = "Did not show up"


def _ensure_aware(value: datetime, field: str) -> datetime:
    if value.tzinfo is None:
        raise BookingValidationError(f"{field} must include a timezone offset.")
    return value.astimezone(timezone.utc)


def client_display_name(booking: Booking, customer: Optional[Profile] = None) -> str:
    if customer is not None and customer.full_name:
        return customer.full_name
    return booking.guest_name or "Client"


async def _insert_booking(session: AsyncSession, booking: Booking) -> Booking:
    """
    Insert booking and re-check for overlaps.

    The unique index only catches identical start times; an overlapping
    booking with a different start is caught by the re-check, which removes
    the new row again.
    """
    try:
        async with session.begin_nested():
            session.add(booking)
    except IntegrityError as e:
        logger.info(f"Unique slot constraint rejected booking for staff {booking.staff_id}: {e.orig}")
        raise SlotTakenError(
            "This time slot was just taken. Please choose another time.",
            details={"staff_id": booking.staff_id, "start_time": booking.start_time.isoformat()},
        )

    conflicts = await find_conflicts(
        session,
        booking.tenant_id,
        booking.staff_id,
        Interval(booking.start_time, booking.end_time),
        exclude_booking_id=booking.id,
    )
    if conflicts:
        await session.delete(booking)
        await session.flush()
        logger.info(f"Post-insert re-check found {len(conflicts)} overlaps; booking {booking.id} removed")
        raise SlotTakenError(
            "This time overlaps another appointment. Please choose another time.",
            details={"staff_id": booking.staff_id, "start_time": booking.start_time.isoformat()},
        )
    return booking


async def _notify_new_booking(
    ctx: TenantContext,
    booking: Booking,
    staff: Profile,
    customer: Optional[Profile],
) -> None:
    tz = get_tz(ctx.timezone)
    client_name = client_display_name(booking, customer)
    client_email = booking.guest_email or (customer.email if customer else None)
    service_name = booking.service_name_at_booking or "Service"
    business = ctx.name or "AgendaBarber"
    date_label = format_date(booking.start_time, tz)
    time_label = format_time(booking.start_time, tz)

    try:
        if client_email:
            await send_booking_confirmation(
                client_name=client_name,
                client_email=client_email,
                service_name=service_name,
                staff_name=staff.full_name,
                date_label=date_label,
                time_label=time_label,
                business_name=business,
                booking_id=str(booking.id),
                start_at=booking.start_time,
                end_at=booking.end_time,
            )
        if staff.email:
            await send_staff_new_booking(
                staff_email=staff.email,
                staff_name=staff.full_name,
                client_name=client_name,
                service_name=service_name,
                date_label=date_label,
                time_label=time_label,
                business_name=business,
            )
    except Exception as e:
        logger.error(f"Notifications for booking {booking.id} failed: {e}")


# ────────────────────────────────────────────────────────────────
# Creation
# ────────────────────────────────────────────────────────────────

async def create_booking(
    session: AsyncSession,
    ctx: TenantContext,
    *,
    service_id: int,
    staff_id: int,
    start_time: datetime,
    customer: Optional[Profile] = None,
    guest_name: Optional[str] = None,
    guest_phone: Optional[str] = None,
    guest_email: Optional[str] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
    notify: bool = True,
) -> Booking:
    """
    Book a slot from the public booking page.

    start_time must be an aware datetime that matches a slot returned by the
    availability engine. Web bookings are auto-confirmed.
    """
    settings = get_settings()
    now = now or datetime.now(timezone.utc)

    if customer is None:
        if not ctx.guest_checkout_enabled:
            raise GuestCheckoutDisabledError("This business requires an account to book.")
        if not (guest_name and guest_name.strip()):
            raise BookingValidationError("Name is required.")
        if not (guest_email or guest_phone):
            raise BookingValidationError("An e-mail address or phone number is required.")

    service = await get_service_by_id(session, ctx.tenant_id, service_id, active_only=True)
    staff = await get_staff_by_id(session, ctx.tenant_id, staff_id)

    start = _ensure_aware(start_time, "start_time")
    end = start + timedelta(minutes=service.duration_min)
    tz = get_tz(ctx.timezone)
    local_day = start.astimezone(tz).date()

    if start <= now:
        raise BookingValidationError("Cannot book a time in the past.")
    if local_day > local_today(tz, now) + timedelta(days=settings.booking_horizon_days):
        raise BookingValidationError(
            f"Bookings open at most {settings.booking_horizon_days} days ahead.",
            details={"horizon_days": settings.booking_horizon_days},
        )

    conflicts = await find_conflicts(session, ctx.tenant_id, staff.id, Interval(start, end))
    if conflicts:
        raise SlotTakenError(
            "This time slot is no longer available. Please choose another time.",
            details={"staff_id": staff.id, "start_time": start.isoformat()},
        )

    slots = await load_staff_availability(
        session, ctx.tenant_id, ctx.timezone, staff.id, local_day, service.duration_min, now=now
    )
    if not any(slot.start == start for slot in slots):
        raise BookingValidationError(
            "The requested time is outside working hours.",
            details={"staff_id": staff.id, "start_time": start.isoformat()},
        )

    booking = Booking(
        id=uuid.uuid4(),
        tenant_id=ctx.tenant_id,
        staff_id=staff.id,
        service_id=service.id,
        customer_id=customer.id if customer else None,
        start_time=start,
        end_time=end,
        status=BookingStatus.CONFIRMED,
        origin=BookingOrigin.WEB,
        guest_name=guest_name.strip() if guest_name else None,
        guest_phone=guest_phone,
        guest_email=guest_email.lower() if guest_email else None,
        notes=notes,
        price_at_booking=service.price,
        service_name_at_booking=service.name,
    )
    await _insert_booking(session, booking)

    await audit.log_activity(
        session,
        tenant_id=ctx.tenant_id,
        actor_id=customer.id if customer else None,
        action=audit.AUDIT_CREATE,
        entity=audit.ENTITY_BOOKINGS,
        entity_id=booking.id,
        metadata={"origin": BookingOrigin.WEB.value, "service_id": service.id, "staff_id": staff.id},
    )
    await session.commit()
    logger.info(f"Booking {booking.id} confirmed for staff {staff.id} at {start.isoformat()}")

    broadcast.publish_booking_event(ctx.tenant_id, broadcast.EVENT_NEW_BOOKING, booking)
    if notify:
        await _notify_new_booking(ctx, booking, staff, customer)
    return booking


async def create_walk_in(
    session: AsyncSession,
    ctx: TenantContext,
    *,
    service_id: int,
    staff_id: int,
    start_time: Optional[datetime] = None,
    client_name: Optional[str] = None,
    actor_id: Optional[int] = None,
) -> Booking:
    """Register a client who walked in. Skips the schedule check, keeps the overlap check."""
    service = await get_service_by_id(session, ctx.tenant_id, service_id, active_only=True)
    staff = await get_staff_by_id(session, ctx.tenant_id, staff_id)

    start = _ensure_aware(start_time, "start_time") if start_time else datetime.now(timezone.utc)
    name = (client_name or "").strip() or DEFAULT_WALK_IN_NAME

    booking = Booking(
        id=uuid.uuid4(),
        tenant_id=ctx.tenant_id,
        staff_id=staff.id,
        service_id=service.id,
        start_time=start,
        end_time=start + timedelta(minutes=service.duration_min),
        status=BookingStatus.CONFIRMED,
        origin=BookingOrigin.WALK_IN,
        guest_name=name,
        notes=f"WALK-IN | Client: {name}",
        price_at_booking=service.price,
        service_name_at_booking=service.name,
    )
    await _insert_booking(session, booking)
    await audit.log_activity(
        session,
        tenant_id=ctx.tenant_id,
        actor_id=actor_id,
        action=audit.AUDIT_CREATE,
        entity=audit.ENTITY_BOOKINGS,
        entity_id=booking.id,
        metadata={"origin": BookingOrigin.WALK_IN.value},
    )
    await session.commit()

    broadcast.publish_booking_event(ctx.tenant_id, broadcast.EVENT_NEW_BOOKING, booking)
    return booking


async def open_ticket(
    session: AsyncSession,
    ctx: TenantContext,
    *,
    staff_id: int,
    client_name: str,
    duration_minutes: int,
    actor_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Booking:
    """
    POS check-in: put a client in the chair right now.

    The service is unknown until checkout, so the ticket blocks the staff
    member for duration_minutes and is finalized later by pos.finalize_ticket.
    """
    if duration_minutes <= 0:
        raise BookingValidationError("Duration must be positive.")
    staff = await get_staff_by_id(session, ctx.tenant_id, staff_id)
    start = now or datetime.now(timezone.utc)
    name = (client_name or "").strip() or DEFAULT_WALK_IN_NAME

    booking = Booking(
        id=uuid.uuid4(),
        tenant_id=ctx.tenant_id,
        staff_id=staff.id,
        service_id=None,
        start_time=start,
        end_time=start + timedelta(minutes=duration_minutes),
        status=BookingStatus.SEATED,
        origin=BookingOrigin.POS,
        guest_name=name,
        notes=f"Walk-in: {name}",
    )
    await _insert_booking(session, booking)
    await audit.log_activity(
        session,
        tenant_id=ctx.tenant_id,
        actor_id=actor_id,
        action=audit.AUDIT_CREATE,
        entity=audit.ENTITY_BOOKINGS,
        entity_id=booking.id,
        metadata={"origin": BookingOrigin.POS.value, "duration_min": duration_minutes},
    )
    await session.commit()

    broadcast.publish_booking_event(ctx.tenant_id, broadcast.EVENT_BOOKING_SEATED, booking)
    return booking


# ────────────────────────────────────────────────────────────────
# Transitions
# ────────────────────────────────────────────────────────────────

async def seat_booking(
    session: AsyncSession,
    ctx: TenantContext,
    booking_id: uuid.UUID,
    *,
    actor_id: Optional[int] = None,
) -> Booking:
    booking = await get_booking_by_id(session, ctx.tenant_id, booking_id)
    previous = transition(booking, BookingStatus.SEATED)
    await audit.log_activity(
        session,
        tenant_id=ctx.tenant_id,
        actor_id=actor_id,
        action=audit.AUDIT_UPDATE,
        entity=audit.ENTITY_BOOKINGS,
        entity_id=booking.id,
        metadata={"from": previous.value, "to": BookingStatus.SEATED.value},
    )
    await session.commit()
    broadcast.publish_booking_event(ctx.tenant_id, broadcast.EVENT_BOOKING_SEATED, booking)
    return booking


async def reschedule_booking(
    session: AsyncSession,
    ctx: TenantContext,
    booking_id: uuid.UUID,
    *,
    start_time: datetime,
    staff_id: Optional[int] = None,
    actor_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Booking:
    """Move a pending/confirmed booking to a new slot, optionally with another staff member."""
    now = now or datetime.now(timezone.utc)
    booking = await get_booking_by_id(session, ctx.tenant_id, booking_id)
    current = BookingStatus(booking.status)
    if current not in RESCHEDULABLE_STATUSES:
        raise BookingStateError(
            f"Only pending or confirmed bookings can be rescheduled (status: {current.value}).",
            details={"current": current.value},
        )

    staff = await get_staff_by_id(session, ctx.tenant_id, staff_id or booking.staff_id)
    start = _ensure_aware(start_time, "start_time")
    duration = booking.end_time - booking.start_time
    end = start + duration
    if start <= now:
        raise BookingValidationError("Cannot move a booking into the past.")

    conflicts = await find_conflicts(
        session, ctx.tenant_id, staff.id, Interval(start, end), exclude_booking_id=booking.id
    )
    if conflicts:
        raise SlotTakenError(
            "The new time overlaps another appointment.",
            details={"staff_id": staff.id, "start_time": start.isoformat()},
        )

    tz = get_tz(ctx.timezone)
    slots = await load_staff_availability(
        session,
        ctx.tenant_id,
        ctx.timezone,
        staff.id,
        start.astimezone(tz).date(),
        int(duration.total_seconds() // 60),
        now=now,
        exclude_booking_id=booking.id,
    )
    if not any(slot.start == start for slot in slots):
        raise BookingValidationError("The new time is outside working hours.")

    old_start, old_staff = booking.start_time, booking.staff_id
    booking.staff_id = staff.id
    booking.start_time = start
    booking.end_time = end
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        raise SlotTakenError("This time slot was just taken. Please choose another time.")

    await audit.log_activity(
        session,
        tenant_id=ctx.tenant_id,
        actor_id=actor_id,
        action=audit.AUDIT_UPDATE,
        entity=audit.ENTITY_BOOKINGS,
        entity_id=booking.id,
        metadata={
            "old_start": old_start.isoformat(),
            "new_start": start.isoformat(),
            "old_staff_id": old_staff,
            "new_staff_id": staff.id,
        },
    )
    await session.commit()
    broadcast.publish_booking_event(ctx.tenant_id, broadcast.EVENT_BOOKING_UPDATED, booking)
    return booking


async def cancel_booking_admin(
    session: AsyncSession,
    ctx: TenantContext,
    booking_id: uuid.UUID,
    *,
    reason: Optional[str] = None,
    actor_id: Optional[int] = None,
) -> Booking:
    booking = await get_booking_by_id(session, ctx.tenant_id, booking_id)
    transition(booking, BookingStatus.CANCELLED)
    reason = (reason or "").strip()
    booking.notes = f"Cancelled by admin: {reason}" if reason else "Cancelled by admin"

    await audit.log_activity(
        session,
        tenant_id=ctx.tenant_id,
        actor_id=actor_id,
        action=audit.AUDIT_CANCEL,
        entity=audit.ENTITY_BOOKINGS,
        entity_id=booking.id,
        metadata={"reason": reason or None},
    )
    await session.commit()
    broadcast.publish_booking_event(ctx.tenant_id, broadcast.EVENT_BOOKING_CANCELLED, booking)
    return booking


async def cancel_my_booking(
    session: AsyncSession,
    ctx: TenantContext,
    booking_id: uuid.UUID,
    customer: Profile,
    *,
    now: Optional[datetime] = None,
) -> Booking:
    """Client self-service cancellation; only the client's own bookings."""
    settings = get_settings()
    now = now or datetime.now(timezone.utc)

    result = await session.execute(
        scoped_select(Booking, ctx.tenant_id).where(
            Booking.id == booking_id,
            Booking.customer_id == customer.id,
        )
    )
    booking = result.scalar_one_or_none()
    if booking is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")

    notice = timedelta(hours=settings.min_cancel_notice_hours)
    if notice and booking.start_time - now < notice:
        raise BookingValidationError(
            f"Bookings can only be cancelled at least {settings.min_cancel_notice_hours} hours ahead.",
            details={"min_notice_hours": settings.min_cancel_notice_hours},
        )

    transition(booking, BookingStatus.CANCELLED)
    await audit.log_activity(
        session,
        tenant_id=ctx.tenant_id,
        actor_id=customer.id,
        action=audit.AUDIT_CANCEL,
        entity=audit.ENTITY_BOOKINGS,
        entity_id=booking.id,
        metadata={"by": "client"},
    )
    await session.commit()
    broadcast.publish_booking_event(ctx.tenant_id, broadcast.EVENT_BOOKING_CANCELLED, booking)
    return booking


# ────────────────────────────────────────────────────────────────
# No-shows
# ────────────────────────────────────────────────────────────────

async def mark_no_show(
    session: AsyncSession,
    ctx: TenantContext,
    booking_id: uuid.UUID,
    *,
    reason: Optional[str] = None,
    actor_id: Optional[int] = None,
) -> NoShow:
    booking = await get_booking_by_id(session, ctx.tenant_id, booking_id)
    transition(booking, BookingStatus.NO_SHOW)
    booking.notes = "Client did not show up"

    customer = None
    if booking.customer_id is not None:
        customer = await session.get(Profile, booking.customer_id)
        if customer is not None:
            customer.no_show_count = (customer.no_show_count or 0) + 1

    record = NoShow(
        tenant_id=ctx.tenant_id,
        booking_id=booking.id,
        customer_id=booking.customer_id,
        guest_email=booking.guest_email or (customer.email if customer else None),
        reason=reason or DEFAULT_NO_SHOW_REASON,
        marked_by=actor_id,
    )
    session.add(record)
    await audit.log_activity(
        session,
        tenant_id=ctx.tenant_id,
        actor_id=actor_id,
        action=audit.AUDIT_UPDATE,
        entity=audit.ENTITY_BOOKINGS,
        entity_id=booking.id,
        metadata={"status": BookingStatus.NO_SHOW.value},
    )
    await session.commit()
    broadcast.publish_booking_event(ctx.tenant_id, broadcast.EVENT_BOOKING_NOSHOW, booking)
    return record


def _forgive(record: NoShow, customer: Optional[Profile], actor_id: Optional[int]) -> None:
    record.forgiven = True
    record.forgiven_by = actor_id
    record.forgiven_at = utcnow()
    if customer is not None:
        customer.no_show_count = max(0, (customer.no_show_count or 0) - 1)


async def forgive_no_show(
    session: AsyncSession,
    ctx: TenantContext,
    no_show_id: int,
    *,
    actor_id: Optional[int] = None,
) -> NoShow:
    result = await session.execute(scoped_select(NoShow, ctx.tenant_id).where(NoShow.id == no_show_id))
    record = result.scalar_one_or_none()
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No-show record not found")
    if record.forgiven:
        return record

    customer = await session.get(Profile, record.customer_id) if record.customer_id else None
    _forgive(record, customer, actor_id)
    await audit.log_activity(
        session,
        tenant_id=ctx.tenant_id,
        actor_id=actor_id,
        action=audit.AUDIT_RESTORE,
        entity=audit.ENTITY_PROFILES,
        entity_id=record.customer_id or record.guest_email or record.id,
        metadata={"no_show_id": record.id},
    )
    await session.commit()
    return record


def _normalize_email(email: Optional[str]) -> str:
    email = (email or "").strip().lower()
    if not email:
        raise BookingValidationError("E-mail is required.")
    return email


async def _no_shows_for_email(session: AsyncSession, ctx: TenantContext, email: str):
    """Profiles registered with email, and a NoShow filter matching either them or the guest e-mail."""
    profiles = (
        await session.execute(scoped_select(Profile, ctx.tenant_id).where(Profile.email == email))
    ).scalars().all()
    clauses = [NoShow.guest_email == email]
    if profiles:
        clauses.append(NoShow.customer_id.in_([p.id for p in profiles]))
    return profiles, or_(*clauses)


async def reset_client_warnings(
    session: AsyncSession,
    ctx: TenantContext,
    email: str,
    *,
    actor_id: Optional[int] = None,
) -> int:
    """Forgive every outstanding no-show for a client e-mail. Returns how many were forgiven."""
    email = _normalize_email(email)
    profiles, matches_client = await _no_shows_for_email(session, ctx, email)
    profile_ids = [p.id for p in profiles]
    records = (
        await session.execute(
            scoped_select(NoShow, ctx.tenant_id).where(NoShow.forgiven.is_(False), matches_client)
        )
    ).scalars().all()

    for record in records:
        _forgive(record, None, actor_id)
    for profile in profiles:
        profile.no_show_count = 0

    await audit.log_activity(
        session,
        tenant_id=ctx.tenant_id,
        actor_id=actor_id,
        action=audit.AUDIT_RESTORE,
        entity=audit.ENTITY_PROFILES,
        entity_id=profile_ids[0] if profile_ids else "guest",
        metadata={"forgiven": len(records)},
    )
    await session.commit()
    logger.info(f"Reset {len(records)} no-show warnings in tenant {ctx.tenant_id}")
    return len(records)


@dataclass
class ClientWarning:
    email: str
    client_name: str
    total_no_shows: int
    last_no_show_at: datetime


@dataclass
class NoShowHistoryEntry:
    id: int
    booking_id: uuid.UUID
    start_time: datetime
    service_name: Optional[str]
    reason: Optional[str]
    forgiven: bool
    forgiven_at: Optional[datetime]


async def list_clients_with_warnings(session: AsyncSession, ctx: TenantContext) -> list[ClientWarning]:
    """
    Clients with outstanding (unforgiven) no-shows, grouped by e-mail.

    Most warnings first. No-shows without any e-mail cannot be grouped and
    are left out.
    """
    result = await session.execute(
        select(NoShow, Booking, Profile)
        .join(Booking, Booking.id == NoShow.booking_id)
        .outerjoin(Profile, Profile.id == NoShow.customer_id)
        .where(NoShow.tenant_id == ctx.tenant_id, NoShow.forgiven.is_(False))
        .order_by(NoShow.created_at)
    )

    warnings: dict[str, ClientWarning] = {}
    for record, booking, customer in result.all():
        email = (record.guest_email or (customer.email if customer else None) or "").strip().lower()
        if not email:
            continue
        entry = warnings.get(email)
        if entry is None:
            warnings[email] = ClientWarning(
                email=email,
                client_name=client_display_name(booking, customer),
                total_no_shows=1,
                last_no_show_at=record.created_at,
            )
        else:
            entry.total_no_shows += 1
            entry.last_no_show_at = max(entry.last_no_show_at, record.created_at)

    return sorted(warnings.values(), key=lambda w: (-w.total_no_shows, w.email))


async def get_no_show_history(
    session: AsyncSession,
    ctx: TenantContext,
    email: str,
) -> list[NoShowHistoryEntry]:
    """Every no-show recorded for a client e-mail, forgiven ones included, newest visit first."""
    email = _normalize_email(email)
    _, matches_client = await _no_shows_for_email(session, ctx, email)
    result = await session.execute(
        select(NoShow, Booking)
        .join(Booking, Booking.id == NoShow.booking_id)
        .where(NoShow.tenant_id == ctx.tenant_id, matches_client)
        .order_by(Booking.start_time.desc())
    )
    return [
        NoShowHistoryEntry(
            id=record.id,
            booking_id=booking.id,
            start_time=booking.start_time,
            service_name=booking.service_name_at_booking,
            reason=record.reason,
            forgiven=record.forgiven,
            forgiven_at=record.forgiven_at,
        )
        for record, booking in result.all()
    ]


async def list_client_bookings(
    session: AsyncSession,
    ctx: TenantContext,
    customer: Profile,
):
    result = await session.execute(
        scoped_select(Booking, ctx.tenant_id)
        .where(Booking.customer_id == customer.id)
        .order_by(Booking.start_time.desc())
    )
    return result.scalars().all()
