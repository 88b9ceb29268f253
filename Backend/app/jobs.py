"""
Scheduled jobs, triggered by the /cron endpoints.

    reminders        confirmed bookings starting 24-25 h from now
    winback          clients whose last completed visit is 21+ days old
    rating_requests  completed bookings from the last 24 h not yet rated

Jobs run across all active tenants and return a summary dict. A failed send
is counted, logged and skipped.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from .core.config import get_settings
from .dates import format_date, format_time, get_tz
from .emailer import send_booking_reminder, send_rating_request, send_winback_email
from .models import Booking, BookingStatus, Profile, Service, Tenant, TenantStatus
from .sms import send_sms

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_NAME = "Client"


@dataclass
class JobSummary:
    job: str
    candidates: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    details: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "job": self.job,
            "candidates": self.candidates,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
        }


def tenant_base_url(tenant: Tenant) -> str:
    return f"https://{tenant.slug}.{get_settings().root_domain}"


Staff = aliased(Profile)
Customer = aliased(Profile)


def _booking_rows_query():
    return (
        select(Booking, Tenant, Staff, Customer, Service)
        .join(Tenant, Tenant.id == Booking.tenant_id)
        .join(Staff, Staff.id == Booking.staff_id)
        .outerjoin(Customer, Customer.id == Booking.customer_id)
        .outerjoin(Service, Service.id == Booking.service_id)
        .where(Tenant.status == TenantStatus.ACTIVE)
    )


def _contact(booking: Booking, customer: Optional[Profile]) -> tuple[str, Optional[str], Optional[str]]:
    name = booking.guest_name or (customer.full_name if customer else None) or DEFAULT_CLIENT_NAME
    email = booking.guest_email or (customer.email if customer else None)
    phone = booking.guest_phone or (customer.phone if customer else None)
    return name, email, phone


def _service_name(booking: Booking, service: Optional[Service]) -> str:
    return booking.service_name_at_booking or (service.name if service else None) or "Service"


# ────────────────────────────────────────────────────────────────
# Reminders
# ────────────────────────────────────────────────────────────────

async def send_reminders(session: AsyncSession, now: Optional[datetime] = None) -> JobSummary:
    settings = get_settings()
    now = now or datetime.now(timezone.utc)
    window_start = now + timedelta(hours=settings.reminder_lead_hours)
    window_end = window_start + timedelta(hours=1)

    rows = (
        await session.execute(
            _booking_rows_query().where(
                Booking.status == BookingStatus.CONFIRMED,
                Booking.reminder_sent_at.is_(None),
                Booking.start_time >= window_start,
                Booking.start_time < window_end,
            )
        )
    ).all()

    summary = JobSummary(job="reminders", candidates=len(rows))
    for booking, tenant, staff, customer, service in rows:
        name, email, phone = _contact(booking, customer)
        tz = get_tz(tenant.timezone)
        date_label = format_date(booking.start_time, tz)
        time_label = format_time(booking.start_time, tz)

        if email:
            ok = await send_booking_reminder(
                client_name=name,
                client_email=email,
                service_name=_service_name(booking, service),
                staff_name=staff.full_name,
                date_label=date_label,
                time_label=time_label,
                business_name=tenant.name,
            )
        elif phone:
            ok = await send_sms(
                phone,
                f"{tenant.name}: reminder of your {_service_name(booking, service)} "
                f"with {staff.full_name} on {date_label} at {time_label}.",
            )
        else:
            summary.skipped += 1
            continue

        if ok:
            booking.reminder_sent_at = now
            summary.sent += 1
        else:
            summary.failed += 1
        summary.details.append({"booking_id": str(booking.id), "success": ok})

    await session.commit()
    logger.info(f"Reminders: {summary.sent}/{summary.candidates} sent, {summary.failed} failed")
    return summary


# ────────────────────────────────────────────────────────────────
# Win-back
# ────────────────────────────────────────────────────────────────

async def send_winback_emails(session: AsyncSession, now: Optional[datetime] = None) -> JobSummary:
    """One e-mail per client address per tenant per run."""
    settings = get_settings()
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=settings.winback_after_days)

    rows = (
        await session.execute(
            _booking_rows_query()
            .where(Booking.status == BookingStatus.COMPLETED, Booking.start_time < cutoff)
            .order_by(Booking.tenant_id, Booking.start_time.desc())
        )
    ).all()

    summary = JobSummary(job="winback")
    emailed: set[tuple[int, str]] = set()
    for booking, tenant, _staff, customer, _service in rows:
        name, email, _phone = _contact(booking, customer)
        if not email:
            continue
        key = (tenant.id, email.lower())
        if key in emailed:
            continue
        emailed.add(key)
        summary.candidates += 1

        recent_filters = [Booking.guest_email == email]
        if booking.customer_id is not None:
            recent_filters.append(Booking.customer_id == booking.customer_id)
        recent = (
            await session.execute(
                select(Booking.id)
                .where(
                    Booking.tenant_id == tenant.id,
                    Booking.start_time >= cutoff,
                    Booking.status != BookingStatus.CANCELLED,
                    or_(*recent_filters),
                )
                .limit(1)
            )
        ).first()
        if recent is not None:
            summary.skipped += 1
            continue

        days_since = (now - booking.start_time).days
        ok = await send_winback_email(
            client_name=name,
            client_email=email,
            days_since_last_visit=days_since,
            business_name=tenant.name,
            booking_url=f"{tenant_base_url(tenant)}/book/{tenant.slug}",
        )
        if ok:
            summary.sent += 1
        else:
            summary.failed += 1

    logger.info(f"Win-back: {summary.sent}/{summary.candidates} sent")
    return summary


# ────────────────────────────────────────────────────────────────
# Rating requests
# ────────────────────────────────────────────────────────────────

async def send_rating_requests(session: AsyncSession, now: Optional[datetime] = None) -> JobSummary:
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(hours=24)

    rows = (
        await session.execute(
            _booking_rows_query().where(
                Booking.status == BookingStatus.COMPLETED,
                Booking.rated_at.is_(None),
                Booking.start_time >= since,
                Booking.start_time < now,
            )
        )
    ).all()

    summary = JobSummary(job="rating_requests", candidates=len(rows))
    for booking, tenant, staff, customer, service in rows:
        name, email, _phone = _contact(booking, customer)
        if not email:
            summary.skipped += 1
            continue
        ok = await send_rating_request(
            client_name=name,
            client_email=email,
            service_name=_service_name(booking, service),
            staff_name=staff.full_name,
            business_name=tenant.name,
            rating_url=f"{tenant_base_url(tenant)}/rate/{booking.id}",
        )
        if ok:
            summary.sent += 1
        else:
            summary.failed += 1
        summary.details.append({"booking_id": str(booking.id), "success": ok})

    logger.info(f"Rating requests: {summary.sent}/{summary.candidates} sent")
    return summary
