"""
Tenant-scoped query helpers.

These functions provide safe, tenant-isolated database queries.
ALL queries for tenant data MUST use these helpers or include explicit
tenant_id filtering.

Usage:
    from app.tenancy.queries import get_service_by_id, scoped_select

    service = await get_service_by_id(session, ctx.tenant_id, service_id)
    stmt = scoped_select(Service, ctx.tenant_id).where(Service.is_active.is_(True))
"""

import uuid
from datetime import datetime
from typing import Optional, Sequence, Type, TypeVar

from fastapi import HTTPException, status
from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase

from ..models import Booking, BookingStatus, Profile, ProfileRole, Service, Tenant

# Type variable for generic model functions
T = TypeVar("T", bound=DeclarativeBase)

STAFF_ROLES = (ProfileRole.OWNER, ProfileRole.ADMIN, ProfileRole.STAFF)


# ────────────────────────────────────────────────────────────────
# Composable Query Helpers
# ────────────────────────────────────────────────────────────────

def scoped_select(model: Type[T], tenant_id: int) -> Select:
    """
    Create a SELECT statement pre-filtered by tenant_id.

    Usage:
        stmt = scoped_select(Service, ctx.tenant_id).where(Service.is_active.is_(True))
    """
    return select(model).where(model.tenant_id == tenant_id)


def tenant_filter(model: Type[T], tenant_id: int):
    """Return a SQLAlchemy filter clause for tenant_id."""
    return model.tenant_id == tenant_id


async def require_owned(
    session: AsyncSession,
    model: Type[T],
    entity_id,
    tenant_id: int,
) -> Optional[T]:
    """
    Fetch an entity by ID, validating tenant ownership.
    Returns None if not found or wrong tenant.
    """
    result = await session.execute(
        select(model).where(model.id == entity_id, model.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


# ────────────────────────────────────────────────────────────────
# Tenants
# ────────────────────────────────────────────────────────────────

async def get_tenant(session: AsyncSession, tenant_id: int) -> Tenant:
    tenant = await session.get(Tenant, tenant_id)
    if not tenant:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Business not found")
    return tenant


# ────────────────────────────────────────────────────────────────
# Services
# ────────────────────────────────────────────────────────────────

async def get_service_by_id(
    session: AsyncSession,
    tenant_id: int,
    service_id: int,
    *,
    active_only: bool = False,
) -> Service:
    """Fetch a service scoped to tenant or raise 404."""
    service = await require_owned(session, Service, service_id, tenant_id)
    if not service or (active_only and not service.is_active):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Service not found")
    return service


async def list_active_services(session: AsyncSession, tenant_id: int) -> Sequence[Service]:
    result = await session.execute(
        scoped_select(Service, tenant_id).where(Service.is_active.is_(True)).order_by(Service.id)
    )
    return result.scalars().all()


# ────────────────────────────────────────────────────────────────
# Staff & Clients
# ────────────────────────────────────────────────────────────────

async def get_staff_by_id(
    session: AsyncSession,
    tenant_id: int,
    staff_id: int,
    *,
    active_only: bool = True,
) -> Profile:
    """Fetch a staff member (owner/admin/staff profile) scoped to tenant or raise 404."""
    result = await session.execute(
        scoped_select(Profile, tenant_id).where(
            Profile.id == staff_id,
            Profile.role.in_(STAFF_ROLES),
        )
    )
    staff = result.scalar_one_or_none()
    if not staff or (active_only and not staff.is_active):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Staff member not found")
    return staff


async def list_staff(session: AsyncSession, tenant_id: int) -> Sequence[Profile]:
    result = await session.execute(
        scoped_select(Profile, tenant_id)
        .where(Profile.role.in_(STAFF_ROLES), Profile.is_active.is_(True))
        .order_by(Profile.full_name)
    )
    return result.scalars().all()


async def find_client(session: AsyncSession, tenant_id: int, value: str) -> Optional[Profile]:
    """Find a client profile by numeric id, auth user id or e-mail (case-insensitive)."""
    value = (value or "").strip()
    if not value:
        return None

    if value.isdigit():
        profile = await require_owned(session, Profile, int(value), tenant_id)
        if profile:
            return profile

    result = await session.execute(scoped_select(Profile, tenant_id).where(Profile.user_id == value))
    profile = result.scalar_one_or_none()
    if profile:
        return profile

    result = await session.execute(
        scoped_select(Profile, tenant_id).where(Profile.email == value.lower()).limit(1)
    )
    return result.scalar_one_or_none()


# ────────────────────────────────────────────────────────────────
# Bookings
# ────────────────────────────────────────────────────────────────

async def get_booking_by_id(
    session: AsyncSession,
    tenant_id: int,
    booking_id: uuid.UUID,
) -> Booking:
    booking = await require_owned(session, Booking, booking_id, tenant_id)
    if not booking:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    return booking


async def list_bookings_in_range(
    session: AsyncSession,
    tenant_id: int,
    start_utc: datetime,
    end_utc: datetime,
    *,
    staff_id: Optional[int] = None,
    statuses: Optional[Sequence[BookingStatus]] = None,
) -> Sequence[Booking]:
    """Bookings that start inside [start_utc, end_utc), ordered by start."""
    query = scoped_select(Booking, tenant_id).where(
        Booking.start_time >= start_utc,
        Booking.start_time < end_utc,
    )
    if staff_id is not None:
        query = query.where(Booking.staff_id == staff_id)
    if statuses:
        query = query.where(Booking.status.in_(statuses))
    result = await session.execute(query.order_by(Booking.start_time))
    return result.scalars().all()
