"""
Public booking API, mounted under /s/{slug}/public.

No authentication required. Guests book with a name plus an e-mail or phone;
signed-in clients are attached to the booking automatically when they send
their bearer token.

All timestamps in responses are UTC ISO-8601; *_local fields are rendered in
the tenant's timezone for display.
"""

import logging
import uuid
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import get_optional_caller
from .availability import load_staff_availability
from .booking_lifecycle import BookingValidationError
from .bookings import create_booking
from .core.config import get_settings
from .core.db import get_session
from .core.request_context import RequestContext
from .dates import format_date, format_time, get_tz, local_today, parse_local_datetime
from .models import Booking, Profile
from .rate_limiter import rate_limit_dependency
from .ratings import get_booking_for_rating, submit_rating
from .tenancy import (
    TenantContext,
    get_service_by_id,
    get_staff_by_id,
    get_tenant_context,
    list_active_services,
    list_staff,
)

settings = get_settings()
logger = logging.getLogger(__name__)

router = APIRouter(prefix="/public", tags=["public-booking"])


# ────────────────────────────────────────────────────────────────
# Pydantic Models for Public API
# ────────────────────────────────────────────────────────────────

class BusinessInfoResponse(BaseModel):
    slug: str
    name: str
    timezone: str
    guest_checkout_enabled: bool
    google_review_url: Optional[str] = None
    booking_horizon_days: int


class ServiceResponse(BaseModel):
    id: int
    name: str
    duration_minutes: int
    price: Decimal


class StaffResponse(BaseModel):
    id: int
    name: str


class SlotResponse(BaseModel):
    staff_id: int
    staff_name: str
    start_time: datetime
    end_time: datetime
    start_time_local: str  # "14:30"


class AvailabilityResponse(BaseModel):
    date: date
    service_id: int
    service_name: str
    duration_minutes: int
    slots: list[SlotResponse]


class BookingCreateRequest(BaseModel):
    """
    start_time is tenant-local wall time ("2026-05-15T14:30") unless it
    carries an explicit offset.
    """
    service_id: int
    staff_id: int
    start_time: str
    guest_name: Optional[str] = Field(None, max_length=255)
    guest_email: Optional[str] = Field(None, max_length=255)
    guest_phone: Optional[str] = Field(None, max_length=32)
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("guest_email")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        v = v.strip().lower()
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("Invalid e-mail address")
        return v


class BookingResponse(BaseModel):
    id: uuid.UUID
    status: str
    staff_id: int
    service_id: Optional[int]
    service_name: Optional[str]
    price: Optional[Decimal]
    start_time: datetime
    end_time: datetime
    date_local: str
    start_time_local: str
    message: str


class RatingInfoResponse(BaseModel):
    booking_id: uuid.UUID
    business_name: str
    service_name: Optional[str]
    date_local: str
    already_rated: bool


class RatingRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)


class RatingResponse(BaseModel):
    booking_id: uuid.UUID
    rating: int
    feedback_saved: bool
    redirect_url: Optional[str] = None


def parse_start_time(value: str, ctx: TenantContext) -> datetime:
    """Tenant-local wall time (or explicit offset) to UTC; 400 on bad input."""
    try:
        return parse_local_datetime(value, get_tz(ctx.timezone))
    except ValueError as e:
        raise BookingValidationError(f"Invalid start_time: {e}")


def booking_to_response(booking: Booking, ctx: TenantContext, message: str = "") -> BookingResponse:
    tz = get_tz(ctx.timezone)
    return BookingResponse(
        id=booking.id,
        status=getattr(booking.status, "value", booking.status),
        staff_id=booking.staff_id,
        service_id=booking.service_id,
        service_name=booking.service_name_at_booking,
        price=booking.price_at_booking,
        start_time=booking.start_time,
        end_time=booking.end_time,
        date_local=format_date(booking.start_time, tz),
        start_time_local=format_time(booking.start_time, tz),
        message=message,
    )


# ────────────────────────────────────────────────────────────────
# Public API Endpoints
# ────────────────────────────────────────────────────────────────

@router.get("/business", response_model=BusinessInfoResponse)
async def get_business_info(ctx: TenantContext = Depends(get_tenant_context)):
    return BusinessInfoResponse(
        slug=ctx.slug,
        name=ctx.name,
        timezone=ctx.timezone,
        guest_checkout_enabled=ctx.guest_checkout_enabled,
        google_review_url=ctx.google_review_url,
        booking_horizon_days=settings.booking_horizon_days,
    )


@router.get("/services", response_model=list[ServiceResponse])
async def list_public_services(
    ctx: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    services = await list_active_services(session, ctx.tenant_id)
    return [
        ServiceResponse(id=s.id, name=s.name, duration_minutes=s.duration_min, price=s.price)
        for s in services
    ]


@router.get("/staff", response_model=list[StaffResponse])
async def list_public_staff(
    ctx: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    staff = await list_staff(session, ctx.tenant_id)
    return [StaffResponse(id=p.id, name=p.full_name) for p in staff]


@router.get("/availability", response_model=AvailabilityResponse)
async def check_availability(
    service_id: int = Query(...),
    date_: date = Query(..., alias="date", description="Local date, YYYY-MM-DD"),
    staff_id: Optional[int] = Query(None, description="Omit to search every staff member"),
    ctx: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    """
    Bookable start times for one local day.

    Past days return no slots; days beyond the booking horizon are rejected.
    """
    tz = get_tz(ctx.timezone)
    horizon = local_today(tz) + timedelta(days=settings.booking_horizon_days)
    if date_ > horizon:
        raise BookingValidationError(
            f"Bookings open at most {settings.booking_horizon_days} days ahead.",
            details={"horizon_days": settings.booking_horizon_days},
        )

    service = await get_service_by_id(session, ctx.tenant_id, service_id, active_only=True)
    if staff_id is not None:
        staff_members = [await get_staff_by_id(session, ctx.tenant_id, staff_id)]
    else:
        staff_members = list(await list_staff(session, ctx.tenant_id))

    slots: list[SlotResponse] = []
    for member in staff_members:
        available = await load_staff_availability(
            session, ctx.tenant_id, ctx.timezone, member.id, date_, service.duration_min
        )
        slots.extend(
            SlotResponse(
                staff_id=member.id,
                staff_name=member.full_name,
                start_time=slot.start,
                end_time=slot.end,
                start_time_local=slot.local_label(tz),
            )
            for slot in available
        )
    slots.sort(key=lambda s: (s.start_time, s.staff_id))

    return AvailabilityResponse(
        date=date_,
        service_id=service.id,
        service_name=service.name,
        duration_minutes=service.duration_min,
        slots=slots,
    )


@router.post(
    "/bookings",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit_dependency(10))],
)
async def create_public_booking(
    request: BookingCreateRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    caller: RequestContext = Depends(get_optional_caller),
    session: AsyncSession = Depends(get_session),
):
    """
    Create a confirmed booking.

    Errors: 400 invalid time, 403 guest checkout disabled,
    404 unknown service/staff, 409 slot taken.
    """
    tz = get_tz(ctx.timezone)
    start = parse_start_time(request.start_time, ctx)

    customer = None
    if caller.is_member:
        customer = await session.get(Profile, caller.profile_id)

    booking = await create_booking(
        session,
        ctx,
        service_id=request.service_id,
        staff_id=request.staff_id,
        start_time=start,
        customer=customer,
        guest_name=request.guest_name,
        guest_phone=request.guest_phone,
        guest_email=request.guest_email,
        notes=request.notes,
    )
    return booking_to_response(
        booking,
        ctx,
        message=(
            f"Your booking is confirmed! {booking.service_name_at_booking} on "
            f"{format_date(booking.start_time, tz)} at {format_time(booking.start_time, tz)}."
        ),
    )


@router.get("/rate/{booking_id}", response_model=RatingInfoResponse)
async def get_rating_info(
    booking_id: uuid.UUID,
    ctx: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    booking = await get_booking_for_rating(session, ctx, booking_id)
    return RatingInfoResponse(
        booking_id=booking.id,
        business_name=ctx.name,
        service_name=booking.service_name_at_booking,
        date_local=format_date(booking.start_time, get_tz(ctx.timezone)),
        already_rated=booking.rated_at is not None,
    )


@router.post(
    "/rate/{booking_id}",
    response_model=RatingResponse,
    dependencies=[Depends(rate_limit_dependency(5))],
)
async def rate_booking(
    booking_id: uuid.UUID,
    request: RatingRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    result = await submit_rating(session, ctx, booking_id, request.rating, request.comment)
    return RatingResponse(
        booking_id=result.booking_id,
        rating=result.rating,
        feedback_saved=result.feedback_saved,
        redirect_url=result.redirect_url,
    )
