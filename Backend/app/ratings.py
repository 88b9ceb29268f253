"""
Post-visit ratings.

Clients open the link from the rating-request e-mail. Low ratings (1-3) are
stored as private feedback for the owner; high ratings (4-5) are redirected
to the tenant's Google review page. Either way the booking is stamped as
rated so the request is not sent again.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from .booking_lifecycle import BookingStateError, BookingValidationError
from .models import Booking, BookingStatus, Feedback, Profile, utcnow
from .tenancy.context import TenantContext
from .tenancy.queries import get_booking_by_id

logger = logging.getLogger(__name__)

FEEDBACK_MAX_RATING = 3


@dataclass
class RatingResult:
    booking_id: uuid.UUID
    rating: int
    feedback_saved: bool
    redirect_url: Optional[str] = None


async def get_booking_for_rating(
    session: AsyncSession, ctx: TenantContext, booking_id: uuid.UUID
) -> Booking:
    booking = await get_booking_by_id(session, ctx.tenant_id, booking_id)
    if BookingStatus(booking.status) != BookingStatus.COMPLETED:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    return booking


async def submit_rating(
    session: AsyncSession,
    ctx: TenantContext,
    booking_id: uuid.UUID,
    rating: int,
    comment: Optional[str] = None,
) -> RatingResult:
    if rating < 1 or rating > 5:
        raise BookingValidationError("Rating must be between 1 and 5.", details={"rating": rating})

    booking = await get_booking_for_rating(session, ctx, booking_id)
    if booking.rated_at is not None:
        raise BookingStateError("This visit has already been rated.")

    feedback_saved = False
    if rating <= FEEDBACK_MAX_RATING:
        await submit_feedback(session, ctx, booking, rating, comment)
        feedback_saved = True
    mark_booking_rated(booking)
    await session.commit()
    logger.info(f"Booking {booking.id} rated {rating}")

    redirect = ctx.google_review_url if rating > FEEDBACK_MAX_RATING else None
    return RatingResult(
        booking_id=booking.id,
        rating=rating,
        feedback_saved=feedback_saved,
        redirect_url=redirect,
    )


async def submit_feedback(
    session: AsyncSession,
    ctx: TenantContext,
    booking: Booking,
    rating: int,
    comment: Optional[str] = None,
) -> Feedback:
    customer = await session.get(Profile, booking.customer_id) if booking.customer_id else None
    feedback = Feedback(
        tenant_id=ctx.tenant_id,
        booking_id=booking.id,
        customer_id=booking.customer_id,
        rating=rating,
        comment=(comment or "").strip() or None,
        guest_name=booking.guest_name or (customer.full_name if customer else None),
        guest_email=booking.guest_email or (customer.email if customer else None),
    )
    session.add(feedback)
    return feedback


def mark_booking_rated(booking: Booking) -> None:
    booking.rated_at = utcnow()
