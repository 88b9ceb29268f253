"""
Point of sale: checkout, ticket closing and loyalty linking.

A payment always produces one Transaction row and moves its booking to
completed. Points are credited at payment time when the client is known, or
later when the client's QR code is scanned (link_transaction_to_client).
"""

import logging
import uuid
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from . import audit, broadcast
from .booking_lifecycle import BookingStateError, BookingValidationError, transition
from .loyalty import (
    LoyaltyError,
    credit_points,
    debit_points,
    points_discount,
    points_for_amount,
    validate_redemption,
)
from .models import (
    Booking,
    BookingStatus,
    LoyaltyReward,
    PaymentMethod,
    Profile,
    Transaction,
)
from .tenancy.context import TenantContext
from .tenancy.queries import find_client, get_booking_by_id, get_service_by_id, require_owned

logger = logging.getLogger(__name__)

TRANSACTION_COMPLETED = "completed"


def _to_amount(amount) -> Decimal:
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    if value < 0:
        raise BookingValidationError("Amount cannot be negative.")
    return value.quantize(Decimal("0.01"))


async def _load_client(session: AsyncSession, tenant_id: int, client_id: Optional[int]) -> Optional[Profile]:
    if client_id is None:
        return None
    client = await require_owned(session, Profile, client_id, tenant_id)
    if client is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
    return client


async def process_payment(
    session: AsyncSession,
    ctx: TenantContext,
    booking_id: uuid.UUID,
    *,
    amount,
    payment_method: PaymentMethod,
    actor_id: Optional[int] = None,
) -> Transaction:
    """Charge a booking: record the sale, complete the booking, credit points."""
    booking = await get_booking_by_id(session, ctx.tenant_id, booking_id)
    paid = _to_amount(amount)
    if BookingStatus(booking.status) == BookingStatus.PENDING:
        # Paying at the counter confirms an unconfirmed request.
        transition(booking, BookingStatus.CONFIRMED)
    transition(booking, BookingStatus.COMPLETED)

    points = points_for_amount(paid)
    client = await _load_client(session, ctx.tenant_id, booking.customer_id)

    tx = Transaction(
        id=uuid.uuid4(),
        tenant_id=ctx.tenant_id,
        booking_id=booking.id,
        staff_id=booking.staff_id,
        service_id=booking.service_id,
        client_id=booking.customer_id,
        amount=paid,
        payment_method=PaymentMethod(payment_method),
        points_earned=points,
        status=TRANSACTION_COMPLETED,
    )
    session.add(tx)
    if client is not None:
        credit_points(client, points)

    await audit.log_activity(
        session,
        tenant_id=ctx.tenant_id,
        actor_id=actor_id,
        action=audit.AUDIT_CREATE,
        entity=audit.ENTITY_TRANSACTIONS,
        entity_id=tx.id,
        metadata={"booking_id": str(booking.id), "amount": str(paid), "points": points},
    )
    await session.commit()
    logger.info(f"Payment {tx.id} of {paid} for booking {booking.id} ({points} points)")

    broadcast.publish_booking_event(ctx.tenant_id, broadcast.EVENT_BOOKING_COMPLETED, booking)
    return tx


async def finalize_ticket(
    session: AsyncSession,
    ctx: TenantContext,
    booking_id: uuid.UUID,
    *,
    service_id: int,
    amount,
    payment_method: PaymentMethod,
    client_id: Optional[int] = None,
    points_redeemed: int = 0,
    reward_id: Optional[int] = None,
    actor_id: Optional[int] = None,
) -> Transaction:
    """
    Close a seated POS ticket with the service actually performed.

    points_redeemed is a discount on amount (100 pts = 10.00); reward_id
    spends the reward's points price. Earned points are computed on what the
    client actually paid.
    """
    booking = await get_booking_by_id(session, ctx.tenant_id, booking_id)
    current = BookingStatus(booking.status)
    if current != BookingStatus.SEATED:
        raise BookingStateError(
            f"Only seated tickets can be closed (status: {current.value}).",
            details={"current": current.value},
        )

    service = await get_service_by_id(session, ctx.tenant_id, service_id)
    total = _to_amount(amount)
    client = await _load_client(session, ctx.tenant_id, client_id or booking.customer_id)

    reward_points = 0
    if points_redeemed or reward_id is not None:
        if client is None:
            raise LoyaltyError("Select a client to redeem points.")
        balance = client.loyalty_points or 0
        validate_redemption(balance, points_redeemed, total)
        if reward_id is not None:
            reward = await require_owned(session, LoyaltyReward, reward_id, ctx.tenant_id)
            if reward is None or not reward.is_active:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Reward not found")
            reward_points = reward.points_required
            if points_redeemed + reward_points > balance:
                raise LoyaltyError(
                    "Not enough points for this reward.",
                    details={"balance": balance, "required": points_redeemed + reward_points},
                )

    paid = max(Decimal("0.00"), total - points_discount(points_redeemed))
    earned = points_for_amount(paid)

    transition(booking, BookingStatus.COMPLETED)
    booking.service_id = service.id
    booking.service_name_at_booking = service.name
    booking.price_at_booking = total
    if client is not None and booking.customer_id is None:
        booking.customer_id = client.id

    tx = Transaction(
        id=uuid.uuid4(),
        tenant_id=ctx.tenant_id,
        booking_id=booking.id,
        staff_id=booking.staff_id,
        service_id=service.id,
        client_id=client.id if client else None,
        amount=paid,
        payment_method=PaymentMethod(payment_method),
        points_earned=earned,
        points_redeemed=points_redeemed + reward_points,
        status=TRANSACTION_COMPLETED,
    )
    session.add(tx)
    if client is not None:
        debit_points(client, points_redeemed + reward_points)
        credit_points(client, earned)

    await audit.log_activity(
        session,
        tenant_id=ctx.tenant_id,
        actor_id=actor_id,
        action=audit.AUDIT_CREATE,
        entity=audit.ENTITY_TRANSACTIONS,
        entity_id=tx.id,
        metadata={
            "booking_id": str(booking.id),
            "amount": str(paid),
            "points_earned": earned,
            "points_redeemed": points_redeemed + reward_points,
        },
    )
    await session.commit()
    broadcast.publish_booking_event(ctx.tenant_id, broadcast.EVENT_BOOKING_COMPLETED, booking)
    return tx


async def link_transaction_to_client(
    session: AsyncSession,
    ctx: TenantContext,
    transaction_id: uuid.UUID,
    scanned_value: str,
    *,
    actor_id: Optional[int] = None,
) -> Transaction:
    """Attach an anonymous sale to a client by scanned QR (profile id or e-mail)."""
    tx = await require_owned(session, Transaction, transaction_id, ctx.tenant_id)
    if tx is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")
    if tx.status != TRANSACTION_COMPLETED:
        raise BookingStateError("Only completed sales can earn points.")
    if tx.client_id is not None:
        raise BookingStateError("This sale already belongs to a client.")

    client = await find_client(session, ctx.tenant_id, scanned_value)
    if client is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")

    tx.client_id = client.id
    credit_points(client, tx.points_earned)
    if tx.booking_id is not None:
        booking = await session.get(Booking, tx.booking_id)
        if booking is not None and booking.customer_id is None:
            booking.customer_id = client.id

    await audit.log_activity(
        session,
        tenant_id=ctx.tenant_id,
        actor_id=actor_id,
        action=audit.AUDIT_UPDATE,
        entity=audit.ENTITY_TRANSACTIONS,
        entity_id=tx.id,
        metadata={"client_id": client.id, "points": tx.points_earned},
    )
    await session.commit()
    return tx


async def void_ticket(
    session: AsyncSession,
    ctx: TenantContext,
    booking_id: uuid.UUID,
    *,
    actor_id: Optional[int] = None,
) -> Booking:
    """Cancel an open ticket instead of deleting it, so the history stays visible."""
    booking = await get_booking_by_id(session, ctx.tenant_id, booking_id)
    transition(booking, BookingStatus.CANCELLED)
    booking.notes = (booking.notes + " | " if booking.notes else "") + "Voided at POS"

    await audit.log_activity(
        session,
        tenant_id=ctx.tenant_id,
        actor_id=actor_id,
        action=audit.AUDIT_CANCEL,
        entity=audit.ENTITY_BOOKINGS,
        entity_id=booking.id,
        metadata={"voided": True},
    )
    await session.commit()
    broadcast.publish_booking_event(ctx.tenant_id, broadcast.EVENT_BOOKING_CANCELLED, booking)
    return booking
