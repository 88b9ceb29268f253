"""
Slug-scoped routes for the multi-tenant API.

Pattern: /s/{slug}/...

    /s/{slug}/public/...   booking site (no auth), see public_booking.py
    /s/{slug}/admin/...    dashboard and POS (staff, admin, owner)
    /s/{slug}/me/...       signed-in client area

Usage:
    GET  /s/barberia-centro/admin/bookings?date=2026-05-15
    POST /s/barberia-centro/admin/tickets                   -> POS check-in
    POST /s/barberia-centro/admin/tickets/{id}/finalize     -> POS checkout
    GET  /s/barberia-centro/admin/no-shows                  -> clients with warnings
    GET  /s/barberia-centro/me/loyalty
    WS   /s/barberia-centro/admin/ws/bookings?token=...

Admin routes require a bearer token whose user has a staff profile in the
tenant. Warning resets and no-show forgiveness need owner or admin.
"""

import asyncio
import logging
import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import bookings as booking_service
from . import pos, schedule
from .auth import MANAGER_ROLES, STAFF_ROLES, require_manager, require_member, require_staff
from .broadcast import broadcaster
from .core.db import get_session
from .core.request_context import (
    AuthenticationError,
    AuthorizationError,
    RequestContext,
    require_roles,
    resolve_request_context,
)
from .dates import format_time, get_tz, local_day_bounds
from .loyalty import get_loyalty_status
from .models import BookingStatus, PaymentMethod, Profile, TimeBlock, Transaction
from .public_booking import booking_to_response, BookingResponse, parse_start_time
from .public_booking import router as public_booking_router
from .tenancy import TenantContext, get_tenant_context, list_bookings_in_range

logger = logging.getLogger(__name__)

WS_KEEPALIVE_SECONDS = 30


# ────────────────────────────────────────────────────────────────
# Router Definition
# ────────────────────────────────────────────────────────────────

router = APIRouter(prefix="/s/{slug}", tags=["scoped-api"])

# Include public booking endpoints under /s/{slug}/public/...
router.include_router(public_booking_router, tags=["public-booking"])


def _assert_can_manage_staff(caller: RequestContext, staff_id: int) -> None:
    """Staff may edit their own schedule; owners and admins edit anyone's."""
    if caller.role in {r.value for r in MANAGER_ROLES} or caller.profile_id == staff_id:
        return
    raise AuthorizationError(
        "You can only change your own schedule.",
        tenant_id=caller.tenant_id,
        code="INSUFFICIENT_ROLE",
    )


async def _load_customer(session: AsyncSession, caller: RequestContext) -> Profile:
    return await session.get(Profile, caller.profile_id)


# ────────────────────────────────────────────────────────────────
# Response / Request Models
# ────────────────────────────────────────────────────────────────

class AdminBookingResponse(BaseModel):
    id: uuid.UUID
    status: str
    origin: str
    staff_id: int
    staff_name: Optional[str]
    service_id: Optional[int]
    service_name: Optional[str]
    client_name: str
    client_email: Optional[str]
    client_phone: Optional[str]
    price: Optional[Decimal]
    notes: Optional[str]
    start_time: datetime
    end_time: datetime
    start_time_local: str
    end_time_local: str


class WalkInRequest(BaseModel):
    service_id: int
    staff_id: int
    client_name: Optional[str] = Field(None, max_length=255)
    start_time: Optional[str] = Field(None, description="Local wall time; defaults to now")


class OpenTicketRequest(BaseModel):
    staff_id: int
    client_name: str = Field(..., min_length=1, max_length=255)
    duration_minutes: int = Field(30, ge=5, le=240)


class FinalizeTicketRequest(BaseModel):
    service_id: int
    amount: Decimal = Field(..., ge=0)
    payment_method: PaymentMethod
    client_id: Optional[int] = None
    points_redeemed: int = Field(0, ge=0)
    reward_id: Optional[int] = None


class PaymentRequest(BaseModel):
    amount: Decimal = Field(..., ge=0)
    payment_method: PaymentMethod


class LinkClientRequest(BaseModel):
    scanned_value: str = Field(..., min_length=1, max_length=255)


class TransactionResponse(BaseModel):
    id: uuid.UUID
    booking_id: Optional[uuid.UUID]
    staff_id: int
    service_id: Optional[int]
    client_id: Optional[int]
    amount: Decimal
    payment_method: str
    points_earned: int
    points_redeemed: int
    status: str


class ReasonRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class RescheduleRequest(BaseModel):
    start_time: str = Field(..., description="Local wall time, e.g. 2026-05-15T16:00")
    staff_id: Optional[int] = None


class NoShowResponse(BaseModel):
    id: int
    booking_id: uuid.UUID
    customer_id: Optional[int]
    guest_email: Optional[str]
    reason: Optional[str]
    forgiven: bool


class ClientWarningResponse(BaseModel):
    email: str
    client_name: str
    total_no_shows: int
    last_no_show_at: datetime


class NoShowHistoryResponse(BaseModel):
    id: int
    booking_id: uuid.UUID
    start_time: datetime
    start_time_local: str
    service_name: Optional[str]
    reason: Optional[str]
    forgiven: bool
    forgiven_at: Optional[datetime]


class DayHoursModel(BaseModel):
    day: str
    is_active: bool = True
    start_time: Optional[time] = None
    end_time: Optional[time] = None


class WeeklyScheduleRequest(BaseModel):
    days: list[DayHoursModel]


class WeeklyScheduleResponse(BaseModel):
    staff_id: int
    days: list[DayHoursModel]


class TimeBlockRequest(BaseModel):
    day: date
    start_time: time
    end_time: time
    reason: Optional[str] = Field(None, max_length=255)


class TimeBlockResponse(BaseModel):
    id: int
    staff_id: int
    start_time: datetime
    end_time: datetime
    reason: Optional[str]


class ResetWarningsRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)


class RewardResponse(BaseModel):
    id: int
    name: str
    description: Optional[str]
    points_required: int
    can_redeem: bool
    points_needed: int


class LoyaltyStatusResponse(BaseModel):
    points: int
    discount_value: Decimal
    rewards: list[RewardResponse]
    next_reward: Optional[RewardResponse]
    progress_to_next_reward: int


def _transaction_to_response(tx: Transaction) -> TransactionResponse:
    return TransactionResponse(
        id=tx.id,
        booking_id=tx.booking_id,
        staff_id=tx.staff_id,
        service_id=tx.service_id,
        client_id=tx.client_id,
        amount=tx.amount,
        payment_method=PaymentMethod(tx.payment_method).value,
        points_earned=tx.points_earned,
        points_redeemed=tx.points_redeemed,
        status=tx.status,
    )


def _no_show_to_response(record) -> NoShowResponse:
    return NoShowResponse(
        id=record.id,
        booking_id=record.booking_id,
        customer_id=record.customer_id,
        guest_email=record.guest_email,
        reason=record.reason,
        forgiven=record.forgiven,
    )


def _block_to_response(block: TimeBlock) -> TimeBlockResponse:
    return TimeBlockResponse(
        id=block.id,
        staff_id=block.staff_id,
        start_time=block.start_time,
        end_time=block.end_time,
        reason=block.reason,
    )


# ────────────────────────────────────────────────────────────────
# Admin: Bookings
# ────────────────────────────────────────────────────────────────

@router.get("/admin/bookings", response_model=list[AdminBookingResponse])
async def admin_list_bookings(
    date_: date = Query(..., alias="date", description="Local date, YYYY-MM-DD"),
    staff_id: Optional[int] = None,
    ctx: TenantContext = Depends(get_tenant_context),
    caller: RequestContext = Depends(require_staff),
    session: AsyncSession = Depends(get_session),
):
    """All bookings starting on one local day, any status, ordered by start."""
    tz = get_tz(ctx.timezone)
    bounds = local_day_bounds(date_, tz)
    rows = await list_bookings_in_range(
        session, ctx.tenant_id, bounds.start_utc, bounds.end_utc, staff_id=staff_id
    )

    profile_ids = {b.staff_id for b in rows} | {b.customer_id for b in rows if b.customer_id}
    profiles: dict[int, Profile] = {}
    if profile_ids:
        result = await session.execute(
            select(Profile).where(Profile.tenant_id == ctx.tenant_id, Profile.id.in_(profile_ids))
        )
        profiles = {p.id: p for p in result.scalars().all()}

    response = []
    for booking in rows:
        staff = profiles.get(booking.staff_id)
        customer = profiles.get(booking.customer_id) if booking.customer_id else None
        response.append(
            AdminBookingResponse(
                id=booking.id,
                status=BookingStatus(booking.status).value,
                origin=getattr(booking.origin, "value", booking.origin),
                staff_id=booking.staff_id,
                staff_name=staff.full_name if staff else None,
                service_id=booking.service_id,
                service_name=booking.service_name_at_booking,
                client_name=booking_service.client_display_name(booking, customer),
                client_email=booking.guest_email or (customer.email if customer else None),
                client_phone=booking.guest_phone or (customer.phone if customer else None),
                price=booking.price_at_booking,
                notes=booking.notes,
                start_time=booking.start_time,
                end_time=booking.end_time,
                start_time_local=format_time(booking.start_time, tz),
                end_time_local=format_time(booking.end_time, tz),
            )
        )
    logger.info(f"Admin agenda for tenant {ctx.tenant_id} on {date_}: {len(response)} bookings")
    return response


@router.post(
    "/admin/bookings/walk-in",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
)
async def admin_create_walk_in(
    request: WalkInRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    caller: RequestContext = Depends(require_staff),
    session: AsyncSession = Depends(get_session),
):
    start = parse_start_time(request.start_time, ctx) if request.start_time else None
    booking = await booking_service.create_walk_in(
        session,
        ctx,
        service_id=request.service_id,
        staff_id=request.staff_id,
        start_time=start,
        client_name=request.client_name,
        actor_id=caller.profile_id,
    )
    return booking_to_response(booking, ctx, message="Walk-in registered.")


@router.post("/admin/bookings/{booking_id}/seat", response_model=BookingResponse)
async def admin_seat_booking(
    booking_id: uuid.UUID,
    ctx: TenantContext = Depends(get_tenant_context),
    caller: RequestContext = Depends(require_staff),
    session: AsyncSession = Depends(get_session),
):
    booking = await booking_service.seat_booking(session, ctx, booking_id, actor_id=caller.profile_id)
    return booking_to_response(booking, ctx, message="Client seated.")


@router.post("/admin/bookings/{booking_id}/payment", response_model=TransactionResponse)
async def admin_process_payment(
    booking_id: uuid.UUID,
    request: PaymentRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    caller: RequestContext = Depends(require_staff),
    session: AsyncSession = Depends(get_session),
):
    tx = await pos.process_payment(
        session,
        ctx,
        booking_id,
        amount=request.amount,
        payment_method=request.payment_method,
        actor_id=caller.profile_id,
    )
    return _transaction_to_response(tx)


@router.post("/admin/bookings/{booking_id}/cancel", response_model=BookingResponse)
async def admin_cancel_booking(
    booking_id: uuid.UUID,
    request: ReasonRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    caller: RequestContext = Depends(require_staff),
    session: AsyncSession = Depends(get_session),
):
    booking = await booking_service.cancel_booking_admin(
        session, ctx, booking_id, reason=request.reason, actor_id=caller.profile_id
    )
    return booking_to_response(booking, ctx, message="Booking cancelled.")


@router.post("/admin/bookings/{booking_id}/no-show", response_model=NoShowResponse)
async def admin_mark_no_show(
    booking_id: uuid.UUID,
    request: ReasonRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    caller: RequestContext = Depends(require_staff),
    session: AsyncSession = Depends(get_session),
):
    record = await booking_service.mark_no_show(
        session, ctx, booking_id, reason=request.reason, actor_id=caller.profile_id
    )
    return _no_show_to_response(record)


@router.post("/admin/bookings/{booking_id}/reschedule", response_model=BookingResponse)
async def admin_reschedule_booking(
    booking_id: uuid.UUID,
    request: RescheduleRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    caller: RequestContext = Depends(require_staff),
    session: AsyncSession = Depends(get_session),
):
    booking = await booking_service.reschedule_booking(
        session,
        ctx,
        booking_id,
        start_time=parse_start_time(request.start_time, ctx),
        staff_id=request.staff_id,
        actor_id=caller.profile_id,
    )
    return booking_to_response(booking, ctx, message="Booking rescheduled.")


# ────────────────────────────────────────────────────────────────
# Admin: POS tickets
# ────────────────────────────────────────────────────────────────

@router.post("/admin/tickets", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def admin_open_ticket(
    request: OpenTicketRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    caller: RequestContext = Depends(require_staff),
    session: AsyncSession = Depends(get_session),
):
    booking = await booking_service.open_ticket(
        session,
        ctx,
        staff_id=request.staff_id,
        client_name=request.client_name,
        duration_minutes=request.duration_minutes,
        actor_id=caller.profile_id,
    )
    return booking_to_response(booking, ctx, message="Ticket opened.")


@router.post("/admin/tickets/{booking_id}/finalize", response_model=TransactionResponse)
async def admin_finalize_ticket(
    booking_id: uuid.UUID,
    request: FinalizeTicketRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    caller: RequestContext = Depends(require_staff),
    session: AsyncSession = Depends(get_session),
):
    tx = await pos.finalize_ticket(
        session,
        ctx,
        booking_id,
        service_id=request.service_id,
        amount=request.amount,
        payment_method=request.payment_method,
        client_id=request.client_id,
        points_redeemed=request.points_redeemed,
        reward_id=request.reward_id,
        actor_id=caller.profile_id,
    )
    return _transaction_to_response(tx)


@router.post("/admin/tickets/{booking_id}/void", response_model=BookingResponse)
async def admin_void_ticket(
    booking_id: uuid.UUID,
    ctx: TenantContext = Depends(get_tenant_context),
    caller: RequestContext = Depends(require_staff),
    session: AsyncSession = Depends(get_session),
):
    booking = await pos.void_ticket(session, ctx, booking_id, actor_id=caller.profile_id)
    return booking_to_response(booking, ctx, message="Ticket voided.")


@router.post("/admin/transactions/{transaction_id}/link-client", response_model=TransactionResponse)
async def admin_link_client(
    transaction_id: uuid.UUID,
    request: LinkClientRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    caller: RequestContext = Depends(require_staff),
    session: AsyncSession = Depends(get_session),
):
    """Attach a walk-in sale to a client by scanning their loyalty QR code."""
    tx = await pos.link_transaction_to_client(
        session, ctx, transaction_id, request.scanned_value, actor_id=caller.profile_id
    )
    return _transaction_to_response(tx)


# ────────────────────────────────────────────────────────────────
# Admin: Schedules & time blocks
# ────────────────────────────────────────────────────────────────

@router.get("/admin/staff/{staff_id}/schedule", response_model=WeeklyScheduleResponse)
async def admin_get_schedule(
    staff_id: int,
    ctx: TenantContext = Depends(get_tenant_context),
    caller: RequestContext = Depends(require_staff),
    session: AsyncSession = Depends(get_session),
):
    rows = await schedule.get_weekly_schedule(session, ctx, staff_id)
    return WeeklyScheduleResponse(
        staff_id=staff_id,
        days=[
            DayHoursModel(
                day=getattr(r.day, "value", r.day),
                is_active=r.is_active,
                start_time=r.start_time,
                end_time=r.end_time,
            )
            for r in rows
        ],
    )


@router.put("/admin/staff/{staff_id}/schedule", response_model=WeeklyScheduleResponse)
async def admin_save_schedule(
    staff_id: int,
    request: WeeklyScheduleRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    caller: RequestContext = Depends(require_staff),
    session: AsyncSession = Depends(get_session),
):
    _assert_can_manage_staff(caller, staff_id)
    rows = await schedule.save_weekly_schedule(
        session,
        ctx,
        staff_id,
        [schedule.DayHours(**d.model_dump()) for d in request.days],
        actor_id=caller.profile_id,
    )
    return WeeklyScheduleResponse(
        staff_id=staff_id,
        days=[
            DayHoursModel(
                day=getattr(r.day, "value", r.day),
                is_active=r.is_active,
                start_time=r.start_time,
                end_time=r.end_time,
            )
            for r in rows
        ],
    )


@router.get("/admin/blocks", response_model=list[TimeBlockResponse])
async def admin_list_blocks(
    staff_id: Optional[int] = None,
    ctx: TenantContext = Depends(get_tenant_context),
    caller: RequestContext = Depends(require_staff),
    session: AsyncSession = Depends(get_session),
):
    blocks = await schedule.list_upcoming_blocks(session, ctx, staff_id)
    return [_block_to_response(b) for b in blocks]


@router.post(
    "/admin/staff/{staff_id}/blocks",
    response_model=TimeBlockResponse,
    status_code=status.HTTP_201_CREATED,
)
async def admin_add_block(
    staff_id: int,
    request: TimeBlockRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    caller: RequestContext = Depends(require_staff),
    session: AsyncSession = Depends(get_session),
):
    _assert_can_manage_staff(caller, staff_id)
    block = await schedule.add_time_block(
        session,
        ctx,
        staff_id,
        day=request.day,
        start_time=request.start_time,
        end_time=request.end_time,
        reason=request.reason,
        actor_id=caller.profile_id,
    )
    return _block_to_response(block)


@router.delete("/admin/blocks/{block_id}", status_code=status.HTTP_204_NO_CONTENT)
async def admin_delete_block(
    block_id: int,
    ctx: TenantContext = Depends(get_tenant_context),
    caller: RequestContext = Depends(require_staff),
    session: AsyncSession = Depends(get_session),
):
    block = await session.get(TimeBlock, block_id)
    if block is not None and block.tenant_id == ctx.tenant_id:
        _assert_can_manage_staff(caller, block.staff_id)
    await schedule.delete_time_block(session, ctx, block_id, actor_id=caller.profile_id)


# ────────────────────────────────────────────────────────────────
# Admin: No-show warnings (listing for staff, changes for owner / admin)
# ────────────────────────────────────────────────────────────────

@router.get("/admin/no-shows", response_model=list[ClientWarningResponse])
async def admin_list_warnings(
    ctx: TenantContext = Depends(get_tenant_context),
    caller: RequestContext = Depends(require_staff),
    session: AsyncSession = Depends(get_session),
):
    """Clients with outstanding no-shows, most warnings first."""
    warnings = await booking_service.list_clients_with_warnings(session, ctx)
    return [
        ClientWarningResponse(
            email=w.email,
            client_name=w.client_name,
            total_no_shows=w.total_no_shows,
            last_no_show_at=w.last_no_show_at,
        )
        for w in warnings
    ]


@router.get("/admin/no-shows/history", response_model=list[NoShowHistoryResponse])
async def admin_no_show_history(
    email: str = Query(..., min_length=3, max_length=255),
    ctx: TenantContext = Depends(get_tenant_context),
    caller: RequestContext = Depends(require_staff),
    session: AsyncSession = Depends(get_session),
):
    tz = get_tz(ctx.timezone)
    entries = await booking_service.get_no_show_history(session, ctx, email)
    return [
        NoShowHistoryResponse(
            id=e.id,
            booking_id=e.booking_id,
            start_time=e.start_time,
            start_time_local=format_time(e.start_time, tz),
            service_name=e.service_name,
            reason=e.reason,
            forgiven=e.forgiven,
            forgiven_at=e.forgiven_at,
        )
        for e in entries
    ]


@router.post("/admin/no-shows/{no_show_id}/forgive", response_model=NoShowResponse)
async def admin_forgive_no_show(
    no_show_id: int,
    ctx: TenantContext = Depends(get_tenant_context),
    caller: RequestContext = Depends(require_manager),
    session: AsyncSession = Depends(get_session),
):
    record = await booking_service.forgive_no_show(session, ctx, no_show_id, actor_id=caller.profile_id)
    return _no_show_to_response(record)


@router.post("/admin/clients/reset-warnings")
async def admin_reset_warnings(
    request: ResetWarningsRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    caller: RequestContext = Depends(require_manager),
    session: AsyncSession = Depends(get_session),
):
    forgiven = await booking_service.reset_client_warnings(
        session, ctx, request.email, actor_id=caller.profile_id
    )
    return {"email": request.email.strip().lower(), "forgiven": forgiven}


# ────────────────────────────────────────────────────────────────
# Admin: Live booking feed
# ────────────────────────────────────────────────────────────────

@router.websocket("/admin/ws/bookings")
async def admin_booking_feed(
    websocket: WebSocket,
    ctx: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    """
    Stream the tenant's booking events to a dashboard.

    Authenticate with ?token=<jwt> (or the Authorization header). A keepalive
    {"event": "ping"} is sent when the channel is idle.
    """
    try:
        caller = await resolve_request_context(websocket, session, tenant_id=ctx.tenant_id)
        require_roles(caller, STAFF_ROLES)
    except (AuthenticationError, AuthorizationError) as e:
        logger.warning(f"Rejected booking feed for tenant {ctx.tenant_id}: {e.message}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    finally:
        # The feed itself never touches the database
        await session.close()

    sub = broadcaster.subscribe(ctx.tenant_id)
    try:
        await websocket.accept()
        logger.info(f"Booking feed opened for tenant {ctx.tenant_id} by profile {caller.profile_id}")
        while True:
            try:
                message = await sub.get(timeout=WS_KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                message = {"event": "ping"}
            await websocket.send_json(message)
    except WebSocketDisconnect:
        logger.info(f"Booking feed closed for tenant {ctx.tenant_id}")
    finally:
        broadcaster.unsubscribe(sub)


# ────────────────────────────────────────────────────────────────
# Client area
# ────────────────────────────────────────────────────────────────

@router.get("/me/bookings", response_model=list[BookingResponse])
async def my_bookings(
    ctx: TenantContext = Depends(get_tenant_context),
    caller: RequestContext = Depends(require_member),
    session: AsyncSession = Depends(get_session),
):
    customer = await _load_customer(session, caller)
    rows = await booking_service.list_client_bookings(session, ctx, customer)
    return [booking_to_response(b, ctx) for b in rows]


@router.post("/me/bookings/{booking_id}/cancel", response_model=BookingResponse)
async def my_cancel_booking(
    booking_id: uuid.UUID,
    ctx: TenantContext = Depends(get_tenant_context),
    caller: RequestContext = Depends(require_member),
    session: AsyncSession = Depends(get_session),
):
    customer = await _load_customer(session, caller)
    booking = await booking_service.cancel_my_booking(session, ctx, booking_id, customer)
    return booking_to_response(booking, ctx, message="Your booking has been cancelled.")


@router.get("/me/loyalty", response_model=LoyaltyStatusResponse)
async def my_loyalty(
    ctx: TenantContext = Depends(get_tenant_context),
    caller: RequestContext = Depends(require_member),
    session: AsyncSession = Depends(get_session),
):
    customer = await _load_customer(session, caller)
    loyalty = await get_loyalty_status(session, ctx.tenant_id, customer)

    def reward(option) -> RewardResponse:
        return RewardResponse(
            id=option.id,
            name=option.name,
            description=option.description,
            points_required=option.points_required,
            can_redeem=option.can_redeem,
            points_needed=option.points_needed,
        )

    return LoyaltyStatusResponse(
        points=loyalty.points,
        discount_value=loyalty.discount_value,
        rewards=[reward(r) for r in loyalty.rewards],
        next_reward=reward(loyalty.next_reward) if loyalty.next_reward else None,
        progress_to_next_reward=loyalty.progress_to_next_reward,
    )
