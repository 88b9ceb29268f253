"""
Tests for the booking service layer (create, walk-in, tickets, transitions).

Run with: pytest tests/test_bookings_service.py -v
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException
from sqlalchemy import select

from app import bookings
from app.booking_lifecycle import (
    BookingStateError,
    BookingValidationError,
    GuestCheckoutDisabledError,
    InvalidTransitionError,
    SlotTakenError,
)
from app.broadcast import EVENT_BOOKING_CANCELLED, EVENT_NEW_BOOKING, broadcaster
from app.core.config import get_settings
from app.models import AuditLog, Booking, BookingOrigin, BookingStatus, NoShow, Service
from app.tenancy import TenantContext, TenantResolutionSource

from conftest import TENANT_TZ, local_dt


@pytest.fixture
def events(ctx):
    sub = broadcaster.subscribe(ctx.tenant_id)
    yield sub
    broadcaster.unsubscribe(sub)


async def book_guest(session, ctx, barber, service, start, **overrides):
    values = dict(
        service_id=service.id,
        staff_id=barber.id,
        start_time=start,
        guest_name="Pedro",
        guest_email="Pedro@Example.com",
    )
    values.update(overrides)
    return await bookings.create_booking(session, ctx, **values)


# ============================================================================
# CREATE
# ============================================================================

class TestCreateBooking:
    async def test_guest_booking_is_confirmed(self, async_session, ctx, barber, haircut, monday, notification_mocks):
        booking = await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 10))

        assert booking.status == BookingStatus.CONFIRMED
        assert booking.origin == BookingOrigin.WEB
        assert booking.end_time - booking.start_time == timedelta(minutes=30)
        assert booking.start_time == local_dt(monday, 10).astimezone(timezone.utc)
        assert booking.guest_email == "pedro@example.com"
        assert booking.price_at_booking == haircut.price
        assert booking.service_name_at_booking == "Haircut"
        notification_mocks["confirmation"].assert_awaited_once()
        notification_mocks["staff_new_booking"].assert_awaited_once()

    async def test_writes_audit_entry(self, async_session, ctx, barber, haircut, monday):
        booking = await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 10))

        entries = (
            await async_session.execute(select(AuditLog).where(AuditLog.entity_id == str(booking.id)))
        ).scalars().all()
        assert [e.action for e in entries] == ["CREATE"]
        assert entries[0].extra_data["origin"] == "web"

    async def test_publishes_new_booking_event(self, async_session, ctx, barber, haircut, monday, events):
        booking = await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 10))

        message = events.queue.get_nowait()
        assert message["event"] == EVENT_NEW_BOOKING
        assert message["payload"]["id"] == str(booking.id)
        assert message["payload"]["status"] == "confirmed"

    async def test_member_booking_links_customer(self, async_session, ctx, barber, haircut, customer, monday):
        booking = await bookings.create_booking(
            async_session,
            ctx,
            service_id=haircut.id,
            staff_id=barber.id,
            start_time=local_dt(monday, 11),
            customer=customer,
        )
        assert booking.customer_id == customer.id
        assert bookings.client_display_name(booking, customer) == "Ana López"

    async def test_same_slot_twice_is_rejected(self, async_session, ctx, barber, haircut, monday):
        await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 10))
        with pytest.raises(SlotTakenError) as exc_info:
            await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 10), guest_name="Otro")
        assert exc_info.value.status_code == 409
        assert exc_info.value.code == "SLOT_TAKEN"

    async def test_overlapping_longer_service_is_rejected(self, async_session, ctx, barber, haircut, long_service, monday):
        await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 10, 30))
        with pytest.raises(SlotTakenError):
            await book_guest(async_session, ctx, barber, long_service, local_dt(monday, 10))

    async def test_cancelled_booking_frees_the_slot(self, async_session, ctx, barber, haircut, monday):
        first = await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 10))
        await bookings.cancel_booking_admin(async_session, ctx, first.id)

        second = await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 10))
        assert second.id != first.id

    async def test_outside_working_hours(self, async_session, ctx, barber, haircut, monday):
        with pytest.raises(BookingValidationError):
            await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 21))

    async def test_closed_day(self, async_session, ctx, barber, haircut, monday):
        sunday = monday - timedelta(days=1)
        with pytest.raises(BookingValidationError):
            await book_guest(async_session, ctx, barber, haircut, local_dt(sunday, 12))

    async def test_past_time(self, async_session, ctx, barber, haircut):
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        with pytest.raises(BookingValidationError, match="past"):
            await book_guest(async_session, ctx, barber, haircut, past)

    async def test_beyond_horizon(self, async_session, ctx, barber, haircut, monday):
        far = monday + timedelta(days=7 * 8)
        with pytest.raises(BookingValidationError) as exc_info:
            await book_guest(async_session, ctx, barber, haircut, local_dt(far, 10))
        assert exc_info.value.details == {"horizon_days": get_settings().booking_horizon_days}

    async def test_naive_start_rejected(self, async_session, ctx, barber, haircut, monday):
        with pytest.raises(BookingValidationError):
            await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 10).replace(tzinfo=None))

    async def test_guest_requires_contact(self, async_session, ctx, barber, haircut, monday):
        with pytest.raises(BookingValidationError):
            await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 10), guest_email=None)

    async def test_guest_checkout_disabled(self, async_session, tenant, barber, haircut, monday):
        tenant.guest_checkout_enabled = False
        await async_session.commit()
        ctx = TenantContext.from_tenant(tenant, TenantResolutionSource.URL_SLUG)

        with pytest.raises(GuestCheckoutDisabledError) as exc_info:
            await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 10))
        assert exc_info.value.status_code == 403

    async def test_service_from_other_tenant_is_404(self, async_session, ctx, barber, other_tenant, monday):
        foreign = Service(tenant_id=other_tenant.id, name="Foreign", duration_min=30, price=100)
        async_session.add(foreign)
        await async_session.flush()

        with pytest.raises(HTTPException) as exc_info:
            await book_guest(async_session, ctx, barber, foreign, local_dt(monday, 10))
        assert exc_info.value.status_code == 404

    async def test_notification_failure_keeps_booking(self, async_session, ctx, barber, haircut, monday, notification_mocks):
        notification_mocks["confirmation"].side_effect = RuntimeError("mail down")

        booking = await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 10))

        stored = await async_session.get(Booking, booking.id)
        assert stored is not None
        assert stored.status == BookingStatus.CONFIRMED


# ============================================================================
# WALK-INS & TICKETS
# ============================================================================

class TestWalkInAndTickets:
    async def test_walk_in_skips_schedule_check(self, async_session, ctx, barber, haircut, monday):
        booking = await bookings.create_walk_in(
            async_session,
            ctx,
            service_id=haircut.id,
            staff_id=barber.id,
            start_time=local_dt(monday, 21),
        )
        assert booking.origin == BookingOrigin.WALK_IN
        assert booking.guest_name == bookings.DEFAULT_WALK_IN_NAME
        assert booking.notes.startswith("WALK-IN")

    async def test_walk_in_same_start_hits_unique_index(self, async_session, ctx, barber, haircut, monday):
        await bookings.create_walk_in(
            async_session, ctx, service_id=haircut.id, staff_id=barber.id, start_time=local_dt(monday, 21)
        )
        with pytest.raises(SlotTakenError):
            await bookings.create_walk_in(
                async_session, ctx, service_id=haircut.id, staff_id=barber.id, start_time=local_dt(monday, 21)
            )

    async def test_walk_in_overlap_removed_by_recheck(self, async_session, ctx, barber, long_service, haircut, monday):
        await bookings.create_walk_in(
            async_session, ctx, service_id=long_service.id, staff_id=barber.id, start_time=local_dt(monday, 21)
        )
        with pytest.raises(SlotTakenError):
            await bookings.create_walk_in(
                async_session,
                ctx,
                service_id=haircut.id,
                staff_id=barber.id,
                start_time=local_dt(monday, 21, 15),
            )

        rows = (await async_session.execute(select(Booking).where(Booking.staff_id == barber.id))).scalars().all()
        assert len(rows) == 1

    async def test_open_ticket_is_seated_without_service(self, async_session, ctx, barber, monday):
        ticket = await bookings.open_ticket(
            async_session,
            ctx,
            staff_id=barber.id,
            client_name="  ",
            duration_minutes=45,
            now=local_dt(monday, 12).astimezone(timezone.utc),
        )
        assert ticket.status == BookingStatus.SEATED
        assert ticket.origin == BookingOrigin.POS
        assert ticket.service_id is None
        assert ticket.end_time - ticket.start_time == timedelta(minutes=45)
        assert ticket.guest_name == bookings.DEFAULT_WALK_IN_NAME

    async def test_open_ticket_rejects_zero_duration(self, async_session, ctx, barber):
        with pytest.raises(BookingValidationError):
            await bookings.open_ticket(async_session, ctx, staff_id=barber.id, client_name="Leo", duration_minutes=0)


# ============================================================================
# TRANSITIONS
# ============================================================================

class TestTransitions:
    async def test_seat_confirmed_booking(self, async_session, ctx, barber, haircut, monday):
        booking = await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 10))
        seated = await bookings.seat_booking(async_session, ctx, booking.id)
        assert seated.status == BookingStatus.SEATED

    async def test_cancel_admin_records_reason(self, async_session, ctx, barber, haircut, monday, events):
        booking = await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 10))
        events.queue.get_nowait()

        cancelled = await bookings.cancel_booking_admin(async_session, ctx, booking.id, reason="Sick")
        assert cancelled.status == BookingStatus.CANCELLED
        assert cancelled.notes == "Cancelled by admin: Sick"
        assert events.queue.get_nowait()["event"] == EVENT_BOOKING_CANCELLED

    async def test_cancel_twice_is_conflict(self, async_session, ctx, barber, haircut, monday):
        booking = await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 10))
        await bookings.cancel_booking_admin(async_session, ctx, booking.id)
        with pytest.raises(InvalidTransitionError):
            await bookings.cancel_booking_admin(async_session, ctx, booking.id)

    async def test_unknown_booking_is_404(self, async_session, ctx):
        with pytest.raises(HTTPException) as exc_info:
            await bookings.seat_booking(async_session, ctx, uuid.uuid4())
        assert exc_info.value.status_code == 404


class TestReschedule:
    async def test_moves_to_free_slot(self, async_session, ctx, barber, haircut, monday):
        booking = await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 10))
        moved = await bookings.reschedule_booking(async_session, ctx, booking.id, start_time=local_dt(monday, 15))
        assert moved.start_time == local_dt(monday, 15).astimezone(timezone.utc)
        assert moved.end_time - moved.start_time == timedelta(minutes=30)

    async def test_can_move_within_its_own_interval(self, async_session, ctx, barber, long_service, monday):
        booking = await book_guest(async_session, ctx, barber, long_service, local_dt(monday, 10))
        moved = await bookings.reschedule_booking(
            async_session, ctx, booking.id, start_time=local_dt(monday, 10, 30)
        )
        assert moved.start_time == local_dt(monday, 10, 30).astimezone(timezone.utc)

    async def test_taken_slot(self, async_session, ctx, barber, haircut, monday):
        booking = await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 10))
        await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 11), guest_name="Otro")
        with pytest.raises(SlotTakenError):
            await bookings.reschedule_booking(async_session, ctx, booking.id, start_time=local_dt(monday, 11))

    async def test_outside_hours(self, async_session, ctx, barber, haircut, monday):
        booking = await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 10))
        with pytest.raises(BookingValidationError):
            await bookings.reschedule_booking(async_session, ctx, booking.id, start_time=local_dt(monday, 22))

    async def test_cancelled_booking_cannot_move(self, async_session, ctx, barber, haircut, monday):
        booking = await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 10))
        await bookings.cancel_booking_admin(async_session, ctx, booking.id)
        with pytest.raises(BookingStateError):
            await bookings.reschedule_booking(async_session, ctx, booking.id, start_time=local_dt(monday, 12))


class TestClientCancellation:
    async def test_cancel_own_booking(self, async_session, ctx, barber, haircut, customer, monday):
        booking = await bookings.create_booking(
            async_session, ctx, service_id=haircut.id, staff_id=barber.id,
            start_time=local_dt(monday, 10), customer=customer,
        )
        cancelled = await bookings.cancel_my_booking(async_session, ctx, booking.id, customer)
        assert cancelled.status == BookingStatus.CANCELLED

    async def test_cannot_cancel_someone_elses_booking(self, async_session, ctx, barber, haircut, customer, monday):
        booking = await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 10))
        with pytest.raises(HTTPException) as exc_info:
            await bookings.cancel_my_booking(async_session, ctx, booking.id, customer)
        assert exc_info.value.status_code == 404

    async def test_minimum_notice(self, async_session, ctx, barber, haircut, customer, monday, monkeypatch):
        booking = await bookings.create_booking(
            async_session, ctx, service_id=haircut.id, staff_id=barber.id,
            start_time=local_dt(monday, 10), customer=customer,
        )
        strict = get_settings().model_copy(update={"min_cancel_notice_hours": 24})
        monkeypatch.setattr(bookings, "get_settings", lambda: strict)

        with pytest.raises(BookingValidationError):
            await bookings.cancel_my_booking(
                async_session, ctx, booking.id, customer, now=booking.start_time - timedelta(hours=2)
            )

    async def test_list_client_bookings_newest_first(self, async_session, ctx, barber, haircut, customer, monday):
        for hour in (10, 12):
            await bookings.create_booking(
                async_session, ctx, service_id=haircut.id, staff_id=barber.id,
                start_time=local_dt(monday, hour), customer=customer,
            )
        rows = await bookings.list_client_bookings(async_session, ctx, customer)
        assert [r.start_time.astimezone(TENANT_TZ).hour for r in rows] == [12, 10]


# ============================================================================
# NO-SHOWS
# ============================================================================

class TestNoShows:
    async def _confirmed_for(self, session, ctx, barber, haircut, customer, start):
        return await bookings.create_booking(
            session, ctx, service_id=haircut.id, staff_id=barber.id, start_time=start, customer=customer,
        )

    async def test_mark_no_show_increments_counter(self, async_session, ctx, barber, haircut, customer, monday, owner):
        booking = await self._confirmed_for(async_session, ctx, barber, haircut, customer, local_dt(monday, 10))

        record = await bookings.mark_no_show(async_session, ctx, booking.id, actor_id=owner.id)

        assert record.customer_id == customer.id
        assert record.guest_email == "ana@example.com"
        assert record.forgiven is False
        assert customer.no_show_count == 1
        stored = await async_session.get(Booking, booking.id)
        assert stored.status == BookingStatus.NO_SHOW

    async def test_seated_booking_cannot_be_no_show(self, async_session, ctx, barber, haircut, customer, monday):
        booking = await self._confirmed_for(async_session, ctx, barber, haircut, customer, local_dt(monday, 10))
        await bookings.seat_booking(async_session, ctx, booking.id)
        with pytest.raises(InvalidTransitionError):
            await bookings.mark_no_show(async_session, ctx, booking.id)

    async def test_forgive_is_idempotent(self, async_session, ctx, barber, haircut, customer, monday, owner):
        booking = await self._confirmed_for(async_session, ctx, barber, haircut, customer, local_dt(monday, 10))
        record = await bookings.mark_no_show(async_session, ctx, booking.id)

        await bookings.forgive_no_show(async_session, ctx, record.id, actor_id=owner.id)
        again = await bookings.forgive_no_show(async_session, ctx, record.id, actor_id=owner.id)

        assert again.forgiven is True
        assert again.forgiven_by == owner.id
        assert customer.no_show_count == 0

    async def test_forgive_unknown_record_is_404(self, async_session, ctx):
        with pytest.raises(HTTPException) as exc_info:
            await bookings.forgive_no_show(async_session, ctx, 999)
        assert exc_info.value.status_code == 404

    async def test_reset_warnings_by_email(self, async_session, ctx, barber, haircut, customer, monday):
        for hour in (10, 11):
            booking = await self._confirmed_for(async_session, ctx, barber, haircut, customer, local_dt(monday, hour))
            await bookings.mark_no_show(async_session, ctx, booking.id)
        guest = await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 12), guest_email="ANA@example.com")
        await bookings.mark_no_show(async_session, ctx, guest.id)
        assert customer.no_show_count == 2

        forgiven = await bookings.reset_client_warnings(async_session, ctx, " Ana@Example.com ")

        assert forgiven == 3
        assert customer.no_show_count == 0
        remaining = (
            await async_session.execute(select(NoShow).where(NoShow.forgiven.is_(False)))
        ).scalars().all()
        assert remaining == []

    async def test_reset_warnings_requires_email(self, async_session, ctx):
        with pytest.raises(BookingValidationError):
            await bookings.reset_client_warnings(async_session, ctx, "  ")

    async def test_clients_with_warnings(self, async_session, ctx, barber, haircut, customer, monday):
        for hour in (10, 11):
            booking = await self._confirmed_for(async_session, ctx, barber, haircut, customer, local_dt(monday, hour))
            await bookings.mark_no_show(async_session, ctx, booking.id)
        guest = await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 12))
        guest_record = await bookings.mark_no_show(async_session, ctx, guest.id)
        forgiven = await book_guest(async_session, ctx, barber, haircut, local_dt(monday, 13))
        await bookings.forgive_no_show(
            async_session, ctx, (await bookings.mark_no_show(async_session, ctx, forgiven.id)).id
        )

        warnings = await bookings.list_clients_with_warnings(async_session, ctx)

        assert [(w.email, w.total_no_shows) for w in warnings] == [
            ("ana@example.com", 2),
            ("pedro@example.com", 1),
        ]
        assert warnings[0].client_name == "Ana López"
        assert warnings[1].client_name == "Pedro"
        assert warnings[1].last_no_show_at == guest_record.created_at

    async def test_warnings_are_tenant_scoped(self, async_session, ctx, other_tenant, barber, haircut, customer, monday):
        booking = await self._confirmed_for(async_session, ctx, barber, haircut, customer, local_dt(monday, 10))
        await bookings.mark_no_show(async_session, ctx, booking.id)

        other_ctx = TenantContext.from_tenant(other_tenant, TenantResolutionSource.URL_SLUG)
        assert await bookings.list_clients_with_warnings(async_session, other_ctx) == []
        assert await bookings.get_no_show_history(async_session, other_ctx, "ana@example.com") == []

    async def test_history_includes_forgiven(self, async_session, ctx, barber, haircut, customer, monday):
        first = await self._confirmed_for(async_session, ctx, barber, haircut, customer, local_dt(monday, 10))
        second = await self._confirmed_for(async_session, ctx, barber, haircut, customer, local_dt(monday, 15))
        old = await bookings.mark_no_show(async_session, ctx, first.id, reason="Late cancel")
        await bookings.mark_no_show(async_session, ctx, second.id)
        await bookings.forgive_no_show(async_session, ctx, old.id)

        history = await bookings.get_no_show_history(async_session, ctx, " ANA@example.com")

        assert [h.booking_id for h in history] == [second.id, first.id]
        assert [h.forgiven for h in history] == [False, True]
        assert history[1].reason == "Late cancel"
        assert history[1].forgiven_at is not None
        assert history[0].service_name == "Haircut"

    async def test_history_requires_email(self, async_session, ctx):
        with pytest.raises(BookingValidationError):
            await bookings.get_no_show_history(async_session, ctx, "")
