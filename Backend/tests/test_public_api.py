"""
HTTP tests for the public booking site (/s/{slug}/public/...).

Run with: pytest tests/test_public_api.py -v
"""

import uuid
from datetime import timedelta

from app import pos
from app.models import PaymentMethod, TenantStatus
from app.seed import DEMO_SLUG, seed_initial_data

from conftest import staff_headers

BASE = "/s/barberia-centro/public"


def wall(day, hour, minute=0) -> str:
    return f"{day.isoformat()}T{hour:02d}:{minute:02d}"


def guest_payload(service, staff, start, **overrides):
    payload = {
        "service_id": service.id,
        "staff_id": staff.id,
        "start_time": start,
        "guest_name": "Pedro Pérez",
        "guest_email": "pedro@example.com",
    }
    payload.update(overrides)
    return payload


# ============================================================================
# TENANT RESOLUTION
# ============================================================================

class TestTenantResolution:
    async def test_business_info(self, client, ctx):
        response = await client.get(f"{BASE}/business")
        assert response.status_code == 200
        data = response.json()
        assert data["slug"] == "barberia-centro"
        assert data["timezone"] == "America/Mexico_City"
        assert data["guest_checkout_enabled"] is True
        assert data["booking_horizon_days"] == 30

    async def test_unknown_slug_is_404_envelope(self, client, ctx):
        response = await client.get("/s/does-not-exist/public/business")
        assert response.status_code == 404
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "NOT_FOUND"

    async def test_suspended_tenant_is_locked(self, client, async_session, tenant):
        tenant.status = TenantStatus.SUSPENDED
        await async_session.commit()

        response = await client.get(f"{BASE}/services")
        assert response.status_code == 423
        assert response.json()["error"]["code"] == "TENANT_SUSPENDED"

    async def test_host_resolution(self, client, ctx):
        response = await client.get("/tenant", headers={"Host": "barberia-centro.agendabarber.pro"})
        assert response.status_code == 200
        assert response.json()["slug"] == "barberia-centro"
        assert response.json()["source"] == "subdomain"

    async def test_health(self, client):
        response = await client.get("/health")
        assert response.json() == {"ok": True}


# ============================================================================
# CATALOGUE & AVAILABILITY
# ============================================================================

class TestCatalogue:
    async def test_services_and_staff(self, client, ctx, barber, haircut, customer):
        services = (await client.get(f"{BASE}/services")).json()
        assert services == [{"id": haircut.id, "name": "Haircut", "duration_minutes": 30, "price": "250.00"}]

        staff = (await client.get(f"{BASE}/staff")).json()
        assert staff == [{"id": barber.id, "name": "Luis"}]

    async def test_seeded_demo_tenant(self, client, async_session):
        await seed_initial_data(async_session)
        await seed_initial_data(async_session)

        services = (await client.get(f"/s/{DEMO_SLUG}/public/services")).json()
        assert [s["name"] for s in services] == ["Haircut", "Beard Trim", "Haircut + Beard"]
        staff = (await client.get(f"/s/{DEMO_SLUG}/public/staff")).json()
        assert len(staff) == 2


class TestAvailability:
    async def test_full_day(self, client, ctx, barber, haircut, monday):
        response = await client.get(
            f"{BASE}/availability", params={"service_id": haircut.id, "date": monday.isoformat()}
        )
        assert response.status_code == 200
        data = response.json()
        assert data["duration_minutes"] == 30
        labels = [s["start_time_local"] for s in data["slots"]]
        assert labels[0] == "10:00"
        assert labels[-1] == "19:30"
        assert len(labels) == 20
        assert all(s["staff_name"] == "Luis" for s in data["slots"])

    async def test_booked_slot_disappears(self, client, ctx, barber, haircut, monday):
        created = await client.post(f"{BASE}/bookings", json=guest_payload(haircut, barber, wall(monday, 10)))
        assert created.status_code == 201

        data = (
            await client.get(
                f"{BASE}/availability",
                params={"service_id": haircut.id, "date": monday.isoformat(), "staff_id": barber.id},
            )
        ).json()
        assert "10:00" not in [s["start_time_local"] for s in data["slots"]]

    async def test_beyond_horizon(self, client, ctx, barber, haircut, monday):
        far = monday + timedelta(days=60)
        response = await client.get(
            f"{BASE}/availability", params={"service_id": haircut.id, "date": far.isoformat()}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_INPUT"
        assert response.json()["error"]["details"] == {"horizon_days": 30}

    async def test_missing_date_is_validation_error(self, client, ctx, haircut):
        response = await client.get(f"{BASE}/availability", params={"service_id": haircut.id})
        assert response.status_code == 422
        body = response.json()
        assert body["error"]["code"] == "VALIDATION_ERROR"
        assert body["error"]["details"]["errors"]

    async def test_unknown_service(self, client, ctx, barber, monday):
        response = await client.get(f"{BASE}/availability", params={"service_id": 999, "date": monday.isoformat()})
        assert response.status_code == 404


# ============================================================================
# BOOKING
# ============================================================================

class TestCreateBooking:
    async def test_guest_booking(self, client, ctx, barber, haircut, monday, notification_mocks):
        response = await client.post(f"{BASE}/bookings", json=guest_payload(haircut, barber, wall(monday, 10)))

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "confirmed"
        assert data["service_name"] == "Haircut"
        assert data["price"] == "250.00"
        assert data["start_time_local"] == "10:00 AM"
        assert data["message"].startswith("Your booking is confirmed!")
        notification_mocks["confirmation"].assert_awaited_once()

    async def test_double_booking_is_409(self, client, ctx, barber, haircut, monday):
        payload = guest_payload(haircut, barber, wall(monday, 10))
        assert (await client.post(f"{BASE}/bookings", json=payload)).status_code == 201

        second = await client.post(f"{BASE}/bookings", json={**payload, "guest_name": "Otro"})
        assert second.status_code == 409
        assert second.json()["error"]["code"] == "SLOT_TAKEN"

    async def test_outside_hours_is_400(self, client, ctx, barber, haircut, monday):
        response = await client.post(f"{BASE}/bookings", json=guest_payload(haircut, barber, wall(monday, 21)))
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_INPUT"

    async def test_bad_start_time_is_400(self, client, ctx, barber, haircut):
        response = await client.post(f"{BASE}/bookings", json=guest_payload(haircut, barber, "next monday"))
        assert response.status_code == 400

    async def test_bad_email_is_422(self, client, ctx, barber, haircut, monday):
        response = await client.post(
            f"{BASE}/bookings", json=guest_payload(haircut, barber, wall(monday, 10), guest_email="not-an-email")
        )
        assert response.status_code == 422

    async def test_guest_checkout_disabled(self, client, async_session, tenant, barber, haircut, monday):
        tenant.guest_checkout_enabled = False
        await async_session.commit()

        response = await client.post(f"{BASE}/bookings", json=guest_payload(haircut, barber, wall(monday, 10)))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "GUEST_CHECKOUT_DISABLED"

    async def test_signed_in_client_is_attached(self, client, ctx, barber, haircut, customer, monday):
        response = await client.post(
            f"{BASE}/bookings",
            json={"service_id": haircut.id, "staff_id": barber.id, "start_time": wall(monday, 11)},
            headers=staff_headers(customer),
        )
        assert response.status_code == 201

        mine = await client.get("/s/barberia-centro/me/bookings", headers=staff_headers(customer))
        assert [b["id"] for b in mine.json()] == [response.json()["id"]]

    async def test_rate_limited(self, client, ctx, barber, haircut):
        payload = guest_payload(haircut, barber, "garbage")
        for _ in range(10):
            assert (await client.post(f"{BASE}/bookings", json=payload)).status_code == 400

        blocked = await client.post(f"{BASE}/bookings", json=payload)
        assert blocked.status_code == 429
        assert blocked.json()["error"]["code"] == "RATE_LIMITED"
        assert "retry-after" in blocked.headers


# ============================================================================
# RATINGS
# ============================================================================

class TestRatingPage:
    async def _completed(self, client, async_session, ctx, barber, haircut, monday):
        created = await client.post(f"{BASE}/bookings", json=guest_payload(haircut, barber, wall(monday, 10)))
        booking_id = created.json()["id"]
        await pos.process_payment(
            async_session, ctx, uuid.UUID(booking_id), amount=250, payment_method=PaymentMethod.CASH
        )
        return booking_id

    async def test_rating_flow(self, client, async_session, ctx, barber, haircut, monday):
        booking_id = await self._completed(client, async_session, ctx, barber, haircut, monday)

        info = await client.get(f"{BASE}/rate/{booking_id}")
        assert info.status_code == 200
        assert info.json()["already_rated"] is False

        rated = await client.post(f"{BASE}/rate/{booking_id}", json={"rating": 5})
        assert rated.status_code == 200
        assert rated.json()["redirect_url"] == "https://g.page/r/barberia-centro/review"

        again = await client.post(f"{BASE}/rate/{booking_id}", json={"rating": 4})
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "STATE_CONFLICT"

    async def test_rating_out_of_range(self, client, async_session, ctx, barber, haircut, monday):
        booking_id = await self._completed(client, async_session, ctx, barber, haircut, monday)
        response = await client.post(f"{BASE}/rate/{booking_id}", json={"rating": 9})
        assert response.status_code == 422

    async def test_unpaid_booking_has_no_rating_page(self, client, ctx, barber, haircut, monday):
        created = await client.post(f"{BASE}/bookings", json=guest_payload(haircut, barber, wall(monday, 10)))
        response = await client.get(f"{BASE}/rate/{created.json()['id']}")
        assert response.status_code == 404
