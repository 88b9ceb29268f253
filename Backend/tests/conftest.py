"""
Pytest configuration and fixtures for async database testing.

Every test gets a fresh in-memory SQLite database (aiosqlite) with the full
schema, so services are free to commit. Environment variables are set before
the app is imported because settings are cached on first use.
"""
import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DISABLE_AUTH_CHECKS"] = "true"
os.environ["SEED_DEMO_DATA"] = "false"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["CRON_SECRET"] = ""
os.environ["RESEND_API_KEY"] = ""
os.environ["TWILIO_ACCOUNT_SID"] = ""
os.environ["TWILIO_AUTH_TOKEN"] = ""
os.environ["MIN_CANCEL_NOTICE_HOURS"] = "0"

from datetime import date, datetime, time, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.db import Base
from app.models import LoyaltyReward, Profile, ProfileRole, Service, Tenant
from app.rate_limiter import clear_rate_limits
from app.schedule import seed_default_schedule
from app.tenancy import TenantContext, TenantResolutionSource

TENANT_TZ = ZoneInfo("America/Mexico_City")


def next_weekday(weekday: int, min_days_ahead: int = 2) -> date:
    """Next local date falling on weekday (0=Monday) at least min_days_ahead out."""
    day = datetime.now(TENANT_TZ).date() + timedelta(days=min_days_ahead)
    while day.weekday() != weekday:
        day += timedelta(days=1)
    return day


def local_dt(day: date, hour: int, minute: int = 0) -> datetime:
    """Aware tenant-local datetime."""
    return datetime.combine(day, time(hour, minute)).replace(tzinfo=TENANT_TZ)


def staff_headers(profile: Profile) -> dict:
    return {"X-User-Id": profile.user_id}


@pytest.fixture(scope="function")
async def async_engine():
    """
    Fresh in-memory database per test.

    aiosqlite needs BEGIN emitted explicitly for SAVEPOINT to work.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
async def async_session(async_engine):
    session_maker = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as session:
        yield session


@pytest.fixture(scope="function")
async def client(async_session):
    """FastAPI AsyncClient sharing the test session."""
    from app.core.db import get_session
    from app.main import app

    async def override_get_session():
        yield async_session

    app.dependency_overrides[get_session] = override_get_session

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_rate_limits():
    clear_rate_limits()
    yield
    clear_rate_limits()


@pytest.fixture(autouse=True)
def notification_mocks(monkeypatch):
    """Replace outbound e-mail/SMS with AsyncMocks that report success."""
    mocks = {
        "confirmation": AsyncMock(return_value=True),
        "staff_new_booking": AsyncMock(return_value=True),
        "reminder": AsyncMock(return_value=True),
        "winback": AsyncMock(return_value=True),
        "rating_request": AsyncMock(return_value=True),
        "sms": AsyncMock(return_value=True),
    }
    monkeypatch.setattr("app.bookings.send_booking_confirmation", mocks["confirmation"])
    monkeypatch.setattr("app.bookings.send_staff_new_booking", mocks["staff_new_booking"])
    monkeypatch.setattr("app.jobs.send_booking_reminder", mocks["reminder"])
    monkeypatch.setattr("app.jobs.send_winback_email", mocks["winback"])
    monkeypatch.setattr("app.jobs.send_rating_request", mocks["rating_request"])
    monkeypatch.setattr("app.jobs.send_sms", mocks["sms"])
    return mocks


# ============================================================================
# DATA FIXTURES
# ============================================================================

@pytest.fixture
async def tenant(async_session: AsyncSession) -> Tenant:
    tenant = Tenant(
        slug="barberia-centro",
        name="Barbería Centro",
        timezone="America/Mexico_City",
        google_review_url="https://g.page/r/barberia-centro/review",
    )
    async_session.add(tenant)
    await async_session.flush()
    return tenant


@pytest.fixture
async def other_tenant(async_session: AsyncSession) -> Tenant:
    tenant = Tenant(slug="barberia-norte", name="Barbería Norte", timezone="America/Mexico_City")
    async_session.add(tenant)
    await async_session.flush()
    return tenant


@pytest.fixture
async def owner(async_session: AsyncSession, tenant: Tenant) -> Profile:
    profile = Profile(
        tenant_id=tenant.id,
        user_id="owner-user",
        role=ProfileRole.OWNER,
        full_name="Carlos",
        email="owner@example.com",
    )
    async_session.add(profile)
    await async_session.flush()
    return profile


@pytest.fixture
async def barber(async_session: AsyncSession, tenant: Tenant) -> Profile:
    profile = Profile(
        tenant_id=tenant.id,
        user_id="barber-user",
        role=ProfileRole.STAFF,
        full_name="Luis",
        email="luis@example.com",
    )
    async_session.add(profile)
    await async_session.flush()
    await seed_default_schedule(async_session, tenant.id, profile)
    return profile


@pytest.fixture
async def customer(async_session: AsyncSession, tenant: Tenant) -> Profile:
    profile = Profile(
        tenant_id=tenant.id,
        user_id="client-user",
        role=ProfileRole.CUSTOMER,
        full_name="Ana López",
        email="ana@example.com",
        phone="5512345678",
    )
    async_session.add(profile)
    await async_session.flush()
    return profile


@pytest.fixture
async def haircut(async_session: AsyncSession, tenant: Tenant) -> Service:
    service = Service(tenant_id=tenant.id, name="Haircut", duration_min=30, price=Decimal("250.00"))
    async_session.add(service)
    await async_session.flush()
    return service


@pytest.fixture
async def long_service(async_session: AsyncSession, tenant: Tenant) -> Service:
    service = Service(tenant_id=tenant.id, name="Haircut + Beard", duration_min=60, price=Decimal("350.00"))
    async_session.add(service)
    await async_session.flush()
    return service


@pytest.fixture
async def rewards(async_session: AsyncSession, tenant: Tenant) -> list[LoyaltyReward]:
    rows = [
        LoyaltyReward(tenant_id=tenant.id, name="Free beard trim", points_required=500),
        LoyaltyReward(tenant_id=tenant.id, name="Free haircut", points_required=1000),
    ]
    async_session.add_all(rows)
    await async_session.flush()
    return rows


@pytest.fixture
async def ctx(async_session: AsyncSession, tenant: Tenant) -> TenantContext:
    await async_session.commit()
    return TenantContext.from_tenant(tenant, TenantResolutionSource.URL_SLUG)


@pytest.fixture
def monday() -> date:
    return next_weekday(0)
