from decimal import Decimal

from sqlalchemy import select

from .core.config import get_settings
from .models import LoyaltyReward, Profile, ProfileRole, Service, Tenant
from .schedule import seed_default_schedule


settings = get_settings()

DEMO_SLUG = "barberia-demo"


async def seed_initial_data(session):
    """Create the demo tenant with staff, services, schedules and rewards. Idempotent."""
    result = await session.execute(select(Tenant).where(Tenant.slug == DEMO_SLUG))
    tenant = result.scalar_one_or_none()

    if not tenant:
        tenant = Tenant(slug=DEMO_SLUG, name="Barbería Demo", timezone=settings.default_timezone)
        session.add(tenant)
        await session.flush()

    # Seed staff if missing
    result = await session.execute(
        select(Profile).where(Profile.tenant_id == tenant.id, Profile.role != ProfileRole.CUSTOMER)
    )
    staff = result.scalars().all()
    if not staff:
        staff = [
            Profile(
                tenant_id=tenant.id,
                user_id="demo-owner",
                role=ProfileRole.OWNER,
                full_name="Carlos (owner)",
                email="owner@example.com",
            ),
            Profile(
                tenant_id=tenant.id,
                user_id="demo-barber",
                role=ProfileRole.STAFF,
                full_name="Luis",
                email="luis@example.com",
            ),
        ]
        session.add_all(staff)
        await session.flush()
        for member in staff:
            await seed_default_schedule(session, tenant.id, member)

    # Seed services if missing
    result = await session.execute(select(Service).where(Service.tenant_id == tenant.id))
    services = result.scalars().all()
    if not services:
        haircut = Service(tenant_id=tenant.id, name="Haircut", duration_min=30, price=Decimal("250.00"))
        session.add_all(
            [
                haircut,
                Service(tenant_id=tenant.id, name="Beard Trim", duration_min=30, price=Decimal("150.00")),
                Service(tenant_id=tenant.id, name="Haircut + Beard", duration_min=60, price=Decimal("350.00")),
            ]
        )
        await session.flush()

        session.add_all(
            [
                LoyaltyReward(
                    tenant_id=tenant.id,
                    name="Free beard trim",
                    points_required=500,
                ),
                LoyaltyReward(
                    tenant_id=tenant.id,
                    service_id=haircut.id,
                    name="Free haircut",
                    description="Any regular haircut on the house",
                    points_required=1000,
                ),
            ]
        )

    await session.commit()
