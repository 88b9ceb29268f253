"""
Authentication & authorization dependencies for tenant routes.

Role model inside a tenant:
    owner  > admin > staff > customer

USAGE:
    @router.post("/bookings/{booking_id}/seat")
    async def seat(
        ctx: TenantContext = Depends(get_tenant_context),
        caller: RequestContext = Depends(require_staff),
    ):
        ...

In development (DISABLE_AUTH_CHECKS=true) the X-User-Id header is trusted
in place of a bearer token. Never enable this in production.
"""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from .core.db import get_session
from .core.request_context import (
    RequestContext,
    require_roles,
    resolve_request_context,
)
from .models import ProfileRole
from .tenancy.context import TenantContext, get_tenant_context


STAFF_ROLES = (ProfileRole.OWNER, ProfileRole.ADMIN, ProfileRole.STAFF)
MANAGER_ROLES = (ProfileRole.OWNER, ProfileRole.ADMIN)


# ============================================================================
# IDENTITY
# ============================================================================

async def get_caller(
    request: Request,
    ctx: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
) -> RequestContext:
    """Authenticated caller with their profile in the path's tenant (if any)."""
    return await resolve_request_context(request, session, tenant_id=ctx.tenant_id)


async def get_optional_caller(
    request: Request,
    ctx: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
) -> RequestContext:
    """Like get_caller but returns an unauthenticated context instead of 401."""
    return await resolve_request_context(
        request, session, tenant_id=ctx.tenant_id, require_auth=False
    )


# ============================================================================
# ROLE GUARDS
# ============================================================================

async def require_member(caller: RequestContext = Depends(get_caller)) -> RequestContext:
    """Any active profile in the tenant, customers included."""
    require_roles(caller, list(ProfileRole))
    return caller


async def require_staff(caller: RequestContext = Depends(get_caller)) -> RequestContext:
    require_roles(caller, STAFF_ROLES)
    return caller


async def require_manager(caller: RequestContext = Depends(get_caller)) -> RequestContext:
    """Owner or admin only (warning resets, forgiving no-shows)."""
    require_roles(caller, MANAGER_ROLES)
    return caller
