"""
Multi-tenancy context module.

This module provides the TenantContext abstraction for tenant isolation.
Every tenant-specific database operation runs with a TenantContext that was
resolved before the handler body executes:

    - URL slug:   /s/{slug}/...            (public booking, admin, client)
    - Subdomain:  {slug}.agendabarber.pro  (white-label hosts)
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fastapi import Depends, HTTPException, Path, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..core.db import get_session
from ..models import Tenant, TenantStatus


logger = logging.getLogger(__name__)

# Sub-domains that never correspond to a tenant
RESERVED_SUBDOMAINS = frozenset({"www", "api", "admin", "app"})


class TenantResolutionSource(str, Enum):
    """How the tenant context was determined."""

    URL_SLUG = "url_slug"           # From /s/[slug]/ in URL path
    SUBDOMAIN = "subdomain"         # From {slug}.{root_domain} host header
    AUTH_PROFILE = "auth_profile"   # From the authenticated user's profile


@dataclass(frozen=True)
class TenantContext:
    """
    Immutable context representing the current tenant for a request.

    Attributes:
        tenant_id: The database ID of the tenant (tenants.id)
        slug: URL-safe identifier (e.g., "barberia-centro")
        name: Human-readable business name
        timezone: IANA timezone string used for day boundaries and display
        guest_checkout_enabled: Whether unauthenticated customers may book
        source: How this context was determined (for audit logging)
    """

    tenant_id: int
    slug: Optional[str] = None
    name: Optional[str] = None
    timezone: str = "America/Mexico_City"
    guest_checkout_enabled: bool = True
    google_review_url: Optional[str] = None
    source: TenantResolutionSource = TenantResolutionSource.URL_SLUG

    def __post_init__(self):
        if self.tenant_id <= 0:
            raise ValueError(f"tenant_id must be positive, got {self.tenant_id}")

    @classmethod
    def from_tenant(cls, tenant: Tenant, source: TenantResolutionSource) -> "TenantContext":
        return cls(
            tenant_id=tenant.id,
            slug=tenant.slug,
            name=tenant.name,
            timezone=tenant.timezone,
            guest_checkout_enabled=tenant.guest_checkout_enabled,
            google_review_url=tenant.google_review_url,
            source=source,
        )


class TenantSuspendedError(Exception):
    """Raised when a suspended tenant is accessed."""

    def __init__(self, slug: str):
        self.slug = slug
        super().__init__(f"Tenant '{slug}' is suspended")


# ────────────────────────────────────────────────────────────────
# Resolution Functions
# ────────────────────────────────────────────────────────────────

def extract_slug_from_host(host: str, root_domain: str) -> Optional[str]:
    """
    Extract a tenant slug from a Host header.

    Returns None for localhost, preview deployments, the bare root domain and
    reserved sub-domains.
    """
    if not host:
        return None
    hostname = host.split(":", 1)[0].lower()
    if hostname in ("localhost", "127.0.0.1") or hostname.endswith(".localhost"):
        return None
    if hostname.endswith(".vercel.app"):
        return None
    if hostname in (root_domain, f"www.{root_domain}"):
        return None
    if not hostname.endswith(f".{root_domain}"):
        return None

    parts = hostname.split(".")
    if len(parts) < 3:
        return None
    subdomain = parts[0]
    if subdomain in RESERVED_SUBDOMAINS:
        return None
    return subdomain


async def resolve_tenant_from_slug(
    session: AsyncSession,
    slug: str,
    source: TenantResolutionSource = TenantResolutionSource.URL_SLUG,
) -> Optional[TenantContext]:
    """
    Resolve tenant context from a slug.

    Returns:
        TenantContext if found, None if slug not found

    Raises:
        TenantSuspendedError if the tenant exists but is suspended
    """
    result = await session.execute(select(Tenant).where(Tenant.slug == slug.lower()))
    tenant = result.scalar_one_or_none()

    if not tenant:
        return None
    if tenant.status == TenantStatus.SUSPENDED:
        raise TenantSuspendedError(tenant.slug)

    return TenantContext.from_tenant(tenant, source)


async def resolve_tenant_from_host(session: AsyncSession, host: str) -> Optional[TenantContext]:
    settings = get_settings()
    slug = extract_slug_from_host(host, settings.root_domain)
    if not slug:
        return None
    return await resolve_tenant_from_slug(session, slug, TenantResolutionSource.SUBDOMAIN)


# ────────────────────────────────────────────────────────────────
# FastAPI Dependencies
# ────────────────────────────────────────────────────────────────

async def get_tenant_context(
    slug: str = Path(..., description="Tenant URL slug (e.g., 'barberia-centro')"),
    session: AsyncSession = Depends(get_session),
) -> TenantContext:
    """
    Resolve tenant context strictly from the URL slug.

    Raises 404 if the slug is unknown, 423 if the tenant is suspended.
    """
    try:
        ctx = await resolve_tenant_from_slug(session, slug)
    except TenantSuspendedError:
        logger.warning(f"Request for suspended tenant '{slug}' rejected")
        raise HTTPException(
            status_code=status.HTTP_423_LOCKED,
            detail="This business is temporarily unavailable.",
        )
    if not ctx:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Business not found: {slug}. Check the URL and try again.",
        )
    logger.debug(f"Resolved tenant from slug '{slug}': tenant_id={ctx.tenant_id}")
    return ctx


async def get_tenant_context_from_host(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> TenantContext:
    """Resolve tenant context from the Host header (white-label sub-domains)."""
    host = request.headers.get("host", "")
    try:
        ctx = await resolve_tenant_from_host(session, host)
    except TenantSuspendedError:
        raise HTTPException(
            status_code=status.HTTP_423_LOCKED,
            detail="This business is temporarily unavailable.",
        )
    if not ctx:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Business not found for host.")
    return ctx
