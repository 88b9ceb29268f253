"""
Multi-tenancy package.

Every business (tenant) owns its staff, services, schedules and bookings.
Isolation is enforced in the application layer: each request resolves a
TenantContext first and every query filters on its tenant_id.

Modules:
    context: TenantContext resolution (URL slug, sub-domain)
    queries: Tenant-scoped query helpers
"""

from .context import (
    RESERVED_SUBDOMAINS,
    TenantContext,
    TenantResolutionSource,
    TenantSuspendedError,
    extract_slug_from_host,
    get_tenant_context,
    get_tenant_context_from_host,
    resolve_tenant_from_host,
    resolve_tenant_from_slug,
)
from .queries import (
    STAFF_ROLES,
    find_client,
    get_booking_by_id,
    get_service_by_id,
    get_staff_by_id,
    get_tenant,
    list_active_services,
    list_bookings_in_range,
    list_staff,
    require_owned,
    scoped_select,
    tenant_filter,
)

__all__ = [
    # Context
    "RESERVED_SUBDOMAINS",
    "TenantContext",
    "TenantResolutionSource",
    "TenantSuspendedError",
    "extract_slug_from_host",
    "get_tenant_context",
    "get_tenant_context_from_host",
    "resolve_tenant_from_host",
    "resolve_tenant_from_slug",
    # Query helpers
    "STAFF_ROLES",
    "scoped_select",
    "tenant_filter",
    "require_owned",
    "get_tenant",
    "get_service_by_id",
    "list_active_services",
    "get_staff_by_id",
    "list_staff",
    "find_client",
    "get_booking_by_id",
    "list_bookings_in_range",
]
