"""
Activity audit log.

Every mutating booking/POS/schedule operation records who did what to which
entity. Audit writes run inside a SAVEPOINT so a failing insert cannot poison
the caller's transaction; failures are logged and swallowed.

IMPORTANT: keep PII (phone numbers, e-mails) out of metadata.
"""

import logging
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .models import AuditLog

logger = logging.getLogger(__name__)


# Actions
AUDIT_CREATE = "CREATE"
AUDIT_UPDATE = "UPDATE"
AUDIT_DELETE = "DELETE"
AUDIT_CANCEL = "CANCEL"
AUDIT_RESTORE = "RESTORE"
AUDIT_ARCHIVE = "ARCHIVE"
AUDIT_LOGIN = "LOGIN"
AUDIT_LOGOUT = "LOGOUT"

# Entities
ENTITY_BOOKINGS = "bookings"
ENTITY_PROFILES = "profiles"
ENTITY_SERVICES = "services"
ENTITY_TRANSACTIONS = "transactions"
ENTITY_SETTINGS = "settings"


async def log_activity(
    session: AsyncSession,
    *,
    tenant_id: int,
    actor_id: Optional[int],
    action: str,
    entity: str,
    entity_id: Any,
    metadata: Optional[dict] = None,
) -> Optional[AuditLog]:
    """
    Record an audit entry. Does not commit; the caller owns the transaction.

    Returns the AuditLog row, or None when the write failed.

    Example:
        await log_activity(
            session,
            tenant_id=ctx.tenant_id,
            actor_id=caller.profile_id,
            action=AUDIT_CANCEL,
            entity=ENTITY_BOOKINGS,
            entity_id=booking.id,
            metadata={"reason": reason},
        )
    """
    entry = AuditLog(
        tenant_id=tenant_id,
        actor_id=actor_id,
        action=action,
        entity=entity,
        entity_id=str(entity_id),
        extra_data=metadata,  # Maps to 'metadata' column in DB
    )
    try:
        async with session.begin_nested():
            session.add(entry)
    except SQLAlchemyError as e:
        logger.error(f"Audit write failed ({action} {entity}:{entity_id}): {e}")
        return None

    logger.info(f"Audit: {action} {entity}:{entity_id} by {actor_id} (tenant={tenant_id})")
    return entry
