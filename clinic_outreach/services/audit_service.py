"""Audit trail for waitlist and recall operations.

Every audit call names its actor explicitly.  Staff actions carry the
user id from the request; batch jobs pass ``SCHEDULER_ACTOR``.

Usage:

    from clinic_outreach.services.audit_service import log_audit

    await log_audit(
        db,
        tenant_id=tenant_id,
        actor=actor,
        action="waitlist_auto_fill_triggered",
        resource_type="appointment",
        resource_id=appointment_id,
        metadata={"matches_found": 4, "notifications_sent": 3},
    )
"""
import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from clinic_outreach.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """Who is performing an operation."""

    actor_id: Optional[UUID] = None
    actor_type: str = "user"  # user, system, patient

    @property
    def is_system(self) -> bool:
        return self.actor_type == "system"


SCHEDULER_ACTOR = Actor(actor_id=None, actor_type="system")


async def log_audit(
    db: AsyncSession,
    *,
    tenant_id: Optional[UUID],
    actor: Actor,
    action: str,
    resource_type: Optional[str] = None,
    resource_id: Optional[UUID] = None,
    metadata: Optional[dict] = None,
) -> None:
    """Add an audit row to the caller's transaction.

    The row is written inside a savepoint so a failing insert is rolled back
    on its own; the caller's pending work is untouched and still commits.
    """
    try:
        async with db.begin_nested():
            db.add(AuditLog(
                tenant_id=tenant_id,
                actor_id=actor.actor_id,
                actor_type=actor.actor_type,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                details=metadata,
            ))
    except Exception:
        # Audit logging must never break the main operation
        logger.exception("Failed to write audit log entry for action %s", action)
