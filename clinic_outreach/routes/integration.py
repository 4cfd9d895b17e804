"""
Hooks for the scheduling system and the SMS gateway.

The appointment store belongs to the scheduler; it calls these endpoints
when an appointment changes so the waitlist and recall state follow.
Inbound patient texts arrive at ``/sms-reply``.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_outreach.database import get_db
from clinic_outreach.middleware.tenant import get_actor, get_tenant_id
from clinic_outreach.services.audit_service import Actor
from clinic_outreach.services.recall_service import RecallService
from clinic_outreach.services.waitlist_service import auto_fill_cancelled_slot, process_sms_reply

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/integration", tags=["Scheduler Integration"])


class AppointmentCancelledEvent(BaseModel):
    appointment_id: UUID
    max_notifications: int | None = Field(None, ge=1, le=10)


class AppointmentCompletedEvent(BaseModel):
    appointment_id: UUID


class RecallScheduledEvent(BaseModel):
    recall_patient_id: UUID
    appointment_id: UUID


class SmsReplyEvent(BaseModel):
    from_number: str = Field(..., min_length=1, max_length=32)
    body: str = Field(..., max_length=1600)


@router.post("/appointment-cancelled")
async def appointment_cancelled(
    event: AppointmentCancelledEvent,
    tenant_id: UUID = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Offer the freed slot to the best waitlist matches."""
    logger.info("integration: appointment %s cancelled, starting auto-fill", event.appointment_id)
    return await auto_fill_cancelled_slot(
        db, tenant_id, event.appointment_id, max_notifications=event.max_notifications, actor=actor,
    )


@router.post("/appointment-completed")
async def appointment_completed(
    event: AppointmentCompletedEvent,
    tenant_id: UUID = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    completed = await RecallService.complete_for_appointment(db, tenant_id, event.appointment_id, actor=actor)
    return {"appointment_id": str(event.appointment_id), "recalls_completed": completed}


@router.post("/recall-scheduled")
async def recall_scheduled(
    event: RecallScheduledEvent,
    tenant_id: UUID = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Link an appointment booked by the scheduler to the recall that prompted it."""
    recall_patient = await RecallService.schedule_appointment(
        db, tenant_id, event.recall_patient_id, event.appointment_id, actor=actor,
    )
    return {"recall_patient_id": str(recall_patient.id), "status": recall_patient.status}


@router.post("/sms-reply")
async def sms_reply(
    event: SmsReplyEvent,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Inbound SMS forwarded by the messaging gateway; YES/NO answers resolve the latest pending offer."""
    return await process_sms_reply(db, tenant_id, event.from_number, event.body)
