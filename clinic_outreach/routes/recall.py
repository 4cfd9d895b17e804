"""
Recall campaign API routes.
"""

import logging
from datetime import date
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_outreach.database import get_db
from clinic_outreach.middleware.tenant import get_actor, get_tenant_id
from clinic_outreach.schemas.recall import (
    RECALL_STATUSES,
    AddRecallPatientRequest,
    CampaignResponse,
    CampaignTemplateResponse,
    ContactLogResponse,
    ContactResponseRequest,
    CreateCampaignRequest,
    DismissRecallRequest,
    ProcessOutreachRequest,
    RecallPatientResponse,
    RecallResponseRequest,
    RecordContactRequest,
    ScheduleRecallRequest,
    UpdateCampaignRequest,
)
from clinic_outreach.services.audit_service import Actor
from clinic_outreach.services.recall_service import RecallService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/recall", tags=["Recall Campaigns"])


# ---------------------------------------------------------------------------
# Campaigns
# ---------------------------------------------------------------------------

@router.get("/campaigns", response_model=list[CampaignResponse])
async def list_campaigns(
    active_only: bool = Query(False),
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    campaigns = await RecallService.list_campaigns(db, tenant_id, active_only)
    return [CampaignResponse.model_validate(c) for c in campaigns]


@router.post("/campaigns", response_model=CampaignResponse, status_code=status.HTTP_201_CREATED)
async def create_campaign(
    body: CreateCampaignRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Create a recall campaign. Targeting criteria are validated up front."""
    campaign = await RecallService.create_campaign(
        db,
        tenant_id,
        name=body.name,
        recall_type=body.recall_type,
        target_criteria=body.target_criteria,
        description=body.description,
        message_template=body.message_template,
        message_template_sms=body.message_template_sms,
        message_template_email=body.message_template_email,
        channel=body.channel,
        frequency_days=body.frequency_days,
        max_attempts=body.max_attempts,
        is_active=body.is_active,
        auto_identify=body.auto_identify,
        identify_schedule=body.identify_schedule,
        actor=actor,
    )
    return CampaignResponse.model_validate(campaign)


@router.get("/templates", response_model=list[CampaignTemplateResponse])
async def list_templates(db: AsyncSession = Depends(get_db)):
    """Built-in campaign templates to start a campaign from."""
    templates = await RecallService.list_templates(db)
    return [CampaignTemplateResponse.model_validate(t) for t in templates]


@router.get("/campaigns/{campaign_id}", response_model=CampaignResponse)
async def get_campaign(
    campaign_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    campaign = await RecallService.get_campaign(db, tenant_id, campaign_id)
    return CampaignResponse.model_validate(campaign)


@router.patch("/campaigns/{campaign_id}", response_model=CampaignResponse)
async def update_campaign(
    campaign_id: UUID,
    body: UpdateCampaignRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    updates = body.model_dump(exclude_unset=True)
    if body.target_criteria is not None:
        updates["target_criteria"] = body.target_criteria
    campaign = await RecallService.update_campaign(db, tenant_id, campaign_id, updates, actor=actor)
    return CampaignResponse.model_validate(campaign)


@router.post("/campaigns/{campaign_id}/identify")
async def identify_patients(
    campaign_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Run the campaign's criteria and enroll the matching patients."""
    return await RecallService.identify_patients(db, tenant_id, campaign_id, actor=actor)


@router.post("/campaigns/{campaign_id}/process")
async def process_outreach(
    campaign_id: UUID,
    body: Optional[ProcessOutreachRequest] = None,
    tenant_id: UUID = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Contact the enrollees whose next contact is due."""
    limit = body.limit if body else None
    return await RecallService.process_outreach(db, tenant_id, campaign_id, limit=limit, actor=actor)


# ---------------------------------------------------------------------------
# Recall patients
# ---------------------------------------------------------------------------

@router.get("/patients")
async def list_recall_patients(
    campaign_id: Optional[UUID] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    patient_id: Optional[UUID] = Query(None),
    due_before: Optional[date] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    if status_filter and status_filter not in RECALL_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid status. Must be one of: {', '.join(RECALL_STATUSES)}",
        )
    result = await RecallService.list_recall_patients(
        db,
        tenant_id,
        campaign_id=campaign_id,
        status=status_filter,
        patient_id=patient_id,
        due_before=due_before,
        limit=limit,
        offset=offset,
    )
    return {
        "patients": [RecallPatientResponse.model_validate(p) for p in result["patients"]],
        "total": result["total"],
    }


@router.post("/patients", response_model=RecallPatientResponse, status_code=status.HTTP_201_CREATED)
async def add_recall_patient(
    body: AddRecallPatientRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    recall_patient = await RecallService.add_patient_to_recall(
        db,
        tenant_id,
        body.campaign_id,
        body.patient_id,
        reason=body.reason,
        due_date=body.due_date,
        priority=body.priority,
        source=body.source,
        notes=body.notes,
        actor=actor,
    )
    return RecallPatientResponse.model_validate(recall_patient)


@router.post(
    "/patients/{recall_patient_id}/contact",
    response_model=ContactLogResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_contact(
    recall_patient_id: UUID,
    body: RecordContactRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Log a contact made by staff outside the outreach batch."""
    log = await RecallService.record_contact(
        db,
        tenant_id,
        recall_patient_id,
        channel=body.channel,
        message_sent=body.message_sent,
        delivery_status=body.delivery_status,
        response=body.response,
        response_notes=body.response_notes,
        actor=actor,
    )
    return ContactLogResponse.model_validate(log)


@router.post("/contacts/{contact_log_id}/response", response_model=ContactLogResponse)
async def record_contact_response(
    contact_log_id: UUID,
    body: ContactResponseRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    log = await RecallService.record_contact_response(
        db, tenant_id, contact_log_id, body.response, notes=body.notes, actor=actor,
    )
    return ContactLogResponse.model_validate(log)


@router.post("/patients/{recall_patient_id}/respond", response_model=RecallPatientResponse)
async def record_response(
    recall_patient_id: UUID,
    body: RecallResponseRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    recall_patient = await RecallService.record_response(
        db, tenant_id, recall_patient_id, body.response, notes=body.notes, actor=actor,
    )
    return RecallPatientResponse.model_validate(recall_patient)


@router.post("/patients/{recall_patient_id}/schedule", response_model=RecallPatientResponse)
async def schedule_from_recall(
    recall_patient_id: UUID,
    body: ScheduleRecallRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    recall_patient = await RecallService.schedule_appointment(
        db, tenant_id, recall_patient_id, body.appointment_id, actor=actor,
    )
    return RecallPatientResponse.model_validate(recall_patient)


@router.post("/patients/{recall_patient_id}/complete", response_model=RecallPatientResponse)
async def complete_recall(
    recall_patient_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    recall_patient = await RecallService.mark_completed(db, tenant_id, recall_patient_id, actor=actor)
    return RecallPatientResponse.model_validate(recall_patient)


@router.post("/patients/{recall_patient_id}/dismiss", response_model=RecallPatientResponse)
async def dismiss_recall(
    recall_patient_id: UUID,
    body: DismissRecallRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    recall_patient = await RecallService.dismiss(db, tenant_id, recall_patient_id, body.reason, actor=actor)
    return RecallPatientResponse.model_validate(recall_patient)


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

@router.get("/dashboard")
async def recall_dashboard(
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return await RecallService.get_dashboard(db, tenant_id)


@router.get("/history/{patient_id}")
async def patient_history(
    patient_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Every recall enrollment and contact for one patient, newest first."""
    return await RecallService.get_patient_history(db, tenant_id, patient_id)
