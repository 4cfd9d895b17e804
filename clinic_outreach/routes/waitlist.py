"""
Waitlist slot-fill API endpoints.

Provides endpoints for:
- Listing, adding and removing waitlist entries
- Ranking entries for an open slot
- Sending slot offers and recording patient responses
- Auto-filling a cancelled appointment
- Expiring stale offers and viewing stats
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_outreach.database import get_db
from clinic_outreach.middleware.tenant import get_actor, get_tenant_id
from clinic_outreach.schemas.waitlist import (
    PRIORITIES,
    WAITLIST_STATUSES,
    AddWaitlistRequest,
    AutoFillRequest,
    MatchRequest,
    NotifyRequest,
    RemoveWaitlistRequest,
    RespondRequest,
    WaitlistEntryResponse,
    WaitlistListResponse,
    WaitlistNotificationResponse,
    WaitlistStatsResponse,
)
from clinic_outreach.services.audit_service import Actor
from clinic_outreach.services.waitlist_service import (
    add_to_waitlist,
    auto_fill_cancelled_slot,
    expire_old_notifications,
    get_waitlist_entry,
    get_waitlist_stats,
    list_entry_notifications,
    list_waitlist,
    match_waitlist_to_slot,
    notify_waitlist_patient,
    process_waitlist_response,
    remove_from_waitlist,
)

logger = logging.getLogger(__name__)
router = APIRouter()


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/stats", response_model=WaitlistStatsResponse)
async def waitlist_stats(
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Waitlist statistics over the rolling stats window."""
    stats = await get_waitlist_stats(db, tenant_id)
    return WaitlistStatsResponse(**stats)


@router.get("/", response_model=WaitlistListResponse)
async def list_waitlist_entries(
    status_filter: Optional[str] = Query("active", alias="status"),
    priority: Optional[str] = Query(None),
    provider_id: Optional[UUID] = Query(None),
    patient_id: Optional[UUID] = Query(None),
    appointment_type_id: Optional[UUID] = Query(None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """List entries, most urgent and longest-waiting first. ``status=all`` lists every status."""
    if status_filter == "all":
        status_filter = None
    if status_filter and status_filter not in WAITLIST_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid status. Must be one of: {', '.join(WAITLIST_STATUSES)}",
        )
    if priority and priority not in PRIORITIES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid priority. Must be one of: {', '.join(PRIORITIES)}",
        )

    result = await list_waitlist(
        db,
        tenant_id,
        status=status_filter,
        priority=priority,
        provider_id=provider_id,
        patient_id=patient_id,
        appointment_type_id=appointment_type_id,
        limit=limit,
        offset=offset,
    )
    return WaitlistListResponse(
        entries=[WaitlistEntryResponse.model_validate(e) for e in result["entries"]],
        total=result["total"],
    )


@router.post("/", response_model=WaitlistEntryResponse, status_code=status.HTTP_201_CREATED)
async def create_waitlist_entry(
    request: AddWaitlistRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    entry = await add_to_waitlist(
        db,
        tenant_id,
        request.patient_id,
        provider_id=request.provider_id,
        appointment_type_id=request.appointment_type_id,
        location_id=request.location_id,
        preferred_dates=[d.model_dump(mode="json") for d in request.preferred_dates],
        preferred_times=request.preferred_times.model_dump(),
        preferred_days_of_week=request.preferred_days_of_week,
        flexibility_days=request.flexibility_days,
        priority=request.priority,
        reason=request.reason,
        notes=request.notes,
        actor=actor,
    )
    return WaitlistEntryResponse.model_validate(entry)


@router.get("/{entry_id}", response_model=WaitlistEntryResponse)
async def get_entry(
    entry_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    entry = await get_waitlist_entry(db, tenant_id, entry_id)
    return WaitlistEntryResponse.model_validate(entry)


@router.get("/{entry_id}/notifications", response_model=list[WaitlistNotificationResponse])
async def entry_notifications(
    entry_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Offer history for an entry, newest first."""
    await get_waitlist_entry(db, tenant_id, entry_id)
    notifications = await list_entry_notifications(db, tenant_id, entry_id)
    return [WaitlistNotificationResponse.model_validate(n) for n in notifications]


@router.post("/{entry_id}/remove", response_model=WaitlistEntryResponse)
async def remove_entry(
    entry_id: UUID,
    request: RemoveWaitlistRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Soft-cancel an entry; any open offer on it is closed."""
    entry = await remove_from_waitlist(db, tenant_id, entry_id, reason=request.reason, actor=actor)
    return WaitlistEntryResponse.model_validate(entry)


@router.delete("/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_entry(
    entry_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    await remove_from_waitlist(db, tenant_id, entry_id, actor=actor)


@router.post("/match")
async def match_slot(
    request: MatchRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Rank eligible entries for an open slot. Read-only."""
    matches = await match_waitlist_to_slot(db, tenant_id, request.slot.to_slot(), request.max_matches)
    return {"matches": matches, "total": len(matches)}


@router.post("/{entry_id}/notify", response_model=WaitlistNotificationResponse, status_code=status.HTTP_201_CREATED)
async def notify_entry(
    entry_id: UUID,
    request: NotifyRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Offer a slot to one entry. The offer stands even if delivery fails."""
    notification = await notify_waitlist_patient(
        db,
        tenant_id,
        entry_id,
        request.slot.to_slot(),
        expiration_hours=request.expiration_hours,
        channel=request.channel,
        actor=actor,
    )
    return WaitlistNotificationResponse.model_validate(notification)


@router.post("/notifications/{notification_id}/respond")
async def respond_to_offer(
    notification_id: UUID,
    request: RespondRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Record a patient's answer to an offer. Expired offers return ``outcome="expired"``."""
    return await process_waitlist_response(
        db, tenant_id, notification_id, request.accepted, notes=request.notes, actor=actor,
    )


@router.post("/auto-fill/{appointment_id}")
async def auto_fill(
    appointment_id: UUID,
    request: AutoFillRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return await auto_fill_cancelled_slot(
        db, tenant_id, appointment_id, max_notifications=request.max_notifications, actor=actor,
    )


@router.post("/expire-notifications")
async def expire_notifications(
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Sweep this tenant's stale offers now instead of waiting for the background job."""
    expired = await expire_old_notifications(db, tenant_id)
    return {"expired": expired}
