"""
Waitlist slot-fill service.

Handles enrolling patients on the waitlist, ranking entries for an open
slot, offering the slot with an expiring notification, resolving the
patient's answer into an appointment, auto-filling cancelled appointments
and sweeping offers nobody answered.

Transactional operations (offer, resolve, remove) lock the rows they change,
commit on success and roll back on any error.  Batch operations (auto-fill,
sweep) isolate each item.
"""

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import select, and_, or_, func, update, case
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_outreach.config import get_settings
from clinic_outreach.exceptions import InvalidInputError, InvalidStateError, NotFoundError
from clinic_outreach.lifecycle import (
    PRIORITY_RANK,
    NotificationResponse,
    Priority,
    WaitlistStatus,
    ensure_transition,
    is_terminal,
)
from clinic_outreach.models.clinical import Appointment, Patient
from clinic_outreach.models.waitlist import (
    DEFAULT_PREFERRED_DAYS,
    DEFAULT_PREFERRED_TIMES,
    WaitlistEntry,
    WaitlistNotification,
)
from clinic_outreach.services import messaging
from clinic_outreach.services.audit_service import SCHEDULER_ACTOR, Actor, log_audit
from clinic_outreach.services.waitlist_scoring import AvailableSlot, rank_key, score_entry, to_clinic_time

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def serialize_notification(notification: WaitlistNotification) -> dict:
    return {
        "id": str(notification.id) if notification.id else None,
        "waitlist_entry_id": str(notification.waitlist_entry_id),
        "slot_offered": notification.slot_offered,
        "offered_at": notification.offered_at.isoformat() if notification.offered_at else None,
        "expires_at": notification.expires_at.isoformat() if notification.expires_at else None,
        "response": notification.response,
        "notification_channel": notification.notification_channel,
        "notification_sent": bool(notification.notification_sent),
        "notification_error": notification.notification_error,
    }


# ---------------------------------------------------------------------------
# 1. Add to waitlist
# ---------------------------------------------------------------------------

async def add_to_waitlist(
    db: AsyncSession,
    tenant_id: UUID,
    patient_id: UUID,
    *,
    provider_id: Optional[UUID] = None,
    appointment_type_id: Optional[UUID] = None,
    location_id: Optional[UUID] = None,
    preferred_dates: Optional[list[dict]] = None,
    preferred_times: Optional[dict] = None,
    preferred_days_of_week: Optional[list[str]] = None,
    flexibility_days: int = 7,
    priority: str = "normal",
    reason: Optional[str] = None,
    notes: Optional[str] = None,
    actor: Actor = SCHEDULER_ACTOR,
) -> WaitlistEntry:
    """
    Put a patient on the waitlist.

    Returns the new WaitlistEntry in status ``active``.
    """
    try:
        Priority(priority)
    except ValueError:
        raise InvalidInputError(f"Invalid priority: {priority}")

    try:
        result = await db.execute(
            select(Patient.id).where(Patient.id == patient_id, Patient.tenant_id == tenant_id)
        )
        if result.scalar_one_or_none() is None:
            raise NotFoundError("Patient not found", {"patient_id": str(patient_id)})

        entry = WaitlistEntry(
            tenant_id=tenant_id,
            patient_id=patient_id,
            provider_id=provider_id,
            appointment_type_id=appointment_type_id,
            location_id=location_id,
            preferred_dates=[
                {"date": str(d["date"]), "weight": d.get("weight", 5)} for d in (preferred_dates or [])
            ],
            preferred_times=preferred_times if preferred_times is not None else dict(DEFAULT_PREFERRED_TIMES),
            preferred_days_of_week=(
                preferred_days_of_week if preferred_days_of_week is not None else list(DEFAULT_PREFERRED_DAYS)
            ),
            flexibility_days=flexibility_days,
            priority=priority,
            reason=reason,
            notes=notes,
            status=WaitlistStatus.ACTIVE.value,
            created_by=actor.actor_id,
        )
        db.add(entry)
        await db.flush()

        await log_audit(
            db,
            tenant_id=tenant_id,
            actor=actor,
            action="waitlist_entry_created",
            resource_type="waitlist_entry",
            resource_id=entry.id,
            metadata={"patient_id": str(patient_id), "priority": priority},
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await db.refresh(entry)
    logger.info("Patient %s added to waitlist for tenant %s (entry %s)", patient_id, tenant_id, entry.id)
    return entry


# ---------------------------------------------------------------------------
# 2. Remove from waitlist
# ---------------------------------------------------------------------------

async def remove_from_waitlist(
    db: AsyncSession,
    tenant_id: UUID,
    entry_id: UUID,
    reason: Optional[str] = None,
    actor: Actor = SCHEDULER_ACTOR,
    now: Optional[datetime] = None,
) -> WaitlistEntry:
    """
    Cancel an entry.  Any open offer on it is closed as ``no_response`` so
    the entry never holds a slot after it leaves the waitlist.
    """
    now = now or _utcnow()
    try:
        result = await db.execute(
            select(WaitlistEntry)
            .where(WaitlistEntry.id == entry_id, WaitlistEntry.tenant_id == tenant_id)
            .with_for_update()
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            raise NotFoundError("Waitlist entry not found", {"entry_id": str(entry_id)})
        if is_terminal(WaitlistStatus(entry.status)):
            raise InvalidStateError(f"Waitlist entry is already {entry.status}")

        entry.status = ensure_transition(entry.status, WaitlistStatus.CANCELLED).value
        if reason:
            entry.notes = f"{entry.notes}\nRemoved: {reason}" if entry.notes else f"Removed: {reason}"

        await db.execute(
            update(WaitlistNotification)
            .where(
                WaitlistNotification.waitlist_entry_id == entry_id,
                WaitlistNotification.response == NotificationResponse.PENDING.value,
            )
            .values(
                response=NotificationResponse.NO_RESPONSE.value,
                responded_at=now,
                response_notes="Entry removed from waitlist",
            )
            .execution_options(synchronize_session=False)
        )

        await log_audit(
            db,
            tenant_id=tenant_id,
            actor=actor,
            action="waitlist_entry_removed",
            resource_type="waitlist_entry",
            resource_id=entry_id,
            metadata={"reason": reason},
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Waitlist entry %s removed (tenant %s)", entry_id, tenant_id)
    return entry


# ---------------------------------------------------------------------------
# 3. List / get entries
# ---------------------------------------------------------------------------

async def list_waitlist(
    db: AsyncSession,
    tenant_id: UUID,
    *,
    status: Optional[str] = WaitlistStatus.ACTIVE.value,
    priority: Optional[str] = None,
    provider_id: Optional[UUID] = None,
    patient_id: Optional[UUID] = None,
    appointment_type_id: Optional[UUID] = None,
    limit: int = 50,
    offset: int = 0,
) -> dict:
    """Entries ordered urgent-first, then oldest first.  Returns {"entries", "total"}."""
    filters = [WaitlistEntry.tenant_id == tenant_id]
    if status:
        filters.append(WaitlistEntry.status == status)
    if priority:
        filters.append(WaitlistEntry.priority == priority)
    if provider_id:
        filters.append(WaitlistEntry.provider_id == provider_id)
    if patient_id:
        filters.append(WaitlistEntry.patient_id == patient_id)
    if appointment_type_id:
        filters.append(WaitlistEntry.appointment_type_id == appointment_type_id)

    count_result = await db.execute(select(func.count(WaitlistEntry.id)).where(and_(*filters)))
    total = count_result.scalar_one()

    priority_order = case(PRIORITY_RANK, value=WaitlistEntry.priority, else_=len(PRIORITY_RANK) + 1)
    result = await db.execute(
        select(WaitlistEntry)
        .where(and_(*filters))
        .order_by(priority_order, WaitlistEntry.created_at.asc())
        .limit(limit)
        .offset(offset)
    )
    return {"entries": list(result.scalars().all()), "total": total}


async def get_waitlist_entry(db: AsyncSession, tenant_id: UUID, entry_id: UUID) -> WaitlistEntry:
    result = await db.execute(
        select(WaitlistEntry).where(WaitlistEntry.id == entry_id, WaitlistEntry.tenant_id == tenant_id)
    )
    entry = result.scalar_one_or_none()
    if entry is None:
        raise NotFoundError("Waitlist entry not found", {"entry_id": str(entry_id)})
    return entry


async def list_entry_notifications(
    db: AsyncSession, tenant_id: UUID, entry_id: UUID,
) -> list[WaitlistNotification]:
    """Offer history for one entry, newest first."""
    result = await db.execute(
        select(WaitlistNotification)
        .where(
            WaitlistNotification.waitlist_entry_id == entry_id,
            WaitlistNotification.tenant_id == tenant_id,
        )
        .order_by(WaitlistNotification.offered_at.desc())
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# 4. Rank entries for a slot
# ---------------------------------------------------------------------------

def eligible_entries_query(tenant_id: UUID, slot: AvailableSlot, now: datetime):
    """Entries that may be offered ``slot``: status active, provider and
    appointment type unconstrained or equal to the slot's, and no pending
    offer that is still open."""
    open_offer = select(WaitlistNotification.id).where(
        WaitlistNotification.waitlist_entry_id == WaitlistEntry.id,
        WaitlistNotification.response == NotificationResponse.PENDING.value,
        WaitlistNotification.expires_at > now,
    ).exists()

    return (
        select(WaitlistEntry, Patient.first_name, Patient.last_name, Patient.phone, Patient.email)
        .join(Patient, Patient.id == WaitlistEntry.patient_id)
        .where(
            WaitlistEntry.tenant_id == tenant_id,
            WaitlistEntry.status == WaitlistStatus.ACTIVE.value,
            or_(WaitlistEntry.provider_id.is_(None), WaitlistEntry.provider_id == slot.provider_id),
            or_(
                WaitlistEntry.appointment_type_id.is_(None),
                WaitlistEntry.appointment_type_id == slot.appointment_type_id,
            ),
            ~open_offer,
        )
        .order_by(WaitlistEntry.created_at.asc(), WaitlistEntry.id.asc())
    )


async def match_waitlist_to_slot(
    db: AsyncSession,
    tenant_id: UUID,
    slot: AvailableSlot,
    max_matches: Optional[int] = None,
    now: Optional[datetime] = None,
) -> list[dict]:
    """Score every eligible entry for ``slot`` and return the best ``max_matches``."""
    now = now or _utcnow()
    if max_matches is None:
        max_matches = get_settings().WAITLIST_MAX_MATCHES

    result = await db.execute(eligible_entries_query(tenant_id, slot, now))

    scored = []
    for entry, first_name, last_name, phone, email in result.all():
        match = score_entry(entry, slot, now)
        if match is None:
            continue
        match.update({
            "entry_id": str(entry.id),
            "patient_id": str(entry.patient_id),
            "patient_name": f"{first_name} {last_name}".strip(),
            "patient_phone": phone,
            "patient_email": email,
            "priority": entry.priority,
        })
        scored.append((rank_key(match, entry), match))

    scored.sort(key=lambda pair: pair[0])
    matches = [match for _, match in scored[:max_matches]]

    logger.info(
        "Waitlist ranking for tenant %s: %d candidates scored, %d returned",
        tenant_id, len(scored), len(matches),
    )
    return matches


# ---------------------------------------------------------------------------
# 5. Offer a slot
# ---------------------------------------------------------------------------

def _offer_message(slot: AvailableSlot, hours: int) -> str:
    when = to_clinic_time(slot.scheduled_start).strftime("%A, %B %d at %-I:%M %p")
    with_provider = f" with {slot.provider_name}" if slot.provider_name else ""
    at_location = f" at {slot.location_name}" if slot.location_name else ""
    return (
        f"An appointment opened up{with_provider}{at_location} on {when}. "
        f"Reply YES within {hours} hours to book it, or NO to stay on the waitlist."
    )


async def _check_offer_rate_limit(db: AsyncSession, tenant_id: UUID, patient_id: UUID, now: datetime) -> None:
    """
    Per-patient offer limits across all of the patient's entries: at most
    WAITLIST_MAX_OFFERS_PER_HOUR in the last hour, WAITLIST_MAX_OFFERS_PER_DAY
    in the last 24 hours, and none within WAITLIST_OFFER_COOLDOWN_MINUTES of
    the previous offer.  Offers whose delivery failed do not count.
    """
    settings = get_settings()
    hourly_limit = settings.WAITLIST_MAX_OFFERS_PER_HOUR
    daily_limit = settings.WAITLIST_MAX_OFFERS_PER_DAY
    cooldown = timedelta(minutes=settings.WAITLIST_OFFER_COOLDOWN_MINUTES)
    if not (hourly_limit or daily_limit or cooldown):
        return

    day_ago = now - timedelta(hours=24)
    result = await db.execute(
        select(
            func.count().filter(WaitlistNotification.offered_at >= now - timedelta(hours=1)),
            func.count().filter(WaitlistNotification.offered_at >= day_ago),
            func.max(WaitlistNotification.offered_at),
        )
        .join(WaitlistEntry, WaitlistEntry.id == WaitlistNotification.waitlist_entry_id)
        .where(
            WaitlistNotification.tenant_id == tenant_id,
            WaitlistEntry.patient_id == patient_id,
            WaitlistNotification.offered_at >= min(day_ago, now - cooldown),
            WaitlistNotification.notification_error.is_(None),
        )
    )
    hourly, daily, last_offered = result.one()

    reason = None
    if hourly_limit and hourly >= hourly_limit:
        reason = f"Hourly offer limit reached ({hourly}/{hourly_limit})"
    elif daily_limit and daily >= daily_limit:
        reason = f"Daily offer limit reached ({daily}/{daily_limit})"
    elif cooldown and last_offered is not None and now - last_offered < cooldown:
        minutes = int((now - last_offered).total_seconds() // 60)
        reason = f"Offer cooldown active ({minutes}/{settings.WAITLIST_OFFER_COOLDOWN_MINUTES} minutes)"

    if reason:
        logger.warning("Offer rate limit for patient %s: %s", patient_id, reason)
        raise InvalidStateError("Notification rate limit exceeded", {"reason": reason, "patient_id": str(patient_id)})


async def notify_waitlist_patient(
    db: AsyncSession,
    tenant_id: UUID,
    entry_id: UUID,
    slot: AvailableSlot,
    expiration_hours: Optional[int] = None,
    channel: str = "sms",
    actor: Actor = SCHEDULER_ACTOR,
    now: Optional[datetime] = None,
) -> WaitlistNotification:
    """
    Offer ``slot`` to one entry.

    The entry row is locked before its status check, so of two concurrent
    offers for the same entry one succeeds and the other sees
    "Waitlist entry is not active".  Patients over the offer rate limit are
    refused with InvalidStateError.  The message goes out after commit; a
    delivery failure is recorded on the notification and never undoes the
    offer.
    """
    now = now or _utcnow()
    if expiration_hours is None:
        expiration_hours = get_settings().WAITLIST_OFFER_TTL_HOURS
    if expiration_hours <= 0:
        raise InvalidInputError("expiration_hours must be positive")

    try:
        result = await db.execute(
            select(WaitlistEntry, Patient.phone, Patient.email)
            .join(Patient, Patient.id == WaitlistEntry.patient_id)
            .where(WaitlistEntry.id == entry_id, WaitlistEntry.tenant_id == tenant_id)
            .with_for_update(of=WaitlistEntry)
        )
        row = result.first()
        if row is None:
            raise NotFoundError("Waitlist entry not found", {"entry_id": str(entry_id)})
        entry, phone, email = row
        if entry.status != WaitlistStatus.ACTIVE.value:
            raise InvalidStateError("Waitlist entry is not active", {"status": entry.status})

        await _check_offer_rate_limit(db, tenant_id, entry.patient_id, now)

        notification = WaitlistNotification(
            tenant_id=tenant_id,
            waitlist_entry_id=entry.id,
            slot_offered=slot.snapshot(),
            offered_at=now,
            expires_at=now + timedelta(hours=expiration_hours),
            response=NotificationResponse.PENDING.value,
            notification_channel=channel,
            notification_sent=False,
        )
        db.add(notification)
        entry.status = ensure_transition(entry.status, WaitlistStatus.NOTIFIED).value
        entry.notified_at = now
        await db.flush()

        await log_audit(
            db,
            tenant_id=tenant_id,
            actor=actor,
            action="waitlist_offer_sent",
            resource_type="waitlist_entry",
            resource_id=entry.id,
            metadata={
                "notification_id": str(notification.id),
                "channel": channel,
                "slot_start": slot.scheduled_start.isoformat(),
                "expires_at": notification.expires_at.isoformat(),
            },
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Waitlist entry %s offered slot at %s (notification %s)", entry_id, slot.scheduled_start, notification.id)

    await _deliver_offer(db, notification, slot, channel, phone, email)
    return notification


async def _deliver_offer(
    db: AsyncSession,
    notification: WaitlistNotification,
    slot: AvailableSlot,
    channel: str,
    phone: Optional[str],
    email: Optional[str],
) -> None:
    # auto-fill offers go out by SMS
    delivery_channel = "sms" if channel == "auto" else channel
    to = email if delivery_channel == "email" else phone
    hours = max(int((notification.expires_at - notification.offered_at).total_seconds() // 3600), 1)
    try:
        receipt = await messaging.send_message(delivery_channel, to, _offer_message(slot, hours))
        notification.notification_sent = receipt["status"] in ("sent", "delivered")
        notification.notification_error = receipt.get("error")
        notification.external_message_id = receipt.get("external_id")
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("Failed to record delivery for waitlist notification %s", notification.id)


# ---------------------------------------------------------------------------
# 6. Resolve a response
# ---------------------------------------------------------------------------

def _slot_lock_key(tenant_id: UUID, slot: AvailableSlot) -> int:
    raw = f"{tenant_id}:{slot.provider_id}:{slot.location_id}:{slot.scheduled_start.isoformat()}"
    return int.from_bytes(hashlib.blake2b(raw.encode(), digest_size=8).digest(), "big", signed=True)


async def _slot_taken(db: AsyncSession, tenant_id: UUID, slot: AvailableSlot) -> bool:
    """Another live appointment already occupies the offered provider/time."""
    await db.execute(select(func.pg_advisory_xact_lock(_slot_lock_key(tenant_id, slot))))
    result = await db.execute(
        select(Appointment.id).where(
            Appointment.tenant_id == tenant_id,
            Appointment.provider_id == slot.provider_id,
            Appointment.scheduled_start == slot.scheduled_start,
            Appointment.status != "cancelled",
        ).limit(1)
    )
    return result.scalar_one_or_none() is not None


async def process_waitlist_response(
    db: AsyncSession,
    tenant_id: UUID,
    notification_id: UUID,
    accepted: bool,
    notes: Optional[str] = None,
    actor: Actor = SCHEDULER_ACTOR,
    now: Optional[datetime] = None,
) -> dict:
    """
    Apply a patient's yes/no to an offer.

    Exactly one outcome per call:
      accepted   appointment created, entry scheduled
      declined   entry back in the pool
      expired    deadline already passed; entry back in the pool, no booking
      slot_filled  the slot was booked by someone else first; entry back in the pool

    Raises NotFoundError / InvalidStateError ("Notification already processed").
    """
    now = now or _utcnow()
    try:
        result = await db.execute(
            select(WaitlistNotification, WaitlistEntry)
            .join(WaitlistEntry, WaitlistEntry.id == WaitlistNotification.waitlist_entry_id)
            .where(
                WaitlistNotification.id == notification_id,
                WaitlistNotification.tenant_id == tenant_id,
            )
            .with_for_update()
        )
        row = result.first()
        if row is None:
            raise NotFoundError("Waitlist notification not found", {"notification_id": str(notification_id)})
        notification, entry = row

        if notification.response != NotificationResponse.PENDING.value:
            raise InvalidStateError("Notification already processed", {"response": notification.response})

        outcome = {
            "success": True,
            "notification_id": str(notification.id),
            "entry_id": str(entry.id),
            "appointment_id": None,
        }

        if notification.expires_at <= now:
            _close_offer(notification, NotificationResponse.EXPIRED, now, notes)
            _return_to_pool(entry)
            await db.commit()
            logger.info("Waitlist notification %s answered after expiry", notification_id)
            return {**outcome, "outcome": "expired", "message": "Offer expired"}

        if not accepted:
            _close_offer(notification, NotificationResponse.DECLINED, now, notes)
            _return_to_pool(entry)
            await db.commit()
            logger.info("Waitlist notification %s declined", notification_id)
            return {**outcome, "outcome": "declined", "message": "Offer declined, patient remains on the waitlist"}

        slot = AvailableSlot.from_snapshot(notification.slot_offered)
        if await _slot_taken(db, tenant_id, slot):
            _close_offer(notification, NotificationResponse.EXPIRED, now, "Slot filled before acceptance")
            _return_to_pool(entry)
            await db.commit()
            logger.info("Waitlist notification %s accepted but slot already filled", notification_id)
            return {
                **outcome,
                "success": False,
                "outcome": "slot_filled",
                "message": "This slot has already been filled",
            }

        appointment = Appointment(
            tenant_id=tenant_id,
            patient_id=entry.patient_id,
            provider_id=slot.provider_id,
            location_id=slot.location_id,
            appointment_type_id=slot.appointment_type_id,
            scheduled_start=slot.scheduled_start,
            scheduled_end=slot.scheduled_end,
            status="scheduled",
            notes="Booked from waitlist offer",
        )
        db.add(appointment)
        await db.flush()

        _close_offer(notification, NotificationResponse.ACCEPTED, now, notes)
        entry.status = ensure_transition(entry.status, WaitlistStatus.SCHEDULED).value
        entry.scheduled_at = now
        entry.scheduled_appointment_id = appointment.id

        await log_audit(
            db,
            tenant_id=tenant_id,
            actor=actor,
            action="waitlist_offer_accepted",
            resource_type="appointment",
            resource_id=appointment.id,
            metadata={"notification_id": str(notification.id), "entry_id": str(entry.id)},
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Waitlist notification %s accepted, appointment %s booked", notification_id, appointment.id)
    return {
        **outcome,
        "outcome": "accepted",
        "appointment_id": str(appointment.id),
        "message": "Appointment scheduled",
    }


def _close_offer(notification: WaitlistNotification, response: NotificationResponse, now: datetime, notes) -> None:
    notification.response = ensure_transition(notification.response, response).value
    notification.responded_at = now
    if notes:
        notification.response_notes = notes


def _return_to_pool(entry: WaitlistEntry) -> None:
    if entry.status == WaitlistStatus.NOTIFIED.value:
        entry.status = ensure_transition(entry.status, WaitlistStatus.ACTIVE).value
        entry.notified_at = None


# ---------------------------------------------------------------------------
# 7. Auto-fill a cancelled appointment
# ---------------------------------------------------------------------------

async def auto_fill_cancelled_slot(
    db: AsyncSession,
    tenant_id: UUID,
    appointment_id: UUID,
    max_notifications: Optional[int] = None,
    actor: Actor = SCHEDULER_ACTOR,
    now: Optional[datetime] = None,
) -> dict:
    """
    Offer a cancelled appointment's slot to the best waitlist matches.

    Ranks with the normal match limit, then offers to the top
    ``max_notifications`` one at a time; one failed offer does not stop the
    others.  Writes a single audit record for the run.
    """
    now = now or _utcnow()
    settings = get_settings()
    if max_notifications is None:
        max_notifications = settings.WAITLIST_AUTO_FILL_MAX_NOTIFICATIONS

    result = await db.execute(
        select(Appointment).where(Appointment.id == appointment_id, Appointment.tenant_id == tenant_id)
    )
    appointment = result.scalar_one_or_none()
    if appointment is None:
        raise NotFoundError("Appointment not found", {"appointment_id": str(appointment_id)})
    if appointment.status != "cancelled":
        raise InvalidStateError("Appointment is not cancelled", {"status": appointment.status})

    slot = AvailableSlot(
        provider_id=appointment.provider_id,
        location_id=appointment.location_id,
        appointment_type_id=appointment.appointment_type_id,
        scheduled_start=to_clinic_time(appointment.scheduled_start),
        scheduled_end=to_clinic_time(appointment.scheduled_end),
    )

    matches = await match_waitlist_to_slot(db, tenant_id, slot, now=now)

    notifications: list[dict] = []
    errors: list[str] = []
    for match in matches[:max_notifications]:
        try:
            notification = await notify_waitlist_patient(
                db,
                tenant_id,
                UUID(match["entry_id"]),
                slot,
                expiration_hours=settings.WAITLIST_OFFER_TTL_HOURS,
                channel="auto",
                actor=actor,
                now=now,
            )
            notifications.append({**serialize_notification(notification), "score": match["score"]})
        except Exception as e:
            logger.warning("auto_fill: offer to entry %s failed: %s", match["entry_id"], e)
            errors.append(f"Entry {match['entry_id']}: {e}")

    await log_audit(
        db,
        tenant_id=tenant_id,
        actor=actor,
        action="waitlist_auto_fill_triggered",
        resource_type="appointment",
        resource_id=appointment_id,
        metadata={
            "matches_found": len(matches),
            "notifications_sent": len(notifications),
            "errors": len(errors),
        },
    )
    await db.commit()

    logger.info(
        "auto_fill: appointment %s, %d matches, %d offers sent",
        appointment_id, len(matches), len(notifications),
    )
    return {
        "appointment_id": str(appointment_id),
        "matches_found": len(matches),
        "notifications_sent": len(notifications),
        "notifications": notifications,
        "errors": errors,
    }


# ---------------------------------------------------------------------------
# 8. Expire stale offers
# ---------------------------------------------------------------------------

async def expire_old_notifications(
    db: AsyncSession,
    tenant_id: Optional[UUID] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Mark every pending offer past its deadline as expired and put the owning
    entries back in the pool.  Safe to run repeatedly; a run with nothing to
    expire writes nothing.

    Returns the number of offers expired.
    """
    now = now or _utcnow()
    conditions = [
        WaitlistNotification.response == NotificationResponse.PENDING.value,
        WaitlistNotification.expires_at <= now,
    ]
    if tenant_id is not None:
        conditions.append(WaitlistNotification.tenant_id == tenant_id)

    try:
        result = await db.execute(
            update(WaitlistNotification)
            .where(*conditions)
            .values(response=NotificationResponse.EXPIRED.value, responded_at=now)
            .returning(WaitlistNotification.waitlist_entry_id)
            .execution_options(synchronize_session=False)
        )
        entry_ids = list(result.scalars().all())
        if not entry_ids:
            return 0

        await db.execute(
            update(WaitlistEntry)
            .where(
                WaitlistEntry.id.in_(entry_ids),
                WaitlistEntry.status == WaitlistStatus.NOTIFIED.value,
            )
            .values(status=WaitlistStatus.ACTIVE.value, notified_at=None)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Expired %d stale waitlist notifications", len(entry_ids))
    return len(entry_ids)


# ---------------------------------------------------------------------------
# 9. Stats
# ---------------------------------------------------------------------------

async def get_waitlist_stats(
    db: AsyncSession,
    tenant_id: UUID,
    now: Optional[datetime] = None,
) -> dict:
    """Rollup of entries created in the stats window (90 days by default)."""
    now = now or _utcnow()
    since = now - timedelta(days=get_settings().WAITLIST_STATS_WINDOW_DAYS)
    week_start = (now - timedelta(days=now.weekday())).replace(hour=0, minute=0, second=0, microsecond=0)
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    status = WaitlistEntry.status
    is_active = status == WaitlistStatus.ACTIVE.value
    is_scheduled = status == WaitlistStatus.SCHEDULED.value

    def _count(condition):
        return func.count().filter(condition)

    result = await db.execute(
        select(
            func.count().label("total"),
            *[_count(status == s.value).label(s.value) for s in WaitlistStatus],
            _count(and_(is_active, WaitlistEntry.priority == Priority.URGENT.value)).label("urgent_count"),
            _count(and_(is_active, WaitlistEntry.priority == Priority.HIGH.value)).label("high_count"),
            func.avg(func.extract("epoch", WaitlistEntry.created_at)).filter(is_active).label("avg_created_epoch"),
            _count(and_(is_scheduled, WaitlistEntry.scheduled_at >= week_start)).label("filled_this_week"),
            _count(and_(is_scheduled, WaitlistEntry.scheduled_at >= month_start)).label("filled_this_month"),
        ).where(WaitlistEntry.tenant_id == tenant_id, WaitlistEntry.created_at >= since)
    )
    row = result.one()

    total = row.total or 0
    average_wait_days = 0.0
    if row.avg_created_epoch is not None:
        average_wait_days = round((now.timestamp() - float(row.avg_created_epoch)) / 86400, 1)

    return {
        "total": total,
        **{s.value: getattr(row, s.value) or 0 for s in WaitlistStatus},
        "urgent_count": row.urgent_count or 0,
        "high_count": row.high_count or 0,
        "average_wait_days": average_wait_days,
        "filled_this_week": row.filled_this_week or 0,
        "filled_this_month": row.filled_this_month or 0,
        "conversion_rate": round((row.scheduled or 0) / total * 100, 1) if total else 0.0,
    }


# ---------------------------------------------------------------------------
# 10. Inbound SMS replies
# ---------------------------------------------------------------------------

ACCEPT_REPLIES = frozenset({"YES", "Y", "ACCEPT"})
DECLINE_REPLIES = frozenset({"NO", "N", "DECLINE"})


async def process_sms_reply(
    db: AsyncSession,
    tenant_id: UUID,
    from_number: str,
    body: str,
    now: Optional[datetime] = None,
) -> dict:
    """
    Route a patient's SMS answer to their most recent pending offer.

    YES / Y / ACCEPT accepts and NO / N / DECLINE declines; anything else, an
    unknown number, or a patient with no pending offer returns
    ``{"matched": False}`` and changes nothing.  A matched reply is resolved
    through ``process_waitlist_response`` with the patient as actor.
    """
    answer = (body or "").strip().upper()
    if answer in ACCEPT_REPLIES:
        accepted = True
    elif answer in DECLINE_REPLIES:
        accepted = False
    else:
        return {"matched": False, "action": None}

    result = await db.execute(
        select(WaitlistNotification.id, WaitlistEntry.patient_id)
        .join(WaitlistEntry, WaitlistEntry.id == WaitlistNotification.waitlist_entry_id)
        .join(Patient, Patient.id == WaitlistEntry.patient_id)
        .where(
            WaitlistNotification.tenant_id == tenant_id,
            WaitlistNotification.response == NotificationResponse.PENDING.value,
            Patient.tenant_id == tenant_id,
            Patient.phone == from_number.strip(),
        )
        .order_by(WaitlistNotification.offered_at.desc())
        .limit(1)
    )
    row = result.first()
    if row is None:
        logger.info("SMS reply from unmatched number for tenant %s ignored", tenant_id)
        return {"matched": False, "action": None}

    notification_id, patient_id = row
    outcome = await process_waitlist_response(
        db,
        tenant_id,
        notification_id,
        accepted,
        notes=f"SMS reply: {answer}",
        actor=Actor(actor_id=patient_id, actor_type="patient"),
        now=now,
    )
    return {"matched": True, "action": "accepted" if accepted else "declined", **outcome}
