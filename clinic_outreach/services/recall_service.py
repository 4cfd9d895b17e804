"""
Recall campaigns: criteria-based patient targeting and bounded-attempt
outreach.

A campaign's criteria are compiled into a patient query
(``services.criteria``); ``identify_patients`` enrolls the matches, and
``process_outreach`` contacts due enrollees on the campaign cadence until
they schedule, decline or run out of attempts.

Batch methods commit per item so one failure never rolls back the others.
Attributes needed after a per-item rollback are copied to locals first,
because a rollback expires every loaded ORM object in the session.
"""

import logging
import re
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import select, and_, or_, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_outreach.config import get_settings
from clinic_outreach.exceptions import (
    DuplicateEnrollmentError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)
from clinic_outreach.lifecycle import (
    ACTIVE_RECALL_STATUSES,
    CAMPAIGN_CHANNELS,
    CONTACT_CHANNELS,
    CONTACT_RESPONSES,
    DELIVERY_STATUSES,
    ENROLLMENT_SOURCES,
    RECALL_TYPES,
    Priority,
    RecallStatus,
    ensure_transition,
)
from clinic_outreach.models.clinical import Appointment, Patient
from clinic_outreach.models.recall import (
    RecallCampaign,
    RecallCampaignTemplate,
    RecallContactLog,
    RecallPatient,
)
from clinic_outreach.services import messaging
from clinic_outreach.services.audit_service import SCHEDULER_ACTOR, Actor, log_audit
from clinic_outreach.services.criteria import build_criteria_query, validate_criteria

logger = logging.getLogger(__name__)

DEFAULT_RECALL_MESSAGE = (
    "Hi {{patientFirstName}}, you are due for a follow-up visit at {{practiceName}}. "
    "Please call {{practicePhone}} to schedule."
)

# Explicit patient answers and the enrollment status each one moves to
RESPONSE_STATUS = {
    "scheduled": RecallStatus.SCHEDULED,
    "declined": RecallStatus.DECLINED,
    "call_back_requested": RecallStatus.CONTACTED,
}

CAMPAIGN_FIELDS = (
    "name",
    "description",
    "recall_type",
    "target_criteria",
    "message_template",
    "message_template_sms",
    "message_template_email",
    "channel",
    "frequency_days",
    "max_attempts",
    "is_active",
    "auto_identify",
    "identify_schedule",
)

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def render_template(template: str, context: dict) -> str:
    """Fill ``{{name}}`` placeholders; unknown or empty ones are left as written."""
    def _sub(match):
        value = context.get(match.group(1))
        return str(value) if value not in (None, "") else match.group(0)

    return _PLACEHOLDER.sub(_sub, template)


def conversion_rate(converted: int, total: int) -> float:
    if not total:
        return 0.0
    return round(converted / total * 100, 1)


def _append_note(existing: Optional[str], note: str) -> str:
    return f"{existing}\n{note}" if existing else note


def _check_campaign_values(values: dict) -> None:
    if "recall_type" in values and values["recall_type"] not in RECALL_TYPES:
        raise InvalidInputError(f"Invalid recall type: {values['recall_type']}")
    if "channel" in values and values["channel"] not in CAMPAIGN_CHANNELS:
        raise InvalidInputError(f"Invalid channel: {values['channel']}")
    for field in ("frequency_days", "max_attempts"):
        if field in values and (values[field] is None or values[field] < 1):
            raise InvalidInputError(f"{field} must be at least 1")
    if "name" in values and not (values["name"] or "").strip():
        raise InvalidInputError("Campaign name is required")
    for field in ("is_active", "auto_identify"):
        if field in values and values[field] is None:
            raise InvalidInputError(f"{field} cannot be null")


class RecallService:

    # ------------------------------------------------------------------
    # Campaigns
    # ------------------------------------------------------------------

    @staticmethod
    async def create_campaign(
        db: AsyncSession,
        tenant_id: UUID,
        *,
        name: str,
        recall_type: str,
        target_criteria: Optional[dict] = None,
        description: Optional[str] = None,
        message_template: Optional[str] = None,
        message_template_sms: Optional[str] = None,
        message_template_email: Optional[str] = None,
        channel: str = "sms",
        frequency_days: int = 14,
        max_attempts: int = 3,
        is_active: bool = True,
        auto_identify: bool = False,
        identify_schedule: Optional[str] = None,
        actor: Actor = SCHEDULER_ACTOR,
    ) -> RecallCampaign:
        """Create a campaign.  Criteria are validated before anything is written."""
        _check_campaign_values({
            "name": name,
            "recall_type": recall_type,
            "channel": channel,
            "frequency_days": frequency_days,
            "max_attempts": max_attempts,
        })
        criteria = validate_criteria(target_criteria).to_storage()

        try:
            campaign = RecallCampaign(
                tenant_id=tenant_id,
                name=name.strip(),
                description=description,
                recall_type=recall_type,
                target_criteria=criteria,
                message_template=message_template,
                message_template_sms=message_template_sms,
                message_template_email=message_template_email,
                channel=channel,
                frequency_days=frequency_days,
                max_attempts=max_attempts,
                is_active=is_active,
                auto_identify=auto_identify,
                identify_schedule=identify_schedule,
                created_by=actor.actor_id,
            )
            db.add(campaign)
            await db.flush()
            await log_audit(
                db,
                tenant_id=tenant_id,
                actor=actor,
                action="recall_campaign_created",
                resource_type="recall_campaign",
                resource_id=campaign.id,
                metadata={"name": campaign.name, "recall_type": recall_type},
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        await db.refresh(campaign)
        logger.info("Recall campaign %s (%s) created for tenant %s", campaign.id, recall_type, tenant_id)
        return campaign

    @staticmethod
    async def update_campaign(
        db: AsyncSession,
        tenant_id: UUID,
        campaign_id: UUID,
        updates: dict,
        actor: Actor = SCHEDULER_ACTOR,
    ) -> RecallCampaign:
        """Partial update; only keys present in ``updates`` change."""
        if not updates:
            raise InvalidInputError("No fields to update")
        unknown = sorted(set(updates) - set(CAMPAIGN_FIELDS))
        if unknown:
            raise InvalidInputError(f"Unknown campaign fields: {', '.join(unknown)}")
        _check_campaign_values(updates)

        values = dict(updates)
        if "target_criteria" in values:
            values["target_criteria"] = validate_criteria(values["target_criteria"]).to_storage()

        try:
            result = await db.execute(
                select(RecallCampaign)
                .where(RecallCampaign.id == campaign_id, RecallCampaign.tenant_id == tenant_id)
                .with_for_update()
            )
            campaign = result.scalar_one_or_none()
            if campaign is None:
                raise NotFoundError("Recall campaign not found", {"campaign_id": str(campaign_id)})

            for field, value in values.items():
                setattr(campaign, field, value)

            await log_audit(
                db,
                tenant_id=tenant_id,
                actor=actor,
                action="recall_campaign_updated",
                resource_type="recall_campaign",
                resource_id=campaign_id,
                metadata={"fields": sorted(values)},
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        await db.refresh(campaign)
        return campaign

    @staticmethod
    async def get_campaign(db: AsyncSession, tenant_id: UUID, campaign_id: UUID) -> RecallCampaign:
        result = await db.execute(
            select(RecallCampaign).where(RecallCampaign.id == campaign_id, RecallCampaign.tenant_id == tenant_id)
        )
        campaign = result.scalar_one_or_none()
        if campaign is None:
            raise NotFoundError("Recall campaign not found", {"campaign_id": str(campaign_id)})
        return campaign

    @staticmethod
    async def list_campaigns(
        db: AsyncSession, tenant_id: UUID, active_only: bool = False,
    ) -> list[RecallCampaign]:
        stmt = select(RecallCampaign).where(RecallCampaign.tenant_id == tenant_id)
        if active_only:
            stmt = stmt.where(RecallCampaign.is_active.is_(True))
        result = await db.execute(stmt.order_by(RecallCampaign.name))
        return list(result.scalars().all())

    @staticmethod
    async def list_templates(db: AsyncSession) -> list[RecallCampaignTemplate]:
        result = await db.execute(
            select(RecallCampaignTemplate)
            .where(RecallCampaignTemplate.is_system.is_(True))
            .order_by(RecallCampaignTemplate.name)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    @staticmethod
    async def _enroll(
        db: AsyncSession,
        tenant_id: UUID,
        campaign_id: UUID,
        patient_id: UUID,
        *,
        reason: Optional[str],
        due_date: date,
        priority: str,
        source: str,
        notes: Optional[str],
        created_by: Optional[UUID],
    ) -> RecallPatient:
        # Lock the patient row so concurrent enrollments of one patient serialize
        result = await db.execute(
            select(Patient.id)
            .where(Patient.id == patient_id, Patient.tenant_id == tenant_id)
            .with_for_update()
        )
        if result.scalar_one_or_none() is None:
            raise NotFoundError("Patient not found", {"patient_id": str(patient_id)})

        result = await db.execute(
            select(RecallPatient.id).where(
                RecallPatient.campaign_id == campaign_id,
                RecallPatient.patient_id == patient_id,
                RecallPatient.status.in_(ACTIVE_RECALL_STATUSES),
            )
        )
        if result.scalar_one_or_none() is not None:
            raise DuplicateEnrollmentError(
                "Patient is already active in this campaign",
                {"patient_id": str(patient_id)},
            )

        recall_patient = RecallPatient(
            tenant_id=tenant_id,
            campaign_id=campaign_id,
            patient_id=patient_id,
            reason=reason,
            due_date=due_date,
            priority=priority,
            status=RecallStatus.PENDING.value,
            contact_attempts=0,
            source=source,
            notes=notes,
            created_by=created_by,
        )
        db.add(recall_patient)
        await db.flush()
        return recall_patient

    @staticmethod
    async def identify_patients(
        db: AsyncSession,
        tenant_id: UUID,
        campaign_id: UUID,
        actor: Actor = SCHEDULER_ACTOR,
        today: Optional[date] = None,
    ) -> dict:
        """
        Run the campaign's criteria and enroll every match.

        Patients already active in the campaign are excluded by the query;
        any that slip through a race are counted as skipped.  Returns
        {"identified", "created", "skipped", "errors"}.
        """
        settings = get_settings()
        today = today or date.today()
        campaign = await RecallService.get_campaign(db, tenant_id, campaign_id)
        recall_type = campaign.recall_type
        criteria = campaign.target_criteria

        stmt = build_criteria_query(
            tenant_id, campaign_id, criteria, today, limit=settings.RECALL_IDENTIFY_LIMIT,
        )
        result = await db.execute(stmt)
        candidates = [
            (row.patient_id, row.last_visit_date) for row in result.all()
        ]

        due_date = today + timedelta(days=settings.RECALL_DEFAULT_DUE_DAYS)
        created = 0
        skipped = 0
        errors: list[str] = []

        for patient_id, last_visit in candidates:
            reason = f"{recall_type}: Last visit {last_visit.isoformat() if last_visit else 'unknown'}"
            try:
                await RecallService._enroll(
                    db,
                    tenant_id,
                    campaign_id,
                    patient_id,
                    reason=reason,
                    due_date=due_date,
                    priority=Priority.NORMAL.value,
                    source="auto",
                    notes=None,
                    created_by=actor.actor_id,
                )
                await db.commit()
                created += 1
            except (DuplicateEnrollmentError, IntegrityError):
                await db.rollback()
                skipped += 1
            except Exception as e:
                await db.rollback()
                logger.warning("identify: enrolling patient %s in campaign %s failed: %s", patient_id, campaign_id, e)
                errors.append(f"Patient {patient_id}: {e}")

        await log_audit(
            db,
            tenant_id=tenant_id,
            actor=actor,
            action="recall_patients_identified",
            resource_type="recall_campaign",
            resource_id=campaign_id,
            metadata={
                "identified": len(candidates),
                "created": created,
                "skipped": skipped,
                "errors": len(errors),
            },
        )
        await db.commit()

        logger.info(
            "identify: campaign %s found %d patients, enrolled %d, skipped %d, %d errors",
            campaign_id, len(candidates), created, skipped, len(errors),
        )
        return {
            "campaign_id": str(campaign_id),
            "identified": len(candidates),
            "created": created,
            "skipped": skipped,
            "errors": errors,
        }

    @staticmethod
    async def add_patient_to_recall(
        db: AsyncSession,
        tenant_id: UUID,
        campaign_id: UUID,
        patient_id: UUID,
        *,
        reason: Optional[str] = None,
        due_date: Optional[date] = None,
        priority: str = "normal",
        source: str = "manual",
        notes: Optional[str] = None,
        actor: Actor = SCHEDULER_ACTOR,
    ) -> RecallPatient:
        """Enroll one patient by hand (or from an import)."""
        if source not in ENROLLMENT_SOURCES:
            raise InvalidInputError(f"Invalid source: {source}")
        try:
            Priority(priority)
        except ValueError:
            raise InvalidInputError(f"Invalid priority: {priority}")

        await RecallService.get_campaign(db, tenant_id, campaign_id)
        try:
            recall_patient = await RecallService._enroll(
                db,
                tenant_id,
                campaign_id,
                patient_id,
                reason=reason,
                due_date=due_date or date.today(),
                priority=priority,
                source=source,
                notes=notes,
                created_by=actor.actor_id,
            )
            await log_audit(
                db,
                tenant_id=tenant_id,
                actor=actor,
                action="recall_patient_added",
                resource_type="recall_patient",
                resource_id=recall_patient.id,
                metadata={"campaign_id": str(campaign_id), "patient_id": str(patient_id), "source": source},
            )
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise DuplicateEnrollmentError(
                "Patient is already active in this campaign", {"patient_id": str(patient_id)},
            )
        except Exception:
            await db.rollback()
            raise

        await db.refresh(recall_patient)
        return recall_patient

    @staticmethod
    async def list_recall_patients(
        db: AsyncSession,
        tenant_id: UUID,
        *,
        campaign_id: Optional[UUID] = None,
        status: Optional[str] = None,
        patient_id: Optional[UUID] = None,
        due_before: Optional[date] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict:
        filters = [RecallPatient.tenant_id == tenant_id]
        if campaign_id:
            filters.append(RecallPatient.campaign_id == campaign_id)
        if status:
            filters.append(RecallPatient.status == status)
        if patient_id:
            filters.append(RecallPatient.patient_id == patient_id)
        if due_before:
            filters.append(RecallPatient.due_date <= due_before)

        count_result = await db.execute(select(func.count(RecallPatient.id)).where(and_(*filters)))
        total = count_result.scalar_one()

        result = await db.execute(
            select(RecallPatient)
            .where(and_(*filters))
            .order_by(RecallPatient.due_date.asc(), RecallPatient.created_at.asc())
            .limit(limit)
            .offset(offset)
        )
        return {"patients": list(result.scalars().all()), "total": total}

    # ------------------------------------------------------------------
    # Outreach
    # ------------------------------------------------------------------

    @staticmethod
    def _pick_channel(campaign_channel: str, phone: Optional[str], email: Optional[str]) -> str:
        if campaign_channel != "multi":
            return campaign_channel
        if phone:
            return "sms"
        if email:
            return "email"
        return "phone"

    @staticmethod
    def _pick_template(channel: str, templates: dict) -> str:
        if channel == "sms":
            return templates["sms"] or templates["generic"] or DEFAULT_RECALL_MESSAGE
        if channel == "email":
            return templates["email"] or templates["generic"] or DEFAULT_RECALL_MESSAGE
        return templates["generic"] or DEFAULT_RECALL_MESSAGE

    @staticmethod
    async def process_outreach(
        db: AsyncSession,
        tenant_id: UUID,
        campaign_id: UUID,
        limit: Optional[int] = None,
        actor: Actor = SCHEDULER_ACTOR,
        now: Optional[datetime] = None,
    ) -> dict:
        """
        Contact enrollees whose next contact is due.

        First closes cadences that have run out: ``contacted`` enrollees at
        max attempts whose follow-up window has passed become
        ``unable_to_reach``.  Then each due enrollee (pending/contacted, under
        max attempts, next contact empty or past) gets one message and a
        contact-log row, moves to ``contacted`` and is rescheduled
        ``frequency_days`` out.  A failed delivery still uses the attempt and
        counts as failed.

        Each enrollee is locked (``SKIP LOCKED``) and re-checked before its
        message is sent; one that another run holds or has already moved on
        is skipped without sending.

        Returns {"processed", "successful", "failed", "skipped", "exhausted", "errors"}.
        """
        settings = get_settings()
        now = now or _utcnow()
        if limit is None:
            limit = settings.RECALL_OUTREACH_BATCH_LIMIT

        campaign = await RecallService.get_campaign(db, tenant_id, campaign_id)
        if not campaign.is_active:
            raise InvalidStateError("Recall campaign is not active", {"campaign_id": str(campaign_id)})

        campaign_name = campaign.name
        campaign_channel = campaign.channel
        max_attempts = campaign.max_attempts
        frequency_days = campaign.frequency_days
        templates = {
            "generic": campaign.message_template,
            "sms": campaign.message_template_sms,
            "email": campaign.message_template_email,
        }

        due_window = or_(RecallPatient.next_contact_at.is_(None), RecallPatient.next_contact_at <= now)
        outreach_statuses = [RecallStatus.PENDING.value, RecallStatus.CONTACTED.value]

        try:
            result = await db.execute(
                update(RecallPatient)
                .where(
                    RecallPatient.campaign_id == campaign_id,
                    RecallPatient.tenant_id == tenant_id,
                    RecallPatient.status == RecallStatus.CONTACTED.value,
                    RecallPatient.contact_attempts >= max_attempts,
                    due_window,
                )
                .values(status=RecallStatus.UNABLE_TO_REACH.value)
                .returning(RecallPatient.id)
                .execution_options(synchronize_session=False)
            )
            exhausted = len(result.scalars().all())
            if exhausted:
                await db.commit()
        except Exception:
            await db.rollback()
            raise

        result = await db.execute(
            select(
                RecallPatient.id,
                RecallPatient.due_date,
                Patient.first_name,
                Patient.last_name,
                Patient.phone,
                Patient.email,
            )
            .join(Patient, Patient.id == RecallPatient.patient_id)
            .where(
                RecallPatient.campaign_id == campaign_id,
                RecallPatient.tenant_id == tenant_id,
                RecallPatient.status.in_(outreach_statuses),
                RecallPatient.contact_attempts < max_attempts,
                due_window,
            )
            .order_by(RecallPatient.due_date.asc(), RecallPatient.created_at.asc())
            .limit(limit)
        )
        due = [tuple(row) for row in result.all()]

        successful = 0
        failed = 0
        skipped = 0
        errors: list[str] = []

        for recall_patient_id, due_date, first_name, last_name, phone, email in due:
            channel = RecallService._pick_channel(campaign_channel, phone, email)
            body = render_template(
                RecallService._pick_template(channel, templates),
                {
                    "patientFirstName": first_name,
                    "patientLastName": last_name,
                    "patientName": f"{first_name} {last_name}".strip(),
                    "practiceName": settings.CLINIC_NAME,
                    "practicePhone": settings.CLINIC_PHONE,
                    "campaignName": campaign_name,
                    "dueDate": due_date.isoformat() if due_date else None,
                },
            )
            try:
                # Re-check under a row lock; rows held or changed by another run are skipped unsent
                locked = await db.execute(
                    select(RecallPatient)
                    .where(
                        RecallPatient.id == recall_patient_id,
                        RecallPatient.status.in_(outreach_statuses),
                        RecallPatient.contact_attempts < max_attempts,
                        due_window,
                    )
                    .with_for_update(skip_locked=True)
                )
                recall_patient = locked.scalar_one_or_none()
                if recall_patient is None:
                    skipped += 1
                    logger.info("outreach: recall patient %s changed or locked elsewhere, skipped", recall_patient_id)
                    continue

                new_status = ensure_transition(recall_patient.status, RecallStatus.CONTACTED)
                to = email if channel == "email" else phone
                receipt = await messaging.send_message(channel, to, body)

                db.add(RecallContactLog(
                    tenant_id=tenant_id,
                    recall_patient_id=recall_patient_id,
                    channel=channel,
                    message_sent=body,
                    sent_at=now,
                    sent_by=actor.actor_id,
                    delivery_status=receipt["status"],
                    delivery_error=receipt.get("error"),
                    external_message_id=receipt.get("external_id"),
                ))
                recall_patient.status = new_status.value
                recall_patient.last_contact_at = now
                recall_patient.next_contact_at = now + timedelta(days=frequency_days)
                recall_patient.contact_attempts = (recall_patient.contact_attempts or 0) + 1
                await db.commit()
            except Exception as e:
                await db.rollback()
                failed += 1
                logger.warning("outreach: recall patient %s failed: %s", recall_patient_id, e)
                errors.append(f"Recall patient {recall_patient_id}: {e}")
                continue

            if receipt["status"] == "failed":
                failed += 1
                errors.append(f"Recall patient {recall_patient_id}: delivery failed: {receipt.get('error')}")
            else:
                successful += 1

        processed = successful + failed
        logger.info(
            "outreach: campaign %s processed %d (%d ok, %d failed, %d skipped), %d exhausted",
            campaign_id, processed, successful, failed, skipped, exhausted,
        )
        return {
            "campaign_id": str(campaign_id),
            "processed": processed,
            "successful": successful,
            "failed": failed,
            "skipped": skipped,
            "exhausted": exhausted,
            "errors": errors,
        }

    # ------------------------------------------------------------------
    # Contacts and responses
    # ------------------------------------------------------------------

    @staticmethod
    async def _lock_recall_patient(db: AsyncSession, tenant_id: UUID, recall_patient_id: UUID):
        """Returns (RecallPatient, campaign frequency_days) with the enrollment row locked."""
        result = await db.execute(
            select(RecallPatient, RecallCampaign.frequency_days)
            .join(RecallCampaign, RecallCampaign.id == RecallPatient.campaign_id)
            .where(RecallPatient.id == recall_patient_id, RecallPatient.tenant_id == tenant_id)
            .with_for_update(of=RecallPatient)
        )
        row = result.first()
        if row is None:
            raise NotFoundError("Recall patient not found", {"recall_patient_id": str(recall_patient_id)})
        return row

    @staticmethod
    async def record_contact(
        db: AsyncSession,
        tenant_id: UUID,
        recall_patient_id: UUID,
        *,
        channel: str,
        message_sent: Optional[str] = None,
        delivery_status: str = "sent",
        response: Optional[str] = None,
        response_notes: Optional[str] = None,
        actor: Actor = SCHEDULER_ACTOR,
        now: Optional[datetime] = None,
    ) -> RecallContactLog:
        """
        Log a contact made outside the outreach batch (a staff phone call,
        a letter).  Counts as an attempt while the enrollment is pending or
        contacted.
        """
        now = now or _utcnow()
        if channel not in CONTACT_CHANNELS:
            raise InvalidInputError(f"Invalid channel: {channel}")
        if delivery_status not in DELIVERY_STATUSES:
            raise InvalidInputError(f"Invalid delivery status: {delivery_status}")
        if response is not None and response not in CONTACT_RESPONSES:
            raise InvalidInputError(f"Invalid response: {response}")

        try:
            recall_patient, frequency_days = await RecallService._lock_recall_patient(db, tenant_id, recall_patient_id)
            if recall_patient.status not in ACTIVE_RECALL_STATUSES:
                raise InvalidStateError(f"Recall is already {recall_patient.status}")

            log = RecallContactLog(
                tenant_id=tenant_id,
                recall_patient_id=recall_patient_id,
                channel=channel,
                message_sent=message_sent,
                sent_at=now,
                sent_by=actor.actor_id,
                response=response,
                responded_at=now if response else None,
                response_notes=response_notes,
                delivery_status=delivery_status,
            )
            db.add(log)

            if recall_patient.status != RecallStatus.SCHEDULED.value:
                recall_patient.status = ensure_transition(recall_patient.status, RecallStatus.CONTACTED).value
                recall_patient.last_contact_at = now
                recall_patient.next_contact_at = now + timedelta(days=frequency_days)
                recall_patient.contact_attempts = (recall_patient.contact_attempts or 0) + 1

            await db.flush()
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return log

    @staticmethod
    async def record_contact_response(
        db: AsyncSession,
        tenant_id: UUID,
        contact_log_id: UUID,
        response: str,
        notes: Optional[str] = None,
        actor: Actor = SCHEDULER_ACTOR,
        now: Optional[datetime] = None,
    ) -> RecallContactLog:
        """
        Attach a late-arriving answer to a contact-log row.  The response is
        written once; an ``opted_out`` answer also dismisses the enrollment.
        """
        now = now or _utcnow()
        if response not in CONTACT_RESPONSES:
            raise InvalidInputError(f"Invalid response: {response}")

        try:
            result = await db.execute(
                select(RecallContactLog)
                .where(RecallContactLog.id == contact_log_id, RecallContactLog.tenant_id == tenant_id)
                .with_for_update()
            )
            log = result.scalar_one_or_none()
            if log is None:
                raise NotFoundError("Contact log entry not found", {"contact_log_id": str(contact_log_id)})
            if log.responded_at is not None:
                raise InvalidStateError("Contact response already recorded")

            log.response = response
            log.responded_at = now
            log.response_notes = notes

            if response == "opted_out":
                recall_patient, _ = await RecallService._lock_recall_patient(db, tenant_id, log.recall_patient_id)
                if recall_patient.status in ACTIVE_RECALL_STATUSES:
                    recall_patient.status = ensure_transition(recall_patient.status, RecallStatus.DISMISSED).value
                    recall_patient.dismissed_reason = "Patient opted out"
                    await log_audit(
                        db,
                        tenant_id=tenant_id,
                        actor=actor,
                        action="recall_patient_opted_out",
                        resource_type="recall_patient",
                        resource_id=recall_patient.id,
                    )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return log

    @staticmethod
    async def record_response(
        db: AsyncSession,
        tenant_id: UUID,
        recall_patient_id: UUID,
        response: str,
        notes: Optional[str] = None,
        actor: Actor = SCHEDULER_ACTOR,
    ) -> RecallPatient:
        """scheduled -> scheduled, declined -> declined, call_back_requested -> contacted."""
        target = RESPONSE_STATUS.get(response)
        if target is None:
            raise InvalidInputError(
                f"Invalid response. Must be one of: {', '.join(RESPONSE_STATUS)}"
            )

        try:
            recall_patient, _ = await RecallService._lock_recall_patient(db, tenant_id, recall_patient_id)
            recall_patient.status = ensure_transition(recall_patient.status, target).value
            note = f"Response ({response}): {notes}" if notes else f"Response ({response})"
            recall_patient.notes = _append_note(recall_patient.notes, note)

            await log_audit(
                db,
                tenant_id=tenant_id,
                actor=actor,
                action="recall_response_recorded",
                resource_type="recall_patient",
                resource_id=recall_patient_id,
                metadata={"response": response},
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return recall_patient

    @staticmethod
    async def schedule_appointment(
        db: AsyncSession,
        tenant_id: UUID,
        recall_patient_id: UUID,
        appointment_id: UUID,
        actor: Actor = SCHEDULER_ACTOR,
    ) -> RecallPatient:
        """Link the booked appointment and mark the enrollment scheduled."""
        try:
            recall_patient, _ = await RecallService._lock_recall_patient(db, tenant_id, recall_patient_id)

            result = await db.execute(
                select(Appointment.id).where(
                    Appointment.id == appointment_id, Appointment.tenant_id == tenant_id,
                )
            )
            if result.scalar_one_or_none() is None:
                raise NotFoundError("Appointment not found", {"appointment_id": str(appointment_id)})

            recall_patient.status = ensure_transition(recall_patient.status, RecallStatus.SCHEDULED).value
            recall_patient.scheduled_appointment_id = appointment_id

            await log_audit(
                db,
                tenant_id=tenant_id,
                actor=actor,
                action="recall_appointment_scheduled",
                resource_type="recall_patient",
                resource_id=recall_patient_id,
                metadata={"appointment_id": str(appointment_id)},
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info("Recall patient %s scheduled (appointment %s)", recall_patient_id, appointment_id)
        return recall_patient

    @staticmethod
    async def mark_completed(
        db: AsyncSession,
        tenant_id: UUID,
        recall_patient_id: UUID,
        actor: Actor = SCHEDULER_ACTOR,
        now: Optional[datetime] = None,
    ) -> RecallPatient:
        now = now or _utcnow()
        try:
            recall_patient, _ = await RecallService._lock_recall_patient(db, tenant_id, recall_patient_id)
            recall_patient.status = ensure_transition(recall_patient.status, RecallStatus.COMPLETED).value
            recall_patient.completed_at = now
            await log_audit(
                db,
                tenant_id=tenant_id,
                actor=actor,
                action="recall_completed",
                resource_type="recall_patient",
                resource_id=recall_patient_id,
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return recall_patient

    @staticmethod
    async def complete_for_appointment(
        db: AsyncSession,
        tenant_id: UUID,
        appointment_id: UUID,
        actor: Actor = SCHEDULER_ACTOR,
        now: Optional[datetime] = None,
    ) -> int:
        """Complete every scheduled recall that booked ``appointment_id``.  Returns how many."""
        result = await db.execute(
            select(RecallPatient.id).where(
                RecallPatient.tenant_id == tenant_id,
                RecallPatient.scheduled_appointment_id == appointment_id,
                RecallPatient.status == RecallStatus.SCHEDULED.value,
            )
        )
        completed = 0
        for recall_patient_id in result.scalars().all():
            await RecallService.mark_completed(db, tenant_id, recall_patient_id, actor=actor, now=now)
            completed += 1
        return completed

    @staticmethod
    async def dismiss(
        db: AsyncSession,
        tenant_id: UUID,
        recall_patient_id: UUID,
        reason: str,
        actor: Actor = SCHEDULER_ACTOR,
    ) -> RecallPatient:
        try:
            recall_patient, _ = await RecallService._lock_recall_patient(db, tenant_id, recall_patient_id)
            recall_patient.status = ensure_transition(recall_patient.status, RecallStatus.DISMISSED).value
            recall_patient.dismissed_reason = reason
            await log_audit(
                db,
                tenant_id=tenant_id,
                actor=actor,
                action="recall_dismissed",
                resource_type="recall_patient",
                resource_id=recall_patient_id,
                metadata={"reason": reason},
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return recall_patient

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    @staticmethod
    async def get_dashboard(db: AsyncSession, tenant_id: UUID, today: Optional[date] = None) -> dict:
        """
        Tenant-wide rollup: campaign counts, enrollment counts by status,
        due today / overdue, and conversion ((scheduled + completed) / total)
        overall and per campaign.
        """
        today = today or date.today()

        result = await db.execute(
            select(
                func.count(RecallCampaign.id).label("total_campaigns"),
                func.count(RecallCampaign.id).filter(RecallCampaign.is_active.is_(True)).label("active_campaigns"),
            ).where(RecallCampaign.tenant_id == tenant_id)
        )
        campaigns = result.one()

        status = RecallPatient.status
        open_status = status.in_([RecallStatus.PENDING.value, RecallStatus.CONTACTED.value])
        result = await db.execute(
            select(
                func.count(RecallPatient.id).label("total"),
                *[func.count(RecallPatient.id).filter(status == s.value).label(s.value) for s in RecallStatus],
                func.count(RecallPatient.id).filter(and_(open_status, RecallPatient.due_date == today)).label("due_today"),
                func.count(RecallPatient.id).filter(and_(open_status, RecallPatient.due_date < today)).label("overdue"),
            ).where(RecallPatient.tenant_id == tenant_id)
        )
        totals = result.one()

        converted = status.in_([RecallStatus.SCHEDULED.value, RecallStatus.COMPLETED.value])
        result = await db.execute(
            select(
                RecallCampaign.id,
                RecallCampaign.name,
                RecallCampaign.recall_type,
                RecallCampaign.is_active,
                func.count(RecallPatient.id).label("total"),
                func.count(RecallPatient.id).filter(open_status).label("open"),
                func.count(RecallPatient.id).filter(converted).label("converted"),
            )
            .outerjoin(RecallPatient, RecallPatient.campaign_id == RecallCampaign.id)
            .where(RecallCampaign.tenant_id == tenant_id)
            .group_by(RecallCampaign.id, RecallCampaign.name, RecallCampaign.recall_type, RecallCampaign.is_active)
            .order_by(RecallCampaign.name)
        )
        by_campaign = [
            {
                "campaign_id": str(row.id),
                "name": row.name,
                "recall_type": row.recall_type,
                "is_active": row.is_active,
                "total_patients": row.total or 0,
                "open": row.open or 0,
                "converted": row.converted or 0,
                "conversion_rate": conversion_rate(row.converted or 0, row.total or 0),
            }
            for row in result.all()
        ]

        total = totals.total or 0
        counts = {s.value: getattr(totals, s.value) or 0 for s in RecallStatus}
        return {
            "total_campaigns": campaigns.total_campaigns or 0,
            "active_campaigns": campaigns.active_campaigns or 0,
            "total_patients": total,
            **counts,
            "due_today": totals.due_today or 0,
            "overdue": totals.overdue or 0,
            "conversion_rate": conversion_rate(
                counts[RecallStatus.SCHEDULED.value] + counts[RecallStatus.COMPLETED.value], total,
            ),
            "by_campaign": by_campaign,
        }

    @staticmethod
    async def get_patient_history(db: AsyncSession, tenant_id: UUID, patient_id: UUID) -> dict:
        """All enrollments for one patient with their contact log, newest first."""
        result = await db.execute(
            select(RecallPatient, RecallCampaign.name, RecallCampaign.recall_type)
            .join(RecallCampaign, RecallCampaign.id == RecallPatient.campaign_id)
            .where(RecallPatient.tenant_id == tenant_id, RecallPatient.patient_id == patient_id)
            .order_by(RecallPatient.created_at.desc())
        )
        recalls = [
            {
                "id": str(rp.id),
                "campaign_id": str(rp.campaign_id),
                "campaign_name": name,
                "recall_type": recall_type,
                "status": rp.status,
                "reason": rp.reason,
                "due_date": rp.due_date.isoformat() if rp.due_date else None,
                "contact_attempts": rp.contact_attempts,
                "last_contact_at": rp.last_contact_at.isoformat() if rp.last_contact_at else None,
                "scheduled_appointment_id": str(rp.scheduled_appointment_id) if rp.scheduled_appointment_id else None,
                "created_at": rp.created_at.isoformat() if rp.created_at else None,
            }
            for rp, name, recall_type in result.all()
        ]

        result = await db.execute(
            select(RecallContactLog, RecallCampaign.name)
            .join(RecallPatient, RecallPatient.id == RecallContactLog.recall_patient_id)
            .join(RecallCampaign, RecallCampaign.id == RecallPatient.campaign_id)
            .where(RecallContactLog.tenant_id == tenant_id, RecallPatient.patient_id == patient_id)
            .order_by(RecallContactLog.sent_at.desc())
        )
        contacts = [
            {
                "id": str(log.id),
                "recall_patient_id": str(log.recall_patient_id),
                "campaign_name": name,
                "channel": log.channel,
                "message_sent": log.message_sent,
                "sent_at": log.sent_at.isoformat() if log.sent_at else None,
                "delivery_status": log.delivery_status,
                "response": log.response,
                "responded_at": log.responded_at.isoformat() if log.responded_at else None,
                "response_notes": log.response_notes,
            }
            for log, name in result.all()
        ]

        return {"patient_id": str(patient_id), "recalls": recalls, "contact_history": contacts}
