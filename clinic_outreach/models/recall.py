from sqlalchemy import (
    Column, CheckConstraint, Index, String, Integer, Boolean, Text, Date, DateTime, ForeignKey, text,
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.sql import func

from clinic_outreach.database import Base


class RecallCampaign(Base):
    __tablename__ = "recall_campaigns"
    __table_args__ = (
        CheckConstraint(
            "recall_type IN ('annual_skin_check', 'melanoma_surveillance', 'follow_up_visit', "
            "'treatment_continuation', 'lab_recheck', 'prescription_renewal', 'post_procedure_check', "
            "'psoriasis_follow_up', 'acne_follow_up', 'inactive_patients', 'custom')",
            name="ck_recall_campaign_type",
        ),
        CheckConstraint(
            "channel IN ('sms', 'email', 'phone', 'mail', 'portal', 'multi')",
            name="ck_recall_campaign_channel",
        ),
        CheckConstraint("frequency_days > 0", name="ck_recall_campaign_frequency"),
        CheckConstraint("max_attempts > 0", name="ck_recall_campaign_attempts"),
        Index("ix_recall_campaigns_tenant_active", "tenant_id", "is_active"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    recall_type = Column(String(50), nullable=False)
    target_criteria = Column(JSONB, default=dict, nullable=False)
    message_template = Column(Text, nullable=True)
    message_template_sms = Column(Text, nullable=True)
    message_template_email = Column(Text, nullable=True)
    channel = Column(String(20), default="sms", nullable=False)
    frequency_days = Column(Integer, default=14, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    auto_identify = Column(Boolean, default=False, nullable=False)
    identify_schedule = Column(String(100), nullable=True)  # cron expression, run by the host scheduler
    created_by = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<RecallCampaign(id={self.id}, name='{self.name}', type='{self.recall_type}')>"


class RecallPatient(Base):
    __tablename__ = "recall_patients"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'contacted', 'scheduled', 'completed', 'declined', "
            "'unable_to_reach', 'dismissed')",
            name="ck_recall_patient_status",
        ),
        CheckConstraint(
            "priority IN ('low', 'normal', 'high', 'urgent')",
            name="ck_recall_patient_priority",
        ),
        CheckConstraint("source IN ('auto', 'manual', 'import')", name="ck_recall_patient_source"),
        Index("ix_recall_patients_campaign_status", "campaign_id", "status"),
        Index("ix_recall_patients_tenant_due", "tenant_id", "due_date"),
        Index("ix_recall_patients_patient", "patient_id"),
        # One active enrollment per (campaign, patient)
        Index(
            "uq_recall_patients_active_enrollment",
            "campaign_id",
            "patient_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'contacted', 'scheduled')"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    campaign_id = Column(UUID(as_uuid=True), ForeignKey("recall_campaigns.id", ondelete="CASCADE"), nullable=False)
    patient_id = Column(UUID(as_uuid=True), ForeignKey("patients.id", ondelete="CASCADE"), nullable=False)
    reason = Column(Text, nullable=True)
    due_date = Column(Date, nullable=False)
    priority = Column(String(10), default="normal", nullable=False)
    status = Column(String(20), default="pending", nullable=False)
    last_contact_at = Column(DateTime(timezone=True), nullable=True)
    next_contact_at = Column(DateTime(timezone=True), nullable=True)
    contact_attempts = Column(Integer, default=0, nullable=False)
    scheduled_appointment_id = Column(UUID(as_uuid=True), ForeignKey("appointments.id"), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    dismissed_reason = Column(Text, nullable=True)
    source = Column(String(20), default="auto", nullable=False)
    notes = Column(Text, nullable=True)
    created_by = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<RecallPatient(id={self.id}, campaign={self.campaign_id}, status='{self.status}')>"


class RecallContactLog(Base):
    __tablename__ = "recall_contact_log"
    __table_args__ = (
        CheckConstraint(
            "channel IN ('sms', 'email', 'phone', 'mail', 'portal')",
            name="ck_recall_contact_channel",
        ),
        CheckConstraint(
            "delivery_status IN ('pending', 'sent', 'delivered', 'failed', 'bounced')",
            name="ck_recall_contact_delivery",
        ),
        Index("ix_recall_contact_log_recall_patient", "recall_patient_id"),
        Index("ix_recall_contact_log_sent_at", "sent_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    recall_patient_id = Column(
        UUID(as_uuid=True), ForeignKey("recall_patients.id", ondelete="CASCADE"), nullable=False,
    )
    channel = Column(String(20), nullable=False)
    message_sent = Column(Text, nullable=True)
    sent_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    sent_by = Column(UUID(as_uuid=True), nullable=True)  # NULL = scheduler
    response = Column(String(30), nullable=True)
    responded_at = Column(DateTime(timezone=True), nullable=True)
    response_notes = Column(Text, nullable=True)
    delivery_status = Column(String(20), default="pending", nullable=False)
    delivery_error = Column(Text, nullable=True)
    external_message_id = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class RecallCampaignTemplate(Base):
    """System-wide campaign presets, seeded by migration."""

    __tablename__ = "recall_campaign_templates"

    id = Column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    name = Column(String(255), nullable=False, unique=True)
    description = Column(Text, nullable=True)
    recall_type = Column(String(50), nullable=False)
    target_criteria = Column(JSONB, default=dict, nullable=False)
    message_template_sms = Column(Text, nullable=True)
    message_template_email = Column(Text, nullable=True)
    frequency_days = Column(Integer, default=14, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    is_system = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
