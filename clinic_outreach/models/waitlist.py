from sqlalchemy import Column, CheckConstraint, Index, String, Integer, Boolean, Text, DateTime, ForeignKey, text
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.sql import func

from clinic_outreach.database import Base

DEFAULT_PREFERRED_TIMES = {"morning": True, "afternoon": True, "evening": False}
DEFAULT_PREFERRED_DAYS = ["monday", "tuesday", "wednesday", "thursday", "friday"]


class WaitlistEntry(Base):
    __tablename__ = "waitlist_entries"
    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'matched', 'notified', 'scheduled', 'cancelled', 'expired')",
            name="ck_waitlist_entry_status",
        ),
        CheckConstraint(
            "priority IN ('low', 'normal', 'high', 'urgent')",
            name="ck_waitlist_entry_priority",
        ),
        Index("ix_waitlist_entries_tenant_status", "tenant_id", "status"),
        Index("ix_waitlist_entries_patient", "patient_id"),
        Index("ix_waitlist_entries_provider", "provider_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    patient_id = Column(UUID(as_uuid=True), ForeignKey("patients.id", ondelete="CASCADE"), nullable=False)
    provider_id = Column(UUID(as_uuid=True), nullable=True)  # NULL = any provider
    appointment_type_id = Column(UUID(as_uuid=True), nullable=True)  # NULL = any type
    location_id = Column(UUID(as_uuid=True), nullable=True)  # NULL = any location
    preferred_dates = Column(JSONB, default=list, nullable=False)  # [{"date": "YYYY-MM-DD", "weight": 1-10}]
    preferred_times = Column(JSONB, default=lambda: dict(DEFAULT_PREFERRED_TIMES), nullable=False)
    preferred_days_of_week = Column(JSONB, default=lambda: list(DEFAULT_PREFERRED_DAYS), nullable=False)
    flexibility_days = Column(Integer, default=7, nullable=False)
    priority = Column(String(10), default="normal", nullable=False)
    reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    status = Column(String(20), default="active", nullable=False)
    notified_at = Column(DateTime(timezone=True), nullable=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=True)
    scheduled_appointment_id = Column(UUID(as_uuid=True), ForeignKey("appointments.id"), nullable=True)
    created_by = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<WaitlistEntry(id={self.id}, patient={self.patient_id}, status='{self.status}')>"


class WaitlistNotification(Base):
    __tablename__ = "waitlist_notifications"
    __table_args__ = (
        CheckConstraint(
            "response IN ('pending', 'accepted', 'declined', 'expired', 'no_response')",
            name="ck_waitlist_notification_response",
        ),
        CheckConstraint(
            "notification_channel IN ('sms', 'email', 'phone', 'portal', 'auto')",
            name="ck_waitlist_notification_channel",
        ),
        Index("ix_waitlist_notifications_entry", "waitlist_entry_id"),
        Index("ix_waitlist_notifications_expires", "expires_at"),
        # At most one open offer per entry
        Index(
            "uq_waitlist_notifications_one_pending",
            "waitlist_entry_id",
            unique=True,
            postgresql_where=text("response = 'pending'"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    waitlist_entry_id = Column(
        UUID(as_uuid=True), ForeignKey("waitlist_entries.id", ondelete="CASCADE"), nullable=False,
    )
    slot_offered = Column(JSONB, nullable=False)
    offered_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    response = Column(String(20), default="pending", nullable=False)
    responded_at = Column(DateTime(timezone=True), nullable=True)
    response_notes = Column(Text, nullable=True)
    notification_channel = Column(String(20), nullable=False)
    notification_sent = Column(Boolean, default=False, nullable=False)
    notification_error = Column(Text, nullable=True)
    external_message_id = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<WaitlistNotification(id={self.id}, entry={self.waitlist_entry_id}, response='{self.response}')>"
