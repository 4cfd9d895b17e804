"""Waitlist, recall and audit tables; seed the built-in campaign templates.

Revision ID: a7b8c9d0e1f2
Revises: f1a2b3c4d5e6
Create Date: 2026-09-28 09:30:00.000000

Two partial unique indexes back the core invariants:
  - uq_waitlist_notifications_one_pending: one open offer per entry
  - uq_recall_patients_active_enrollment: one active enrollment per
    (campaign, patient)
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB


revision = "a7b8c9d0e1f2"
down_revision = "f1a2b3c4d5e6"
branch_labels = None
depends_on = None


def _id():
    return sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()"))


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]


SYSTEM_TEMPLATES = [
    {
        "name": "Annual Skin Check",
        "description": "Patients due for annual full-body skin examination",
        "recall_type": "annual_skin_check",
        "target_criteria": {
            "lastVisitDaysAgo": {"min": 330},
            "appointmentTypes": ["skin_check", "full_body_exam", "annual_exam"],
        },
        "message_template_sms": (
            "Hi {{patientFirstName}}, it's time for your annual skin check at {{practiceName}}. "
            "Please call {{practicePhone}} or book online to schedule."
        ),
        "message_template_email": (
            "<p>Dear {{patientFirstName}},</p><p>It has been nearly a year since your last skin examination. "
            "Regular skin checks are important for early detection of any changes.</p>"
            "<p>Please contact us at {{practicePhone}} or book online to schedule your annual skin check.</p>"
        ),
        "frequency_days": 14,
        "max_attempts": 3,
    },
    {
        "name": "Melanoma Surveillance",
        "description": "High-risk melanoma patients requiring close monitoring",
        "recall_type": "melanoma_surveillance",
        "target_criteria": {"diagnoses": ["C43.%", "D03.%"], "lastVisitDaysAgo": {"min": 75}},
        "message_template_sms": (
            "Important: {{patientFirstName}}, your melanoma follow-up is due at {{practiceName}}. "
            "Please call {{practicePhone}} to schedule promptly."
        ),
        "message_template_email": (
            "<p>Dear {{patientFirstName}},</p><p>As part of your melanoma surveillance program, "
            "it's time for your regular follow-up examination.</p><p>Regular monitoring is essential. "
            "Please contact us at {{practicePhone}} to schedule your appointment.</p>"
        ),
        "frequency_days": 7,
        "max_attempts": 5,
    },
    {
        "name": "Psoriasis Follow-up",
        "description": "Psoriasis patients on systemic therapy requiring monitoring",
        "recall_type": "psoriasis_follow_up",
        "target_criteria": {
            "diagnoses": ["L40.%"],
            "medications": ["methotrexate", "biologics", "apremilast", "cyclosporine"],
            "lastVisitDaysAgo": {"min": 80},
        },
        "message_template_sms": (
            "Hi {{patientFirstName}}, time for your psoriasis check-up at {{practiceName}}. "
            "Call {{practicePhone}} to schedule."
        ),
        "message_template_email": (
            "<p>Dear {{patientFirstName}},</p><p>It's time for your regular psoriasis follow-up appointment "
            "to monitor your treatment progress.</p><p>Please call {{practicePhone}} or book online.</p>"
        ),
        "frequency_days": 14,
        "max_attempts": 3,
    },
    {
        "name": "Acne Treatment Follow-up",
        "description": "Acne patients currently on treatment",
        "recall_type": "acne_follow_up",
        "target_criteria": {
            "diagnoses": ["L70.%"],
            "medications": ["isotretinoin", "spironolactone", "tretinoin"],
            "lastVisitDaysAgo": {"min": 25},
        },
        "message_template_sms": (
            "Hi {{patientFirstName}}, your acne follow-up is due at {{practiceName}}. "
            "Please call {{practicePhone}} to schedule."
        ),
        "message_template_email": (
            "<p>Dear {{patientFirstName}},</p><p>It's time for your acne treatment follow-up appointment.</p>"
            "<p>Please contact us at {{practicePhone}} to schedule.</p>"
        ),
        "frequency_days": 7,
        "max_attempts": 3,
    },
    {
        "name": "Post-Procedure Check",
        "description": "Patients requiring follow-up after dermatologic procedures",
        "recall_type": "post_procedure_check",
        "target_criteria": {
            "proceduresWithinDays": 14,
            "procedures": ["11100", "11102", "11104", "11106", "17000", "17003"],
        },
        "message_template_sms": (
            "Hi {{patientFirstName}}, please call {{practiceName}} at {{practicePhone}} "
            "to schedule your post-procedure follow-up."
        ),
        "message_template_email": (
            "<p>Dear {{patientFirstName}},</p><p>Following your recent procedure, a follow-up visit is "
            "recommended.</p><p>Please contact us at {{practicePhone}} to schedule.</p>"
        ),
        "frequency_days": 3,
        "max_attempts": 4,
    },
    {
        "name": "Lab Recheck",
        "description": "Patients requiring lab monitoring",
        "recall_type": "lab_recheck",
        "target_criteria": {
            "labsDueDaysAgo": {"min": -7, "max": 7},
            "labTypes": ["CBC", "CMP", "LFT", "lipid_panel"],
        },
        "message_template_sms": (
            "Hi {{patientFirstName}}, your lab work is due. Please visit the lab before your next "
            "appointment. Questions? Call {{practicePhone}}."
        ),
        "message_template_email": (
            "<p>Dear {{patientFirstName}},</p><p>It's time for your routine lab work. Please have your labs "
            "drawn before your next appointment.</p><p>If you have questions, call us at {{practicePhone}}.</p>"
        ),
        "frequency_days": 7,
        "max_attempts": 3,
    },
    {
        "name": "Prescription Renewal",
        "description": "Patients with prescriptions expiring soon",
        "recall_type": "prescription_renewal",
        "target_criteria": {"prescriptionExpiringDays": 30},
        "message_template_sms": (
            "Hi {{patientFirstName}}, your prescription from {{practiceName}} expires soon. "
            "Call {{practicePhone}} if you need a renewal appointment."
        ),
        "message_template_email": (
            "<p>Dear {{patientFirstName}},</p><p>One or more of your prescriptions will expire soon. "
            "If you need a renewal, please schedule an appointment.</p><p>Call us at {{practicePhone}}.</p>"
        ),
        "frequency_days": 14,
        "max_attempts": 2,
    },
    {
        "name": "Inactive Patient Reactivation",
        "description": "Patients not seen in 18+ months",
        "recall_type": "inactive_patients",
        "target_criteria": {"lastVisitDaysAgo": {"min": 540}},
        "message_template_sms": (
            "We miss you at {{practiceName}}! It's been a while since your last visit. "
            "Call {{practicePhone}} to schedule a skin check."
        ),
        "message_template_email": (
            "<p>Dear {{patientFirstName}},</p><p>We haven't seen you in a while and wanted to reach out. "
            "Regular skin examinations are important for your health.</p>"
            "<p>Please call {{practicePhone}} to schedule an appointment.</p>"
        ),
        "frequency_days": 30,
        "max_attempts": 2,
    },
]


def upgrade() -> None:
    # -----------------------------------------------------------------------
    # Waitlist
    # -----------------------------------------------------------------------
    op.create_table(
        "waitlist_entries",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("patient_id", UUID(as_uuid=True), sa.ForeignKey("patients.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider_id", UUID(as_uuid=True), nullable=True),
        sa.Column("appointment_type_id", UUID(as_uuid=True), nullable=True),
        sa.Column("location_id", UUID(as_uuid=True), nullable=True),
        sa.Column("preferred_dates", JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column(
            "preferred_times", JSONB(), nullable=False,
            server_default=sa.text("""'{"morning": true, "afternoon": true, "evening": false}'::jsonb"""),
        ),
        sa.Column(
            "preferred_days_of_week", JSONB(), nullable=False,
            server_default=sa.text("""'["monday", "tuesday", "wednesday", "thursday", "friday"]'::jsonb"""),
        ),
        sa.Column("flexibility_days", sa.Integer(), nullable=False, server_default="7"),
        sa.Column("priority", sa.String(10), nullable=False, server_default="normal"),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scheduled_appointment_id", UUID(as_uuid=True), sa.ForeignKey("appointments.id"), nullable=True),
        sa.Column("created_by", UUID(as_uuid=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('active', 'matched', 'notified', 'scheduled', 'cancelled', 'expired')",
            name="ck_waitlist_entry_status",
        ),
        sa.CheckConstraint("priority IN ('low', 'normal', 'high', 'urgent')", name="ck_waitlist_entry_priority"),
    )
    op.create_index("ix_waitlist_entries_tenant_status", "waitlist_entries", ["tenant_id", "status"], if_not_exists=True)
    op.create_index("ix_waitlist_entries_patient", "waitlist_entries", ["patient_id"], if_not_exists=True)
    op.create_index("ix_waitlist_entries_provider", "waitlist_entries", ["provider_id"], if_not_exists=True)

    op.create_table(
        "waitlist_notifications",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column(
            "waitlist_entry_id", UUID(as_uuid=True),
            sa.ForeignKey("waitlist_entries.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("slot_offered", JSONB(), nullable=False),
        sa.Column("offered_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("response", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("response_notes", sa.Text(), nullable=True),
        sa.Column("notification_channel", sa.String(20), nullable=False),
        sa.Column("notification_sent", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("notification_error", sa.Text(), nullable=True),
        sa.Column("external_message_id", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "response IN ('pending', 'accepted', 'declined', 'expired', 'no_response')",
            name="ck_waitlist_notification_response",
        ),
        sa.CheckConstraint(
            "notification_channel IN ('sms', 'email', 'phone', 'portal', 'auto')",
            name="ck_waitlist_notification_channel",
        ),
    )
    op.create_index(
        "ix_waitlist_notifications_entry", "waitlist_notifications", ["waitlist_entry_id"], if_not_exists=True,
    )
    op.create_index(
        "ix_waitlist_notifications_expires", "waitlist_notifications", ["expires_at"], if_not_exists=True,
    )
    op.create_index(
        "uq_waitlist_notifications_one_pending",
        "waitlist_notifications",
        ["waitlist_entry_id"],
        unique=True,
        postgresql_where=sa.text("response = 'pending'"),
        if_not_exists=True,
    )

    # -----------------------------------------------------------------------
    # Recall
    # -----------------------------------------------------------------------
    op.create_table(
        "recall_campaigns",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("recall_type", sa.String(50), nullable=False),
        sa.Column("target_criteria", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("message_template", sa.Text(), nullable=True),
        sa.Column("message_template_sms", sa.Text(), nullable=True),
        sa.Column("message_template_email", sa.Text(), nullable=True),
        sa.Column("channel", sa.String(20), nullable=False, server_default="sms"),
        sa.Column("frequency_days", sa.Integer(), nullable=False, server_default="14"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("auto_identify", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("identify_schedule", sa.String(100), nullable=True),
        sa.Column("created_by", UUID(as_uuid=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "recall_type IN ('annual_skin_check', 'melanoma_surveillance', 'follow_up_visit', "
            "'treatment_continuation', 'lab_recheck', 'prescription_renewal', 'post_procedure_check', "
            "'psoriasis_follow_up', 'acne_follow_up', 'inactive_patients', 'custom')",
            name="ck_recall_campaign_type",
        ),
        sa.CheckConstraint(
            "channel IN ('sms', 'email', 'phone', 'mail', 'portal', 'multi')",
            name="ck_recall_campaign_channel",
        ),
        sa.CheckConstraint("frequency_days > 0", name="ck_recall_campaign_frequency"),
        sa.CheckConstraint("max_attempts > 0", name="ck_recall_campaign_attempts"),
    )
    op.create_index(
        "ix_recall_campaigns_tenant_active", "recall_campaigns", ["tenant_id", "is_active"], if_not_exists=True,
    )

    op.create_table(
        "recall_patients",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column(
            "campaign_id", UUID(as_uuid=True),
            sa.ForeignKey("recall_campaigns.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("patient_id", UUID(as_uuid=True), sa.ForeignKey("patients.id", ondelete="CASCADE"), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("priority", sa.String(10), nullable=False, server_default="normal"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("last_contact_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_contact_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("contact_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("scheduled_appointment_id", UUID(as_uuid=True), sa.ForeignKey("appointments.id"), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dismissed_reason", sa.Text(), nullable=True),
        sa.Column("source", sa.String(20), nullable=False, server_default="auto"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", UUID(as_uuid=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'contacted', 'scheduled', 'completed', 'declined', "
            "'unable_to_reach', 'dismissed')",
            name="ck_recall_patient_status",
        ),
        sa.CheckConstraint("priority IN ('low', 'normal', 'high', 'urgent')", name="ck_recall_patient_priority"),
        sa.CheckConstraint("source IN ('auto', 'manual', 'import')", name="ck_recall_patient_source"),
    )
    op.create_index(
        "ix_recall_patients_campaign_status", "recall_patients", ["campaign_id", "status"], if_not_exists=True,
    )
    op.create_index("ix_recall_patients_tenant_due", "recall_patients", ["tenant_id", "due_date"], if_not_exists=True)
    op.create_index("ix_recall_patients_patient", "recall_patients", ["patient_id"], if_not_exists=True)
    op.create_index(
        "uq_recall_patients_active_enrollment",
        "recall_patients",
        ["campaign_id", "patient_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'contacted', 'scheduled')"),
        if_not_exists=True,
    )

    op.create_table(
        "recall_contact_log",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column(
            "recall_patient_id", UUID(as_uuid=True),
            sa.ForeignKey("recall_patients.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("channel", sa.String(20), nullable=False),
        sa.Column("message_sent", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("sent_by", UUID(as_uuid=True), nullable=True),
        sa.Column("response", sa.String(30), nullable=True),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("response_notes", sa.Text(), nullable=True),
        sa.Column("delivery_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("delivery_error", sa.Text(), nullable=True),
        sa.Column("external_message_id", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "channel IN ('sms', 'email', 'phone', 'mail', 'portal')", name="ck_recall_contact_channel",
        ),
        sa.CheckConstraint(
            "delivery_status IN ('pending', 'sent', 'delivered', 'failed', 'bounced')",
            name="ck_recall_contact_delivery",
        ),
    )
    op.create_index(
        "ix_recall_contact_log_recall_patient", "recall_contact_log", ["recall_patient_id"], if_not_exists=True,
    )
    op.create_index("ix_recall_contact_log_sent_at", "recall_contact_log", ["sent_at"], if_not_exists=True)

    templates = op.create_table(
        "recall_campaign_templates",
        _id(),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("recall_type", sa.String(50), nullable=False),
        sa.Column("target_criteria", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("message_template_sms", sa.Text(), nullable=True),
        sa.Column("message_template_email", sa.Text(), nullable=True),
        sa.Column("frequency_days", sa.Integer(), nullable=False, server_default="14"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.bulk_insert(templates, SYSTEM_TEMPLATES)

    # -----------------------------------------------------------------------
    # Audit
    # -----------------------------------------------------------------------
    op.create_table(
        "audit_logs",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=True),
        sa.Column("actor_id", UUID(as_uuid=True), nullable=True),
        sa.Column("actor_type", sa.String(20), nullable=False),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("resource_type", sa.String(50), nullable=True),
        sa.Column("resource_id", UUID(as_uuid=True), nullable=True),
        sa.Column("metadata", JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        if_not_exists=True,
    )
    op.create_index("ix_audit_logs_tenant_created", "audit_logs", ["tenant_id", "created_at"], if_not_exists=True)


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("recall_campaign_templates")
    op.drop_table("recall_contact_log")
    op.drop_table("recall_patients")
    op.drop_table("recall_campaigns")
    op.drop_table("waitlist_notifications")
    op.drop_table("waitlist_entries")
