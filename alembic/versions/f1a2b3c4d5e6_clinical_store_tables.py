"""Clinical store tables read by the outreach core.

Revision ID: f1a2b3c4d5e6
Revises:
Create Date: 2026-09-28 09:00:00.000000

These tables normally belong to the wider clinic backend.  They are created
only when missing, so the migration is a no-op against an existing clinic
database and gives a standalone deployment the columns the outreach queries
need.
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


revision = "f1a2b3c4d5e6"
down_revision = None
branch_labels = None
depends_on = None


def _id():
    return sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()"))


def _patient_fk():
    return sa.Column("patient_id", UUID(as_uuid=True), sa.ForeignKey("patients.id"), nullable=False)


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    op.create_table(
        "patients",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("first_name", sa.String(255), nullable=False),
        sa.Column("last_name", sa.String(255), nullable=False),
        sa.Column("dob", sa.Date(), nullable=True),
        sa.Column("phone", sa.String(20), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("risk_level", sa.String(20), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        if_not_exists=True,
    )
    op.create_index(
        "ix_patients_tenant_name", "patients", ["tenant_id", "last_name", "first_name"], if_not_exists=True,
    )

    op.create_table(
        "appointments",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        _patient_fk(),
        sa.Column("provider_id", UUID(as_uuid=True), nullable=True),
        sa.Column("location_id", UUID(as_uuid=True), nullable=True),
        sa.Column("appointment_type_id", UUID(as_uuid=True), nullable=True),
        sa.Column("scheduled_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scheduled_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default="scheduled"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        if_not_exists=True,
    )
    op.create_index(
        "ix_appointments_tenant_start", "appointments", ["tenant_id", "scheduled_start"], if_not_exists=True,
    )

    op.create_table(
        "encounters",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        _patient_fk(),
        sa.Column("encounter_date", sa.Date(), nullable=False),
        if_not_exists=True,
    )
    op.create_table(
        "diagnoses",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        _patient_fk(),
        sa.Column("icd10_code", sa.String(20), nullable=False),
        if_not_exists=True,
    )
    op.create_table(
        "charges",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        _patient_fk(),
        sa.Column("cpt_code", sa.String(10), nullable=False),
        sa.Column("service_date", sa.Date(), nullable=False),
        if_not_exists=True,
    )
    op.create_table(
        "prescriptions",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        _patient_fk(),
        sa.Column("medication_name", sa.String(255), nullable=False),
        sa.Column("expires_on", sa.Date(), nullable=True),
        if_not_exists=True,
    )
    op.create_table(
        "lab_orders",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        _patient_fk(),
        sa.Column("lab_type", sa.String(100), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=True),
        if_not_exists=True,
    )

    for table in ("encounters", "diagnoses", "charges", "prescriptions", "lab_orders"):
        op.create_index(f"ix_{table}_patient_id", table, ["patient_id"], if_not_exists=True)


def downgrade() -> None:
    # Shared with the clinic backend; never dropped from here
    pass
