import re
from datetime import date, datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from clinic_outreach.lifecycle import (
    CAMPAIGN_CHANNELS,
    CONTACT_CHANNELS,
    CONTACT_RESPONSES,
    DELIVERY_STATUSES,
    RECALL_TYPES,
    Priority,
    RecallStatus,
)
from clinic_outreach.schemas.waitlist import _one_of

PRIORITIES = tuple(p.value for p in Priority)
RECALL_STATUSES = tuple(s.value for s in RecallStatus)
EXPLICIT_RESPONSES = ("scheduled", "declined", "call_back_requested")

_CODE = r"^[A-Za-z0-9.]{1,20}[%*]?$"


# ---------------------------------------------------------------------------
# Targeting criteria (stored camelCase in recall_campaigns.target_criteria)
# ---------------------------------------------------------------------------

class DayRange(BaseModel):
    """Day or year bounds; either side may be omitted."""

    model_config = ConfigDict(extra="forbid")

    min: Optional[int] = None
    max: Optional[int] = None

    @model_validator(mode="after")
    def min_not_above_max(self):
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError("min cannot be greater than max")
        return self


class TargetCriteria(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    last_visit_days_ago: Optional[DayRange] = Field(None, alias="lastVisitDaysAgo")
    diagnoses: Optional[list[str]] = Field(None, max_length=100)
    procedures: Optional[list[str]] = Field(None, max_length=100)
    procedures_within_days: Optional[int] = Field(None, alias="proceduresWithinDays", ge=1, le=3650)
    age_range: Optional[DayRange] = Field(None, alias="ageRange")
    risk_level: Optional[list[str]] = Field(None, alias="riskLevel", max_length=10)
    medications: Optional[list[str]] = Field(None, max_length=100)
    labs_due_days_ago: Optional[DayRange] = Field(None, alias="labsDueDaysAgo")
    lab_types: Optional[list[str]] = Field(None, alias="labTypes", max_length=50)
    prescription_expiring_days: Optional[int] = Field(None, alias="prescriptionExpiringDays", ge=0, le=365)
    # Informational; not used for targeting
    appointment_types: Optional[list[str]] = Field(None, alias="appointmentTypes", max_length=50)

    @field_validator("diagnoses", "procedures")
    @classmethod
    def valid_codes(cls, v: Optional[list[str]]) -> Optional[list[str]]:
        if v is None:
            return v
        codes = [c.strip() for c in v if c and c.strip()]
        for code in codes:
            if not re.match(_CODE, code):
                raise ValueError(f"Invalid code: {code}")
        return codes

    @field_validator("risk_level", "medications", "lab_types", "appointment_types")
    @classmethod
    def non_blank(cls, v: Optional[list[str]]) -> Optional[list[str]]:
        if v is None:
            return v
        values = [s.strip() for s in v if s and s.strip()]
        for s in values:
            if len(s) > 255:
                raise ValueError("Criteria values are limited to 255 characters")
        return values

    @model_validator(mode="after")
    def non_negative_ranges(self):
        # labsDueDaysAgo may reach into the future (negative days); the others may not
        for label, bounds in (("lastVisitDaysAgo", self.last_visit_days_ago), ("ageRange", self.age_range)):
            if bounds is None:
                continue
            for value in (bounds.min, bounds.max):
                if value is not None and value < 0:
                    raise ValueError(f"{label} bounds must not be negative")
        return self

    def to_storage(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Campaigns
# ---------------------------------------------------------------------------

class CreateCampaignRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = Field(None, max_length=2000)
    recall_type: str
    target_criteria: TargetCriteria = Field(default_factory=TargetCriteria)
    message_template: str | None = Field(None, max_length=2000)
    message_template_sms: str | None = Field(None, max_length=1600)
    message_template_email: str | None = Field(None, max_length=10000)
    channel: str = "sms"
    frequency_days: int = Field(default=14, ge=1, le=365)
    max_attempts: int = Field(default=3, ge=1, le=10)
    is_active: bool = True
    auto_identify: bool = False
    identify_schedule: str | None = Field(None, max_length=100)

    @field_validator("recall_type")
    @classmethod
    def valid_recall_type(cls, v: str) -> str:
        return _one_of(v, RECALL_TYPES, "recall type")

    @field_validator("channel")
    @classmethod
    def valid_channel(cls, v: str) -> str:
        return _one_of(v, CAMPAIGN_CHANNELS, "channel")


class UpdateCampaignRequest(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = Field(None, max_length=2000)
    recall_type: str | None = None
    target_criteria: TargetCriteria | None = None
    message_template: str | None = Field(None, max_length=2000)
    message_template_sms: str | None = Field(None, max_length=1600)
    message_template_email: str | None = Field(None, max_length=10000)
    channel: str | None = None
    frequency_days: int | None = Field(None, ge=1, le=365)
    max_attempts: int | None = Field(None, ge=1, le=10)
    is_active: bool | None = None
    auto_identify: bool | None = None
    identify_schedule: str | None = Field(None, max_length=100)

    @field_validator("recall_type")
    @classmethod
    def valid_recall_type(cls, v: str | None) -> str | None:
        return _one_of(v, RECALL_TYPES, "recall type")

    @field_validator("channel")
    @classmethod
    def valid_channel(cls, v: str | None) -> str | None:
        return _one_of(v, CAMPAIGN_CHANNELS, "channel")


class CampaignResponse(BaseModel):
    id: UUID
    tenant_id: UUID
    name: str
    description: str | None = None
    recall_type: str
    target_criteria: dict[str, Any] = {}
    message_template: str | None = None
    message_template_sms: str | None = None
    message_template_email: str | None = None
    channel: str
    frequency_days: int
    max_attempts: int
    is_active: bool
    auto_identify: bool
    identify_schedule: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class CampaignTemplateResponse(BaseModel):
    id: UUID
    name: str
    description: str | None = None
    recall_type: str
    target_criteria: dict[str, Any] = {}
    message_template_sms: str | None = None
    message_template_email: str | None = None
    frequency_days: int
    max_attempts: int

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Recall patients and contacts
# ---------------------------------------------------------------------------

class AddRecallPatientRequest(BaseModel):
    campaign_id: UUID
    patient_id: UUID
    reason: str | None = Field(None, max_length=2000)
    due_date: date | None = None
    priority: str = "normal"
    source: str = "manual"
    notes: str | None = Field(None, max_length=2000)

    @field_validator("priority")
    @classmethod
    def valid_priority(cls, v: str) -> str:
        return _one_of(v, PRIORITIES, "priority")

    @field_validator("source")
    @classmethod
    def valid_source(cls, v: str) -> str:
        return _one_of(v, ("manual", "import"), "source")


class RecordContactRequest(BaseModel):
    channel: str
    message_sent: str | None = Field(None, max_length=5000)
    delivery_status: str = "sent"
    response: str | None = None
    response_notes: str | None = Field(None, max_length=2000)

    @field_validator("channel")
    @classmethod
    def valid_channel(cls, v: str) -> str:
        return _one_of(v, CONTACT_CHANNELS, "channel")

    @field_validator("delivery_status")
    @classmethod
    def valid_delivery_status(cls, v: str) -> str:
        return _one_of(v, DELIVERY_STATUSES, "delivery status")

    @field_validator("response")
    @classmethod
    def valid_response(cls, v: str | None) -> str | None:
        return _one_of(v, CONTACT_RESPONSES, "response")


class ContactResponseRequest(BaseModel):
    response: str
    notes: str | None = Field(None, max_length=2000)

    @field_validator("response")
    @classmethod
    def valid_response(cls, v: str) -> str:
        return _one_of(v, CONTACT_RESPONSES, "response")


class RecallResponseRequest(BaseModel):
    response: str
    notes: str | None = Field(None, max_length=2000)

    @field_validator("response")
    @classmethod
    def valid_response(cls, v: str) -> str:
        return _one_of(v, EXPLICIT_RESPONSES, "response")


class ScheduleRecallRequest(BaseModel):
    appointment_id: UUID


class DismissRecallRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class ProcessOutreachRequest(BaseModel):
    limit: int = Field(default=50, ge=1, le=500)


class RecallPatientResponse(BaseModel):
    id: UUID
    campaign_id: UUID
    patient_id: UUID
    reason: str | None = None
    due_date: date
    priority: str
    status: str
    last_contact_at: datetime | None = None
    next_contact_at: datetime | None = None
    contact_attempts: int
    scheduled_appointment_id: UUID | None = None
    completed_at: datetime | None = None
    dismissed_reason: str | None = None
    source: str
    notes: str | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class ContactLogResponse(BaseModel):
    id: UUID | None = None
    recall_patient_id: UUID
    channel: str
    message_sent: str | None = None
    sent_at: datetime | None = None
    sent_by: UUID | None = None
    response: str | None = None
    responded_at: datetime | None = None
    response_notes: str | None = None
    delivery_status: str
    delivery_error: str | None = None
    external_message_id: str | None = None

    model_config = {"from_attributes": True}
