from datetime import date, datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from clinic_outreach.lifecycle import NOTIFICATION_CHANNELS, Priority, WaitlistStatus
from clinic_outreach.services.waitlist_scoring import WEEKDAYS, AvailableSlot, to_clinic_time

PRIORITIES = tuple(p.value for p in Priority)
WAITLIST_STATUSES = tuple(s.value for s in WaitlistStatus)


def _one_of(value: str | None, allowed: tuple, label: str) -> str | None:
    if value is not None and value not in allowed:
        raise ValueError(f"Invalid {label}. Must be one of: {', '.join(allowed)}")
    return value


class PreferredDate(BaseModel):
    date: date
    weight: int = Field(default=5, ge=1, le=10)


class PreferredTimes(BaseModel):
    morning: bool = True
    afternoon: bool = True
    evening: bool = False


class SlotRequest(BaseModel):
    provider_id: UUID | None = None
    location_id: UUID | None = None
    appointment_type_id: UUID | None = None
    scheduled_start: datetime
    scheduled_end: datetime
    provider_name: str | None = Field(None, max_length=255)
    location_name: str | None = Field(None, max_length=255)

    @model_validator(mode="after")
    def end_after_start(self):
        # naive request times are clinic-local
        self.scheduled_start = to_clinic_time(self.scheduled_start)
        self.scheduled_end = to_clinic_time(self.scheduled_end)
        if self.scheduled_end <= self.scheduled_start:
            raise ValueError("scheduled_end must be after scheduled_start")
        return self

    def to_slot(self) -> AvailableSlot:
        return AvailableSlot(
            provider_id=self.provider_id,
            location_id=self.location_id,
            appointment_type_id=self.appointment_type_id,
            scheduled_start=self.scheduled_start,
            scheduled_end=self.scheduled_end,
            provider_name=self.provider_name,
            location_name=self.location_name,
        )


class AddWaitlistRequest(BaseModel):
    patient_id: UUID
    provider_id: UUID | None = None
    appointment_type_id: UUID | None = None
    location_id: UUID | None = None
    preferred_dates: list[PreferredDate] = Field(default_factory=list, max_length=30)
    preferred_times: PreferredTimes = Field(default_factory=PreferredTimes)
    preferred_days_of_week: list[str] = Field(
        default_factory=lambda: ["monday", "tuesday", "wednesday", "thursday", "friday"],
    )
    flexibility_days: int = Field(default=7, ge=0, le=365)
    priority: str = "normal"
    reason: str | None = Field(None, max_length=2000)
    notes: str | None = Field(None, max_length=2000)

    @field_validator("priority")
    @classmethod
    def valid_priority(cls, v: str) -> str:
        return _one_of(v, PRIORITIES, "priority")

    @field_validator("preferred_days_of_week")
    @classmethod
    def valid_days(cls, v: list[str]) -> list[str]:
        days = [d.strip().lower() for d in v]
        for d in days:
            _one_of(d, WEEKDAYS, "day of week")
        return list(dict.fromkeys(days))


class RemoveWaitlistRequest(BaseModel):
    reason: str | None = Field(None, max_length=500)


class MatchRequest(BaseModel):
    slot: SlotRequest
    max_matches: int = Field(default=10, ge=1, le=50)


class NotifyRequest(BaseModel):
    slot: SlotRequest
    expiration_hours: int = Field(default=24, ge=1, le=168)
    channel: str = "sms"

    @field_validator("channel")
    @classmethod
    def valid_channel(cls, v: str) -> str:
        return _one_of(v, NOTIFICATION_CHANNELS, "notification channel")


class RespondRequest(BaseModel):
    accepted: bool
    notes: str | None = Field(None, max_length=2000)


class AutoFillRequest(BaseModel):
    max_notifications: int = Field(default=3, ge=1, le=10)


class WaitlistEntryResponse(BaseModel):
    id: UUID
    tenant_id: UUID
    patient_id: UUID
    provider_id: UUID | None = None
    appointment_type_id: UUID | None = None
    location_id: UUID | None = None
    preferred_dates: list[dict[str, Any]] = []
    preferred_times: dict[str, bool] = {}
    preferred_days_of_week: list[str] = []
    flexibility_days: int
    priority: str
    reason: str | None = None
    notes: str | None = None
    status: str
    notified_at: datetime | None = None
    scheduled_at: datetime | None = None
    scheduled_appointment_id: UUID | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class WaitlistNotificationResponse(BaseModel):
    id: UUID | None = None
    waitlist_entry_id: UUID
    slot_offered: dict[str, Any]
    offered_at: datetime | None = None
    expires_at: datetime
    response: str
    responded_at: datetime | None = None
    response_notes: str | None = None
    notification_channel: str
    notification_sent: bool = False
    notification_error: str | None = None

    model_config = {"from_attributes": True}


class WaitlistListResponse(BaseModel):
    entries: list[WaitlistEntryResponse]
    total: int


class WaitlistStatsResponse(BaseModel):
    total: int
    active: int
    matched: int
    notified: int
    scheduled: int
    cancelled: int
    expired: int
    urgent_count: int
    high_count: int
    average_wait_days: float
    filled_this_week: int
    filled_this_month: int
    conversion_rate: float
