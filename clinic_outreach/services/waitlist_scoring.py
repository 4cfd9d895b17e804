"""
Pure scoring of waitlist entries against an available slot.

No database access here: ``score_entry`` works on anything exposing the
WaitlistEntry attributes, which keeps the ranking rules testable on their own.

Scoring, in order:
    base 10
    provider        unconstrained +20, exact +40
    appointment     unconstrained +15, exact +25
    location        unconstrained +10, exact +15, different -5
    time of day     +10 when the slot's bucket is preferred
    weekday         +5 when no weekday preference or the slot's weekday is preferred
    priority        running score x {urgent 2.0, high 1.5, normal 1.0, low 0.75}
    waiting bonus   + min(days_waiting * 0.5, 10)
Entries whose final score is not positive are discarded.

Provider and appointment-type mismatches never reach scoring; the candidate
query only returns entries that are unconstrained or equal on both.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID
from zoneinfo import ZoneInfo

from clinic_outreach.config import get_settings
from clinic_outreach.lifecycle import PRIORITY_MULTIPLIERS

BASE_SCORE = 10.0
PROVIDER_FLEXIBLE_BONUS = 20.0
PROVIDER_MATCH_BONUS = 40.0
TYPE_FLEXIBLE_BONUS = 15.0
TYPE_MATCH_BONUS = 25.0
LOCATION_FLEXIBLE_BONUS = 10.0
LOCATION_MATCH_BONUS = 15.0
LOCATION_MISMATCH_PENALTY = -5.0
TIME_OF_DAY_BONUS = 10.0
WEEKDAY_BONUS = 5.0
WAITING_BONUS_PER_DAY = 0.5
WAITING_BONUS_CAP = 10.0

# Index matches datetime.weekday()
WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


@dataclass(frozen=True)
class AvailableSlot:
    """A bookable provider/location/type/time range offered to the waitlist.

    Times are compared on the clinic's wall clock (``CLINIC_TIMEZONE``).
    Aware datetimes are converted; naive ones are taken as clinic-local.
    """

    provider_id: Optional[UUID]
    location_id: Optional[UUID]
    appointment_type_id: Optional[UUID]
    scheduled_start: datetime
    scheduled_end: datetime
    provider_name: Optional[str] = None
    location_name: Optional[str] = None

    def snapshot(self) -> dict:
        """JSON-safe copy stored on the offer."""
        return {
            "provider_id": str(self.provider_id) if self.provider_id else None,
            "location_id": str(self.location_id) if self.location_id else None,
            "appointment_type_id": str(self.appointment_type_id) if self.appointment_type_id else None,
            "scheduled_start": self.scheduled_start.isoformat(),
            "scheduled_end": self.scheduled_end.isoformat(),
            "provider_name": self.provider_name,
            "location_name": self.location_name,
        }

    @classmethod
    def from_snapshot(cls, data: dict) -> "AvailableSlot":
        def _uuid(value):
            return UUID(value) if value else None

        return cls(
            provider_id=_uuid(data.get("provider_id")),
            location_id=_uuid(data.get("location_id")),
            appointment_type_id=_uuid(data.get("appointment_type_id")),
            scheduled_start=datetime.fromisoformat(data["scheduled_start"]),
            scheduled_end=datetime.fromisoformat(data["scheduled_end"]),
            provider_name=data.get("provider_name"),
            location_name=data.get("location_name"),
        )


def clinic_zone() -> ZoneInfo:
    return ZoneInfo(get_settings().CLINIC_TIMEZONE)


def to_clinic_time(value: datetime) -> datetime:
    """Aware datetime on the clinic's wall clock.  Naive input is read as clinic-local."""
    zone = clinic_zone()
    if value.tzinfo is None:
        return value.replace(tzinfo=zone)
    return value.astimezone(zone)


def time_of_day(start: datetime) -> str:
    hour = to_clinic_time(start).hour
    if 6 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    return "evening"


def weekday_name(start: datetime) -> str:
    return WEEKDAYS[to_clinic_time(start).weekday()]


def score_entry(entry, slot: AvailableSlot, now: datetime) -> Optional[dict]:
    """Score one entry for ``slot``.

    Returns {"score": float, "match_details": dict} or None when the entry is
    discarded.
    """
    score = BASE_SCORE

    if entry.provider_id is None:
        score += PROVIDER_FLEXIBLE_BONUS
        provider_match = True
    elif entry.provider_id == slot.provider_id:
        score += PROVIDER_MATCH_BONUS
        provider_match = True
    else:
        provider_match = False

    if entry.appointment_type_id is None:
        score += TYPE_FLEXIBLE_BONUS
        type_match = True
    elif entry.appointment_type_id == slot.appointment_type_id:
        score += TYPE_MATCH_BONUS
        type_match = True
    else:
        type_match = False

    if entry.location_id is None:
        score += LOCATION_FLEXIBLE_BONUS
        location_match = True
    elif entry.location_id == slot.location_id:
        score += LOCATION_MATCH_BONUS
        location_match = True
    else:
        score += LOCATION_MISMATCH_PENALTY
        location_match = False

    bucket = time_of_day(slot.scheduled_start)
    preferred_times = entry.preferred_times or {}
    time_match = bool(preferred_times.get(bucket))
    if time_match:
        score += TIME_OF_DAY_BONUS

    day = weekday_name(slot.scheduled_start)
    preferred_days = entry.preferred_days_of_week or []
    day_match = not preferred_days or day in preferred_days
    if day_match:
        score += WEEKDAY_BONUS

    multiplier = PRIORITY_MULTIPLIERS.get(entry.priority, 1.0)
    score *= multiplier

    days_waiting = max((now - entry.created_at).total_seconds(), 0) / 86400
    score += min(days_waiting * WAITING_BONUS_PER_DAY, WAITING_BONUS_CAP)

    if score <= 0:
        return None

    return {
        "score": round(score, 2),
        "match_details": {
            "provider_match": provider_match,
            "appointment_type_match": type_match,
            "location_match": location_match,
            "time_of_day": bucket,
            "time_of_day_match": time_match,
            "day_of_week": day,
            "day_of_week_match": day_match,
            "priority_multiplier": multiplier,
            "waiting_days": round(days_waiting),
        },
    }


def rank_key(match: dict, entry) -> tuple:
    """Highest score first; ties go to the longest-waiting entry, then entry id."""
    return (-match["score"], entry.created_at, str(entry.id))
