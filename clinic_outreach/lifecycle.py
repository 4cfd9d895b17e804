"""
Status vocabularies and transition tables for waitlist entries, waitlist
offers (notifications) and recall enrollments.

Every status write in the service layer goes through ``ensure_transition`` so
an illegal move raises ``InvalidStateError`` instead of silently corrupting
the lifecycle.
"""

from enum import Enum

from clinic_outreach.exceptions import InvalidStateError


class WaitlistStatus(str, Enum):
    ACTIVE = "active"
    MATCHED = "matched"
    NOTIFIED = "notified"
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class NotificationResponse(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    NO_RESPONSE = "no_response"


class RecallStatus(str, Enum):
    PENDING = "pending"
    CONTACTED = "contacted"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    DECLINED = "declined"
    UNABLE_TO_REACH = "unable_to_reach"
    DISMISSED = "dismissed"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


PRIORITY_MULTIPLIERS = {
    Priority.URGENT.value: 2.0,
    Priority.HIGH.value: 1.5,
    Priority.NORMAL.value: 1.0,
    Priority.LOW.value: 0.75,
}

# Listing order: urgent first. Both tables are keyed by the stored string value.
PRIORITY_RANK = {
    Priority.URGENT.value: 1,
    Priority.HIGH.value: 2,
    Priority.NORMAL.value: 3,
    Priority.LOW.value: 4,
}

NOTIFICATION_CHANNELS = ("sms", "email", "phone", "portal", "auto")
CAMPAIGN_CHANNELS = ("sms", "email", "phone", "mail", "portal", "multi")
CONTACT_CHANNELS = ("sms", "email", "phone", "mail", "portal")
DELIVERY_STATUSES = ("pending", "sent", "delivered", "failed", "bounced")
ENROLLMENT_SOURCES = ("auto", "manual", "import")

CONTACT_RESPONSES = (
    "no_response",
    "answered",
    "voicemail",
    "scheduled",
    "declined",
    "call_back_requested",
    "wrong_number",
    "opted_out",
    "bounced",
    "delivered",
    "read",
)

RECALL_TYPES = (
    "annual_skin_check",
    "melanoma_surveillance",
    "follow_up_visit",
    "treatment_continuation",
    "lab_recheck",
    "prescription_renewal",
    "post_procedure_check",
    "psoriasis_follow_up",
    "acne_follow_up",
    "inactive_patients",
    "custom",
)

# Enrollments in these states block a new enrollment for the same campaign
ACTIVE_RECALL_STATUSES = (
    RecallStatus.PENDING.value,
    RecallStatus.CONTACTED.value,
    RecallStatus.SCHEDULED.value,
)

WAITLIST_TRANSITIONS: dict[WaitlistStatus, frozenset[WaitlistStatus]] = {
    WaitlistStatus.ACTIVE: frozenset({
        WaitlistStatus.MATCHED,
        WaitlistStatus.NOTIFIED,
        WaitlistStatus.CANCELLED,
        WaitlistStatus.EXPIRED,
    }),
    WaitlistStatus.MATCHED: frozenset({
        WaitlistStatus.ACTIVE,
        WaitlistStatus.NOTIFIED,
        WaitlistStatus.CANCELLED,
    }),
    WaitlistStatus.NOTIFIED: frozenset({
        WaitlistStatus.ACTIVE,
        WaitlistStatus.SCHEDULED,
        WaitlistStatus.CANCELLED,
    }),
    WaitlistStatus.EXPIRED: frozenset({
        WaitlistStatus.ACTIVE,
        WaitlistStatus.CANCELLED,
    }),
    WaitlistStatus.SCHEDULED: frozenset(),
    WaitlistStatus.CANCELLED: frozenset(),
}

NOTIFICATION_TRANSITIONS: dict[NotificationResponse, frozenset[NotificationResponse]] = {
    NotificationResponse.PENDING: frozenset({
        NotificationResponse.ACCEPTED,
        NotificationResponse.DECLINED,
        NotificationResponse.EXPIRED,
        NotificationResponse.NO_RESPONSE,
    }),
    NotificationResponse.ACCEPTED: frozenset(),
    NotificationResponse.DECLINED: frozenset(),
    NotificationResponse.EXPIRED: frozenset(),
    NotificationResponse.NO_RESPONSE: frozenset(),
}

RECALL_TRANSITIONS: dict[RecallStatus, frozenset[RecallStatus]] = {
    RecallStatus.PENDING: frozenset({
        RecallStatus.CONTACTED,
        RecallStatus.SCHEDULED,
        RecallStatus.DECLINED,
        RecallStatus.UNABLE_TO_REACH,
        RecallStatus.DISMISSED,
    }),
    RecallStatus.CONTACTED: frozenset({
        RecallStatus.CONTACTED,
        RecallStatus.SCHEDULED,
        RecallStatus.DECLINED,
        RecallStatus.UNABLE_TO_REACH,
        RecallStatus.DISMISSED,
    }),
    RecallStatus.SCHEDULED: frozenset({
        RecallStatus.SCHEDULED,
        RecallStatus.COMPLETED,
        RecallStatus.DECLINED,
        RecallStatus.DISMISSED,
    }),
    RecallStatus.COMPLETED: frozenset(),
    RecallStatus.DECLINED: frozenset(),
    RecallStatus.UNABLE_TO_REACH: frozenset(),
    RecallStatus.DISMISSED: frozenset(),
}

_TABLES = {
    WaitlistStatus: ("waitlist entry", WAITLIST_TRANSITIONS),
    NotificationResponse: ("waitlist notification", NOTIFICATION_TRANSITIONS),
    RecallStatus: ("recall patient", RECALL_TRANSITIONS),
}


def ensure_transition(current, target):
    """Validate ``current -> target`` and return ``target`` as its enum member.

    ``current`` may be a plain string as loaded from the database.  Raises
    ``InvalidStateError`` when the move is not in the entity's table.
    """
    enum_cls = type(target)
    label, table = _TABLES[enum_cls]
    try:
        current = enum_cls(current)
    except ValueError:
        raise InvalidStateError(
            f"Unknown {label} status: {current}",
            {"target": target.value},
        )
    if target not in table[current]:
        raise InvalidStateError(
            f"Cannot move {label} from {current.value} to {target.value}",
        )
    return target


def is_terminal(status) -> bool:
    enum_cls = type(status)
    _, table = _TABLES[enum_cls]
    return not table[status]
