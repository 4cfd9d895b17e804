from clinic_outreach.models.clinical import (
    Patient,
    Appointment,
    Encounter,
    Diagnosis,
    Charge,
    Prescription,
    LabOrder,
)
from clinic_outreach.models.waitlist import WaitlistEntry, WaitlistNotification
from clinic_outreach.models.recall import (
    RecallCampaign,
    RecallPatient,
    RecallContactLog,
    RecallCampaignTemplate,
)
from clinic_outreach.models.audit_log import AuditLog

__all__ = [
    "Patient",
    "Appointment",
    "Encounter",
    "Diagnosis",
    "Charge",
    "Prescription",
    "LabOrder",
    "WaitlistEntry",
    "WaitlistNotification",
    "RecallCampaign",
    "RecallPatient",
    "RecallContactLog",
    "RecallCampaignTemplate",
    "AuditLog",
]
