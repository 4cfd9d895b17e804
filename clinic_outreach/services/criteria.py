"""
Recall targeting criteria -> bound SQLAlchemy query.

Stored criteria (camelCase JSON on the campaign) are validated into a
``TargetCriteria`` model, turned into a flat list of typed predicates, and
each predicate compiles to exactly one SQL expression.  Every value reaches
the database as a bound parameter; nothing is formatted into SQL text.

Range semantics per field:
    lastVisitDaysAgo   min/max are exclusive: last visit strictly more than
                       ``min`` and strictly fewer than ``max`` days ago
    ageRange           inclusive whole years
    labsDueDaysAgo     inclusive days since the lab order fell due
    prescriptionExpiringDays
                       expires between today and today + N, inclusive

Date arithmetic happens here, against the ``today`` the caller passes in, so
the compiled query carries concrete cutoff dates.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Optional, Union
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import Date, and_, cast, func, or_, select
from sqlalchemy.sql import Select
from sqlalchemy.sql.elements import ColumnElement

from clinic_outreach.exceptions import CriteriaValidationError
from clinic_outreach.lifecycle import ACTIVE_RECALL_STATUSES
from clinic_outreach.models.clinical import Charge, Diagnosis, Encounter, LabOrder, Patient, Prescription
from clinic_outreach.models.recall import RecallPatient
from clinic_outreach.schemas.recall import TargetCriteria

DEFAULT_PROCEDURE_LOOKBACK_DAYS = 365
DEFAULT_IDENTIFY_LIMIT = 1000


class CriteriaField(str, Enum):
    DAYS_SINCE_LAST_VISIT = "lastVisitDaysAgo"
    DIAGNOSIS_CODE = "diagnoses"
    PROCEDURE_CODE = "procedures"
    AGE_YEARS = "ageRange"
    RISK_LEVEL = "riskLevel"
    MEDICATION = "medications"
    DAYS_SINCE_LAB_DUE = "labsDueDaysAgo"
    DAYS_UNTIL_PRESCRIPTION_EXPIRY = "prescriptionExpiringDays"


@dataclass(frozen=True)
class RangePredicate:
    field: CriteriaField
    min: Optional[int] = None
    max: Optional[int] = None
    # Optional restriction on the related rows, e.g. lab types
    restrict_to: tuple[str, ...] = ()


@dataclass(frozen=True)
class MembershipPredicate:
    field: CriteriaField
    values: tuple[str, ...]
    within_days: Optional[int] = None


@dataclass(frozen=True)
class PrefixPredicate:
    field: CriteriaField
    prefixes: tuple[str, ...]


Predicate = Union[RangePredicate, MembershipPredicate, PrefixPredicate]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def validate_criteria(raw: Union[dict, TargetCriteria, None]) -> TargetCriteria:
    """Validate raw stored/request criteria; raises CriteriaValidationError."""
    if raw is None:
        return TargetCriteria()
    if isinstance(raw, TargetCriteria):
        return raw
    if not isinstance(raw, dict):
        raise CriteriaValidationError("Target criteria must be an object")
    try:
        return TargetCriteria.model_validate(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'criteria'}: {err['msg']}" for err in e.errors()
        )
        raise CriteriaValidationError(f"Invalid target criteria: {problems}")


def _strip_wildcards(code: str) -> str:
    return code.rstrip("%*")


def parse_criteria(raw: Union[dict, TargetCriteria, None]) -> list[Predicate]:
    criteria = validate_criteria(raw)
    predicates: list[Predicate] = []

    if criteria.last_visit_days_ago and (
        criteria.last_visit_days_ago.min is not None or criteria.last_visit_days_ago.max is not None
    ):
        predicates.append(RangePredicate(
            CriteriaField.DAYS_SINCE_LAST_VISIT,
            min=criteria.last_visit_days_ago.min,
            max=criteria.last_visit_days_ago.max,
        ))

    if criteria.diagnoses:
        prefixes = tuple(p for p in (_strip_wildcards(c) for c in criteria.diagnoses) if p)
        if prefixes:
            predicates.append(PrefixPredicate(CriteriaField.DIAGNOSIS_CODE, prefixes))

    if criteria.procedures:
        predicates.append(MembershipPredicate(
            CriteriaField.PROCEDURE_CODE,
            tuple(criteria.procedures),
            within_days=criteria.procedures_within_days or DEFAULT_PROCEDURE_LOOKBACK_DAYS,
        ))

    if criteria.age_range and (criteria.age_range.min is not None or criteria.age_range.max is not None):
        predicates.append(RangePredicate(
            CriteriaField.AGE_YEARS, min=criteria.age_range.min, max=criteria.age_range.max,
        ))

    if criteria.risk_level:
        predicates.append(MembershipPredicate(CriteriaField.RISK_LEVEL, tuple(criteria.risk_level)))

    if criteria.medications:
        predicates.append(PrefixPredicate(CriteriaField.MEDICATION, tuple(criteria.medications)))

    if criteria.labs_due_days_ago and (
        criteria.labs_due_days_ago.min is not None or criteria.labs_due_days_ago.max is not None
    ):
        predicates.append(RangePredicate(
            CriteriaField.DAYS_SINCE_LAB_DUE,
            min=criteria.labs_due_days_ago.min,
            max=criteria.labs_due_days_ago.max,
            restrict_to=tuple(criteria.lab_types or ()),
        ))

    if criteria.prescription_expiring_days is not None:
        predicates.append(RangePredicate(
            CriteriaField.DAYS_UNTIL_PRESCRIPTION_EXPIRY, min=0, max=criteria.prescription_expiring_days,
        ))

    return predicates


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------

def years_before(today: date, years: int) -> date:
    """Same calendar day ``years`` earlier; Feb 29 falls back to Feb 28."""
    try:
        return today.replace(year=today.year - years)
    except ValueError:
        return today.replace(year=today.year - years, day=28)


def last_encounter_date(tenant_id: UUID):
    return (
        select(func.max(Encounter.encounter_date))
        .where(Encounter.patient_id == Patient.id, Encounter.tenant_id == tenant_id)
        .correlate(Patient)
        .scalar_subquery()
    )


def _last_visit(pred: RangePredicate, tenant_id: UUID, today: date) -> ColumnElement:
    last_visit = func.coalesce(last_encounter_date(tenant_id), cast(Patient.created_at, Date))
    clauses = []
    if pred.min is not None:
        clauses.append(last_visit < today - timedelta(days=pred.min))
    if pred.max is not None:
        clauses.append(last_visit > today - timedelta(days=pred.max))
    return and_(*clauses)


def _age(pred: RangePredicate, tenant_id: UUID, today: date) -> ColumnElement:
    clauses = [Patient.dob.is_not(None)]
    if pred.min is not None:
        clauses.append(Patient.dob <= years_before(today, pred.min))
    if pred.max is not None:
        clauses.append(Patient.dob > years_before(today, pred.max + 1))
    return and_(*clauses)


def _lab_due(pred: RangePredicate, tenant_id: UUID, today: date) -> ColumnElement:
    clauses = [
        LabOrder.patient_id == Patient.id,
        LabOrder.tenant_id == tenant_id,
        LabOrder.due_date.is_not(None),
    ]
    if pred.min is not None:
        clauses.append(LabOrder.due_date <= today - timedelta(days=pred.min))
    if pred.max is not None:
        clauses.append(LabOrder.due_date >= today - timedelta(days=pred.max))
    if pred.restrict_to:
        clauses.append(LabOrder.lab_type.in_(pred.restrict_to))
    return select(LabOrder.id).where(*clauses).exists()


def _prescription_expiry(pred: RangePredicate, tenant_id: UUID, today: date) -> ColumnElement:
    return select(Prescription.id).where(
        Prescription.patient_id == Patient.id,
        Prescription.tenant_id == tenant_id,
        Prescription.expires_on >= today + timedelta(days=pred.min or 0),
        Prescription.expires_on <= today + timedelta(days=pred.max),
    ).exists()


def _procedures(pred: MembershipPredicate, tenant_id: UUID, today: date) -> ColumnElement:
    lookback = pred.within_days or DEFAULT_PROCEDURE_LOOKBACK_DAYS
    return select(Charge.id).where(
        Charge.patient_id == Patient.id,
        Charge.tenant_id == tenant_id,
        Charge.cpt_code.in_(pred.values),
        Charge.service_date >= today - timedelta(days=lookback),
    ).exists()


def _risk_level(pred: MembershipPredicate, tenant_id: UUID, today: date) -> ColumnElement:
    return Patient.risk_level.in_(pred.values)


def _diagnoses(pred: PrefixPredicate, tenant_id: UUID, today: date) -> ColumnElement:
    return select(Diagnosis.id).where(
        Diagnosis.patient_id == Patient.id,
        Diagnosis.tenant_id == tenant_id,
        or_(*[Diagnosis.icd10_code.startswith(p, autoescape=True) for p in pred.prefixes]),
    ).exists()


def _medications(pred: PrefixPredicate, tenant_id: UUID, today: date) -> ColumnElement:
    name = func.lower(Prescription.medication_name)
    return select(Prescription.id).where(
        Prescription.patient_id == Patient.id,
        Prescription.tenant_id == tenant_id,
        or_(*[name.startswith(m.lower(), autoescape=True) for m in pred.prefixes]),
    ).exists()


_COMPILERS = {
    CriteriaField.DAYS_SINCE_LAST_VISIT: _last_visit,
    CriteriaField.AGE_YEARS: _age,
    CriteriaField.DAYS_SINCE_LAB_DUE: _lab_due,
    CriteriaField.DAYS_UNTIL_PRESCRIPTION_EXPIRY: _prescription_expiry,
    CriteriaField.PROCEDURE_CODE: _procedures,
    CriteriaField.RISK_LEVEL: _risk_level,
    CriteriaField.DIAGNOSIS_CODE: _diagnoses,
    CriteriaField.MEDICATION: _medications,
}


def compile_predicate(pred: Predicate, tenant_id: UUID, today: date) -> ColumnElement:
    return _COMPILERS[pred.field](pred, tenant_id, today)


def build_criteria_query(
    tenant_id: UUID,
    campaign_id: UUID,
    criteria: Union[dict, TargetCriteria, None],
    today: date,
    limit: int = DEFAULT_IDENTIFY_LIMIT,
) -> Select:
    """Patients in ``tenant_id`` matching ``criteria`` and not already active
    in ``campaign_id``.

    Rows carry patient_id, first_name, last_name, phone, email and
    last_visit_date (latest encounter, NULL when the patient has none).
    Raises CriteriaValidationError before any SQL is built.
    """
    predicates = parse_criteria(criteria)

    active_enrollment = select(RecallPatient.id).where(
        RecallPatient.campaign_id == campaign_id,
        RecallPatient.patient_id == Patient.id,
        RecallPatient.status.in_(ACTIVE_RECALL_STATUSES),
    ).exists()

    return (
        select(
            Patient.id.label("patient_id"),
            Patient.first_name,
            Patient.last_name,
            Patient.phone,
            Patient.email,
            last_encounter_date(tenant_id).label("last_visit_date"),
        )
        .where(
            Patient.tenant_id == tenant_id,
            Patient.is_active.is_(True),
            ~active_enrollment,
            *[compile_predicate(p, tenant_id, today) for p in predicates],
        )
        .order_by(Patient.last_name, Patient.first_name)
        .limit(limit)
    )
