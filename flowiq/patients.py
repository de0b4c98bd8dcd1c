"""Patient records: intake, lookup and serialisation."""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Any, Dict, List, Mapping, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Session

from flowiq.errors import ConflictError, NotFoundError, ValidationError
from flowiq.models import Appointment, Claim, ClinicalNote, InsuranceCard, Patient, WaitlistEntry
from flowiq.sanitizer import sanitize_optional
from flowiq.time_utils import calculate_age, parse_date, utc_now

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")

PATIENT_FIELDS = (
    "first_name",
    "last_name",
    "date_of_birth",
    "email",
    "phone",
    "address",
    "city",
    "state",
    "zip_code",
    "gender",
    "insurance_provider",
    "insurance_number",
    "medical_history",
    "allergies",
    "medications",
    "emergency_contact_name",
    "emergency_contact_phone",
    "specialty",
    "external_id",
)


def _clean_values(values: Mapping[str, Any]) -> Dict[str, Any]:
    cleaned: Dict[str, Any] = {}
    for key in PATIENT_FIELDS:
        if key not in values:
            continue
        value = values[key]
        if key == "date_of_birth":
            try:
                dob = parse_date(value)
            except ValueError as exc:
                raise ValidationError("date_of_birth must be an ISO date (YYYY-MM-DD)") from exc
            if dob is not None and dob > utc_now().date():
                raise ValidationError("date_of_birth cannot be in the future")
            cleaned[key] = dob
            continue
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(item).strip() for item in value if str(item).strip())
        cleaned[key] = sanitize_optional(value)
    email = cleaned.get("email")
    if email and not EMAIL_RE.match(email):
        raise ValidationError(f"invalid email address: {email}")
    return cleaned


def _next_patient_number(session: Session, tenant_id: str) -> str:
    numbers = session.scalars(
        sa.select(Patient.patient_number).where(Patient.tenant_id == tenant_id)
    )
    highest = 0
    for number in numbers:
        digits = (number or "").lstrip("P")
        if digits.isdigit():
            highest = max(highest, int(digits))
    return f"P{highest + 1:06d}"


def create_patient(session: Session, tenant_id: str, values: Mapping[str, Any]) -> Patient:
    cleaned = _clean_values(values)
    if not cleaned.get("first_name") or not cleaned.get("last_name"):
        raise ValidationError("first_name and last_name are required")
    patient = Patient(tenant_id=tenant_id, patient_number=_next_patient_number(session, tenant_id), **cleaned)
    session.add(patient)
    session.flush()
    logger.info("patient_created", extra={"patient_id": patient.id, "tenant_id": tenant_id})
    return patient


def get_patient(session: Session, tenant_id: str, patient_id: str) -> Patient:
    patient = session.get(Patient, patient_id)
    if patient is None or patient.tenant_id != tenant_id:
        raise NotFoundError(f"Patient {patient_id} not found")
    return patient


def list_patients(
    session: Session,
    tenant_id: str,
    *,
    search: Optional[str] = None,
    include_inactive: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> List[Patient]:
    stmt = sa.select(Patient).where(Patient.tenant_id == tenant_id)
    if not include_inactive:
        stmt = stmt.where(Patient.is_active.is_(True))
    if search:
        term = f"%{search.strip()}%"
        stmt = stmt.where(
            sa.or_(
                Patient.first_name.ilike(term),
                Patient.last_name.ilike(term),
                Patient.email.ilike(term),
                Patient.phone.ilike(term),
                Patient.patient_number.ilike(term),
            )
        )
    stmt = stmt.order_by(Patient.last_name, Patient.first_name).limit(limit).offset(offset)
    return list(session.scalars(stmt))


def update_patient(session: Session, tenant_id: str, patient_id: str, changes: Mapping[str, Any]) -> Patient:
    patient = get_patient(session, tenant_id, patient_id)
    cleaned = _clean_values(changes)
    for key in ("first_name", "last_name"):
        if key in cleaned and not cleaned[key]:
            raise ValidationError(f"{key} cannot be blank")
    for key, value in cleaned.items():
        setattr(patient, key, value)
    if "is_active" in changes:
        patient.is_active = bool(changes["is_active"])
    session.flush()
    return patient


_LINKED_MODELS = (
    ("appointments", Appointment),
    ("claims", Claim),
    ("clinicalNotes", ClinicalNote),
    ("insuranceCards", InsuranceCard),
    ("waitlistEntries", WaitlistEntry),
)


def _linked_record_types(session: Session, patient_id: str) -> List[str]:
    return [
        label
        for label, model in _LINKED_MODELS
        if session.scalar(sa.select(model.id).where(model.patient_id == patient_id).limit(1)) is not None
    ]


def delete_patient(session: Session, tenant_id: str, patient_id: str, *, hard: bool = False) -> None:
    """Soft delete by default; ``hard=True`` removes the row.

    A hard delete is refused while clinical, billing or scheduling records
    still point at the patient.
    """

    patient = get_patient(session, tenant_id, patient_id)
    if hard:
        linked = _linked_record_types(session, patient.id)
        if linked:
            raise ConflictError(
                "Patient has linked records; deactivate the patient instead",
                details={"linkedRecords": linked},
            )
        session.delete(patient)
    else:
        patient.is_active = False
    session.flush()
    logger.info("patient_deleted", extra={"patient_id": patient_id, "hard": hard})


def find_patient_by_external_id(session: Session, tenant_id: str, external_id: str) -> Optional[Patient]:
    return session.scalar(
        sa.select(Patient).where(Patient.tenant_id == tenant_id, Patient.external_id == external_id)
    )


def snapshot(patient: Patient) -> Dict[str, Any]:
    """Return the raw column values, used for audit diffs and AI payloads."""

    data: Dict[str, Any] = {}
    for key in PATIENT_FIELDS:
        value = getattr(patient, key)
        data[key] = value.isoformat() if isinstance(value, date) else value
    data["patient_number"] = patient.patient_number
    return data


def serialize_patient(patient: Patient) -> Dict[str, Any]:
    """Render a patient in the API response format."""

    first = (patient.first_name or "").strip()
    last = (patient.last_name or "").strip()
    return {
        "patientId": patient.id,
        "patientNumber": patient.patient_number,
        "firstName": first,
        "lastName": last,
        "name": " ".join(part for part in (first, last) if part),
        "dateOfBirth": patient.date_of_birth.isoformat() if patient.date_of_birth else None,
        "age": calculate_age(patient.date_of_birth),
        "email": patient.email,
        "phone": patient.phone,
        "address": patient.address,
        "city": patient.city,
        "state": patient.state,
        "zipCode": patient.zip_code,
        "gender": patient.gender,
        "insuranceProvider": patient.insurance_provider,
        "insuranceNumber": patient.insurance_number,
        "medicalHistory": patient.medical_history,
        "allergies": patient.allergies,
        "medications": patient.medications,
        "emergencyContactName": patient.emergency_contact_name,
        "emergencyContactPhone": patient.emergency_contact_phone,
        "specialty": patient.specialty,
        "externalId": patient.external_id,
        "isActive": patient.is_active,
        "createdAt": patient.created_at.isoformat() if patient.created_at else None,
    }


__all__ = [
    "PATIENT_FIELDS",
    "create_patient",
    "delete_patient",
    "find_patient_by_external_id",
    "get_patient",
    "list_patients",
    "serialize_patient",
    "snapshot",
    "update_patient",
]
