"""SOAP clinical notes.

Notes are editable while in ``draft``.  Signing freezes a note; corrections
are made by amending, which creates a new draft pointing at the original
through ``amended_from_id`` and marks the original ``amended``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Session

from flowiq import hipaa
from flowiq.claims import is_valid_diagnosis_code, is_valid_procedure_code
from flowiq.errors import ConflictError, NotFoundError, ValidationError
from flowiq.models import Appointment, ClinicalNote
from flowiq.patients import get_patient, snapshot
from flowiq.sanitizer import sanitize_optional
from flowiq.time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

SOAP_FIELDS = ("subjective", "objective", "assessment", "plan")
NOTE_TYPES = {"soap", "progress", "consultation", "procedure"}


def _check_appointment(session: Session, tenant_id: str, patient_id: str, appointment_id: Optional[str]) -> None:
    if not appointment_id:
        return
    appointment = session.get(Appointment, appointment_id)
    if appointment is None or appointment.tenant_id != tenant_id:
        raise NotFoundError(f"Appointment {appointment_id} not found")
    if appointment.patient_id != patient_id:
        raise ValidationError("appointment belongs to a different patient")


def create_note(
    session: Session,
    tenant_id: str,
    values: Mapping[str, Any],
    *,
    provider_id: Optional[str] = None,
) -> ClinicalNote:
    patient = get_patient(session, tenant_id, values.get("patient_id") or "")
    _check_appointment(session, tenant_id, patient.id, values.get("appointment_id"))
    note_type = (values.get("note_type") or "soap").lower()
    if note_type not in NOTE_TYPES:
        raise ValidationError(f"unsupported note type: {note_type}")
    note = ClinicalNote(
        tenant_id=tenant_id,
        patient_id=patient.id,
        appointment_id=values.get("appointment_id"),
        provider_id=values.get("provider_id") or provider_id,
        note_type=note_type,
        status="draft",
        suggested_codes=[],
        **{field: sanitize_optional(values.get(field)) for field in SOAP_FIELDS},
    )
    session.add(note)
    session.flush()
    return note


def get_note(session: Session, tenant_id: str, note_id: str) -> ClinicalNote:
    note = session.get(ClinicalNote, note_id)
    if note is None or note.tenant_id != tenant_id:
        raise NotFoundError(f"Note {note_id} not found")
    return note


def list_notes(
    session: Session,
    tenant_id: str,
    *,
    patient_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
) -> List[ClinicalNote]:
    stmt = sa.select(ClinicalNote).where(ClinicalNote.tenant_id == tenant_id)
    if patient_id:
        stmt = stmt.where(ClinicalNote.patient_id == patient_id)
    if status:
        stmt = stmt.where(ClinicalNote.status == status)
    return list(session.scalars(stmt.order_by(ClinicalNote.created_at.desc()).limit(limit)))


def update_note(session: Session, tenant_id: str, note_id: str, changes: Mapping[str, Any]) -> ClinicalNote:
    note = get_note(session, tenant_id, note_id)
    if note.status != "draft":
        raise ConflictError(f"Note is {note.status} and can no longer be edited")
    for field in SOAP_FIELDS:
        if field in changes:
            setattr(note, field, sanitize_optional(changes[field]))
    if changes.get("note_type"):
        note_type = changes["note_type"].lower()
        if note_type not in NOTE_TYPES:
            raise ValidationError(f"unsupported note type: {note_type}")
        note.note_type = note_type
    session.flush()
    return note


def sign_note(session: Session, tenant_id: str, note_id: str, provider_id: str) -> ClinicalNote:
    note = get_note(session, tenant_id, note_id)
    if note.status != "draft":
        raise ConflictError(f"Note is already {note.status}")
    if not any((getattr(note, field) or "").strip() for field in SOAP_FIELDS):
        raise ValidationError("Cannot sign an empty note")
    note.status = "signed"
    note.signed_at = utc_now()
    note.signed_by = provider_id
    session.flush()
    logger.info("note_signed", extra={"note_id": note.id})
    return note


def amend_note(
    session: Session,
    tenant_id: str,
    note_id: str,
    changes: Optional[Mapping[str, Any]] = None,
    *,
    provider_id: Optional[str] = None,
) -> ClinicalNote:
    """Create a new draft that supersedes a signed note."""

    original = get_note(session, tenant_id, note_id)
    if original.status != "signed":
        raise ConflictError("Only signed notes can be amended")
    changes = changes or {}
    amendment = ClinicalNote(
        tenant_id=tenant_id,
        patient_id=original.patient_id,
        appointment_id=original.appointment_id,
        provider_id=provider_id or original.provider_id,
        note_type=original.note_type,
        status="draft",
        amended_from_id=original.id,
        suggested_codes=list(original.suggested_codes or []),
        **{
            field: sanitize_optional(changes[field]) if field in changes else getattr(original, field)
            for field in SOAP_FIELDS
        },
    )
    original.status = "amended"
    session.add(amendment)
    session.flush()
    return amendment


def generate_note(
    session: Session,
    tenant_id: str,
    context: Mapping[str, Any],
    *,
    user_id: Optional[str] = None,
    save: bool = False,
) -> Dict[str, Any]:
    """Draft SOAP sections with the note generator; optionally store a draft."""

    patient = get_patient(session, tenant_id, context.get("patient_id") or "")
    payload = {
        "patient": snapshot(patient),
        "chiefComplaint": context.get("chief_complaint") or "",
        "transcript": context.get("transcript") or "",
        "vitals": dict(context.get("vitals") or {}),
        "findings": list(context.get("findings") or []),
        "noteType": context.get("note_type") or "soap",
    }
    routed = hipaa.route_ai_request(session, tenant_id, "note-generator", payload, user_id, "note_generation")
    sections = {field: routed["data"].get(field) or "" for field in SOAP_FIELDS}
    result: Dict[str, Any] = {"sections": sections, "classification": routed["classification"], "noteId": None}
    if save:
        note = create_note(
            session,
            tenant_id,
            {
                "patient_id": patient.id,
                "appointment_id": context.get("appointment_id"),
                "note_type": context.get("note_type"),
                **sections,
            },
            provider_id=user_id,
        )
        result["noteId"] = note.id
    return result


def _code_is_valid(entry: Mapping[str, Any]) -> bool:
    code = str(entry.get("code") or "")
    if (entry.get("type") or "").upper().startswith("ICD"):
        return is_valid_diagnosis_code(code)
    return is_valid_procedure_code(code)


def suggest_codes(session: Session, tenant_id: str, note_id: str, *, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
    note = get_note(session, tenant_id, note_id)
    text = "\n".join(getattr(note, field) or "" for field in SOAP_FIELDS).strip()
    if not text:
        raise ValidationError("Note has no content to code")
    routed = hipaa.route_ai_request(
        session,
        tenant_id,
        "coding-assistant",
        {"text": text, "noteType": note.note_type},
        user_id,
        "code_suggestion",
    )
    codes = [dict(entry) for entry in routed["data"].get("codes") or [] if isinstance(entry, Mapping) and _code_is_valid(entry)]
    if note.status == "draft":
        note.suggested_codes = codes
        session.flush()
    return codes


def serialize_note(note: ClinicalNote) -> Dict[str, Any]:
    return {
        "id": note.id,
        "patientId": note.patient_id,
        "appointmentId": note.appointment_id,
        "providerId": note.provider_id,
        "noteType": note.note_type,
        "subjective": note.subjective,
        "objective": note.objective,
        "assessment": note.assessment,
        "plan": note.plan,
        "status": note.status,
        "signedAt": ensure_utc(note.signed_at).isoformat() if note.signed_at else None,
        "signedBy": note.signed_by,
        "amendedFromId": note.amended_from_id,
        "suggestedCodes": list(note.suggested_codes or []),
        "createdAt": ensure_utc(note.created_at).isoformat() if note.created_at else None,
    }


__all__ = [
    "SOAP_FIELDS",
    "amend_note",
    "create_note",
    "generate_note",
    "get_note",
    "list_notes",
    "serialize_note",
    "sign_note",
    "suggest_codes",
    "update_note",
]
