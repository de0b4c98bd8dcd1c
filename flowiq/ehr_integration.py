"""Synchronisation with external practice EHR systems.

Patients and appointments are pulled from the configured system's REST API
and upserted into the local tables one record at a time.  Each record is
handled inside its own savepoint: a record that fails to map or persist is
logged, counted and skipped while the rest of the batch carries on.  There
is no retry, batching or cross-record ordering; a sync either returns a
summary or an error string.

Supported systems are EasyBIS, DentalREM, Dental Sleep Solutions (served by
the DentalREM API) and MOGO.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Literal, Mapping, Optional

import requests
import sqlalchemy as sa
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.orm import Session

from flowiq import encryption
from flowiq.errors import NotFoundError, UnsupportedEHRSystemError, ValidationError
from flowiq.metrics import EHR_SYNC_RECORDS
from flowiq.models import Appointment, EHRConnection, Patient
from flowiq.patients import create_patient, update_patient
from flowiq.sanitizer import sanitize_optional
from flowiq.scheduling import default_duration, normalise_status
from flowiq.time_utils import parse_date, utc_now

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10

SYSTEM_LABELS = {
    "easybis": "EasyBIS",
    "dental-rem": "DentalREM",
    "dental-sleep-solutions": "Dental Sleep Solutions",
    "mogo": "MOGO",
}

# Dental Sleep Solutions exposes the DentalREM API.
_API_FAMILY = {
    "easybis": "easybis",
    "dental-rem": "dental-rem",
    "dental-sleep-solutions": "dental-rem",
    "mogo": "mogo",
}

# local column -> accepted remote keys, first match wins
PATIENT_FIELD_MAP: Dict[str, tuple] = {
    "first_name": ("first_name", "firstName", "given_name"),
    "last_name": ("last_name", "lastName", "family_name"),
    "date_of_birth": ("date_of_birth", "dateOfBirth", "dob", "birth_date"),
    "email": ("email", "email_address"),
    "phone": ("phone", "phone_number", "mobile"),
    "address": ("address", "street_address", "address1"),
    "city": ("city",),
    "state": ("state",),
    "zip_code": ("zip_code", "zipCode", "zip", "postal_code"),
    "gender": ("gender", "sex"),
    "insurance_provider": ("insurance_provider", "insuranceProvider", "insurance_company"),
    "insurance_number": ("insurance_number", "insuranceNumber", "insurance_id", "member_id"),
    "medical_history": ("medical_history", "medicalHistory"),
    "allergies": ("allergies",),
    "medications": ("medications",),
    "emergency_contact_name": ("emergency_contact_name", "emergencyContactName"),
    "emergency_contact_phone": ("emergency_contact_phone", "emergencyContactPhone"),
}

APPOINTMENT_FIELD_MAP: Dict[str, tuple] = {
    "appointment_date": ("appointment_date", "date", "appointmentDate"),
    "start_time": ("start_time", "time", "startTime"),
    "duration_minutes": ("duration", "duration_minutes", "durationMinutes"),
    "status": ("status",),
    "appointment_type": ("appointment_type", "type", "appointmentType"),
    "notes": ("notes",),
    "room": ("room",),
    "title": ("title",),
    "provider_id": ("provider_id", "providerId"),
}

_ID_KEYS = ("id", "external_id", "patient_id", "uuid")
_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)")


class EHRConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    system: Literal["easybis", "dental-rem", "dental-sleep-solutions", "mogo"]
    api_endpoint: str = Field(alias="apiEndpoint")
    api_key: str = Field(alias="apiKey", min_length=1)
    practice_id: Optional[str] = Field(default=None, alias="practiceId")
    specialty: Optional[Literal["chiropractic", "dental-sleep", "general-dentistry"]] = None

    @field_validator("api_endpoint")
    @classmethod
    def _validate_endpoint(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError("apiEndpoint must be an http(s) URL")
        return value


class EHRResponse(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


def _pick(record: Mapping[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if key in record and record[key] not in (None, ""):
            return record[key]
    return None


def _extract_records(payload: Any, entity: str) -> List[Mapping[str, Any]]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, Mapping):
        for key in (entity, "data", "results", "items"):
            value = payload.get(key)
            if isinstance(value, list):
                return value
    raise ValueError(f"Unexpected {entity} payload shape")


def map_patient_record(record: Mapping[str, Any]) -> Dict[str, Any]:
    """Translate a remote patient into local column values."""

    values: Dict[str, Any] = {}
    for column, keys in PATIENT_FIELD_MAP.items():
        value = _pick(record, keys)
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(item) for item in value)
        values[column] = value
    external_id = _pick(record, _ID_KEYS + ("patientId",))
    if external_id is not None:
        values["external_id"] = str(external_id)
    return values


def map_appointment_record(record: Mapping[str, Any]) -> Dict[str, Any]:
    """Translate a remote appointment into local column values."""

    values: Dict[str, Any] = {}
    for column, keys in APPOINTMENT_FIELD_MAP.items():
        value = _pick(record, keys)
        if value is not None:
            values[column] = value
    if "appointment_date" not in values or "start_time" not in values:
        raise ValueError("appointment is missing date or time")
    values["appointment_date"] = parse_date(values["appointment_date"])
    match = _TIME_RE.match(str(values["start_time"]))
    if not match:
        raise ValueError(f"invalid appointment time: {values['start_time']}")
    values["start_time"] = match.group(0)
    values["appointment_type"] = values.get("appointment_type") or "consultation"
    values["duration_minutes"] = int(
        values.get("duration_minutes") or default_duration(values["appointment_type"])
    )
    values["status"] = normalise_status(values.get("status"))
    if values.get("provider_id") is not None:
        values["provider_id"] = str(values["provider_id"])
    external_id = _pick(record, ("id", "external_id", "appointment_id", "uuid"))
    if external_id is not None:
        values["external_id"] = str(external_id)
    values["remote_patient_id"] = _pick(record, ("patient_id", "patientId", "patient_external_id"))
    return values


class EHRIntegrationService:
    """Sync patients and appointments for one tenant against one EHR."""

    def __init__(
        self,
        config: EHRConfig,
        session: Session,
        tenant_id: str,
        http: Optional[requests.Session] = None,
    ) -> None:
        if config.system not in _API_FAMILY:
            raise UnsupportedEHRSystemError(f"Unsupported EHR system: {config.system}")
        self.config = config
        self.session = session
        self.tenant_id = tenant_id
        self.http = http or requests.Session()
        self.family = _API_FAMILY[config.system]
        self.label = SYSTEM_LABELS[self.family]

    # ------------------------------------------------------------------
    # transport
    # ------------------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Accept": "application/json",
        }
        if self.config.practice_id:
            headers["X-Practice-Id"] = self.config.practice_id
        return headers

    def _url(self, path: str) -> str:
        return f"{self.config.api_endpoint}/{path.lstrip('/')}"

    def _get(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        resp = self.http.get(self._url(path), headers=self._headers(), params=params, timeout=REQUEST_TIMEOUT)
        if not resp.ok:
            raise _RemoteStatusError(f"{self.label} API error: {resp.status_code}")
        return resp.json()

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------

    def test_connection(self) -> EHRResponse:
        try:
            self._get("patients", params={"limit": 1})
        except (requests.RequestException, ValueError, _RemoteStatusError) as exc:
            return EHRResponse(success=False, error=str(exc))
        return EHRResponse(success=True, data={"system": self.config.system})

    def sync_patients(self) -> EHRResponse:
        return self._sync("patients", self._upsert_patient)

    def sync_appointments(self) -> EHRResponse:
        return self._sync("appointments", self._upsert_appointment)

    def push_appointment(self, appointment_id: str) -> EHRResponse:
        appointment = self.session.get(Appointment, appointment_id)
        if appointment is None or appointment.tenant_id != self.tenant_id:
            raise NotFoundError(f"Appointment {appointment_id} not found")
        patient = self.session.get(Patient, appointment.patient_id)
        payload = {
            "patientId": (patient.external_id if patient and patient.external_id else appointment.patient_id),
            "providerId": appointment.provider_id,
            "date": appointment.appointment_date.isoformat(),
            "time": appointment.start_time,
            "duration": appointment.duration_minutes,
            "status": appointment.status,
            "type": appointment.appointment_type,
            "title": appointment.title,
            "notes": appointment.notes,
            "room": appointment.room,
            "practiceId": self.config.practice_id,
        }
        try:
            resp = self.http.post(
                self._url("appointments"), json=payload, headers=self._headers(), timeout=REQUEST_TIMEOUT
            )
        except requests.RequestException as exc:
            logger.warning("ehr_push_failed", extra={"system": self.config.system, "error": str(exc)})
            return EHRResponse(success=False, error=str(exc))
        if not resp.ok:
            return EHRResponse(success=False, error=f"{self.label} API error: {resp.status_code}")
        try:
            body = resp.json()
        except ValueError:
            body = {}
        remote_id = body.get("id") if isinstance(body, Mapping) else None
        if remote_id is not None:
            appointment.external_id = str(remote_id)
            self.session.flush()
        return EHRResponse(success=True, data={"appointmentId": appointment.id, "externalId": appointment.external_id})

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _sync(self, entity: str, upsert: Callable[[Mapping[str, Any]], str]) -> EHRResponse:
        try:
            records = _extract_records(self._get(entity), entity)
        except (requests.RequestException, ValueError, _RemoteStatusError) as exc:
            logger.warning(
                "ehr_fetch_failed", extra={"system": self.config.system, "entity": entity, "error": str(exc)}
            )
            self._record_outcome(error=str(exc))
            return EHRResponse(success=False, error=str(exc))

        synced = 0
        created = 0
        errors: List[Dict[str, Any]] = []
        for record in records:
            external_id = record.get("id") if isinstance(record, Mapping) else None
            try:
                with self.session.begin_nested():
                    outcome = upsert(record)
            except Exception as exc:
                logger.exception(
                    "ehr_record_sync_failed",
                    extra={"system": self.config.system, "entity": entity, "external_id": external_id},
                )
                EHR_SYNC_RECORDS.labels(system=self.config.system, entity=entity, outcome="failed").inc()
                errors.append({"externalId": external_id, "error": str(exc)})
                continue
            synced += 1
            if outcome == "created":
                created += 1
            EHR_SYNC_RECORDS.labels(system=self.config.system, entity=entity, outcome=outcome).inc()

        self._record_outcome(error=None)
        logger.info(
            "ehr_sync_complete",
            extra={"system": self.config.system, "entity": entity, "total": len(records), "synced": synced},
        )
        return EHRResponse(
            success=True,
            data={
                "total": len(records),
                "synced": synced,
                "created": created,
                "updated": synced - created,
                "failed": len(errors),
                "errors": errors,
            },
        )

    def _upsert_patient(self, record: Mapping[str, Any]) -> str:
        if not isinstance(record, Mapping):
            raise ValueError("patient record must be an object")
        values = map_patient_record(record)
        values["specialty"] = values.get("specialty") or self.config.specialty
        existing = self._find_patient(values)
        if existing is None:
            create_patient(self.session, self.tenant_id, values)
            return "created"
        update_patient(self.session, self.tenant_id, existing.id, values)
        return "updated"

    def _find_patient(self, values: Mapping[str, Any]) -> Optional[Patient]:
        external_id = values.get("external_id")
        if external_id:
            found = self.session.scalar(
                sa.select(Patient).where(Patient.tenant_id == self.tenant_id, Patient.external_id == external_id)
            )
            if found is not None:
                return found
        # stored names and emails went through the sanitizer on the way in
        first_name = sanitize_optional(values.get("first_name"))
        last_name = sanitize_optional(values.get("last_name"))
        if not first_name or not last_name:
            return None
        stmt = sa.select(Patient).where(
            Patient.tenant_id == self.tenant_id,
            Patient.first_name == first_name,
            Patient.last_name == last_name,
        )
        email = sanitize_optional(values.get("email"))
        stmt = stmt.where(Patient.email == email) if email else stmt.where(Patient.email.is_(None))
        return self.session.scalars(stmt).first()

    def _upsert_appointment(self, record: Mapping[str, Any]) -> str:
        if not isinstance(record, Mapping):
            raise ValueError("appointment record must be an object")
        values = map_appointment_record(record)
        remote_patient_id = values.pop("remote_patient_id", None)
        if remote_patient_id is None:
            raise ValueError("appointment has no patient reference")
        patient = self.session.scalar(
            sa.select(Patient).where(
                Patient.tenant_id == self.tenant_id, Patient.external_id == str(remote_patient_id)
            )
        )
        if patient is None:
            raise ValueError(f"unknown patient {remote_patient_id}")

        existing: Optional[Appointment] = None
        if values.get("external_id"):
            existing = self.session.scalar(
                sa.select(Appointment).where(
                    Appointment.tenant_id == self.tenant_id, Appointment.external_id == values["external_id"]
                )
            )
        if existing is None:
            existing = self.session.scalar(
                sa.select(Appointment).where(
                    Appointment.tenant_id == self.tenant_id,
                    Appointment.patient_id == patient.id,
                    Appointment.appointment_date == values["appointment_date"],
                    Appointment.start_time == values["start_time"],
                )
            )
        if existing is None:
            appointment = Appointment(
                tenant_id=self.tenant_id,
                patient_id=patient.id,
                created_via=f"ehr:{self.config.system}",
                **values,
            )
            self.session.add(appointment)
            self.session.flush()
            return "created"
        for key, value in values.items():
            setattr(existing, key, value)
        self.session.flush()
        return "updated"

    def _record_outcome(self, error: Optional[str]) -> None:
        connection = self.session.scalar(
            sa.select(EHRConnection).where(
                EHRConnection.tenant_id == self.tenant_id, EHRConnection.system == self.config.system
            )
        )
        if connection is None:
            return
        connection.status = "error" if error else "connected"
        connection.last_error = error
        if error is None:
            connection.last_sync_at = utc_now()
        self.session.flush()


class _RemoteStatusError(Exception):
    """Non-2xx response from the EHR API."""


# ----------------------------------------------------------------------
# connection management
# ----------------------------------------------------------------------


def save_connection(session: Session, tenant_id: str, config: EHRConfig) -> EHRConnection:
    """Create or replace the tenant's connection for ``config.system``."""

    connection = session.scalar(
        sa.select(EHRConnection).where(EHRConnection.tenant_id == tenant_id, EHRConnection.system == config.system)
    )
    if connection is None:
        connection = EHRConnection(tenant_id=tenant_id, system=config.system)
        session.add(connection)
    connection.api_endpoint = config.api_endpoint
    connection.api_key_encrypted = encryption.encrypt_secret(config.api_key)
    connection.practice_id = config.practice_id
    connection.specialty = config.specialty
    connection.status = "configured"
    connection.last_error = None
    session.flush()
    return connection


def list_connections(session: Session, tenant_id: str) -> List[EHRConnection]:
    return list(
        session.scalars(
            sa.select(EHRConnection).where(EHRConnection.tenant_id == tenant_id).order_by(EHRConnection.system)
        )
    )


def get_connection_config(session: Session, tenant_id: str, system: str) -> EHRConfig:
    connection = session.scalar(
        sa.select(EHRConnection).where(EHRConnection.tenant_id == tenant_id, EHRConnection.system == system)
    )
    if connection is None:
        raise NotFoundError(f"No {system} connection configured")
    try:
        api_key = encryption.decrypt_secret(connection.api_key_encrypted)
    except ValueError as exc:
        raise ValidationError("Stored EHR credentials could not be decrypted; re-save the connection") from exc
    return EHRConfig(
        system=connection.system,
        api_endpoint=connection.api_endpoint,
        api_key=api_key,
        practice_id=connection.practice_id,
        specialty=connection.specialty,
    )


def serialize_connection(connection: EHRConnection) -> Dict[str, Any]:
    return {
        "id": connection.id,
        "system": connection.system,
        "label": SYSTEM_LABELS.get(connection.system, connection.system),
        "apiEndpoint": connection.api_endpoint,
        "practiceId": connection.practice_id,
        "specialty": connection.specialty,
        "status": connection.status,
        "lastSyncAt": connection.last_sync_at.isoformat() if connection.last_sync_at else None,
        "lastError": connection.last_error,
    }


__all__ = [
    "EHRConfig",
    "EHRIntegrationService",
    "EHRResponse",
    "SYSTEM_LABELS",
    "get_connection_config",
    "list_connections",
    "map_appointment_record",
    "map_patient_record",
    "save_connection",
    "serialize_connection",
]
