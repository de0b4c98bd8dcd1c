"""Request bodies accepted by the HTTP API.

Clients send camelCase keys; snake_case is accepted too.  Route handlers pass
``model_dump(exclude_unset=True)`` straight to the service layer, which works
in snake_case.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra="ignore")

    def values(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


# --- auth / tenants --------------------------------------------------------


class RegisterModel(ApiModel):
    username: str
    password: str
    role: str = "staff"
    tenant_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None


class LoginModel(ApiModel):
    username: str
    password: str

    @field_validator("username", "password")
    @classmethod
    def _required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field is required")
        return value


class TenantCreateModel(ApiModel):
    name: str
    subdomain: str
    specialty: Optional[str] = None
    practice_type: Optional[str] = None
    settings: Dict[str, Any] = Field(default_factory=dict)
    primary_color: Optional[str] = None
    secondary_color: Optional[str] = None


class TenantUpdateModel(ApiModel):
    name: Optional[str] = None
    subdomain: Optional[str] = None
    specialty: Optional[str] = None
    practice_type: Optional[str] = None
    settings: Optional[Dict[str, Any]] = None
    primary_color: Optional[str] = None
    secondary_color: Optional[str] = None
    is_active: Optional[bool] = None


# --- patients --------------------------------------------------------------

TextOrList = Union[str, List[str], None]


class PatientModel(ApiModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    date_of_birth: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    gender: Optional[str] = None
    insurance_provider: Optional[str] = None
    insurance_number: Optional[str] = None
    medical_history: TextOrList = None
    allergies: TextOrList = None
    medications: TextOrList = None
    emergency_contact_name: Optional[str] = None
    emergency_contact_phone: Optional[str] = None
    specialty: Optional[str] = None
    is_active: Optional[bool] = None


# --- scheduling ------------------------------------------------------------


class AppointmentModel(ApiModel):
    patient_id: str
    provider_id: Optional[str] = None
    appointment_type: str = "consultation"
    appointment_date: date
    start_time: str
    duration_minutes: Optional[int] = Field(default=None, gt=0, le=480)
    title: Optional[str] = None
    notes: Optional[str] = None
    room: Optional[str] = None


class AppointmentUpdateModel(ApiModel):
    provider_id: Optional[str] = None
    appointment_type: Optional[str] = None
    appointment_date: Optional[date] = None
    start_time: Optional[str] = None
    duration_minutes: Optional[int] = Field(default=None, gt=0, le=480)
    title: Optional[str] = None
    notes: Optional[str] = None
    room: Optional[str] = None


class StatusModel(ApiModel):
    status: str


class BookingModel(ApiModel):
    patient_id: str
    appointment_type: str = "consultation"
    provider_id: Optional[str] = None
    preferred_dates: List[date] = Field(default_factory=list)
    preferred_time: Optional[str] = None
    urgency: Literal["routine", "soon", "urgent"] = "routine"
    window_days: int = Field(default=14, ge=1, le=90)
    duration_minutes: Optional[int] = Field(default=None, gt=0, le=480)
    notes: Optional[str] = None


class OptimizeModel(ApiModel):
    provider_id: str
    day: date = Field(alias="date")


class ScheduleConfigModel(ApiModel):
    email_reminders: Optional[bool] = None
    sms_reminders: Optional[bool] = None
    reminder_hours: Optional[List[int]] = None
    work_start: Optional[str] = None
    work_end: Optional[str] = None
    working_days: Optional[List[int]] = None
    slot_minutes: Optional[int] = None
    buffer_minutes: Optional[int] = None
    auto_book_threshold: Optional[float] = None


class WaitlistModel(ApiModel):
    patient_id: str
    provider_id: Optional[str] = None
    appointment_type: str = "consultation"
    preferred_dates: List[str] = Field(default_factory=list)
    preferred_times: List[str] = Field(default_factory=list)
    priority: int = 0
    urgency: Literal["routine", "soon", "urgent"] = "routine"
    notes: Optional[str] = None


# --- claims / payments -----------------------------------------------------


class ClaimModel(ApiModel):
    patient_id: str
    appointment_id: Optional[str] = None
    diagnosis_codes: List[str] = Field(default_factory=list)
    procedure_codes: List[str] = Field(default_factory=list)
    payer_name: Optional[str] = None
    total_amount: float = Field(default=0.0, ge=0)
    service_date: Optional[date] = None
    notes: Optional[str] = None


class ClaimUpdateModel(ApiModel):
    diagnosis_codes: Optional[List[str]] = None
    procedure_codes: Optional[List[str]] = None
    payer_name: Optional[str] = None
    total_amount: Optional[float] = Field(default=None, ge=0)
    service_date: Optional[date] = None
    notes: Optional[str] = None


class ClaimStatusModel(ApiModel):
    status: str
    note: Optional[str] = None
    denial_reason: Optional[str] = None


class DenialAnalysisModel(ApiModel):
    denial_reasons: List[str] = Field(default_factory=list)
    apply_corrections: bool = False


class PostPaymentModel(ApiModel):
    claim_id: Optional[str] = None


# --- cards / notes / communications ---------------------------------------


class CardExtractModel(ApiModel):
    ocr_text: Optional[str] = None


class CardRejectModel(ApiModel):
    reason: str


class NoteModel(ApiModel):
    patient_id: str
    appointment_id: Optional[str] = None
    provider_id: Optional[str] = None
    note_type: str = "soap"
    subjective: Optional[str] = None
    objective: Optional[str] = None
    assessment: Optional[str] = None
    plan: Optional[str] = None


class NoteUpdateModel(ApiModel):
    note_type: Optional[str] = None
    subjective: Optional[str] = None
    objective: Optional[str] = None
    assessment: Optional[str] = None
    plan: Optional[str] = None


class NoteGenerateModel(ApiModel):
    patient_id: str
    appointment_id: Optional[str] = None
    note_type: str = "soap"
    chief_complaint: Optional[str] = None
    transcript: Optional[str] = None
    vitals: Dict[str, Any] = Field(default_factory=dict)
    findings: List[str] = Field(default_factory=list)
    save: bool = False


class SendCommunicationModel(ApiModel):
    channel: Literal["email", "sms", "voice"]
    patient_id: str
    template_id: Optional[str] = None
    body: Optional[str] = None
    subject: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)


# --- integrations / ehr / hipaa -------------------------------------------


class IntegrationUpdateModel(ApiModel):
    enabled: Optional[bool] = None
    status: Optional[str] = None
    config: Optional[Dict[str, Any]] = None


class EHRSyncModel(ApiModel):
    system: str


class RecordModel(ApiModel):
    data: Any
