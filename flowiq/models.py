"""SQLAlchemy models for the practice-management schema."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class Role(str, enum.Enum):
    ADMIN = "admin"
    PRACTICE_ADMIN = "practice_admin"
    PROVIDER = "provider"
    STAFF = "staff"
    BILLING = "billing"


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    CHECKED_IN = "checked_in"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    RESCHEDULED = "rescheduled"


class ClaimStatus(str, enum.Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    DENIED = "denied"
    APPEALED = "appealed"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    CLOSED = "closed"


class TimestampMixin:
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )
    updated_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
        onupdate=_utcnow,
    )


class Tenant(TimestampMixin, Base):
    __tablename__ = "tenants"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    name = sa.Column(String, nullable=False)
    subdomain = sa.Column(String(63), nullable=False, unique=True, index=True)
    specialty = sa.Column(String, nullable=True)
    practice_type = sa.Column(String, nullable=True)
    settings = sa.Column(sa.JSON, nullable=False, default=dict)
    primary_color = sa.Column(String(16), nullable=True)
    secondary_color = sa.Column(String(16), nullable=True)
    is_active = sa.Column(Boolean, nullable=False, default=True, server_default=sa.true())


class User(TimestampMixin, Base):
    __tablename__ = "users"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    tenant_id = sa.Column(String(36), ForeignKey("tenants.id"), nullable=True, index=True)
    username = sa.Column(String, nullable=False, unique=True, index=True)
    email = sa.Column(String, nullable=True)
    name = sa.Column(String, nullable=True)
    password_hash = sa.Column(String, nullable=False)
    role = sa.Column(String, nullable=False, default=Role.STAFF.value)
    failed_login_attempts = sa.Column(Integer, nullable=False, default=0, server_default=sa.text("0"))
    locked_until = sa.Column(DateTime(timezone=True), nullable=True)
    last_login_at = sa.Column(DateTime(timezone=True), nullable=True)
    is_active = sa.Column(Boolean, nullable=False, default=True, server_default=sa.true())


class Patient(TimestampMixin, Base):
    __tablename__ = "patients"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    tenant_id = sa.Column(String(36), ForeignKey("tenants.id"), nullable=False)
    patient_number = sa.Column(String(16), nullable=False)
    first_name = sa.Column(String, nullable=False)
    last_name = sa.Column(String, nullable=False)
    date_of_birth = sa.Column(Date, nullable=True)
    email = sa.Column(String, nullable=True)
    phone = sa.Column(String, nullable=True)
    address = sa.Column(String, nullable=True)
    city = sa.Column(String, nullable=True)
    state = sa.Column(String, nullable=True)
    zip_code = sa.Column(String, nullable=True)
    gender = sa.Column(String, nullable=True)
    insurance_provider = sa.Column(String, nullable=True)
    insurance_number = sa.Column(String, nullable=True)
    medical_history = sa.Column(Text, nullable=True)
    allergies = sa.Column(Text, nullable=True)
    medications = sa.Column(Text, nullable=True)
    emergency_contact_name = sa.Column(String, nullable=True)
    emergency_contact_phone = sa.Column(String, nullable=True)
    specialty = sa.Column(String, nullable=True)
    external_id = sa.Column(String, nullable=True)
    is_active = sa.Column(Boolean, nullable=False, default=True, server_default=sa.true())

    __table_args__ = (
        sa.UniqueConstraint("tenant_id", "patient_number", name="uq_patients_tenant_number"),
        sa.Index("idx_patients_tenant_name", "tenant_id", "last_name", "first_name"),
        sa.Index("idx_patients_tenant_external", "tenant_id", "external_id"),
    )


class Appointment(TimestampMixin, Base):
    __tablename__ = "appointments"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    tenant_id = sa.Column(String(36), ForeignKey("tenants.id"), nullable=False)
    patient_id = sa.Column(String(36), ForeignKey("patients.id", ondelete="CASCADE"), nullable=False)
    provider_id = sa.Column(String(36), nullable=True)
    title = sa.Column(String, nullable=True)
    appointment_type = sa.Column(String, nullable=False, default="consultation")
    appointment_date = sa.Column(Date, nullable=False)
    start_time = sa.Column(String(5), nullable=False)
    duration_minutes = sa.Column(Integer, nullable=False, default=30)
    status = sa.Column(String, nullable=False, default=AppointmentStatus.SCHEDULED.value)
    notes = sa.Column(Text, nullable=True)
    room = sa.Column(String, nullable=True)
    external_id = sa.Column(String, nullable=True)
    created_via = sa.Column(String, nullable=False, default="manual")
    confirmed_at = sa.Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        sa.Index("idx_appointments_tenant_date", "tenant_id", "appointment_date"),
        sa.Index("idx_appointments_provider_date", "provider_id", "appointment_date"),
    )


class WaitlistEntry(TimestampMixin, Base):
    __tablename__ = "appointment_waitlist"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    tenant_id = sa.Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    patient_id = sa.Column(String(36), ForeignKey("patients.id", ondelete="CASCADE"), nullable=False)
    provider_id = sa.Column(String(36), nullable=True)
    appointment_type = sa.Column(String, nullable=False, default="consultation")
    preferred_dates = sa.Column(sa.JSON, nullable=False, default=list)
    preferred_times = sa.Column(sa.JSON, nullable=False, default=list)
    priority = sa.Column(Integer, nullable=False, default=0)
    urgency = sa.Column(String, nullable=False, default="routine")
    status = sa.Column(String, nullable=False, default="active")
    notes = sa.Column(Text, nullable=True)
    appointment_id = sa.Column(String(36), ForeignKey("appointments.id"), nullable=True)


class AppointmentReminder(TimestampMixin, Base):
    __tablename__ = "appointment_reminders"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    tenant_id = sa.Column(String(36), ForeignKey("tenants.id"), nullable=False)
    appointment_id = sa.Column(
        String(36), ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    channel = sa.Column(String, nullable=False)
    scheduled_for = sa.Column(DateTime(timezone=True), nullable=False, index=True)
    status = sa.Column(String, nullable=False, default="pending")
    sent_at = sa.Column(DateTime(timezone=True), nullable=True)


class Claim(TimestampMixin, Base):
    __tablename__ = "claims"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    tenant_id = sa.Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    claim_number = sa.Column(String(32), nullable=False, unique=True)
    patient_id = sa.Column(String(36), ForeignKey("patients.id"), nullable=False)
    appointment_id = sa.Column(String(36), ForeignKey("appointments.id"), nullable=True)
    diagnosis_codes = sa.Column(sa.JSON, nullable=False, default=list)
    procedure_codes = sa.Column(sa.JSON, nullable=False, default=list)
    payer_name = sa.Column(String, nullable=True)
    total_amount = sa.Column(Float, nullable=False, default=0.0)
    paid_amount = sa.Column(Float, nullable=False, default=0.0)
    status = sa.Column(String, nullable=False, default=ClaimStatus.DRAFT.value)
    service_date = sa.Column(Date, nullable=True)
    submitted_date = sa.Column(DateTime(timezone=True), nullable=True)
    processed_date = sa.Column(DateTime(timezone=True), nullable=True)
    denial_reason = sa.Column(String, nullable=True)
    notes = sa.Column(Text, nullable=True)


class ClaimEvent(Base):
    __tablename__ = "claim_events"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    claim_id = sa.Column(String(36), ForeignKey("claims.id", ondelete="CASCADE"), nullable=False, index=True)
    from_status = sa.Column(String, nullable=True)
    to_status = sa.Column(String, nullable=False)
    note = sa.Column(Text, nullable=True)
    actor_id = sa.Column(String(36), nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Payment(TimestampMixin, Base):
    __tablename__ = "payments"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    tenant_id = sa.Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    claim_id = sa.Column(String(36), ForeignKey("claims.id"), nullable=True)
    claim_reference = sa.Column(String, nullable=True)
    payer_name = sa.Column(String, nullable=True)
    payment_date = sa.Column(Date, nullable=True)
    payment_amount = sa.Column(Float, nullable=False, default=0.0)
    check_number = sa.Column(String, nullable=True)
    era_number = sa.Column(String, nullable=True)
    adjustments = sa.Column(sa.JSON, nullable=False, default=list)
    status = sa.Column(String, nullable=False, default="pending_review")
    auto_posted = sa.Column(Boolean, nullable=False, default=False)
    confidence = sa.Column(Float, nullable=False, default=0.0)
    reconciliation_errors = sa.Column(sa.JSON, nullable=False, default=list)
    posted_at = sa.Column(DateTime(timezone=True), nullable=True)


class InsuranceCard(TimestampMixin, Base):
    __tablename__ = "insurance_cards"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    tenant_id = sa.Column(String(36), ForeignKey("tenants.id"), nullable=False)
    patient_id = sa.Column(String(36), ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True)
    card_type = sa.Column(String, nullable=False, default="medical")
    front_image_path = sa.Column(String, nullable=True)
    back_image_path = sa.Column(String, nullable=True)
    extracted_data = sa.Column(sa.JSON, nullable=False, default=dict)
    insurance_provider_name = sa.Column(String, nullable=True)
    member_id = sa.Column(String, nullable=True)
    group_number = sa.Column(String, nullable=True)
    policy_number = sa.Column(String, nullable=True)
    verification_status = sa.Column(String, nullable=False, default="pending")
    rejection_reason = sa.Column(String, nullable=True)
    verified_at = sa.Column(DateTime(timezone=True), nullable=True)
    is_primary = sa.Column(Boolean, nullable=False, default=True)


class ClinicalNote(TimestampMixin, Base):
    __tablename__ = "clinical_notes"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    tenant_id = sa.Column(String(36), ForeignKey("tenants.id"), nullable=False)
    patient_id = sa.Column(String(36), ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True)
    appointment_id = sa.Column(String(36), ForeignKey("appointments.id"), nullable=True)
    provider_id = sa.Column(String(36), nullable=True)
    note_type = sa.Column(String, nullable=False, default="soap")
    subjective = sa.Column(Text, nullable=True)
    objective = sa.Column(Text, nullable=True)
    assessment = sa.Column(Text, nullable=True)
    plan = sa.Column(Text, nullable=True)
    status = sa.Column(String, nullable=False, default="draft")
    signed_at = sa.Column(DateTime(timezone=True), nullable=True)
    signed_by = sa.Column(String(36), nullable=True)
    amended_from_id = sa.Column(String(36), ForeignKey("clinical_notes.id"), nullable=True)
    suggested_codes = sa.Column(sa.JSON, nullable=False, default=list)


class EHRConnection(TimestampMixin, Base):
    __tablename__ = "ehr_connections"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    tenant_id = sa.Column(String(36), ForeignKey("tenants.id"), nullable=False)
    system = sa.Column(String, nullable=False)
    api_endpoint = sa.Column(String, nullable=False)
    api_key_encrypted = sa.Column(Text, nullable=False)
    practice_id = sa.Column(String, nullable=True)
    specialty = sa.Column(String, nullable=True)
    status = sa.Column(String, nullable=False, default="configured")
    last_sync_at = sa.Column(DateTime(timezone=True), nullable=True)
    last_error = sa.Column(Text, nullable=True)

    __table_args__ = (
        sa.UniqueConstraint("tenant_id", "system", name="uq_ehr_connections_tenant_system"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    tenant_id = sa.Column(String(36), nullable=True, index=True)
    user_id = sa.Column(String(36), nullable=True)
    action = sa.Column(String, nullable=False, index=True)
    table_name = sa.Column(String, nullable=True)
    record_id = sa.Column(String, nullable=True)
    old_values = sa.Column(sa.JSON, nullable=True)
    new_values = sa.Column(sa.JSON, nullable=True)
    ip_address = sa.Column(String, nullable=True)
    user_agent = sa.Column(String, nullable=True)
    phi_accessed = sa.Column(Boolean, nullable=False, default=False)
    purpose = sa.Column(String, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)


class CommunicationLog(Base):
    __tablename__ = "communication_logs"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    tenant_id = sa.Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    patient_id = sa.Column(String(36), ForeignKey("patients.id", ondelete="SET NULL"), nullable=True)
    channel = sa.Column(String, nullable=False)
    template_id = sa.Column(String, nullable=True)
    recipient = sa.Column(String, nullable=False)
    subject = sa.Column(String, nullable=True)
    body = sa.Column(Text, nullable=False)
    segments = sa.Column(Integer, nullable=True)
    status = sa.Column(String, nullable=False)
    external_id = sa.Column(String, nullable=True)
    error = sa.Column(Text, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)


__all__ = [
    "Appointment",
    "AppointmentReminder",
    "AppointmentStatus",
    "AuditLog",
    "Base",
    "Claim",
    "ClaimEvent",
    "ClaimStatus",
    "ClinicalNote",
    "CommunicationLog",
    "EHRConnection",
    "InsuranceCard",
    "Patient",
    "Payment",
    "Role",
    "Tenant",
    "User",
    "WaitlistEntry",
]
