"""Risk scoring and AI assisted schedule helpers.

The remote calls all go through :func:`flowiq.hipaa.route_ai_request` so the
AI services only ever see tokenized patient data.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.orm import Session

from flowiq import hipaa
from flowiq.errors import NotFoundError
from flowiq.models import Appointment, ClinicalNote, Patient
from flowiq.patients import get_patient, snapshot
from flowiq.scheduling import INACTIVE_STATUSES, serialize_appointment
from flowiq.time_utils import calculate_age, ensure_utc, utc_now

logger = logging.getLogger(__name__)

HIGH_RISK_CONDITIONS = ("diabetes", "hypertension", "heart", "cancer", "copd")

RISK_RECOMMENDATIONS = {
    "critical": [
        "Consider immediate consultation or referral",
        "Monitor vital signs closely",
        "Schedule follow-up within 24-48 hours",
    ],
    "high": [
        "Schedule priority follow-up",
        "Review medication compliance",
        "Consider care coordination",
    ],
    "medium": [
        "Regular monitoring recommended",
        "Patient education on condition management",
    ],
    "low": [
        "Continue routine care",
        "Maintain current treatment plan",
    ],
}

_LIST_SPLIT = re.compile(r"[,;\n]+")


@dataclass
class RiskFactor:
    kind: str
    weight: int
    description: str


@dataclass
class PatientRisk:
    patient_id: str
    score: int
    level: str
    factors: List[RiskFactor] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patientId": self.patient_id,
            "score": self.score,
            "riskLevel": self.level,
            "factors": [f.description for f in self.factors],
            "recommendations": list(self.recommendations),
        }


def _split_list(text: Optional[str]) -> List[str]:
    return [item.strip() for item in _LIST_SPLIT.split(text or "") if item.strip()]


def risk_level(score: int) -> str:
    if score >= 80:
        return "critical"
    if score >= 60:
        return "high"
    if score >= 30:
        return "medium"
    return "low"


def calculate_patient_risk(
    patient: Patient,
    appointments: Sequence[Appointment] = (),
    now: Optional[datetime] = None,
) -> PatientRisk:
    now = ensure_utc(now or utc_now())
    factors: List[RiskFactor] = []

    age = calculate_age(patient.date_of_birth, today=now.date())
    if age is not None and age >= 65:
        factors.append(RiskFactor("age", 2, "Senior patient (65+)"))

    for condition in _split_list(patient.medical_history):
        if any(risk in condition.lower() for risk in HIGH_RISK_CONDITIONS):
            factors.append(RiskFactor("medical", 3, f"High-risk condition: {condition}"))

    medications = _split_list(patient.medications)
    if len(medications) >= 5:
        factors.append(RiskFactor("medication", 2, f"Multiple medications ({len(medications)})"))

    cutoff = now.date() - timedelta(days=90)
    recent = [a for a in appointments if cutoff <= a.appointment_date <= now.date()]
    if len(recent) >= 3:
        factors.append(RiskFactor("frequency", 2, "Frequent appointments (3+ in 90 days)"))

    score = min(sum(f.weight for f in factors) * 10, 100)
    level = risk_level(score)
    return PatientRisk(
        patient_id=patient.id,
        score=score,
        level=level,
        factors=factors,
        recommendations=list(RISK_RECOMMENDATIONS[level]),
    )


def patient_risk(session: Session, tenant_id: str, patient_id: str, *, now: Optional[datetime] = None) -> PatientRisk:
    patient = get_patient(session, tenant_id, patient_id)
    appointments = list(
        session.scalars(
            sa.select(Appointment).where(
                Appointment.tenant_id == tenant_id,
                Appointment.patient_id == patient.id,
                Appointment.status.notin_(INACTIVE_STATUSES),
            )
        )
    )
    return calculate_patient_risk(patient, appointments, now=now)


def optimize_provider_schedule(
    session: Session,
    tenant_id: str,
    provider_id: str,
    day: date,
    *,
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Ask the schedule optimizer to reorder a provider's day by patient risk."""

    appointments = list(
        session.scalars(
            sa.select(Appointment)
            .where(
                Appointment.tenant_id == tenant_id,
                Appointment.provider_id == provider_id,
                Appointment.appointment_date == day,
                Appointment.status.notin_(INACTIVE_STATUSES),
            )
            .order_by(Appointment.start_time)
        )
    )
    if not appointments:
        raise NotFoundError("No appointments found for optimization")

    entries = []
    for appt in appointments:
        patient = session.get(Patient, appt.patient_id)
        risk = patient_risk(session, tenant_id, patient.id)
        entries.append(
            {
                "appointmentId": appt.id,
                "startTime": appt.start_time,
                "durationMinutes": appt.duration_minutes,
                "appointmentType": appt.appointment_type,
                "riskScore": risk.score,
                "riskLevel": risk.level,
                "patient": {
                    "first_name": patient.first_name,
                    "last_name": patient.last_name,
                    "date_of_birth": patient.date_of_birth.isoformat() if patient.date_of_birth else None,
                },
            }
        )

    routed = hipaa.route_ai_request(
        session,
        tenant_id,
        "schedule-optimizer",
        {"providerId": provider_id, "date": day.isoformat(), "appointments": entries},
        user_id,
        "schedule_optimization",
    )
    result = routed["data"]
    risk_flags = []
    if routed["classification"]["sensitivityLevel"] == "high":
        risk_flags.append("High sensitivity patient data")
    return {
        "providerId": provider_id,
        "date": day.isoformat(),
        "originalSchedule": [serialize_appointment(a) for a in appointments],
        "optimizedSchedule": result.get("optimizedSchedule", []),
        "recommendations": result.get("recommendations", []),
        "riskFlags": risk_flags,
        "reasoning": result.get("reasoning") or "Ordered by patient risk with buffers between visits",
    }


def generate_clinical_summary(
    session: Session,
    tenant_id: str,
    patient_id: str,
    *,
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    patient = get_patient(session, tenant_id, patient_id)
    appointments = session.scalars(
        sa.select(Appointment)
        .where(Appointment.tenant_id == tenant_id, Appointment.patient_id == patient.id)
        .order_by(Appointment.appointment_date)
    )
    notes = session.scalars(
        sa.select(ClinicalNote)
        .where(ClinicalNote.tenant_id == tenant_id, ClinicalNote.patient_id == patient.id)
        .order_by(ClinicalNote.created_at)
    )
    payload = {
        "patient": snapshot(patient),
        "appointments": [
            {"date": a.appointment_date.isoformat(), "type": a.appointment_type, "status": a.status}
            for a in appointments
        ],
        "notes": [{"assessment": n.assessment, "plan": n.plan} for n in notes],
    }
    routed = hipaa.route_ai_request(
        session, tenant_id, "clinical-summarizer", payload, user_id, "clinical_summary_generation"
    )
    result = routed["data"]
    risk_flags = []
    if routed["classification"]["sensitivityLevel"] == "high":
        risk_flags.append("High sensitivity patient data")
    risk_flags.extend(result.get("urgentFlags") or [])
    return {
        "patientId": patient.id,
        "summary": result.get("summary") or "Clinical summary generated",
        "keyFindings": result.get("keyFindings") or result.get("keyPoints") or [],
        "recommendations": result.get("recommendations") or [],
        "followUpRequired": bool(result.get("followUpRequired", False)),
        "riskFlags": risk_flags,
        "generatedAt": utc_now().isoformat(),
    }


__all__ = [
    "HIGH_RISK_CONDITIONS",
    "PatientRisk",
    "RiskFactor",
    "calculate_patient_risk",
    "generate_clinical_summary",
    "optimize_provider_schedule",
    "patient_risk",
    "risk_level",
]
