"""Practice and platform reporting."""

from __future__ import annotations

import csv
import io
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Tuple

import sqlalchemy as sa
from sqlalchemy.orm import Session

from flowiq.claims import list_claims
from flowiq.errors import ValidationError
from flowiq.models import Appointment, Claim, Patient, Tenant, User
from flowiq.payment_posting import payment_analytics
from flowiq.scheduling import schedule_analytics

# claims that reached a payer decision, used as the denial-rate denominator
_ADJUDICATED = {"accepted", "denied", "paid", "partially_paid", "appealed", "closed"}

CLAIM_EXPORT_FIELDS = [
    "claim_number",
    "patient_id",
    "service_date",
    "payer_name",
    "status",
    "total_amount",
    "paid_amount",
    "diagnosis_codes",
    "procedure_codes",
    "denial_reason",
    "submitted_date",
]


def _bounds(start: date, end: date) -> Tuple[datetime, datetime]:
    if end < start:
        raise ValidationError("end must not be before start")
    return (
        datetime.combine(start, time.min, tzinfo=timezone.utc),
        datetime.combine(end, time.max, tzinfo=timezone.utc),
    )


def _patient_stats(session: Session, tenant_id: str, start: date, end: date) -> Dict[str, int]:
    since, until = _bounds(start, end)
    total = session.scalar(
        sa.select(sa.func.count(Patient.id)).where(Patient.tenant_id == tenant_id, Patient.is_active.is_(True))
    )
    new = session.scalar(
        sa.select(sa.func.count(Patient.id)).where(
            Patient.tenant_id == tenant_id,
            Patient.created_at >= since,
            Patient.created_at <= until,
        )
    )
    active = session.scalar(
        sa.select(sa.func.count(sa.distinct(Appointment.patient_id))).where(
            Appointment.tenant_id == tenant_id,
            Appointment.appointment_date >= start,
            Appointment.appointment_date <= end,
        )
    )
    return {"total": total or 0, "new": new or 0, "active": active or 0}


def _claim_stats(session: Session, tenant_id: str, start: date, end: date) -> Dict[str, Any]:
    claims = list_claims(session, tenant_id, start=start, end=end, limit=100000)
    by_status: Dict[str, int] = {}
    for claim in claims:
        by_status[claim.status] = by_status.get(claim.status, 0) + 1
    adjudicated = sum(count for status, count in by_status.items() if status in _ADJUDICATED)
    denied = by_status.get("denied", 0) + by_status.get("appealed", 0)
    billed = round(sum(c.total_amount or 0 for c in claims), 2)
    collected = round(sum(c.paid_amount or 0 for c in claims), 2)
    return {
        "total": len(claims),
        "byStatus": by_status,
        "billed": billed,
        "collected": collected,
        "collectionRate": round(collected / billed * 100, 1) if billed else 0.0,
        "denialRate": round(denied / adjudicated * 100, 1) if adjudicated else 0.0,
    }


def tenant_analytics(session: Session, tenant_id: str, start: date, end: date) -> Dict[str, Any]:
    """Dashboard figures for one practice over ``[start, end]``."""

    _bounds(start, end)
    return {
        "period": {"start": start.isoformat(), "end": end.isoformat()},
        "patients": _patient_stats(session, tenant_id, start, end),
        "appointments": schedule_analytics(session, tenant_id, start, end),
        "claims": _claim_stats(session, tenant_id, start, end),
        "payments": payment_analytics(session, tenant_id, start, end),
    }


def _claim_row(claim: Claim) -> Dict[str, Any]:
    return {
        "claim_number": claim.claim_number,
        "patient_id": claim.patient_id,
        "service_date": claim.service_date.isoformat() if claim.service_date else "",
        "payer_name": claim.payer_name or "",
        "status": claim.status,
        "total_amount": f"{claim.total_amount or 0:.2f}",
        "paid_amount": f"{claim.paid_amount or 0:.2f}",
        "diagnosis_codes": " ".join(claim.diagnosis_codes or []),
        "procedure_codes": " ".join(claim.procedure_codes or []),
        "denial_reason": claim.denial_reason or "",
        "submitted_date": claim.submitted_date.date().isoformat() if claim.submitted_date else "",
    }


def export_claims_csv(session: Session, tenant_id: str, start: date, end: date) -> str:
    _bounds(start, end)
    claims = list_claims(session, tenant_id, start=start, end=end, limit=100000)
    handle = io.StringIO()
    writer = csv.DictWriter(handle, fieldnames=CLAIM_EXPORT_FIELDS)
    writer.writeheader()
    for claim in claims:
        writer.writerow(_claim_row(claim))
    return handle.getvalue()


def _count_by_tenant(session: Session, model) -> Dict[str, int]:
    rows = session.execute(sa.select(model.tenant_id, sa.func.count(model.id)).group_by(model.tenant_id))
    return {tenant_id: count for tenant_id, count in rows if tenant_id}


def platform_summary(session: Session) -> Dict[str, Any]:
    """Cross-tenant counts for platform administrators."""

    tenants = list(session.scalars(sa.select(Tenant).order_by(Tenant.name)))
    patients = _count_by_tenant(session, Patient)
    appointments = _count_by_tenant(session, Appointment)
    claims = _count_by_tenant(session, Claim)
    users = _count_by_tenant(session, User)
    per_tenant: List[Dict[str, Any]] = [
        {
            "id": tenant.id,
            "name": tenant.name,
            "subdomain": tenant.subdomain,
            "isActive": tenant.is_active,
            "users": users.get(tenant.id, 0),
            "patients": patients.get(tenant.id, 0),
            "appointments": appointments.get(tenant.id, 0),
            "claims": claims.get(tenant.id, 0),
        }
        for tenant in tenants
    ]
    return {
        "totalTenants": len(tenants),
        "activeTenants": sum(1 for tenant in tenants if tenant.is_active),
        "totalUsers": session.scalar(sa.select(sa.func.count(User.id))) or 0,
        "totalPatients": sum(patients.values()),
        "totalAppointments": sum(appointments.values()),
        "totalClaims": sum(claims.values()),
        "tenants": per_tenant,
    }


__all__ = ["export_claims_csv", "platform_summary", "tenant_analytics"]
