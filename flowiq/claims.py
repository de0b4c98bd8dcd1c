"""Claims lifecycle and denial management."""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.orm import Session

from flowiq.errors import InvalidTransitionError, NotFoundError, ValidationError
from flowiq.models import Appointment, Claim, ClaimEvent, ClaimStatus
from flowiq.patients import get_patient
from flowiq.sanitizer import sanitize_optional
from flowiq.time_utils import ensure_utc, parse_date, utc_now

logger = logging.getLogger(__name__)

ICD10_RE = re.compile(r"^[A-Z][0-9][0-9A-Z](?:\.[0-9A-Z]{1,4})?$")
CPT_RE = re.compile(r"^\d{4}[0-9FTU]$")
HCPCS_RE = re.compile(r"^[A-CEGHJ-MP-V]\d{4}$")
CDT_RE = re.compile(r"^D\d{4}$")
_MODIFIER_RE = re.compile(r"^[0-9A-Z]{2}$")
CARC_RE = re.compile(r"\b(CO|PR|OA|PI|CR)-?(\d{1,3}|[A-Z]\d{1,2})\b")

CLAIM_TRANSITIONS: Dict[str, set] = {
    "draft": {"submitted"},
    "submitted": {"accepted", "rejected", "denied", "paid", "partially_paid"},
    "accepted": {"paid", "partially_paid", "denied"},
    "rejected": {"draft", "submitted"},
    "denied": {"appealed", "closed"},
    "appealed": {"paid", "partially_paid", "denied"},
    "partially_paid": {"paid", "closed"},
    "paid": {"closed"},
    "closed": set(),
}
PAYER_DECISIONS = {"accepted", "rejected", "denied", "paid", "partially_paid"}
EDITABLE_STATUSES = {"draft", "rejected"}


def is_valid_diagnosis_code(code: str) -> bool:
    return bool(ICD10_RE.match((code or "").strip().upper()))


def is_valid_procedure_code(code: str) -> bool:
    """Accept CPT, HCPCS Level II or CDT codes with an optional ``-XX`` modifier."""

    base, _, modifier = (code or "").strip().upper().partition("-")
    if modifier and not _MODIFIER_RE.match(modifier):
        return False
    return bool(CPT_RE.match(base) or HCPCS_RE.match(base) or CDT_RE.match(base))


def _normalise_codes(codes: Optional[Iterable[str]]) -> List[str]:
    seen: List[str] = []
    for code in codes or []:
        value = str(code).strip().upper()
        if value and value not in seen:
            seen.append(value)
    return seen


def _generate_claim_number(session: Session) -> str:
    prefix = utc_now().strftime("CLM-%Y%m%d-")
    while True:
        candidate = prefix + secrets.token_hex(3).upper()
        if session.scalar(sa.select(Claim.id).where(Claim.claim_number == candidate)) is None:
            return candidate


def _record_event(
    session: Session,
    claim: Claim,
    from_status: Optional[str],
    to_status: str,
    note: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> ClaimEvent:
    event = ClaimEvent(
        claim_id=claim.id,
        from_status=from_status,
        to_status=to_status,
        note=note,
        actor_id=actor_id,
    )
    session.add(event)
    return event


def _check_codes(diagnosis: Sequence[str], procedures: Sequence[str]) -> None:
    bad_dx = [code for code in diagnosis if not is_valid_diagnosis_code(code)]
    bad_px = [code for code in procedures if not is_valid_procedure_code(code)]
    if bad_dx or bad_px:
        raise ValidationError(
            "Invalid claim codes",
            details={"diagnosisCodes": bad_dx, "procedureCodes": bad_px},
        )


def create_claim(
    session: Session,
    tenant_id: str,
    values: Mapping[str, Any],
    *,
    actor_id: Optional[str] = None,
) -> Claim:
    patient = get_patient(session, tenant_id, values.get("patient_id") or "")
    appointment = None
    if values.get("appointment_id"):
        appointment = session.get(Appointment, values["appointment_id"])
        if appointment is None or appointment.tenant_id != tenant_id:
            raise NotFoundError(f"Appointment {values['appointment_id']} not found")
        if appointment.patient_id != patient.id:
            raise ValidationError("appointment belongs to a different patient")

    diagnosis = _normalise_codes(values.get("diagnosis_codes"))
    procedures = _normalise_codes(values.get("procedure_codes"))
    _check_codes(diagnosis, procedures)

    try:
        total = float(values.get("total_amount") or 0)
    except (TypeError, ValueError) as exc:
        raise ValidationError("total_amount must be a number") from exc
    if total < 0:
        raise ValidationError("total_amount cannot be negative")
    try:
        service_date = parse_date(values.get("service_date"))
    except ValueError as exc:
        raise ValidationError("service_date must be an ISO date") from exc
    if service_date is None and appointment is not None:
        service_date = appointment.appointment_date

    claim = Claim(
        tenant_id=tenant_id,
        claim_number=_generate_claim_number(session),
        patient_id=patient.id,
        appointment_id=appointment.id if appointment else None,
        diagnosis_codes=diagnosis,
        procedure_codes=procedures,
        payer_name=sanitize_optional(values.get("payer_name")) or patient.insurance_provider,
        total_amount=round(total, 2),
        status=ClaimStatus.DRAFT.value,
        service_date=service_date or utc_now().date(),
        notes=sanitize_optional(values.get("notes")),
    )
    session.add(claim)
    session.flush()
    _record_event(session, claim, None, claim.status, "Claim created", actor_id)
    session.flush()
    logger.info("claim_created", extra={"claim_id": claim.id, "claim_number": claim.claim_number})
    return claim


def get_claim(session: Session, tenant_id: str, claim_id: str) -> Claim:
    claim = session.get(Claim, claim_id)
    if claim is None or claim.tenant_id != tenant_id:
        raise NotFoundError(f"Claim {claim_id} not found")
    return claim


def find_claim_by_number(session: Session, tenant_id: str, claim_number: str) -> Optional[Claim]:
    return session.scalar(
        sa.select(Claim).where(Claim.tenant_id == tenant_id, Claim.claim_number == claim_number)
    )


def list_claims(
    session: Session,
    tenant_id: str,
    *,
    status: Optional[str] = None,
    patient_id: Optional[str] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    limit: int = 200,
    offset: int = 0,
) -> List[Claim]:
    stmt = sa.select(Claim).where(Claim.tenant_id == tenant_id)
    if status:
        stmt = stmt.where(Claim.status == status)
    if patient_id:
        stmt = stmt.where(Claim.patient_id == patient_id)
    if start is not None:
        stmt = stmt.where(Claim.service_date >= start)
    if end is not None:
        stmt = stmt.where(Claim.service_date <= end)
    stmt = stmt.order_by(Claim.service_date.desc(), Claim.claim_number).limit(limit).offset(offset)
    return list(session.scalars(stmt))


def update_claim(session: Session, tenant_id: str, claim_id: str, changes: Mapping[str, Any]) -> Claim:
    claim = get_claim(session, tenant_id, claim_id)
    if claim.status not in EDITABLE_STATUSES:
        raise InvalidTransitionError(f"Claim in status {claim.status} cannot be edited")
    diagnosis = _normalise_codes(changes["diagnosis_codes"]) if "diagnosis_codes" in changes else claim.diagnosis_codes
    procedures = _normalise_codes(changes["procedure_codes"]) if "procedure_codes" in changes else claim.procedure_codes
    _check_codes(diagnosis, procedures)
    if "total_amount" in changes:
        try:
            total = float(changes["total_amount"] or 0)
        except (TypeError, ValueError) as exc:
            raise ValidationError("total_amount must be a number") from exc
        if total < 0:
            raise ValidationError("total_amount cannot be negative")
        claim.total_amount = round(total, 2)
    claim.diagnosis_codes = list(diagnosis)
    claim.procedure_codes = list(procedures)
    if "payer_name" in changes:
        claim.payer_name = sanitize_optional(changes["payer_name"])
    if "notes" in changes:
        claim.notes = sanitize_optional(changes["notes"])
    if "service_date" in changes:
        try:
            claim.service_date = parse_date(changes["service_date"])
        except ValueError as exc:
            raise ValidationError("service_date must be an ISO date") from exc
    session.flush()
    return claim


def validate_claim(claim: Claim) -> List[str]:
    """Return the problems that would stop *claim* from being submitted."""

    issues = []
    if not claim.diagnosis_codes:
        issues.append("At least one diagnosis code is required")
    if not claim.procedure_codes:
        issues.append("At least one procedure code is required")
    if (claim.total_amount or 0) <= 0:
        issues.append("Total amount must be greater than zero")
    if not claim.payer_name:
        issues.append("Payer name is required")
    for code in claim.diagnosis_codes or []:
        if not is_valid_diagnosis_code(code):
            issues.append(f"Invalid diagnosis code: {code}")
    for code in claim.procedure_codes or []:
        if not is_valid_procedure_code(code):
            issues.append(f"Invalid procedure code: {code}")
    if claim.service_date and claim.service_date > utc_now().date():
        issues.append("Service date cannot be in the future")
    return issues


def transition_claim(
    session: Session,
    tenant_id: str,
    claim_id: str,
    new_status: str,
    note: Optional[str] = None,
    *,
    actor_id: Optional[str] = None,
    denial_reason: Optional[str] = None,
) -> Claim:
    claim = get_claim(session, tenant_id, claim_id)
    target = (new_status or "").strip().lower()
    if target not in CLAIM_TRANSITIONS:
        raise ValidationError(f"unknown claim status: {new_status}")
    if target not in CLAIM_TRANSITIONS[claim.status]:
        raise InvalidTransitionError(
            f"Cannot move claim from {claim.status} to {target}",
            details={"from": claim.status, "to": target},
        )
    if target == "submitted":
        issues = validate_claim(claim)
        if issues:
            raise ValidationError("Claim failed validation", details={"issues": issues})
        claim.submitted_date = utc_now()
    if target in PAYER_DECISIONS:
        claim.processed_date = utc_now()
    if target == "denied":
        claim.denial_reason = sanitize_optional(denial_reason) or claim.denial_reason
    previous = claim.status
    claim.status = target
    _record_event(session, claim, previous, target, sanitize_optional(note), actor_id)
    session.flush()
    logger.info("claim_transitioned", extra={"claim_id": claim.id, "from": previous, "to": target})
    return claim


def claim_history(session: Session, tenant_id: str, claim_id: str) -> List[ClaimEvent]:
    claim = get_claim(session, tenant_id, claim_id)
    return list(
        session.scalars(
            sa.select(ClaimEvent).where(ClaimEvent.claim_id == claim.id).order_by(ClaimEvent.created_at)
        )
    )


def serialize_claim(claim: Claim) -> Dict[str, Any]:
    return {
        "id": claim.id,
        "claimNumber": claim.claim_number,
        "patientId": claim.patient_id,
        "appointmentId": claim.appointment_id,
        "diagnosisCodes": list(claim.diagnosis_codes or []),
        "procedureCodes": list(claim.procedure_codes or []),
        "payerName": claim.payer_name,
        "totalAmount": round(claim.total_amount or 0, 2),
        "paidAmount": round(claim.paid_amount or 0, 2),
        "status": claim.status,
        "serviceDate": claim.service_date.isoformat() if claim.service_date else None,
        "submittedDate": ensure_utc(claim.submitted_date).isoformat() if claim.submitted_date else None,
        "processedDate": ensure_utc(claim.processed_date).isoformat() if claim.processed_date else None,
        "denialReason": claim.denial_reason,
        "notes": claim.notes,
    }


def serialize_event(event: ClaimEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "fromStatus": event.from_status,
        "toStatus": event.to_status,
        "note": event.note,
        "actorId": event.actor_id,
        "createdAt": ensure_utc(event.created_at).isoformat() if event.created_at else None,
    }


# ---------------------------------------------------------------------------
# Denial management
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CorrectionRule:
    condition: str
    # recode | modifier | documentation | resubmit
    action: str
    success_rate: float
    parameters: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DenialPattern:
    code: str
    description: str
    category: str
    auto_correctible: bool
    rules: Sequence[CorrectionRule]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "denialCode": self.code,
            "description": self.description,
            "category": self.category,
            "autoCorrectible": self.auto_correctible,
            "successRate": self.rules[0].success_rate if self.rules else 0,
        }


DENIAL_PATTERNS: Dict[str, DenialPattern] = {
    pattern.code: pattern
    for pattern in (
        DenialPattern(
            "CO-97",
            "Invalid/missing provider identifier",
            "coding",
            True,
            (CorrectionRule("missing_npi", "recode", 95, {"field": "provider_npi"}),),
        ),
        DenialPattern(
            "CO-16",
            "Claim lacks information",
            "documentation",
            True,
            (CorrectionRule("missing_diagnosis", "documentation", 87, {"required_field": "primary_diagnosis"}),),
        ),
        DenialPattern(
            "CO-4",
            "Procedure code inconsistent with modifier",
            "coding",
            True,
            (CorrectionRule("missing_modifier", "modifier", 82),),
        ),
        DenialPattern(
            "CO-11",
            "Diagnosis inconsistent with procedure",
            "coding",
            True,
            (CorrectionRule("diagnosis_mismatch", "recode", 75),),
        ),
        DenialPattern(
            "CO-50",
            "Not deemed a medical necessity",
            "documentation",
            False,
            (CorrectionRule("medical_necessity", "documentation", 60),),
        ),
        DenialPattern(
            "CO-197",
            "Precertification/authorization absent",
            "authorization",
            False,
            (CorrectionRule("missing_authorization", "resubmit", 55),),
        ),
        DenialPattern(
            "CO-27",
            "Expenses incurred after coverage terminated",
            "eligibility",
            False,
            (CorrectionRule("coverage_terminated", "resubmit", 30),),
        ),
        DenialPattern(
            "CO-29",
            "Time limit for filing has expired",
            "billing",
            False,
            (CorrectionRule("timely_filing", "resubmit", 20),),
        ),
        DenialPattern(
            "CO-18",
            "Exact duplicate claim/service",
            "billing",
            False,
            (CorrectionRule("duplicate", "resubmit", 15),),
        ),
        DenialPattern(
            "PR-1",
            "Deductible amount",
            "eligibility",
            False,
            (CorrectionRule("deductible", "resubmit", 10),),
        ),
        DenialPattern(
            "PR-2",
            "Coinsurance amount",
            "eligibility",
            False,
            (CorrectionRule("coinsurance", "resubmit", 10),),
        ),
        DenialPattern(
            "PR-3",
            "Co-payment amount",
            "eligibility",
            False,
            (CorrectionRule("copay", "resubmit", 10),),
        ),
    )
}

CODE_CORRECTIONS = {"99213": "99214", "99201": "99202", "D1110": "D1120"}
MODIFIER_SUGGESTIONS = {"CO-97": "GT", "CO-16": "25", "CO-4": "25"}


def extract_denial_codes(values: Iterable[str]) -> List[str]:
    codes: List[str] = []
    for value in values:
        for group, reason in CARC_RE.findall((value or "").upper()):
            code = f"{group}-{reason}"
            if code not in codes:
                codes.append(code)
    return codes


def _corrections(claim: Claim, patterns: Sequence[DenialPattern]) -> List[Dict[str, Any]]:
    first_code = (claim.procedure_codes or [""])[0]
    corrections = []
    for pattern in patterns:
        if not pattern.auto_correctible:
            continue
        for rule in pattern.rules:
            if rule.action == "recode":
                corrections.append(
                    {
                        "type": "code_change",
                        "originalValue": first_code,
                        "correctedValue": CODE_CORRECTIONS.get(first_code.partition("-")[0], first_code),
                        "confidence": rule.success_rate,
                        "reason": pattern.description,
                    }
                )
            elif rule.action == "modifier":
                modifier = MODIFIER_SUGGESTIONS.get(pattern.code, "")
                corrections.append(
                    {
                        "type": "modifier_add",
                        "originalValue": first_code,
                        "correctedValue": f"{first_code.partition('-')[0]}-{modifier}" if modifier else first_code,
                        "confidence": rule.success_rate,
                        "reason": pattern.description,
                    }
                )
            elif rule.action == "documentation":
                corrections.append(
                    {
                        "type": "documentation_update",
                        "originalValue": "",
                        "correctedValue": rule.parameters.get("required_field", rule.condition),
                        "confidence": rule.success_rate,
                        "reason": pattern.description,
                    }
                )
    return corrections


def appeal_probability(patterns: Sequence[DenialPattern], claim_value: float) -> float:
    rates = [p.rules[0].success_rate for p in patterns if p.rules]
    base = sum(rates) / len(rates) if rates else 0.0
    if claim_value > 500:
        multiplier = 1.2
    elif claim_value > 200:
        multiplier = 1.1
    else:
        multiplier = 1.0
    return round(min(95.0, max(10.0, base * multiplier)), 1)


def analyze_denial(
    session: Session,
    tenant_id: str,
    claim_id: str,
    denial_reasons: Optional[Sequence[str]] = None,
) -> Dict[str, Any]:
    """Match denial codes against known patterns and recommend next steps."""

    claim = get_claim(session, tenant_id, claim_id)
    reasons = list(denial_reasons or ([claim.denial_reason] if claim.denial_reason else []))
    codes = extract_denial_codes(reasons)
    patterns = [DENIAL_PATTERNS[code] for code in codes if code in DENIAL_PATTERNS]
    corrections = _corrections(claim, patterns)
    value = float(claim.total_amount or 0)
    probability = appeal_probability(patterns, value)

    actions = []
    if any(c["confidence"] > 80 for c in corrections):
        actions.append(
            {
                "action": "correct_and_resubmit",
                "priority": "high",
                "estimatedValue": round(value * 0.9, 2),
                "timeframe": "2-3 days",
                "description": "Auto-correct identified issues and resubmit claim",
            }
        )
    if probability > 70:
        actions.append(
            {
                "action": "appeal",
                "priority": "high" if value > 500 else "medium",
                "estimatedValue": round(value * probability / 100, 2),
                "timeframe": "30-60 days",
                "description": "High probability of successful appeal",
            }
        )
    if any(code.startswith("PR-") for code in codes):
        actions.append(
            {
                "action": "patient_responsibility",
                "priority": "medium",
                "estimatedValue": round(value, 2),
                "timeframe": "7-14 days",
                "description": "Bill the patient for the amount assigned to patient responsibility",
            }
        )
    if not actions:
        actions.append(
            {
                "action": "write_off",
                "priority": "low",
                "estimatedValue": 0.0,
                "timeframe": "immediate",
                "description": "Low recovery likelihood; consider writing off the balance",
            }
        )

    return {
        "claimId": claim.id,
        "denialReasons": reasons,
        "denialCodes": codes,
        "patterns": [p.to_dict() for p in patterns],
        "autoCorrections": corrections,
        "recommendedActions": actions,
        "appealProbability": probability,
    }


def apply_auto_corrections(
    session: Session,
    tenant_id: str,
    claim_id: str,
    corrections: Sequence[Mapping[str, Any]],
    *,
    actor_id: Optional[str] = None,
) -> Claim:
    """Apply code and modifier corrections to a denied or rejected claim."""

    claim = get_claim(session, tenant_id, claim_id)
    if claim.status not in {"denied", "rejected", "draft"}:
        raise InvalidTransitionError(f"Claim in status {claim.status} cannot be corrected")
    codes = list(claim.procedure_codes or [])
    applied = []
    for correction in corrections:
        kind = correction.get("type")
        original = correction.get("originalValue")
        corrected = correction.get("correctedValue")
        if kind in {"code_change", "modifier_add"} and original in codes and corrected:
            if not is_valid_procedure_code(corrected):
                raise ValidationError(f"Invalid procedure code: {corrected}")
            codes[codes.index(original)] = corrected.upper()
            applied.append(f"{original} -> {corrected}")
        elif kind == "documentation_update":
            applied.append(f"documentation: {corrected}")
    claim.procedure_codes = codes
    _record_event(session, claim, claim.status, claim.status, "Auto-corrected: " + "; ".join(applied), actor_id)
    session.flush()
    return claim


def _month(value: datetime) -> str:
    return ensure_utc(value).strftime("%Y-%m")


def denial_analytics(session: Session, tenant_id: str, start: date, end: date) -> Dict[str, Any]:
    since = datetime.combine(start, time.min, tzinfo=timezone.utc)
    until = datetime.combine(end, time.max, tzinfo=timezone.utc)
    rows = session.execute(
        sa.select(ClaimEvent, Claim)
        .join(Claim, Claim.id == ClaimEvent.claim_id)
        .where(
            Claim.tenant_id == tenant_id,
            ClaimEvent.to_status == "denied",
            ClaimEvent.from_status != "denied",
            ClaimEvent.created_at >= since,
            ClaimEvent.created_at <= until,
        )
        .order_by(ClaimEvent.created_at)
    ).all()

    by_reason: Dict[str, Dict[str, Any]] = {}
    trends: Dict[str, Dict[str, Any]] = {}
    denied_amount = 0.0
    auto_correctible = 0
    for event, claim in rows:
        amount = max(float(claim.total_amount or 0) - float(claim.paid_amount or 0), 0.0)
        denied_amount += amount
        reason = claim.denial_reason or "Unknown"
        bucket = by_reason.setdefault(reason, {"reason": reason, "count": 0, "amount": 0.0})
        bucket["count"] += 1
        bucket["amount"] = round(bucket["amount"] + amount, 2)
        month = trends.setdefault(_month(event.created_at), {"month": _month(event.created_at), "count": 0, "amount": 0.0})
        month["count"] += 1
        month["amount"] = round(month["amount"] + amount, 2)
        codes = extract_denial_codes([claim.denial_reason or ""])
        if any(DENIAL_PATTERNS.get(code) and DENIAL_PATTERNS[code].auto_correctible for code in codes):
            auto_correctible += 1

    submitted = session.scalar(
        sa.select(sa.func.count(Claim.id)).where(
            Claim.tenant_id == tenant_id,
            Claim.submitted_date.isnot(None),
            Claim.submitted_date >= since,
            Claim.submitted_date <= until,
        )
    ) or 0
    return {
        "totalDenials": len(rows),
        "totalDeniedAmount": round(denied_amount, 2),
        "autoCorrectible": auto_correctible,
        "denialRate": round(len(rows) / submitted * 100, 1) if submitted else 0.0,
        "denialsByReason": sorted(by_reason.values(), key=lambda item: -item["count"]),
        "trends": [trends[key] for key in sorted(trends)],
    }


__all__ = [
    "CLAIM_TRANSITIONS",
    "DENIAL_PATTERNS",
    "analyze_denial",
    "appeal_probability",
    "apply_auto_corrections",
    "claim_history",
    "create_claim",
    "denial_analytics",
    "extract_denial_codes",
    "find_claim_by_number",
    "get_claim",
    "is_valid_diagnosis_code",
    "is_valid_procedure_code",
    "list_claims",
    "serialize_claim",
    "serialize_event",
    "transition_claim",
    "update_claim",
    "validate_claim",
]
