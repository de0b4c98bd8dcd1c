"""PHI classification, anonymization and AI request routing.

Records headed for an AI service pass through three steps:

1. :func:`classify_data` scans the serialized record for PHI keywords and
   assigns a sensitivity tier.
2. :func:`anonymize_for_ai` swaps identifier values for placeholder tokens and
   keeps the originals in a token map.
3. :func:`restore_phi` substitutes the originals back into the AI response.

:func:`route_ai_request` chains the three around a remote function call and
writes an audit entry.  A response never leaves :func:`route_ai_request` with
placeholders still in it.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, MutableMapping, Optional

import sqlalchemy as sa
import structlog
from sqlalchemy.orm import Session

from flowiq import audit
from flowiq.deid import TOKEN_RE, detokenize, make_token, tokenize
from flowiq.errors import RemoteFunctionError, UnknownAIServiceError
from flowiq.functions import RemoteFunctionClient, get_function_client
from flowiq.metrics import AI_REQUESTS, PHI_ANONYMIZATIONS
from flowiq.models import AuditLog
from flowiq.time_utils import calculate_age, ensure_utc, parse_date, utc_now

logger = structlog.get_logger(__name__)

HIGH_SENSITIVITY_KEYWORDS = [
    "ssn",
    "social_security",
    "diagnosis",
    "medical_history",
    "medications",
    "allergies",
    "insurance_number",
    "treatment",
    "prescription",
]

MEDIUM_SENSITIVITY_KEYWORDS = [
    "first_name",
    "last_name",
    "date_of_birth",
    "dob",
    "email",
    "phone",
    "address",
    "patient_number",
    "member_id",
    "mrn",
]

IDENTIFIER_FIELDS = {
    "first_name",
    "last_name",
    "full_name",
    "patient_name",
    "email",
    "phone",
    "mobile",
    "address",
    "street",
    "city",
    "zip_code",
    "zip",
    "ssn",
    "social_security_number",
    "date_of_birth",
    "dob",
    "patient_number",
    "mrn",
    "insurance_number",
    "member_id",
    "policy_number",
    "group_number",
    "emergency_contact_name",
    "emergency_contact_phone",
    "ip_address",
    "external_id",
    "name",
    "state",
}

FREE_TEXT_FIELDS = {
    "notes",
    "medical_history",
    "chief_complaint",
    "description",
    "transcript",
    "subjective",
    "objective",
    "assessment",
    "plan",
    "ocr_text",
    "text",
}

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


@dataclass(frozen=True)
class AIServiceSpec:
    function: str
    description: str


AI_SERVICES: Dict[str, AIServiceSpec] = {
    "schedule-optimizer": AIServiceSpec("schedule-optimizer", "Reorders a provider day by patient risk"),
    "clinical-summarizer": AIServiceSpec("clinical-summarizer", "Summarises a patient's record"),
    "note-generator": AIServiceSpec("note-generator", "Drafts SOAP notes from visit context"),
    "coding-assistant": AIServiceSpec("coding-assistant", "Suggests ICD-10 and CPT codes"),
    "insurance-card-extractor": AIServiceSpec("insurance-card-extractor", "Reads insurance card fields"),
}


@dataclass
class DataClassification:
    contains_phi: bool
    sensitivity_level: str
    detected_fields: List[str] = field(default_factory=list)
    requires_encryption: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "containsPhi": self.contains_phi,
            "sensitivityLevel": self.sensitivity_level,
            "detectedFields": list(self.detected_fields),
            "requiresEncryption": self.requires_encryption,
        }


@dataclass
class AnonymizationResult:
    data: Any
    token_map: Dict[str, Any]
    classification: DataClassification


def to_snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).replace("-", "_").lower()


def _normalise_keys(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {to_snake(str(k)): _normalise_keys(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalise_keys(item) for item in value]
    return value


def classify_data(record: Any) -> DataClassification:
    """Flag PHI in *record* by keyword matching on its serialized form."""

    serialized = json.dumps(_normalise_keys(record), default=str, sort_keys=True).lower()
    high = [kw for kw in HIGH_SENSITIVITY_KEYWORDS if kw in serialized]
    medium = [kw for kw in MEDIUM_SENSITIVITY_KEYWORDS if kw in serialized]
    if high:
        level = "high"
    elif medium:
        level = "medium"
    else:
        level = "low"
    detected = high + medium
    return DataClassification(
        contains_phi=bool(detected),
        sensitivity_level=level,
        detected_fields=detected,
        requires_encryption=level in {"high", "medium"},
    )


def _tokenize_value(value: Any, field_name: str, token_map: MutableMapping[str, Any], reverse: Dict[Any, str]) -> Any:
    if value is None or value == "" or isinstance(value, bool):
        return value
    if isinstance(value, str) and TOKEN_RE.fullmatch(value):
        return value
    if isinstance(value, (list, tuple)):
        return [_tokenize_value(item, field_name, token_map, reverse) for item in value]
    if isinstance(value, Mapping):
        return {k: _tokenize_value(v, field_name, token_map, reverse) for k, v in value.items()}
    reuse_key = (field_name, value)
    existing = reverse.get(reuse_key)
    if existing is not None:
        return existing
    token = make_token(field_name)
    token_map[token] = value
    reverse[reuse_key] = token
    return token


def _derive_age(mapping: Mapping[str, Any]) -> Optional[int]:
    for key, value in mapping.items():
        if to_snake(str(key)) in {"date_of_birth", "dob"} and value:
            try:
                return calculate_age(parse_date(value))
            except (TypeError, ValueError):
                return None
    return None


def _walk(value: Any, field_name: Optional[str], token_map: MutableMapping[str, Any], reverse: Dict[Any, str]) -> Any:
    if isinstance(value, Mapping):
        result: Dict[Any, Any] = {}
        for key, sub_value in value.items():
            result[key] = _walk(sub_value, to_snake(str(key)), token_map, reverse)
        if not any(to_snake(str(k)) == "age" for k in value.keys()):
            age = _derive_age(value)
            if age is not None:
                result["age"] = age
        return result
    if isinstance(value, (list, tuple)):
        return [_walk(item, field_name, token_map, reverse) for item in value]
    if field_name in IDENTIFIER_FIELDS:
        return _tokenize_value(value, field_name, token_map, reverse)
    if field_name in FREE_TEXT_FIELDS and isinstance(value, str):
        return tokenize(value, token_map)
    return value


def anonymize_for_ai(record: Any, classification: Optional[DataClassification] = None) -> AnonymizationResult:
    """Return a tokenized copy of *record* and the map needed to reverse it.

    Records that carry no PHI keywords are returned unchanged.
    """

    classification = classification or classify_data(record)
    if not classification.contains_phi:
        return AnonymizationResult(data=record, token_map={}, classification=classification)

    token_map: Dict[str, Any] = {}
    data = _walk(record, None, token_map, {})
    PHI_ANONYMIZATIONS.labels(sensitivity=classification.sensitivity_level).inc()
    return AnonymizationResult(data=data, token_map=token_map, classification=classification)


def restore_phi(value: Any, token_map: Mapping[str, Any]) -> Any:
    """Substitute placeholders in *value* with the originals from *token_map*."""

    if not token_map:
        return value
    if isinstance(value, str):
        if value in token_map:
            return token_map[value]
        return detokenize(value, token_map)
    if isinstance(value, Mapping):
        return {key: restore_phi(sub_value, token_map) for key, sub_value in value.items()}
    if isinstance(value, (list, tuple)):
        return [restore_phi(item, token_map) for item in value]
    return value


def route_ai_request(
    session: Session,
    tenant_id: Optional[str],
    service_name: str,
    payload: Mapping[str, Any],
    user_id: Optional[str],
    purpose: str,
    *,
    client: Optional[RemoteFunctionClient] = None,
) -> Dict[str, Any]:
    """Send *payload* to an AI service with PHI tokenized out and restored back.

    Raises :class:`UnknownAIServiceError` for unregistered service names.
    Remote failures propagate as :class:`RemoteFunctionError` after being
    audited.
    """

    spec = AI_SERVICES.get(service_name)
    if spec is None:
        raise UnknownAIServiceError(f"Unknown AI service: {service_name}")

    anonymized = anonymize_for_ai(dict(payload))
    classification = anonymized.classification
    client = client or get_function_client()

    audit_values = {
        "service": service_name,
        "sensitivity": classification.sensitivity_level,
        "detected_fields": classification.detected_fields,
        "tokens": len(anonymized.token_map),
    }
    try:
        response = client.invoke(spec.function, anonymized.data)
    except RemoteFunctionError:
        AI_REQUESTS.labels(service=service_name, outcome="error").inc()
        audit.record_audit(
            session,
            tenant_id=tenant_id,
            user_id=user_id,
            action="ai_request_failed",
            new_values=audit_values,
            phi_accessed=classification.contains_phi,
            purpose=purpose,
        )
        logger.warning("ai_request_failed", service=service_name)
        raise

    AI_REQUESTS.labels(service=service_name, outcome="success").inc()
    audit.record_audit(
        session,
        tenant_id=tenant_id,
        user_id=user_id,
        action="ai_request",
        new_values=audit_values,
        phi_accessed=classification.contains_phi,
        purpose=purpose,
    )
    logger.info(
        "ai_request_routed",
        service=service_name,
        sensitivity=classification.sensitivity_level,
        tokens=len(anonymized.token_map),
    )
    return {
        "service": service_name,
        "classification": classification.to_dict(),
        "data": restore_phi(response, anonymized.token_map),
    }


def get_compliance_metrics(
    session: Session,
    tenant_id: Optional[str],
    days: int = 30,
) -> Dict[str, Any]:
    """Summarise PHI access and AI usage from the audit trail."""

    since = utc_now() - timedelta(days=days)
    stmt = sa.select(AuditLog).where(AuditLog.created_at >= since)
    if tenant_id is not None:
        stmt = stmt.where(AuditLog.tenant_id == tenant_id)
    entries = list(session.scalars(stmt))

    by_service: Dict[str, int] = {}
    failed_ai = 0
    phi_users = set()
    phi_events = 0
    failed_logins = 0
    lockouts = 0
    for entry in entries:
        if entry.phi_accessed:
            phi_events += 1
            if entry.user_id:
                phi_users.add(entry.user_id)
        if entry.action in {"ai_request", "ai_request_failed"}:
            service = (entry.new_values or {}).get("service", "unknown")
            by_service[service] = by_service.get(service, 0) + 1
            if entry.action == "ai_request_failed":
                failed_ai += 1
        elif entry.action == "login_failed":
            failed_logins += 1
        elif entry.action == "account_locked":
            lockouts += 1

    return {
        "periodDays": days,
        "totalAuditEvents": len(entries),
        "phiAccessEvents": phi_events,
        "usersWithPhiAccess": len(phi_users),
        "aiRequestsByService": by_service,
        "failedAiRequests": failed_ai,
        "failedLogins": failed_logins,
        "accountLockouts": lockouts,
        "complianceScore": max(0, 100 - 5 * lockouts),
    }


ALERT_WINDOW = timedelta(hours=24)
ALERT_AUDIT_GAP = timedelta(hours=1)
ALERT_PHI_ACCESS_PER_HOUR = 50
ALERT_FAILED_LOGINS_PER_HOUR = 10


def _alert(
    alert_type: str,
    severity: str,
    title: str,
    description: str,
    action_required: str,
    affected_systems: List[str],
    value: Any,
    threshold: Any,
) -> Dict[str, Any]:
    return {
        "type": alert_type,
        "severity": severity,
        "title": title,
        "description": description,
        "actionRequired": action_required,
        "affectedSystems": affected_systems,
        "complianceStandard": "HIPAA",
        "value": value,
        "threshold": threshold,
    }


def evaluate_compliance_alerts(
    session: Session,
    tenant_id: Optional[str],
    *,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Scan the last day of audit activity for threshold breaches.

    Raises alerts for a user reading PHI more than
    :data:`ALERT_PHI_ACCESS_PER_HOUR` times in the last hour, for a burst of
    failed logins, for any account lockout and for the first gap in the audit
    trail longer than :data:`ALERT_AUDIT_GAP`.
    """

    now = ensure_utc(now) if now else utc_now()
    stmt = (
        sa.select(AuditLog)
        .where(AuditLog.created_at >= now - ALERT_WINDOW, AuditLog.created_at <= now)
        .order_by(AuditLog.created_at)
    )
    if tenant_id is not None:
        stmt = stmt.where(AuditLog.tenant_id == tenant_id)
    entries = list(session.scalars(stmt))

    hour_ago = now - timedelta(hours=1)
    phi_by_user: Dict[str, int] = {}
    failed_logins = 0
    lockouts = 0
    gap: Optional[timedelta] = None
    previous: Optional[datetime] = None
    for entry in entries:
        created = ensure_utc(entry.created_at)
        if previous is not None and gap is None and created - previous > ALERT_AUDIT_GAP:
            gap = created - previous
        previous = created
        if entry.action == "account_locked":
            lockouts += 1
        if created < hour_ago:
            continue
        if entry.phi_accessed and entry.user_id:
            phi_by_user[entry.user_id] = phi_by_user.get(entry.user_id, 0) + 1
        if entry.action == "login_failed":
            failed_logins += 1

    alerts: List[Dict[str, Any]] = []
    for user_id, count in sorted(phi_by_user.items()):
        if count > ALERT_PHI_ACCESS_PER_HOUR:
            alerts.append(
                _alert(
                    "access_violation",
                    "high",
                    "Excessive PHI Access Detected",
                    f"User {user_id} accessed PHI {count} times in the last hour",
                    "Review user access patterns and validate legitimate use",
                    ["ehr_system", "patient_records"],
                    count,
                    ALERT_PHI_ACCESS_PER_HOUR,
                )
            )
    if failed_logins > ALERT_FAILED_LOGINS_PER_HOUR:
        alerts.append(
            _alert(
                "failed_logins",
                "medium",
                "Repeated Failed Logins",
                f"{failed_logins} failed login attempts in the last hour",
                "Check for credential stuffing and contact affected users",
                ["authentication"],
                failed_logins,
                ALERT_FAILED_LOGINS_PER_HOUR,
            )
        )
    if lockouts:
        alerts.append(
            _alert(
                "account_lockout",
                "high",
                "Accounts Locked Out",
                f"{lockouts} account lockout(s) in the last 24 hours",
                "Verify the locked accounts with their owners",
                ["authentication"],
                lockouts,
                0,
            )
        )
    if gap is not None:
        minutes = int(gap.total_seconds() // 60)
        alerts.append(
            _alert(
                "audit_gap",
                "medium",
                "Audit Log Gap Detected",
                f"Gap in audit logging detected: {minutes} minutes",
                "Investigate audit logging system",
                ["audit_system"],
                minutes,
                int(ALERT_AUDIT_GAP.total_seconds() // 60),
            )
        )
    for alert in alerts:
        logger.warning("compliance_alert", alert_type=alert["type"], severity=alert["severity"], tenant_id=tenant_id)
    return alerts


__all__ = [
    "AI_SERVICES",
    "AnonymizationResult",
    "DataClassification",
    "anonymize_for_ai",
    "classify_data",
    "evaluate_compliance_alerts",
    "get_compliance_metrics",
    "restore_phi",
    "route_ai_request",
    "to_snake",
]
