"""Audit trail helpers.

Every mutation made through the API and every AI request that touches PHI
is recorded in ``audit_logs``.  Stored values are passed through
:func:`redact_value` first so the audit table never holds raw identifiers.
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

import sqlalchemy as sa
import structlog
from sqlalchemy.orm import Session

from flowiq.deid import deidentify
from flowiq.models import AuditLog

logger = structlog.get_logger(__name__)

# Column names whose values are always hashed regardless of content.
SENSITIVE_KEYS = {
    "password",
    "password_hash",
    "api_key",
    "api_key_encrypted",
    "ssn",
    "insurance_number",
    "member_id",
    "policy_number",
    "date_of_birth",
    "email",
    "phone",
}


def hash_identifier(value: Optional[str]) -> Optional[str]:
    """Return a stable SHA256 hash prefix for identifiers."""

    if not value:
        return None
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return digest[:16]


def redact_value(value: Any, key: Optional[str] = None) -> Any:
    """Redact string values using :func:`deidentify` recursively."""

    if key is not None and key.lower() in SENSITIVE_KEYS and value not in (None, ""):
        return f"sha256:{hash_identifier(str(value))}"
    if isinstance(value, str):
        return deidentify(value)
    if isinstance(value, Mapping):
        return {k: redact_value(v, str(k)) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [redact_value(item) for item in value]
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def record_audit(
    session: Session,
    *,
    tenant_id: Optional[str],
    user_id: Optional[str],
    action: str,
    table_name: Optional[str] = None,
    record_id: Optional[str] = None,
    old_values: Optional[Mapping[str, Any]] = None,
    new_values: Optional[Mapping[str, Any]] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    phi_accessed: bool = False,
    purpose: Optional[str] = None,
) -> AuditLog:
    """Add an audit row to *session* and return it (flushed, not committed)."""

    entry = AuditLog(
        tenant_id=tenant_id,
        user_id=user_id,
        action=action,
        table_name=table_name,
        record_id=record_id,
        old_values=redact_value(dict(old_values)) if old_values else None,
        new_values=redact_value(dict(new_values)) if new_values else None,
        ip_address=ip_address,
        user_agent=user_agent,
        phi_accessed=phi_accessed,
        purpose=purpose,
    )
    session.add(entry)
    session.flush()
    logger.info(
        "audit_recorded",
        action=action,
        table=table_name,
        record_id=record_id,
        phi_accessed=phi_accessed,
    )
    return entry


def list_audit(
    session: Session,
    tenant_id: Optional[str],
    *,
    action: Optional[str] = None,
    user_id: Optional[str] = None,
    table_name: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    phi_only: bool = False,
    limit: int = 100,
    offset: int = 0,
) -> List[AuditLog]:
    stmt = sa.select(AuditLog)
    if tenant_id is not None:
        stmt = stmt.where(AuditLog.tenant_id == tenant_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if table_name:
        stmt = stmt.where(AuditLog.table_name == table_name)
    if since is not None:
        stmt = stmt.where(AuditLog.created_at >= since)
    if until is not None:
        stmt = stmt.where(AuditLog.created_at <= until)
    if phi_only:
        stmt = stmt.where(AuditLog.phi_accessed.is_(True))
    stmt = stmt.order_by(AuditLog.created_at.desc()).limit(limit).offset(offset)
    return list(session.scalars(stmt))


def serialize_audit(entry: AuditLog) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "tenantId": entry.tenant_id,
        "userId": entry.user_id,
        "action": entry.action,
        "tableName": entry.table_name,
        "recordId": entry.record_id,
        "oldValues": entry.old_values,
        "newValues": entry.new_values,
        "ipAddress": entry.ip_address,
        "userAgent": entry.user_agent,
        "phiAccessed": entry.phi_accessed,
        "purpose": entry.purpose,
        "createdAt": entry.created_at.isoformat() if entry.created_at else None,
    }


def changed_fields(before: Mapping[str, Any], after: Mapping[str, Any], keys: Iterable[str]) -> Dict[str, Any]:
    """Return the subset of *keys* whose values differ between snapshots."""

    return {key: after.get(key) for key in keys if before.get(key) != after.get(key)}


__all__ = [
    "changed_fields",
    "hash_identifier",
    "list_audit",
    "record_audit",
    "redact_value",
    "serialize_audit",
]
