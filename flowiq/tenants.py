"""Tenant (practice) management."""

from __future__ import annotations

import re
from typing import Any, Dict, List, Mapping, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Session

from flowiq.errors import ConflictError, NotFoundError, ValidationError
from flowiq.models import Tenant
from flowiq.sanitizer import sanitize_optional

SUBDOMAIN_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{1,61}[a-z0-9])$")
SPECIALTIES = {"chiropractic", "dental-sleep", "general-dentistry", "general", "multi-specialty"}
_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")
_UPDATABLE = ("name", "specialty", "practice_type", "primary_color", "secondary_color", "is_active")


def _validate_subdomain(subdomain: str) -> str:
    value = (subdomain or "").strip().lower()
    if not SUBDOMAIN_RE.match(value):
        raise ValidationError(
            "subdomain must be 3-63 characters of lowercase letters, digits or hyphens"
        )
    return value


def _validate_fields(values: Mapping[str, Any]) -> None:
    specialty = values.get("specialty")
    if specialty is not None and specialty not in SPECIALTIES:
        raise ValidationError(f"unsupported specialty: {specialty}")
    for key in ("primary_color", "secondary_color"):
        color = values.get(key)
        if color is not None and not _COLOR_RE.match(color):
            raise ValidationError(f"{key} must be a hex colour such as #1a2b3c")


def create_tenant(
    session: Session,
    name: str,
    subdomain: str,
    *,
    specialty: Optional[str] = None,
    practice_type: Optional[str] = None,
    settings: Optional[Mapping[str, Any]] = None,
    primary_color: Optional[str] = None,
    secondary_color: Optional[str] = None,
) -> Tenant:
    name = sanitize_optional(name)
    if not name:
        raise ValidationError("name is required")
    subdomain = _validate_subdomain(subdomain)
    _validate_fields(
        {"specialty": specialty, "primary_color": primary_color, "secondary_color": secondary_color}
    )
    if session.scalar(sa.select(Tenant.id).where(Tenant.subdomain == subdomain)) is not None:
        raise ConflictError(f"subdomain {subdomain!r} is already taken")

    tenant = Tenant(
        name=name,
        subdomain=subdomain,
        specialty=specialty,
        practice_type=sanitize_optional(practice_type),
        settings=dict(settings or {}),
        primary_color=primary_color,
        secondary_color=secondary_color,
    )
    session.add(tenant)
    session.flush()
    return tenant


def get_tenant(session: Session, tenant_id: str) -> Tenant:
    tenant = session.get(Tenant, tenant_id)
    if tenant is None:
        raise NotFoundError(f"Tenant {tenant_id} not found")
    return tenant


def list_tenants(session: Session, include_inactive: bool = False) -> List[Tenant]:
    stmt = sa.select(Tenant).order_by(Tenant.name)
    if not include_inactive:
        stmt = stmt.where(Tenant.is_active.is_(True))
    return list(session.scalars(stmt))


def update_tenant(session: Session, tenant_id: str, changes: Mapping[str, Any]) -> Tenant:
    """Apply *changes*; a ``settings`` mapping is merged into existing settings."""

    tenant = get_tenant(session, tenant_id)
    _validate_fields(changes)
    if "subdomain" in changes and changes["subdomain"] != tenant.subdomain:
        subdomain = _validate_subdomain(changes["subdomain"])
        clash = session.scalar(
            sa.select(Tenant.id).where(Tenant.subdomain == subdomain, Tenant.id != tenant.id)
        )
        if clash is not None:
            raise ConflictError(f"subdomain {subdomain!r} is already taken")
        tenant.subdomain = subdomain
    for key in _UPDATABLE:
        if key in changes:
            value = changes[key]
            setattr(tenant, key, sanitize_optional(value) if key in {"name", "practice_type"} else value)
    if changes.get("settings"):
        merged = dict(tenant.settings or {})
        merged.update(changes["settings"])
        tenant.settings = merged
    session.flush()
    return tenant


def deactivate_tenant(session: Session, tenant_id: str) -> Tenant:
    tenant = get_tenant(session, tenant_id)
    tenant.is_active = False
    session.flush()
    return tenant


def tenant_setting(tenant: Tenant, key: str, default: Any = None) -> Any:
    return (tenant.settings or {}).get(key, default)


def set_tenant_setting(session: Session, tenant: Tenant, key: str, value: Any) -> None:
    # JSON columns are not mutation tracked, so the dict is replaced.
    merged = dict(tenant.settings or {})
    merged[key] = value
    tenant.settings = merged
    session.flush()


def serialize_tenant(tenant: Tenant) -> Dict[str, Any]:
    return {
        "id": tenant.id,
        "name": tenant.name,
        "subdomain": tenant.subdomain,
        "specialty": tenant.specialty,
        "practiceType": tenant.practice_type,
        "settings": tenant.settings or {},
        "primaryColor": tenant.primary_color,
        "secondaryColor": tenant.secondary_color,
        "isActive": tenant.is_active,
        "createdAt": tenant.created_at.isoformat() if tenant.created_at else None,
    }


__all__ = [
    "create_tenant",
    "deactivate_tenant",
    "get_tenant",
    "list_tenants",
    "serialize_tenant",
    "set_tenant_setting",
    "tenant_setting",
    "update_tenant",
]
