"""Third-party integration catalog with per-tenant overrides.

The catalog below describes every integration the practice can switch on.
A tenant's choices (enabled flag, non-secret config, last sync, status) are
stored under ``tenant.settings["integrations"][<id>]`` and layered over the
catalog defaults when read.  EHR integrations delegate their connection test
and sync to :mod:`flowiq.ehr_integration`.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import requests
from sqlalchemy.orm import Session

from flowiq.ehr_integration import EHRIntegrationService, get_connection_config
from flowiq.errors import NotFoundError, ValidationError
from flowiq.sanitizer import sanitize_optional
from flowiq.tenants import get_tenant, set_tenant_setting, tenant_setting
from flowiq.time_utils import utc_now

logger = logging.getLogger(__name__)

INTEGRATION_TYPES = {"calendar", "email", "sms", "payment", "clinical", "ehr"}
STATUSES = {"connected", "disconnected", "error", "syncing"}
_SECRET_HINTS = ("key", "secret", "token", "password")


@dataclass(frozen=True)
class Integration:
    id: str
    name: str
    type: str
    provider: str
    description: str
    status: str = "disconnected"
    enabled: bool = False
    health: int = 0
    config: Dict[str, Any] = field(default_factory=dict)


CATALOG: Dict[str, Integration] = {
    item.id: item
    for item in (
        Integration(
            "google-calendar",
            "Google Calendar",
            "calendar",
            "Google",
            "Google Calendar integration for appointment sync",
            config={"calendarId": "primary", "syncInterval": 300},
        ),
        Integration(
            "outlook-calendar",
            "Outlook Calendar",
            "calendar",
            "Microsoft",
            "Microsoft Outlook calendar integration",
        ),
        Integration(
            "sendgrid",
            "SendGrid Email",
            "email",
            "SendGrid",
            "Email delivery for reminders and notifications",
        ),
        Integration(
            "twilio",
            "Twilio SMS",
            "sms",
            "Twilio",
            "SMS and voice messaging for patient communications",
        ),
        Integration(
            "stripe",
            "Stripe Payments",
            "payment",
            "Stripe",
            "Card payment processing for patient balances",
        ),
        Integration(
            "surescripts",
            "Surescripts",
            "clinical",
            "Surescripts",
            "Electronic prescribing and medication history",
        ),
        Integration(
            "sleep-impressions",
            "Sleep Impressions",
            "clinical",
            "Sleep Impressions",
            "Oral appliance ordering for dental sleep medicine",
        ),
        Integration("easybis", "EasyBIS", "ehr", "EasyBIS", "EasyBIS practice management system"),
        Integration("dental-rem", "DentalREM", "ehr", "DentalREM", "DentalREM dental records system"),
        Integration(
            "dental-sleep-solutions",
            "Dental Sleep Solutions",
            "ehr",
            "DentalREM",
            "Dental Sleep Solutions records (DentalREM API)",
        ),
        Integration("mogo", "MOGO", "ehr", "MOGO", "MOGO cloud dental software"),
    )
}


def _overrides(session: Session, tenant_id: str) -> Dict[str, Dict[str, Any]]:
    tenant = get_tenant(session, tenant_id)
    return dict(tenant_setting(tenant, "integrations", {}) or {})


def _save_override(session: Session, tenant_id: str, integration_id: str, override: Dict[str, Any]) -> None:
    tenant = get_tenant(session, tenant_id)
    overrides = dict(tenant_setting(tenant, "integrations", {}) or {})
    overrides[integration_id] = override
    set_tenant_setting(session, tenant, "integrations", overrides)


def _masked(config: Mapping[str, Any]) -> Dict[str, Any]:
    masked: Dict[str, Any] = {}
    for key, value in config.items():
        if any(hint in key.lower() for hint in _SECRET_HINTS) and value:
            masked[key] = "********"
        else:
            masked[key] = value
    return masked


def _merge(item: Integration, override: Mapping[str, Any]) -> Dict[str, Any]:
    data = asdict(item)
    data["config"] = {**item.config, **dict(override.get("config") or {})}
    for key in ("status", "enabled", "health", "lastSync", "lastError"):
        if key in override:
            data[key] = override[key]
    data.setdefault("lastSync", None)
    data.setdefault("lastError", None)
    data["config"] = _masked(data["config"])
    return data


def list_integrations(session: Session, tenant_id: str, *, type: Optional[str] = None) -> List[Dict[str, Any]]:
    overrides = _overrides(session, tenant_id)
    return [
        _merge(item, overrides.get(item.id, {}))
        for item in CATALOG.values()
        if type is None or item.type == type
    ]


def _catalog_item(integration_id: str) -> Integration:
    item = CATALOG.get(integration_id)
    if item is None:
        raise NotFoundError(f"Integration with id {integration_id} not found")
    return item


def get_integration(session: Session, tenant_id: str, integration_id: str) -> Dict[str, Any]:
    item = _catalog_item(integration_id)
    return _merge(item, _overrides(session, tenant_id).get(item.id, {}))


def update_integration(
    session: Session, tenant_id: str, integration_id: str, changes: Mapping[str, Any]
) -> Dict[str, Any]:
    """Apply ``enabled``, ``status`` and ``config`` changes for the tenant.

    Config values are merged into what is already stored.  Disabling an
    integration also marks it ``disconnected``.
    """

    item = _catalog_item(integration_id)
    override = dict(_overrides(session, tenant_id).get(item.id, {}))

    if "status" in changes and changes["status"] is not None:
        if changes["status"] not in STATUSES:
            raise ValidationError(f"Unsupported integration status: {changes['status']}")
        override["status"] = changes["status"]
    if "enabled" in changes and changes["enabled"] is not None:
        override["enabled"] = bool(changes["enabled"])
        if not override["enabled"]:
            override["status"] = "disconnected"
            override["health"] = 0
    if changes.get("config"):
        if not isinstance(changes["config"], Mapping):
            raise ValidationError("config must be an object")
        config = dict(override.get("config") or {})
        for key, value in changes["config"].items():
            config[str(key)] = sanitize_optional(value) if isinstance(value, str) else value
        override["config"] = config

    _save_override(session, tenant_id, item.id, override)
    logger.info("integration_updated", extra={"integration": item.id, "enabled": override.get("enabled")})
    return _merge(item, override)


def _ehr_service(
    session: Session, tenant_id: str, system: str, http: Optional[requests.Session]
) -> EHRIntegrationService:
    config = get_connection_config(session, tenant_id, system)
    return EHRIntegrationService(config, session, tenant_id, http=http)


def _record(session: Session, tenant_id: str, integration_id: str, **values: Any) -> None:
    override = dict(_overrides(session, tenant_id).get(integration_id, {}))
    override.update(values)
    _save_override(session, tenant_id, integration_id, override)


def test_integration(
    session: Session,
    tenant_id: str,
    integration_id: str,
    *,
    http: Optional[requests.Session] = None,
) -> Dict[str, Any]:
    current = get_integration(session, tenant_id, integration_id)
    if not current["enabled"]:
        return {"success": False, "message": "Integration is disabled"}

    if current["type"] == "ehr":
        try:
            service = _ehr_service(session, tenant_id, integration_id, http)
        except NotFoundError as exc:
            return {"success": False, "message": exc.message}
        result = service.test_connection()
        if not result.success:
            _record(session, tenant_id, integration_id, status="error", health=0, lastError=result.error)
            return {"success": False, "message": result.error or "Connection test failed"}
        _record(session, tenant_id, integration_id, status="connected", health=100, lastError=None)
        return {"success": True, "message": f"{current['name']} connection successful"}

    _record(session, tenant_id, integration_id, status="connected", health=max(current["health"], 90))
    return {"success": True, "message": f"{current['name']} connection test successful"}


def sync_integration(
    session: Session,
    tenant_id: str,
    integration_id: str,
    *,
    http: Optional[requests.Session] = None,
) -> Dict[str, Any]:
    """Run a sync; EHR integrations pull patients first, then appointments."""

    current = get_integration(session, tenant_id, integration_id)
    if not current["enabled"]:
        raise ValidationError("Integration is disabled")

    details: Dict[str, Any] = {}
    if current["type"] == "ehr":
        service = _ehr_service(session, tenant_id, integration_id, http)
        patients = service.sync_patients()
        details["patients"] = patients.to_dict()
        if not patients.success:
            _record(session, tenant_id, integration_id, status="error", lastError=patients.error)
            return {"success": False, "message": patients.error, "details": details}
        appointments = service.sync_appointments()
        details["appointments"] = appointments.to_dict()
        if not appointments.success:
            _record(session, tenant_id, integration_id, status="error", lastError=appointments.error)
            return {"success": False, "message": appointments.error, "details": details}

    _record(
        session,
        tenant_id,
        integration_id,
        status="connected",
        lastSync=utc_now().isoformat(),
        lastError=None,
    )
    logger.info("integration_synced", extra={"integration": integration_id})
    return {"success": True, "message": "Sync completed successfully", "details": details}


__all__ = [
    "CATALOG",
    "Integration",
    "get_integration",
    "list_integrations",
    "sync_integration",
    "test_integration",
    "update_integration",
]
