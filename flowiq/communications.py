"""Patient messaging over email, SMS and voice.

Messages are rendered from ``{{variable}}`` templates, dispatched through the
``send-communication`` remote function and recorded in ``communication_logs``
whether or not delivery succeeded.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Session

from flowiq.errors import FlowIQError, NotFoundError, RemoteFunctionError, TemplateRenderError, ValidationError
from flowiq.functions import RemoteFunctionClient, get_function_client
from flowiq.metrics import COMMUNICATIONS_SENT
from flowiq.models import Appointment, CommunicationLog, Patient, Tenant
from flowiq.patients import get_patient
from flowiq.sanitizer import sanitize_text
from flowiq.scheduling import due_reminders
from flowiq.time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

CHANNELS = {"email", "sms", "voice"}
SMS_MAX_LENGTH = 1600
SMS_SEGMENT_LENGTH = 160

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


@dataclass(frozen=True)
class Template:
    id: str
    name: str
    subject: str
    body: str
    sms_body: str

    def variables(self) -> List[str]:
        found: List[str] = []
        for text in (self.subject, self.body, self.sms_body):
            for name in _PLACEHOLDER_RE.findall(text):
                if name not in found:
                    found.append(name)
        return found

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "subject": self.subject,
            "body": self.body,
            "smsBody": self.sms_body,
            "variables": self.variables(),
        }


TEMPLATES: Dict[str, Template] = {
    t.id: t
    for t in (
        Template(
            "appointment_reminder",
            "Appointment reminder",
            "Reminder: your appointment at {{practiceName}}",
            "Hello {{patientName}},\n\nThis is a reminder of your appointment on "
            "{{appointmentDate}} at {{appointmentTime}}.\n\n{{practiceName}}",
            "{{practiceName}}: reminder of your appointment on {{appointmentDate}} at {{appointmentTime}}.",
        ),
        Template(
            "appointment_confirmation",
            "Appointment confirmation",
            "Your appointment is confirmed",
            "Hello {{patientName}},\n\nYour appointment on {{appointmentDate}} at "
            "{{appointmentTime}} is confirmed.\n\n{{practiceName}}",
            "{{practiceName}}: your appointment on {{appointmentDate}} at {{appointmentTime}} is confirmed.",
        ),
        Template(
            "payment_reminder",
            "Payment reminder",
            "Balance due at {{practiceName}}",
            "Hello {{patientName}},\n\nYou have a balance of ${{amount}} due by {{dueDate}}.\n\n{{practiceName}}",
            "{{practiceName}}: a balance of ${{amount}} is due by {{dueDate}}.",
        ),
        Template(
            "welcome",
            "Welcome",
            "Welcome to {{practiceName}}",
            "Hello {{patientName}},\n\nWelcome to {{practiceName}}. We look forward to seeing you.",
            "Welcome to {{practiceName}}, {{patientName}}!",
        ),
    )
}


def render(text: str, variables: Mapping[str, Any]) -> str:
    missing = [name for name in _PLACEHOLDER_RE.findall(text) if variables.get(name) in (None, "")]
    if missing:
        raise TemplateRenderError(
            "Missing template variables", details={"missing": sorted(set(missing))}
        )
    return _PLACEHOLDER_RE.sub(lambda m: str(variables[m.group(1)]), text)


def sms_segments(body: str) -> int:
    return max(1, math.ceil(len(body) / SMS_SEGMENT_LENGTH))


def _recipient(patient: Patient, channel: str) -> str:
    recipient = patient.email if channel == "email" else patient.phone
    if not recipient:
        field = "email address" if channel == "email" else "phone number"
        raise ValidationError(f"Patient has no {field} on file")
    return recipient


def _base_variables(session: Session, tenant_id: str, patient: Patient) -> Dict[str, Any]:
    tenant = session.get(Tenant, tenant_id)
    return {
        "patientName": f"{patient.first_name} {patient.last_name}".strip(),
        "firstName": patient.first_name,
        "practiceName": tenant.name if tenant else "",
    }


def send_communication(
    session: Session,
    tenant_id: str,
    *,
    channel: str,
    patient_id: str,
    template_id: Optional[str] = None,
    body: Optional[str] = None,
    subject: Optional[str] = None,
    variables: Optional[Mapping[str, Any]] = None,
    client: Optional[RemoteFunctionClient] = None,
) -> CommunicationLog:
    """Render and send one message.

    The log row is written before dispatch; on failure it is marked
    ``failed`` and the :class:`RemoteFunctionError` propagates.
    """

    if channel not in CHANNELS:
        raise ValidationError(f"Unsupported channel: {channel}")
    patient = get_patient(session, tenant_id, patient_id)
    recipient = _recipient(patient, channel)
    context = {**_base_variables(session, tenant_id, patient), **dict(variables or {})}

    if template_id:
        template = TEMPLATES.get(template_id)
        if template is None:
            raise NotFoundError(f"Template {template_id} not found")
        text = render(template.body if channel == "email" else template.sms_body, context)
        subject = render(template.subject, context) if channel == "email" else None
    elif body:
        text = render(sanitize_text(body), context)
        subject = render(sanitize_text(subject), context) if subject and channel == "email" else subject
    else:
        raise ValidationError("Either template_id or body is required")

    segments = None
    if channel == "sms":
        if len(text) > SMS_MAX_LENGTH:
            raise ValidationError(f"SMS body exceeds {SMS_MAX_LENGTH} characters")
        segments = sms_segments(text)

    log = CommunicationLog(
        tenant_id=tenant_id,
        patient_id=patient.id,
        channel=channel,
        template_id=template_id,
        recipient=recipient,
        subject=subject,
        body=text,
        segments=segments,
        status="pending",
    )
    session.add(log)
    session.flush()

    client = client or get_function_client()
    try:
        result = client.invoke(
            "send-communication",
            {"channel": channel, "to": recipient, "subject": subject, "body": text, "logId": log.id},
        )
    except RemoteFunctionError as exc:
        log.status = "failed"
        log.error = exc.message
        session.flush()
        COMMUNICATIONS_SENT.labels(channel=channel, status="failed").inc()
        logger.warning("communication_failed", extra={"log_id": log.id, "channel": channel})
        raise

    log.status = "sent" if result.get("status", "sent") in {"sent", "queued", "delivered"} else "failed"
    log.external_id = result.get("id")
    if log.status == "failed":
        log.error = str(result.get("error") or "delivery failed")
    session.flush()
    COMMUNICATIONS_SENT.labels(channel=channel, status=log.status).inc()
    return log


def dispatch_due_reminders(session: Session, tenant_id: str, *, now: Optional[datetime] = None, client: Optional[RemoteFunctionClient] = None) -> Dict[str, int]:
    sent = failed = 0
    reminders = due_reminders(session, tenant_id, now=now)
    for reminder in reminders:
        appointment = session.get(Appointment, reminder.appointment_id)
        try:
            send_communication(
                session,
                tenant_id,
                channel=reminder.channel,
                patient_id=appointment.patient_id,
                template_id="appointment_reminder",
                variables={
                    "appointmentDate": appointment.appointment_date.strftime("%B %d, %Y"),
                    "appointmentTime": appointment.start_time,
                },
                client=client,
            )
        except FlowIQError:
            logger.exception("reminder_dispatch_failed", extra={"reminder_id": reminder.id})
            reminder.status = "failed"
            failed += 1
            continue
        reminder.status = "sent"
        reminder.sent_at = utc_now()
        sent += 1
    session.flush()
    return {"processed": len(reminders), "sent": sent, "failed": failed}


def communication_history(session: Session, tenant_id: str, patient_id: str, limit: int = 100) -> List[CommunicationLog]:
    patient = get_patient(session, tenant_id, patient_id)
    return list(
        session.scalars(
            sa.select(CommunicationLog)
            .where(CommunicationLog.tenant_id == tenant_id, CommunicationLog.patient_id == patient.id)
            .order_by(CommunicationLog.created_at.desc())
            .limit(limit)
        )
    )


def serialize_log(log: CommunicationLog) -> Dict[str, Any]:
    return {
        "id": log.id,
        "patientId": log.patient_id,
        "channel": log.channel,
        "templateId": log.template_id,
        "recipient": log.recipient,
        "subject": log.subject,
        "body": log.body,
        "segments": log.segments,
        "status": log.status,
        "externalId": log.external_id,
        "error": log.error,
        "createdAt": ensure_utc(log.created_at).isoformat() if log.created_at else None,
    }


__all__ = [
    "CHANNELS",
    "TEMPLATES",
    "communication_history",
    "dispatch_due_reminders",
    "render",
    "send_communication",
    "serialize_log",
    "sms_segments",
]
