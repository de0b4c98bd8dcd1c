"""Appointment scheduling, smart booking, waitlist and reminders.

Times are stored as ``HH:MM`` strings on an appointment date and treated as
practice local time; reminder timestamps are computed as if that local time
were UTC.  Per-tenant behaviour (working hours, reminder intervals, booking
threshold) lives in ``tenant.settings["schedule_iq"]`` and falls back to
:data:`DEFAULT_CONFIG`.
"""
from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.orm import Session

from flowiq.errors import ConflictError, FlowIQError, InvalidTransitionError, NotFoundError, ValidationError
from flowiq.models import (
    Appointment,
    AppointmentReminder,
    AppointmentStatus,
    Patient,
    Tenant,
    WaitlistEntry,
)
from flowiq.patients import get_patient
from flowiq.sanitizer import sanitize_optional
from flowiq.time_utils import ensure_utc, parse_date, utc_now

logger = logging.getLogger(__name__)

DEFAULT_DURATIONS = {
    "consultation": 60,
    "follow-up": 30,
    "procedure": 90,
    "screening": 45,
    "emergency": 30,
}
DEFAULT_EVENT_SUMMARY = "Appointment"
AUTO_BOOKED_VIA = "schedule_iq_auto"
MAX_SUGGESTIONS = 5

_STATUS_REMAP = {
    "booked": "scheduled",
    "pending": "scheduled",
    "new": "scheduled",
    "confirm": "confirmed",
    "arrived": "checked_in",
    "checkin": "checked_in",
    "checked-in": "checked_in",
    "check-in": "checked_in",
    "started": "in_progress",
    "in-progress": "in_progress",
    "active": "in_progress",
    "complete": "completed",
    "finished": "completed",
    "done": "completed",
    "cancel": "cancelled",
    "canceled": "cancelled",
    "no-show": "no_show",
    "noshow": "no_show",
    "no show": "no_show",
}

ALLOWED_TRANSITIONS: Dict[str, set] = {
    "scheduled": {"confirmed", "cancelled", "rescheduled", "no_show", "checked_in"},
    "confirmed": {"checked_in", "cancelled", "no_show", "rescheduled"},
    "checked_in": {"in_progress", "completed"},
    "in_progress": {"completed"},
    "completed": set(),
    "cancelled": set(),
    "no_show": set(),
    "rescheduled": set(),
}

# Statuses that no longer hold a slot on the calendar.
INACTIVE_STATUSES = {"cancelled", "no_show", "rescheduled"}

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

TIME_WINDOWS = {
    "morning": ("08:00", "12:00"),
    "afternoon": ("12:00", "17:00"),
    "evening": ("17:00", "21:00"),
}


def default_duration(appointment_type: Optional[str]) -> int:
    return DEFAULT_DURATIONS.get((appointment_type or "").strip().lower(), 30)


def normalise_status(value: Optional[str]) -> str:
    if not value:
        return AppointmentStatus.SCHEDULED.value
    normalised = str(value).strip().lower()
    normalised = _STATUS_REMAP.get(normalised, normalised)
    if normalised not in ALLOWED_TRANSITIONS:
        return AppointmentStatus.SCHEDULED.value
    return normalised


def _to_minutes(value: str) -> int:
    match = _TIME_RE.match(value or "")
    if not match:
        raise ValidationError(f"time must be HH:MM, got {value!r}")
    return int(match.group(1)) * 60 + int(match.group(2))


def _from_minutes(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def appointment_start(appointment: Appointment) -> datetime:
    hours, minutes = divmod(_to_minutes(appointment.start_time), 60)
    return datetime.combine(appointment.appointment_date, time(hours, minutes), tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class ScheduleConfig:
    email_reminders: bool = True
    sms_reminders: bool = True
    reminder_hours: List[int] = field(default_factory=lambda: [24, 2])
    work_start: str = "09:00"
    work_end: str = "17:00"
    # ISO weekdays, Monday == 1
    working_days: List[int] = field(default_factory=lambda: [1, 2, 3, 4, 5])
    slot_minutes: int = 30
    buffer_minutes: int = 5
    auto_book_threshold: float = 0.7

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]]) -> "ScheduleConfig":
        config = cls()
        for key, value in (values or {}).items():
            if hasattr(config, key) and value is not None:
                setattr(config, key, value)
        config.validate()
        return config

    def validate(self) -> None:
        start, end = _to_minutes(self.work_start), _to_minutes(self.work_end)
        if start >= end:
            raise ValidationError("work_start must be before work_end")
        if not self.working_days or any(day not in range(1, 8) for day in self.working_days):
            raise ValidationError("working_days must be ISO weekdays between 1 and 7")
        if self.slot_minutes <= 0 or self.buffer_minutes < 0:
            raise ValidationError("slot_minutes must be positive and buffer_minutes non-negative")
        if not 0 < float(self.auto_book_threshold) <= 1:
            raise ValidationError("auto_book_threshold must be within (0, 1]")
        if any(int(hours) <= 0 for hours in self.reminder_hours):
            raise ValidationError("reminder_hours must be positive")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_CONFIG = ScheduleConfig()


def get_schedule_config(session: Session, tenant_id: str) -> ScheduleConfig:
    tenant = session.get(Tenant, tenant_id)
    values = (tenant.settings or {}).get("schedule_iq") if tenant else None
    return ScheduleConfig.from_mapping(values)


def update_schedule_config(session: Session, tenant_id: str, changes: Mapping[str, Any]) -> ScheduleConfig:
    tenant = session.get(Tenant, tenant_id)
    if tenant is None:
        raise NotFoundError(f"Tenant {tenant_id} not found")
    current = get_schedule_config(session, tenant_id).to_dict()
    current.update({k: v for k, v in changes.items() if k in current})
    config = ScheduleConfig.from_mapping(current)
    settings = dict(tenant.settings or {})
    settings["schedule_iq"] = config.to_dict()
    tenant.settings = settings
    session.flush()
    return config


# ---------------------------------------------------------------------------
# Appointment CRUD
# ---------------------------------------------------------------------------


def _conflicts(
    session: Session,
    tenant_id: str,
    provider_id: Optional[str],
    day: date,
    start: int,
    duration: int,
    *,
    exclude_id: Optional[str] = None,
) -> List[Appointment]:
    if not provider_id:
        return []
    stmt = sa.select(Appointment).where(
        Appointment.tenant_id == tenant_id,
        Appointment.provider_id == provider_id,
        Appointment.appointment_date == day,
        Appointment.status.notin_(INACTIVE_STATUSES),
    )
    if exclude_id:
        stmt = stmt.where(Appointment.id != exclude_id)
    end = start + duration
    clashes = []
    for other in session.scalars(stmt):
        other_start = _to_minutes(other.start_time)
        other_end = other_start + other.duration_minutes
        if start < other_end and other_start < end:
            clashes.append(other)
    return clashes


def _assert_free(session: Session, tenant_id: str, appointment: Appointment) -> None:
    clashes = _conflicts(
        session,
        tenant_id,
        appointment.provider_id,
        appointment.appointment_date,
        _to_minutes(appointment.start_time),
        appointment.duration_minutes,
        exclude_id=appointment.id,
    )
    if clashes:
        raise ConflictError(
            "Provider already has an appointment in this time range",
            details={"conflictingAppointmentIds": [c.id for c in clashes]},
        )


def create_appointment(
    session: Session,
    tenant_id: str,
    values: Mapping[str, Any],
    *,
    created_via: str = "manual",
) -> Appointment:
    patient = get_patient(session, tenant_id, values.get("patient_id") or "")
    if not patient.is_active:
        raise ValidationError("cannot book an inactive patient")
    try:
        day = parse_date(values.get("appointment_date"))
    except ValueError as exc:
        raise ValidationError("appointment_date must be an ISO date") from exc
    if day is None:
        raise ValidationError("appointment_date is required")
    start_time = values.get("start_time") or ""
    _to_minutes(start_time)
    appointment_type = (values.get("appointment_type") or "consultation").strip().lower()
    duration = int(values.get("duration_minutes") or default_duration(appointment_type))
    if duration <= 0:
        raise ValidationError("duration_minutes must be positive")

    appointment = Appointment(
        tenant_id=tenant_id,
        patient_id=patient.id,
        provider_id=values.get("provider_id"),
        title=sanitize_optional(values.get("title")) or f"{appointment_type.title()} - {patient.first_name} {patient.last_name}",
        appointment_type=appointment_type,
        appointment_date=day,
        start_time=start_time,
        duration_minutes=duration,
        status=AppointmentStatus.SCHEDULED.value,
        notes=sanitize_optional(values.get("notes")),
        room=sanitize_optional(values.get("room")),
        created_via=created_via,
    )
    _assert_free(session, tenant_id, appointment)
    session.add(appointment)
    session.flush()
    logger.info("appointment_created", extra={"appointment_id": appointment.id, "via": created_via})
    return appointment


def get_appointment(session: Session, tenant_id: str, appointment_id: str) -> Appointment:
    appointment = session.get(Appointment, appointment_id)
    if appointment is None or appointment.tenant_id != tenant_id:
        raise NotFoundError(f"Appointment {appointment_id} not found")
    return appointment


def list_appointments(
    session: Session,
    tenant_id: str,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
    provider_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 200,
) -> List[Appointment]:
    stmt = sa.select(Appointment).where(Appointment.tenant_id == tenant_id)
    if start is not None:
        stmt = stmt.where(Appointment.appointment_date >= start)
    if end is not None:
        stmt = stmt.where(Appointment.appointment_date <= end)
    if provider_id:
        stmt = stmt.where(Appointment.provider_id == provider_id)
    if patient_id:
        stmt = stmt.where(Appointment.patient_id == patient_id)
    if status:
        stmt = stmt.where(Appointment.status == normalise_status(status))
    stmt = stmt.order_by(Appointment.appointment_date, Appointment.start_time).limit(limit)
    return list(session.scalars(stmt))


def update_appointment(
    session: Session, tenant_id: str, appointment_id: str, changes: Mapping[str, Any]
) -> Appointment:
    appointment = get_appointment(session, tenant_id, appointment_id)
    if appointment.status in INACTIVE_STATUSES or appointment.status == "completed":
        raise ConflictError(f"Cannot edit an appointment that is {appointment.status}")
    if "appointment_date" in changes:
        try:
            appointment.appointment_date = parse_date(changes["appointment_date"])
        except ValueError as exc:
            raise ValidationError("appointment_date must be an ISO date") from exc
    if "start_time" in changes:
        _to_minutes(changes["start_time"])
        appointment.start_time = changes["start_time"]
    if changes.get("duration_minutes"):
        appointment.duration_minutes = int(changes["duration_minutes"])
    if "provider_id" in changes:
        appointment.provider_id = changes["provider_id"]
    if changes.get("appointment_type"):
        appointment.appointment_type = changes["appointment_type"].strip().lower()
    for key in ("title", "notes", "room"):
        if key in changes:
            setattr(appointment, key, sanitize_optional(changes[key]))
    _assert_free(session, tenant_id, appointment)
    session.flush()
    return appointment


def transition_status(session: Session, tenant_id: str, appointment_id: str, new_status: str) -> Appointment:
    appointment = get_appointment(session, tenant_id, appointment_id)
    target = str(new_status or "").strip().lower()
    target = _STATUS_REMAP.get(target, target)
    if target not in ALLOWED_TRANSITIONS:
        raise ValidationError(f"unknown appointment status: {new_status}")
    if target not in ALLOWED_TRANSITIONS.get(appointment.status, set()):
        raise InvalidTransitionError(
            f"Cannot move appointment from {appointment.status} to {target}",
            details={"from": appointment.status, "to": target},
        )
    appointment.status = target
    if target == AppointmentStatus.CONFIRMED.value:
        appointment.confirmed_at = utc_now()
    if target in INACTIVE_STATUSES:
        for reminder in session.scalars(
            sa.select(AppointmentReminder).where(
                AppointmentReminder.appointment_id == appointment.id,
                AppointmentReminder.status == "pending",
            )
        ):
            reminder.status = "cancelled"
    session.flush()
    return appointment


def serialize_appointment(appointment: Appointment) -> Dict[str, Any]:
    return {
        "id": appointment.id,
        "patientId": appointment.patient_id,
        "providerId": appointment.provider_id,
        "title": appointment.title,
        "appointmentType": appointment.appointment_type,
        "date": appointment.appointment_date.isoformat(),
        "startTime": appointment.start_time,
        "durationMinutes": appointment.duration_minutes,
        "status": appointment.status,
        "notes": appointment.notes,
        "room": appointment.room,
        "externalId": appointment.external_id,
        "createdVia": appointment.created_via,
        "confirmedAt": appointment.confirmed_at.isoformat() if appointment.confirmed_at else None,
    }


# ---------------------------------------------------------------------------
# Slot search and smart booking
# ---------------------------------------------------------------------------


def available_slots(
    session: Session,
    tenant_id: str,
    provider_id: Optional[str],
    day: date,
    duration: int,
    *,
    config: Optional[ScheduleConfig] = None,
    now: Optional[datetime] = None,
) -> List[str]:
    """Return the free ``HH:MM`` start times for *provider_id* on *day*."""

    config = config or get_schedule_config(session, tenant_id)
    if day.isoweekday() not in config.working_days:
        return []
    work_start, work_end = _to_minutes(config.work_start), _to_minutes(config.work_end)
    earliest = work_start
    if now is not None:
        now = ensure_utc(now)
        if day < now.date():
            return []
        if day == now.date():
            earliest = max(earliest, now.hour * 60 + now.minute)

    booked = []
    if provider_id:
        for appt in session.scalars(
            sa.select(Appointment).where(
                Appointment.tenant_id == tenant_id,
                Appointment.provider_id == provider_id,
                Appointment.appointment_date == day,
                Appointment.status.notin_(INACTIVE_STATUSES),
            )
        ):
            start = _to_minutes(appt.start_time)
            booked.append((start - config.buffer_minutes, start + appt.duration_minutes + config.buffer_minutes))

    slots = []
    candidate = work_start
    while candidate + duration <= work_end:
        if candidate >= earliest and all(
            not (candidate < b_end and b_start < candidate + duration) for b_start, b_end in booked
        ):
            slots.append(_from_minutes(candidate))
        candidate += config.slot_minutes
    return slots


@dataclass
class BookingRequest:
    patient_id: str
    appointment_type: str = "consultation"
    provider_id: Optional[str] = None
    preferred_dates: List[date] = field(default_factory=list)
    preferred_time: Optional[str] = None
    urgency: str = "routine"
    window_days: int = 14
    duration_minutes: Optional[int] = None
    notes: Optional[str] = None

    def time_window(self) -> Optional[tuple]:
        if not self.preferred_time:
            return None
        if self.preferred_time in TIME_WINDOWS:
            start, end = TIME_WINDOWS[self.preferred_time]
            return _to_minutes(start), _to_minutes(end)
        exact = _to_minutes(self.preferred_time)
        return exact, exact + 1


_URGENCY_WEIGHT = {"urgent": 0.2, "soon": 0.15, "routine": 0.1}


def _score_slot(request: BookingRequest, day: date, slot: str, today: date) -> float:
    score = 0.0
    if request.preferred_dates:
        if day in request.preferred_dates:
            score += 0.4
    else:
        score += 0.2

    window = request.time_window()
    if window is None:
        score += 0.15
    else:
        minutes = _to_minutes(slot)
        if window[0] <= minutes < window[1]:
            score += 0.3

    weight = _URGENCY_WEIGHT.get(request.urgency, 0.1)
    if request.urgency in {"urgent", "soon"}:
        days_out = max((day - today).days, 0)
        score += weight * max(0.0, 1 - days_out / max(request.window_days, 1))
    else:
        score += weight

    # Only the requested provider (or any provider when none requested) is searched.
    score += 0.1
    return round(min(score, 1.0), 3)


def find_best_slots(
    session: Session,
    tenant_id: str,
    request: BookingRequest,
    *,
    now: Optional[datetime] = None,
    config: Optional[ScheduleConfig] = None,
) -> List[Dict[str, Any]]:
    """Score free slots across the request window and return the best few."""

    now = ensure_utc(now or utc_now())
    config = config or get_schedule_config(session, tenant_id)
    duration = request.duration_minutes or default_duration(request.appointment_type)
    today = now.date()

    days = {today + timedelta(days=offset) for offset in range(request.window_days)}
    days.update(d for d in request.preferred_dates if d >= today)

    suggestions = []
    for day in sorted(days):
        for slot in available_slots(
            session, tenant_id, request.provider_id, day, duration, config=config, now=now
        ):
            suggestions.append(
                {
                    "date": day.isoformat(),
                    "time": slot,
                    "providerId": request.provider_id,
                    "durationMinutes": duration,
                    "confidence": _score_slot(request, day, slot, today),
                }
            )
    suggestions.sort(key=lambda s: (-s["confidence"], s["date"], s["time"]))
    return suggestions[:MAX_SUGGESTIONS]


def process_booking_request(
    session: Session,
    tenant_id: str,
    request: BookingRequest,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Auto-book the best slot when confident enough, otherwise suggest slots."""

    config = get_schedule_config(session, tenant_id)
    suggestions = find_best_slots(session, tenant_id, request, now=now, config=config)
    if not suggestions:
        return {"booked": False, "appointment": None, "suggestions": [], "confidence": 0.0}

    best = suggestions[0]
    if best["confidence"] > config.auto_book_threshold:
        appointment = create_appointment(
            session,
            tenant_id,
            {
                "patient_id": request.patient_id,
                "provider_id": request.provider_id,
                "appointment_type": request.appointment_type,
                "appointment_date": best["date"],
                "start_time": best["time"],
                "duration_minutes": best["durationMinutes"],
                "notes": request.notes,
            },
            created_via=AUTO_BOOKED_VIA,
        )
        schedule_reminders(session, appointment, config=config, now=now)
        logger.info("appointment_auto_booked", extra={"appointment_id": appointment.id, "confidence": best["confidence"]})
        return {
            "booked": True,
            "appointment": serialize_appointment(appointment),
            "suggestions": [],
            "confidence": best["confidence"],
        }
    return {"booked": False, "appointment": None, "suggestions": suggestions, "confidence": best["confidence"]}


# ---------------------------------------------------------------------------
# Waitlist
# ---------------------------------------------------------------------------


def add_to_waitlist(session: Session, tenant_id: str, values: Mapping[str, Any]) -> WaitlistEntry:
    patient = get_patient(session, tenant_id, values.get("patient_id") or "")
    preferred_dates = []
    for raw in values.get("preferred_dates") or []:
        try:
            preferred_dates.append(parse_date(raw).isoformat())
        except (ValueError, AttributeError) as exc:
            raise ValidationError(f"invalid preferred date: {raw}") from exc
    preferred_times = list(values.get("preferred_times") or [])
    for slot in preferred_times:
        if slot not in TIME_WINDOWS:
            _to_minutes(slot)
    entry = WaitlistEntry(
        tenant_id=tenant_id,
        patient_id=patient.id,
        provider_id=values.get("provider_id"),
        appointment_type=(values.get("appointment_type") or "consultation").lower(),
        preferred_dates=preferred_dates,
        preferred_times=preferred_times,
        priority=int(values.get("priority") or 0),
        urgency=values.get("urgency") or "routine",
        notes=sanitize_optional(values.get("notes")),
    )
    session.add(entry)
    session.flush()
    return entry


def list_waitlist(session: Session, tenant_id: str, status: Optional[str] = "active") -> List[WaitlistEntry]:
    stmt = sa.select(WaitlistEntry).where(WaitlistEntry.tenant_id == tenant_id)
    if status:
        stmt = stmt.where(WaitlistEntry.status == status)
    stmt = stmt.order_by(WaitlistEntry.priority.desc(), WaitlistEntry.created_at)
    return list(session.scalars(stmt))


def manage_waitlist(session: Session, tenant_id: str, *, now: Optional[datetime] = None) -> Dict[str, int]:
    """Try to book every active waitlist entry in priority order."""

    processed = booked = 0
    for entry in list_waitlist(session, tenant_id, status="active"):
        processed += 1
        request = BookingRequest(
            patient_id=entry.patient_id,
            appointment_type=entry.appointment_type,
            provider_id=entry.provider_id,
            preferred_dates=[date.fromisoformat(d) for d in entry.preferred_dates or []],
            preferred_time=(entry.preferred_times or [None])[0],
            urgency=entry.urgency,
        )
        try:
            with session.begin_nested():
                result = process_booking_request(session, tenant_id, request, now=now)
        except FlowIQError as exc:
            logger.warning(
                "waitlist_entry_failed",
                extra={"entry_id": entry.id, "patient_id": entry.patient_id, "error": str(exc)},
            )
            continue
        if result["booked"]:
            booked += 1
            entry.status = "booked"
            entry.appointment_id = result["appointment"]["id"]
    session.flush()
    return {"processed": processed, "booked": booked, "pending": processed - booked}


def serialize_waitlist_entry(entry: WaitlistEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "patientId": entry.patient_id,
        "providerId": entry.provider_id,
        "appointmentType": entry.appointment_type,
        "preferredDates": entry.preferred_dates,
        "preferredTimes": entry.preferred_times,
        "priority": entry.priority,
        "urgency": entry.urgency,
        "status": entry.status,
        "appointmentId": entry.appointment_id,
    }


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------


def schedule_reminders(
    session: Session,
    appointment: Appointment,
    *,
    config: Optional[ScheduleConfig] = None,
    now: Optional[datetime] = None,
) -> List[AppointmentReminder]:
    """Create pending reminders at each configured interval before the visit.

    Intervals already in the past are skipped, as are channels the patient
    has no contact detail for.
    """

    config = config or get_schedule_config(session, appointment.tenant_id)
    now = ensure_utc(now or utc_now())
    patient = session.get(Patient, appointment.patient_id)
    channels = []
    if config.email_reminders:
        channels.append("email")
    if config.sms_reminders and patient is not None and patient.phone:
        channels.append("sms")

    existing = {
        (r.channel, ensure_utc(r.scheduled_for))
        for r in session.scalars(
            sa.select(AppointmentReminder).where(AppointmentReminder.appointment_id == appointment.id)
        )
    }
    start = appointment_start(appointment)
    created = []
    for hours in sorted({int(h) for h in config.reminder_hours}, reverse=True):
        when = start - timedelta(hours=hours)
        if when <= now:
            continue
        for channel in channels:
            if (channel, when) in existing:
                continue
            reminder = AppointmentReminder(
                tenant_id=appointment.tenant_id,
                appointment_id=appointment.id,
                channel=channel,
                scheduled_for=when,
            )
            session.add(reminder)
            created.append(reminder)
    session.flush()
    return created


def due_reminders(session: Session, tenant_id: str, *, now: Optional[datetime] = None) -> List[AppointmentReminder]:
    now = ensure_utc(now or utc_now())
    stmt = (
        sa.select(AppointmentReminder)
        .join(Appointment, Appointment.id == AppointmentReminder.appointment_id)
        .where(
            AppointmentReminder.tenant_id == tenant_id,
            AppointmentReminder.status == "pending",
            AppointmentReminder.scheduled_for <= now,
            Appointment.status.in_(["scheduled", "confirmed"]),
        )
        .order_by(AppointmentReminder.scheduled_for)
    )
    return list(session.scalars(stmt))


def appointment_reminders(session: Session, tenant_id: str, appointment_id: str) -> List[AppointmentReminder]:
    appointment = get_appointment(session, tenant_id, appointment_id)
    return list(
        session.scalars(
            sa.select(AppointmentReminder)
            .where(AppointmentReminder.appointment_id == appointment.id)
            .order_by(AppointmentReminder.scheduled_for, AppointmentReminder.channel)
        )
    )


def serialize_reminder(reminder: AppointmentReminder) -> Dict[str, Any]:
    return {
        "id": reminder.id,
        "appointmentId": reminder.appointment_id,
        "channel": reminder.channel,
        "scheduledFor": ensure_utc(reminder.scheduled_for).isoformat(),
        "status": reminder.status,
        "sentAt": ensure_utc(reminder.sent_at).isoformat() if reminder.sent_at else None,
    }


# ---------------------------------------------------------------------------
# Analytics and export
# ---------------------------------------------------------------------------


def _working_days_between(start: date, end: date, working_days: Iterable[int]) -> int:
    days = set(working_days)
    count = 0
    current = start
    while current <= end:
        if current.isoweekday() in days:
            count += 1
        current += timedelta(days=1)
    return count


def schedule_analytics(session: Session, tenant_id: str, start: date, end: date) -> Dict[str, Any]:
    appointments = list_appointments(session, tenant_id, start=start, end=end, limit=100000)
    total = len(appointments)
    by_status: Dict[str, int] = {}
    for appt in appointments:
        by_status[appt.status] = by_status.get(appt.status, 0) + 1

    active = [a for a in appointments if a.status not in INACTIVE_STATUSES]
    confirmed = [a for a in appointments if a.confirmed_at is not None or a.status in {"confirmed", "checked_in", "in_progress", "completed"}]
    auto_booked = [a for a in appointments if a.created_via == AUTO_BOOKED_VIA]

    config = get_schedule_config(session, tenant_id)
    providers = {a.provider_id for a in appointments if a.provider_id}
    daily_minutes = _to_minutes(config.work_end) - _to_minutes(config.work_start)
    capacity = _working_days_between(start, end, config.working_days) * daily_minutes * max(len(providers), 1)
    booked_minutes = sum(a.duration_minutes for a in active)

    lead_times = [
        (a.appointment_date - ensure_utc(a.created_at).date()).days for a in appointments if a.created_at is not None
    ]

    def _pct(part: int, whole: int) -> float:
        return round(part / whole * 100, 1) if whole else 0.0

    return {
        "totalAppointments": total,
        "completed": by_status.get("completed", 0),
        "cancelled": by_status.get("cancelled", 0),
        "noShows": by_status.get("no_show", 0),
        "byStatus": by_status,
        "utilization": _pct(booked_minutes, capacity),
        "confirmationRate": _pct(len(confirmed), total),
        "noShowRate": _pct(by_status.get("no_show", 0), total),
        "aiBookingRate": _pct(len(auto_booked), total),
        "averageLeadTimeDays": round(sum(lead_times) / len(lead_times), 1) if lead_times else 0.0,
    }


def _ics_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace(";", "\\;").replace(",", "\\,").replace("\n", "\\n")


def export_appointment_ics(appointment: Appointment, summary: Optional[str] = None) -> str:
    """Return a single-event VCALENDAR for *appointment*.

    Patient names are deliberately left out of the event summary.
    """

    start = appointment_start(appointment)
    end = start + timedelta(minutes=appointment.duration_minutes)
    fmt = "%Y%m%dT%H%M%SZ"
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//FlowIQ//Scheduling//EN",
        "BEGIN:VEVENT",
        f"UID:{appointment.id}@flowiq",
        f"DTSTAMP:{utc_now().strftime(fmt)}",
        f"DTSTART:{start.strftime(fmt)}",
        f"DTEND:{end.strftime(fmt)}",
        f"SUMMARY:{_ics_escape(summary or appointment.appointment_type.title() or DEFAULT_EVENT_SUMMARY)}",
    ]
    if appointment.room:
        lines.append(f"LOCATION:{_ics_escape(appointment.room)}")
    lines.extend(["END:VEVENT", "END:VCALENDAR"])
    return "\r\n".join(lines) + "\r\n"


__all__ = [
    "ALLOWED_TRANSITIONS",
    "AUTO_BOOKED_VIA",
    "BookingRequest",
    "DEFAULT_CONFIG",
    "DEFAULT_DURATIONS",
    "ScheduleConfig",
    "add_to_waitlist",
    "appointment_reminders",
    "available_slots",
    "create_appointment",
    "default_duration",
    "due_reminders",
    "export_appointment_ics",
    "find_best_slots",
    "get_appointment",
    "get_schedule_config",
    "list_appointments",
    "list_waitlist",
    "manage_waitlist",
    "normalise_status",
    "process_booking_request",
    "schedule_analytics",
    "schedule_reminders",
    "serialize_appointment",
    "serialize_reminder",
    "serialize_waitlist_entry",
    "transition_status",
    "update_appointment",
    "update_schedule_config",
]
