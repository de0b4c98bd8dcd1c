"""FastAPI application exposing the FlowIQ practice-management API.

All routes live under ``/api`` and, apart from login and the health/metrics
probes, require a bearer token.  Successful responses are wrapped as
``{"success": true, "data": ...}``; every error, whether raised by a service
module, by FastAPI itself or by request validation, is rendered as
``{"success": false, "error": {"code", "message", "details"}}``.
"""

from __future__ import annotations

import logging
import os
import re
import time
import uuid
from contextlib import asynccontextmanager, contextmanager
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

import structlog
from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.orm import Session, object_session
from starlette.exceptions import HTTPException
from structlog.contextvars import bind_contextvars, unbind_contextvars

from flowiq import (
    ai_scheduling,
    analytics,
    audit,
    auth,
    claims,
    communications,
    ehr_integration,
    hipaa,
    insurance_cards,
    integrations,
    notes,
    patients,
    payment_posting,
    scheduling,
    tenants,
)
from flowiq.db import get_session, init_db
from flowiq.errors import (
    AccountLockedError,
    AuthenticationError,
    FlowIQError,
    NotFoundError,
    PermissionDeniedError,
    RemoteFunctionError,
    ValidationError,
)
from flowiq.metrics import REQUEST_COUNTER, REQUEST_LATENCY
from flowiq.models import Role, Tenant, User
from flowiq.schemas import (
    AppointmentModel,
    AppointmentUpdateModel,
    BookingModel,
    CardExtractModel,
    CardRejectModel,
    ClaimModel,
    ClaimStatusModel,
    ClaimUpdateModel,
    DenialAnalysisModel,
    EHRSyncModel,
    IntegrationUpdateModel,
    LoginModel,
    NoteGenerateModel,
    NoteModel,
    NoteUpdateModel,
    OptimizeModel,
    PatientModel,
    PostPaymentModel,
    RecordModel,
    RegisterModel,
    ScheduleConfigModel,
    SendCommunicationModel,
    StatusModel,
    TenantCreateModel,
    TenantUpdateModel,
    WaitlistModel,
)
from flowiq.storage import get_storage
from flowiq.time_utils import utc_now

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO), format="%(message)s")

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

START_TIME = time.time()
DEFAULT_PERIOD_DAYS = 30
TENANT_HEADER = "X-Tenant-ID"

_PATH_PARAM_RE = re.compile(r"/(?:[0-9]+|[0-9a-fA-F-]{8,})(?=/|$)")


def _normalise_path_for_metrics(path: str) -> str:
    """Reduce high-cardinality segments in request paths for metrics labels."""

    if not path:
        return "/"
    return _PATH_PARAM_RE.sub("/:param", path)


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - exercised by uvicorn
    logger.info("lifespan_startup")
    init_db()
    try:
        yield
    finally:
        logger.info("lifespan_shutdown_complete", uptime=round(time.time() - START_TIME, 2))


app = FastAPI(title="FlowIQ API", lifespan=lifespan)


@app.middleware("http")
async def inject_trace_id(request: Request, call_next):
    """Attach or propagate a trace identifier for each request."""

    trace_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    bind_contextvars(trace_id=trace_id, path=request.url.path, method=request.method)
    request.state.trace_id = trace_id
    response = None
    try:
        response = await call_next(request)
        return response
    except Exception:
        logger.exception("request_failed")
        raise
    finally:
        if response is not None:
            response.headers["X-Request-ID"] = trace_id
        unbind_contextvars("trace_id", "path", "method")


@app.middleware("http")
async def track_http_metrics(request: Request, call_next):
    """Emit Prometheus counters and histograms for each request."""

    start = time.perf_counter()
    normalised = _normalise_path_for_metrics(request.url.path)
    try:
        response = await call_next(request)
    except Exception:
        REQUEST_COUNTER.labels(request.method, normalised, "500").inc()
        REQUEST_LATENCY.labels(request.method, normalised).observe(time.perf_counter() - start)
        raise
    REQUEST_COUNTER.labels(request.method, normalised, str(response.status_code)).inc()
    REQUEST_LATENCY.labels(request.method, normalised).observe(time.perf_counter() - start)
    return response


# ---------------------------------------------------------------------------
# Envelopes and error handling
# ---------------------------------------------------------------------------


def _ok(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": jsonable_encoder(data)}


def _error_response(status_code: int, code: Any, message: str, details: Any = None) -> JSONResponse:
    error: Dict[str, Any] = {"code": code, "message": message}
    if details is not None:
        error["details"] = jsonable_encoder(details)
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


@app.exception_handler(FlowIQError)
async def flowiq_error_handler(request: Request, exc: FlowIQError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("service_error", code=exc.code, error=exc.message)
    else:
        logger.info("request_rejected", code=exc.code, status=exc.status_code)
    return _error_response(exc.status_code, exc.code, exc.message, exc.details)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Convert ``HTTPException`` instances into the standard error envelope."""

    detail = exc.detail
    message = detail if isinstance(detail, str) else "An error occurred"
    response = _error_response(exc.status_code, exc.status_code, message, None if isinstance(detail, str) else detail)
    for key, value in (exc.headers or {}).items():
        response.headers[key] = value
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {**err, "ctx": {key: str(value) for key, value in err["ctx"].items()}} if err.get("ctx") else err
        for err in exc.errors()
    ]
    message = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()) if part != 'body')}: {err.get('msg')}" for err in errors
    )
    return _error_response(422, "validation_error", message or "Invalid request", errors)


@contextmanager
def _commit_on(session: Session, *errors: type) -> Iterator[None]:
    """Commit the session before re-raising *errors*.

    The request session rolls back on any exception, which would discard
    lockout counters and failure records that must survive the error.
    """

    try:
        yield
    except errors:
        session.commit()
        raise


# ---------------------------------------------------------------------------
# Authentication dependencies
# ---------------------------------------------------------------------------

security = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    session: Session = Depends(get_session),
) -> User:
    """Decode the bearer token and load the active user it names."""

    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Not authenticated")
    subject = auth.decode_access_token(credentials.credentials).get("sub")
    user = session.get(User, subject) if subject else None
    if user is None or not user.is_active or not auth.tenant_is_active(session, user):
        raise AuthenticationError("Invalid or expired token")
    bind_contextvars(user_id=user.id)
    return user


def require_roles(*roles: str):
    """Dependency factory ensuring the current user is in an allowed role."""

    allowed = {Role.ADMIN.value, *roles}

    def checker(user: User = Depends(get_current_user)) -> User:
        if user.role not in allowed:
            raise PermissionDeniedError("Insufficient privileges")
        return user

    return checker


ANY_ROLE = tuple(role.value for role in Role)
CLINICAL = (Role.PRACTICE_ADMIN.value, Role.PROVIDER.value, Role.STAFF.value)
BILLING = (Role.PRACTICE_ADMIN.value, Role.BILLING.value)
PRACTICE_ADMIN = (Role.PRACTICE_ADMIN.value,)


def _tenant_id(request: Request, user: User) -> str:
    """Return the tenant the request acts on.

    Platform admins have no tenant of their own and pick one per request
    through the ``X-Tenant-ID`` header.
    """

    if user.tenant_id:
        return user.tenant_id
    selected = request.headers.get(TENANT_HEADER)
    if user.role == Role.ADMIN.value and selected:
        tenant = object_session(user).get(Tenant, selected)
        if tenant is None or not tenant.is_active:
            raise NotFoundError(f"Tenant {selected} not found or inactive")
        return tenant.id
    raise ValidationError(f"Select a tenant with the {TENANT_HEADER} header")


def _audit(
    session: Session,
    request: Request,
    user: Optional[User],
    action: str,
    table_name: Optional[str] = None,
    record_id: Optional[str] = None,
    *,
    tenant_id: Optional[str] = None,
    old_values: Optional[Dict[str, Any]] = None,
    new_values: Optional[Dict[str, Any]] = None,
    phi_accessed: bool = False,
    purpose: Optional[str] = None,
) -> None:
    audit.record_audit(
        session,
        tenant_id=tenant_id if tenant_id is not None else (user.tenant_id if user else None),
        user_id=user.id if user else None,
        action=action,
        table_name=table_name,
        record_id=record_id,
        old_values=old_values,
        new_values=new_values,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        phi_accessed=phi_accessed,
        purpose=purpose,
    )


def _period(start: Optional[date], end: Optional[date]) -> tuple:
    end = end or utc_now().date()
    start = start or end - timedelta(days=DEFAULT_PERIOD_DAYS)
    if end < start:
        raise ValidationError("end must not be before start")
    return start, end


# ---------------------------------------------------------------------------
# Health and metrics
# ---------------------------------------------------------------------------


@app.get("/health", tags=["system"])
def health(session: Session = Depends(get_session)) -> Dict[str, Any]:
    """Lightweight liveness probe with a best-effort database check."""

    try:
        session.execute(text("SELECT 1"))
        db_ok = True
    except Exception:  # pragma: no cover - depends on the database being down
        logger.warning("health_db_unavailable", exc_info=True)
        db_ok = False
    return {
        "status": "ok" if db_ok else "degraded",
        "uptime": round(time.time() - START_TIME, 2),
        "db": db_ok,
    }


@app.get("/metrics", tags=["system"])
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


@app.post("/api/auth/register", status_code=201)
def register(
    payload: RegisterModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*PRACTICE_ADMIN)),
):
    tenant_id = payload.tenant_id
    if user.role != Role.ADMIN.value:
        if payload.role == Role.ADMIN.value:
            raise PermissionDeniedError("Only platform admins can create admin users")
        tenant_id = user.tenant_id
    created = auth.register_user(
        session,
        payload.username,
        payload.password,
        payload.role,
        tenant_id,
        email=payload.email,
        name=payload.name,
    )
    _audit(session, request, user, "user_registered", "users", created.id, tenant_id=tenant_id, new_values={"role": created.role})
    return _ok(auth.serialize_user(created))


@app.post("/api/auth/login")
def login(payload: LoginModel, request: Request, session: Session = Depends(get_session)):
    ip_address = request.client.host if request.client else None
    with _commit_on(session, AuthenticationError, AccountLockedError):
        user = auth.authenticate(session, payload.username, payload.password, ip_address=ip_address)
    token = auth.create_access_token(user)
    return _ok({"accessToken": token, "tokenType": "bearer", "user": auth.serialize_user(user)})


@app.get("/api/auth/me")
def me(user: User = Depends(get_current_user)):
    return _ok(auth.serialize_user(user))


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


@app.post("/api/tenants", status_code=201)
def create_tenant(
    payload: TenantCreateModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles()),
):
    tenant = tenants.create_tenant(
        session,
        payload.name,
        payload.subdomain,
        specialty=payload.specialty,
        practice_type=payload.practice_type,
        settings=payload.settings,
        primary_color=payload.primary_color,
        secondary_color=payload.secondary_color,
    )
    _audit(session, request, user, "tenant_created", "tenants", tenant.id, tenant_id=tenant.id)
    return _ok(tenants.serialize_tenant(tenant))


@app.get("/api/tenants")
def list_tenants(
    include_inactive: bool = Query(False, alias="includeInactive"),
    session: Session = Depends(get_session),
    user: User = Depends(require_roles()),
):
    return _ok([tenants.serialize_tenant(t) for t in tenants.list_tenants(session, include_inactive)])


@app.get("/api/tenants/current")
def current_tenant(
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(get_current_user),
):
    return _ok(tenants.serialize_tenant(tenants.get_tenant(session, _tenant_id(request, user))))


@app.get("/api/tenants/{tenant_id}")
def get_tenant(tenant_id: str, session: Session = Depends(get_session), user: User = Depends(require_roles())):
    return _ok(tenants.serialize_tenant(tenants.get_tenant(session, tenant_id)))


@app.patch("/api/tenants/{tenant_id}")
def update_tenant(
    tenant_id: str,
    payload: TenantUpdateModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles()),
):
    changes = payload.values()
    tenant = tenants.update_tenant(session, tenant_id, changes)
    _audit(session, request, user, "tenant_updated", "tenants", tenant.id, tenant_id=tenant.id, new_values=changes)
    return _ok(tenants.serialize_tenant(tenant))


@app.delete("/api/tenants/{tenant_id}")
def deactivate_tenant(
    tenant_id: str,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles()),
):
    tenant = tenants.deactivate_tenant(session, tenant_id)
    _audit(session, request, user, "tenant_deactivated", "tenants", tenant.id, tenant_id=tenant.id)
    return _ok(tenants.serialize_tenant(tenant))


# ---------------------------------------------------------------------------
# Patients
# ---------------------------------------------------------------------------


@app.post("/api/patients", status_code=201)
def create_patient(
    payload: PatientModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL)),
):
    tenant_id = _tenant_id(request, user)
    patient = patients.create_patient(session, tenant_id, payload.values())
    _audit(
        session, request, user, "patient_created", "patients", patient.id,
        tenant_id=tenant_id, new_values=patients.snapshot(patient), phi_accessed=True, purpose="registration",
    )
    return _ok(patients.serialize_patient(patient))


@app.get("/api/patients")
def list_patients(
    request: Request,
    search: Optional[str] = None,
    include_inactive: bool = Query(False, alias="includeInactive"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL, Role.BILLING.value)),
):
    tenant_id = _tenant_id(request, user)
    rows = patients.list_patients(
        session, tenant_id, search=search, include_inactive=include_inactive, limit=limit, offset=offset
    )
    return _ok([patients.serialize_patient(p) for p in rows])


@app.get("/api/patients/{patient_id}")
def get_patient(
    patient_id: str,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL, Role.BILLING.value)),
):
    tenant_id = _tenant_id(request, user)
    patient = patients.get_patient(session, tenant_id, patient_id)
    _audit(session, request, user, "patient_viewed", "patients", patient.id, tenant_id=tenant_id, phi_accessed=True, purpose="treatment")
    return _ok(patients.serialize_patient(patient))


@app.patch("/api/patients/{patient_id}")
def update_patient(
    patient_id: str,
    payload: PatientModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL)),
):
    tenant_id = _tenant_id(request, user)
    before = patients.snapshot(patients.get_patient(session, tenant_id, patient_id))
    changes = payload.values()
    patient = patients.update_patient(session, tenant_id, patient_id, changes)
    after = patients.snapshot(patient)
    _audit(
        session, request, user, "patient_updated", "patients", patient.id, tenant_id=tenant_id,
        old_values=audit.changed_fields(after, before, changes.keys()),
        new_values=audit.changed_fields(before, after, changes.keys()),
        phi_accessed=True, purpose="treatment",
    )
    return _ok(patients.serialize_patient(patient))


@app.delete("/api/patients/{patient_id}")
def delete_patient(
    patient_id: str,
    request: Request,
    hard: bool = False,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*PRACTICE_ADMIN)),
):
    tenant_id = _tenant_id(request, user)
    patients.delete_patient(session, tenant_id, patient_id, hard=hard)
    _audit(session, request, user, "patient_deleted", "patients", patient_id, tenant_id=tenant_id, new_values={"hard": hard})
    return _ok({"deleted": True, "hard": hard})


@app.get("/api/patients/{patient_id}/risk")
def patient_risk(
    patient_id: str,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL)),
):
    tenant_id = _tenant_id(request, user)
    return _ok(ai_scheduling.patient_risk(session, tenant_id, patient_id).to_dict())


@app.get("/api/patients/{patient_id}/summary")
def patient_summary(
    patient_id: str,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(Role.PRACTICE_ADMIN.value, Role.PROVIDER.value)),
):
    tenant_id = _tenant_id(request, user)
    with _commit_on(session, RemoteFunctionError):
        summary = ai_scheduling.generate_clinical_summary(session, tenant_id, patient_id, user_id=user.id)
    return _ok(summary)


@app.get("/api/patients/{patient_id}/insurance-cards")
def list_insurance_cards(
    patient_id: str,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL, Role.BILLING.value)),
):
    tenant_id = _tenant_id(request, user)
    return _ok([insurance_cards.serialize_card(c) for c in insurance_cards.list_cards(session, tenant_id, patient_id)])


@app.post("/api/patients/{patient_id}/insurance-cards", status_code=201)
async def upload_insurance_card(
    patient_id: str,
    request: Request,
    file: UploadFile = File(...),
    side: str = Form("front"),
    card_type: str = Form("medical", alias="cardType"),
    card_id: Optional[str] = Form(None, alias="cardId"),
    is_primary: bool = Form(True, alias="isPrimary"),
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL, Role.BILLING.value)),
):
    tenant_id = _tenant_id(request, user)
    data = await file.read()
    card = insurance_cards.upload_card_image(
        session,
        tenant_id,
        patient_id,
        side,
        file.filename,
        file.content_type or "",
        data,
        card_id=card_id,
        card_type=card_type,
        is_primary=is_primary,
    )
    _audit(session, request, user, "insurance_card_uploaded", "insurance_cards", card.id, tenant_id=tenant_id, new_values={"side": side}, phi_accessed=True)
    return _ok(insurance_cards.serialize_card(card))


@app.get("/api/patients/{patient_id}/communications")
def patient_communications(
    patient_id: str,
    request: Request,
    limit: int = Query(100, ge=1, le=500),
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL)),
):
    tenant_id = _tenant_id(request, user)
    logs = communications.communication_history(session, tenant_id, patient_id, limit=limit)
    return _ok([communications.serialize_log(log) for log in logs])


# ---------------------------------------------------------------------------
# Appointments and scheduling
# ---------------------------------------------------------------------------


@app.post("/api/appointments", status_code=201)
def create_appointment(
    payload: AppointmentModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL)),
):
    tenant_id = _tenant_id(request, user)
    appointment = scheduling.create_appointment(session, tenant_id, payload.values())
    scheduling.schedule_reminders(session, appointment)
    _audit(session, request, user, "appointment_created", "appointments", appointment.id, tenant_id=tenant_id)
    return _ok(scheduling.serialize_appointment(appointment))


@app.get("/api/appointments")
def list_appointments(
    request: Request,
    start: Optional[date] = None,
    end: Optional[date] = None,
    provider_id: Optional[str] = Query(None, alias="providerId"),
    patient_id: Optional[str] = Query(None, alias="patientId"),
    status: Optional[str] = None,
    limit: int = Query(200, ge=1, le=1000),
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL)),
):
    tenant_id = _tenant_id(request, user)
    rows = scheduling.list_appointments(
        session, tenant_id, start=start, end=end, provider_id=provider_id, patient_id=patient_id, status=status, limit=limit
    )
    return _ok([scheduling.serialize_appointment(a) for a in rows])


@app.get("/api/appointments/{appointment_id}")
def get_appointment(
    appointment_id: str,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL)),
):
    tenant_id = _tenant_id(request, user)
    return _ok(scheduling.serialize_appointment(scheduling.get_appointment(session, tenant_id, appointment_id)))


@app.patch("/api/appointments/{appointment_id}")
def update_appointment(
    appointment_id: str,
    payload: AppointmentUpdateModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL)),
):
    tenant_id = _tenant_id(request, user)
    changes = payload.values()
    appointment = scheduling.update_appointment(session, tenant_id, appointment_id, changes)
    _audit(session, request, user, "appointment_updated", "appointments", appointment.id, tenant_id=tenant_id, new_values=changes)
    return _ok(scheduling.serialize_appointment(appointment))


@app.post("/api/appointments/{appointment_id}/status")
def change_appointment_status(
    appointment_id: str,
    payload: StatusModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL)),
):
    tenant_id = _tenant_id(request, user)
    before = scheduling.get_appointment(session, tenant_id, appointment_id).status
    appointment = scheduling.transition_status(session, tenant_id, appointment_id, payload.status)
    _audit(
        session, request, user, "appointment_status_changed", "appointments", appointment.id, tenant_id=tenant_id,
        old_values={"status": before}, new_values={"status": appointment.status},
    )
    return _ok(scheduling.serialize_appointment(appointment))


@app.get("/api/appointments/{appointment_id}/ics")
def appointment_ics(
    appointment_id: str,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL)),
):
    tenant_id = _tenant_id(request, user)
    appointment = scheduling.get_appointment(session, tenant_id, appointment_id)
    return Response(
        content=scheduling.export_appointment_ics(appointment),
        media_type="text/calendar",
        headers={"Content-Disposition": f'attachment; filename="appointment-{appointment.id}.ics"'},
    )


@app.get("/api/appointments/{appointment_id}/reminders")
def list_reminders(
    appointment_id: str,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL)),
):
    tenant_id = _tenant_id(request, user)
    reminders = scheduling.appointment_reminders(session, tenant_id, appointment_id)
    return _ok([scheduling.serialize_reminder(r) for r in reminders])


@app.post("/api/appointments/{appointment_id}/reminders")
def create_reminders(
    appointment_id: str,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL)),
):
    tenant_id = _tenant_id(request, user)
    appointment = scheduling.get_appointment(session, tenant_id, appointment_id)
    created = scheduling.schedule_reminders(session, appointment)
    return _ok([scheduling.serialize_reminder(r) for r in created])


@app.get("/api/schedule/slots")
def schedule_slots(
    request: Request,
    day: date = Query(..., alias="date"),
    provider_id: Optional[str] = Query(None, alias="providerId"),
    appointment_type: str = Query("consultation", alias="appointmentType"),
    duration: Optional[int] = Query(None, gt=0, le=480),
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL)),
):
    tenant_id = _tenant_id(request, user)
    minutes = duration or scheduling.default_duration(appointment_type)
    slots = scheduling.available_slots(session, tenant_id, provider_id, day, minutes, now=utc_now())
    return _ok({"date": day.isoformat(), "providerId": provider_id, "durationMinutes": minutes, "slots": slots})


@app.post("/api/schedule/book")
def book_appointment(
    payload: BookingModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL)),
):
    tenant_id = _tenant_id(request, user)
    result = scheduling.process_booking_request(session, tenant_id, scheduling.BookingRequest(**payload.model_dump()))
    if result["booked"]:
        _audit(
            session, request, user, "appointment_auto_booked", "appointments", result["appointment"]["id"],
            tenant_id=tenant_id, new_values={"confidence": result["confidence"]},
        )
    return _ok(result)


@app.post("/api/schedule/optimize")
def optimize_schedule(
    payload: OptimizeModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(Role.PRACTICE_ADMIN.value, Role.PROVIDER.value)),
):
    tenant_id = _tenant_id(request, user)
    with _commit_on(session, RemoteFunctionError):
        result = ai_scheduling.optimize_provider_schedule(
            session, tenant_id, payload.provider_id, payload.day, user_id=user.id
        )
    return _ok(result)


@app.get("/api/schedule/analytics")
def schedule_analytics(
    request: Request,
    start: Optional[date] = None,
    end: Optional[date] = None,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL)),
):
    tenant_id = _tenant_id(request, user)
    start, end = _period(start, end)
    return _ok(scheduling.schedule_analytics(session, tenant_id, start, end))


@app.get("/api/schedule/config")
def get_schedule_config(
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL)),
):
    return _ok(scheduling.get_schedule_config(session, _tenant_id(request, user)).to_dict())


@app.put("/api/schedule/config")
def update_schedule_config(
    payload: ScheduleConfigModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*PRACTICE_ADMIN)),
):
    tenant_id = _tenant_id(request, user)
    changes = {k: v for k, v in payload.values().items() if v is not None}
    config = scheduling.update_schedule_config(session, tenant_id, changes)
    _audit(session, request, user, "schedule_config_updated", "tenants", tenant_id, tenant_id=tenant_id, new_values=changes)
    return _ok(config.to_dict())


@app.post("/api/waitlist", status_code=201)
def add_to_waitlist(
    payload: WaitlistModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL)),
):
    tenant_id = _tenant_id(request, user)
    entry = scheduling.add_to_waitlist(session, tenant_id, payload.model_dump())
    return _ok(scheduling.serialize_waitlist_entry(entry))


@app.get("/api/waitlist")
def list_waitlist(
    request: Request,
    status: Optional[str] = "active",
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL)),
):
    tenant_id = _tenant_id(request, user)
    return _ok([scheduling.serialize_waitlist_entry(e) for e in scheduling.list_waitlist(session, tenant_id, status)])


@app.post("/api/waitlist/process")
def process_waitlist(
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL)),
):
    tenant_id = _tenant_id(request, user)
    result = scheduling.manage_waitlist(session, tenant_id)
    _audit(session, request, user, "waitlist_processed", tenant_id=tenant_id, new_values=result)
    return _ok(result)


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------


@app.post("/api/claims", status_code=201)
def create_claim(
    payload: ClaimModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*BILLING, Role.PROVIDER.value)),
):
    tenant_id = _tenant_id(request, user)
    claim = claims.create_claim(session, tenant_id, payload.values(), actor_id=user.id)
    _audit(session, request, user, "claim_created", "claims", claim.id, tenant_id=tenant_id, new_values={"claimNumber": claim.claim_number})
    return _ok(claims.serialize_claim(claim))


@app.get("/api/claims")
def list_claims(
    request: Request,
    status: Optional[str] = None,
    patient_id: Optional[str] = Query(None, alias="patientId"),
    start: Optional[date] = None,
    end: Optional[date] = None,
    limit: int = Query(200, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*BILLING)),
):
    tenant_id = _tenant_id(request, user)
    rows = claims.list_claims(
        session, tenant_id, status=status, patient_id=patient_id, start=start, end=end, limit=limit, offset=offset
    )
    return _ok([claims.serialize_claim(c) for c in rows])


@app.get("/api/claims/export")
def export_claims(
    request: Request,
    start: Optional[date] = None,
    end: Optional[date] = None,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*BILLING)),
):
    tenant_id = _tenant_id(request, user)
    start, end = _period(start, end)
    content = analytics.export_claims_csv(session, tenant_id, start, end)
    _audit(session, request, user, "claims_exported", "claims", tenant_id=tenant_id, new_values={"start": start, "end": end})
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="claims-{start.isoformat()}-{end.isoformat()}.csv"'},
    )


@app.get("/api/claims/denials/analytics")
def denial_analytics(
    request: Request,
    start: Optional[date] = None,
    end: Optional[date] = None,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*BILLING)),
):
    tenant_id = _tenant_id(request, user)
    start, end = _period(start, end)
    return _ok(claims.denial_analytics(session, tenant_id, start, end))


@app.get("/api/claims/{claim_id}")
def get_claim(
    claim_id: str,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*BILLING)),
):
    return _ok(claims.serialize_claim(claims.get_claim(session, _tenant_id(request, user), claim_id)))


@app.patch("/api/claims/{claim_id}")
def update_claim(
    claim_id: str,
    payload: ClaimUpdateModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*BILLING)),
):
    tenant_id = _tenant_id(request, user)
    changes = payload.values()
    claim = claims.update_claim(session, tenant_id, claim_id, changes)
    _audit(session, request, user, "claim_updated", "claims", claim.id, tenant_id=tenant_id, new_values=changes)
    return _ok(claims.serialize_claim(claim))


@app.post("/api/claims/{claim_id}/validate")
def validate_claim(
    claim_id: str,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*BILLING)),
):
    claim = claims.get_claim(session, _tenant_id(request, user), claim_id)
    issues = claims.validate_claim(claim)
    return _ok({"valid": not issues, "issues": issues})


@app.post("/api/claims/{claim_id}/status")
def change_claim_status(
    claim_id: str,
    payload: ClaimStatusModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*BILLING)),
):
    tenant_id = _tenant_id(request, user)
    before = claims.get_claim(session, tenant_id, claim_id).status
    claim = claims.transition_claim(
        session, tenant_id, claim_id, payload.status, payload.note, actor_id=user.id, denial_reason=payload.denial_reason
    )
    _audit(
        session, request, user, "claim_status_changed", "claims", claim.id, tenant_id=tenant_id,
        old_values={"status": before}, new_values={"status": claim.status},
    )
    return _ok(claims.serialize_claim(claim))


@app.get("/api/claims/{claim_id}/history")
def claim_history(
    claim_id: str,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*BILLING)),
):
    events = claims.claim_history(session, _tenant_id(request, user), claim_id)
    return _ok([claims.serialize_event(e) for e in events])


@app.post("/api/claims/{claim_id}/denial-analysis")
def denial_analysis(
    claim_id: str,
    payload: DenialAnalysisModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*BILLING)),
):
    tenant_id = _tenant_id(request, user)
    result = claims.analyze_denial(session, tenant_id, claim_id, payload.denial_reasons or None)
    if payload.apply_corrections and result["autoCorrections"]:
        claim = claims.apply_auto_corrections(session, tenant_id, claim_id, result["autoCorrections"], actor_id=user.id)
        result["claim"] = claims.serialize_claim(claim)
        _audit(session, request, user, "claim_auto_corrected", "claims", claim.id, tenant_id=tenant_id)
    return _ok(result)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


@app.post("/api/payments/era")
async def upload_era(
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*BILLING)),
):
    """Accept an 835 file either as the raw request body or a ``file`` upload."""

    tenant_id = _tenant_id(request, user)
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        upload = form.get("file")
        if upload is None or isinstance(upload, str):
            raise ValidationError("Upload an 835 file in the 'file' field")
        raw = await upload.read()
    else:
        raw = await request.body()
    if not raw.strip():
        raise ValidationError("ERA file is empty")
    result = payment_posting.process_era_file(session, tenant_id, raw.decode("utf-8", errors="replace"), actor_id=user.id)
    _audit(
        session, request, user, "era_processed", "payments", tenant_id=tenant_id,
        new_values={k: result[k] for k in ("total", "posted", "pendingReview", "duplicates")},
    )
    return _ok(result)


@app.get("/api/payments")
def list_payments(
    request: Request,
    status: Optional[str] = None,
    claim_id: Optional[str] = Query(None, alias="claimId"),
    limit: int = Query(200, ge=1, le=1000),
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*BILLING)),
):
    tenant_id = _tenant_id(request, user)
    rows = payment_posting.list_payments(session, tenant_id, status=status, claim_id=claim_id, limit=limit)
    return _ok([payment_posting.serialize_payment(p) for p in rows])


@app.post("/api/payments/reconcile")
def reconcile_payments(
    request: Request,
    start: Optional[date] = None,
    end: Optional[date] = None,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*BILLING)),
):
    tenant_id = _tenant_id(request, user)
    start, end = _period(start, end)
    result = payment_posting.reconcile_payments(session, tenant_id, start, end)
    _audit(session, request, user, "payments_reconciled", "payments", tenant_id=tenant_id, new_values={"reconciled": result["reconciled"]})
    return _ok(result)


@app.get("/api/payments/analytics")
def payments_analytics(
    request: Request,
    start: Optional[date] = None,
    end: Optional[date] = None,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*BILLING)),
):
    tenant_id = _tenant_id(request, user)
    start, end = _period(start, end)
    return _ok(payment_posting.payment_analytics(session, tenant_id, start, end))


@app.get("/api/payments/{payment_id}")
def get_payment(
    payment_id: str,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*BILLING)),
):
    return _ok(payment_posting.serialize_payment(payment_posting.get_payment(session, _tenant_id(request, user), payment_id)))


@app.post("/api/payments/{payment_id}/post")
def post_payment(
    payment_id: str,
    payload: PostPaymentModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*BILLING)),
):
    tenant_id = _tenant_id(request, user)
    payment = payment_posting.post_payment_manually(
        session, tenant_id, payment_id, claim_id=payload.claim_id, actor_id=user.id
    )
    _audit(session, request, user, "payment_posted", "payments", payment.id, tenant_id=tenant_id, new_values={"claimId": payment.claim_id})
    return _ok(payment_posting.serialize_payment(payment))


# ---------------------------------------------------------------------------
# Insurance cards
# ---------------------------------------------------------------------------


@app.get("/api/insurance-cards/{card_id}")
def get_insurance_card(
    card_id: str,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL, Role.BILLING.value)),
):
    return _ok(insurance_cards.serialize_card(insurance_cards.get_card(session, _tenant_id(request, user), card_id)))


@app.get("/api/insurance-cards/{card_id}/image/{side}")
def insurance_card_image(
    card_id: str,
    side: str,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL, Role.BILLING.value)),
):
    tenant_id = _tenant_id(request, user)
    card = insurance_cards.get_card(session, tenant_id, card_id)
    data, content_type = insurance_cards.card_image(card, side)
    _audit(session, request, user, "insurance_card_viewed", "insurance_cards", card.id, tenant_id=tenant_id, phi_accessed=True)
    return Response(content=data, media_type=content_type)


@app.post("/api/insurance-cards/{card_id}/extract")
def extract_insurance_card(
    card_id: str,
    payload: CardExtractModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL, Role.BILLING.value)),
):
    tenant_id = _tenant_id(request, user)
    with _commit_on(session, RemoteFunctionError):
        card = insurance_cards.extract_card_data(session, tenant_id, card_id, payload.ocr_text, user_id=user.id)
    return _ok(insurance_cards.serialize_card(card))


@app.post("/api/insurance-cards/{card_id}/verify")
def verify_insurance_card(
    card_id: str,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL, Role.BILLING.value)),
):
    tenant_id = _tenant_id(request, user)
    card = insurance_cards.verify_card(session, tenant_id, card_id)
    _audit(session, request, user, "insurance_card_verified", "insurance_cards", card.id, tenant_id=tenant_id)
    return _ok(insurance_cards.serialize_card(card))


@app.post("/api/insurance-cards/{card_id}/reject")
def reject_insurance_card(
    card_id: str,
    payload: CardRejectModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL, Role.BILLING.value)),
):
    tenant_id = _tenant_id(request, user)
    card = insurance_cards.reject_card(session, tenant_id, card_id, payload.reason)
    _audit(session, request, user, "insurance_card_rejected", "insurance_cards", card.id, tenant_id=tenant_id)
    return _ok(insurance_cards.serialize_card(card))


@app.get("/api/storage/{bucket}/{key:path}")
def get_stored_object(
    bucket: str,
    key: str,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(get_current_user),
):
    tenant_id = _tenant_id(request, user)
    # keys are prefixed with the owning tenant id
    if not key.startswith(f"{tenant_id}/"):
        raise NotFoundError(f"Object {bucket}/{key} not found")
    storage = get_storage()
    data = storage.get(bucket, key)
    _audit(session, request, user, "storage_object_read", bucket, key, tenant_id=tenant_id, phi_accessed=True)
    return Response(content=data, media_type=storage.content_type(bucket, key))


# ---------------------------------------------------------------------------
# Clinical notes
# ---------------------------------------------------------------------------


@app.post("/api/notes", status_code=201)
def create_note(
    payload: NoteModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(Role.PRACTICE_ADMIN.value, Role.PROVIDER.value)),
):
    tenant_id = _tenant_id(request, user)
    note = notes.create_note(session, tenant_id, payload.values(), provider_id=user.id)
    _audit(session, request, user, "note_created", "clinical_notes", note.id, tenant_id=tenant_id, phi_accessed=True, purpose="treatment")
    return _ok(notes.serialize_note(note))


@app.get("/api/notes")
def list_notes(
    request: Request,
    patient_id: Optional[str] = Query(None, alias="patientId"),
    status: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL)),
):
    rows = notes.list_notes(session, _tenant_id(request, user), patient_id=patient_id, status=status, limit=limit)
    return _ok([notes.serialize_note(n) for n in rows])


@app.post("/api/notes/generate")
def generate_note(
    payload: NoteGenerateModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(Role.PRACTICE_ADMIN.value, Role.PROVIDER.value)),
):
    tenant_id = _tenant_id(request, user)
    context = payload.model_dump()
    with _commit_on(session, RemoteFunctionError):
        result = notes.generate_note(session, tenant_id, context, user_id=user.id, save=payload.save)
    return _ok(result)


@app.get("/api/notes/{note_id}")
def get_note(
    note_id: str,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL)),
):
    tenant_id = _tenant_id(request, user)
    note = notes.get_note(session, tenant_id, note_id)
    _audit(session, request, user, "note_viewed", "clinical_notes", note.id, tenant_id=tenant_id, phi_accessed=True, purpose="treatment")
    return _ok(notes.serialize_note(note))


@app.patch("/api/notes/{note_id}")
def update_note(
    note_id: str,
    payload: NoteUpdateModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(Role.PRACTICE_ADMIN.value, Role.PROVIDER.value)),
):
    tenant_id = _tenant_id(request, user)
    note = notes.update_note(session, tenant_id, note_id, payload.values())
    _audit(session, request, user, "note_updated", "clinical_notes", note.id, tenant_id=tenant_id, phi_accessed=True, purpose="treatment")
    return _ok(notes.serialize_note(note))


@app.post("/api/notes/{note_id}/sign")
def sign_note(
    note_id: str,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(Role.PRACTICE_ADMIN.value, Role.PROVIDER.value)),
):
    tenant_id = _tenant_id(request, user)
    note = notes.sign_note(session, tenant_id, note_id, user.id)
    _audit(session, request, user, "note_signed", "clinical_notes", note.id, tenant_id=tenant_id)
    return _ok(notes.serialize_note(note))


@app.post("/api/notes/{note_id}/amend", status_code=201)
def amend_note(
    note_id: str,
    payload: NoteUpdateModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(Role.PRACTICE_ADMIN.value, Role.PROVIDER.value)),
):
    tenant_id = _tenant_id(request, user)
    amendment = notes.amend_note(session, tenant_id, note_id, payload.values(), provider_id=user.id)
    _audit(
        session, request, user, "note_amended", "clinical_notes", amendment.id, tenant_id=tenant_id,
        new_values={"amendedFromId": note_id},
    )
    return _ok(notes.serialize_note(amendment))


@app.post("/api/notes/{note_id}/codes")
def suggest_note_codes(
    note_id: str,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(Role.PRACTICE_ADMIN.value, Role.PROVIDER.value, Role.BILLING.value)),
):
    tenant_id = _tenant_id(request, user)
    with _commit_on(session, RemoteFunctionError):
        codes = notes.suggest_codes(session, tenant_id, note_id, user_id=user.id)
    return _ok({"noteId": note_id, "codes": codes})


# ---------------------------------------------------------------------------
# Communications
# ---------------------------------------------------------------------------


@app.post("/api/communications/send")
def send_communication(
    payload: SendCommunicationModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL)),
):
    tenant_id = _tenant_id(request, user)
    with _commit_on(session, RemoteFunctionError):
        log = communications.send_communication(
            session,
            tenant_id,
            channel=payload.channel,
            patient_id=payload.patient_id,
            template_id=payload.template_id,
            body=payload.body,
            subject=payload.subject,
            variables=payload.variables,
        )
    _audit(
        session, request, user, "communication_sent", "communication_logs", log.id, tenant_id=tenant_id,
        new_values={"channel": log.channel, "status": log.status}, phi_accessed=True, purpose="operations",
    )
    return _ok(communications.serialize_log(log))


@app.get("/api/communications/templates")
def communication_templates(user: User = Depends(require_roles(*CLINICAL))):
    return _ok([template.to_dict() for template in communications.TEMPLATES.values()])


@app.post("/api/communications/reminders/dispatch")
def dispatch_reminders(
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*PRACTICE_ADMIN)),
):
    tenant_id = _tenant_id(request, user)
    result = communications.dispatch_due_reminders(session, tenant_id)
    _audit(session, request, user, "reminders_dispatched", tenant_id=tenant_id, new_values=result)
    return _ok(result)


# ---------------------------------------------------------------------------
# Integrations and EHR
# ---------------------------------------------------------------------------


@app.get("/api/integrations")
def list_integrations(
    request: Request,
    type: Optional[str] = None,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*PRACTICE_ADMIN)),
):
    return _ok(integrations.list_integrations(session, _tenant_id(request, user), type=type))


@app.get("/api/integrations/{integration_id}")
def get_integration(
    integration_id: str,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*PRACTICE_ADMIN)),
):
    return _ok(integrations.get_integration(session, _tenant_id(request, user), integration_id))


@app.patch("/api/integrations/{integration_id}")
def update_integration(
    integration_id: str,
    payload: IntegrationUpdateModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*PRACTICE_ADMIN)),
):
    tenant_id = _tenant_id(request, user)
    result = integrations.update_integration(session, tenant_id, integration_id, payload.values())
    _audit(
        session, request, user, "integration_updated", "integrations", integration_id, tenant_id=tenant_id,
        new_values={"enabled": result["enabled"], "status": result["status"]},
    )
    return _ok(result)


@app.post("/api/integrations/{integration_id}/test")
def test_integration(
    integration_id: str,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*PRACTICE_ADMIN)),
):
    return _ok(integrations.test_integration(session, _tenant_id(request, user), integration_id))


@app.post("/api/integrations/{integration_id}/sync")
def sync_integration(
    integration_id: str,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*PRACTICE_ADMIN)),
):
    tenant_id = _tenant_id(request, user)
    result = integrations.sync_integration(session, tenant_id, integration_id)
    _audit(session, request, user, "integration_synced", "integrations", integration_id, tenant_id=tenant_id, new_values={"success": result["success"]})
    return _ok(result)


@app.post("/api/ehr/connections", status_code=201)
def save_ehr_connection(
    payload: ehr_integration.EHRConfig,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*PRACTICE_ADMIN)),
):
    tenant_id = _tenant_id(request, user)
    connection = ehr_integration.save_connection(session, tenant_id, payload)
    _audit(session, request, user, "ehr_connection_saved", "ehr_connections", connection.id, tenant_id=tenant_id, new_values={"system": payload.system})
    return _ok(ehr_integration.serialize_connection(connection))


@app.get("/api/ehr/connections")
def list_ehr_connections(
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*PRACTICE_ADMIN)),
):
    rows = ehr_integration.list_connections(session, _tenant_id(request, user))
    return _ok([ehr_integration.serialize_connection(c) for c in rows])


def _ehr_service(session: Session, tenant_id: str, system: str) -> ehr_integration.EHRIntegrationService:
    config = ehr_integration.get_connection_config(session, tenant_id, system)
    return ehr_integration.EHRIntegrationService(config, session, tenant_id)


@app.post("/api/ehr/sync/patients")
def ehr_sync_patients(
    payload: EHRSyncModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*PRACTICE_ADMIN)),
):
    tenant_id = _tenant_id(request, user)
    result = _ehr_service(session, tenant_id, payload.system).sync_patients()
    _audit(session, request, user, "ehr_patients_synced", "patients", tenant_id=tenant_id, new_values={"system": payload.system, "success": result.success}, phi_accessed=True)
    return _ok(result.to_dict())


@app.post("/api/ehr/sync/appointments")
def ehr_sync_appointments(
    payload: EHRSyncModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*PRACTICE_ADMIN)),
):
    tenant_id = _tenant_id(request, user)
    result = _ehr_service(session, tenant_id, payload.system).sync_appointments()
    _audit(session, request, user, "ehr_appointments_synced", "appointments", tenant_id=tenant_id, new_values={"system": payload.system, "success": result.success})
    return _ok(result.to_dict())


@app.post("/api/ehr/push/{appointment_id}")
def ehr_push_appointment(
    appointment_id: str,
    payload: EHRSyncModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL)),
):
    tenant_id = _tenant_id(request, user)
    result = _ehr_service(session, tenant_id, payload.system).push_appointment(appointment_id)
    _audit(session, request, user, "ehr_appointment_pushed", "appointments", appointment_id, tenant_id=tenant_id, new_values={"system": payload.system, "success": result.success})
    return _ok(result.to_dict())


# ---------------------------------------------------------------------------
# HIPAA, audit and analytics
# ---------------------------------------------------------------------------


@app.post("/api/hipaa/classify")
def classify_record(payload: RecordModel, user: User = Depends(get_current_user)):
    return _ok(hipaa.classify_data(payload.data).to_dict())


@app.post("/api/hipaa/anonymize")
def anonymize_record(
    payload: RecordModel,
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*CLINICAL)),
):
    result = hipaa.anonymize_for_ai(payload.data)
    _audit(session, request, user, "phi_anonymized", tenant_id=user.tenant_id, new_values={"tokens": len(result.token_map)}, phi_accessed=True)
    # the token map holds raw PHI and never leaves the server
    return _ok({"data": result.data, "tokenCount": len(result.token_map), "classification": result.classification.to_dict()})


@app.get("/api/hipaa/metrics")
def compliance_metrics(
    request: Request,
    days: int = Query(30, ge=1, le=365),
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*PRACTICE_ADMIN)),
):
    tenant_id = None if user.role == Role.ADMIN.value and not request.headers.get(TENANT_HEADER) else _tenant_id(request, user)
    return _ok(hipaa.get_compliance_metrics(session, tenant_id, days))


@app.get("/api/hipaa/alerts")
def compliance_alerts(
    request: Request,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*PRACTICE_ADMIN)),
):
    tenant_id = None if user.role == Role.ADMIN.value and not request.headers.get(TENANT_HEADER) else _tenant_id(request, user)
    return _ok(hipaa.evaluate_compliance_alerts(session, tenant_id))


@app.get("/api/audit")
def list_audit(
    request: Request,
    action: Optional[str] = None,
    user_id: Optional[str] = Query(None, alias="userId"),
    table_name: Optional[str] = Query(None, alias="tableName"),
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    phi_only: bool = Query(False, alias="phiOnly"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*PRACTICE_ADMIN)),
):
    tenant_id = None if user.role == Role.ADMIN.value and not request.headers.get(TENANT_HEADER) else _tenant_id(request, user)
    rows = audit.list_audit(
        session,
        tenant_id,
        action=action,
        user_id=user_id,
        table_name=table_name,
        since=since,
        until=until,
        phi_only=phi_only,
        limit=limit,
        offset=offset,
    )
    return _ok([audit.serialize_audit(entry) for entry in rows])


@app.get("/api/analytics")
def tenant_analytics(
    request: Request,
    start: Optional[date] = None,
    end: Optional[date] = None,
    session: Session = Depends(get_session),
    user: User = Depends(require_roles(*BILLING)),
):
    tenant_id = _tenant_id(request, user)
    start, end = _period(start, end)
    return _ok(analytics.tenant_analytics(session, tenant_id, start, end))


@app.get("/api/analytics/platform")
def platform_analytics(session: Session = Depends(get_session), user: User = Depends(require_roles())):
    return _ok(analytics.platform_summary(session))


__all__: List[str] = ["app", "get_current_user", "require_roles"]
