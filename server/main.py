from fastapi import FastAPI, Depends, Request, Response, Query, Security
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from sqlalchemy import text
from datetime import datetime, timezone, timedelta
from typing import Optional
import re
import time
import uuid

from models import Command, CommandAttempt, Device, DeviceRegistration, Organization, User, ensure_utc, get_db, init_db, utcnow
from schemas import (
    UserRegisterRequest, UserLoginRequest, OrganizationCreateRequest, OrganizationSummary, MemberAddRequest,
    IssueCodeRequest, IssueCodeResponse, SubmitRegistrationRequest, SubmitRegistrationResponse,
    RejectRegistrationRequest, ApproveRegistrationResponse, RegistrationSummary, PairingStatusResponse,
    PresenceStatus, DeviceSummary, DeviceUpdateRequest, DeviceEventSummary, LocationSample, HeartbeatPayload,
    EnqueueCommandRequest, CommandSummary, CommandAttemptSummary, CommandResultRequest, AckResponse
)
from auth import create_jwt_token, get_current_user, hash_password, verify_password, security
from errors import Conflict, DomainError, Unauthorized
from tenancy import TenantContext, add_member, create_organization, get_device_context, get_tenant_context, resolve_user_context
from background_tasks import background_tasks
from observability import structured_logger, metrics, request_id_var
from rate_limiter import limit_pairing_submissions
from config import config
import dispatcher
import pairing
import presence

app = FastAPI(title="FleetLink API")

# Collapses ids in paths so route metrics keep a bounded label set
_ID_SEGMENT = re.compile(r"/(\d+|[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})(?=/|$)")

@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """
    Generate/extract request_id for correlation across logs.
    Also tracks HTTP request metrics.
    """
    req_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request_id_var.set(req_id)

    start_time = time.time()

    response = await call_next(request)

    latency_ms = (time.time() - start_time) * 1000
    route = _ID_SEGMENT.sub("/{id}", request.url.path)

    metrics.inc_counter("http_requests_total", {
        "route": route,
        "method": request.method,
        "status_code": str(response.status_code)
    })
    metrics.observe_histogram("http_request_latency_ms", latency_ms, {
        "route": route
    })

    response.headers["X-Request-ID"] = req_id
    return response

@app.middleware("http")
async def exception_guard_middleware(request: Request, call_next):
    """
    Catches unhandled exceptions in routes and returns a 500 without internal
    details instead of dropping the connection.
    """
    try:
        return await call_next(request)
    except Exception as e:
        structured_logger.log_event(
            "http.unhandled_exception",
            level="ERROR",
            path=request.url.path,
            method=request.method,
            error=str(e),
            error_type=type(e).__name__
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later."
            }
        )

@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    structured_logger.log_event(
        "http.domain_error",
        level="WARN" if exc.status_code < 500 else "ERROR",
        path=request.url.path,
        method=request.method,
        error=exc.code,
        message=exc.message
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    structured_logger.log_event(
        "validation.error",
        level="WARN",
        path=request.url.path,
        method=request.method,
        errors=exc.errors()
    )
    return JSONResponse(
        status_code=422,
        content={"error": "validation_failed", "detail": [
            {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]} for err in exc.errors()
        ]}
    )

def validate_configuration():
    """Log configuration problems at startup; errors stop the server."""
    is_valid, errors, warnings = config.validate()

    for warning in warnings:
        structured_logger.log_event("config.warning", level="WARN", message=warning)

    if not is_valid:
        for error in errors:
            structured_logger.log_event("config.error", level="ERROR", message=error)
        raise RuntimeError("Configuration validation failed: " + "; ".join(errors))

    structured_logger.log_event("config.validated", **config.summary())

backend_start_time = datetime.now(timezone.utc)

@app.on_event("startup")
async def startup_event():
    validate_configuration()
    init_db()
    structured_logger.log_event("startup.database.ready")

    try:
        await background_tasks.start()
    except Exception as e:
        structured_logger.log_event(
            "startup.background_tasks.failed",
            level="ERROR",
            error=str(e),
            error_type=type(e).__name__
        )
        raise

@app.on_event("shutdown")
async def shutdown_event():
    await background_tasks.stop()


# --- presenters -----------------------------------------------------------------

def _registration_summary(registration: DeviceRegistration, now: datetime) -> RegistrationSummary:
    return RegistrationSummary(
        id=registration.id,
        organization_id=registration.organization_id,
        pairing_code=registration.pairing_code,
        description=registration.description,
        status=pairing.registration_status(now, registration.expires_at, registration.status),
        device_descriptor=registration.device_descriptor,
        created_at=ensure_utc(registration.created_at),
        submitted_at=ensure_utc(registration.submitted_at),
        expires_at=ensure_utc(registration.expires_at),
        approved_by=registration.approved_by,
        approved_at=ensure_utc(registration.approved_at),
        rejection_reason=registration.rejection_reason,
        device_id=registration.device_id,
    )

def _device_summary(device: Device, status: str) -> DeviceSummary:
    return DeviceSummary(
        id=device.id,
        organization_id=device.organization_id,
        display_name=device.display_name,
        status=status,
        last_seen=ensure_utc(device.last_seen),
        last_heartbeat=ensure_utc(device.last_heartbeat),
        has_push_address=bool(device.push_address),
        model=device.model,
        manufacturer=device.manufacturer,
        os_version=device.os_version,
        owner_name=device.owner_name,
        owner_email=device.owner_email,
        battery_level=device.battery_level,
        created_at=ensure_utc(device.created_at),
    )

def _command_summary(command: Command, attempts: Optional[list[CommandAttempt]] = None) -> CommandSummary:
    return CommandSummary(
        id=command.id,
        organization_id=command.organization_id,
        device_id=command.device_id,
        type=command.type,
        payload=command.payload,
        status=command.status,
        attempt_count=command.attempt_count,
        max_attempts=command.max_attempts,
        error=command.error,
        result=command.result,
        created_at=ensure_utc(command.created_at),
        scheduled_at=ensure_utc(command.scheduled_at),
        sent_at=ensure_utc(command.sent_at),
        executed_at=ensure_utc(command.executed_at),
        completed_at=ensure_utc(command.completed_at),
        expires_at=ensure_utc(command.expires_at),
        attempts=None if attempts is None else [
            CommandAttemptSummary(
                attempt_number=a.attempt_number,
                started_at=ensure_utc(a.started_at),
                finished_at=ensure_utc(a.finished_at),
                outcome=a.outcome,
                error=a.error,
                latency_ms=a.latency_ms,
            )
            for a in attempts
        ],
    )


# --- ops ------------------------------------------------------------------------

@app.get("/healthz")
async def health_check(db: Session = Depends(get_db)):
    uptime_seconds = (datetime.now(timezone.utc) - backend_start_time).total_seconds()

    database_ok = True
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        database_ok = False
        structured_logger.log_event("healthz.database.failed", level="ERROR", error=str(e))

    return JSONResponse(
        status_code=200 if database_ok else 503,
        content={
            "status": "healthy" if database_ok else "degraded",
            "database": database_ok,
            "workers": background_tasks.running,
            "uptime_seconds": int(uptime_seconds),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    )

@app.get("/metrics")
async def prometheus_metrics():
    """Prometheus-compatible metrics endpoint"""
    return Response(
        content=metrics.get_prometheus_text(),
        media_type="text/plain; version=0.0.4"
    )


# --- accounts & organizations ---------------------------------------------------

def _auth_response(user: User) -> dict:
    return {
        "ok": True,
        "access_token": create_jwt_token(user.id, user.username),
        "user": {
            "id": user.id,
            "username": user.username,
            "created_at": ensure_utc(user.created_at).isoformat()
        }
    }

@app.post("/api/auth/register")
async def register_user(request: UserRegisterRequest, db: Session = Depends(get_db)):
    if db.query(User).filter(User.username == request.username).first():
        raise Conflict("Username already exists")

    user = User(
        username=request.username,
        email=request.email,
        password_hash=hash_password(request.password),
        created_at=utcnow()
    )
    db.add(user)
    db.commit()
    db.refresh(user)

    structured_logger.log_event("auth.user.registered", user_id=user.id, username=user.username)
    return _auth_response(user)

@app.post("/api/auth/login")
async def login_user(request: UserLoginRequest, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.username == request.username).first()
    if not user or not user.is_active or not verify_password(request.password, user.password_hash):
        metrics.inc_counter("auth_login_failures_total")
        raise Unauthorized("Invalid username or password")

    structured_logger.log_event("auth.user.login", user_id=user.id)
    return _auth_response(user)

def _organization_summary(org: Organization, context: TenantContext) -> OrganizationSummary:
    return OrganizationSummary(
        id=org.id,
        name=org.name,
        slug=org.slug,
        status=org.status,
        max_devices=org.max_devices,
        max_users=org.max_users,
        role=context.role,
        permissions=sorted(context.permissions),
    )

@app.post("/api/organizations", response_model=OrganizationSummary, status_code=201)
async def create_organization_route(
    request: OrganizationCreateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    org = create_organization(db, user, request.name, request.slug, request.max_devices, request.max_users)
    context = resolve_user_context(db, user, org.id)
    return _organization_summary(org, context)

@app.get("/api/organizations/me", response_model=OrganizationSummary)
async def current_organization(
    context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db)
):
    return _organization_summary(db.get(Organization, context.organization_id), context)

@app.post("/api/organizations/members", status_code=201)
async def add_member_route(
    request: MemberAddRequest,
    context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db)
):
    member = add_member(db, context, request.username, request.role)
    return {"ok": True, "user_id": member.user_id, "role": member.role}


# --- pairing (operator) ---------------------------------------------------------

@app.post("/api/pairing/codes", response_model=IssueCodeResponse, status_code=201)
async def issue_pairing_code(
    request: IssueCodeRequest,
    context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db)
):
    validity = timedelta(minutes=request.validity_minutes) if request.validity_minutes else None
    registration = pairing.issue_code(db, context, request.description, validity)
    return IssueCodeResponse(
        registration_id=registration.id,
        pairing_code=registration.pairing_code,
        expires_at=ensure_utc(registration.expires_at),
    )

@app.get("/api/pairing/registrations", response_model=list[RegistrationSummary])
async def list_pairing_registrations(
    status: Optional[str] = Query(None, pattern="^(pending|approved|rejected|expired)$"),
    limit: int = Query(100, ge=1, le=500),
    context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db)
):
    now = utcnow()
    registrations = pairing.list_registrations(db, context, status, now=now, limit=limit)
    return [_registration_summary(r, now) for r in registrations]

@app.get("/api/pairing/registrations/{registration_id}", response_model=RegistrationSummary)
async def get_pairing_registration(
    registration_id: int,
    context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db)
):
    return _registration_summary(pairing.get_registration(db, context, registration_id), utcnow())

@app.post("/api/pairing/registrations/{registration_id}/approve", response_model=ApproveRegistrationResponse)
async def approve_pairing_registration(
    registration_id: int,
    context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db)
):
    device = pairing.approve_registration(db, context, registration_id)
    return ApproveRegistrationResponse(device_id=device.id, registration_id=registration_id)

@app.post("/api/pairing/registrations/{registration_id}/reject", response_model=RegistrationSummary)
async def reject_pairing_registration(
    registration_id: int,
    request: RejectRegistrationRequest,
    context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db)
):
    registration = pairing.reject_registration(db, context, registration_id, request.reason)
    return _registration_summary(registration, utcnow())


# --- devices --------------------------------------------------------------------

@app.get("/api/devices", response_model=list[DeviceSummary])
async def list_devices(
    status: Optional[str] = Query(None, pattern="^(online|offline|inactive|maintenance)$"),
    limit: int = Query(500, ge=1, le=1000),
    context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db)
):
    rows = presence.list_devices(db, context, status, limit=limit)
    return [_device_summary(device, derived) for device, derived in rows]

@app.get("/api/devices/{device_id}", response_model=DeviceSummary)
async def get_device(
    device_id: str,
    context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db)
):
    device = presence.get_device(db, context, device_id)
    return _device_summary(device, presence.derive_status(utcnow(), device.last_heartbeat, device.status))

@app.patch("/api/devices/{device_id}", response_model=DeviceSummary)
async def update_device(
    device_id: str,
    request: DeviceUpdateRequest,
    context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db)
):
    device = presence.update_device(
        db, context, device_id,
        display_name=request.display_name,
        owner_name=request.owner_name,
        owner_email=request.owner_email,
        maintenance=request.maintenance,
    )
    return _device_summary(device, presence.derive_status(utcnow(), device.last_heartbeat, device.status))

@app.delete("/api/devices/{device_id}")
async def delete_device(
    device_id: str,
    context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db)
):
    presence.delete_device(db, context, device_id)
    return {"ok": True, "device_id": device_id}

@app.get("/api/devices/{device_id}/status", response_model=PresenceStatus)
async def get_device_status(
    device_id: str,
    context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db)
):
    return presence.get_status(db, context, device_id)

def _query_time(value: Optional[datetime]) -> Optional[datetime]:
    # Naive query values are read as UTC; offsets are converted before comparing stored UTC
    if value is None or value.tzinfo is None:
        return ensure_utc(value)
    return value.astimezone(timezone.utc)

@app.get("/api/devices/{device_id}/events", response_model=list[DeviceEventSummary])
async def list_device_events(
    device_id: str,
    type: Optional[str] = Query(None, max_length=50),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db)
):
    events = presence.list_device_events(
        db, context, device_id, type, _query_time(since), _query_time(until), limit=limit
    )
    return [
        DeviceEventSummary(id=e.id, event_type=e.event_type, timestamp=ensure_utc(e.timestamp), details=e.details)
        for e in events
    ]

@app.get("/api/devices/{device_id}/locations", response_model=list[LocationSample])
async def list_device_locations(
    device_id: str,
    limit: int = Query(20, ge=1, le=500),
    context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db)
):
    samples = presence.list_locations(db, context, device_id, limit=limit)
    return [
        LocationSample(
            lat=s.location_lat,
            lng=s.location_lng,
            accuracy=s.location_accuracy,
            captured_at=ensure_utc(s.captured_at),
            received_at=ensure_utc(s.received_at),
        )
        for s in samples
    ]


# --- commands (operator) --------------------------------------------------------

@app.post("/api/devices/{device_id}/commands", response_model=CommandSummary, status_code=201)
async def enqueue_device_command(
    device_id: str,
    request: EnqueueCommandRequest,
    context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db)
):
    command = dispatcher.enqueue_command(
        db, context, device_id, request.type, request.payload,
        timeout_seconds=request.timeout_seconds,
        max_attempts=request.max_attempts,
    )
    return _command_summary(command)

@app.get("/api/devices/{device_id}/commands", response_model=list[CommandSummary])
async def list_device_commands(
    device_id: str,
    status: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db)
):
    commands = dispatcher.list_commands(db, context, device_id=device_id, status=status, limit=limit)
    return [_command_summary(c) for c in commands]

@app.get("/api/commands/{command_id}", response_model=CommandSummary)
async def get_command(
    command_id: str,
    context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db)
):
    command, attempts = dispatcher.get_command(db, context, command_id)
    return _command_summary(command, attempts)

@app.post("/api/commands/{command_id}/cancel", response_model=CommandSummary)
async def cancel_command(
    command_id: str,
    context: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db)
):
    return _command_summary(dispatcher.cancel_command(db, context, command_id))


# --- device routes --------------------------------------------------------------

@app.post(
    "/v1/pairing/register",
    response_model=SubmitRegistrationResponse,
    status_code=201,
    dependencies=[Depends(limit_pairing_submissions)]
)
async def submit_pairing_registration(request: SubmitRegistrationRequest, db: Session = Depends(get_db)):
    registration, device_token = pairing.submit_registration(
        db, request.pairing_code, request.descriptor.model_dump()
    )
    return SubmitRegistrationResponse(
        registration_id=registration.id,
        device_token=device_token,
        expires_at=ensure_utc(registration.expires_at),
    )

@app.get("/v1/pairing/status", response_model=PairingStatusResponse)
async def pairing_status(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security),
    db: Session = Depends(get_db)
):
    if not credentials:
        raise Unauthorized("Missing authorization header")
    registration = pairing.pairing_status_for_token(db, credentials.credentials)
    status = pairing.registration_status(utcnow(), registration.expires_at, registration.status)
    return PairingStatusResponse(
        registration_id=registration.id,
        status=status,
        device_id=registration.device_id,
        organization_id=registration.organization_id if status == "approved" else None,
    )

@app.post("/v1/heartbeat", response_model=PresenceStatus)
async def heartbeat(
    payload: HeartbeatPayload,
    context: TenantContext = Depends(get_device_context),
    db: Session = Depends(get_db)
):
    return presence.record_heartbeat(db, context, payload)

@app.post("/v1/commands/{command_id}/ack", response_model=AckResponse)
async def acknowledge_command(
    command_id: str,
    context: TenantContext = Depends(get_device_context),
    db: Session = Depends(get_db)
):
    command = dispatcher.acknowledge_command(db, context, command_id)
    return AckResponse(ok=True, status=command.status)

@app.post("/v1/commands/{command_id}/result", response_model=AckResponse)
async def report_command_result(
    command_id: str,
    request: CommandResultRequest,
    context: TenantContext = Depends(get_device_context),
    db: Session = Depends(get_db)
):
    command = dispatcher.report_result(
        db, context, command_id, request.outcome, request.result_payload, request.message
    )
    return AckResponse(ok=True, status=command.status)
