"""
Pairing registry: pairing codes, device redemption and operator approval.

A registration is a slot created by IssueCode, claimed by a field device with
SubmitRegistration, and closed by an operator with Approve or Reject. Expiry
is never stored ahead of time; registration_status() derives it on every read.
"""
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import and_, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from auth import compute_token_id, generate_device_token, hash_token, verify_token
from config import config
from errors import Conflict, Expired, LimitExceeded, NotFound, Unauthorized
from models import Device, DeviceRegistration, ensure_utc, log_device_event, new_id, utcnow
from observability import structured_logger, metrics
from tenancy import TenantContext, require_permission, scoped_get

# No 0/O or 1/I: codes are read off one screen and typed on another
CODE_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"
MAX_CODE_ATTEMPTS = 10

TERMINAL_REGISTRATION_STATUSES = frozenset({"approved", "rejected", "expired"})


def registration_status(now: datetime, expires_at: datetime, status: str) -> str:
    if status == "pending" and ensure_utc(expires_at) <= now:
        return "expired"
    return status


def generate_pairing_code(length: Optional[int] = None) -> str:
    length = length or config.pairing_code_length
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: str) -> str:
    return code.strip().upper()


def _check_device_quota(db: Session, context: TenantContext) -> None:
    device_count = db.query(func.count(Device.id)).filter(
        Device.organization_id == context.organization_id
    ).scalar()
    if device_count >= context.max_devices:
        metrics.inc_counter("pairing_limit_exceeded_total")
        raise LimitExceeded("Organization device limit reached", max_devices=context.max_devices)


def _expire_stale_code(db: Session, code: str, now: datetime) -> None:
    """Frees a code still held by a pending slot whose expiry has passed."""
    db.execute(
        update(DeviceRegistration)
        .where(
            DeviceRegistration.pairing_code == code,
            DeviceRegistration.status == "pending",
            DeviceRegistration.expires_at <= now,
        )
        .values(status="expired")
        .execution_options(synchronize_session=False)
    )


def issue_code(
    db: Session,
    context: TenantContext,
    description: Optional[str] = None,
    validity: Optional[timedelta] = None,
    *,
    now: Optional[datetime] = None,
    generate: Callable[[int], str] = generate_pairing_code,
) -> DeviceRegistration:
    """
    IssueCode: open a pending registration slot under a fresh pairing code.

    Codes double as a global lookup key for unauthenticated devices, so the
    collision check spans every organization.
    """
    require_permission(context, "devices:admin")
    _check_device_quota(db, context)

    now = now or utcnow()
    validity = validity or timedelta(minutes=config.pairing_default_validity_minutes)

    for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
        code = normalize_code(generate(config.pairing_code_length))
        _expire_stale_code(db, code, now)

        taken = db.query(DeviceRegistration.id).filter(
            DeviceRegistration.pairing_code == code,
            DeviceRegistration.status == "pending",
        ).first()
        if taken:
            db.commit()
            metrics.inc_counter("pairing_code_collisions_total")
            continue

        registration = DeviceRegistration(
            organization_id=context.organization_id,
            pairing_code=code,
            description=description,
            status="pending",
            created_by=context.user_id,
            created_at=now,
            expires_at=now + validity,
        )
        db.add(registration)
        try:
            db.commit()
        except IntegrityError:
            # Lost the race for this code to a concurrent issuer
            db.rollback()
            metrics.inc_counter("pairing_code_collisions_total")
            continue

        db.refresh(registration)
        metrics.inc_counter("pairing_codes_issued_total")
        structured_logger.log_event(
            "pairing.code.issued",
            organization_id=context.organization_id,
            registration_id=registration.id,
            issued_by=context.principal_id,
            expires_at=registration.expires_at,
            attempts=attempt
        )
        return registration

    structured_logger.log_event(
        "pairing.code.exhausted",
        level="ERROR",
        organization_id=context.organization_id,
        attempts=MAX_CODE_ATTEMPTS
    )
    raise Conflict("Could not allocate a unique pairing code, try again")


def submit_registration(
    db: Session,
    pairing_code: str,
    descriptor: dict,
    *,
    now: Optional[datetime] = None,
) -> tuple[DeviceRegistration, str]:
    """
    SubmitRegistration: a field device redeems a code.

    Returns the claimed registration and the device credential, which is only
    ever available here.
    """
    now = now or utcnow()
    code = normalize_code(pairing_code)

    # Swept slots are stored as expired and still answer with Expired
    candidates = db.query(DeviceRegistration).filter(
        DeviceRegistration.pairing_code == code,
        DeviceRegistration.status.in_(("pending", "expired")),
    ).order_by(DeviceRegistration.expires_at.desc()).all()

    if not candidates:
        metrics.inc_counter("pairing_submissions_total", {"result": "not_found"})
        structured_logger.log_event("pairing.submit.not_found", level="WARN", code_prefix=code[:2])
        raise NotFound("Pairing code not found")

    live = [r for r in candidates if registration_status(now, r.expires_at, r.status) == "pending"]
    if not live:
        metrics.inc_counter("pairing_submissions_total", {"result": "expired"})
        structured_logger.log_event(
            "pairing.submit.expired",
            level="WARN",
            registration_id=candidates[0].id,
            organization_id=candidates[0].organization_id
        )
        raise Expired("Pairing code expired")

    registration = live[0]
    if registration.submitted_at is not None:
        raise Conflict("Pairing code already redeemed")

    descriptor = dict(descriptor)
    push_address = descriptor.pop("push_address", None)
    device_token = generate_device_token()

    result = db.execute(
        update(DeviceRegistration)
        .where(
            DeviceRegistration.id == registration.id,
            DeviceRegistration.status == "pending",
            DeviceRegistration.submitted_at.is_(None),
            DeviceRegistration.expires_at > now,
        )
        .values(
            submitted_at=now,
            device_descriptor=descriptor,
            push_address=push_address,
            token_hash=hash_token(device_token),
            token_id=compute_token_id(device_token),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise Conflict("Pairing code already redeemed")
    db.commit()
    db.refresh(registration)

    metrics.inc_counter("pairing_submissions_total", {"result": "accepted"})
    structured_logger.log_event(
        "pairing.submit.accepted",
        registration_id=registration.id,
        organization_id=registration.organization_id,
        model=descriptor.get("model")
    )
    return registration, device_token


def _ensure_open(registration: DeviceRegistration, now: datetime) -> None:
    status = registration_status(now, registration.expires_at, registration.status)
    if status == "expired":
        raise Expired("Registration expired")
    if status != "pending":
        raise Conflict(f"Registration is already {status}")


def approve_registration(
    db: Session,
    context: TenantContext,
    registration_id: int,
    *,
    now: Optional[datetime] = None,
) -> Device:
    """
    Approve: provision the Device and close the registration in one transaction.

    The status flip is a conditional update on status = 'pending', so of two
    concurrent approvals exactly one matches a row; the other gets Conflict.
    """
    require_permission(context, "devices:admin")
    now = now or utcnow()

    registration = scoped_get(db, context, DeviceRegistration, registration_id)
    _ensure_open(registration, now)
    if registration.submitted_at is None:
        raise Conflict("Registration has not been claimed by a device yet")
    _check_device_quota(db, context)

    try:
        result = db.execute(
            update(DeviceRegistration)
            .where(
                DeviceRegistration.id == registration.id,
                DeviceRegistration.organization_id == context.organization_id,
                DeviceRegistration.status == "pending",
                DeviceRegistration.expires_at > now,
            )
            .values(status="approved", approved_by=context.user_id, approved_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            metrics.inc_counter("pairing_decisions_total", {"decision": "approve", "result": "conflict"})
            raise Conflict("Registration was already processed")

        descriptor = registration.device_descriptor or {}
        device = Device(
            id=new_id(),
            organization_id=context.organization_id,
            display_name=descriptor.get("name") or descriptor.get("model") or f"Device {registration.pairing_code}",
            status="offline",
            push_address=registration.push_address,
            model=descriptor.get("model"),
            manufacturer=descriptor.get("manufacturer"),
            os_version=descriptor.get("os_version"),
            hardware_id=descriptor.get("hardware_id"),
            extra=descriptor.get("extras") or None,
            token_hash=registration.token_hash,
            token_id=registration.token_id,
            registration_id=registration.id,
            created_at=now,
        )
        db.add(device)
        db.flush()

        db.execute(
            update(DeviceRegistration)
            .where(DeviceRegistration.id == registration.id)
            .values(device_id=device.id)
            .execution_options(synchronize_session=False)
        )
        log_device_event(db, context.organization_id, device.id, "DEVICE_REGISTERED", {
            "registration_id": registration.id,
            "approved_by": context.principal_id,
        })
        db.commit()
    except Conflict:
        raise
    except Exception as e:
        db.rollback()
        structured_logger.log_event(
            "pairing.approve.failed",
            level="ERROR",
            registration_id=registration_id,
            organization_id=context.organization_id,
            error=str(e)
        )
        raise

    db.refresh(device)
    metrics.inc_counter("pairing_decisions_total", {"decision": "approve", "result": "success"})
    structured_logger.log_event(
        "pairing.registration.approved",
        registration_id=registration_id,
        organization_id=context.organization_id,
        device_id=device.id,
        approved_by=context.principal_id
    )
    return device


def reject_registration(
    db: Session,
    context: TenantContext,
    registration_id: int,
    reason: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> DeviceRegistration:
    require_permission(context, "devices:admin")
    now = now or utcnow()

    registration = scoped_get(db, context, DeviceRegistration, registration_id)
    _ensure_open(registration, now)

    # approved_by/approved_at record whoever decided, for either outcome
    result = db.execute(
        update(DeviceRegistration)
        .where(
            DeviceRegistration.id == registration.id,
            DeviceRegistration.organization_id == context.organization_id,
            DeviceRegistration.status == "pending",
            DeviceRegistration.expires_at > now,
        )
        .values(status="rejected", rejection_reason=reason, approved_by=context.user_id, approved_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        metrics.inc_counter("pairing_decisions_total", {"decision": "reject", "result": "conflict"})
        raise Conflict("Registration was already processed")
    db.commit()
    db.refresh(registration)

    metrics.inc_counter("pairing_decisions_total", {"decision": "reject", "result": "success"})
    structured_logger.log_event(
        "pairing.registration.rejected",
        registration_id=registration_id,
        organization_id=context.organization_id,
        rejected_by=context.principal_id,
        reason=reason
    )
    return registration


def get_registration(db: Session, context: TenantContext, registration_id: int) -> DeviceRegistration:
    require_permission(context, "devices:read")
    return scoped_get(db, context, DeviceRegistration, registration_id)


def list_registrations(
    db: Session,
    context: TenantContext,
    status: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
    limit: int = 100,
) -> list[DeviceRegistration]:
    """Registrations of the caller's organization, filtered on the derived status"""
    require_permission(context, "devices:read")
    now = now or utcnow()

    query = db.query(DeviceRegistration).filter(DeviceRegistration.organization_id == context.organization_id)
    if status == "pending":
        query = query.filter(DeviceRegistration.status == "pending", DeviceRegistration.expires_at > now)
    elif status == "expired":
        query = query.filter(or_(
            DeviceRegistration.status == "expired",
            and_(DeviceRegistration.status == "pending", DeviceRegistration.expires_at <= now),
        ))
    elif status:
        query = query.filter(DeviceRegistration.status == status)

    return query.order_by(DeviceRegistration.created_at.desc()).limit(limit).all()


def pairing_status_for_token(db: Session, token: str) -> DeviceRegistration:
    """A device polls the outcome of its registration with the credential it was issued."""
    registration = db.query(DeviceRegistration).filter(
        DeviceRegistration.token_id == compute_token_id(token)
    ).first()
    if registration is None or not registration.token_hash or not verify_token(token, registration.token_hash):
        raise Unauthorized("Invalid device token")
    return registration


def expire_stale_registrations(db: Session, now: Optional[datetime] = None) -> int:
    """Bulk materialization of expiry for list queries; reads never depend on it."""
    now = now or utcnow()
    result = db.execute(
        update(DeviceRegistration)
        .where(DeviceRegistration.status == "pending", DeviceRegistration.expires_at <= now)
        .values(status="expired")
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount or 0
