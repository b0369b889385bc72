"""
Command dispatcher.

Commands move pending -> sent -> executing -> {success, failed, timeout,
cancelled}. The queued state exists in the vocabulary but is never written:
a command goes straight from pending to sent once the transport accepts it.

Every status change is a conditional UPDATE on the current status, so two
workers (or a worker and a device report) racing on the same command can never
move it backwards. Delivery attempts are claimed with an optimistic
attempt_count bump and recorded as CommandAttempt rows before the transport is
awaited; no transaction is held open across the await.
"""
import asyncio
import time
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import ValidationError
from sqlalchemy import case, func, update
from sqlalchemy.orm import Session

from config import config
from errors import Conflict, NotFound, TransportFailure, ValidationFailed
from models import Command, CommandAttempt, Device, ensure_utc, log_device_event, new_id, utcnow
from observability import structured_logger, metrics
from schemas import COMMAND_DEFAULT_TIMEOUTS, DEFAULT_COMMAND_TIMEOUT, CommandType, parse_command_payload
from tenancy import TenantContext, require_permission, scoped_get
from transport import CommandEnvelope, NotificationTransport

TERMINAL_COMMAND_STATUSES = frozenset({"success", "failed", "timeout", "cancelled"})
UNDELIVERED_STATUSES = ("pending", "queued")
IN_FLIGHT_STATUSES = ("sent", "executing")
ACTIVE_STATUSES = UNDELIVERED_STATUSES + IN_FLIGHT_STATUSES
CANCELLABLE_STATUSES = ("pending", "queued", "sent")
ACKNOWLEDGEABLE_STATUSES = UNDELIVERED_STATUSES + ("sent",)

NO_CHANNEL_ERROR = "no delivery channel"


def retry_backoff(attempt_number: int) -> timedelta:
    seconds = config.retry_base_seconds * (2 ** (attempt_number - 1))
    return timedelta(seconds=min(seconds, config.retry_max_seconds))


def _dispatch_lease() -> timedelta:
    # Keeps the due/sweep queries off a command while its transport call is in flight
    return timedelta(seconds=config.transport_timeout_seconds * 2)


def validate_command_payload(command_type, payload: Optional[dict]) -> dict:
    try:
        command_type = CommandType(command_type)
    except ValueError:
        raise ValidationFailed(f"Unknown command type {command_type!r}")
    try:
        return parse_command_payload(command_type, payload)
    except ValidationError as e:
        raise ValidationFailed(
            f"Invalid {command_type.value} payload",
            errors=[{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()]
        )


def _transition(db: Session, command_id: str, from_statuses, **values) -> bool:
    result = db.execute(
        update(Command)
        .where(Command.id == command_id, Command.status.in_(from_statuses))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def enqueue_command(
    db: Session,
    context: TenantContext,
    device_id: str,
    command_type,
    payload: Optional[dict] = None,
    timeout_seconds: Optional[int] = None,
    max_attempts: Optional[int] = None,
    *,
    now: Optional[datetime] = None,
) -> Command:
    require_permission(context, "commands:write")
    payload = validate_command_payload(command_type, payload)
    command_type = CommandType(command_type)

    device = scoped_get(db, context, Device, device_id)
    if device.status == "maintenance":
        raise Conflict("Device is in maintenance")

    now = now or utcnow()
    timeout_seconds = timeout_seconds or COMMAND_DEFAULT_TIMEOUTS.get(command_type, DEFAULT_COMMAND_TIMEOUT)

    command = Command(
        id=new_id(),
        organization_id=context.organization_id,
        device_id=device.id,
        type=command_type.value,
        payload=payload,
        status="pending",
        attempt_count=0,
        max_attempts=max_attempts or config.command_default_max_attempts,
        timeout_seconds=timeout_seconds,
        created_by=context.user_id,
        created_at=now,
        scheduled_at=now,
        expires_at=now + timedelta(seconds=timeout_seconds),
    )
    db.add(command)
    db.commit()
    db.refresh(command)

    metrics.inc_counter("commands_enqueued_total", {"type": command.type})
    structured_logger.log_event(
        "command.enqueued",
        organization_id=context.organization_id,
        command_id=command.id,
        device_id=device.id,
        type=command.type,
        max_attempts=command.max_attempts,
        timeout_seconds=timeout_seconds,
        created_by=context.principal_id
    )
    return command


def _finish_exhausted(db: Session, command: Command, now: datetime, error: str) -> str:
    """An attempt that was ever accepted means the device may have it: timeout, not failed."""
    final_status = "timeout" if command.sent_at else "failed"
    if not _transition(db, command.id, ACTIVE_STATUSES, status=final_status, error=error, completed_at=now):
        db.rollback()
        db.refresh(command)
        return command.status

    log_device_event(db, command.organization_id, command.device_id, "COMMAND_COMPLETED", {
        "command_id": command.id,
        "status": final_status,
        "error": error,
    })
    db.commit()
    metrics.inc_counter("commands_completed_total", {"status": final_status})
    structured_logger.log_event(
        "command.exhausted",
        level="WARN",
        organization_id=command.organization_id,
        command_id=command.id,
        device_id=command.device_id,
        status=final_status,
        attempts=command.attempt_count,
        error=error
    )
    return final_status


async def dispatch_command(
    db: Session,
    command_id: str,
    transport: NotificationTransport,
    *,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """
    Make one delivery attempt for a command if it is due. Returns the
    command's status afterwards.
    """
    fixed_clock = now is not None
    now = now or utcnow()

    command = db.query(Command).filter(Command.id == command_id).populate_existing().first()
    if command is None:
        return None

    status = command.status
    if status in TERMINAL_COMMAND_STATUSES:
        return status
    if status in UNDELIVERED_STATUSES:
        # Past its window the timeout sweep owns it
        if ensure_utc(command.expires_at) <= now or ensure_utc(command.scheduled_at) > now:
            return status
    elif ensure_utc(command.expires_at) > now:
        return status

    if command.attempt_count >= command.max_attempts:
        return _finish_exhausted(db, command, now, f"no result after {command.attempt_count} attempts")

    device = db.get(Device, command.device_id)
    if device is None or not device.push_address:
        if _transition(db, command.id, ACTIVE_STATUSES, status="failed", error=NO_CHANNEL_ERROR, completed_at=now):
            log_device_event(db, command.organization_id, command.device_id, "COMMAND_COMPLETED", {
                "command_id": command.id,
                "status": "failed",
                "error": NO_CHANNEL_ERROR,
            })
        db.commit()
        metrics.inc_counter("commands_completed_total", {"status": "failed"})
        structured_logger.log_event(
            "command.dispatch.no_channel",
            level="WARN",
            organization_id=command.organization_id,
            command_id=command.id,
            device_id=command.device_id
        )
        return "failed"

    attempt_number = command.attempt_count + 1
    lease_until = now + _dispatch_lease()
    claim_values = {"attempt_count": attempt_number, "scheduled_at": lease_until}
    if status in IN_FLIGHT_STATUSES:
        claim_values["expires_at"] = lease_until
    claimed = db.execute(
        update(Command)
        .where(
            Command.id == command.id,
            Command.status == status,
            Command.attempt_count == command.attempt_count,
        )
        .values(**claim_values)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        db.rollback()
        metrics.inc_counter("command_dispatch_claims_lost_total")
        return status

    attempt = CommandAttempt(
        command_id=command.id,
        organization_id=command.organization_id,
        attempt_number=attempt_number,
        started_at=now,
        outcome="in_flight",
    )
    db.add(attempt)

    envelope = CommandEnvelope(
        command_id=command.id,
        device_id=command.device_id,
        organization_id=command.organization_id,
        type=command.type,
        payload=command.payload or {},
    ).sign()
    push_address = device.push_address

    # Nothing below touches the session until the transport returns
    db.commit()
    send_start_time = time.time()
    receipt = None
    error = None
    try:
        receipt = await asyncio.wait_for(
            transport.send(push_address, envelope),
            timeout=config.transport_timeout_seconds
        )
    except TransportFailure as e:
        error = e.message
    except asyncio.TimeoutError:
        error = "transport timed out"

    latency_ms = int((time.time() - send_start_time) * 1000)
    finished = now if fixed_clock else utcnow()
    metrics.observe_histogram("command_dispatch_latency_ms", latency_ms)

    attempt.finished_at = finished
    attempt.latency_ms = latency_ms

    if error is None:
        attempt.outcome = "accepted"
        attempt.transport_message_id = receipt.message_id if receipt else None
        _transition(
            db, command.id, ACTIVE_STATUSES,
            status=case((Command.status == "executing", "executing"), else_="sent"),
            sent_at=finished,
            expires_at=finished + timedelta(seconds=command.timeout_seconds),
        )
        db.commit()

        metrics.inc_counter("command_attempts_total", {"outcome": "accepted"})
        structured_logger.log_event(
            "command.dispatch.sent",
            organization_id=command.organization_id,
            command_id=command.id,
            device_id=command.device_id,
            type=command.type,
            attempt=attempt_number,
            message_id=attempt.transport_message_id,
            latency_ms=latency_ms
        )
        db.refresh(command)
        return command.status

    attempt.outcome = "failed"
    attempt.error = error
    metrics.inc_counter("command_attempts_total", {"outcome": "failed"})
    structured_logger.log_event(
        "command.dispatch.failed",
        level="WARN",
        organization_id=command.organization_id,
        command_id=command.id,
        device_id=command.device_id,
        attempt=attempt_number,
        max_attempts=command.max_attempts,
        error=error,
        latency_ms=latency_ms
    )

    if attempt_number >= command.max_attempts:
        db.commit()
        db.refresh(command)
        return _finish_exhausted(db, command, finished, f"transport failure: {error}")

    retry_at = finished + retry_backoff(attempt_number)
    retry_values = {"scheduled_at": retry_at}
    if status in IN_FLIGHT_STATUSES:
        retry_values["expires_at"] = retry_at
    else:
        # The delivery window follows the retry so backoff cannot outrun it
        retry_values["expires_at"] = max(
            ensure_utc(command.expires_at), retry_at + timedelta(seconds=command.timeout_seconds)
        )
    _transition(db, command.id, ACTIVE_STATUSES, **retry_values)
    db.commit()
    db.refresh(command)
    return command.status


async def _dispatch_grouped(
    session_factory: Callable[[], Session],
    transport: NotificationTransport,
    rows,
    now: Optional[datetime],
) -> int:
    """One task per device, commands of a device in order, bounded by a semaphore."""
    by_device = defaultdict(list)
    for command_id, device_id in rows:
        by_device[device_id].append(command_id)

    semaphore = asyncio.Semaphore(config.dispatch_concurrency)

    async def run_device(command_ids):
        async with semaphore:
            for command_id in command_ids:
                db = session_factory()
                try:
                    await dispatch_command(db, command_id, transport, now=now)
                except Exception as e:
                    db.rollback()
                    metrics.inc_counter("command_dispatch_errors_total")
                    structured_logger.log_event(
                        "command.dispatch.error",
                        level="ERROR",
                        command_id=command_id,
                        error=str(e),
                        error_type=type(e).__name__
                    )
                finally:
                    db.close()

    await asyncio.gather(*(run_device(ids) for ids in by_device.values()))
    return len(rows)


async def dispatch_due(
    session_factory: Callable[[], Session],
    transport: NotificationTransport,
    now: Optional[datetime] = None,
) -> int:
    current = now or utcnow()
    db = session_factory()
    try:
        rows = db.query(Command.id, Command.device_id).filter(
            Command.status.in_(UNDELIVERED_STATUSES),
            Command.scheduled_at <= current,
            Command.expires_at > current,
        ).order_by(Command.scheduled_at, Command.created_at).limit(config.dispatch_batch_size).all()
    finally:
        db.close()

    if not rows:
        return 0
    return await _dispatch_grouped(session_factory, transport, rows, now)


async def sweep_timeouts(
    session_factory: Callable[[], Session],
    transport: NotificationTransport,
    now: Optional[datetime] = None,
) -> dict:
    """
    Deadline enforcement.

    Undelivered commands past their window time out. Delivered commands with
    no result by their deadline get another attempt while they have attempts
    left, and time out once they don't.
    """
    current = now or utcnow()
    db = session_factory()
    try:
        expired_rows = db.query(Command.id, Command.organization_id, Command.device_id).filter(
            Command.status.in_(UNDELIVERED_STATUSES),
            Command.expires_at <= current,
        ).limit(config.dispatch_batch_size).all()
        expired = 0
        for command_id, organization_id, device_id in expired_rows:
            if _transition(db, command_id, UNDELIVERED_STATUSES,
                           status="timeout", error="expired before delivery", completed_at=current):
                log_device_event(db, organization_id, device_id, "COMMAND_COMPLETED", {
                    "command_id": command_id,
                    "status": "timeout",
                    "error": "expired before delivery",
                })
                expired += 1

        exhausted_rows = db.query(Command.id, Command.organization_id, Command.device_id, Command.attempt_count).filter(
            Command.status.in_(IN_FLIGHT_STATUSES),
            Command.expires_at <= current,
            Command.attempt_count >= Command.max_attempts,
        ).limit(config.dispatch_batch_size).all()
        timed_out = 0
        for command_id, organization_id, device_id, attempt_count in exhausted_rows:
            error = f"no result after {attempt_count} attempts"
            done = db.execute(
                update(Command)
                .where(
                    Command.id == command_id,
                    Command.status.in_(IN_FLIGHT_STATUSES),
                    Command.expires_at <= current,
                )
                .values(status="timeout", error=error, completed_at=current)
                .execution_options(synchronize_session=False)
            )
            if done.rowcount == 1:
                log_device_event(db, organization_id, device_id, "COMMAND_COMPLETED", {
                    "command_id": command_id,
                    "status": "timeout",
                    "error": error,
                })
                timed_out += 1
        db.commit()

        retry_rows = db.query(Command.id, Command.device_id).filter(
            Command.status.in_(IN_FLIGHT_STATUSES),
            Command.expires_at <= current,
            Command.attempt_count < Command.max_attempts,
        ).order_by(Command.expires_at).limit(config.dispatch_batch_size).all()
    finally:
        db.close()

    if expired or timed_out:
        metrics.inc_counter("commands_completed_total", {"status": "timeout"}, expired + timed_out)
        structured_logger.log_event(
            "command.sweep.timeouts",
            expired_before_delivery=expired,
            timed_out=timed_out
        )

    retried = await _dispatch_grouped(session_factory, transport, retry_rows, now) if retry_rows else 0
    return {"expired": expired, "timed_out": timed_out, "retried": retried}


def _device_command(db: Session, context: TenantContext, command_id: str) -> Command:
    require_permission(context, "device:report")
    command = scoped_get(db, context, Command, command_id)
    if command.device_id != context.device_id:
        raise NotFound("Command not found")
    # A device only learns of a command through a push, so nothing it says
    # about one that was never handed to the transport is credible
    if command.attempt_count == 0 and command.status not in TERMINAL_COMMAND_STATUSES:
        structured_logger.log_event(
            "command.report.undelivered",
            level="WARN",
            organization_id=command.organization_id,
            command_id=command.id,
            device_id=command.device_id
        )
        raise Conflict("Command has not been delivered to the device")
    return command


def report_result(
    db: Session,
    context: TenantContext,
    command_id: str,
    outcome: str,
    result_payload: Optional[dict] = None,
    message: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> Command:
    """
    ReportResult from the target device. Reports for a command that already
    reached a terminal state leave it unchanged; a command with no delivery
    attempt yet cannot be reported on (Conflict).
    """
    if outcome not in ("success", "failed"):
        raise ValidationFailed(f"Unknown outcome {outcome!r}")

    command = _device_command(db, context, command_id)
    now = now or utcnow()

    if command.status not in TERMINAL_COMMAND_STATUSES:
        applied = _transition(
            db, command.id, ACTIVE_STATUSES,
            status=outcome,
            result=result_payload,
            error=message if outcome == "failed" else None,
            executed_at=func.coalesce(Command.executed_at, now),
            completed_at=now,
        )
        if applied:
            log_device_event(db, command.organization_id, command.device_id, "COMMAND_COMPLETED", {
                "command_id": command.id,
                "status": outcome,
            })
            db.commit()
            db.refresh(command)

            metrics.inc_counter("commands_completed_total", {"status": outcome})
            metrics.observe_histogram(
                "command_completion_ms",
                (now - ensure_utc(command.created_at)).total_seconds() * 1000,
                {"type": command.type}
            )
            structured_logger.log_event(
                "command.result",
                organization_id=command.organization_id,
                command_id=command.id,
                device_id=command.device_id,
                status=outcome,
                attempts=command.attempt_count
            )
            return command
        db.rollback()
        db.refresh(command)

    metrics.inc_counter("command_results_duplicate_total")
    structured_logger.log_event(
        "command.result.duplicate",
        organization_id=command.organization_id,
        command_id=command.id,
        device_id=command.device_id,
        status=command.status,
        reported=outcome
    )
    return command


def acknowledge_command(db: Session, context: TenantContext, command_id: str, *, now: Optional[datetime] = None) -> Command:
    command = _device_command(db, context, command_id)
    now = now or utcnow()

    if _transition(db, command.id, ACKNOWLEDGEABLE_STATUSES, status="executing", executed_at=now):
        db.commit()
        structured_logger.log_event(
            "command.ack",
            organization_id=command.organization_id,
            command_id=command.id,
            device_id=command.device_id
        )
    else:
        db.rollback()
    db.refresh(command)
    return command


def cancel_command(db: Session, context: TenantContext, command_id: str, *, now: Optional[datetime] = None) -> Command:
    require_permission(context, "commands:write")
    command = scoped_get(db, context, Command, command_id)
    now = now or utcnow()

    if command.status == "cancelled":
        return command
    if command.status not in CANCELLABLE_STATUSES:
        raise Conflict(f"Command is already {command.status}")

    if not _transition(db, command.id, CANCELLABLE_STATUSES, status="cancelled", completed_at=now):
        db.rollback()
        db.refresh(command)
        if command.status == "cancelled":
            return command
        raise Conflict(f"Command is already {command.status}")

    log_device_event(db, command.organization_id, command.device_id, "COMMAND_COMPLETED", {
        "command_id": command.id,
        "status": "cancelled",
        "cancelled_by": context.principal_id,
    })
    db.commit()
    db.refresh(command)

    metrics.inc_counter("commands_completed_total", {"status": "cancelled"})
    structured_logger.log_event(
        "command.cancelled",
        organization_id=command.organization_id,
        command_id=command.id,
        cancelled_by=context.principal_id
    )
    return command


def get_command(db: Session, context: TenantContext, command_id: str) -> tuple[Command, list[CommandAttempt]]:
    require_permission(context, "commands:read")
    command = scoped_get(db, context, Command, command_id)
    attempts = db.query(CommandAttempt).filter(
        CommandAttempt.command_id == command.id
    ).order_by(CommandAttempt.attempt_number).all()
    return command, attempts


def list_commands(
    db: Session,
    context: TenantContext,
    device_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
) -> list[Command]:
    require_permission(context, "commands:read")
    query = db.query(Command).filter(Command.organization_id == context.organization_id)
    if device_id is not None:
        scoped_get(db, context, Device, device_id)
        query = query.filter(Command.device_id == device_id)
    if status:
        query = query.filter(Command.status == status)
    return query.order_by(Command.created_at.desc()).limit(limit).all()
