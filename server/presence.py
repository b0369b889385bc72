"""
Presence tracking from device heartbeats.

The stored Device.status is only a cache for list queries; derive_status() is
the source of truth and is applied on every read.
"""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import case, func, or_, update
from sqlalchemy.orm import Session

from config import config
from errors import Conflict, Forbidden
from models import Command, Device, DeviceEvent, DeviceRegistration, HeartbeatSample, ensure_utc, log_device_event, utcnow
from observability import structured_logger, metrics
from schemas import HeartbeatPayload
from tenancy import TenantContext, ensure_same_organization, require_permission, scoped_get

PRESENCE_STATUSES = ("online", "offline", "inactive", "maintenance")


def derive_status(
    now: datetime,
    last_heartbeat: Optional[datetime],
    stored_status: Optional[str] = None,
    freshness: Optional[int] = None,
    inactive_after: Optional[int] = None,
) -> str:
    if stored_status == "maintenance":
        return "maintenance"
    if last_heartbeat is None:
        return "offline"

    freshness = freshness if freshness is not None else config.presence_freshness_seconds
    inactive_after = inactive_after if inactive_after is not None else config.presence_inactive_seconds

    age = (now - ensure_utc(last_heartbeat)).total_seconds()
    if age <= freshness:
        return "online"
    if age <= inactive_after:
        return "offline"
    return "inactive"


def record_heartbeat(
    db: Session,
    context: TenantContext,
    payload: HeartbeatPayload,
    *,
    now: Optional[datetime] = None,
) -> dict:
    """
    RecordHeartbeat: append a sample and move the device's presence forward.

    Samples arriving out of order are stored but never move last_heartbeat
    backwards.
    """
    require_permission(context, "device:report")
    ensure_same_organization(context, payload.organization_id)
    if payload.device_id != context.device_id:
        structured_logger.log_event(
            "heartbeat.device_mismatch",
            level="WARN",
            organization_id=context.organization_id,
            principal_id=context.principal_id,
            claimed_device_id=payload.device_id
        )
        raise Forbidden("Device mismatch")

    now = now or utcnow()
    device = scoped_get(db, context, Device, payload.device_id)

    captured_at = ensure_utc(payload.captured_at) or now
    if captured_at > now:
        captured_at = now

    location = payload.location
    db.add(HeartbeatSample(
        device_id=device.id,
        organization_id=context.organization_id,
        captured_at=captured_at,
        received_at=now,
        battery_level=payload.battery_level,
        battery_status=payload.battery_status,
        network_info=payload.network_info,
        location_lat=location.lat if location else None,
        location_lng=location.lng if location else None,
        location_accuracy=location.accuracy if location else None,
    ))

    values = {
        "last_heartbeat": captured_at,
        "status": case((Device.status == "maintenance", "maintenance"), else_=derive_status(now, captured_at)),
    }
    if payload.battery_level is not None:
        values["battery_level"] = payload.battery_level
    if payload.battery_status is not None:
        values["battery_status"] = payload.battery_status
    if payload.network_info is not None:
        values["network_info"] = payload.network_info
    if location:
        values.update(location_lat=location.lat, location_lng=location.lng, location_at=captured_at)

    result = db.execute(
        update(Device)
        .where(
            Device.id == device.id,
            Device.organization_id == context.organization_id,
            or_(Device.last_heartbeat.is_(None), Device.last_heartbeat < captured_at),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    applied = result.rowcount == 1

    contact = {"last_seen": now}
    if payload.push_address:
        contact["push_address"] = payload.push_address
    db.execute(
        update(Device)
        .where(
            Device.id == device.id,
            or_(Device.last_seen.is_(None), Device.last_seen < now),
        )
        .values(**contact)
        .execution_options(synchronize_session=False)
    )

    previous_status = derive_status(now, device.last_heartbeat, device.status)
    db.commit()
    db.refresh(device)

    current_status = derive_status(now, device.last_heartbeat, device.status)
    if current_status != previous_status:
        log_device_event(db, context.organization_id, device.id, "STATUS_CHANGE", {
            "from": previous_status,
            "to": current_status,
        })
        db.commit()

    metrics.inc_counter("heartbeats_ingested_total", {"applied": str(applied).lower()})
    metrics.observe_histogram("heartbeat_lag_ms", (now - captured_at).total_seconds() * 1000)
    structured_logger.log_event(
        "heartbeat.ingest",
        organization_id=context.organization_id,
        device_id=device.id,
        status=current_status,
        applied=applied,
        battery_level=payload.battery_level
    )
    return {"status": current_status, "last_seen": ensure_utc(device.last_heartbeat)}


def get_status(db: Session, context: TenantContext, device_id: str, *, now: Optional[datetime] = None) -> dict:
    require_permission(context, "devices:read")
    device = scoped_get(db, context, Device, device_id)
    now = now or utcnow()
    return {
        "status": derive_status(now, device.last_heartbeat, device.status),
        "last_seen": ensure_utc(device.last_heartbeat),
    }


def sweep_presence(db: Session, now: Optional[datetime] = None) -> int:
    """Bring the cached Device.status in line with derive_status for list queries"""
    now = now or utcnow()
    offline_cutoff = now - timedelta(seconds=config.presence_freshness_seconds)
    inactive_cutoff = now - timedelta(seconds=config.presence_inactive_seconds)

    went_offline = db.execute(
        update(Device)
        .where(
            Device.status == "online",
            or_(Device.last_heartbeat.is_(None), Device.last_heartbeat < offline_cutoff),
        )
        .values(status="offline")
        .execution_options(synchronize_session=False)
    ).rowcount or 0

    went_inactive = db.execute(
        update(Device)
        .where(
            Device.status == "offline",
            Device.last_heartbeat.is_not(None),
            Device.last_heartbeat < inactive_cutoff,
        )
        .values(status="inactive")
        .execution_options(synchronize_session=False)
    ).rowcount or 0
    db.commit()

    if went_offline or went_inactive:
        structured_logger.log_event(
            "presence.sweep",
            went_offline=went_offline,
            went_inactive=went_inactive
        )
    metrics.inc_counter("presence_transitions_total", {"to": "offline"}, went_offline)
    metrics.inc_counter("presence_transitions_total", {"to": "inactive"}, went_inactive)
    return went_offline + went_inactive


def list_devices(
    db: Session,
    context: TenantContext,
    status: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
    limit: int = 500,
) -> list[tuple[Device, str]]:
    """Devices of the caller's organization paired with their derived status"""
    require_permission(context, "devices:read")
    now = now or utcnow()

    devices = db.query(Device).filter(
        Device.organization_id == context.organization_id
    ).order_by(Device.created_at.desc()).limit(limit).all()

    rows = [(device, derive_status(now, device.last_heartbeat, device.status)) for device in devices]
    if status:
        rows = [row for row in rows if row[1] == status]
    return rows


def get_device(db: Session, context: TenantContext, device_id: str) -> Device:
    require_permission(context, "devices:read")
    return scoped_get(db, context, Device, device_id)


def list_device_events(
    db: Session,
    context: TenantContext,
    device_id: str,
    event_type: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    *,
    limit: int = 100,
) -> list[DeviceEvent]:
    """Audit trail of one device, newest first"""
    require_permission(context, "devices:read")
    device = scoped_get(db, context, Device, device_id)

    query = db.query(DeviceEvent).filter(
        DeviceEvent.organization_id == context.organization_id,
        DeviceEvent.device_id == device.id,
    )
    if event_type:
        query = query.filter(DeviceEvent.event_type == event_type)
    if since:
        query = query.filter(DeviceEvent.timestamp >= since)
    if until:
        query = query.filter(DeviceEvent.timestamp <= until)
    return query.order_by(DeviceEvent.timestamp.desc(), DeviceEvent.id.desc()).limit(limit).all()


def list_locations(db: Session, context: TenantContext, device_id: str, *, limit: int = 20) -> list[HeartbeatSample]:
    """Heartbeat samples that carried a position, newest capture first"""
    require_permission(context, "devices:read")
    device = scoped_get(db, context, Device, device_id)

    return db.query(HeartbeatSample).filter(
        HeartbeatSample.organization_id == context.organization_id,
        HeartbeatSample.device_id == device.id,
        HeartbeatSample.location_lat.is_not(None),
        HeartbeatSample.location_lng.is_not(None),
    ).order_by(HeartbeatSample.captured_at.desc(), HeartbeatSample.id.desc()).limit(limit).all()


def update_device(
    db: Session,
    context: TenantContext,
    device_id: str,
    *,
    display_name: Optional[str] = None,
    owner_name: Optional[str] = None,
    owner_email: Optional[str] = None,
    maintenance: Optional[bool] = None,
    now: Optional[datetime] = None,
) -> Device:
    require_permission(context, "devices:write")
    device = scoped_get(db, context, Device, device_id)
    now = now or utcnow()

    if display_name is not None:
        device.display_name = display_name
    if owner_name is not None:
        device.owner_name = owner_name
    if owner_email is not None:
        device.owner_email = owner_email

    if maintenance is not None:
        previous = device.status
        if maintenance:
            device.status = "maintenance"
        elif previous == "maintenance":
            device.status = derive_status(now, device.last_heartbeat)
        if device.status != previous:
            log_device_event(db, context.organization_id, device.id, "STATUS_CHANGE", {
                "from": previous,
                "to": device.status,
                "changed_by": context.principal_id,
            })

    db.commit()
    db.refresh(device)

    structured_logger.log_event(
        "device.updated",
        organization_id=context.organization_id,
        device_id=device.id,
        updated_by=context.principal_id,
        status=device.status
    )
    return device


def delete_device(db: Session, context: TenantContext, device_id: str) -> None:
    """
    Removal is refused while the device still has command or heartbeat history.
    Its event trail goes with it, and the registration that provisioned it is
    detached and stops answering to the issued credential.
    """
    require_permission(context, "devices:admin")
    device = scoped_get(db, context, Device, device_id)

    commands = db.query(func.count(Command.id)).filter(Command.device_id == device.id).scalar()
    samples = db.query(func.count(HeartbeatSample.id)).filter(HeartbeatSample.device_id == device.id).scalar()
    if commands or samples:
        raise Conflict("Device has command or heartbeat history", commands=commands, heartbeat_samples=samples)

    events = db.query(DeviceEvent).filter(
        DeviceEvent.organization_id == context.organization_id,
        DeviceEvent.device_id == device.id,
    ).delete(synchronize_session=False)
    db.execute(
        update(DeviceRegistration)
        .where(
            DeviceRegistration.organization_id == context.organization_id,
            DeviceRegistration.device_id == device.id,
        )
        .values(device_id=None, token_hash=None, token_id=None)
        .execution_options(synchronize_session=False)
    )
    db.delete(device)
    db.commit()

    metrics.inc_counter("devices_deleted_total")
    structured_logger.log_event(
        "device.deleted",
        organization_id=context.organization_id,
        device_id=device_id,
        deleted_by=context.principal_id,
        events_removed=events
    )
