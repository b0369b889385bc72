"""
Heartbeat ingest and presence derivation.
"""
import pytest
from datetime import timedelta
from sqlalchemy.orm import Session

from conftest import T0, make_device, make_organization, make_user
from auth import lookup_device_by_token
from errors import Conflict, Forbidden, NotFound, Unauthorized
from models import Command, Device, DeviceEvent, DeviceRegistration, HeartbeatSample
from pairing import approve_registration, issue_code, pairing_status_for_token, submit_registration
from presence import (
    delete_device, derive_status, get_status, list_device_events, list_devices, list_locations, record_heartbeat,
    sweep_presence, update_device
)
from schemas import HeartbeatPayload
from tenancy import resolve_device_context, resolve_user_context


def beat(device, **fields) -> HeartbeatPayload:
    return HeartbeatPayload(device_id=device.id, organization_id=device.organization_id, **fields)


class TestDeriveStatus:

    def test_no_heartbeat_is_offline(self):
        assert derive_status(T0, None, "online") == "offline"

    def test_windows(self):
        assert derive_status(T0, T0 - timedelta(seconds=300), freshness=300, inactive_after=3600) == "online"
        assert derive_status(T0, T0 - timedelta(seconds=301), freshness=300, inactive_after=3600) == "offline"
        assert derive_status(T0, T0 - timedelta(seconds=3601), freshness=300, inactive_after=3600) == "inactive"

    def test_maintenance_is_preserved(self):
        assert derive_status(T0, T0, "maintenance") == "maintenance"

    def test_freshness_comes_from_config(self, monkeypatch):
        monkeypatch.setenv("PRESENCE_FRESHNESS_SECONDS", "60")
        assert derive_status(T0, T0 - timedelta(seconds=90)) == "offline"


class TestRecordHeartbeat:

    def test_heartbeat_brings_device_online(self, test_db: Session, test_device, device_context, capture_logs):
        device, _ = test_device
        result = record_heartbeat(test_db, device_context, beat(
            device, battery_level=81, battery_status="charging",
            location={"lat": 52.37, "lng": 4.89, "accuracy": 12.0},
            captured_at=T0
        ), now=T0 + timedelta(seconds=2))

        assert result["status"] == "online"
        assert result["last_seen"] == T0

        test_db.refresh(device)
        assert device.battery_level == 81
        assert device.location_lat == 52.37
        assert device.status == "online"
        assert test_db.query(HeartbeatSample).count() == 1
        assert test_db.query(DeviceEvent).filter(DeviceEvent.event_type == "STATUS_CHANGE").count() == 1
        assert any(log["event"] == "heartbeat.ingest" for log in capture_logs)

    def test_out_of_order_sample_does_not_move_backwards(self, test_db: Session, test_device, device_context):
        device, _ = test_device
        record_heartbeat(test_db, device_context, beat(device, battery_level=50, captured_at=T0), now=T0)
        record_heartbeat(test_db, device_context, beat(device, battery_level=90, captured_at=T0 - timedelta(minutes=1)),
                         now=T0 + timedelta(seconds=5))

        test_db.refresh(device)
        assert device.last_heartbeat.replace(tzinfo=None) == T0.replace(tzinfo=None)
        assert device.battery_level == 50
        assert test_db.query(HeartbeatSample).count() == 2

    def test_future_capture_time_is_clamped(self, test_db: Session, test_device, device_context):
        device, _ = test_device
        result = record_heartbeat(test_db, device_context, beat(device, captured_at=T0 + timedelta(hours=1)), now=T0)
        assert result["last_seen"] == T0

    def test_push_address_rotation(self, test_db: Session, test_device, device_context):
        device, _ = test_device
        record_heartbeat(test_db, device_context, beat(device, push_address="fcm-rotated"), now=T0)
        test_db.refresh(device)
        assert device.push_address == "fcm-rotated"

    def test_organization_mismatch_is_forbidden(self, test_db: Session, test_device, device_context):
        device, _ = test_device
        payload = HeartbeatPayload(device_id=device.id, organization_id=device.organization_id + 1)
        with pytest.raises(Forbidden):
            record_heartbeat(test_db, device_context, payload, now=T0)
        assert test_db.query(HeartbeatSample).count() == 0

    def test_device_mismatch_is_forbidden(self, test_db: Session, organization, test_device, device_context):
        device, _ = test_device
        sibling, _ = make_device(test_db, organization)
        with pytest.raises(Forbidden):
            record_heartbeat(test_db, device_context, beat(sibling), now=T0)

    def test_maintenance_survives_heartbeat(self, test_db: Session, test_device, device_context):
        device, _ = test_device
        device.status = "maintenance"
        test_db.commit()
        result = record_heartbeat(test_db, device_context, beat(device, captured_at=T0), now=T0)
        assert result["status"] == "maintenance"


class TestStatusReads:

    def test_status_is_derived_at_read_time(self, test_db: Session, owner_context, test_device, device_context):
        device, _ = test_device
        record_heartbeat(test_db, device_context, beat(device, captured_at=T0), now=T0)

        assert get_status(test_db, owner_context, device.id, now=T0 + timedelta(minutes=1))["status"] == "online"
        assert get_status(test_db, owner_context, device.id, now=T0 + timedelta(minutes=6))["status"] == "offline"
        assert get_status(test_db, owner_context, device.id, now=T0 + timedelta(days=2))["status"] == "inactive"

    def test_list_devices_filters_by_derived_status(self, test_db: Session, owner_context, organization, test_device, device_context):
        device, _ = test_device
        make_device(test_db, organization, display_name="Spare")
        record_heartbeat(test_db, device_context, beat(device, captured_at=T0), now=T0)

        online = list_devices(test_db, owner_context, "online", now=T0 + timedelta(seconds=30))
        assert [d.id for d, _ in online] == [device.id]
        assert len(list_devices(test_db, owner_context, now=T0)) == 2

    def test_sweep_presence_updates_cached_status(self, test_db: Session, test_device, device_context):
        device, _ = test_device
        record_heartbeat(test_db, device_context, beat(device, captured_at=T0), now=T0)

        assert sweep_presence(test_db, T0 + timedelta(minutes=10)) == 1
        test_db.refresh(device)
        assert device.status == "offline"

        assert sweep_presence(test_db, T0 + timedelta(days=2)) == 1
        test_db.refresh(device)
        assert device.status == "inactive"


class TestDeviceManagement:

    def test_maintenance_toggle(self, test_db: Session, owner_context, test_device):
        device, _ = test_device
        updated = update_device(test_db, owner_context, device.id, display_name="Lobby kiosk", maintenance=True)
        assert updated.display_name == "Lobby kiosk"
        assert updated.status == "maintenance"

        updated = update_device(test_db, owner_context, device.id, maintenance=False)
        assert updated.status == "offline"

    def test_delete_device(self, test_db: Session, owner_context, test_device):
        device, _ = test_device
        device_id = device.id
        delete_device(test_db, owner_context, device_id)
        assert test_db.get(Device, device_id) is None

    def test_delete_blocked_by_history(self, test_db: Session, owner_context, test_device, device_context):
        device, _ = test_device
        record_heartbeat(test_db, device_context, beat(device), now=T0)
        with pytest.raises(Conflict):
            delete_device(test_db, owner_context, device.id)

    def test_delete_paired_device_detaches_registration(self, test_db: Session, owner_context):
        registration = issue_code(test_db, owner_context, now=T0, generate=lambda length: "7F3K2Q")
        _, token = submit_registration(test_db, "7F3K2Q", {"model": "Pixel 8", "push_address": "fcm-abc"},
                                       now=T0 + timedelta(minutes=1))
        device = approve_registration(test_db, owner_context, registration.id, now=T0 + timedelta(minutes=2))
        device_id = device.id

        delete_device(test_db, owner_context, device_id)

        test_db.expire_all()
        assert test_db.get(Device, device_id) is None
        assert test_db.query(DeviceEvent).filter(DeviceEvent.device_id == device_id).count() == 0
        registration = test_db.get(DeviceRegistration, registration.id)
        assert registration.status == "approved"
        assert registration.device_id is None
        assert lookup_device_by_token(test_db, token) is None
        with pytest.raises(Unauthorized):
            pairing_status_for_token(test_db, token)


class TestHistory:

    def _event(self, db, device, event_type, at, **details):
        db.add(DeviceEvent(organization_id=device.organization_id, device_id=device.id,
                           event_type=event_type, timestamp=at, details=details or None))
        db.commit()

    def test_events_newest_first_with_filters(self, test_db: Session, owner_context, test_device):
        device, _ = test_device
        self._event(test_db, device, "DEVICE_REGISTERED", T0)
        self._event(test_db, device, "STATUS_CHANGE", T0 + timedelta(minutes=1), to="online")
        self._event(test_db, device, "COMMAND_COMPLETED", T0 + timedelta(minutes=2), status="success")
        self._event(test_db, device, "STATUS_CHANGE", T0 + timedelta(minutes=3), to="offline")

        events = list_device_events(test_db, owner_context, device.id)
        assert [e.event_type for e in events] == ["STATUS_CHANGE", "COMMAND_COMPLETED", "STATUS_CHANGE", "DEVICE_REGISTERED"]

        changes = list_device_events(test_db, owner_context, device.id, "STATUS_CHANGE")
        assert [e.details["to"] for e in changes] == ["offline", "online"]

        window = list_device_events(test_db, owner_context, device.id,
                                    since=T0 + timedelta(minutes=1), until=T0 + timedelta(minutes=2))
        assert [e.event_type for e in window] == ["COMMAND_COMPLETED", "STATUS_CHANGE"]
        assert len(list_device_events(test_db, owner_context, device.id, limit=1)) == 1

    def test_locations_skip_samples_without_position(self, test_db: Session, owner_context, test_device, device_context):
        device, _ = test_device
        record_heartbeat(test_db, device_context, beat(device, captured_at=T0, location={"lat": 52.37, "lng": 4.89}),
                         now=T0)
        record_heartbeat(test_db, device_context, beat(device, captured_at=T0 + timedelta(minutes=1), battery_level=50),
                         now=T0 + timedelta(minutes=1))
        record_heartbeat(test_db, device_context, beat(device, captured_at=T0 + timedelta(minutes=2),
                                                       location={"lat": 52.38, "lng": 4.90, "accuracy": 8.0}),
                         now=T0 + timedelta(minutes=2))

        locations = list_locations(test_db, owner_context, device.id)
        assert [(s.location_lat, s.location_lng) for s in locations] == [(52.38, 4.90), (52.37, 4.89)]
        assert locations[0].location_accuracy == 8.0
        assert len(list_locations(test_db, owner_context, device.id, limit=1)) == 1

    def test_history_is_tenant_scoped(self, test_db: Session, test_device):
        device, _ = test_device
        other_owner = make_user(test_db, "other_owner")
        other = make_organization(test_db, other_owner, "globex")
        other_context = resolve_user_context(test_db, other_owner, other.id)

        with pytest.raises(NotFound):
            list_device_events(test_db, other_context, device.id)
        with pytest.raises(NotFound):
            list_locations(test_db, other_context, device.id)
