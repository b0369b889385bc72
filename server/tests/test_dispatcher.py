"""
Command dispatcher: enqueue, delivery attempts, retries, deadlines and
device reports. Async entry points are driven with asyncio.run.
"""
import asyncio
import pytest
from datetime import timedelta
from sqlalchemy.orm import Session

from conftest import T0, FakeTransport, make_device, make_user
from dispatcher import (
    acknowledge_command, cancel_command, dispatch_command, dispatch_due, enqueue_command,
    get_command, list_commands, report_result, retry_backoff, sweep_timeouts, validate_command_payload
)
from errors import Conflict, Forbidden, NotFound, ValidationFailed
from hmac_utils import verify_envelope
from models import Command, CommandAttempt, DeviceEvent, OrganizationMember, ensure_utc
from tenancy import resolve_device_context, resolve_user_context


def run(coro):
    return asyncio.run(coro)


def attempts_of(db: Session, command_id: str):
    return db.query(CommandAttempt).filter(
        CommandAttempt.command_id == command_id
    ).order_by(CommandAttempt.attempt_number).all()


class TestEnqueue:

    def test_enqueue_sets_initial_state(self, test_db: Session, owner_context, test_device, capture_logs):
        device, _ = test_device
        command = enqueue_command(test_db, owner_context, device.id, "LOCATE_NOW", {"high_accuracy": True}, now=T0)

        assert command.status == "pending"
        assert command.attempt_count == 0
        assert command.max_attempts == 3
        assert command.timeout_seconds == 60
        assert command.payload == {"high_accuracy": True}
        assert any(log["event"] == "command.enqueued" for log in capture_logs)

    def test_payload_is_validated_per_type(self, test_db: Session, owner_context, test_device):
        device, _ = test_device
        with pytest.raises(ValidationFailed):
            enqueue_command(test_db, owner_context, device.id, "WIPE", {})
        with pytest.raises(ValidationFailed):
            enqueue_command(test_db, owner_context, device.id, "PING", {"unexpected": 1})
        with pytest.raises(ValidationFailed):
            enqueue_command(test_db, owner_context, device.id, "REBOOT_INTO_RECOVERY", {})
        assert test_db.query(Command).count() == 0

    def test_validate_command_payload_fills_defaults(self):
        assert validate_command_payload("SCREENSHOT", None) == {"max_dimension": 1024}

    def test_unknown_device(self, test_db: Session, owner_context):
        with pytest.raises(NotFound):
            enqueue_command(test_db, owner_context, "missing", "PING")

    def test_maintenance_device_rejects_commands(self, test_db: Session, owner_context, test_device):
        device, _ = test_device
        device.status = "maintenance"
        test_db.commit()
        with pytest.raises(Conflict):
            enqueue_command(test_db, owner_context, device.id, "PING")

    def test_viewer_cannot_enqueue(self, test_db: Session, organization, test_device):
        device, _ = test_device
        viewer = make_user(test_db, "viewer")
        test_db.add(OrganizationMember(organization_id=organization.id, user_id=viewer.id, role="viewer"))
        test_db.commit()
        with pytest.raises(Forbidden):
            enqueue_command(test_db, resolve_user_context(test_db, viewer), device.id, "PING")


class TestDispatch:

    def test_transport_fails_twice_then_succeeds(self, test_db: Session, owner_context, test_device, device_context):
        device, _ = test_device
        transport = FakeTransport(["fail", "fail", "accept"])
        command = enqueue_command(test_db, owner_context, device.id, "PING", now=T0)

        assert run(dispatch_command(test_db, command.id, transport, now=T0)) == "pending"
        # Not due again until the backoff has passed
        assert run(dispatch_command(test_db, command.id, transport, now=T0 + timedelta(seconds=1))) == "pending"
        assert len(transport.sent) == 1

        assert run(dispatch_command(test_db, command.id, transport, now=T0 + timedelta(seconds=5))) == "pending"
        assert run(dispatch_command(test_db, command.id, transport, now=T0 + timedelta(seconds=15))) == "sent"

        completed = report_result(test_db, device_context, command.id, "success", {"pong": True},
                                  now=T0 + timedelta(seconds=16))
        assert completed.status == "success"
        assert completed.attempt_count == 3
        assert completed.result == {"pong": True}
        assert [a.outcome for a in attempts_of(test_db, command.id)] == ["failed", "failed", "accepted"]

    def test_no_report_times_out_after_max_attempts(self, test_db: Session, session_factory, owner_context, test_device):
        device, _ = test_device
        transport = FakeTransport()
        command = enqueue_command(test_db, owner_context, device.id, "PING", now=T0)

        run(dispatch_command(test_db, command.id, transport, now=T0))
        run(sweep_timeouts(session_factory, transport, now=T0 + timedelta(seconds=30)))
        run(sweep_timeouts(session_factory, transport, now=T0 + timedelta(seconds=60)))
        result = run(sweep_timeouts(session_factory, transport, now=T0 + timedelta(seconds=90)))

        assert result["timed_out"] == 1
        test_db.expire_all()
        command = test_db.get(Command, command.id)
        assert command.status == "timeout"
        assert command.attempt_count == 3
        assert len(transport.sent) == 3
        assert [a.outcome for a in attempts_of(test_db, command.id)] == ["accepted"] * 3

    def test_exhausted_transport_failures_fail_the_command(self, test_db: Session, owner_context, test_device, capture_logs):
        device, _ = test_device
        transport = FakeTransport(["fail", "fail", "fail"])
        command = enqueue_command(test_db, owner_context, device.id, "PING", now=T0)

        run(dispatch_command(test_db, command.id, transport, now=T0))
        run(dispatch_command(test_db, command.id, transport, now=T0 + timedelta(seconds=5)))
        status = run(dispatch_command(test_db, command.id, transport, now=T0 + timedelta(seconds=15)))

        assert status == "failed"
        test_db.refresh(command)
        assert command.error == "transport failure: fcm unavailable"
        assert command.attempt_count == 3
        # Never a fourth attempt
        assert run(dispatch_command(test_db, command.id, transport, now=T0 + timedelta(minutes=5))) == "failed"
        assert len(transport.sent) == 3
        assert any(log["event"] == "command.exhausted" for log in capture_logs)

    def test_backoff_never_outruns_the_delivery_window(self, test_db: Session, session_factory, owner_context, test_device):
        device, _ = test_device
        transport = FakeTransport(["fail"] * 10)
        command = enqueue_command(test_db, owner_context, device.id, "PING", max_attempts=10, now=T0)

        now = T0
        for _ in range(20):
            run(sweep_timeouts(session_factory, transport, now=now))
            if run(dispatch_command(test_db, command.id, transport, now=now)) in ("failed", "timeout"):
                break
            test_db.refresh(command)
            now = ensure_utc(command.scheduled_at)

        test_db.expire_all()
        command = test_db.get(Command, command.id)
        assert command.status == "failed"
        assert command.error == "transport failure: fcm unavailable"
        assert command.attempt_count == 10
        assert len(transport.sent) == 10
        assert [a.outcome for a in attempts_of(test_db, command.id)] == ["failed"] * 10

    def test_no_push_address_fails_without_attempt(self, test_db: Session, owner_context, organization):
        device, _ = make_device(test_db, organization, push_address=None)
        transport = FakeTransport()
        command = enqueue_command(test_db, owner_context, device.id, "PING", now=T0)

        assert run(dispatch_command(test_db, command.id, transport, now=T0)) == "failed"
        test_db.refresh(command)
        assert command.error == "no delivery channel"
        assert command.attempt_count == 0
        assert transport.sent == []

    def test_transport_timeout_counts_as_failed_attempt(self, monkeypatch, test_db: Session, owner_context, test_device):
        monkeypatch.setenv("TRANSPORT_TIMEOUT_SECONDS", "0.05")
        device, _ = test_device
        command = enqueue_command(test_db, owner_context, device.id, "PING", now=T0)

        run(dispatch_command(test_db, command.id, FakeTransport(["hang"]), now=T0))

        attempt = attempts_of(test_db, command.id)[0]
        assert attempt.outcome == "failed"
        assert attempt.error == "transport timed out"

    def test_envelope_is_signed(self, monkeypatch, test_db: Session, owner_context, test_device):
        monkeypatch.setenv("HMAC_SECRET", "s3cret")
        device, _ = test_device
        transport = FakeTransport()
        command = enqueue_command(test_db, owner_context, device.id, "LOCK", {"message": "Return to IT"}, now=T0)

        run(dispatch_command(test_db, command.id, transport, now=T0))

        push_address, envelope = transport.sent[0]
        assert push_address == "fcm-token-1"
        assert envelope.to_data()["command_id"] == command.id
        assert verify_envelope(envelope.command_id, envelope.device_id, envelope.type, envelope.ts,
                               envelope.signature, envelope.payload)
        assert not verify_envelope(envelope.command_id, envelope.device_id, "WIPE", envelope.ts,
                                   envelope.signature, envelope.payload)

    def test_retry_keeps_executing_status(self, test_db: Session, session_factory, owner_context, test_device, device_context):
        device, _ = test_device
        transport = FakeTransport()
        command = enqueue_command(test_db, owner_context, device.id, "SYNC_DATA", now=T0)

        run(dispatch_command(test_db, command.id, transport, now=T0))
        assert acknowledge_command(test_db, device_context, command.id, now=T0 + timedelta(seconds=1)).status == "executing"

        run(sweep_timeouts(session_factory, transport, now=T0 + timedelta(seconds=30)))
        test_db.expire_all()
        command = test_db.get(Command, command.id)
        assert command.status == "executing"
        assert command.attempt_count == 2

    def test_undelivered_command_expires(self, test_db: Session, session_factory, owner_context, test_device):
        device, _ = test_device
        command = enqueue_command(test_db, owner_context, device.id, "PING", timeout_seconds=10, now=T0)

        result = run(sweep_timeouts(session_factory, FakeTransport(), now=T0 + timedelta(seconds=10)))

        assert result["expired"] == 1
        test_db.expire_all()
        command = test_db.get(Command, command.id)
        assert command.status == "timeout"
        assert command.error == "expired before delivery"

    def test_dispatch_due_groups_per_device(self, test_db: Session, session_factory, owner_context, organization, test_device):
        first_device, _ = test_device
        second_device, _ = make_device(test_db, organization, push_address="fcm-token-2")
        first = enqueue_command(test_db, owner_context, first_device.id, "PING", now=T0)
        second = enqueue_command(test_db, owner_context, first_device.id, "LOCK", now=T0 + timedelta(seconds=1))
        other = enqueue_command(test_db, owner_context, second_device.id, "PING", now=T0)
        transport = FakeTransport()

        assert run(dispatch_due(session_factory, transport, now=T0 + timedelta(seconds=2))) == 3

        to_first = [envelope.command_id for address, envelope in transport.sent if address == "fcm-token-1"]
        assert to_first == [first.id, second.id]
        test_db.expire_all()
        assert {c.status for c in test_db.query(Command).all()} == {"sent"}
        assert test_db.get(Command, other.id).attempt_count == 1

    def test_retry_backoff_is_capped(self):
        assert retry_backoff(1) == timedelta(seconds=5)
        assert retry_backoff(2) == timedelta(seconds=10)
        assert retry_backoff(20) == timedelta(seconds=300)


class TestDeviceReports:

    def test_duplicate_report_is_a_noop(self, test_db: Session, owner_context, test_device, device_context, capture_logs):
        device, _ = test_device
        command = enqueue_command(test_db, owner_context, device.id, "PING", now=T0)
        run(dispatch_command(test_db, command.id, FakeTransport(), now=T0))

        report_result(test_db, device_context, command.id, "success", now=T0 + timedelta(seconds=2))
        again = report_result(test_db, device_context, command.id, "failed", message="late", now=T0 + timedelta(seconds=3))

        assert again.status == "success"
        assert again.error is None
        assert any(log["event"] == "command.result.duplicate" for log in capture_logs)

    def test_late_report_after_timeout_is_ignored(self, test_db: Session, session_factory, owner_context, test_device, device_context):
        device, _ = test_device
        command = enqueue_command(test_db, owner_context, device.id, "PING", max_attempts=1, now=T0)
        run(dispatch_command(test_db, command.id, FakeTransport(), now=T0))
        run(sweep_timeouts(session_factory, FakeTransport(), now=T0 + timedelta(seconds=30)))

        test_db.expire_all()
        assert report_result(test_db, device_context, command.id, "success").status == "timeout"

    def test_undelivered_command_cannot_be_reported(self, test_db: Session, owner_context, test_device, device_context, capture_logs):
        device, _ = test_device
        command = enqueue_command(test_db, owner_context, device.id, "PING", now=T0)

        with pytest.raises(Conflict):
            report_result(test_db, device_context, command.id, "success", now=T0 + timedelta(seconds=1))
        with pytest.raises(Conflict):
            acknowledge_command(test_db, device_context, command.id, now=T0 + timedelta(seconds=1))

        test_db.refresh(command)
        assert command.status == "pending"
        assert command.completed_at is None
        assert any(log["event"] == "command.report.undelivered" for log in capture_logs)

        cancel_command(test_db, owner_context, command.id)
        assert report_result(test_db, device_context, command.id, "success").status == "cancelled"

    def test_report_after_failed_attempt_is_accepted(self, test_db: Session, owner_context, test_device, device_context):
        device, _ = test_device
        command = enqueue_command(test_db, owner_context, device.id, "PING", now=T0)
        # The push may still have reached the device when the transport errored
        run(dispatch_command(test_db, command.id, FakeTransport(["fail"]), now=T0))

        reported = report_result(test_db, device_context, command.id, "success", now=T0 + timedelta(seconds=2))
        assert reported.status == "success"

    def test_racing_reports_complete_once(self, test_db: Session, session_factory, owner_context, test_device, device_context):
        device, _ = test_device
        command = enqueue_command(test_db, owner_context, device.id, "PING", now=T0)
        run(dispatch_command(test_db, command.id, FakeTransport(), now=T0))

        first, second = session_factory(), session_factory()
        try:
            # Both deliveries of the report load the in-flight command before either commits
            assert first.get(Command, command.id).status == "sent"
            assert second.get(Command, command.id).status == "sent"

            winner = report_result(first, device_context, command.id, "success", now=T0 + timedelta(seconds=2))
            loser = report_result(second, device_context, command.id, "failed", message="late",
                                  now=T0 + timedelta(seconds=2))
            assert (winner.status, loser.status) == ("success", "success")
            assert loser.error is None
        finally:
            first.close()
            second.close()

        completions = test_db.query(DeviceEvent).filter(DeviceEvent.event_type == "COMMAND_COMPLETED").all()
        assert [e.details["status"] for e in completions] == ["success"]

    def test_report_from_other_device_is_not_found(self, test_db: Session, owner_context, organization, test_device):
        device, _ = test_device
        command = enqueue_command(test_db, owner_context, device.id, "PING", now=T0)
        sibling, _ = make_device(test_db, organization)
        with pytest.raises(NotFound):
            report_result(test_db, resolve_device_context(test_db, sibling), command.id, "success")

    def test_failed_report_records_message(self, test_db: Session, owner_context, test_device, device_context):
        device, _ = test_device
        command = enqueue_command(test_db, owner_context, device.id, "INSTALL_APP", {
            "package_name": "com.example.kiosk",
            "download_url": "https://example.com/kiosk.apk"
        }, now=T0)
        run(dispatch_command(test_db, command.id, FakeTransport(), now=T0))

        failed = report_result(test_db, device_context, command.id, "failed", message="insufficient storage",
                               now=T0 + timedelta(seconds=20))
        assert failed.status == "failed"
        assert failed.error == "insufficient storage"
        assert failed.executed_at is not None


class TestCancel:

    def test_cancel_pending_command(self, test_db: Session, owner_context, test_device):
        device, _ = test_device
        transport = FakeTransport()
        command = enqueue_command(test_db, owner_context, device.id, "PING", now=T0)

        assert cancel_command(test_db, owner_context, command.id).status == "cancelled"
        assert cancel_command(test_db, owner_context, command.id).status == "cancelled"
        assert run(dispatch_command(test_db, command.id, transport, now=T0)) == "cancelled"
        assert transport.sent == []

    def test_cannot_cancel_executing_or_finished(self, test_db: Session, owner_context, test_device, device_context):
        device, _ = test_device
        executing = enqueue_command(test_db, owner_context, device.id, "PING", now=T0)
        run(dispatch_command(test_db, executing.id, FakeTransport(), now=T0))
        acknowledge_command(test_db, device_context, executing.id)
        with pytest.raises(Conflict):
            cancel_command(test_db, owner_context, executing.id)

        report_result(test_db, device_context, executing.id, "success")
        with pytest.raises(Conflict):
            cancel_command(test_db, owner_context, executing.id)


class TestQueries:

    def test_get_command_includes_attempts(self, test_db: Session, owner_context, test_device):
        device, _ = test_device
        command = enqueue_command(test_db, owner_context, device.id, "PING", now=T0)
        run(dispatch_command(test_db, command.id, FakeTransport(["fail"]), now=T0))

        fetched, attempts = get_command(test_db, owner_context, command.id)
        assert fetched.id == command.id
        assert [(a.attempt_number, a.outcome, a.error) for a in attempts] == [(1, "failed", "fcm unavailable")]

    def test_list_commands(self, test_db: Session, owner_context, test_device):
        device, _ = test_device
        enqueue_command(test_db, owner_context, device.id, "PING", now=T0)
        cancelled = enqueue_command(test_db, owner_context, device.id, "LOCK", now=T0 + timedelta(seconds=1))
        cancel_command(test_db, owner_context, cancelled.id)

        assert len(list_commands(test_db, owner_context, device_id=device.id)) == 2
        assert [c.id for c in list_commands(test_db, owner_context, status="cancelled")] == [cancelled.id]
        with pytest.raises(NotFound):
            list_commands(test_db, owner_context, device_id="missing")
