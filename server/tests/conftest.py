"""
Pytest configuration and shared fixtures.
"""
import asyncio
import pytest
import os
import sys
from datetime import datetime, timezone, timedelta
from typing import Generator, Dict
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from models import Base, get_db, User, Device, Organization, OrganizationMember
from main import app
from auth import hash_password, hash_token, generate_device_token, compute_token_id
from errors import TransportFailure
from rate_limiter import pairing_rate_limiter
from tenancy import TenantContext, resolve_device_context, resolve_user_context
from transport import TransportReceipt

T0 = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


class FakeTransport:
    """
    Records every send. Outcomes are consumed in order: "accept", "fail" or
    "hang"; once exhausted every send is accepted.
    """

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.sent = []

    async def send(self, push_address, envelope):
        self.sent.append((push_address, envelope))
        outcome = self.outcomes.pop(0) if self.outcomes else "accept"
        if outcome == "fail":
            raise TransportFailure("fcm unavailable")
        if outcome == "hang":
            await asyncio.sleep(3600)
        return TransportReceipt(message_id=f"projects/test/messages/{len(self.sent)}", latency_ms=1)


@pytest.fixture(scope="function")
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def test_db(session_factory) -> Generator[Session, None, None]:
    """
    Clean in-memory SQLite database for each test.
    """
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def client(test_db: Session) -> TestClient:
    """
    Test client with the database dependency overridden. Startup hooks do not
    run, so no background workers are started.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    client = TestClient(app)
    yield client

    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    pairing_rate_limiter.reset()
    yield
    pairing_rate_limiter.reset()


def make_user(db: Session, username: str, password: str = "correct-horse") -> User:
    user = User(username=username, email=f"{username}@test.com", password_hash=hash_password(password))
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_organization(db: Session, owner: User, slug: str, max_devices: int = 100, role: str = "owner") -> Organization:
    org = Organization(name=slug.title(), slug=slug, status="active", max_devices=max_devices, max_users=10)
    db.add(org)
    db.flush()
    db.add(OrganizationMember(organization_id=org.id, user_id=owner.id, role=role, status="active"))
    db.commit()
    db.refresh(org)
    return org


def make_device(db: Session, org: Organization, push_address: str = "fcm-token-1", **fields) -> tuple[Device, str]:
    raw_token = generate_device_token()
    device = Device(
        organization_id=org.id,
        display_name=fields.pop("display_name", "Pixel 8"),
        status=fields.pop("status", "offline"),
        push_address=push_address,
        model="Pixel 8",
        token_hash=hash_token(raw_token),
        token_id=compute_token_id(raw_token),
        **fields
    )
    db.add(device)
    db.commit()
    db.refresh(device)
    return device, raw_token


@pytest.fixture(scope="function")
def owner(test_db: Session) -> User:
    return make_user(test_db, "acme_owner")


@pytest.fixture(scope="function")
def organization(test_db: Session, owner: User) -> Organization:
    return make_organization(test_db, owner, "acme")


@pytest.fixture(scope="function")
def owner_context(test_db: Session, owner: User, organization: Organization) -> TenantContext:
    return resolve_user_context(test_db, owner, organization.id)


@pytest.fixture(scope="function")
def owner_auth(client: TestClient, owner: User, organization: Organization) -> Dict[str, str]:
    response = client.post("/api/auth/login", json={
        "username": "acme_owner",
        "password": "correct-horse"
    })
    assert response.status_code == 200
    token = response.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="function")
def test_device(test_db: Session, organization: Organization) -> tuple[Device, str]:
    """
    A paired device with a push address. Returns: (device, raw_token)
    """
    return make_device(test_db, organization)


@pytest.fixture(scope="function")
def device_context(test_db: Session, test_device) -> TenantContext:
    device, _ = test_device
    return resolve_device_context(test_db, device)


@pytest.fixture(scope="function")
def device_auth(test_device: tuple[Device, str]) -> Dict[str, str]:
    _, raw_token = test_device
    return {"Authorization": f"Bearer {raw_token}"}


@pytest.fixture(scope="function")
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture(scope="function")
def capture_logs(monkeypatch):
    """
    Capture structured logs emitted during tests.
    """
    logs = []

    from observability import StructuredLogger

    original_log_event = StructuredLogger.log_event

    def capture_log_event(self, event: str, level: str = "INFO", **fields):
        logs.append({
            "event": event,
            "level": level,
            **fields
        })
        original_log_event(self, event, level, **fields)

    monkeypatch.setattr(StructuredLogger, "log_event", capture_log_event)

    return logs


@pytest.fixture(scope="function")
def capture_metrics(monkeypatch):
    """
    Capture counters emitted during tests.
    """
    counters = []

    from observability import MetricsCollector

    original_inc_counter = MetricsCollector.inc_counter

    def capture_counter(self, metric_name: str, labels=None, value: int = 1):
        counters.append({
            "name": metric_name,
            "labels": labels or {},
            "value": value
        })
        original_inc_counter(self, metric_name, labels, value)

    monkeypatch.setattr(MetricsCollector, "inc_counter", capture_counter)

    return counters
