"""
Push notification transport used by the command dispatcher.

A transport hands one command envelope to the push channel and either returns
a receipt or raises TransportFailure. It never touches the database.
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Protocol

import httpx
from google.auth.exceptions import GoogleAuthError

from config import Config, config as default_config
from errors import TransportFailure
from fcm_v1 import build_fcm_v1_url, get_access_token, get_firebase_project_id
from hmac_utils import canonical_payload, sign_envelope
from observability import structured_logger, metrics


@dataclass
class TransportReceipt:
    message_id: Optional[str] = None
    latency_ms: Optional[int] = None


@dataclass
class CommandEnvelope:
    command_id: str
    device_id: str
    organization_id: int
    type: str
    payload: dict = field(default_factory=dict)
    ts: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    signature: Optional[str] = None

    def sign(self, secret: Optional[str] = None) -> "CommandEnvelope":
        self.signature = sign_envelope(self.command_id, self.device_id, self.type, self.ts, self.payload, secret)
        return self

    def to_data(self) -> dict[str, str]:
        """FCM data messages only carry string values"""
        data = {
            "action": "command",
            "command_id": self.command_id,
            "device_id": self.device_id,
            "organization_id": str(self.organization_id),
            "type": self.type,
            "payload": canonical_payload(self.payload),
            "ts": self.ts,
        }
        if self.signature:
            data["hmac"] = self.signature
        return data


class NotificationTransport(Protocol):
    async def send(self, push_address: str, envelope: CommandEnvelope) -> TransportReceipt:
        ...


class FcmTransport:
    """FCM v1 HTTP API over a shared httpx.AsyncClient"""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, project_id: Optional[str] = None, timeout: float = 10.0):
        self._client = client
        self._owns_client = client is None
        self._project_id = project_id
        self.timeout = timeout

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def send(self, push_address: str, envelope: CommandEnvelope) -> TransportReceipt:
        try:
            access_token = await asyncio.to_thread(get_access_token)
            project_id = self._project_id or get_firebase_project_id()
        except (ValueError, OSError, GoogleAuthError) as e:
            raise TransportFailure(f"FCM authentication failed: {e}")

        message = {
            "message": {
                "token": push_address,
                "data": envelope.to_data(),
                "android": {
                    "priority": "high"
                }
            }
        }
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json"
        }

        client = await self._get_client()
        fcm_start_time = time.time()
        try:
            response = await client.post(build_fcm_v1_url(project_id), json=message, headers=headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            metrics.inc_counter("fcm_requests_total", {"result": "error"})
            raise TransportFailure(f"FCM request failed: {e.__class__.__name__}")

        latency_ms = int((time.time() - fcm_start_time) * 1000)
        metrics.observe_histogram("fcm_latency_ms", latency_ms)

        if response.status_code != 200:
            metrics.inc_counter("fcm_requests_total", {"result": str(response.status_code)})
            structured_logger.log_event(
                "transport.fcm.rejected",
                level="WARN",
                command_id=envelope.command_id,
                device_id=envelope.device_id,
                http_code=response.status_code,
                response=response.text[:500] if response.text else None
            )
            raise TransportFailure(f"FCM error: {response.status_code}")

        metrics.inc_counter("fcm_requests_total", {"result": "200"})
        # FCM accepted the message; an unreadable body only costs us the message id
        try:
            body = response.json()
        except ValueError:
            body = None
        message_id = body.get("name") if isinstance(body, dict) else None
        if message_id is None:
            structured_logger.log_event(
                "transport.fcm.no_message_id",
                level="WARN",
                command_id=envelope.command_id,
                device_id=envelope.device_id,
                response=response.text[:500] if response.text else None
            )
        return TransportReceipt(message_id=message_id, latency_ms=latency_ms)


class LoggingTransport:
    """Stand-in when no push credentials are configured; every send fails."""

    async def send(self, push_address: str, envelope: CommandEnvelope) -> TransportReceipt:
        structured_logger.log_event(
            "transport.unconfigured",
            level="WARN",
            command_id=envelope.command_id,
            device_id=envelope.device_id,
            type=envelope.type
        )
        raise TransportFailure("push transport not configured")


def build_transport(cfg: Config = default_config) -> NotificationTransport:
    if cfg.has_firebase_credentials():
        return FcmTransport(timeout=cfg.transport_timeout_seconds)
    return LoggingTransport()
