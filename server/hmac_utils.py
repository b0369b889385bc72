import hmac
import hashlib
import json
from typing import Optional

from config import config

def canonical_payload(payload: Optional[dict]) -> str:
    """Compact sorted-key JSON; sent verbatim in the FCM data map and signed as-is"""
    return json.dumps(payload or {}, sort_keys=True, separators=(",", ":"))

def _canonical_message(command_id: str, device_id: str, command_type: str, timestamp: str, payload: Optional[dict]) -> str:
    return f"{command_id}|{device_id}|{command_type}|{timestamp}|{canonical_payload(payload)}"

def sign_envelope(
    command_id: str,
    device_id: str,
    command_type: str,
    timestamp: str,
    payload: Optional[dict] = None,
    secret: Optional[str] = None
) -> Optional[str]:
    """
    HMAC-SHA256 signature for a command envelope.

    Returns None when no HMAC_SECRET is configured; the envelope then goes out
    unsigned and the agent decides whether to accept it.
    """
    secret = secret if secret is not None else config.get_hmac_secret()
    if not secret:
        return None

    message = _canonical_message(command_id, device_id, command_type, timestamp, payload)
    return hmac.new(
        secret.encode('utf-8'),
        message.encode('utf-8'),
        hashlib.sha256
    ).hexdigest()

def verify_envelope(
    command_id: str,
    device_id: str,
    command_type: str,
    timestamp: str,
    provided_signature: str,
    payload: Optional[dict] = None,
    secret: Optional[str] = None
) -> bool:
    expected = sign_envelope(command_id, device_id, command_type, timestamp, payload, secret)
    if expected is None or not provided_signature:
        return False
    return hmac.compare_digest(expected, provided_signature)
