"""
Principals: operators authenticate with a JWT, devices with the opaque
credential handed out when their pairing code was redeemed.
"""
import bcrypt
import secrets
import jwt
import hashlib
import time
from datetime import datetime, timezone, timedelta
from fastapi import Depends, Request, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import Optional

from config import config
from errors import Unauthorized
from models import Device, User, get_db
from observability import structured_logger, metrics

security = HTTPBearer(auto_error=False)

JWT_ALGORITHM = "HS256"
JWT_TTL = timedelta(days=7)


def _bcrypt(secret: str) -> str:
    return bcrypt.hashpw(secret.encode(), bcrypt.gensalt()).decode()

def _bcrypt_matches(secret: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(secret.encode(), hashed.encode())
    except ValueError:
        # Malformed or foreign hash
        return False

hash_token = _bcrypt
verify_token = _bcrypt_matches
hash_password = _bcrypt
verify_password = _bcrypt_matches

def compute_token_id(token: str) -> str:
    """Indexed lookup key; the bcrypt hash is checked after the row is found"""
    return hashlib.sha256(token.encode()).hexdigest()

def generate_device_token() -> str:
    return secrets.token_urlsafe(32)


def create_jwt_token(user_id: int, username: str) -> str:
    issued = datetime.now(timezone.utc)
    claims = {
        "sub": str(user_id),
        "username": username,
        "iat": issued,
        "exp": issued + JWT_TTL,
    }
    return jwt.encode(claims, config.get_jwt_secret(), algorithm=JWT_ALGORITHM)

def decode_jwt_token(token: str) -> dict:
    try:
        return jwt.decode(token, config.get_jwt_secret(), algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Session expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid session token")

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security),
    db: Session = Depends(get_db)
) -> User:
    if credentials is None:
        raise Unauthorized("Not authenticated")

    claims = decode_jwt_token(credentials.credentials)
    try:
        user_id = int(claims["sub"])
    except (KeyError, ValueError):
        raise Unauthorized("Invalid session token")

    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise Unauthorized("User not found")
    return user


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"

def lookup_device_by_token(db: Session, token: str) -> Optional[Device]:
    device = db.query(Device).filter(Device.token_id == compute_token_id(token)).first()
    if device is not None and verify_token(token, device.token_hash):
        return device
    return None

def _reject_device(reason: str, client_ip: str, **fields) -> Unauthorized:
    metrics.inc_counter("device_auth_failures_total", {"reason": reason})
    structured_logger.log_event("auth.device_token.failed", level="WARN", reason=reason, client_ip=client_ip, **fields)
    return Unauthorized("Missing authorization header" if reason == "missing_header" else "Invalid device token")

async def verify_device_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security),
    db: Session = Depends(get_db)
) -> Device:
    started = time.perf_counter()
    client_ip = _client_ip(request)

    if credentials is None:
        raise _reject_device("missing_header", client_ip)

    device = lookup_device_by_token(db, credentials.credentials)
    if device is None:
        raise _reject_device("token_not_found", client_ip, token_id_prefix=compute_token_id(credentials.credentials)[:8])

    metrics.observe_histogram("device_auth_latency_ms", (time.perf_counter() - started) * 1000)
    return device
