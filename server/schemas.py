from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from typing import Any, Literal, Optional
from datetime import datetime


# --- accounts & organizations ----------------------------------------------

class UserRegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=50, pattern="^[a-zA-Z0-9_-]+$")
    password: str = Field(..., min_length=8, max_length=200)
    email: Optional[str] = Field(None, max_length=255)

    @field_validator('email')
    @classmethod
    def validate_email(cls, v):
        if v and '@' not in v:
            raise ValueError('Invalid email format')
        return v

class UserLoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=50)
    password: str = Field(..., min_length=1, max_length=200)

class OrganizationCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    slug: str = Field(..., min_length=2, max_length=64, pattern="^[a-z0-9-]+$")
    max_devices: int = Field(100, ge=1, le=100000)
    max_users: int = Field(10, ge=1, le=10000)

class OrganizationSummary(BaseModel):
    id: int
    name: str
    slug: str
    status: str
    max_devices: int
    max_users: int
    role: Optional[str] = None
    permissions: list[str] = []

class MemberAddRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=50)
    role: Literal["admin", "operator", "viewer"] = "viewer"


# --- pairing ----------------------------------------------------------------

class IssueCodeRequest(BaseModel):
    description: Optional[str] = Field(None, max_length=500)
    # 6 minutes to 24 hours
    validity_minutes: Optional[int] = Field(None, ge=6, le=1440)

class IssueCodeResponse(BaseModel):
    registration_id: int
    pairing_code: str
    expires_at: datetime

class DeviceDescriptor(BaseModel):
    model: str = Field(..., min_length=1, max_length=200)
    name: Optional[str] = Field(None, max_length=200)
    manufacturer: Optional[str] = Field(None, max_length=200)
    os_version: Optional[str] = Field(None, max_length=50)
    hardware_id: Optional[str] = Field(None, max_length=200)
    push_address: Optional[str] = Field(None, max_length=500)
    extras: dict[str, Any] = Field(default_factory=dict)

class SubmitRegistrationRequest(BaseModel):
    pairing_code: str = Field(..., min_length=1, max_length=32)
    descriptor: DeviceDescriptor

class SubmitRegistrationResponse(BaseModel):
    registration_id: int
    device_token: str
    expires_at: datetime

class RejectRegistrationRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)

class ApproveRegistrationResponse(BaseModel):
    device_id: str
    registration_id: int

class RegistrationSummary(BaseModel):
    id: int
    organization_id: int
    pairing_code: str
    description: Optional[str] = None
    status: str
    device_descriptor: Optional[dict] = None
    created_at: datetime
    submitted_at: Optional[datetime] = None
    expires_at: datetime
    approved_by: Optional[int] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    device_id: Optional[str] = None

class PairingStatusResponse(BaseModel):
    registration_id: int
    status: str
    device_id: Optional[str] = None
    organization_id: Optional[int] = None


# --- devices & presence -------------------------------------------------------

class PresenceStatus(BaseModel):
    status: str
    last_seen: Optional[datetime] = None

class DeviceSummary(BaseModel):
    id: str
    organization_id: int
    display_name: str
    status: str
    last_seen: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None
    has_push_address: bool
    model: Optional[str] = None
    manufacturer: Optional[str] = None
    os_version: Optional[str] = None
    owner_name: Optional[str] = None
    owner_email: Optional[str] = None
    battery_level: Optional[int] = None
    created_at: datetime

class DeviceUpdateRequest(BaseModel):
    display_name: Optional[str] = Field(None, min_length=1, max_length=200)
    owner_name: Optional[str] = Field(None, max_length=200)
    owner_email: Optional[str] = Field(None, max_length=255)
    maintenance: Optional[bool] = None

class DeviceEventSummary(BaseModel):
    id: int
    event_type: str
    timestamp: datetime
    details: Optional[dict[str, Any]] = None

class LocationSample(BaseModel):
    lat: float
    lng: float
    accuracy: Optional[float] = None
    captured_at: datetime
    received_at: datetime

class Location(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = Field(None, ge=0)

class HeartbeatPayload(BaseModel):
    device_id: str = Field(..., min_length=1, max_length=100)
    organization_id: int
    battery_level: Optional[int] = Field(None, ge=0, le=100)
    battery_status: Optional[str] = Field(None, max_length=50)
    network_info: Optional[dict[str, Any]] = None
    location: Optional[Location] = None
    push_address: Optional[str] = Field(None, max_length=500)
    captured_at: Optional[datetime] = None


# --- commands -----------------------------------------------------------------

class CommandType(str, Enum):
    PING = "PING"
    LOCATE_NOW = "LOCATE_NOW"
    LOCK = "LOCK"
    UNLOCK = "UNLOCK"
    WIPE = "WIPE"
    SCREENSHOT = "SCREENSHOT"
    INSTALL_APP = "INSTALL_APP"
    UNINSTALL_APP = "UNINSTALL_APP"
    SYNC_DATA = "SYNC_DATA"
    OPEN_ACTIVITY = "OPEN_ACTIVITY"

class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")

class PingPayload(_Payload):
    pass

class LocateNowPayload(_Payload):
    high_accuracy: bool = False

class LockPayload(_Payload):
    message: Optional[str] = Field(None, max_length=500)

class UnlockPayload(_Payload):
    pass

class WipePayload(_Payload):
    confirm: Literal[True]
    wipe_external_storage: bool = False

class ScreenshotPayload(_Payload):
    max_dimension: int = Field(1024, ge=64, le=2048)

class InstallAppPayload(_Payload):
    package_name: str = Field(..., min_length=1, max_length=200)
    download_url: str = Field(..., min_length=1, max_length=2000)
    version_code: Optional[int] = None

class UninstallAppPayload(_Payload):
    package_name: str = Field(..., min_length=1, max_length=200)

class SyncDataPayload(_Payload):
    scopes: list[Literal["policies", "apps", "settings", "location"]] = Field(default_factory=lambda: ["policies"])

class OpenActivityPayload(_Payload):
    package_name: str = Field(..., min_length=1, max_length=200)
    activity: Optional[str] = Field(None, max_length=300)

COMMAND_PAYLOAD_MODELS: dict[CommandType, type[_Payload]] = {
    CommandType.PING: PingPayload,
    CommandType.LOCATE_NOW: LocateNowPayload,
    CommandType.LOCK: LockPayload,
    CommandType.UNLOCK: UnlockPayload,
    CommandType.WIPE: WipePayload,
    CommandType.SCREENSHOT: ScreenshotPayload,
    CommandType.INSTALL_APP: InstallAppPayload,
    CommandType.UNINSTALL_APP: UninstallAppPayload,
    CommandType.SYNC_DATA: SyncDataPayload,
    CommandType.OPEN_ACTIVITY: OpenActivityPayload,
}

# Seconds; the agent needs a GPS fix for LOCATE_NOW
COMMAND_DEFAULT_TIMEOUTS: dict[CommandType, int] = {
    CommandType.LOCATE_NOW: 60,
    CommandType.SCREENSHOT: 15,
}
DEFAULT_COMMAND_TIMEOUT = 30

def parse_command_payload(command_type: CommandType, payload: Optional[dict]) -> dict:
    """Validate a payload against its command type. Raises pydantic.ValidationError."""
    model = COMMAND_PAYLOAD_MODELS[command_type]
    return model.model_validate(payload or {}).model_dump()

class EnqueueCommandRequest(BaseModel):
    type: CommandType
    payload: dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: Optional[int] = Field(None, ge=1, le=86400)
    max_attempts: Optional[int] = Field(None, ge=1, le=10)

    @model_validator(mode="after")
    def check_payload(self):
        try:
            self.payload = parse_command_payload(self.type, self.payload)
        except ValidationError as e:
            problems = "; ".join(f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}" for err in e.errors())
            raise ValueError(f"Invalid {self.type.value} payload: {problems}")
        return self

class CommandAttemptSummary(BaseModel):
    attempt_number: int
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcome: str
    error: Optional[str] = None
    latency_ms: Optional[int] = None

class CommandSummary(BaseModel):
    id: str
    organization_id: int
    device_id: str
    type: str
    payload: Optional[dict] = None
    status: str
    attempt_count: int
    max_attempts: int
    error: Optional[str] = None
    result: Optional[dict] = None
    created_at: datetime
    scheduled_at: datetime
    sent_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: datetime
    attempts: Optional[list[CommandAttemptSummary]] = None

class CommandResultRequest(BaseModel):
    outcome: Literal["success", "failed"]
    result_payload: Optional[dict[str, Any]] = None
    message: Optional[str] = Field(None, max_length=1000)

class AckResponse(BaseModel):
    ok: bool
    status: str
