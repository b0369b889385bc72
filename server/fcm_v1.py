import os
import json
from threading import Lock
from typing import Optional

from google.oauth2 import service_account
import google.auth.transport.requests

SCOPES = ['https://www.googleapis.com/auth/firebase.messaging']

_credentials: Optional[service_account.Credentials] = None
_credentials_lock = Lock()

def _get_service_account_info() -> dict:
    """
    Firebase service account data from either:
    1. FIREBASE_SERVICE_ACCOUNT_JSON (the JSON content itself)
    2. FIREBASE_SERVICE_ACCOUNT_PATH (a file holding it)
    """
    service_account_json = os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON", "")
    if service_account_json:
        try:
            return json.loads(service_account_json)
        except json.JSONDecodeError as e:
            raise ValueError(f"FIREBASE_SERVICE_ACCOUNT_JSON is not valid JSON: {e}")

    service_account_path = os.getenv("FIREBASE_SERVICE_ACCOUNT_PATH", "")
    if service_account_path:
        if not os.path.exists(service_account_path):
            raise FileNotFoundError(f"Service account file not found: {service_account_path}")
        with open(service_account_path, 'r') as f:
            return json.load(f)

    raise ValueError(
        "Firebase credentials not configured. Set FIREBASE_SERVICE_ACCOUNT_JSON "
        "or FIREBASE_SERVICE_ACCOUNT_PATH."
    )

def get_access_token() -> str:
    """
    OAuth token for the FCM v1 API.

    Credentials are built once and only refreshed when google-auth reports the
    token as expired. Blocking; the transport calls it from a worker thread.
    """
    global _credentials
    with _credentials_lock:
        if _credentials is None:
            _credentials = service_account.Credentials.from_service_account_info(
                _get_service_account_info(),
                scopes=SCOPES
            )
        if not _credentials.valid:
            _credentials.refresh(google.auth.transport.requests.Request())
        return _credentials.token

def reset_credentials():
    global _credentials
    with _credentials_lock:
        _credentials = None

def get_firebase_project_id() -> str:
    project_id = _get_service_account_info().get("project_id")

    if not project_id or project_id.strip() == "":
        raise ValueError("Firebase service account data is missing 'project_id' field")

    return project_id

def build_fcm_v1_url(project_id: str) -> str:
    return f"https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"
