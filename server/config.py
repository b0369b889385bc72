"""
Environment configuration for the FleetLink server.

Every tunable of the pairing, dispatch and presence engines is read from the
environment here so that the freshness window, retry policy and pairing code
shape can be changed per deployment without code edits.
"""
import json
import os
from typing import Optional


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


class Config:
    """Application configuration read lazily from environment variables"""

    def __init__(self):
        self._is_production: Optional[bool] = None

    @property
    def is_production(self) -> bool:
        if self._is_production is None:
            self._is_production = os.getenv("FLEETLINK_ENV", "development").lower() == "production"
        return self._is_production

    # --- persistence -------------------------------------------------------

    def get_database_url(self) -> str:
        return os.getenv("DATABASE_URL", "sqlite:///./fleetlink.db")

    # --- secrets -----------------------------------------------------------

    def get_jwt_secret(self) -> str:
        return os.getenv("SESSION_SECRET", "dev-secret-change-in-production")

    def get_hmac_secret(self) -> str:
        return os.getenv("HMAC_SECRET", "")

    def has_firebase_credentials(self) -> bool:
        return bool(os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON") or os.getenv("FIREBASE_SERVICE_ACCOUNT_PATH"))

    # --- pairing -----------------------------------------------------------

    @property
    def pairing_code_length(self) -> int:
        return _env_int("PAIRING_CODE_LENGTH", 6)

    @property
    def pairing_default_validity_minutes(self) -> int:
        return _env_int("PAIRING_DEFAULT_VALIDITY_MINUTES", 60)

    @property
    def pairing_submit_max_per_minute(self) -> int:
        """Per-IP cap on code redemptions; codes are short enough to guess."""
        return _env_int("PAIRING_SUBMIT_MAX_PER_MINUTE", 10)

    # --- presence ----------------------------------------------------------

    @property
    def presence_freshness_seconds(self) -> int:
        """
        A device is online while its last heartbeat is younger than this.

        The agent heartbeats every 30 seconds, so the 5 minute default
        tolerates roughly ten lost heartbeats before flipping to offline.
        """
        return _env_int("PRESENCE_FRESHNESS_SECONDS", 300)

    @property
    def presence_inactive_seconds(self) -> int:
        return _env_int("PRESENCE_INACTIVE_SECONDS", 86400)

    @property
    def presence_sweep_interval_seconds(self) -> int:
        return _env_int("PRESENCE_SWEEP_INTERVAL_SECONDS", 60)

    # --- dispatch ----------------------------------------------------------

    @property
    def command_default_max_attempts(self) -> int:
        return _env_int("COMMAND_DEFAULT_MAX_ATTEMPTS", 3)

    @property
    def dispatch_interval_seconds(self) -> float:
        return _env_float("DISPATCH_INTERVAL_SECONDS", 2.0)

    @property
    def sweep_interval_seconds(self) -> float:
        return _env_float("SWEEP_INTERVAL_SECONDS", 5.0)

    @property
    def dispatch_concurrency(self) -> int:
        return _env_int("DISPATCH_CONCURRENCY", 20)

    @property
    def dispatch_batch_size(self) -> int:
        return _env_int("DISPATCH_BATCH_SIZE", 200)

    @property
    def retry_base_seconds(self) -> float:
        return _env_float("DISPATCH_RETRY_BASE_SECONDS", 5.0)

    @property
    def retry_max_seconds(self) -> float:
        return _env_float("DISPATCH_RETRY_MAX_SECONDS", 300.0)

    @property
    def transport_timeout_seconds(self) -> float:
        return _env_float("TRANSPORT_TIMEOUT_SECONDS", 10.0)

    def validate(self) -> tuple[bool, list[str], list[str]]:
        """
        Validate that required configuration is present.

        Returns:
            tuple: (is_valid, list_of_errors, list_of_warnings)
        """
        errors = []
        warnings = []

        jwt_secret = self.get_jwt_secret()
        if jwt_secret == "dev-secret-change-in-production":
            if self.is_production:
                errors.append("SESSION_SECRET using default value - set SESSION_SECRET for production")
            else:
                warnings.append("Using default SESSION_SECRET - set SESSION_SECRET for production")
        elif len(jwt_secret) < 32:
            warnings.append("SESSION_SECRET should be at least 32 characters for security")

        if not self.get_hmac_secret():
            warnings.append("HMAC_SECRET not set - command envelopes will be sent unsigned")

        db_url = self.get_database_url()
        if "sqlite" in db_url.lower():
            if self.is_production:
                warnings.append("SQLite database detected - PostgreSQL required for concurrent dispatch workers")

        firebase_json = os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON")
        if firebase_json:
            try:
                json.loads(firebase_json)
            except json.JSONDecodeError:
                errors.append("FIREBASE_SERVICE_ACCOUNT_JSON is not valid JSON")
        elif not os.getenv("FIREBASE_SERVICE_ACCOUNT_PATH"):
            warnings.append("Firebase credentials not set - commands will fail with transport errors")

        try:
            if not 4 <= self.pairing_code_length <= 12:
                errors.append("PAIRING_CODE_LENGTH must be between 4 and 12")
            if self.presence_freshness_seconds <= 0:
                errors.append("PRESENCE_FRESHNESS_SECONDS must be positive")
            if self.presence_inactive_seconds < self.presence_freshness_seconds:
                errors.append("PRESENCE_INACTIVE_SECONDS must not be shorter than PRESENCE_FRESHNESS_SECONDS")
            if self.command_default_max_attempts < 1:
                errors.append("COMMAND_DEFAULT_MAX_ATTEMPTS must be at least 1")
            if self.dispatch_concurrency < 1:
                errors.append("DISPATCH_CONCURRENCY must be at least 1")
        except ValueError as e:
            errors.append(str(e))

        return (len(errors) == 0, errors, warnings)

    def summary(self) -> dict:
        """Non-secret settings, logged once at startup"""
        return {
            "environment": "production" if self.is_production else "development",
            "database": self.get_database_url().split("@")[-1],
            "firebase": self.has_firebase_credentials(),
            "pairing_code_length": self.pairing_code_length,
            "presence_freshness_seconds": self.presence_freshness_seconds,
            "presence_inactive_seconds": self.presence_inactive_seconds,
            "command_default_max_attempts": self.command_default_max_attempts,
            "dispatch_concurrency": self.dispatch_concurrency,
        }


# Global config instance
config = Config()
