"""
Domain error taxonomy shared by the pairing, dispatch and presence engines.

Core modules raise these instead of HTTPException so they stay usable from
background workers; main.py renders them as JSON responses.
"""
from typing import Optional


class DomainError(Exception):
    status_code = 400
    code = "bad_request"

    def __init__(self, message: Optional[str] = None, **details):
        self.message = message or self.default_message()
        self.details = details
        super().__init__(self.message)

    @classmethod
    def default_message(cls) -> str:
        return cls.code.replace("_", " ")

    def to_dict(self) -> dict:
        body = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationFailed(DomainError):
    status_code = 422
    code = "validation_failed"


class Unauthorized(DomainError):
    status_code = 401
    code = "unauthorized"


class Forbidden(DomainError):
    status_code = 403
    code = "forbidden"


class NotFound(DomainError):
    """Absent, or owned by another organization. The two are not distinguished."""
    status_code = 404
    code = "not_found"


class Expired(DomainError):
    status_code = 410
    code = "expired"


class Conflict(DomainError):
    status_code = 409
    code = "conflict"


class LimitExceeded(DomainError):
    status_code = 403
    code = "limit_exceeded"


class TransportFailure(DomainError):
    """Push channel rejected or errored. Absorbed by the dispatcher retry loop."""
    status_code = 502
    code = "transport_failure"
