"""Error taxonomy shared by every handler.

Each error carries a stable machine-readable `kind` and maps to one HTTP
status; the API renders all of them through the same envelope.
"""

from typing import Any


class LinkPayError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    default_kind = "internal_error"

    def __init__(self, message: str, kind: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind
        self.details = details

    def to_envelope(self) -> dict[str, Any]:
        body: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return {"error": body}


class ValidationError(LinkPayError):
    status_code = 400
    default_kind = "validation_error"


class AuthError(LinkPayError):
    status_code = 401
    default_kind = "unauthorized"


class OwnershipError(LinkPayError):
    status_code = 403
    default_kind = "forbidden"


class NotFoundError(LinkPayError):
    status_code = 404
    default_kind = "not_found"


class StateConflictError(LinkPayError):
    """Illegal transition; `details.currentStatus` names the state that blocked it."""

    status_code = 400
    default_kind = "state_conflict"

    def __init__(self, message: str, current_status: str) -> None:
        super().__init__(message, details={"currentStatus": current_status})
        self.current_status = current_status


class RateLimitError(LinkPayError):
    status_code = 429
    default_kind = "rate_limited"


class InternalError(LinkPayError):
    status_code = 500
    default_kind = "internal_error"
