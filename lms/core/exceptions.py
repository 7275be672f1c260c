"""
Error taxonomy for the leave workflow core.

Every error carries a stable ``code`` the API layer returns verbatim and a
human readable message. ``status_code`` is only consulted by the HTTP layer.
"""
from typing import Any, Dict, Optional


class LeaveError(Exception):
    """Base class for every error raised by the workflow core"""

    code = "error"
    status_code = 400
    default_message = "Leave operation failed"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationFailed(LeaveError):
    """A business rule rejected the request; ``sub_kind`` names the rule"""

    code = "validation_failed"
    default_message = "Leave request failed validation"

    def __init__(self, sub_kind: str, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.sub_kind = sub_kind
        super().__init__(message, details)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["sub_kind"] = self.sub_kind
        return data


class InsufficientBalance(LeaveError):
    code = "insufficient_balance"
    default_message = "Insufficient leave balance for this request"


class NotCurrentApprover(LeaveError):
    code = "not_current_approver"
    status_code = 403
    default_message = "You are not the approver for the current stage"


class AlreadyDecided(LeaveError):
    code = "already_decided"
    status_code = 409
    default_message = "This approval step has already been decided"


class ConflictingUpdate(LeaveError):
    code = "conflicting_update"
    status_code = 409
    default_message = "The request was modified concurrently, reload and retry"


class NotFound(LeaveError):
    code = "not_found"
    status_code = 404
    default_message = "The requested resource was not found"


class Forbidden(LeaveError):
    code = "forbidden"
    status_code = 403
    default_message = "You don't have permission to perform this action"


class InvalidField(LeaveError):
    code = "invalid_field"
    status_code = 422
    default_message = "Invalid field value"

    def __init__(self, field: str, message: Optional[str] = None):
        self.field = field
        super().__init__(message or f"Field '{field}' must not be negative", {"field": field})


class RateLimited(LeaveError):
    code = "rate_limited"
    status_code = 429
    default_message = "Too many requests, slow down"


class InternalError(LeaveError):
    code = "internal_error"
    status_code = 500
    default_message = "Unexpected ledger or storage failure"
