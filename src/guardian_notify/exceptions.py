"""Exception hierarchy for notification routing.

Every error raised across a component boundary derives from
GuardianNotifyError so callers can catch the whole family at once.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from src.guardian_notify.config import FailureReason, RETRYABLE_REASONS


class ErrorCode(Enum):
    """Stable error codes for callers and audit records."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    CHANNEL_UNAVAILABLE = "CHANNEL_UNAVAILABLE"
    GATEWAY_FAILURE = "GATEWAY_FAILURE"
    GATEWAY_TIMEOUT = "GATEWAY_TIMEOUT"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class GuardianNotifyError(Exception):
    """Base exception for all notification routing errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or []

    def to_dict(self) -> dict:
        return {
            "error_code": self.error_code.value,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(GuardianNotifyError):
    """Malformed event, rule or configuration."""

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        details: Optional[List[Dict[str, Any]]] = None,
    ):
        if field and not details:
            details = [{"field": field, "issue": message}]
        super().__init__(message, ErrorCode.VALIDATION_ERROR, details)


class ChannelUnavailable(GuardianNotifyError):
    """The recipient cannot be reached on a channel. Never retried on it."""

    def __init__(self, message: str = "Channel unavailable", channel: Optional[str] = None):
        details = [{"channel": channel}] if channel else None
        super().__init__(message, ErrorCode.CHANNEL_UNAVAILABLE, details)
        self.channel = channel


class GatewayFailure(GuardianNotifyError):
    """A channel gateway call failed."""

    def __init__(
        self,
        message: str = "Gateway failure",
        reason: FailureReason = FailureReason.PROVIDER_ERROR,
        error_code: ErrorCode = ErrorCode.GATEWAY_FAILURE,
    ):
        super().__init__(message, error_code, [{"reason": reason.value}])
        self.reason = reason

    @property
    def retryable(self) -> bool:
        return self.reason in RETRYABLE_REASONS


class GatewayTimeout(GatewayFailure):
    """The gateway call exceeded its bounded timeout."""

    def __init__(self, message: str = "Gateway call timed out"):
        super().__init__(message, FailureReason.TIMEOUT, ErrorCode.GATEWAY_TIMEOUT)


class PermissionDenied(GuardianNotifyError):
    """The visibility gate refused the action. No state was changed."""

    def __init__(self, message: str = "Permission denied", action: Optional[str] = None):
        details = [{"action": action}] if action else None
        super().__init__(message, ErrorCode.PERMISSION_DENIED, details)
        self.action = action


class ConcurrencyConflict(GuardianNotifyError):
    """A racing update was rejected. Re-read and retry the intent."""

    def __init__(self, message: str = "Concurrent modification", expected: Any = None, actual: Any = None):
        details = None
        if expected is not None or actual is not None:
            details = [{"expected": expected, "actual": actual}]
        super().__init__(message, ErrorCode.CONCURRENCY_CONFLICT, details)


class NotFoundError(GuardianNotifyError):
    def __init__(
        self,
        message: str = "Resource not found",
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ):
        details = None
        if resource_type or resource_id:
            details = [{"resource_type": resource_type, "resource_id": resource_id}]
        super().__init__(message, ErrorCode.RESOURCE_NOT_FOUND, details)


class InvalidStateError(GuardianNotifyError):
    """The requested action is not allowed from the current state."""

    def __init__(self, message: str = "Invalid state for action", state: Optional[str] = None):
        details = [{"state": state}] if state else None
        super().__init__(message, ErrorCode.INVALID_STATE, details)
        self.state = state
