"""Error taxonomy for the lifecycle engine.

Services raise these; the engine facade turns them into ``Outcome`` values.
Each error carries a stable ``code`` and, for authorization denials, a
machine-readable ``reason``.
"""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Stable error codes exposed to callers."""

    FORBIDDEN = "FORBIDDEN"
    INVALID_STATE = "INVALID_STATE"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"
    GATEWAY_REJECTED = "GATEWAY_REJECTED"
    ORPHAN_EVENT = "ORPHAN_EVENT"


class LifecycleError(Exception):
    """Base exception for lifecycle engine errors."""

    code: ErrorCode = ErrorCode.VALIDATION

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.reason = reason

    def to_dict(self) -> dict:
        return {"code": self.code.value, "message": self.message, "reason": self.reason}


class ForbiddenError(LifecycleError):
    """The principal may not perform this action on this entity."""

    code = ErrorCode.FORBIDDEN


class InvalidStateError(LifecycleError):
    """The entity is not in a state that allows the operation."""

    code = ErrorCode.INVALID_STATE


class InvalidTransitionError(LifecycleError):
    """The requested edge is not part of the transition table."""

    code = ErrorCode.INVALID_TRANSITION


class ValidationError(LifecycleError):
    """Malformed input."""

    code = ErrorCode.VALIDATION


class NotFoundError(LifecycleError):
    """A referenced entity does not exist."""

    code = ErrorCode.NOT_FOUND


class ConflictError(LifecycleError):
    """Unique constraint or optimistic concurrency violation."""

    code = ErrorCode.CONFLICT


class GatewayUnavailableError(LifecycleError):
    """Transient payment processor failure (timeouts, network, retries exhausted)."""

    code = ErrorCode.GATEWAY_UNAVAILABLE


class GatewayRejectedError(LifecycleError):
    """The payment processor refused the request. Not retried."""

    code = ErrorCode.GATEWAY_REJECTED


class OrphanEventError(LifecycleError):
    """A gateway event references no known payment."""

    code = ErrorCode.ORPHAN_EVENT
