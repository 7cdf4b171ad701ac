"""Error types raised by the agora core."""

from __future__ import annotations

from typing import Any, Dict, Optional


class AgoraError(RuntimeError):
    """Structured agora error."""

    code = "agora_error"

    def __init__(self, message: str, code: Optional[str] = None, **details: Any):
        self.message = str(message)
        if code is not None:
            self.code = str(code)
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            data["details"] = dict(self.details)
        return data


class ValidationError(AgoraError):
    """Malformed or missing payload fields. Raised before any state change."""

    code = "validation_error"


class PermissionDenied(AgoraError):
    code = "permission_denied"


class InteractionTimeout(AgoraError):
    code = "timeout"


class RateLimited(AgoraError):
    """A backend call was throttled. Retryable."""

    code = "rate_limited"

    def __init__(self, message: str = "Rate limited", retry_after: Optional[float] = None, **details: Any):
        self.retry_after = retry_after
        super().__init__(message, **details)


class NotFound(AgoraError):
    code = "not_found"


class AgentNotFound(NotFound):
    code = "agent_not_found"


class InvariantViolation(AgoraError):
    """Security-relevant invariant breach. Never coerced."""

    code = "invariant_violation"


class SelfDelegation(InvariantViolation):
    code = "self_delegation"


class DelegationDepthExceeded(InvariantViolation):
    code = "delegation_depth_exceeded"


class NotAParticipant(InvariantViolation):
    code = "not_a_participant"


class MissingCredentials(AgoraError):
    code = "missing_credentials"


class StorageError(AgoraError):
    """Storage unavailable or rejected the write. Aborts the enclosing operation."""

    code = "storage_error"
