"""Custom exceptions for ReturnFlow.

Every failure a control server can report maps onto one class here. The
``message`` of each class is what ends up in the ``error`` field of a failed
response envelope, and ``code`` is surfaced as ``errorCode`` so callers can
tell backpressure (rate limit, open breaker) apart from business failures.
"""

from typing import Any, Dict, Optional


class ReturnFlowException(Exception):
    """Base exception for all ReturnFlow errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: str = "RETURNFLOW_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(ReturnFlowException):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="CONFIG_ERROR", details=details)


class InvalidRequestError(ReturnFlowException):
    """Raised when a request envelope or its payload fails validation."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="INVALID_REQUEST", details=details)


class RateLimitExceededError(ReturnFlowException):
    """Raised when an agent exceeds its sliding-window request budget."""

    def __init__(self, agent_id: str, details: Optional[Dict[str, Any]] = None):
        details = details or {}
        details["agent_id"] = agent_id
        super().__init__("Rate limit exceeded", code="RATE_LIMIT_EXCEEDED", details=details)


class ServiceUnavailableError(ReturnFlowException):
    """Raised when the circuit breaker for an agent is open."""

    def __init__(self, agent_id: str, details: Optional[Dict[str, Any]] = None):
        details = details or {}
        details["agent_id"] = agent_id
        super().__init__(
            "Service temporarily unavailable",
            code="SERVICE_UNAVAILABLE",
            details=details,
        )


class UpstreamFailureError(ReturnFlowException):
    """Raised when a collaborator (storage, AI capability, sub-server) fails."""

    def __init__(
        self,
        message: str,
        collaborator: str = "unknown",
        details: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details["collaborator"] = collaborator
        super().__init__(message, code="UPSTREAM_FAILURE", details=details)


class StageTimeoutError(UpstreamFailureError):
    """Raised when a decision pipeline stage exceeds its time budget."""

    def __init__(self, stage: str, timeout_seconds: float):
        super().__init__(
            f"Stage timed out after {timeout_seconds:g}s",
            collaborator=stage,
            details={"timeout_seconds": timeout_seconds},
        )
        self.code = "STAGE_TIMEOUT"


class PolicyNotFoundError(ReturnFlowException):
    """Raised when a business has no active return policy."""

    def __init__(self, business_id: str):
        super().__init__(
            "No active policy found",
            code="POLICY_NOT_FOUND",
            details={"business_id": business_id},
        )


class SessionNotFoundError(ReturnFlowException):
    """Raised when a call or conversation id is unknown to the registry."""

    def __init__(self, kind: str, session_id: Optional[str]):
        super().__init__(
            f"{kind.capitalize()} session not found",
            code="SESSION_NOT_FOUND",
            details={"kind": kind, "session_id": session_id},
        )


class AuditError(ReturnFlowException):
    """Raised when audit logging fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="AUDIT_ERROR", details=details)
