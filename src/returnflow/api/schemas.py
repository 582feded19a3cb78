"""API Schemas - HTTP bodies of the gateway that are not wire envelopes.

Decision and server requests are posted as ``RequestEnvelope`` bodies and
answered with ``ResponseEnvelope``; only errors and probes live here.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Error response body."""
    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Human-readable error message")
    request_id: Optional[str] = Field(default=None, description="Request ID for tracing")
    details: Optional[Dict[str, Any]] = Field(default=None)


class HealthResponse(BaseModel):
    status: str
    service: str


class ReadinessResponse(BaseModel):
    status: str
    service: str
    servers: List[str] = Field(default_factory=list)
    policies_loaded: int = 0


class PolicyInvalidationResponse(BaseModel):
    business_id: str
    notified_sessions: List[str] = Field(
        default_factory=list, description="Subscribed sessions told about the change"
    )
