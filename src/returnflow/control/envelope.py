"""Wire models for the internal control-server RPC protocol.

Field names are snake_case in Python and camelCase on the wire; every model
accepts either form on input and dumps camelCase via ``to_wire()``.
"""

from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from returnflow.core.types import CallProvider, CallType, UserRole, isoformat, system_clock


def _now_iso() -> str:
    return isoformat(system_clock())


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        """Dump as the camelCase JSON shape exchanged between servers."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class RequestContext(_WireModel):
    """Caller context attached to every request."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    session_id: Optional[str] = Field(default=None, alias="sessionId")
    request_id: Optional[str] = Field(default=None, alias="requestId")
    user_role: str = Field(default=UserRole.CUSTOMER.value, alias="userRole")
    call_session_id: Optional[str] = Field(default=None, alias="callSessionId")
    call_type: Optional[CallType] = Field(default=None, alias="callType")
    provider: Optional[CallProvider] = Field(default=None)
    is_call_interaction: bool = Field(default=False, alias="isCallInteraction")
    streaming_enabled: Optional[bool] = Field(default=None, alias="streamingEnabled")


class RequestEnvelope(_WireModel):
    """One logical operation addressed to a control server.

    Identity fields default to empty strings so that a malformed envelope
    still reaches the gate and is rejected there with a response envelope,
    instead of failing at parse time.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(default="", description="Caller-assigned request id")
    timestamp: str = Field(default_factory=_now_iso, description="ISO 8601 creation time")
    agent_id: str = Field(default="", alias="agentId", description="Calling agent")
    business_id: str = Field(default="", alias="businessId", description="Tenant")
    action: str = Field(default="", description="Action name from the server allow-list")
    data: Dict[str, Any] = Field(default_factory=dict)
    context: RequestContext = Field(default_factory=RequestContext)

    @classmethod
    def create(
        cls,
        agent_id: str,
        business_id: str,
        action: str,
        data: Optional[Dict[str, Any]] = None,
        **context: Any,
    ) -> "RequestEnvelope":
        """Build a fresh envelope with a generated id."""
        return cls(
            id=str(uuid4()),
            agent_id=agent_id,
            business_id=business_id,
            action=action,
            data=data or {},
            context=RequestContext(**context),
        )


class AuditTrail(_WireModel):
    """Per-response audit record."""

    request_id: str = Field(default="", alias="requestId")
    agent_id: str = Field(default="", alias="agentId")
    business_id: str = Field(default="", alias="businessId")
    action: str = Field(default="")
    duration: float = Field(default=0.0, ge=0, description="Milliseconds spent in the handler")
    security_flags: List[str] = Field(default_factory=list, alias="securityFlags")
    call_session_id: Optional[str] = Field(default=None, alias="callSessionId")
    call_type: Optional[CallType] = Field(default=None, alias="callType")
    provider: Optional[CallProvider] = Field(default=None)


class ResponseEnvelope(_WireModel):
    """Result of exactly one request, success or failure."""

    id: str
    timestamp: str = Field(default_factory=_now_iso)
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = Field(default=None, alias="errorCode")
    audit_trail: AuditTrail = Field(default_factory=AuditTrail, alias="auditTrail")
