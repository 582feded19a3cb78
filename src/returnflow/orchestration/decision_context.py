"""Decision Context - the record threaded through the decision pipeline.

One context is built per top-level decision request. Each stage fills in
exactly one field through a ``with_*`` method, which returns a new context;
the context itself is never mutated.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional
from uuid import uuid4

from returnflow.control.envelope import RequestEnvelope
from returnflow.core.types import Clock, system_clock


class Stage(str, Enum):
    """Pipeline stages, in execution order."""
    DATA_COLLECTION = "data_collection"
    POLICY_VALIDATION = "policy_validation"
    AI_ANALYSIS = "ai_analysis"
    ACTION_EXECUTION = "action_execution"


def _frozen(data: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(data or {}))


@dataclass(frozen=True)
class StageResult:
    """Outcome of one stage."""
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    error_code: Optional[str] = None

    @classmethod
    def failed(cls, *errors: str, error_code: Optional[str] = None, **metadata: Any) -> "StageResult":
        return cls(success=False, errors=list(errors), metadata=metadata, error_code=error_code)


@dataclass(frozen=True)
class DecisionContext:
    """Everything known about one decision request.

    Lifecycle:
    1. Created from the inbound envelope (raw data only)
    2. Enriched with customer history and call state
    3. Given the active policy and its validation
    4. Given the AI analysis and combined decision
    5. Finalized with the executed decision
    """
    decision_id: str
    created_at: datetime
    business_id: str
    user_role: str
    raw_data: Mapping[str, Any]
    session_id: Optional[str] = None
    call_session_id: Optional[str] = None
    request_id: Optional[str] = None
    is_call_interaction: bool = False
    enriched_data: Mapping[str, Any] = field(default_factory=lambda: _frozen(None))
    policy_data: Mapping[str, Any] = field(default_factory=lambda: _frozen(None))
    ai_analysis: Mapping[str, Any] = field(default_factory=lambda: _frozen(None))
    final_decision: Mapping[str, Any] = field(default_factory=lambda: _frozen(None))

    @classmethod
    def create(cls, envelope: RequestEnvelope, clock: Clock = system_clock) -> "DecisionContext":
        """Factory method building the context of a fresh decision request."""
        context = envelope.context
        raw = envelope.data
        call_session_id = context.call_session_id or raw.get("callSessionId")
        return cls(
            decision_id=f"dec_{uuid4().hex[:12]}",
            created_at=clock(),
            business_id=envelope.business_id,
            user_role=context.user_role,
            raw_data=_frozen(raw),
            session_id=context.session_id,
            call_session_id=call_session_id,
            request_id=context.request_id or envelope.id,
            is_call_interaction=bool(
                call_session_id or context.is_call_interaction or raw.get("isCallInteraction")
            ),
        )

    def with_enriched_data(self, data: Mapping[str, Any]) -> "DecisionContext":
        return replace(self, enriched_data=_frozen(data))

    def with_policy_data(self, data: Mapping[str, Any]) -> "DecisionContext":
        return replace(self, policy_data=_frozen(data))

    def with_ai_analysis(self, data: Mapping[str, Any]) -> "DecisionContext":
        return replace(self, ai_analysis=_frozen(data))

    def with_final_decision(self, data: Mapping[str, Any]) -> "DecisionContext":
        return replace(self, final_decision=_frozen(data))
