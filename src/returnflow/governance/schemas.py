"""Governance schemas - audit log entries and business return policies."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from returnflow.common.constants import PolicyConstants
from returnflow.core.types import system_clock


class AuditEventType(str, Enum):
    """Kinds of lines written to the audit log."""
    DECISION = "decision"
    DECISION_ABORTED = "decision_aborted"
    SYSTEM_EVENT = "system_event"


class AuditEntry(BaseModel):
    """One line of the audit log.

    ``trail`` holds the per-stage entries of a decision in stage order.
    ``previous_hash``/``entry_hash`` are only set when hash chaining is on.
    """
    entry_id: str = Field(default_factory=lambda: f"aud_{uuid4().hex[:12]}")
    timestamp: datetime = Field(default_factory=system_clock)
    event_type: AuditEventType

    decision_id: Optional[str] = None
    business_id: Optional[str] = None
    session_id: Optional[str] = Field(default=None, description="Customer or call session id")

    action: Optional[str] = Field(default=None, description="Final action of the decision")
    confidence_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    requires_human_review: Optional[bool] = None
    trail: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    previous_hash: Optional[str] = None
    entry_hash: Optional[str] = None

    def hash_payload(self) -> Dict[str, Any]:
        """JSON form of the entry without its own hash."""
        return self.model_dump(mode="json", exclude={"entry_hash"})

    def to_jsonl(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_jsonl(cls, line: str) -> "AuditEntry":
        return cls.model_validate_json(line)


class PolicyRules(BaseModel):
    """Return policy rules of one business.

    This is the in-memory representation of the ``rules`` object stored on
    an active policy record. Unknown keys are kept so that optional settings
    (``record_calls``, ``video_bandwidth_limit``...) survive a round trip.
    """
    model_config = {"extra": "allow"}

    return_window_days: int = Field(default=30, ge=0)
    auto_approve_threshold: float = Field(default=100.0, ge=0)
    required_evidence: List[str] = Field(default_factory=list)
    acceptable_reasons: List[str] = Field(default_factory=list)
    high_risk_categories: List[str] = Field(default_factory=list)
    fraud_flags: List[str] = Field(default_factory=list)
    allow_voice_calls: bool = True
    allow_video_calls: bool = True
    max_call_duration: int = Field(
        default=PolicyConstants.DEFAULT_MAX_CALL_DURATION, gt=0, description="Seconds"
    )
    auto_escalation_threshold: float = Field(
        default=PolicyConstants.DEFAULT_AUTO_ESCALATION_THRESHOLD, ge=0
    )
    require_human_review: bool = False
