"""Inputs and outputs of the external AI capabilities.

The decision engine never trusts a capability's raw output: everything is
passed through ``normalize_*`` first, which maps anything unknown, missing
or malformed onto ``human_review``.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from returnflow.common.constants import DecisionConstants
from returnflow.core.types import TriageVerdict

logger = logging.getLogger(__name__)


class TriageInput(BaseModel):
    """Facts about one return request handed to the triage capability."""
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId")
    customer_email: Optional[str] = Field(default=None, alias="customerEmail")
    reason: str
    order_value: float = Field(default=0.0, alias="orderValue")
    days_since_purchase: float = Field(default=0.0, alias="daysSincePurchase")
    evidence_urls: List[str] = Field(default_factory=list, alias="evidenceUrls")
    customer_risk_score: float = Field(
        default=DecisionConstants.DEFAULT_CUSTOMER_RISK, alias="customerRiskScore"
    )
    return_history: int = Field(default=0, alias="returnHistory")
    product_category: str = Field(default="general", alias="productCategory")


class TriageResult(BaseModel):
    """Raw triage verdict as produced by a capability."""
    model_config = ConfigDict(populate_by_name=True)

    decision: Optional[str] = None
    confidence: Optional[float] = None
    reasoning: Optional[str] = None
    risk_factors: List[str] = Field(default_factory=list, alias="riskFactors")
    policy_violations: List[str] = Field(default_factory=list, alias="policyViolations")
    next_steps: List[str] = Field(default_factory=list, alias="nextSteps")

    @classmethod
    def fallback(cls, reasoning: str, confidence: float, risk_factor: str) -> "TriageResult":
        """A human_review verdict used whenever the capability cannot be trusted."""
        return cls(
            decision=TriageVerdict.HUMAN_REVIEW.value,
            confidence=confidence,
            reasoning=reasoning,
            risk_factors=[risk_factor],
            next_steps=["Manual review required"],
        )


class ConversationalReply(BaseModel):
    """Reply of the conversational capability to one in-call message."""

    success: bool = True
    message: str = ""
    data: Optional[Dict[str, Any]] = None


class AIAnalysis(BaseModel):
    """Normalized AI output consumed by the decision engine."""

    decision: TriageVerdict
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str
    source: str = Field(..., description="'triage' or 'conversational'")
    details: Dict[str, Any] = Field(default_factory=dict)


_NEXT_ACTION_VERDICTS = {
    "auto_approve": TriageVerdict.AUTO_APPROVE,
    "approve": TriageVerdict.AUTO_APPROVE,
    "create_return_request": TriageVerdict.AUTO_APPROVE,
    "auto_deny": TriageVerdict.AUTO_DENY,
    "deny": TriageVerdict.AUTO_DENY,
    "human_review": TriageVerdict.HUMAN_REVIEW,
    "escalate": TriageVerdict.HUMAN_REVIEW,
}


def _verdict(value: Any) -> TriageVerdict:
    try:
        return TriageVerdict(str(value).lower())
    except ValueError:
        if value is not None:
            logger.warning("Unknown AI decision %r, routing to human review", value)
        return TriageVerdict.HUMAN_REVIEW


def _confidence(value: Any) -> float:
    if value is None:
        return DecisionConstants.DEFAULT_CONFIDENCE
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return DecisionConstants.DEFAULT_CONFIDENCE
    if not 0.0 <= confidence <= 1.0:
        return DecisionConstants.DEFAULT_CONFIDENCE
    return confidence


def normalize_triage_result(raw: Union[TriageResult, Mapping[str, Any], None]) -> AIAnalysis:
    if raw is None:
        raw = TriageResult.fallback("No triage result", 0.0, "missing_result")
    elif not isinstance(raw, TriageResult):
        try:
            raw = TriageResult.model_validate(dict(raw))
        except ValueError:
            raw = TriageResult.fallback("Unreadable triage result", 0.0, "parsing_error")

    decision = _verdict(raw.decision)
    return AIAnalysis(
        decision=decision,
        confidence=_confidence(raw.confidence),
        reasoning=raw.reasoning or "No reasoning provided",
        source="triage",
        details=raw.model_dump(by_alias=True),
    )


def normalize_conversational_reply(
    reply: Union[ConversationalReply, Mapping[str, Any], None]
) -> AIAnalysis:
    if reply is None:
        reply = ConversationalReply(success=False)
    elif not isinstance(reply, ConversationalReply):
        try:
            reply = ConversationalReply.model_validate(dict(reply))
        except ValueError:
            reply = ConversationalReply(success=False)

    data = reply.data or {}
    if not reply.success:
        return AIAnalysis(
            decision=TriageVerdict.HUMAN_REVIEW,
            confidence=0.0,
            reasoning=reply.message or "Conversational agent failed",
            source="conversational",
            details=reply.model_dump(),
        )

    raw_decision = data.get("decision") or data.get("nextAction")
    decision = _NEXT_ACTION_VERDICTS.get(str(raw_decision).lower(), TriageVerdict.HUMAN_REVIEW)
    return AIAnalysis(
        decision=decision,
        confidence=_confidence(data.get("confidence")),
        reasoning=data.get("reasoning") or reply.message or "No reasoning provided",
        source="conversational",
        details=reply.model_dump(),
    )
