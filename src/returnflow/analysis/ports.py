"""Interfaces of the external AI and media capabilities."""

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from returnflow.analysis.schemas import ConversationalReply, TriageInput, TriageResult
from returnflow.governance.schemas import PolicyRules


@runtime_checkable
class TriageAnalyzer(Protocol):
    """Classifies a return request as auto_approve, auto_deny or human_review."""

    async def evaluate(
        self, request: TriageInput, rules: PolicyRules, business_id: str
    ) -> TriageResult:
        ...


@runtime_checkable
class ConversationalAgent(Protocol):
    """Answers one customer message inside a live call or chat."""

    async def process_call_message(
        self,
        message: str,
        context: Dict[str, Any],
        history: List[Dict[str, Any]],
    ) -> ConversationalReply:
        ...


@runtime_checkable
class MediaSynthesizer(Protocol):
    """Turns an agent reply into speech or video for a call."""

    async def synthesize(
        self, text: str, call_type: str, provider: Optional[str] = None
    ) -> Dict[str, Any]:
        ...
