"""AI capabilities consumed by the decision engine and conversation server."""

from returnflow.analysis.schemas import (
    AIAnalysis,
    ConversationalReply,
    TriageInput,
    TriageResult,
    normalize_conversational_reply,
    normalize_triage_result,
)
from returnflow.analysis.ports import ConversationalAgent, MediaSynthesizer, TriageAnalyzer
from returnflow.analysis.triage import OpenAITriageAnalyzer, parse_triage_response
from returnflow.analysis.conversational import OpenAIConversationalAgent
from returnflow.analysis.classifier import analyze_sentiment, detect_intent, detect_return_request

__all__ = [
    "AIAnalysis",
    "ConversationalReply",
    "TriageInput",
    "TriageResult",
    "normalize_conversational_reply",
    "normalize_triage_result",
    "ConversationalAgent",
    "MediaSynthesizer",
    "TriageAnalyzer",
    "OpenAITriageAnalyzer",
    "parse_triage_response",
    "OpenAIConversationalAgent",
    "analyze_sentiment",
    "detect_intent",
    "detect_return_request",
]
