"""Keyword-based intent, sentiment and return-request detection.

Cheap and deterministic: used on every conversation message to keep
``currentIntent`` up to date without a model round trip.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from returnflow.core.types import Sentiment

INTENT_KEYWORDS = {
    "return_request": ("return", "refund", "send back", "get money back"),
    "order_status": ("order", "track", "where is", "shipping"),
    "complaint": ("complaint", "problem", "issue", "wrong", "broken"),
    "general_help": ("help", "support", "assist", "question"),
    "goodbye": ("bye", "goodbye", "end", "finish", "done"),
}
DEFAULT_INTENT = "general_help"

RETURN_KEYWORDS = ("return", "refund", "broken", "defective", "wrong", "damaged")
RETURN_REASONS = ("defective", "broken", "wrong item", "damaged", "not as described")
DEFAULT_REASON = "general issue"

POSITIVE_WORDS = (
    "thanks", "thank you", "great", "good", "happy", "love",
    "excellent", "perfect", "appreciate", "awesome",
)
NEGATIVE_WORDS = (
    "angry", "terrible", "bad", "awful", "hate", "frustrated",
    "disappointed", "broken", "worst", "upset", "unacceptable", "damaged",
)
SENTIMENT_MARGIN = 0.2

_ORDER_ID = re.compile(r"ORDER-\d+", re.IGNORECASE)


@dataclass(frozen=True)
class IntentResult:
    intent: str
    confidence: float
    entities: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"intent": self.intent, "confidence": self.confidence, "entities": dict(self.entities)}


def extract_order_id(message: str) -> Optional[str]:
    match = _ORDER_ID.search(message)
    return match.group(0).upper() if match else None


def extract_return_reason(message: str) -> str:
    lowered = message.lower()
    return next((reason for reason in RETURN_REASONS if reason in lowered), DEFAULT_REASON)


def detect_urgency(message: str) -> str:
    lowered = message.lower()
    if any(word in lowered for word in ("urgent", "asap", "emergency")):
        return "high"
    if any(word in lowered for word in ("soon", "quick")):
        return "medium"
    return "low"


def detect_intent(message: str) -> IntentResult:
    """Pick the intent whose keyword list has the largest share of hits.

    Ties keep the earlier intent; no hits at all yields ``general_help``
    with confidence 0.
    """
    lowered = message.lower()
    best_intent, best_confidence = DEFAULT_INTENT, 0.0
    for intent, keywords in INTENT_KEYWORDS.items():
        confidence = sum(1 for k in keywords if k in lowered) / len(keywords)
        if confidence > best_confidence:
            best_intent, best_confidence = intent, confidence

    return IntentResult(
        intent=best_intent,
        confidence=best_confidence,
        entities={
            "orderId": extract_order_id(message),
            "reason": extract_return_reason(message),
            "urgency": detect_urgency(message),
        },
    )


def analyze_sentiment(text: str) -> Dict[str, Any]:
    """Score in [-1, 1] from positive/negative keyword counts."""
    lowered = text.lower()
    positive = sum(1 for w in POSITIVE_WORDS if w in lowered)
    negative = sum(1 for w in NEGATIVE_WORDS if w in lowered)
    total = positive + negative
    score = (positive - negative) / total if total else 0.0

    if score > SENTIMENT_MARGIN:
        label = Sentiment.POSITIVE
    elif score < -SENTIMENT_MARGIN:
        label = Sentiment.NEGATIVE
    else:
        label = Sentiment.NEUTRAL
    return {"sentiment": label.value, "score": score, "matches": total}


def detect_return_request(message: str, customer_email: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Spot a return request in free text; None when there is no sign of one."""
    lowered = message.lower()
    if not any(k in lowered for k in RETURN_KEYWORDS):
        return None

    order_id = extract_order_id(message)
    confidence = 0.5
    if order_id:
        confidence += 0.3
    if "return" in lowered or "refund" in lowered:
        confidence += 0.2

    return {
        "orderId": order_id or "UNKNOWN",
        "reason": extract_return_reason(message),
        "customerEmail": customer_email,
        "confidence": min(confidence, 1.0),
    }
