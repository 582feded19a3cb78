"""Customer return-risk scoring from return history."""

from datetime import datetime, timedelta
from typing import List, Sequence, Tuple

from returnflow.common.constants import RiskConstants
from returnflow.core.types import parse_timestamp
from returnflow.storage.base import Record


def assess_customer_risk(
    history: Sequence[Record],
    now: datetime,
    order_value: float = 0.0,
    reason: str = "",
) -> Tuple[float, List[str]]:
    """Score a customer in [0, 1] from their prior returns.

    Starts at 0.5 and adds weight for return frequency, high-value orders
    from repeat returners, commonly abused reasons and bursts of recent
    returns.
    """
    score = RiskConstants.BASE_SCORE
    factors: List[str] = []
    frequency = len(history)

    if frequency > RiskConstants.HIGH_FREQUENCY_RETURNS:
        score += 0.2
        factors.append("High return frequency")
    elif frequency > RiskConstants.MODERATE_FREQUENCY_RETURNS:
        score += 0.1
        factors.append("Moderate return frequency")

    if order_value > RiskConstants.HIGH_VALUE_ORDER and frequency > 1:
        score += 0.15
        factors.append("High value + return history")

    lowered = reason.lower()
    if any(suspicious in lowered for suspicious in RiskConstants.SUSPICIOUS_REASONS):
        score += 0.05
        factors.append("Potentially suspicious reason")

    cutoff = now - timedelta(days=RiskConstants.RECENT_WINDOW_DAYS)
    recent = [r for r in history if r.get("created_at") and parse_timestamp(r["created_at"]) > cutoff]
    if len(recent) > RiskConstants.RECENT_RETURNS_LIMIT:
        score += 0.2
        factors.append("Multiple recent returns")

    return min(score, 1.0), factors
