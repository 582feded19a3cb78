"""Core types and enums."""

from datetime import datetime, timezone
from enum import Enum
from typing import Callable


Clock = Callable[[], datetime]


def system_clock() -> datetime:
    """Timezone-aware wall clock used unless a test injects its own."""
    return datetime.now(timezone.utc)


def isoformat(moment: datetime) -> str:
    """Render a timestamp the way envelopes carry it (ISO 8601, Z suffix)."""
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class CallType(str, Enum):
    """Media type of a live call."""
    VOICE = "voice"
    VIDEO = "video"


class CallStatus(str, Enum):
    """Lifecycle status of a call session."""
    INITIATED = "initiated"
    CONNECTING = "connecting"
    ACTIVE = "active"
    ENDED = "ended"


class CallProvider(str, Enum):
    """Media providers a call can run on."""
    INTERNAL = "internal"
    ELEVENLABS = "elevenlabs"
    TAVUS = "tavus"


class Channel(str, Enum):
    """Conversation channel."""
    CHAT = "chat"
    VOICE = "voice"
    VIDEO = "video"
    HYBRID = "hybrid"


class UserRole(str, Enum):
    """Role of the caller issuing a request."""
    CUSTOMER = "customer"
    BUSINESS = "business"
    SYSTEM = "system"


class SecurityLevel(str, Enum):
    """Security level a control server declares; used for flagging only."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TriageVerdict(str, Enum):
    """Normalized decision produced by an AI capability."""
    AUTO_APPROVE = "auto_approve"
    AUTO_DENY = "auto_deny"
    HUMAN_REVIEW = "human_review"


class FinalAction(str, Enum):
    """Combined action produced by the decision engine."""
    CREATE_RETURN_REQUEST = "create_return_request"
    HUMAN_REVIEW = "human_review"


class Sentiment(str, Enum):
    """Coarse sentiment label for a conversation message."""
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp, accepting a trailing Z."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
