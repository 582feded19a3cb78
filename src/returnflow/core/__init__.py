"""Core types."""

from returnflow.core.types import (
    Clock,
    system_clock,
    isoformat,
    parse_timestamp,
    CallType,
    CallStatus,
    CallProvider,
    Channel,
    UserRole,
    SecurityLevel,
    TriageVerdict,
    FinalAction,
    Sentiment,
)

__all__ = [
    "Clock",
    "system_clock",
    "isoformat",
    "parse_timestamp",
    "CallType",
    "CallStatus",
    "CallProvider",
    "Channel",
    "UserRole",
    "SecurityLevel",
    "TriageVerdict",
    "FinalAction",
    "Sentiment",
]
