"""Control server base: envelopes, gate components, session registries."""

from returnflow.control.envelope import (
    AuditTrail,
    RequestContext,
    RequestEnvelope,
    ResponseEnvelope,
)
from returnflow.control.rate_limiter import SlidingWindowRateLimiter
from returnflow.control.circuit_breaker import CircuitBreaker
from returnflow.control.sessions import (
    CallSessionContext,
    ConversationSessionContext,
    SessionRegistry,
    SessionStore,
)
from returnflow.control.server import ControlServer, Handler, RequestGate

__all__ = [
    "AuditTrail",
    "RequestContext",
    "RequestEnvelope",
    "ResponseEnvelope",
    "SlidingWindowRateLimiter",
    "CircuitBreaker",
    "CallSessionContext",
    "ConversationSessionContext",
    "SessionRegistry",
    "SessionStore",
    "ControlServer",
    "Handler",
    "RequestGate",
]
