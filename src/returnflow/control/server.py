"""Generic control server: one dispatcher, parameterized by an action table.

Every domain server is a ``ControlServer`` built from a closed ``Enum`` of
action names and a mapping from each member to an async handler. The
``RequestGate`` in front of dispatch validates the envelope, enforces the
per-agent rate limit and fails fast while the agent's breaker is open.
"""

import logging
import time
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    List,
    Mapping,
    Optional,
    Type,
    Union,
)

from pydantic import ValidationError as PydanticValidationError

from returnflow.common.constants import ControlServerConstants
from returnflow.common.exceptions import (
    ConfigurationError,
    InvalidRequestError,
    RateLimitExceededError,
    ReturnFlowException,
    ServiceUnavailableError,
)
from returnflow.control.circuit_breaker import CircuitBreaker
from returnflow.control.envelope import AuditTrail, RequestEnvelope, ResponseEnvelope
from returnflow.control.rate_limiter import SlidingWindowRateLimiter
from returnflow.control.sessions import SessionRegistry
from returnflow.core.types import Clock, SecurityLevel, isoformat, system_clock
from returnflow.governance.audit.sink import AuditSink

logger = logging.getLogger(__name__)

Handler = Callable[[RequestEnvelope], Awaitable[Dict[str, Any]]]

_GATE_FLAGS = {
    RateLimitExceededError: ControlServerConstants.RATE_LIMITED_FLAG,
    ServiceUnavailableError: ControlServerConstants.CIRCUIT_OPEN_FLAG,
}


class RequestGate:
    """Validation, rate limiting and circuit breaking, in that order."""

    def __init__(
        self,
        allowed_actions: FrozenSet[str],
        rate_limiter: SlidingWindowRateLimiter,
        circuit_breaker: CircuitBreaker,
    ):
        self.allowed_actions = allowed_actions
        self.rate_limiter = rate_limiter
        self.circuit_breaker = circuit_breaker

    def validate(self, request: RequestEnvelope) -> None:
        missing = [
            name for name in ControlServerConstants.REQUIRED_ENVELOPE_FIELDS
            if not getattr(request, _FIELD_ATTRS[name])
        ]
        if missing:
            raise InvalidRequestError("Missing required fields", {"missing": missing})

        if request.action not in self.allowed_actions:
            raise InvalidRequestError(
                f"Action '{request.action}' not allowed", {"action": request.action}
            )

        if request.context.is_call_interaction and not request.context.call_session_id:
            raise InvalidRequestError("Call session ID required for call interactions")

    def admit(self, request: RequestEnvelope) -> None:
        """Raise unless ``request`` may proceed to its handler."""
        self.validate(request)
        self.rate_limiter.acquire(request.agent_id)
        self.circuit_breaker.check(request.agent_id)


_FIELD_ATTRS = {
    "id": "id",
    "agentId": "agent_id",
    "businessId": "business_id",
    "action": "action",
}


class ControlServer:
    """Dispatches request envelopes to the handler registered for their action.

    The handler table must cover the action enum exactly; this is checked
    once at construction so an action can never be allowed without a
    handler, or handled without being allowed.

    Args:
        server_id: Name used in logs and ``/servers`` routing.
        actions: Closed enum of action names this server accepts.
        handlers: One async handler per enum member.
        security_level: Declared level, recorded in logs only.
        registry: Call/conversation session registry.
        rate_limiter / circuit_breaker: Gate components; defaults use the
            standard 100-per-60s window and 5-failure/60s breaker.
        domain: The object whose methods back the handlers, kept for
            introspection.
    """

    def __init__(
        self,
        server_id: str,
        actions: Type[Enum],
        handlers: Mapping[Enum, Handler],
        security_level: SecurityLevel = SecurityLevel.HIGH,
        registry: Optional[SessionRegistry] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        clock: Clock = system_clock,
        domain: Any = None,
    ):
        missing = [a.value for a in actions if a not in handlers]
        extra = [str(a) for a in handlers if not isinstance(a, actions)]
        if missing or extra:
            raise ConfigurationError(
                f"Handler table for {server_id} does not match its actions",
                {"missing": missing, "unexpected": extra},
            )

        self.server_id = server_id
        self.actions = actions
        self.security_level = security_level
        self.clock = clock
        self.registry = registry or SessionRegistry(clock)
        self.domain = domain
        self._handlers: Dict[str, Handler] = {a.value: h for a, h in handlers.items()}
        self.gate = RequestGate(
            frozenset(self._handlers),
            rate_limiter or SlidingWindowRateLimiter(clock=clock),
            circuit_breaker or CircuitBreaker(clock=clock),
        )

    @property
    def allowed_actions(self) -> FrozenSet[str]:
        return self.gate.allowed_actions

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self.gate.circuit_breaker

    async def handle_request(
        self,
        request: Union[RequestEnvelope, Mapping[str, Any]],
        audit_sink: Optional[AuditSink] = None,
    ) -> ResponseEnvelope:
        """Run ``request`` through the gate and its handler.

        Never raises for request or domain errors: every outcome is one
        response envelope, also recorded on ``audit_sink`` when given.
        """
        response = await self._handle(request)
        if audit_sink is not None:
            audit_sink.record_response(response)
        return response

    async def _handle(
        self, request: Union[RequestEnvelope, Mapping[str, Any]]
    ) -> ResponseEnvelope:
        if not isinstance(request, RequestEnvelope):
            raw = dict(request)
            try:
                request = RequestEnvelope.model_validate(raw)
            except PydanticValidationError as e:
                return self._error_response(
                    RequestEnvelope.model_construct(
                        id=str(raw.get("id", "")),
                        agent_id=str(raw.get("agentId", "")),
                        business_id=str(raw.get("businessId", "")),
                        action=str(raw.get("action", "")),
                    ),
                    InvalidRequestError("Invalid request envelope", {"errors": e.errors()}),
                )

        try:
            self.gate.admit(request)
        except (InvalidRequestError, RateLimitExceededError, ServiceUnavailableError) as e:
            logger.warning(
                "%s rejected %s: %s",
                self.server_id, request.action or "<none>", e.message,
                extra={"agent_id": request.agent_id, "request_id": request.id},
            )
            return self._error_response(request, e)

        handler = self._handlers[request.action]
        started = time.perf_counter()
        try:
            data = await handler(request)
        except ReturnFlowException as e:
            self.circuit_breaker.record_failure(request.agent_id)
            logger.warning(
                "%s action %s failed: %s",
                self.server_id, request.action, e.message,
                extra={"error_code": e.code, "security_level": self.security_level.value},
            )
            return self._error_response(request, e)
        except Exception as e:
            self.circuit_breaker.record_failure(request.agent_id)
            logger.exception("%s action %s raised", self.server_id, request.action)
            return self._error_response(request, e)

        self.circuit_breaker.record_success(request.agent_id)
        duration_ms = (time.perf_counter() - started) * 1000
        return ResponseEnvelope(
            id=request.id,
            timestamp=isoformat(self.clock()),
            success=True,
            data=data,
            audit_trail=self._audit_trail(request, duration_ms, []),
        )

    def _audit_trail(
        self, request: RequestEnvelope, duration: float, flags: List[str]
    ) -> AuditTrail:
        context = request.context
        return AuditTrail(
            request_id=request.id,
            agent_id=request.agent_id,
            business_id=request.business_id,
            action=request.action,
            duration=duration,
            security_flags=flags,
            call_session_id=context.call_session_id,
            call_type=context.call_type,
            provider=context.provider,
        )

    def _error_response(self, request: RequestEnvelope, error: Exception) -> ResponseEnvelope:
        flags = [ControlServerConstants.ERROR_SECURITY_FLAG]
        gate_flag = _GATE_FLAGS.get(type(error))
        if gate_flag:
            flags.append(gate_flag)

        if isinstance(error, ReturnFlowException):
            message, code = error.message, error.code
        else:
            message, code = str(error) or type(error).__name__, "INTERNAL_ERROR"

        return ResponseEnvelope(
            id=request.id,
            timestamp=isoformat(self.clock()),
            success=False,
            error=message,
            error_code=code,
            audit_trail=self._audit_trail(request, 0.0, flags),
        )
