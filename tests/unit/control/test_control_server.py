"""Unit tests for the generic control server and its request gate."""

from enum import Enum

import pytest

from returnflow.common.exceptions import ConfigurationError, InvalidRequestError
from returnflow.control.envelope import RequestEnvelope
from returnflow.control.rate_limiter import SlidingWindowRateLimiter
from returnflow.control.server import ControlServer
from returnflow.governance.audit.sink import AuditSink


class EchoAction(str, Enum):
    ECHO = "echo"
    FAIL = "fail"
    CRASH = "crash"


class EchoService:
    def __init__(self):
        self.calls = 0

    async def echo(self, request):
        self.calls += 1
        return {"echo": request.data.get("value")}

    async def fail(self, request):
        self.calls += 1
        raise InvalidRequestError("value is required")

    async def crash(self, request):
        self.calls += 1
        raise RuntimeError("boom")

    def handlers(self):
        return {
            EchoAction.ECHO: self.echo,
            EchoAction.FAIL: self.fail,
            EchoAction.CRASH: self.crash,
        }


@pytest.fixture
def service():
    return EchoService()


@pytest.fixture
def server(service, clock):
    return ControlServer("echo-server", EchoAction, service.handlers(), clock=clock)


def _request(action="echo", agent_id="agent-a", **overrides):
    fields = {
        "id": "req-1",
        "agent_id": agent_id,
        "business_id": "biz-1",
        "action": action,
        "data": {"value": 42},
    }
    fields.update(overrides)
    return RequestEnvelope(**fields)


class TestHandlerTable:
    """The handler table must cover the action enum exactly."""

    def test_missing_handler_rejected(self, service):
        handlers = service.handlers()
        del handlers[EchoAction.CRASH]
        with pytest.raises(ConfigurationError) as exc_info:
            ControlServer("echo-server", EchoAction, handlers)
        assert exc_info.value.details["missing"] == ["crash"]

    def test_unexpected_handler_rejected(self, service):
        class Other(str, Enum):
            STRAY = "stray"

        handlers = {**service.handlers(), Other.STRAY: service.echo}
        with pytest.raises(ConfigurationError):
            ControlServer("echo-server", EchoAction, handlers)

    def test_allowed_actions_match_enum(self, server):
        assert server.allowed_actions == frozenset({"echo", "fail", "crash"})


class TestDispatch:
    """Successful dispatch and error envelopes."""

    @pytest.mark.asyncio
    async def test_success_envelope(self, server):
        response = await server.handle_request(_request())

        assert response.success is True
        assert response.id == "req-1"
        assert response.data == {"echo": 42}
        assert response.audit_trail.action == "echo"
        assert response.audit_trail.agent_id == "agent-a"
        assert response.audit_trail.security_flags == []
        assert response.audit_trail.duration >= 0

    @pytest.mark.asyncio
    async def test_accepts_wire_mapping(self, server):
        response = await server.handle_request({
            "id": "req-9",
            "agentId": "agent-a",
            "businessId": "biz-1",
            "action": "echo",
            "data": {"value": "x"},
            "context": {"userRole": "business"},
        })
        assert response.success is True
        assert response.data == {"echo": "x"}

    @pytest.mark.asyncio
    async def test_unparseable_mapping_is_error_envelope(self, server):
        response = await server.handle_request({
            "id": "req-9", "agentId": "agent-a", "businessId": "biz-1",
            "action": "echo", "data": "not-a-dict",
        })
        assert response.success is False
        assert response.error == "Invalid request envelope"
        assert response.error_code == "INVALID_REQUEST"

    @pytest.mark.asyncio
    async def test_missing_fields(self, server, service):
        response = await server.handle_request(_request(agent_id=""))

        assert response.success is False
        assert response.error == "Missing required fields"
        assert response.audit_trail.security_flags == ["error_response"]
        assert response.audit_trail.duration == 0
        assert service.calls == 0

    @pytest.mark.asyncio
    async def test_action_not_allowed(self, server):
        response = await server.handle_request(_request(action="explode"))
        assert response.success is False
        assert response.error == "Action 'explode' not allowed"

    @pytest.mark.asyncio
    async def test_call_interaction_requires_call_session(self, server):
        request = RequestEnvelope.create(
            "agent-a", "biz-1", "echo", {}, is_call_interaction=True
        )
        response = await server.handle_request(request)
        assert response.error == "Call session ID required for call interactions"

    @pytest.mark.asyncio
    async def test_domain_error_carries_message_and_code(self, server):
        response = await server.handle_request(_request(action="fail"))

        assert response.success is False
        assert response.error == "value is required"
        assert response.error_code == "INVALID_REQUEST"
        assert response.audit_trail.security_flags == ["error_response"]

    @pytest.mark.asyncio
    async def test_unexpected_error_is_internal(self, server):
        response = await server.handle_request(_request(action="crash"))
        assert response.success is False
        assert response.error == "boom"
        assert response.error_code == "INTERNAL_ERROR"

    @pytest.mark.asyncio
    async def test_wire_shape_is_camel_case(self, server):
        wire = (await server.handle_request(_request(action="fail"))).to_wire()
        assert wire["errorCode"] == "INVALID_REQUEST"
        assert wire["auditTrail"]["securityFlags"] == ["error_response"]
        assert wire["auditTrail"]["requestId"] == "req-1"

    @pytest.mark.asyncio
    async def test_response_recorded_on_audit_sink(self, server, clock):
        sink = AuditSink(clock=clock)
        await server.handle_request(_request(), audit_sink=sink)
        await server.handle_request(_request(action="fail"), audit_sink=sink)

        assert [r["success"] for r in sink.responses] == [True, False]
        assert sink.responses[1]["error"] == "value is required"


class TestGate:
    """Rate limiting and circuit breaking in front of dispatch."""

    @pytest.mark.asyncio
    async def test_rate_limited_request_never_reaches_handler(self, service, clock):
        server = ControlServer(
            "echo-server", EchoAction, service.handlers(), clock=clock,
            rate_limiter=SlidingWindowRateLimiter(2, 60, clock),
        )
        for _ in range(2):
            assert (await server.handle_request(_request())).success

        response = await server.handle_request(_request())
        assert response.success is False
        assert response.error == "Rate limit exceeded"
        assert response.error_code == "RATE_LIMIT_EXCEEDED"
        assert response.audit_trail.security_flags == ["error_response", "rate_limited"]
        assert service.calls == 2

    @pytest.mark.asyncio
    async def test_breaker_opens_after_domain_failures(self, server, service):
        for _ in range(5):
            await server.handle_request(_request(action="fail"))

        response = await server.handle_request(_request())
        assert response.success is False
        assert response.error == "Service temporarily unavailable"
        assert response.audit_trail.security_flags == ["error_response", "circuit_open"]
        assert service.calls == 5

    @pytest.mark.asyncio
    async def test_breaker_closes_after_reset(self, server, clock):
        for _ in range(5):
            await server.handle_request(_request(action="fail"))
        clock.advance(60)

        response = await server.handle_request(_request())
        assert response.success is True

    @pytest.mark.asyncio
    async def test_gate_rejections_do_not_trip_breaker(self, server):
        for _ in range(10):
            await server.handle_request(_request(action="explode"))
        assert server.circuit_breaker.failure_count("agent-a") == 0

    @pytest.mark.asyncio
    async def test_breaker_is_per_agent(self, server):
        for _ in range(5):
            await server.handle_request(_request(action="fail"))

        response = await server.handle_request(_request(agent_id="agent-b"))
        assert response.success is True
