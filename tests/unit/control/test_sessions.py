"""Unit tests for the in-process session registries."""

import pytest

from returnflow.common.exceptions import SessionNotFoundError
from returnflow.control.sessions import CallSessionContext, ConversationSessionContext
from returnflow.core.types import CallProvider, CallStatus, CallType, Channel


def _call(clock, call_id="call-1", **overrides):
    fields = dict(
        call_session_id=call_id,
        call_type=CallType.VOICE,
        provider=CallProvider.INTERNAL,
        last_activity=clock(),
        started_at=clock(),
        business_id="biz-1",
    )
    fields.update(overrides)
    return CallSessionContext(**fields)


class TestSessionStore:
    """Register, update and remove sessions."""

    def test_register_and_get(self, registry, clock):
        registry.calls.register(_call(clock))
        assert "call-1" in registry.calls
        assert registry.calls.get("call-1").call_type == CallType.VOICE
        assert registry.calls.get(None) is None

    def test_require_unknown_raises(self, registry):
        with pytest.raises(SessionNotFoundError) as exc_info:
            registry.calls.require("missing")
        assert exc_info.value.message == "Call session not found"

    def test_update_refreshes_last_activity(self, registry, clock):
        registry.calls.register(_call(clock))
        clock.advance(30)

        updated = registry.calls.update("call-1", participant_count=2)
        assert updated.participant_count == 2
        assert updated.last_activity == clock()
        assert registry.calls.get("call-1") is updated

    def test_ended_calls_are_not_active(self, registry, clock):
        registry.calls.register(_call(clock, "call-1"))
        registry.calls.register(_call(clock, "call-2", call_status=CallStatus.ENDED))
        assert [c.call_session_id for c in registry.active_call_sessions()] == ["call-1"]
        assert len(registry.calls) == 2

    def test_remove(self, registry, clock):
        registry.conversations.register(ConversationSessionContext(
            session_id="conv-1", business_id="biz-1",
            channel=Channel.CHAT, last_activity=clock(),
        ))
        assert registry.conversations.remove("conv-1") is not None
        assert registry.conversations.remove("conv-1") is None
        assert registry.active_conversations() == []


class TestWireShape:
    """Sessions render with camelCase keys and plain values."""

    def test_call_to_dict(self, clock):
        wire = _call(clock).to_dict()
        assert wire["callSessionId"] == "call-1"
        assert wire["callType"] == "voice"
        assert wire["callStatus"] == "initiated"
        assert wire["lastActivity"] == "2026-03-10T12:00:00Z"
        assert wire["mutedParticipants"] == []
