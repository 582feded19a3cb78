"""Unit tests for AI output normalization and the OpenAI adapters."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import openai
import pytest

from returnflow.analysis.conversational import OpenAIConversationalAgent
from returnflow.analysis.schemas import (
    ConversationalReply,
    TriageInput,
    normalize_conversational_reply,
    normalize_triage_result,
)
from returnflow.analysis.triage import OpenAITriageAnalyzer, parse_triage_response
from returnflow.core.types import TriageVerdict
from returnflow.governance.schemas import PolicyRules


def _fake_client(content=None, error=None):
    client = MagicMock()
    if error is not None:
        client.chat.completions.create = AsyncMock(side_effect=error)
    else:
        message = SimpleNamespace(content=content)
        client.chat.completions.create = AsyncMock(
            return_value=SimpleNamespace(choices=[SimpleNamespace(message=message)])
        )
    return client


@pytest.fixture
def triage_input():
    return TriageInput(orderId="ORDER-1", reason="defective", orderValue=40)


class TestNormalizeTriage:
    """Anything unknown or malformed becomes human_review."""

    def test_valid_result(self):
        analysis = normalize_triage_result(
            {"decision": "auto_approve", "confidence": 0.92, "reasoning": "Clear defect"}
        )
        assert analysis.decision == TriageVerdict.AUTO_APPROVE
        assert analysis.confidence == 0.92
        assert analysis.source == "triage"

    def test_unknown_decision(self):
        analysis = normalize_triage_result({"decision": "maybe", "confidence": 0.9})
        assert analysis.decision == TriageVerdict.HUMAN_REVIEW

    def test_decision_is_case_insensitive(self):
        assert normalize_triage_result({"decision": "AUTO_DENY"}).decision == TriageVerdict.AUTO_DENY

    @pytest.mark.parametrize("confidence", [None, 1.5, -0.1])
    def test_bad_confidence_defaults(self, confidence):
        analysis = normalize_triage_result({"decision": "auto_deny", "confidence": confidence})
        assert analysis.confidence == 0.5

    def test_missing_result(self):
        analysis = normalize_triage_result(None)
        assert analysis.decision == TriageVerdict.HUMAN_REVIEW
        assert analysis.confidence == 0.0

    def test_unreadable_result(self):
        analysis = normalize_triage_result({"riskFactors": "not-a-list"})
        assert analysis.decision == TriageVerdict.HUMAN_REVIEW
        assert analysis.details["riskFactors"] == ["parsing_error"]


class TestNormalizeConversational:
    """Conversational replies mapped onto a verdict."""

    def test_failed_reply(self):
        analysis = normalize_conversational_reply(ConversationalReply(success=False, message="down"))
        assert analysis.decision == TriageVerdict.HUMAN_REVIEW
        assert analysis.confidence == 0.0
        assert analysis.reasoning == "down"

    def test_next_action_mapping(self):
        analysis = normalize_conversational_reply({
            "success": True, "message": "Approved",
            "data": {"nextAction": "approve", "confidence": 0.8},
        })
        assert analysis.decision == TriageVerdict.AUTO_APPROVE
        assert analysis.source == "conversational"
        assert analysis.reasoning == "Approved"

    def test_unmapped_next_action(self):
        analysis = normalize_conversational_reply(
            ConversationalReply(data={"nextAction": "initiate_return_process"})
        )
        assert analysis.decision == TriageVerdict.HUMAN_REVIEW
        assert analysis.confidence == 0.5


class TestParseTriageResponse:
    """JSON extraction from a free-text model reply."""

    def test_json_inside_prose(self):
        result = parse_triage_response(
            'Here you go:\n{"decision": "auto_approve", "confidence": 0.9, '
            '"reasoning": "ok", "riskFactors": ["none"]}\nThanks'
        )
        assert result.decision == "auto_approve"
        assert result.risk_factors == ["none"]

    def test_no_json(self):
        result = parse_triage_response("I think it should be approved.")
        assert result.decision == "human_review"
        assert result.confidence == 0.5
        assert result.risk_factors == ["response_parsing_error"]

    def test_broken_json(self):
        result = parse_triage_response('{"decision": auto_approve}')
        assert result.decision == "human_review"
        assert result.confidence == 0.0
        assert result.risk_factors == ["parsing_error"]

    def test_missing_fields_filled(self):
        result = parse_triage_response("{}")
        assert result.decision == "human_review"
        assert result.confidence == 0.5
        assert result.reasoning == "No reasoning provided"


class TestOpenAITriageAnalyzer:
    """Provider failures never escape the adapter."""

    @pytest.mark.asyncio
    async def test_without_api_key(self, triage_input):
        result = await OpenAITriageAnalyzer(api_key=None).evaluate(triage_input, PolicyRules(), "biz-1")
        assert result.decision == "human_review"
        assert result.confidence == 0.0
        assert result.risk_factors == ["system_error"]

    @pytest.mark.asyncio
    async def test_parses_model_reply(self, triage_input):
        client = _fake_client('{"decision": "auto_deny", "confidence": 0.85, "reasoning": "late"}')
        analyzer = OpenAITriageAnalyzer(client=client, model="gpt-test")

        result = await analyzer.evaluate(triage_input, PolicyRules(return_window_days=14), "biz-1")
        assert result.decision == "auto_deny"
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-test"
        assert "Return Window: 14 days" in kwargs["messages"][0]["content"]
        assert "Order ID: ORDER-1" in kwargs["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_provider_error(self, triage_input):
        analyzer = OpenAITriageAnalyzer(client=_fake_client(error=openai.OpenAIError("bad key")))
        result = await analyzer.evaluate(triage_input, PolicyRules(), "biz-1")
        assert result.risk_factors == ["system_error"]


class TestOpenAIConversationalAgent:
    """Replies, return detection and call context."""

    @pytest.mark.asyncio
    async def test_without_api_key(self):
        reply = await OpenAIConversationalAgent(api_key=None).process_call_message("hi", {}, [])
        assert reply.success is False

    @pytest.mark.asyncio
    async def test_detects_return_in_call(self):
        client = _fake_client("Sure, let me start that return.")
        agent = OpenAIConversationalAgent(client=client)

        reply = await agent.process_call_message(
            "I need to return ORDER-12, it arrived damaged",
            {"callSessionId": "call-1", "callType": "video", "customerEmail": "jane@example.com"},
            [{"role": "user", "content": "hello"}, {"role": "assistant", "content": "hi there"}],
        )
        assert reply.success is True
        assert reply.message == "Sure, let me start that return."
        assert reply.data["nextAction"] == "initiate_return_process"
        assert reply.data["returnRequest"]["orderId"] == "ORDER-12"
        assert reply.data["isCallInteraction"] is True

        messages = client.chat.completions.create.call_args.kwargs["messages"]
        assert [m["role"] for m in messages] == ["system", "system", "user", "assistant", "user"]
        assert messages[1]["content"] == "This is a live video call."

    @pytest.mark.asyncio
    async def test_provider_error(self):
        agent = OpenAIConversationalAgent(client=_fake_client(error=openai.OpenAIError("down")))
        reply = await agent.process_call_message("hi", {}, [])
        assert reply.success is False
