"""Integration tests for ReturnFlow.

End-to-end tests that verify the full decision flow over one control
plane: seeded policies, shared session registry, real domain servers and
the hash-chained audit log. Only the AI capabilities are faked.
"""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from returnflow.analysis.schemas import ConversationalReply, TriageResult
from returnflow.api.service import ControlPlaneService
from returnflow.common.config import Config
from returnflow.common.constants import Tables
from returnflow.control.envelope import RequestEnvelope
from returnflow.governance.schemas import AuditEventType

SEED_FILE = Path(__file__).resolve().parents[2] / "config" / "policies.yaml"


def request(action, data, agent_id="support-ui", **context):
    return RequestEnvelope.create(agent_id, "demo-store", action, data, **context)


class TestDecisionFlowIntegration:
    """Integration tests for the decision flow."""

    @pytest.fixture
    def triage(self):
        analyzer = MagicMock()
        analyzer.evaluate = AsyncMock(return_value=TriageResult(
            decision="auto_approve", confidence=0.88, reasoning="Defect reported within window",
        ))
        return analyzer

    @pytest.fixture
    def conversational(self):
        agent = MagicMock()
        agent.process_call_message = AsyncMock(return_value=ConversationalReply(
            success=True,
            message="Your return has been created.",
            data={"nextAction": "approve", "confidence": 0.9},
        ))
        return agent

    @pytest.fixture
    def service(self, tmp_path, clock, triage, conversational):
        config = Config(
            audit_enabled=True,
            audit_log_dir=tmp_path / "audit",
            policy_seed_file=SEED_FILE,
        )
        return ControlPlaneService(
            config=config, triage=triage, conversational=conversational, clock=clock
        )

    @pytest.mark.asyncio
    async def test_approval_is_persisted_and_audited(self, service):
        await service.startup()

        response = await service.decide(request("process_decision", {
            "orderId": "ORDER-500",
            "customerEmail": "ana@example.com",
            "reason": "Arrived damaged",
            "orderValue": 60,
            "daysSincePurchase": 10,
        }, agent_id="checkout-ui"))

        assert response.success is True
        public_id = response.data["returnRequest"]["public_id"]

        stored = await service.dispatch("request", request("get_return_request", {"publicId": public_id}))
        assert stored.data["order_id"] == "ORDER-500"
        assert stored.data["ai_decision"] == "auto_approve"

        updated = await service.dispatch("request", request("update_status", {
            "publicId": public_id, "status": "approved", "decisionReason": "Photo confirms damage",
        }))
        assert updated.data["status"] == "approved"
        assert "Decision: Photo confirms damage" in updated.data["admin_notes"]

        entries = list(service.audit_logger.get_entries(event_type=AuditEventType.DECISION))
        assert [e.decision_id for e in entries] == [response.data["decisionId"]]
        assert service.audit_logger.verify_integrity() is True

    @pytest.mark.asyncio
    async def test_customer_history_reaches_triage(self, service, triage):
        await service.startup()
        data = {
            "customerEmail": "repeat@example.com",
            "reason": "defective",
            "orderValue": 30,
            "daysSincePurchase": 2,
        }
        for n in range(3):
            await service.decide(request("process_decision", {**data, "orderId": f"ORDER-{n}"}))

        triage_input = triage.evaluate.await_args.args[0]
        assert triage_input.return_history == 2
        assert service.storage.count(Tables.RETURN_REQUESTS) == 3

    @pytest.mark.asyncio
    async def test_live_call_decision(self, service, clock):
        await service.startup()

        started = await service.dispatch("call", request("initiate_call", {
            "callType": "video", "provider": "tavus", "customerEmail": "ana@example.com",
        }))
        call_id = started.data["callSession"]["id"]
        await service.dispatch("call", request("join_call", {
            "callSessionId": call_id, "participantId": "agent-7",
        }))

        clock.advance(120)
        response = await service.decide(request("process_decision", {
            "orderId": "ORDER-900",
            "customerEmail": "ana@example.com",
            "reason": "wrong item",
            "orderValue": 25,
            "message": "You sent me the wrong item",
        }, call_session_id=call_id, is_call_interaction=True))

        assert response.success is True
        assert response.data["decision"]["source"] == "conversational"
        assert response.data["returnRequest"]["call_session_id"] == call_id
        assert response.audit_trail.call_session_id == call_id

        ended = await service.dispatch("call", request("end_call", {"callSessionId": call_id}))
        assert ended.data["duration"] == 120

    @pytest.mark.asyncio
    async def test_engine_sub_requests_are_rate_limited(self, tmp_path, clock, triage, conversational):
        config = Config(
            audit_enabled=False,
            audit_log_dir=tmp_path / "audit",
            policy_seed_file=SEED_FILE,
            rate_limit_per_minute=2,
        )
        service = ControlPlaneService(
            config=config, triage=triage, conversational=conversational, clock=clock
        )
        await service.startup()
        data = {"orderId": "ORDER-1", "reason": "defective", "orderValue": 10}

        first = await service.decide(request("process_decision", data))
        second = await service.decide(request("process_decision", data))

        assert first.success is True
        assert second.success is False
        assert second.error == "Layer 2 failed: Failed to get active policy: Rate limit exceeded"
        assert second.error_code == "RATE_LIMIT_EXCEEDED"
