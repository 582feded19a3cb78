"""Unit tests for the request control server and customer risk scoring."""

from datetime import timedelta

import pytest

from returnflow.common.constants import Tables
from returnflow.core.types import isoformat
from returnflow.servers.request import create_request_server
from returnflow.servers.risk import assess_customer_risk


@pytest.fixture
def server(storage, registry, clock):
    return create_request_server(storage, registry, clock)


def _create_data(**overrides):
    data = {
        "orderId": "ORDER-1",
        "customerEmail": "jane@example.com",
        "reason": "defective",
        "orderValue": 80,
    }
    data.update(overrides)
    return data


class TestCustomerRisk:
    """Risk score from prior returns."""

    def test_no_history_is_base_score(self, clock):
        score, factors = assess_customer_risk([], clock())
        assert score == 0.5
        assert factors == []

    def test_moderate_frequency(self, clock):
        old = isoformat(clock() - timedelta(days=90))
        history = [{"created_at": old}] * 3
        score, factors = assess_customer_risk(history, clock())
        assert score == pytest.approx(0.6)
        assert factors == ["Moderate return frequency"]

    def test_risk_factors_accumulate_and_cap(self, clock):
        recent = isoformat(clock() - timedelta(days=2))
        history = [{"created_at": recent}] * 6
        score, factors = assess_customer_risk(history, clock(), order_value=900, reason="Wrong item")
        assert score == 1.0
        assert factors == [
            "High return frequency",
            "High value + return history",
            "Potentially suspicious reason",
            "Multiple recent returns",
        ]


class TestReturnRequests:
    """Create, read and update return requests."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, server, make_envelope):
        created = await server.handle_request(make_envelope("create_return_request", _create_data()))
        assert created.success is True
        row = created.data
        assert row["public_id"].startswith("RET-")
        assert row["status"] == "pending_triage"
        assert row["business_id"] == "biz-1"

        fetched = await server.handle_request(
            make_envelope("get_return_request", {"publicId": row["public_id"]})
        )
        assert fetched.data["order_id"] == "ORDER-1"

    @pytest.mark.asyncio
    async def test_create_requires_order_id(self, server, make_envelope):
        response = await server.handle_request(
            make_envelope("create_return_request", _create_data(orderId=None))
        )
        assert response.success is False
        assert response.error == "orderId is required"

    @pytest.mark.asyncio
    async def test_get_unknown_request(self, server, make_envelope):
        response = await server.handle_request(
            make_envelope("get_return_request", {"publicId": "RET-NOPE"})
        )
        assert response.error == "Return request not found"

    @pytest.mark.asyncio
    async def test_decided_status_records_decision(self, server, make_envelope, clock):
        row = (await server.handle_request(
            make_envelope("create_return_request", _create_data())
        )).data
        clock.advance(3600)

        response = await server.handle_request(make_envelope("update_status", {
            "publicId": row["public_id"],
            "status": "approved",
            "adminNotes": "Photos check out",
            "decisionReason": "Clearly defective",
        }))
        updated = response.data
        assert updated["status"] == "approved"
        assert updated["admin_decision_at"] == "2026-03-10T13:00:00Z"
        assert updated["admin_notes"] == "Photos check out\n\nDecision: Clearly defective"

    @pytest.mark.asyncio
    async def test_customer_history_scores_risk(self, server, storage, make_envelope):
        for _ in range(3):
            await storage.insert(Tables.RETURN_REQUESTS, {
                "business_id": "biz-1", "customer_email": "jane@example.com",
            })
        response = await server.handle_request(make_envelope(
            "get_customer_history",
            {"customerEmail": "jane@example.com", "orderValue": 20, "reason": "changed mind"},
        ))
        data = response.data
        assert data["returnCount"] == 3
        assert data["riskScore"] == pytest.approx(0.8)
        assert "Multiple recent returns" in data["riskFactors"]

    @pytest.mark.asyncio
    async def test_log_decision(self, server, storage, make_envelope):
        response = await server.handle_request(make_envelope("log_decision", {
            "agentType": "layered_engine",
            "returnRequestId": "rr-1",
            "decision": "human_review",
            "confidence": 0.4,
        }))
        assert response.success is True
        row = await storage.find_one(Tables.AUDIT_LOGS, interaction_id="rr-1")
        assert row["performance_metrics"]["decision"] == "human_review"


class TestCallRequests:
    """Return requests raised during live calls."""

    @pytest.mark.asyncio
    async def test_call_lifecycle_through_request_server(self, server, storage, registry, make_envelope):
        call = (await server.handle_request(
            make_envelope("create_call_request", {"callType": "voice"})
        )).data
        call_id = call["id"]
        assert call_id in registry.calls

        handled = await server.handle_request(make_envelope("handle_call_request", {
            "callSessionId": call_id,
            "returnRequest": {"orderId": "ORDER-7", "reason": "damaged", "orderValue": 30},
            "customerInfo": {"email": "jane@example.com"},
        }))
        assert handled.success is True
        assert handled.data["returnRequest"]["call_session_id"] == call_id
        assert handled.data["callContext"]["type"] == "voice"

        ended = await server.handle_request(make_envelope("update_call_status", {
            "callSessionId": call_id, "status": "ended", "duration": 120,
        }))
        assert ended.data["status"] == "ended"
        stored = await storage.find_one(Tables.CALL_SESSIONS, id=call_id)
        assert stored["duration"] == 120

        rejected = await server.handle_request(make_envelope("handle_call_request", {
            "callSessionId": call_id,
            "returnRequest": {"orderId": "ORDER-8", "reason": "damaged"},
        }))
        assert rejected.error == "Call session has ended"

    @pytest.mark.asyncio
    async def test_unknown_call_type_rejected(self, server, make_envelope):
        response = await server.handle_request(
            make_envelope("create_call_request", {"callType": "fax"})
        )
        assert response.error == "Unsupported callType 'fax'"

    @pytest.mark.asyncio
    async def test_real_time_metrics(self, server, make_envelope):
        await server.handle_request(make_envelope("create_return_request", _create_data()))
        await server.handle_request(make_envelope("create_call_request", {"callType": "video"}))

        data = (await server.handle_request(make_envelope("get_request_real_time_metrics"))).data
        assert data["recentRequests"] == 1
        assert data["pendingRequests"] == 1
        assert data["activeCalls"] == 1
        assert data["videoCalls"] == 1
        assert data["systemLoad"] == 8
