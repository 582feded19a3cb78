"""Tests for the API Gateway.

These tests verify that:
1. /decisions runs the layered engine and answers with a wire envelope
2. /servers/{server}/requests dispatches to the domain control servers
3. /policies/{business_id}/invalidate reloads a policy and notifies subscribers
4. Probes and request tracing work as expected
"""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from returnflow.analysis.schemas import ConversationalReply, TriageResult
from returnflow.api.gateway import ServiceManager, app
from returnflow.api.service import ControlPlaneService
from returnflow.common.config import Config
from returnflow.governance.schemas import AuditEventType

SEED_FILE = Path(__file__).resolve().parents[3] / "config" / "policies.yaml"


@pytest.fixture
def triage():
    analyzer = MagicMock()
    analyzer.evaluate = AsyncMock(return_value=TriageResult(
        decision="auto_approve", confidence=0.92, reasoning="Defect confirmed",
    ))
    return analyzer


@pytest.fixture
def service(tmp_path, triage):
    conversational = MagicMock()
    conversational.process_call_message = AsyncMock(
        return_value=ConversationalReply(success=True, message="Hello!")
    )
    config = Config(
        audit_enabled=True,
        audit_log_dir=tmp_path / "audit",
        policy_seed_file=SEED_FILE,
        openai_api_key=None,
    )
    return ControlPlaneService(config=config, triage=triage, conversational=conversational)


@pytest.fixture
def client(service):
    """Create a test client around a pre-built control plane."""
    ServiceManager.set_service(service)
    with TestClient(app) as test_client:
        yield test_client
    ServiceManager.shutdown()


def decision_body(**data) -> dict:
    return {
        "id": "req-1",
        "agentId": "checkout-ui",
        "businessId": "demo-store",
        "action": "process_decision",
        "data": {
            "orderId": "ORDER-77",
            "customerEmail": "sam@example.com",
            "reason": "defective",
            "orderValue": 45,
            "daysSincePurchase": 3,
            **data,
        },
        "context": {"sessionId": "sess-1", "userRole": "customer"},
    }


class TestHealthEndpoints:
    """Tests for /health and /ready."""

    def test_health_check_returns_healthy(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "returnflow-gateway"}

    def test_ready_after_startup(self, client):
        response = client.get("/ready")

        assert response.status_code == 200
        body = response.json()
        assert body["servers"] == ["call", "conversation", "policy", "request"]
        assert body["policies_loaded"] == 2

    def test_not_ready_before_startup(self, service):
        ServiceManager.set_service(service)
        try:
            response = TestClient(app).get("/ready")
            assert response.status_code == 503
        finally:
            ServiceManager.shutdown()


class TestDecisionEndpoint:
    """Tests for POST /decisions."""

    def test_approved_return(self, client, service):
        response = client.post("/decisions", json=decision_body())

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["decision"]["finalAction"] == "create_return_request"
        assert body["data"]["returnRequest"]["order_id"] == "ORDER-77"
        assert body["auditTrail"]["requestId"] == "req-1"
        assert service.audit_logger.get_entry_count() == 1

    def test_action_defaults_to_process_decision(self, client):
        body = decision_body()
        del body["action"]

        response = client.post("/decisions", json=body)
        assert response.json()["success"] is True

    def test_policy_violation_needs_review(self, client):
        response = client.post("/decisions", json=decision_body(daysSincePurchase=90))

        decision = response.json()["data"]["decision"]
        assert decision["finalAction"] == "human_review"
        assert decision["requiresHumanReview"] is True

    def test_stage_failure_is_an_error_envelope(self, client):
        body = decision_body()
        body["businessId"] = "unknown-store"

        response = client.post("/decisions", json=body)

        assert response.status_code == 200
        payload = response.json()
        assert payload["success"] is False
        assert payload["error"].startswith("Layer 2 failed")
        assert payload["errorCode"] == "POLICY_NOT_FOUND"
        assert payload["auditTrail"]["securityFlags"] == ["error_response"]


class TestServerDispatch:
    """Tests for POST /servers/{server}/requests."""

    def test_policy_server_request(self, client):
        response = client.post("/servers/policy/requests", json={
            "id": "req-2",
            "agentId": "admin-ui",
            "businessId": "premium-outfitters",
            "action": "get_policy_rules",
            "data": {},
        })

        body = response.json()
        assert body["success"] is True
        assert body["data"]["return_window_days"] == 60

    def test_call_then_status_shares_registry(self, client):
        started = client.post("/servers/call/requests", json={
            "id": "req-3",
            "agentId": "support-ui",
            "businessId": "demo-store",
            "action": "initiate_call",
            "data": {"callType": "voice"},
        }).json()
        call_id = started["data"]["callSession"]["id"]

        status = client.post("/servers/call/requests", json={
            "id": "req-4",
            "agentId": "support-ui",
            "businessId": "demo-store",
            "action": "get_call_status",
            "data": {"callSessionId": call_id},
        }).json()
        assert status["data"]["callStatus"] == "initiated"

    def test_disallowed_action(self, client):
        response = client.post("/servers/request/requests", json={
            "id": "req-5",
            "agentId": "checkout-ui",
            "businessId": "demo-store",
            "action": "drop_tables",
            "data": {},
        })

        body = response.json()
        assert body["success"] is False
        assert body["error"] == "Action 'drop_tables' not allowed"

    def test_unknown_server_returns_404(self, client):
        response = client.post("/servers/billing/requests", json={"action": "noop"})
        assert response.status_code == 404


class TestPolicyInvalidation:
    """Tests for POST /policies/{business_id}/invalidate."""

    def test_notifies_subscribed_sessions(self, client, service):
        client.post("/servers/policy/requests", json={
            "id": "req-6",
            "agentId": "support-ui",
            "businessId": "premium-outfitters",
            "action": "subscribe_policy_updates",
            "data": {},
            "context": {"sessionId": "sess-9"},
        })

        response = client.post("/policies/premium-outfitters/invalidate")

        assert response.status_code == 200
        assert response.json() == {
            "business_id": "premium-outfitters",
            "notified_sessions": ["sess-9"],
        }
        events = list(service.audit_logger.get_entries(event_type=AuditEventType.SYSTEM_EVENT))
        assert events[-1].metadata == {
            "event_description": "policy_updated",
            "business_id": "premium-outfitters",
            "session_ids": ["sess-9"],
        }

    def test_without_subscribers(self, client):
        response = client.post("/policies/demo-store/invalidate")
        assert response.json()["notified_sessions"] == []


class TestRequestTracing:
    """X-Request-ID propagation."""

    def test_request_id_header_is_generated(self, client):
        response = client.get("/health")
        assert response.headers["X-Request-ID"].startswith("req_")

    def test_request_id_header_is_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "trace-123"})
        assert response.headers["X-Request-ID"] == "trace-123"
