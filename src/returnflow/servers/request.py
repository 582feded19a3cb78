"""Request control server: return requests, customer history, call-originated requests."""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional
from uuid import uuid4

from returnflow.common.constants import LoadConstants, Tables
from returnflow.common.exceptions import InvalidRequestError
from returnflow.control.envelope import RequestEnvelope
from returnflow.control.server import ControlServer
from returnflow.control.sessions import CallSessionContext, SessionRegistry
from returnflow.core.types import (
    CallProvider,
    CallStatus,
    CallType,
    Clock,
    SecurityLevel,
    isoformat,
    parse_timestamp,
    system_clock,
)
from returnflow.servers.actions import RequestAction
from returnflow.servers.base import business_id_of, parse_enum, require_field, system_load
from returnflow.servers.risk import assess_customer_risk
from returnflow.storage.base import Record, Storage

logger = logging.getLogger(__name__)

SERVER_ID = "request-server"

PENDING_TRIAGE = "pending_triage"
DECIDED_STATUSES = ("approved", "denied")


def _public_id() -> str:
    return f"RET-{uuid4().hex[:10].upper()}"


class RequestService:
    """Domain logic behind the request server's actions."""

    def __init__(self, storage: Storage, registry: SessionRegistry, clock: Clock = system_clock):
        self.storage = storage
        self.registry = registry
        self.clock = clock

    def _now(self) -> str:
        return isoformat(self.clock())

    async def _single_update(self, match: Dict[str, Any], changes: Dict[str, Any]) -> Record:
        rows = await self.storage.update(Tables.RETURN_REQUESTS, match, changes)
        if not rows:
            raise InvalidRequestError("Return request not found", {"match": match})
        return rows[0]

    async def get_return_request(self, request: RequestEnvelope) -> Record:
        public_id = require_field(request.data, "publicId")
        row = await self.storage.find_one(Tables.RETURN_REQUESTS, public_id=public_id)
        if row is None:
            raise InvalidRequestError("Return request not found", {"publicId": public_id})
        return row

    async def update_status(self, request: RequestEnvelope) -> Record:
        public_id = require_field(request.data, "publicId")
        status = require_field(request.data, "status")
        changes: Dict[str, Any] = {"status": status}
        if "adminNotes" in request.data:
            changes["admin_notes"] = request.data["adminNotes"]

        if status in DECIDED_STATUSES:
            changes["admin_decision_at"] = self._now()
            reason = request.data.get("decisionReason")
            if reason:
                notes = changes.get("admin_notes") or ""
                changes["admin_notes"] = f"{notes}\n\nDecision: {reason}".strip()

        return await self._single_update({"public_id": public_id}, changes)

    async def create_return_request(self, request: RequestEnvelope) -> Record:
        data = request.data
        return await self.storage.insert(Tables.RETURN_REQUESTS, {
            "public_id": _public_id(),
            "business_id": business_id_of(request),
            "order_id": require_field(data, "orderId"),
            "customer_email": data.get("customerEmail"),
            "reason": require_field(data, "reason"),
            "evidence_urls": list(data.get("evidenceUrls") or []),
            "order_value": float(data.get("orderValue") or 0),
            "compliance_score": data.get("complianceScore"),
            "ai_decision": data.get("decision"),
            "call_session_id": data.get("callSessionId") or request.context.call_session_id,
            "status": PENDING_TRIAGE,
        })

    async def get_customer_history(self, request: RequestEnvelope) -> Dict[str, Any]:
        customer_email = require_field(request.data, "customerEmail")
        history = await self.storage.find(
            Tables.RETURN_REQUESTS,
            match={"customer_email": customer_email, "business_id": business_id_of(request)},
            order_by="created_at",
            descending=True,
        )
        score, factors = assess_customer_risk(
            history,
            self.clock(),
            order_value=float(request.data.get("orderValue") or 0),
            reason=str(request.data.get("reason") or ""),
        )
        return {
            "requests": history,
            "returnCount": len(history),
            "riskScore": score,
            "riskFactors": factors,
        }

    async def log_decision(self, request: RequestEnvelope) -> Record:
        data = request.data
        return await self.storage.insert(Tables.AUDIT_LOGS, {
            "business_id": business_id_of(request),
            "agent_type": data.get("agentType", "triage"),
            "interaction_id": data.get("returnRequestId") or request.id,
            "performance_metrics": {
                "decision": require_field(data, "decision"),
                "confidence": data.get("confidence"),
                "reasoning": data.get("reasoning"),
            },
        })

    def _live_call(self, call_session_id: Optional[str]) -> CallSessionContext:
        session = self.registry.calls.require(call_session_id)
        if session.call_status == CallStatus.ENDED:
            raise InvalidRequestError("Call session has ended", {"callSessionId": call_session_id})
        return session

    async def _log_call_event(self, call_session_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        await self.storage.insert(Tables.CALL_EVENTS, {
            "call_session_id": call_session_id,
            "event_type": event_type,
            "payload": payload,
            "timestamp": self._now(),
        })

    async def handle_call_request(self, request: RequestEnvelope) -> Dict[str, Any]:
        data = request.data
        call_session_id = data.get("callSessionId") or request.context.call_session_id
        session = self._live_call(call_session_id)
        return_request = require_field(data, "returnRequest")

        if return_request.get("id"):
            changes = {"status": return_request.get("status")}
            if "adminNotes" in return_request:
                changes["admin_notes"] = return_request["adminNotes"]
            row = await self._single_update({"id": return_request["id"]}, changes)
        else:
            customer = data.get("customerInfo") or {}
            row = await self.storage.insert(Tables.RETURN_REQUESTS, {
                "public_id": _public_id(),
                "business_id": business_id_of(request),
                "order_id": require_field(return_request, "orderId"),
                "customer_email": customer.get("email"),
                "reason": require_field(return_request, "reason"),
                "evidence_urls": list(return_request.get("evidenceUrls") or []),
                "order_value": float(return_request.get("orderValue") or 0),
                "call_session_id": call_session_id,
                "status": PENDING_TRIAGE,
            })

        await self._log_call_event(
            call_session_id, "request_handling", {"returnRequestId": row["id"]}
        )
        session = self.registry.calls.update(call_session_id)
        return {
            "returnRequest": row,
            "callContext": {
                "sessionId": call_session_id,
                "type": session.call_type.value,
                "status": CallStatus.ACTIVE.value,
                "lastActivity": isoformat(session.last_activity),
            },
        }

    async def update_call_status(self, request: RequestEnvelope) -> Dict[str, Any]:
        data = request.data
        call_session_id = data.get("callSessionId") or request.context.call_session_id
        status = parse_enum(CallStatus, require_field(data, "status"), "status")

        self.registry.calls.update(call_session_id, call_status=status)
        if status == CallStatus.ENDED:
            await self.storage.update(
                Tables.CALL_SESSIONS,
                {"id": call_session_id},
                {
                    "status": status.value,
                    "duration": data.get("duration"),
                    "outcome": data.get("outcome"),
                    "notes": data.get("notes"),
                    "ended_at": self._now(),
                },
            )
        return {"callSessionId": call_session_id, "status": status.value, "updatedAt": self._now()}

    async def get_call_history(self, request: RequestEnvelope) -> Dict[str, Any]:
        match = {"business_id": business_id_of(request)}
        if request.data.get("customerEmail"):
            match["customer_email"] = request.data["customerEmail"]
        calls = await self.storage.find(
            Tables.CALL_SESSIONS,
            match=match,
            order_by="created_at",
            descending=True,
            limit=int(request.data.get("limit", 10)),
        )
        return {"calls": calls, "count": len(calls)}

    async def create_call_request(self, request: RequestEnvelope) -> Record:
        data = request.data
        call_type = parse_enum(CallType, require_field(data, "callType"), "callType")
        provider = parse_enum(
            CallProvider, data.get("provider") or CallProvider.INTERNAL.value, "provider"
        )
        row = await self.storage.insert(Tables.CALL_SESSIONS, {
            "business_id": business_id_of(request),
            "customer_email": data.get("customerEmail"),
            "return_request_id": data.get("returnRequestId"),
            "chat_session_id": data.get("chatSessionId"),
            "call_type": call_type.value,
            "provider": provider.value,
            "status": CallStatus.INITIATED.value,
        })
        now = self.clock()
        self.registry.calls.register(CallSessionContext(
            call_session_id=row["id"],
            call_type=call_type,
            provider=provider,
            business_id=business_id_of(request),
            streaming_enabled=True,
            participant_count=1,
            call_status=CallStatus.INITIATED,
            started_at=now,
            last_activity=now,
        ))
        return row

    async def stream_call_update(self, request: RequestEnvelope) -> Dict[str, Any]:
        data = request.data
        call_session_id = data.get("callSessionId") or request.context.call_session_id
        update_type = require_field(data, "updateType")
        self.registry.calls.update(call_session_id)
        await self._log_call_event(call_session_id, update_type, data.get("updateData") or {})
        return {
            "callSessionId": call_session_id,
            "updateType": update_type,
            "timestamp": self._now(),
            "status": "streamed",
        }

    async def get_request_real_time_metrics(self, request: RequestEnvelope) -> Dict[str, Any]:
        business_id = business_id_of(request)
        now = self.clock()
        since = now - timedelta(hours=24)
        recent = await self.storage.find(
            Tables.RETURN_REQUESTS,
            match={"business_id": business_id},
            where=lambda r: parse_timestamp(r["created_at"]) >= since,
        )
        calls = [c for c in self.registry.active_call_sessions() if c.business_id == business_id]
        durations = [(now - (c.started_at or c.last_activity)).total_seconds() for c in calls]
        return {
            "activeCalls": len(calls),
            "voiceCalls": sum(1 for c in calls if c.call_type == CallType.VOICE),
            "videoCalls": sum(1 for c in calls if c.call_type == CallType.VIDEO),
            "recentRequests": len(recent),
            "pendingRequests": sum(1 for r in recent if r.get("status") == PENDING_TRIAGE),
            "averageCallDuration": sum(durations) / len(durations) if durations else 0.0,
            "systemLoad": system_load(self.registry, LoadConstants.REQUEST_METRICS_WEIGHT),
        }

    def handlers(self):
        return {
            RequestAction.GET_RETURN_REQUEST: self.get_return_request,
            RequestAction.UPDATE_STATUS: self.update_status,
            RequestAction.CREATE_RETURN_REQUEST: self.create_return_request,
            RequestAction.GET_CUSTOMER_HISTORY: self.get_customer_history,
            RequestAction.LOG_DECISION: self.log_decision,
            RequestAction.HANDLE_CALL_REQUEST: self.handle_call_request,
            RequestAction.UPDATE_CALL_STATUS: self.update_call_status,
            RequestAction.GET_CALL_HISTORY: self.get_call_history,
            RequestAction.CREATE_CALL_REQUEST: self.create_call_request,
            RequestAction.STREAM_CALL_UPDATE: self.stream_call_update,
            RequestAction.GET_REQUEST_REAL_TIME_METRICS: self.get_request_real_time_metrics,
        }


def create_request_server(
    storage: Storage,
    registry: Optional[SessionRegistry] = None,
    clock: Clock = system_clock,
    **server_options: Any,
) -> ControlServer:
    """Build the request control server around a ``RequestService``."""
    registry = registry or SessionRegistry(clock)
    service = RequestService(storage, registry, clock)
    return ControlServer(
        SERVER_ID,
        RequestAction,
        service.handlers(),
        security_level=SecurityLevel.HIGH,
        registry=registry,
        clock=clock,
        domain=service,
        **server_options,
    )
