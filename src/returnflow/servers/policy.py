"""Policy control server.

Looks up the active return policy of a business (cached per business for a
fixed TTL) and evaluates return requests against it.
"""

import copy
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Set

from returnflow.common.constants import LoadConstants, PolicyConstants, Tables
from returnflow.common.exceptions import InvalidRequestError, PolicyNotFoundError
from returnflow.control.envelope import RequestEnvelope
from returnflow.control.server import ControlServer
from returnflow.control.sessions import CallSessionContext, SessionRegistry
from returnflow.core.types import CallType, Clock, SecurityLevel, isoformat, parse_timestamp, system_clock
from returnflow.governance.schemas import PolicyRules
from returnflow.servers.actions import PolicyAction
from returnflow.servers.base import business_id_of, require_field, system_load
from returnflow.storage.base import Record, Storage

logger = logging.getLogger(__name__)

SERVER_ID = "policy-server"

PolicyUpdateCallback = Callable[[str, List[str]], None]


def evaluate_compliance(return_request: Mapping[str, Any], rules: PolicyRules) -> Dict[str, Any]:
    """Run the four independent compliance checks.

    Returns ``{"compliance": {...4 booleans...}, "violations": [...]}``.
    """
    compliance = {
        "withinReturnWindow": True,
        "validReason": True,
        "hasRequiredEvidence": True,
        "belowThreshold": True,
    }
    violations: List[str] = []

    if float(return_request.get("daysSincePurchase") or 0) > rules.return_window_days:
        compliance["withinReturnWindow"] = False
        violations.append("Outside return window")

    reason = str(return_request.get("reason") or "").lower()
    if not any(accepted.lower() in reason for accepted in rules.acceptable_reasons):
        compliance["validReason"] = False
        violations.append("Invalid return reason")

    if rules.required_evidence and not return_request.get("evidenceUrls"):
        compliance["hasRequiredEvidence"] = False
        violations.append("Missing required evidence")

    if float(return_request.get("orderValue") or 0) > rules.auto_approve_threshold:
        compliance["belowThreshold"] = False
        violations.append("Order value exceeds auto-approval threshold")

    return {"compliance": compliance, "violations": violations}


def compliance_score(compliance: Mapping[str, bool]) -> float:
    """Percentage of passed checks."""
    if not compliance:
        return 100.0
    return sum(1 for passed in compliance.values() if passed) / len(compliance) * 100


def can_handle_in_call(return_request: Mapping[str, Any], rules: PolicyRules) -> bool:
    order_value = float(return_request.get("orderValue") or 0)
    reason = str(return_request.get("reason") or "").lower()
    return (
        order_value <= rules.auto_approve_threshold
        and reason in PolicyConstants.SIMPLE_CALL_REASONS
    )


def requires_call_escalation(
    return_request: Mapping[str, Any],
    rules: PolicyRules,
    call_context: Optional[Mapping[str, Any]] = None,
) -> bool:
    order_value = float(return_request.get("orderValue") or 0)
    call_duration = float((call_context or {}).get("duration") or 0)
    reason = str(return_request.get("reason") or "").lower()

    if order_value > rules.auto_approve_threshold:
        return True
    if call_duration > rules.max_call_duration:
        return True
    return reason in PolicyConstants.COMPLEX_CALL_REASONS


def call_response_text(
    return_request: Mapping[str, Any], violations: List[str], rules: PolicyRules
) -> str:
    if violations:
        return (
            "I'm sorry, but I cannot approve your return request at this time. "
            f"{', '.join(violations)}. Let me transfer you to a human representative."
        )
    if float(return_request.get("orderValue") or 0) <= rules.auto_approve_threshold:
        return (
            "Great news! I can approve your return request right now. "
            "Your refund will be processed within 3-5 business days."
        )
    return (
        "I understand your return request. This requires additional review due to "
        "the order value. Let me transfer you to a specialist."
    )


@dataclass
class _CachedPolicy:
    policy: Record
    stored_at: float


class PolicyService:
    """Domain logic behind the policy server's actions."""

    def __init__(
        self,
        storage: Storage,
        registry: SessionRegistry,
        cache_ttl_seconds: float = PolicyConstants.CACHE_TTL_SECONDS,
        clock: Clock = system_clock,
        on_policy_update: Optional[PolicyUpdateCallback] = None,
        metrics_sample_size: int = PolicyConstants.METRICS_SAMPLE_SIZE,
    ):
        self.storage = storage
        self.registry = registry
        self.cache_ttl_seconds = cache_ttl_seconds
        self.clock = clock
        self.on_policy_update = on_policy_update
        self._cache: Dict[str, _CachedPolicy] = {}
        self._subscriptions: Set[str] = set()
        # most recent checks only
        self._check_durations_ms: Deque[float] = deque(maxlen=metrics_sample_size)
        self._recent_scores: Deque[float] = deque(maxlen=metrics_sample_size)

    # ------------------------------------------------------------------
    # Policy lookup
    # ------------------------------------------------------------------

    async def load_policy(self, business_id: str) -> Record:
        """Active policy record for ``business_id``, served from cache when fresh."""
        now = self.clock().timestamp()
        cached = self._cache.get(business_id)
        if cached and now - cached.stored_at < self.cache_ttl_seconds:
            return cached.policy

        policy = await self.storage.find_one(
            Tables.POLICIES, business_id=business_id, is_active=True
        )
        if policy is None:
            raise PolicyNotFoundError(business_id)

        self._cache[business_id] = _CachedPolicy(policy, now)
        return policy

    async def load_rules(self, business_id: str) -> PolicyRules:
        policy = await self.load_policy(business_id)
        return PolicyRules.model_validate(policy.get("rules") or {})

    def invalidate_policy(self, business_id: str) -> List[str]:
        """Drop the cached policy and notify subscribed sessions.

        Returns the ids of the sessions that were notified.
        """
        self._cache.pop(business_id, None)
        prefix = f"{business_id}-"
        sessions = sorted(
            key[len(prefix):] for key in self._subscriptions if key.startswith(prefix)
        )
        logger.info(
            "Policy invalidated for %s, notifying %d sessions", business_id, len(sessions)
        )
        if self.on_policy_update and sessions:
            self.on_policy_update(business_id, sessions)
        return sessions

    async def _validate(self, request: RequestEnvelope) -> Dict[str, Any]:
        return_request = require_field(request.data, "returnRequest")
        started = time.perf_counter()
        rules = await self.load_rules(business_id_of(request))
        result = evaluate_compliance(return_request, rules)
        self._check_durations_ms.append((time.perf_counter() - started) * 1000)
        self._recent_scores.append(compliance_score(result["compliance"]))
        return {**result, "policy": rules.model_dump()}

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def get_active_policy(self, request: RequestEnvelope) -> Dict[str, Any]:
        return copy.deepcopy(await self.load_policy(business_id_of(request)))

    async def validate_request(self, request: RequestEnvelope) -> Dict[str, Any]:
        return await self._validate(request)

    async def get_policy_rules(self, request: RequestEnvelope) -> Dict[str, Any]:
        return (await self.load_rules(business_id_of(request))).model_dump()

    async def check_compliance(self, request: RequestEnvelope) -> Dict[str, Any]:
        return await self._validate(request)

    async def validate_call_request(self, request: RequestEnvelope) -> Dict[str, Any]:
        validation = await self._validate(request)
        rules = PolicyRules.model_validate(validation["policy"])
        return_request = request.data["returnRequest"]
        call_context = request.data.get("callContext") or {}

        call_session_id = request.context.call_session_id or call_context.get("callSessionId")
        if validation["violations"] and call_session_id in self.registry.calls:
            session = self.registry.calls.require(call_session_id)
            self.registry.calls.update(
                call_session_id, settings={**session.settings, "policyViolation": True}
            )

        return {
            **validation,
            "callSpecific": {
                "canHandleInCall": can_handle_in_call(return_request, rules),
                "requiresEscalation": requires_call_escalation(return_request, rules, call_context),
                "suggestedResponse": call_response_text(
                    return_request, validation["violations"], rules
                ),
            },
        }

    async def get_call_policy(self, request: RequestEnvelope) -> Dict[str, Any]:
        rules = await self.load_rules(business_id_of(request))
        return {
            **rules.model_dump(),
            "callSettings": {
                "allowVoiceCalls": rules.allow_voice_calls,
                "allowVideoCalls": rules.allow_video_calls,
                "autoEscalationThreshold": rules.auto_escalation_threshold,
                "maxCallDuration": rules.max_call_duration,
                "requireHumanReview": rules.require_human_review,
            },
        }

    def _channel_key(self, request: RequestEnvelope) -> str:
        session_id = request.context.session_id or request.data.get("sessionId")
        if not session_id:
            raise InvalidRequestError("sessionId is required", {"field": "sessionId"})
        return f"{business_id_of(request)}-{session_id}"

    async def subscribe_policy_updates(self, request: RequestEnvelope) -> Dict[str, Any]:
        channel_id = self._channel_key(request)
        self._subscriptions.add(channel_id)
        return {
            "subscribed": True,
            "channelId": channel_id,
            "message": "Subscribed to policy updates",
        }

    async def unsubscribe_policy_updates(self, request: RequestEnvelope) -> Dict[str, Any]:
        channel_id = self._channel_key(request)
        self._subscriptions.discard(channel_id)
        return {
            "unsubscribed": True,
            "channelId": channel_id,
            "message": "Unsubscribed from policy updates",
        }

    async def get_real_time_compliance(self, request: RequestEnvelope) -> Dict[str, Any]:
        validation = await self._validate(request)
        policy = await self.load_policy(business_id_of(request))
        context = {
            "currentTime": isoformat(self.clock()),
            "policyLastUpdated": policy.get("updated_at") or policy.get("created_at"),
            "activeCallSessions": len(self.registry.active_call_sessions()),
            "systemLoad": system_load(self.registry, LoadConstants.POLICY_COMPLIANCE_WEIGHT),
            "complianceScore": compliance_score(validation["compliance"]),
        }

        recommendations = []
        if validation["violations"]:
            recommendations.append("Consider escalating to human agent due to policy violations")
        if context["systemLoad"] > LoadConstants.HIGH_LOAD:
            recommendations.append(
                "High system load detected - consider queuing non-urgent requests"
            )
        if context["complianceScore"] < LoadConstants.LOW_COMPLIANCE:
            recommendations.append("Low compliance score - review policy rules")

        return {**validation, "realTimeContext": context, "recommendations": recommendations}

    async def validate_streaming_request(self, request: RequestEnvelope) -> Dict[str, Any]:
        streaming_type = require_field(request.data, "streamingType")
        call_session_id = request.data.get("callSessionId") or request.context.call_session_id
        rules = await self.load_rules(business_id_of(request))
        session = self.registry.calls.require(call_session_id)

        allowed = False
        restrictions: List[str] = []
        settings: Dict[str, Any] = {}
        recording = bool(getattr(rules, "record_calls", False))

        if streaming_type == CallType.VOICE.value and rules.allow_voice_calls:
            allowed = True
            settings = {
                "maxDuration": rules.max_call_duration,
                "quality": "high",
                "recording": recording,
            }
        elif streaming_type == CallType.VIDEO.value and rules.allow_video_calls:
            allowed = True
            settings = {
                "maxDuration": rules.max_call_duration,
                "quality": "medium",
                "recording": recording,
                "bandwidthLimit": getattr(rules, "video_bandwidth_limit", "2Mbps"),
            }
        else:
            restrictions.append(f"{streaming_type} calls not allowed")

        if _call_elapsed_seconds(session, self.clock) > rules.max_call_duration:
            allowed = False
            restrictions.append("Call duration limit exceeded")

        return {"allowed": allowed, "restrictions": restrictions, "streamingSettings": settings}

    async def get_policy_analytics(self, request: RequestEnvelope) -> Dict[str, Any]:
        business_id = business_id_of(request)
        since = self.clock() - timedelta(days=PolicyConstants.ANALYTICS_WINDOW_DAYS)
        requests = await self.storage.find(
            Tables.RETURN_REQUESTS,
            match={"business_id": business_id},
            where=lambda r: parse_timestamp(r["created_at"]) >= since,
        )

        reason_counts: Dict[str, int] = {}
        for r in requests:
            reason_counts[r.get("reason", "")] = reason_counts.get(r.get("reason", ""), 0) + 1
        top_reasons = sorted(reason_counts.items(), key=lambda item: item[1], reverse=True)

        calls = [c for c in self.registry.active_call_sessions() if c.business_id == business_id]
        return {
            "totalRequests": len(requests),
            "approvedRequests": sum(1 for r in requests if r.get("status") == "approved"),
            "rejectedRequests": sum(
                1 for r in requests if r.get("status") in ("rejected", "denied")
            ),
            "averageProcessingTime": _average_processing_seconds(requests),
            "complianceRate": _compliance_rate(requests),
            "topReasons": [
                {"reason": reason, "count": count}
                for reason, count in top_reasons[:PolicyConstants.TOP_REASONS_LIMIT]
            ],
            "callInteractions": _call_stats(calls, self.clock),
        }

    async def get_policy_call_analytics(self, request: RequestEnvelope) -> Dict[str, Any]:
        business_id = business_id_of(request)
        calls = [c for c in self.registry.active_call_sessions() if c.business_id == business_id]
        flagged = sum(1 for c in calls if c.settings.get("policyViolation"))
        durations = self._check_durations_ms
        return {
            "totalPolicyChecks": len(calls),
            "policyViolations": flagged,
            "complianceRate": 100.0 if not calls else (len(calls) - flagged) / len(calls) * 100,
            "averagePolicyCheckTime": sum(durations) / len(durations) if durations else 0.0,
        }

    async def get_policy_real_time_metrics(self, request: RequestEnvelope) -> Dict[str, Any]:
        scores = self._recent_scores
        return {
            "activePolicySessions": len(self.registry.active_conversations()),
            "activePolicyCalls": len(self.registry.active_call_sessions()),
            "policySystemLoad": system_load(self.registry, LoadConstants.POLICY_METRICS_WEIGHT),
            "policyComplianceScore": sum(scores) / len(scores) if scores else 100.0,
        }

    async def validate_policy_call_permissions(self, request: RequestEnvelope) -> Dict[str, Any]:
        call_type = request.data.get("callType") or (
            request.context.call_type.value if request.context.call_type else None
        )
        rules = await self.load_rules(business_id_of(request))

        permissions: Dict[str, Any] = {"allowed": True, "reason": "", "restrictions": []}
        if call_type == CallType.VOICE.value and not rules.allow_voice_calls:
            permissions["allowed"] = False
            permissions["reason"] = "Voice calls not allowed by policy"
            permissions["restrictions"].append("voice_calls_disabled_by_policy")
        if call_type == CallType.VIDEO.value and not rules.allow_video_calls:
            permissions["allowed"] = False
            permissions["reason"] = "Video calls not allowed by policy"
            permissions["restrictions"].append("video_calls_disabled_by_policy")
        return permissions

    def handlers(self):
        return {
            PolicyAction.GET_ACTIVE_POLICY: self.get_active_policy,
            PolicyAction.VALIDATE_REQUEST: self.validate_request,
            PolicyAction.GET_POLICY_RULES: self.get_policy_rules,
            PolicyAction.CHECK_COMPLIANCE: self.check_compliance,
            PolicyAction.VALIDATE_CALL_REQUEST: self.validate_call_request,
            PolicyAction.GET_CALL_POLICY: self.get_call_policy,
            PolicyAction.SUBSCRIBE_POLICY_UPDATES: self.subscribe_policy_updates,
            PolicyAction.UNSUBSCRIBE_POLICY_UPDATES: self.unsubscribe_policy_updates,
            PolicyAction.GET_REAL_TIME_COMPLIANCE: self.get_real_time_compliance,
            PolicyAction.VALIDATE_STREAMING_REQUEST: self.validate_streaming_request,
            PolicyAction.GET_POLICY_ANALYTICS: self.get_policy_analytics,
            PolicyAction.GET_POLICY_CALL_ANALYTICS: self.get_policy_call_analytics,
            PolicyAction.GET_POLICY_REAL_TIME_METRICS: self.get_policy_real_time_metrics,
            PolicyAction.VALIDATE_POLICY_CALL_PERMISSIONS: self.validate_policy_call_permissions,
        }


def _call_elapsed_seconds(session: CallSessionContext, clock: Clock) -> float:
    started = session.started_at or session.last_activity
    return (clock() - started).total_seconds()


def _average_processing_seconds(requests: List[Record]) -> float:
    durations = []
    for r in requests:
        processed = r.get("processed_at") or r.get("admin_decision_at")
        if processed and r.get("created_at"):
            delta = parse_timestamp(processed) - parse_timestamp(r["created_at"])
            durations.append(delta.total_seconds())
    return sum(durations) / len(durations) if durations else 0.0


def _compliance_rate(requests: List[Record]) -> float:
    if not requests:
        return 0.0
    compliant = sum(
        1 for r in requests
        if float(r.get("compliance_score") or 0) >= PolicyConstants.COMPLIANT_SCORE
    )
    return compliant / len(requests) * 100


def _call_stats(calls: List[CallSessionContext], clock: Clock) -> Dict[str, Any]:
    durations = [_call_elapsed_seconds(c, clock) for c in calls]
    return {
        "activeCalls": len(calls),
        "voiceCalls": sum(1 for c in calls if c.call_type == CallType.VOICE),
        "videoCalls": sum(1 for c in calls if c.call_type == CallType.VIDEO),
        "averageCallDuration": sum(durations) / len(durations) if durations else 0.0,
    }


def create_policy_server(
    storage: Storage,
    registry: Optional[SessionRegistry] = None,
    clock: Clock = system_clock,
    **server_options: Any,
) -> ControlServer:
    """Build the policy control server around a ``PolicyService``."""
    registry = registry or SessionRegistry(clock)
    cache_ttl = server_options.pop("cache_ttl_seconds", PolicyConstants.CACHE_TTL_SECONDS)
    on_update = server_options.pop("on_policy_update", None)
    sample_size = server_options.pop(
        "metrics_sample_size", PolicyConstants.METRICS_SAMPLE_SIZE
    )
    service = PolicyService(storage, registry, cache_ttl, clock, on_update, sample_size)
    return ControlServer(
        SERVER_ID,
        PolicyAction,
        service.handlers(),
        security_level=SecurityLevel.HIGH,
        registry=registry,
        clock=clock,
        domain=service,
        **server_options,
    )
