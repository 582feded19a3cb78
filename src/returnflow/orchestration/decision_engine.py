"""Layered Decision Engine - the only place return decisions are made.

Four strictly sequential stages turn a raw return or in-call event into one
decision:

1. Data collection: customer history and live call state
2. Policy validation: active policy and the four compliance checks
3. AI analysis: triage or conversational capability, then the combination
   of AI output with policy compliance
4. Action execution: create the return request when approved, optional
   media synthesis, decision log row

Stage N+1 only runs when stage N succeeds. Every stage runs under the same
time budget; expiry counts as that stage's failure. All sub-requests go
through the domain control servers, so they are validated, rate limited and
circuit broken like any other caller's requests.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from returnflow.analysis.ports import ConversationalAgent, MediaSynthesizer, TriageAnalyzer
from returnflow.analysis.schemas import (
    AIAnalysis,
    TriageInput,
    normalize_conversational_reply,
    normalize_triage_result,
)
from returnflow.common.constants import ControlServerConstants, DecisionConstants
from returnflow.common.exceptions import (
    AuditError,
    ConfigurationError,
    ReturnFlowException,
    StageTimeoutError,
)
from returnflow.control.envelope import AuditTrail, RequestEnvelope, ResponseEnvelope
from returnflow.control.server import ControlServer
from returnflow.core.types import Clock, FinalAction, TriageVerdict, UserRole, isoformat, system_clock
from returnflow.governance.audit.logger import AuditLogger
from returnflow.governance.audit.sink import AuditSink
from returnflow.governance.schemas import PolicyRules
from returnflow.orchestration.decision_context import DecisionContext, Stage, StageResult

logger = logging.getLogger(__name__)

PROCESS_DECISION = "process_decision"

StageRunner = Callable[[DecisionContext, AuditSink], Awaitable[StageResult]]


def engine_agent_id(business_id: str) -> str:
    """Caller id of the engine's sub-requests for one tenant.

    Servers rate-limit and trip breakers per caller, so each tenant gets its own.
    """
    return f"{DecisionConstants.ENGINE_AGENT_ID}:{business_id}"


def combine_decision(ai: AIAnalysis, validation: Mapping[str, Any]) -> Dict[str, Any]:
    """Combine the normalized AI verdict with policy compliance.

    Policy non-compliance always wins over AI optimism, and a confidence
    below the human-review gate always requires review even on the
    approval path. A compliance flag that is missing counts as failed.
    """
    compliance = validation.get("compliance") or {}
    within_window = bool(compliance.get("withinReturnWindow"))
    valid_reason = bool(compliance.get("validReason"))
    below_threshold = bool(compliance.get("belowThreshold"))

    if not within_window or not valid_reason:
        action = FinalAction.HUMAN_REVIEW
    elif ai.decision == TriageVerdict.HUMAN_REVIEW:
        action = FinalAction.HUMAN_REVIEW
    elif ai.decision == TriageVerdict.AUTO_APPROVE and below_threshold:
        action = FinalAction.CREATE_RETURN_REQUEST
    else:
        action = FinalAction.HUMAN_REVIEW

    requires_human_review = (
        ai.decision == TriageVerdict.HUMAN_REVIEW
        or not within_window
        or not valid_reason
        or ai.confidence < DecisionConstants.HUMAN_REVIEW_CONFIDENCE
    )

    return {
        "finalAction": action.value,
        "aiDecision": ai.decision.value,
        "confidence": ai.confidence,
        "reasoning": ai.reasoning,
        "source": ai.source,
        "policyCompliance": dict(compliance),
        "violations": list(validation.get("violations") or []),
        "requiresHumanReview": requires_human_review,
    }


class LayeredDecisionEngine:
    """Runs the four decision stages over the domain control servers.

    Args:
        request_server / policy_server / call_server: Domain control servers.
        triage: Capability used for non-call return requests.
        conversational: Capability used for live-call interactions.
        synthesizer: Optional text-to-speech/video capability for call replies.
        audit_logger: JSONL audit log the per-decision sink flushes into.
        stage_timeout: Seconds each stage may take, between 10 and 30.
    """

    def __init__(
        self,
        request_server: ControlServer,
        policy_server: ControlServer,
        call_server: ControlServer,
        triage: TriageAnalyzer,
        conversational: ConversationalAgent,
        synthesizer: Optional[MediaSynthesizer] = None,
        audit_logger: Optional[AuditLogger] = None,
        stage_timeout: float = DecisionConstants.STAGE_TIMEOUT_SECONDS,
        clock: Clock = system_clock,
    ):
        if not (
            DecisionConstants.STAGE_TIMEOUT_MIN_SECONDS
            <= stage_timeout
            <= DecisionConstants.STAGE_TIMEOUT_MAX_SECONDS
        ):
            raise ConfigurationError(
                "Stage timeout must be between "
                f"{DecisionConstants.STAGE_TIMEOUT_MIN_SECONDS:g} and "
                f"{DecisionConstants.STAGE_TIMEOUT_MAX_SECONDS:g} seconds",
                {"stage_timeout": stage_timeout},
            )

        self.request_server = request_server
        self.policy_server = policy_server
        self.call_server = call_server
        self.triage = triage
        self.conversational = conversational
        self.synthesizer = synthesizer
        self.audit_logger = audit_logger
        self.stage_timeout = stage_timeout
        self.clock = clock

        self._stages: List[Tuple[Stage, StageRunner]] = [
            (Stage.DATA_COLLECTION, self._collect_data),
            (Stage.POLICY_VALIDATION, self._validate_policy),
            (Stage.AI_ANALYSIS, self._analyze),
            (Stage.ACTION_EXECUTION, self._execute),
        ]

    async def process(
        self, envelope: Union[RequestEnvelope, Mapping[str, Any]]
    ) -> ResponseEnvelope:
        """Run one decision request through all four stages.

        Never raises for stage or collaborator failures: the first failing
        stage ends the run with a failed envelope carrying the audit trail
        accumulated so far.
        """
        started = time.perf_counter()
        if not isinstance(envelope, RequestEnvelope):
            try:
                envelope = RequestEnvelope.model_validate(dict(envelope))
            except PydanticValidationError:
                return self._rejected(RequestEnvelope(), "Invalid request envelope")
        if not envelope.business_id:
            return self._rejected(envelope, "Missing required fields")
        if envelope.action and envelope.action != PROCESS_DECISION:
            return self._rejected(envelope, f"Action '{envelope.action}' not allowed")

        context = DecisionContext.create(envelope, self.clock)
        sink = AuditSink(self.audit_logger, self.clock)
        logger.info(
            "Processing decision %s for business %s",
            context.decision_id, context.business_id,
            extra={"decision_id": context.decision_id, "call": context.is_call_interaction},
        )

        for layer, (stage, runner) in enumerate(self._stages, start=1):
            result = await self._run_stage(stage, runner, context, sink)
            sink.append(
                stage.value,
                layer=layer,
                success=result.success,
                errors=result.errors,
                warnings=result.warnings,
                metadata=result.metadata,
                data=result.data,
            )
            if not result.success:
                error = f"Layer {layer} failed: {', '.join(result.errors)}"
                logger.warning(
                    "Decision %s aborted at %s: %s",
                    context.decision_id, stage.value, error,
                )
                trail = sink.entries
                self._flush(sink, context, error=error)
                return self._failure(envelope, error, result.error_code, trail)
            context = self._advance(context, stage, result.data)

        decision = dict(context.ai_analysis["combinedDecision"])
        trail = sink.entries
        self._flush(sink, context, decision=decision)
        logger.info(
            "Decision %s: %s (confidence %.2f, human review %s)",
            context.decision_id, decision["finalAction"],
            decision["confidence"], decision["requiresHumanReview"],
        )

        data = {
            "decisionId": context.decision_id,
            **context.final_decision,
            "auditTrail": trail,
        }
        return ResponseEnvelope(
            id=envelope.id,
            timestamp=isoformat(self.clock()),
            success=True,
            data=data,
            audit_trail=self._audit_trail(envelope, (time.perf_counter() - started) * 1000, []),
        )

    # ------------------------------------------------------------------
    # Stage plumbing
    # ------------------------------------------------------------------

    async def _run_stage(
        self,
        stage: Stage,
        runner: StageRunner,
        context: DecisionContext,
        sink: AuditSink,
    ) -> StageResult:
        logger.debug("Decision %s entering %s", context.decision_id, stage.value)
        try:
            return await asyncio.wait_for(runner(context, sink), timeout=self.stage_timeout)
        except asyncio.TimeoutError:
            error = StageTimeoutError(stage.value, self.stage_timeout)
            return StageResult.failed(error.message, error_code=error.code)
        except ReturnFlowException as e:
            return StageResult.failed(e.message, error_code=e.code)
        except Exception as e:
            logger.exception("Stage %s raised", stage.value)
            return StageResult.failed(f"{stage.value} error: {e}", error_code="STAGE_FAILED")

    @staticmethod
    def _flush(
        sink: AuditSink,
        context: DecisionContext,
        decision: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        """Write the decision audit entry; a failed write never fails the decision."""
        try:
            sink.flush(
                context.decision_id, context.business_id, context.session_id,
                decision=decision, error=error,
            )
        except AuditError as e:
            logger.error("Failed to write audit entry for %s: %s", context.decision_id, e)

    @staticmethod
    def _advance(context: DecisionContext, stage: Stage, data: Dict[str, Any]) -> DecisionContext:
        if stage == Stage.DATA_COLLECTION:
            return context.with_enriched_data(data)
        if stage == Stage.POLICY_VALIDATION:
            return context.with_policy_data(data)
        if stage == Stage.AI_ANALYSIS:
            return context.with_ai_analysis(data)
        return context.with_final_decision(data)

    async def _call(
        self,
        server: ControlServer,
        context: DecisionContext,
        sink: AuditSink,
        action: str,
        data: Dict[str, Any],
    ) -> ResponseEnvelope:
        request = RequestEnvelope.create(
            engine_agent_id(context.business_id),
            context.business_id,
            action,
            {"businessId": context.business_id, **data},
            user_role=UserRole.SYSTEM.value,
            request_id=context.request_id,
            session_id=context.session_id,
        )
        return await server.handle_request(request, audit_sink=sink)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _collect_data(self, context: DecisionContext, sink: AuditSink) -> StageResult:
        raw = context.raw_data
        errors = []
        if not raw.get("orderId"):
            errors.append("Order ID is required")
        if not raw.get("reason"):
            errors.append("Return reason is required")
        if errors:
            return StageResult.failed(*errors, error_code="INVALID_REQUEST")

        enriched: Dict[str, Any] = {}
        warnings: List[str] = []

        if raw.get("customerEmail"):
            response = await self._call(
                self.request_server, context, sink, "get_customer_history",
                {"customerEmail": raw["customerEmail"], "orderValue": raw.get("orderValue"),
                 "reason": raw.get("reason")},
            )
            if response.success:
                enriched["customerHistory"] = response.data
            else:
                warnings.append(f"Failed to get customer history: {response.error}")

        if context.call_session_id:
            response = await self._call(
                self.call_server, context, sink, "get_call_status",
                {"callSessionId": context.call_session_id},
            )
            if response.success:
                enriched["callSession"] = response.data
            else:
                warnings.append(f"Failed to get call session data: {response.error}")

        return StageResult(
            success=True,
            data=enriched,
            warnings=warnings,
            metadata={"layer": Stage.DATA_COLLECTION.value},
        )

    async def _validate_policy(self, context: DecisionContext, sink: AuditSink) -> StageResult:
        policy = await self._call(self.policy_server, context, sink, "get_active_policy", {})
        if not policy.success:
            return StageResult.failed(
                f"Failed to get active policy: {policy.error}", error_code=policy.error_code
            )

        validation = await self._call(
            self.policy_server, context, sink, "validate_request",
            {"returnRequest": {**context.raw_data, **context.enriched_data}},
        )
        if not validation.success:
            return StageResult.failed(
                f"Failed to validate request against policy: {validation.error}",
                error_code=validation.error_code,
            )

        return StageResult(
            success=True,
            data={"activePolicy": policy.data, "validation": validation.data},
            metadata={"layer": Stage.POLICY_VALIDATION.value},
        )

    async def _analyze(self, context: DecisionContext, sink: AuditSink) -> StageResult:
        raw = context.raw_data
        enriched = context.enriched_data
        call_session = (enriched.get("callSession") or {}).get("callSession") or {}

        if context.is_call_interaction:
            reply = await self.conversational.process_call_message(
                raw.get("message") or raw["reason"],
                {
                    "businessId": context.business_id,
                    "customerEmail": raw.get("customerEmail"),
                    "sessionId": context.call_session_id,
                    "userRole": context.user_role,
                    "callSessionId": context.call_session_id,
                    "callType": call_session.get("callType"),
                    "provider": call_session.get("provider"),
                },
                list(raw.get("transcript") or []),
            )
            analysis = normalize_conversational_reply(reply)
            details: Dict[str, Any] = {"callAnalysis": reply.model_dump()}
        else:
            history = enriched.get("customerHistory") or {}
            rules = PolicyRules.model_validate(
                (context.policy_data.get("activePolicy") or {}).get("rules") or {}
            )
            triage_input = TriageInput(
                order_id=str(raw["orderId"]),
                customer_email=raw.get("customerEmail"),
                reason=str(raw["reason"]),
                order_value=float(raw.get("orderValue") or 0),
                days_since_purchase=float(raw.get("daysSincePurchase") or 0),
                evidence_urls=list(raw.get("evidenceUrls") or []),
                customer_risk_score=history.get("riskScore", DecisionConstants.DEFAULT_CUSTOMER_RISK),
                return_history=int(history.get("returnCount") or 0),
                product_category=raw.get("productCategory") or "general",
            )
            raw_result = await self.triage.evaluate(triage_input, rules, context.business_id)
            analysis = normalize_triage_result(raw_result)
            details = {"triageAnalysis": analysis.details}

        combined = combine_decision(analysis, context.policy_data.get("validation") or {})
        return StageResult(
            success=True,
            data={
                **details,
                "analysis": analysis.model_dump(mode="json"),
                "combinedDecision": combined,
            },
            metadata={"layer": Stage.AI_ANALYSIS.value, "source": analysis.source},
        )

    async def _execute(self, context: DecisionContext, sink: AuditSink) -> StageResult:
        raw = context.raw_data
        decision = dict(context.ai_analysis["combinedDecision"])
        result: Dict[str, Any] = {"decision": decision}
        warnings: List[str] = []

        if decision["finalAction"] == FinalAction.CREATE_RETURN_REQUEST.value:
            validation = context.policy_data.get("validation") or {}
            created = await self._call(
                self.request_server, context, sink, "create_return_request",
                {
                    "orderId": raw["orderId"],
                    "customerEmail": raw.get("customerEmail"),
                    "reason": raw["reason"],
                    "evidenceUrls": list(raw.get("evidenceUrls") or []),
                    "orderValue": raw.get("orderValue"),
                    "decision": decision["aiDecision"],
                    "complianceScore": _score(validation.get("compliance") or {}),
                    "callSessionId": context.call_session_id,
                },
            )
            if not created.success:
                return StageResult.failed(
                    f"Failed to create return request: {created.error}",
                    error_code=created.error_code,
                )
            result["returnRequest"] = created.data

        if context.is_call_interaction and self.synthesizer is not None:
            media = await self._synthesize(context)
            if media is None:
                warnings.append("Media synthesis failed")
            else:
                result["synthesizedMedia"] = media

        logged = await self._call(
            self.request_server, context, sink, "log_decision",
            {
                "agentType": "layered_engine",
                "returnRequestId": (result.get("returnRequest") or {}).get("id")
                or context.request_id,
                "decision": decision["finalAction"],
                "confidence": decision["confidence"],
                "reasoning": decision["reasoning"],
            },
        )
        if not logged.success:
            warnings.append(f"Failed to log decision: {logged.error}")

        result["timestamp"] = isoformat(self.clock())
        return StageResult(
            success=True,
            data=result,
            warnings=warnings,
            metadata={"layer": Stage.ACTION_EXECUTION.value},
        )

    async def _synthesize(self, context: DecisionContext) -> Optional[Dict[str, Any]]:
        """Media for the call reply; failures are side effects, never decision failures."""
        call_analysis = context.ai_analysis.get("callAnalysis") or {}
        text = call_analysis.get("message")
        if not text:
            return None
        call_session = (context.enriched_data.get("callSession") or {}).get("callSession") or {}
        try:
            return await self.synthesizer.synthesize(
                text, call_session.get("callType") or "voice", call_session.get("provider")
            )
        except Exception as e:
            logger.warning("Media synthesis failed for %s: %s", context.decision_id, e)
            return None

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    def _audit_trail(self, envelope: RequestEnvelope, duration: float, flags: List[str]) -> AuditTrail:
        return AuditTrail(
            request_id=envelope.id,
            agent_id=envelope.agent_id,
            business_id=envelope.business_id,
            action=envelope.action or PROCESS_DECISION,
            duration=duration,
            security_flags=flags,
            call_session_id=envelope.context.call_session_id,
            call_type=envelope.context.call_type,
            provider=envelope.context.provider,
        )

    def _failure(
        self,
        envelope: RequestEnvelope,
        error: str,
        error_code: Optional[str],
        trail: List[Dict[str, Any]],
    ) -> ResponseEnvelope:
        return ResponseEnvelope(
            id=envelope.id,
            timestamp=isoformat(self.clock()),
            success=False,
            error=error,
            error_code=error_code or "STAGE_FAILED",
            data={"auditTrail": trail},
            audit_trail=self._audit_trail(
                envelope, 0.0, [ControlServerConstants.ERROR_SECURITY_FLAG]
            ),
        )

    def _rejected(self, envelope: RequestEnvelope, error: str) -> ResponseEnvelope:
        logger.warning("Decision request rejected: %s", error)
        return ResponseEnvelope(
            id=envelope.id,
            timestamp=isoformat(self.clock()),
            success=False,
            error=error,
            error_code="INVALID_REQUEST",
            audit_trail=self._audit_trail(
                envelope, 0.0, [ControlServerConstants.ERROR_SECURITY_FLAG]
            ),
        )


def _score(compliance: Mapping[str, bool]) -> float:
    if not compliance:
        return 0.0
    return sum(1 for passed in compliance.values() if passed) / len(compliance)
