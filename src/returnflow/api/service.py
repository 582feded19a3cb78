"""Control Plane Service - wires storage, registries, servers and the engine.

One instance owns one session registry shared by every domain server, so
a call initiated through the call server is visible to the request and
policy servers of the same process.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from returnflow.analysis.conversational import OpenAIConversationalAgent
from returnflow.analysis.ports import ConversationalAgent, MediaSynthesizer, TriageAnalyzer
from returnflow.analysis.triage import OpenAITriageAnalyzer
from returnflow.common.config import Config, get_config
from returnflow.control.circuit_breaker import CircuitBreaker
from returnflow.control.envelope import RequestEnvelope, ResponseEnvelope
from returnflow.control.rate_limiter import SlidingWindowRateLimiter
from returnflow.control.server import ControlServer
from returnflow.control.sessions import SessionRegistry
from returnflow.core.types import Clock, system_clock
from returnflow.governance.audit.logger import AuditLogger
from returnflow.orchestration.decision_engine import LayeredDecisionEngine
from returnflow.servers.call import create_call_server
from returnflow.servers.conversation import create_conversation_server
from returnflow.servers.policy import create_policy_server
from returnflow.servers.request import create_request_server
from returnflow.storage.base import Storage
from returnflow.storage.memory import InMemoryStorage
from returnflow.storage.seed import load_policy_seed

logger = logging.getLogger(__name__)


class ControlPlaneService:
    """Everything the gateway needs, built from one ``Config``.

    Args:
        config: Settings; the process-wide config when omitted.
        storage: Storage backend; in-memory when omitted.
        triage / conversational: AI capabilities; OpenAI adapters when omitted.
        synthesizer: Optional media capability for call replies.
        clock: Time source shared by every component.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        storage: Optional[Storage] = None,
        triage: Optional[TriageAnalyzer] = None,
        conversational: Optional[ConversationalAgent] = None,
        synthesizer: Optional[MediaSynthesizer] = None,
        clock: Clock = system_clock,
    ):
        self.config = config or get_config()
        self.clock = clock
        self.storage = storage or InMemoryStorage(clock)
        self.registry = SessionRegistry(clock)
        self.policies_loaded = 0
        self.started = False

        triage = triage or OpenAITriageAnalyzer(
            api_key=self.config.openai_api_key, model=self.config.openai_model
        )
        conversational = conversational or OpenAIConversationalAgent(
            api_key=self.config.openai_api_key, model=self.config.openai_model
        )
        self.audit_logger = (
            AuditLogger(self.config.audit_log_dir, clock=clock)
            if self.config.audit_enabled else None
        )

        self.servers: Dict[str, ControlServer] = {
            "request": create_request_server(self.storage, self.registry, clock, **self._gate()),
            "policy": create_policy_server(
                self.storage, self.registry, clock,
                cache_ttl_seconds=self.config.policy_cache_ttl_seconds,
                on_policy_update=self._notify_policy_update,
                **self._gate(),
            ),
            "conversation": create_conversation_server(
                self.storage, self.registry, clock, conversational, **self._gate()
            ),
            "call": create_call_server(
                self.storage, self.registry, clock,
                providers=self.config.call_providers,
                business_hours=self.config.business_hours,
                **self._gate(),
            ),
        }
        self.engine = LayeredDecisionEngine(
            request_server=self.servers["request"],
            policy_server=self.servers["policy"],
            call_server=self.servers["call"],
            triage=triage,
            conversational=conversational,
            synthesizer=synthesizer,
            audit_logger=self.audit_logger,
            stage_timeout=self.config.stage_timeout_seconds,
            clock=clock,
        )

    def _gate(self) -> Dict[str, Any]:
        """Fresh rate limiter and breaker for one server."""
        return {
            "rate_limiter": SlidingWindowRateLimiter(
                self.config.rate_limit_per_minute,
                self.config.rate_limit_window_seconds,
                self.clock,
            ),
            "circuit_breaker": CircuitBreaker(
                self.config.breaker_failure_threshold,
                self.config.breaker_reset_seconds,
                self.clock,
            ),
        }

    async def startup(self) -> None:
        """Load seed policies, once."""
        if self.started:
            return
        if self.config.policy_seed_file is not None:
            self.policies_loaded = await load_policy_seed(
                self.storage, self.config.policy_seed_file
            )
        self.started = True
        logger.info(
            "Control plane ready with %d servers and %d policies",
            len(self.servers), self.policies_loaded,
        )

    def server(self, name: str) -> ControlServer:
        """Domain server by short name; KeyError when unknown."""
        return self.servers[name]

    async def decide(
        self, envelope: Union[RequestEnvelope, Mapping[str, Any]]
    ) -> ResponseEnvelope:
        return await self.engine.process(envelope)

    async def dispatch(
        self, name: str, envelope: Union[RequestEnvelope, Mapping[str, Any]]
    ) -> ResponseEnvelope:
        return await self.server(name).handle_request(envelope)

    def invalidate_policy(self, business_id: str) -> List[str]:
        """Drop the cached policy of ``business_id`` after it changed in storage.

        Returns the subscribed session ids that were notified.
        """
        return self.server("policy").domain.invalidate_policy(business_id)

    def _notify_policy_update(self, business_id: str, session_ids: List[str]) -> None:
        logger.info("Policy of %s changed for sessions %s", business_id, session_ids)
        if self.audit_logger is not None:
            self.audit_logger.log_system_event(
                "policy_updated", {"business_id": business_id, "session_ids": session_ids}
            )
