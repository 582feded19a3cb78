"""In-process registries of live call and conversation sessions.

Registries are plain maps owned by the server instance that creates them.
Nothing here is durable: restarting the process drops every live session.
Mutation is safe only under a single-threaded event loop.
"""

import logging
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, TypeVar

from returnflow.common.exceptions import SessionNotFoundError
from returnflow.core.types import (
    CallProvider,
    CallStatus,
    CallType,
    Channel,
    Clock,
    isoformat,
    system_clock,
)

logger = logging.getLogger(__name__)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _to_wire(value: Any) -> Any:
    if isinstance(value, datetime):
        return isoformat(value)
    if isinstance(value, (CallType, CallStatus, CallProvider, Channel)):
        return value.value
    if isinstance(value, dict):
        return {k: _to_wire(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_wire(v) for v in value]
    return value


@dataclass
class CallSessionContext:
    """State of one live voice/video call."""
    call_session_id: str
    call_type: CallType
    provider: CallProvider
    last_activity: datetime
    business_id: Optional[str] = None
    streaming_enabled: bool = False
    participant_count: int = 0
    call_status: CallStatus = CallStatus.INITIATED
    started_at: Optional[datetime] = None
    is_recording: bool = False
    muted_participants: List[str] = field(default_factory=list)
    settings: Dict[str, Any] = field(default_factory=dict)

    @property
    def session_id(self) -> str:
        return self.call_session_id

    @property
    def is_active(self) -> bool:
        return self.call_status != CallStatus.ENDED

    def to_dict(self) -> Dict[str, Any]:
        return {_camel(k): _to_wire(v) for k, v in asdict(self).items()}


@dataclass
class ConversationSessionContext:
    """State of one multi-turn conversation."""
    session_id: str
    business_id: str
    channel: Channel
    last_activity: datetime
    participants: List[str] = field(default_factory=list)
    conversation_history: List[Dict[str, Any]] = field(default_factory=list)
    current_intent: str = "initial_contact"
    escalation_level: int = 0
    ai_agent_type: str = "triage"
    status: str = "active"
    created_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status != "archived"

    def to_dict(self) -> Dict[str, Any]:
        return {_camel(k): _to_wire(v) for k, v in asdict(self).items()}


S = TypeVar("S", CallSessionContext, ConversationSessionContext)


class SessionStore(Generic[S]):
    """Key-value map of sessions of one kind."""

    def __init__(self, kind: str, clock: Clock = system_clock):
        self.kind = kind
        self._clock = clock
        self._sessions: Dict[str, S] = {}

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def register(self, session: S) -> S:
        self._sessions[session.session_id] = session
        logger.debug("Registered %s session %s", self.kind, session.session_id)
        return session

    def get(self, session_id: Optional[str]) -> Optional[S]:
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    def require(self, session_id: Optional[str]) -> S:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(self.kind, session_id)
        return session

    def update(self, session_id: Optional[str], **changes: Any) -> S:
        """Merge ``changes`` into the session and refresh ``last_activity``."""
        current = self.require(session_id)
        updated = replace(current, **changes, last_activity=self._clock())
        self._sessions[updated.session_id] = updated
        return updated

    def remove(self, session_id: Optional[str]) -> Optional[S]:
        if session_id is None:
            return None
        return self._sessions.pop(session_id, None)

    def active(self) -> List[S]:
        return [s for s in self._sessions.values() if s.is_active]


class SessionRegistry:
    """Call and conversation registries shared by one server instance."""

    def __init__(self, clock: Clock = system_clock):
        self.clock = clock
        self.calls: SessionStore[CallSessionContext] = SessionStore("call", clock)
        self.conversations: SessionStore[ConversationSessionContext] = SessionStore(
            "conversation", clock
        )

    def active_call_sessions(self) -> List[CallSessionContext]:
        return self.calls.active()

    def active_conversations(self) -> List[ConversationSessionContext]:
        return self.conversations.active()
