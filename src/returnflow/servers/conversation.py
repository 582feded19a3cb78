"""Conversation control server: multi-turn chat/voice/video conversations.

Every message is classified with the keyword intent and sentiment
classifier; the detected intent becomes the conversation's
``currentIntent``. Events and messages are written to
``conversation_messages``.
"""

import logging
from typing import Any, Dict, List, Optional

from returnflow.analysis.classifier import analyze_sentiment, detect_intent
from returnflow.analysis.ports import ConversationalAgent
from returnflow.analysis.schemas import normalize_conversational_reply
from returnflow.common.constants import ConversationConstants, Tables
from returnflow.common.exceptions import InvalidRequestError, UpstreamFailureError
from returnflow.control.envelope import RequestEnvelope
from returnflow.control.server import ControlServer
from returnflow.control.sessions import ConversationSessionContext, SessionRegistry
from returnflow.core.types import Channel, Clock, SecurityLevel, isoformat, parse_timestamp, system_clock
from returnflow.servers.actions import ConversationAction
from returnflow.servers.base import ANALYTICS_RANGES, business_id_of, parse_enum, require_field
from returnflow.storage.base import Record, Storage

logger = logging.getLogger(__name__)

SERVER_ID = "conversation-server"

ARCHIVED = "archived"

# Payload keys accepted by update_conversation_state, mapped to session fields.
MUTABLE_STATE = {
    "currentIntent": "current_intent",
    "escalationLevel": "escalation_level",
    "aiAgentType": "ai_agent_type",
    "status": "status",
    "metadata": "metadata",
}


def agent_for_escalation(level: int) -> str:
    if level == 1:
        return "customer_service"
    if level >= 2:
        return "escalation"
    return "triage"


def _ranked(counts: Dict[str, int], label: str) -> List[Dict[str, Any]]:
    return [
        {label: key, "count": count}
        for key, count in sorted(counts.items(), key=lambda item: item[1], reverse=True)
    ]


class ConversationService:
    """Domain logic behind the conversation server's actions."""

    def __init__(
        self,
        storage: Storage,
        registry: SessionRegistry,
        clock: Clock = system_clock,
        conversational: Optional[ConversationalAgent] = None,
    ):
        self.storage = storage
        self.registry = registry
        self.clock = clock
        self.conversational = conversational

    def _now(self) -> str:
        return isoformat(self.clock())

    def _conversation_id(self, request: RequestEnvelope) -> Optional[str]:
        return request.data.get("conversationId") or request.context.session_id

    def _session(self, request: RequestEnvelope) -> ConversationSessionContext:
        return self.registry.conversations.require(self._conversation_id(request))

    async def _log_event(self, conversation_id: str, event_type: str, **event_data: Any) -> Record:
        return await self.storage.insert(Tables.CONVERSATION_MESSAGES, {
            "session_id": conversation_id,
            "user_id": "system",
            "content": f"Event: {event_type}",
            "message_type": "system",
            "metadata": {"eventType": event_type, **event_data},
            "timestamp": self._now(),
        })

    async def _append_message(
        self,
        conversation_id: str,
        sender_id: str,
        message: str,
        message_type: str = "text",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        session = self.registry.conversations.require(conversation_id)
        record = await self.storage.insert(Tables.CONVERSATION_MESSAGES, {
            "session_id": conversation_id,
            "user_id": sender_id,
            "content": message,
            "message_type": message_type,
            "metadata": metadata or {},
            "timestamp": self._now(),
        })

        intent = detect_intent(message)
        sentiment = analyze_sentiment(message)
        analysis = {
            "intent": intent.intent,
            "sentiment": sentiment["sentiment"],
            "confidence": intent.confidence,
        }

        history = session.conversation_history + [{
            "id": record["id"],
            "senderId": sender_id,
            "message": message,
            "messageType": message_type,
            "timestamp": record["timestamp"],
        }]
        self.registry.conversations.update(
            conversation_id, conversation_history=history, current_intent=intent.intent
        )
        await self._log_event(
            conversation_id, "message_sent",
            senderId=sender_id, messageId=record["id"], analysis=analysis,
        )
        return {
            "messageId": record["id"],
            "conversationId": conversation_id,
            "senderId": sender_id,
            "analysis": analysis,
            "timestamp": record["timestamp"],
        }

    async def create_conversation(self, request: RequestEnvelope) -> Dict[str, Any]:
        data = request.data
        business_id = business_id_of(request)
        channel = parse_enum(Channel, data.get("channel") or Channel.CHAT.value, "channel")
        customer_email = data.get("customerEmail")
        row = await self.storage.insert(Tables.CONVERSATION_SESSIONS, {
            "business_id": business_id,
            "customer_email": customer_email,
            "channel": channel.value,
            "return_request_id": data.get("returnRequestId"),
            "status": "active",
            "escalation_level": 0,
            "ai_agent_type": "triage",
        })

        now = self.clock()
        self.registry.conversations.register(ConversationSessionContext(
            session_id=row["id"],
            business_id=business_id,
            channel=channel,
            participants=[customer_email] if customer_email else [],
            created_at=now,
            last_activity=now,
        ))

        if data.get("initialMessage"):
            await self._append_message(row["id"], customer_email or "customer", data["initialMessage"])

        return {"conversation": row, "status": "created", "sessionId": row["id"]}

    async def join_conversation(self, request: RequestEnvelope) -> Dict[str, Any]:
        session = self._session(request)
        participant_id = require_field(request.data, "participantId")
        if participant_id not in session.participants:
            self.registry.conversations.update(
                session.session_id, participants=session.participants + [participant_id]
            )
        await self._log_event(
            session.session_id, "participant_joined",
            participantId=participant_id, participantType=request.data.get("participantType"),
        )
        return {
            "conversationId": session.session_id,
            "participantId": participant_id,
            "status": "joined",
            "timestamp": self._now(),
        }

    async def leave_conversation(self, request: RequestEnvelope) -> Dict[str, Any]:
        session = self._session(request)
        participant_id = require_field(request.data, "participantId")
        self.registry.conversations.update(
            session.session_id,
            participants=[p for p in session.participants if p != participant_id],
        )
        await self._log_event(session.session_id, "participant_left", participantId=participant_id)
        return {
            "conversationId": session.session_id,
            "participantId": participant_id,
            "status": "left",
            "timestamp": self._now(),
        }

    async def send_message(self, request: RequestEnvelope) -> Dict[str, Any]:
        session = self._session(request)
        data = request.data
        return await self._append_message(
            session.session_id,
            require_field(data, "senderId"),
            require_field(data, "message"),
            data.get("messageType", "text"),
            data.get("metadata"),
        )

    async def get_conversation_history(self, request: RequestEnvelope) -> Dict[str, Any]:
        session = self._session(request)
        limit = int(request.data.get("limit", ConversationConstants.DEFAULT_HISTORY_LIMIT))
        offset = int(request.data.get("offset", 0))
        messages = await self.storage.find(
            Tables.CONVERSATION_MESSAGES,
            match={"session_id": session.session_id},
            where=lambda r: r.get("message_type") != "system",
            order_by="created_at",
        )
        total = len(messages)
        return {
            "conversationId": session.session_id,
            "messages": messages[offset:offset + limit],
            "totalCount": total,
            "hasMore": offset + limit < total,
        }

    async def update_conversation_state(self, request: RequestEnvelope) -> Dict[str, Any]:
        session = self._session(request)
        updates = require_field(request.data, "updates")
        unknown = sorted(set(updates) - set(MUTABLE_STATE))
        if unknown:
            raise InvalidRequestError(
                f"Cannot update conversation fields: {', '.join(unknown)}", {"fields": unknown}
            )
        self.registry.conversations.update(
            session.session_id, **{MUTABLE_STATE[key]: value for key, value in updates.items()}
        )
        await self._log_event(session.session_id, "state_updated", updates=updates)
        return {"conversationId": session.session_id, "updates": updates, "timestamp": self._now()}

    async def escalate_conversation(self, request: RequestEnvelope) -> Dict[str, Any]:
        session = self._session(request)
        reason = request.data.get("escalationReason")
        level = int(request.data.get("targetLevel") or session.escalation_level + 1)
        agent_type = agent_for_escalation(level)

        self.registry.conversations.update(
            session.session_id,
            escalation_level=level,
            current_intent="escalation",
            ai_agent_type=agent_type,
        )
        await self.storage.update(
            Tables.CONVERSATION_SESSIONS,
            {"id": session.session_id},
            {"escalation_level": level, "ai_agent_type": agent_type},
        )
        await self._log_event(
            session.session_id, "conversation_escalated",
            escalationReason=reason, newLevel=level, aiAgentType=agent_type,
        )
        logger.info("Conversation %s escalated to level %d", session.session_id, level)
        return {
            "conversationId": session.session_id,
            "escalationLevel": level,
            "aiAgentType": agent_type,
            "reason": reason,
            "timestamp": self._now(),
        }

    async def assign_ai_agent(self, request: RequestEnvelope) -> Dict[str, Any]:
        session = self._session(request)
        agent_type = require_field(request.data, "agentType")
        if agent_type not in ConversationConstants.AI_AGENT_TYPES:
            raise InvalidRequestError(f"Unknown AI agent type: {agent_type}", {"agentType": agent_type})

        reason = request.data.get("reason")
        self.registry.conversations.update(session.session_id, ai_agent_type=agent_type)
        await self.storage.update(
            Tables.CONVERSATION_SESSIONS, {"id": session.session_id}, {"ai_agent_type": agent_type}
        )
        await self._log_event(session.session_id, "ai_agent_assigned", agentType=agent_type, reason=reason)
        return {
            "conversationId": session.session_id,
            "agentType": agent_type,
            "reason": reason,
            "timestamp": self._now(),
        }

    async def get_ai_response(self, request: RequestEnvelope) -> Dict[str, Any]:
        session = self._session(request)
        message = require_field(request.data, "message")
        if self.conversational is None:
            raise UpstreamFailureError("Conversational agent not configured", collaborator="conversational")

        context = {
            "businessId": session.business_id,
            "agentType": session.ai_agent_type,
            "channel": session.channel.value,
            **(request.data.get("context") or {}),
        }
        try:
            reply = await self.conversational.process_call_message(
                message, context, session.conversation_history
            )
        except Exception as e:
            raise UpstreamFailureError(
                f"Conversational agent failed: {e}", collaborator="conversational"
            ) from e
        if not reply.success:
            raise UpstreamFailureError(
                reply.message or "Conversational agent failed", collaborator="conversational"
            )

        analysis = normalize_conversational_reply(reply)
        sent = await self._append_message(
            session.session_id,
            f"ai_{session.ai_agent_type}",
            reply.message,
            "ai_response",
            {
                "agentType": session.ai_agent_type,
                "confidence": analysis.confidence,
                "reasoning": analysis.reasoning,
            },
        )
        return {
            "conversationId": session.session_id,
            "response": reply.message,
            "confidence": analysis.confidence,
            "reasoning": analysis.reasoning,
            "data": reply.data,
            "messageId": sent["messageId"],
            "timestamp": self._now(),
        }

    async def stream_conversation(self, request: RequestEnvelope) -> Dict[str, Any]:
        session = self._session(request)
        stream_type = require_field(request.data, "streamType")
        self.registry.conversations.update(session.session_id)
        await self._log_event(
            session.session_id, "stream_chunk",
            streamType=stream_type, streamData=request.data.get("streamData"),
        )
        return {
            "conversationId": session.session_id,
            "streamType": stream_type,
            "processed": True,
            "timestamp": self._now(),
        }

    async def analyze_sentiment(self, request: RequestEnvelope) -> Dict[str, Any]:
        text = require_field(request.data, "text")
        sentiment = analyze_sentiment(text)
        conversation_id = request.data.get("conversationId")
        if conversation_id:
            await self._log_event(conversation_id, "sentiment_analyzed", sentiment=sentiment)
        return {"text": text, "sentiment": sentiment, "timestamp": self._now()}

    async def detect_intent(self, request: RequestEnvelope) -> Dict[str, Any]:
        text = require_field(request.data, "text")
        intent = detect_intent(text).to_dict()
        conversation_id = request.data.get("conversationId")
        if conversation_id:
            await self._log_event(conversation_id, "intent_detected", intent=intent)
        return {
            "text": text,
            "intent": intent,
            "confidence": intent["confidence"],
            "timestamp": self._now(),
        }

    async def get_conversation_analytics(self, request: RequestEnvelope) -> Dict[str, Any]:
        business_id = business_id_of(request)
        time_range = request.data.get("timeRange", "24h")
        now = self.clock()
        since = now - ANALYTICS_RANGES.get(time_range, ANALYTICS_RANGES["24h"])
        rows = await self.storage.find(
            Tables.CONVERSATION_SESSIONS,
            match={"business_id": business_id},
            where=lambda r: parse_timestamp(r["created_at"]) >= since,
            order_by="created_at",
            descending=True,
        )

        durations = []
        channels: Dict[str, int] = {}
        agents: Dict[str, int] = {}
        for row in rows:
            ended = parse_timestamp(row["archived_at"]) if row.get("archived_at") else now
            durations.append((ended - parse_timestamp(row["created_at"])).total_seconds())
            channels[row["channel"]] = channels.get(row["channel"], 0) + 1
            agent = row.get("ai_agent_type") or "triage"
            agents[agent] = agents.get(agent, 0) + 1
        escalated = sum(1 for r in rows if (r.get("escalation_level") or 0) > 0)

        return {
            "timeRange": time_range,
            "totalConversations": len(rows),
            "activeConversations": sum(1 for r in rows if r.get("status") == "active"),
            "averageDuration": sum(durations) / len(durations) if durations else 0.0,
            "escalationRate": escalated / len(rows) * 100 if rows else 0.0,
            "channelDistribution": _ranked(channels, "channel"),
            "aiAgentUsage": _ranked(agents, "agent"),
            "activeConversationSessions": sum(
                1 for s in self.registry.active_conversations() if s.business_id == business_id
            ),
        }

    async def handle_conversation_event(self, request: RequestEnvelope) -> Dict[str, Any]:
        session = self._session(request)
        event_type = require_field(request.data, "eventType")
        self.registry.conversations.update(session.session_id)
        result = {"eventType": event_type, "processed": True}
        await self._log_event(
            session.session_id, event_type,
            eventData=request.data.get("eventData"), eventResult=result,
        )
        return {
            "conversationId": session.session_id,
            "eventType": event_type,
            "eventResult": result,
            "timestamp": self._now(),
        }

    async def merge_conversations(self, request: RequestEnvelope) -> Dict[str, Any]:
        source_id = require_field(request.data, "sourceConversationId")
        target_id = require_field(request.data, "targetConversationId")
        if source_id == target_id:
            raise InvalidRequestError("Cannot merge a conversation into itself", {"conversationId": source_id})
        source = self.registry.conversations.require(source_id)
        target = self.registry.conversations.require(target_id)

        participants = list(dict.fromkeys(source.participants + target.participants))
        self.registry.conversations.update(
            target_id,
            conversation_history=source.conversation_history + target.conversation_history,
            participants=participants,
        )
        await self._archive(source_id, "merged")

        merge_reason = request.data.get("mergeReason")
        await self._log_event(
            target_id, "conversations_merged", sourceConversationId=source_id, mergeReason=merge_reason
        )
        return {
            "sourceConversationId": source_id,
            "targetConversationId": target_id,
            "mergeReason": merge_reason,
            "participants": participants,
            "timestamp": self._now(),
        }

    async def _archive(self, conversation_id: str, reason: Optional[str]) -> None:
        self.registry.conversations.require(conversation_id)
        await self.storage.update(
            Tables.CONVERSATION_SESSIONS,
            {"id": conversation_id},
            {"status": ARCHIVED, "archived_at": self._now(), "archive_reason": reason},
        )
        self.registry.conversations.remove(conversation_id)
        await self._log_event(conversation_id, "conversation_archived", reason=reason)

    async def archive_conversation(self, request: RequestEnvelope) -> Dict[str, Any]:
        conversation_id = self._session(request).session_id
        reason = request.data.get("reason")
        await self._archive(conversation_id, reason)
        return {
            "conversationId": conversation_id,
            "status": ARCHIVED,
            "reason": reason,
            "timestamp": self._now(),
        }

    def handlers(self):
        return {
            ConversationAction.CREATE_CONVERSATION: self.create_conversation,
            ConversationAction.JOIN_CONVERSATION: self.join_conversation,
            ConversationAction.LEAVE_CONVERSATION: self.leave_conversation,
            ConversationAction.SEND_MESSAGE: self.send_message,
            ConversationAction.GET_CONVERSATION_HISTORY: self.get_conversation_history,
            ConversationAction.UPDATE_CONVERSATION_STATE: self.update_conversation_state,
            ConversationAction.ESCALATE_CONVERSATION: self.escalate_conversation,
            ConversationAction.ASSIGN_AI_AGENT: self.assign_ai_agent,
            ConversationAction.GET_AI_RESPONSE: self.get_ai_response,
            ConversationAction.STREAM_CONVERSATION: self.stream_conversation,
            ConversationAction.ANALYZE_SENTIMENT: self.analyze_sentiment,
            ConversationAction.DETECT_INTENT: self.detect_intent,
            ConversationAction.GET_CONVERSATION_ANALYTICS: self.get_conversation_analytics,
            ConversationAction.HANDLE_CONVERSATION_EVENT: self.handle_conversation_event,
            ConversationAction.MERGE_CONVERSATIONS: self.merge_conversations,
            ConversationAction.ARCHIVE_CONVERSATION: self.archive_conversation,
        }


def create_conversation_server(
    storage: Storage,
    registry: Optional[SessionRegistry] = None,
    clock: Clock = system_clock,
    conversational: Optional[ConversationalAgent] = None,
    **server_options: Any,
) -> ControlServer:
    """Build the conversation control server around a ``ConversationService``."""
    registry = registry or SessionRegistry(clock)
    service = ConversationService(storage, registry, clock, conversational)
    return ControlServer(
        SERVER_ID,
        ConversationAction,
        service.handlers(),
        security_level=SecurityLevel.HIGH,
        registry=registry,
        clock=clock,
        domain=service,
        **server_options,
    )
