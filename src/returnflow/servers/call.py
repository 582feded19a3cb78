"""Call control server: lifecycle of live voice/video calls.

Media handling itself (speech, video frames) belongs to the configured
provider; this server tracks session state, enforces policy permissions
and persists every call event.
"""

import logging
from typing import Any, Dict, Iterable, Optional, Tuple
from uuid import uuid4

from returnflow.common.constants import Tables
from returnflow.common.exceptions import InvalidRequestError, PolicyNotFoundError
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
from returnflow.governance.schemas import PolicyRules
from returnflow.servers.actions import CallAction
from returnflow.servers.base import ANALYTICS_RANGES, business_id_of, parse_enum, require_field
from returnflow.storage.base import Record, Storage

logger = logging.getLogger(__name__)

SERVER_ID = "call-server"


class CallService:
    """Domain logic behind the call server's actions."""

    def __init__(
        self,
        storage: Storage,
        registry: SessionRegistry,
        clock: Clock = system_clock,
        providers: Iterable[str] = ("internal", "elevenlabs", "tavus"),
        business_hours: Tuple[int, int] = (8, 20),
    ):
        self.storage = storage
        self.registry = registry
        self.clock = clock
        self.providers = frozenset(providers)
        self.business_hours = business_hours
        self._streaming: Dict[str, Dict[str, Any]] = {}

    def _now(self) -> str:
        return isoformat(self.clock())

    def _call_id(self, request: RequestEnvelope) -> Optional[str]:
        return request.data.get("callSessionId") or request.context.call_session_id

    async def _log_event(self, call_session_id: str, event_type: str, **event_data: Any) -> Record:
        return await self.storage.insert(Tables.CALL_EVENTS, {
            "call_session_id": call_session_id,
            "event_type": event_type,
            "event_data": event_data,
            "timestamp": self._now(),
        })

    async def check_permissions(self, business_id: str, call_type: Optional[str]) -> Dict[str, Any]:
        policy = await self.storage.find_one(
            Tables.POLICIES, business_id=business_id, is_active=True
        )
        if policy is None:
            raise PolicyNotFoundError(business_id)
        rules = PolicyRules.model_validate(policy.get("rules") or {})

        permissions: Dict[str, Any] = {"allowed": True, "reason": "", "restrictions": []}
        if call_type == CallType.VOICE.value and not rules.allow_voice_calls:
            permissions["allowed"] = False
            permissions["reason"] = "Voice calls not allowed"
            permissions["restrictions"].append("voice_calls_disabled")
        if call_type == CallType.VIDEO.value and not rules.allow_video_calls:
            permissions["allowed"] = False
            permissions["reason"] = "Video calls not allowed"
            permissions["restrictions"].append("video_calls_disabled")

        # Advisory only; calls outside business hours are still allowed.
        start, end = self.business_hours
        hour = self.clock().hour
        if hour < start or hour > end:
            permissions["restrictions"].append("outside_business_hours")
        return permissions

    async def initiate_call(self, request: RequestEnvelope) -> Dict[str, Any]:
        data = request.data
        business_id = business_id_of(request)
        call_type = parse_enum(CallType, require_field(data, "callType"), "callType")
        provider_name = data.get("provider") or CallProvider.INTERNAL.value

        permissions = await self.check_permissions(business_id, call_type.value)
        if not permissions["allowed"]:
            raise InvalidRequestError(
                f"Call not allowed: {permissions['reason']}", {"permissions": permissions}
            )
        if provider_name not in self.providers:
            raise InvalidRequestError(
                f"Provider {provider_name} not configured", {"provider": provider_name}
            )
        provider = parse_enum(CallProvider, provider_name, "provider")

        row = await self.storage.insert(Tables.CALL_SESSIONS, {
            "business_id": business_id,
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
            business_id=business_id,
            streaming_enabled=True,
            participant_count=1,
            call_status=CallStatus.INITIATED,
            started_at=now,
            last_activity=now,
        ))
        logger.info(
            "Initiated %s call %s on %s", call_type.value, row["id"], provider.value,
            extra={"business_id": business_id},
        )
        return {
            "callSession": row,
            "providerConfig": {"provider": provider.value, "status": "initialized"},
            "permissions": permissions,
            "status": CallStatus.INITIATED.value,
        }

    async def join_call(self, request: RequestEnvelope) -> Dict[str, Any]:
        call_id = self._call_id(request)
        session = self.registry.calls.require(call_id)
        if session.call_status == CallStatus.ENDED:
            raise InvalidRequestError("Call session has ended", {"callSessionId": call_id})
        self.registry.calls.update(
            call_id,
            participant_count=session.participant_count + 1,
            call_status=CallStatus.ACTIVE,
        )
        participant_id = request.data.get("participantId")
        await self._log_event(
            call_id, "participant_joined",
            participantId=participant_id,
            participantType=request.data.get("participantType"),
        )
        return {
            "callSessionId": call_id,
            "participantId": participant_id,
            "status": "joined",
            "timestamp": self._now(),
        }

    async def end_call(self, request: RequestEnvelope) -> Dict[str, Any]:
        call_id = self._call_id(request)
        session = self.registry.calls.require(call_id)
        duration = request.data.get("duration")
        if duration is None and session.started_at is not None:
            duration = (self.clock() - session.started_at).total_seconds()

        self.registry.calls.update(call_id, call_status=CallStatus.ENDED, is_recording=False)
        await self.storage.update(
            Tables.CALL_SESSIONS,
            {"id": call_id},
            {"status": CallStatus.ENDED.value, "duration": duration, "ended_at": self._now()},
        )
        self._streaming.pop(call_id, None)
        await self._log_event(
            call_id, "call_ended", reason=request.data.get("reason"), duration=duration
        )
        return {
            "callSessionId": call_id,
            "status": CallStatus.ENDED.value,
            "duration": duration,
            "timestamp": self._now(),
        }

    async def _set_muted(self, request: RequestEnvelope, muted: bool) -> Dict[str, Any]:
        call_id = self._call_id(request)
        participant_id = require_field(request.data, "participantId")
        session = self.registry.calls.require(call_id)
        muted_ids = [p for p in session.muted_participants if p != participant_id]
        if muted:
            muted_ids.append(participant_id)
        self.registry.calls.update(call_id, muted_participants=muted_ids)

        verb = "muted" if muted else "unmuted"
        await self._log_event(call_id, f"participant_{verb}", participantId=participant_id)
        return {
            "callSessionId": call_id,
            "participantId": participant_id,
            "action": verb,
            "timestamp": self._now(),
        }

    async def mute_participant(self, request: RequestEnvelope) -> Dict[str, Any]:
        return await self._set_muted(request, True)

    async def unmute_participant(self, request: RequestEnvelope) -> Dict[str, Any]:
        return await self._set_muted(request, False)

    async def add_participant(self, request: RequestEnvelope) -> Dict[str, Any]:
        call_id = self._call_id(request)
        session = self.registry.calls.require(call_id)
        self.registry.calls.update(call_id, participant_count=session.participant_count + 1)
        data = request.data
        await self._log_event(
            call_id, "participant_added",
            participantId=data.get("participantId"),
            participantType=data.get("participantType"),
            participantEmail=data.get("participantEmail"),
        )
        return {
            "callSessionId": call_id,
            "participantId": data.get("participantId"),
            "participantType": data.get("participantType"),
            "action": "added",
            "timestamp": self._now(),
        }

    async def remove_participant(self, request: RequestEnvelope) -> Dict[str, Any]:
        call_id = self._call_id(request)
        session = self.registry.calls.require(call_id)
        self.registry.calls.update(
            call_id, participant_count=max(0, session.participant_count - 1)
        )
        participant_id = request.data.get("participantId")
        await self._log_event(call_id, "participant_removed", participantId=participant_id)
        return {
            "callSessionId": call_id,
            "participantId": participant_id,
            "action": "removed",
            "timestamp": self._now(),
        }

    async def start_recording(self, request: RequestEnvelope) -> Dict[str, Any]:
        call_id = self._call_id(request)
        self.registry.calls.require(call_id)
        recording_type = request.data.get("recordingType", "audio")
        recording_id = str(uuid4())
        self.registry.calls.update(call_id, is_recording=True)
        await self._log_event(
            call_id, "recording_started", recordingId=recording_id, recordingType=recording_type
        )
        return {
            "callSessionId": call_id,
            "recordingType": recording_type,
            "status": "started",
            "recordingConfig": {"recordingId": recording_id, "recordingType": recording_type},
            "timestamp": self._now(),
        }

    async def stop_recording(self, request: RequestEnvelope) -> Dict[str, Any]:
        call_id = self._call_id(request)
        session = self.registry.calls.require(call_id)
        if not session.is_recording:
            raise InvalidRequestError("Call is not being recorded", {"callSessionId": call_id})
        recording_id = require_field(request.data, "recordingId")
        self.registry.calls.update(call_id, is_recording=False)
        await self._log_event(call_id, "recording_stopped", recordingId=recording_id)
        return {
            "callSessionId": call_id,
            "recordingId": recording_id,
            "status": "stopped",
            "timestamp": self._now(),
        }

    async def get_call_status(self, request: RequestEnvelope) -> Dict[str, Any]:
        call_id = self._call_id(request)
        session = self.registry.calls.require(call_id)
        row = await self.storage.find_one(Tables.CALL_SESSIONS, id=call_id)
        return {
            "callSession": session.to_dict(),
            "callStatus": session.call_status.value,
            "dbSession": row,
            "streamingStatus": self._streaming.get(call_id, {"status": "not_streaming"}),
            "timestamp": self._now(),
        }

    async def update_call_settings(self, request: RequestEnvelope) -> Dict[str, Any]:
        call_id = self._call_id(request)
        session = self.registry.calls.require(call_id)
        settings = request.data.get("settings") or {}
        session = self.registry.calls.update(call_id, settings={**session.settings, **settings})
        return {
            "callSessionId": call_id,
            "settings": session.settings,
            "providerSettings": {"updated": True, "provider": session.provider.value},
            "timestamp": self._now(),
        }

    async def handle_call_event(self, request: RequestEnvelope) -> Dict[str, Any]:
        call_id = self._call_id(request)
        self.registry.calls.require(call_id)
        event_type = require_field(request.data, "eventType")
        self.registry.calls.update(call_id)
        await self._log_event(call_id, event_type, eventData=request.data.get("eventData"))
        return {
            "callSessionId": call_id,
            "eventType": event_type,
            "eventResult": {"eventType": event_type, "processed": True},
            "timestamp": self._now(),
        }

    async def _stream(self, request: RequestEnvelope, media: str, payload_key: str) -> Dict[str, Any]:
        call_id = self._call_id(request)
        session = self.registry.calls.require(call_id)
        if session.call_status == CallStatus.ENDED:
            raise InvalidRequestError("Call session has ended", {"callSessionId": call_id})
        if not session.streaming_enabled:
            raise InvalidRequestError("Streaming is disabled for this call", {"callSessionId": call_id})
        if media == "video" and session.call_type != CallType.VIDEO:
            raise InvalidRequestError("Video streaming requires a video call", {"callSessionId": call_id})

        payload = require_field(request.data, payload_key)
        participant_id = request.data.get("participantId")
        state = self._streaming.setdefault(call_id, {"status": "streaming", "audioChunks": 0, "videoFrames": 0})
        counter = "audioChunks" if media == "audio" else "videoFrames"
        state[counter] += 1
        state["lastChunkAt"] = self._now()
        self.registry.calls.update(call_id)

        await self._log_event(
            call_id, f"{media}_chunk",
            participantId=participant_id,
            size=len(payload) if isinstance(payload, (str, bytes, list)) else None,
            sentAt=request.data.get("timestamp"),
        )
        return {
            "callSessionId": call_id,
            "participantId": participant_id,
            f"{media}Processed": True,
            "sequence": state[counter],
            "timestamp": self._now(),
        }

    async def stream_audio(self, request: RequestEnvelope) -> Dict[str, Any]:
        return await self._stream(request, "audio", "audioChunk")

    async def stream_video(self, request: RequestEnvelope) -> Dict[str, Any]:
        return await self._stream(request, "video", "videoFrame")

    async def get_call_server_analytics(self, request: RequestEnvelope) -> Dict[str, Any]:
        business_id = business_id_of(request)
        time_range = request.data.get("timeRange", "24h")
        since = self.clock() - ANALYTICS_RANGES.get(time_range, ANALYTICS_RANGES["24h"])
        sessions = await self.storage.find(
            Tables.CALL_SESSIONS,
            match={"business_id": business_id},
            where=lambda r: parse_timestamp(r["created_at"]) >= since,
            order_by="created_at",
            descending=True,
        )

        durations = [float(s.get("duration") or 0) for s in sessions]
        provider_counts: Dict[str, int] = {}
        for s in sessions:
            provider_counts[s["provider"]] = provider_counts.get(s["provider"], 0) + 1
        completed = sum(1 for s in sessions if s.get("status") in ("ended", "completed"))

        return {
            "timeRange": time_range,
            "totalCalls": len(sessions),
            "voiceCalls": sum(1 for s in sessions if s.get("call_type") == CallType.VOICE.value),
            "videoCalls": sum(1 for s in sessions if s.get("call_type") == CallType.VIDEO.value),
            "averageDuration": sum(durations) / len(durations) if durations else 0.0,
            "successRate": completed / len(sessions) * 100 if sessions else 0.0,
            "providerStats": [
                {"provider": p, "count": c}
                for p, c in sorted(provider_counts.items(), key=lambda item: item[1], reverse=True)
            ],
            "activeCalls": sum(
                1 for c in self.registry.active_call_sessions() if c.business_id == business_id
            ),
        }

    async def validate_call_server_permissions(self, request: RequestEnvelope) -> Dict[str, Any]:
        call_type = request.data.get("callType") or (
            request.context.call_type.value if request.context.call_type else None
        )
        return await self.check_permissions(business_id_of(request), call_type)

    def handlers(self):
        return {
            CallAction.INITIATE_CALL: self.initiate_call,
            CallAction.JOIN_CALL: self.join_call,
            CallAction.END_CALL: self.end_call,
            CallAction.MUTE_PARTICIPANT: self.mute_participant,
            CallAction.UNMUTE_PARTICIPANT: self.unmute_participant,
            CallAction.ADD_PARTICIPANT: self.add_participant,
            CallAction.REMOVE_PARTICIPANT: self.remove_participant,
            CallAction.START_RECORDING: self.start_recording,
            CallAction.STOP_RECORDING: self.stop_recording,
            CallAction.GET_CALL_STATUS: self.get_call_status,
            CallAction.UPDATE_CALL_SETTINGS: self.update_call_settings,
            CallAction.HANDLE_CALL_EVENT: self.handle_call_event,
            CallAction.STREAM_AUDIO: self.stream_audio,
            CallAction.STREAM_VIDEO: self.stream_video,
            CallAction.GET_CALL_SERVER_ANALYTICS: self.get_call_server_analytics,
            CallAction.VALIDATE_CALL_SERVER_PERMISSIONS: self.validate_call_server_permissions,
        }


def create_call_server(
    storage: Storage,
    registry: Optional[SessionRegistry] = None,
    clock: Clock = system_clock,
    providers: Iterable[str] = ("internal", "elevenlabs", "tavus"),
    business_hours: Tuple[int, int] = (8, 20),
    **server_options: Any,
) -> ControlServer:
    """Build the call control server around a ``CallService``."""
    registry = registry or SessionRegistry(clock)
    service = CallService(storage, registry, clock, providers, business_hours)
    return ControlServer(
        SERVER_ID,
        CallAction,
        service.handlers(),
        security_level=SecurityLevel.HIGH,
        registry=registry,
        clock=clock,
        domain=service,
        **server_options,
    )
