"""Closed action sets of the domain control servers."""

from enum import Enum


class RequestAction(str, Enum):
    GET_RETURN_REQUEST = "get_return_request"
    UPDATE_STATUS = "update_status"
    CREATE_RETURN_REQUEST = "create_return_request"
    GET_CUSTOMER_HISTORY = "get_customer_history"
    LOG_DECISION = "log_decision"
    HANDLE_CALL_REQUEST = "handle_call_request"
    UPDATE_CALL_STATUS = "update_call_status"
    GET_CALL_HISTORY = "get_call_history"
    CREATE_CALL_REQUEST = "create_call_request"
    STREAM_CALL_UPDATE = "stream_call_update"
    GET_REQUEST_REAL_TIME_METRICS = "get_request_real_time_metrics"


class PolicyAction(str, Enum):
    GET_ACTIVE_POLICY = "get_active_policy"
    VALIDATE_REQUEST = "validate_request"
    GET_POLICY_RULES = "get_policy_rules"
    CHECK_COMPLIANCE = "check_compliance"
    VALIDATE_CALL_REQUEST = "validate_call_request"
    GET_CALL_POLICY = "get_call_policy"
    SUBSCRIBE_POLICY_UPDATES = "subscribe_policy_updates"
    UNSUBSCRIBE_POLICY_UPDATES = "unsubscribe_policy_updates"
    GET_REAL_TIME_COMPLIANCE = "get_real_time_compliance"
    VALIDATE_STREAMING_REQUEST = "validate_streaming_request"
    GET_POLICY_ANALYTICS = "get_policy_analytics"
    GET_POLICY_CALL_ANALYTICS = "get_policy_call_analytics"
    GET_POLICY_REAL_TIME_METRICS = "get_policy_real_time_metrics"
    VALIDATE_POLICY_CALL_PERMISSIONS = "validate_policy_call_permissions"


class ConversationAction(str, Enum):
    CREATE_CONVERSATION = "create_conversation"
    JOIN_CONVERSATION = "join_conversation"
    LEAVE_CONVERSATION = "leave_conversation"
    SEND_MESSAGE = "send_message"
    GET_CONVERSATION_HISTORY = "get_conversation_history"
    UPDATE_CONVERSATION_STATE = "update_conversation_state"
    ESCALATE_CONVERSATION = "escalate_conversation"
    ASSIGN_AI_AGENT = "assign_ai_agent"
    GET_AI_RESPONSE = "get_ai_response"
    STREAM_CONVERSATION = "stream_conversation"
    ANALYZE_SENTIMENT = "analyze_sentiment"
    DETECT_INTENT = "detect_intent"
    GET_CONVERSATION_ANALYTICS = "get_conversation_analytics"
    HANDLE_CONVERSATION_EVENT = "handle_conversation_event"
    MERGE_CONVERSATIONS = "merge_conversations"
    ARCHIVE_CONVERSATION = "archive_conversation"


class CallAction(str, Enum):
    INITIATE_CALL = "initiate_call"
    JOIN_CALL = "join_call"
    END_CALL = "end_call"
    MUTE_PARTICIPANT = "mute_participant"
    UNMUTE_PARTICIPANT = "unmute_participant"
    ADD_PARTICIPANT = "add_participant"
    REMOVE_PARTICIPANT = "remove_participant"
    START_RECORDING = "start_recording"
    STOP_RECORDING = "stop_recording"
    GET_CALL_STATUS = "get_call_status"
    UPDATE_CALL_SETTINGS = "update_call_settings"
    HANDLE_CALL_EVENT = "handle_call_event"
    STREAM_AUDIO = "stream_audio"
    STREAM_VIDEO = "stream_video"
    GET_CALL_SERVER_ANALYTICS = "get_call_server_analytics"
    VALIDATE_CALL_SERVER_PERMISSIONS = "validate_call_server_permissions"
