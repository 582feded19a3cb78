"""Domain control servers."""

from returnflow.servers.actions import CallAction, ConversationAction, PolicyAction, RequestAction
from returnflow.servers.call import CallService, create_call_server
from returnflow.servers.conversation import ConversationService, create_conversation_server
from returnflow.servers.policy import PolicyService, create_policy_server
from returnflow.servers.request import RequestService, create_request_server

__all__ = [
    "CallAction",
    "ConversationAction",
    "PolicyAction",
    "RequestAction",
    "CallService",
    "ConversationService",
    "PolicyService",
    "RequestService",
    "create_call_server",
    "create_conversation_server",
    "create_policy_server",
    "create_request_server",
]
