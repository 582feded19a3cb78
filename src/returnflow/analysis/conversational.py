"""OpenAI-backed conversational capability for chats and live calls."""

import logging
from typing import Any, Dict, List, Optional

import openai

from returnflow.analysis.classifier import detect_return_request
from returnflow.analysis.openai_retry import chat_completions_with_retry
from returnflow.analysis.schemas import ConversationalReply

logger = logging.getLogger(__name__)

RETURN_DETECTION_CONFIDENCE = 0.7
HISTORY_WINDOW = 10

SYSTEM_PROMPT = """You are a customer service agent for an e-commerce store, helping customers with returns and refunds.
- Be empathetic and concise; on a voice or video call keep replies to two or three sentences.
- Ask for the order ID and the reason when a customer wants to return something.
- Explain the next step and set expectations: returns are reviewed within 24 hours.
- Never promise a refund yourself; say the request will be reviewed."""


def _history_messages(history: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    messages = []
    for item in history[-HISTORY_WINDOW:]:
        content = item.get("content") or item.get("message") or item.get("text")
        if not content:
            continue
        sender = item.get("role") or item.get("sender") or "user"
        role = "assistant" if sender in ("assistant", "ai", "agent") else "user"
        messages.append({"role": role, "content": str(content)})
    return messages


class OpenAIConversationalAgent:
    """Replies to customer messages and flags likely return requests."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o",
        temperature: float = 0.1,
        max_tokens: int = 500,
        client: Optional[openai.AsyncOpenAI] = None,
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = client or (openai.AsyncOpenAI(api_key=api_key) if api_key else None)

    async def process_call_message(
        self,
        message: str,
        context: Dict[str, Any],
        history: List[Dict[str, Any]],
    ) -> ConversationalReply:
        if self._client is None:
            logger.warning("OPENAI_API_KEY not configured, conversational agent unavailable")
            return ConversationalReply(success=False, message="Conversational agent unavailable")

        messages = [{"role": "system", "content": SYSTEM_PROMPT}]
        if context.get("callSessionId"):
            messages.append({
                "role": "system",
                "content": f"This is a live {context.get('callType') or 'voice'} call.",
            })
        messages.extend(_history_messages(history))
        messages.append({"role": "user", "content": message})

        try:
            response = await chat_completions_with_retry(
                self._client,
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except openai.OpenAIError as e:
            logger.error("Conversational call failed: %s", e)
            return ConversationalReply(success=False, message="I'm having trouble right now.")

        text = response.choices[0].message.content if response.choices else ""
        data: Dict[str, Any] = {}
        detected = detect_return_request(message, context.get("customerEmail"))
        if detected and detected["confidence"] > RETURN_DETECTION_CONFIDENCE:
            data["returnRequest"] = detected
            data["nextAction"] = "initiate_return_process"
        if context.get("callSessionId"):
            data["callContext"] = {
                "sessionId": context["callSessionId"],
                "provider": context.get("provider"),
                "callType": context.get("callType"),
            }
            data["isCallInteraction"] = True

        return ConversationalReply(success=True, message=text or "", data=data or None)
