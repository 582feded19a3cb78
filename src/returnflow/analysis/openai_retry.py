"""Retry wrapper around the async OpenAI chat completions call.

Retries rate-limit (429), server errors (5xx) and connection timeouts with
exponential back-off; anything else is raised on the first attempt.
"""

import asyncio
import logging
from typing import Any, Optional

import openai

logger = logging.getLogger(__name__)

MAX_RETRIES: int = 3
BASE_DELAY: float = 1.0
MAX_DELAY: float = 10.0
BACKOFF_FACTOR: float = 2.0

_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, (openai.RateLimitError, openai.APITimeoutError, openai.APIConnectionError)):
        return True
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code in _RETRYABLE_STATUS_CODES
    return False


async def chat_completions_with_retry(client: "openai.AsyncOpenAI", **kwargs: Any) -> Any:
    """Await ``client.chat.completions.create(**kwargs)`` with retries.

    Raises:
        The last exception once retries are exhausted, or any
        non-retryable error immediately.
    """
    last_exc: Optional[Exception] = None
    delay = BASE_DELAY

    for attempt in range(MAX_RETRIES + 1):
        try:
            return await client.chat.completions.create(**kwargs)
        except openai.OpenAIError as exc:
            last_exc = exc
            if not _is_retryable(exc):
                logger.warning("OpenAI call failed with non-retryable error: %s", exc)
                raise
            if attempt < MAX_RETRIES:
                logger.warning(
                    "OpenAI call failed (attempt %d/%d): %s, retrying in %.1fs",
                    attempt + 1, MAX_RETRIES + 1, exc, delay,
                )
                await asyncio.sleep(delay)
                delay = min(delay * BACKOFF_FACTOR, MAX_DELAY)
            else:
                logger.error("OpenAI call failed after %d attempts: %s", MAX_RETRIES + 1, exc)

    raise last_exc  # type: ignore[misc]
