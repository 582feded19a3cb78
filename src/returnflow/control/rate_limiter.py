"""Per-agent sliding-window rate limiter."""

import logging
from collections import deque
from typing import Deque, Dict

from returnflow.common.constants import ControlServerConstants
from returnflow.common.exceptions import RateLimitExceededError
from returnflow.core.types import Clock, system_clock

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """Allows at most ``max_requests`` per key within any rolling window.

    Rejected requests are not recorded, so a caller that backs off regains
    capacity as soon as its oldest accepted request leaves the window.
    """

    def __init__(
        self,
        max_requests: int = ControlServerConstants.RATE_LIMIT_MAX_REQUESTS,
        window_seconds: float = ControlServerConstants.RATE_LIMIT_WINDOW_SECONDS,
        clock: Clock = system_clock,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}

    def _evict(self, key: str, now: float) -> Deque[float]:
        hits = self._hits.setdefault(key, deque())
        cutoff = now - self.window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()
        return hits

    def try_acquire(self, key: str) -> bool:
        """Record a request for ``key`` if under budget. Returns False otherwise."""
        now = self._clock().timestamp()
        hits = self._evict(key, now)
        if len(hits) >= self.max_requests:
            return False
        hits.append(now)
        return True

    def acquire(self, key: str) -> None:
        """Like ``try_acquire`` but raises ``RateLimitExceededError``."""
        if not self.try_acquire(key):
            logger.warning(
                "Rate limit exceeded",
                extra={"agent_id": key, "limit": self.max_requests},
            )
            raise RateLimitExceededError(
                key, {"limit": self.max_requests, "window_seconds": self.window_seconds}
            )

    def remaining(self, key: str) -> int:
        now = self._clock().timestamp()
        return max(0, self.max_requests - len(self._evict(key, now)))
