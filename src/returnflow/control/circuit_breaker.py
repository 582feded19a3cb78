"""Per-agent circuit breaker."""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from returnflow.common.constants import ControlServerConstants
from returnflow.common.exceptions import ServiceUnavailableError
from returnflow.core.types import Clock, system_clock

logger = logging.getLogger(__name__)


@dataclass
class BreakerState:
    failures: int = 0
    last_failure: Optional[float] = None


class CircuitBreaker:
    """Counts domain failures per agent and fails fast once the count
    reaches ``failure_threshold``.

    An open breaker closes again on the first check made ``reset_seconds``
    or more after the last recorded failure. Any success clears the count.
    """

    def __init__(
        self,
        failure_threshold: int = ControlServerConstants.CIRCUIT_BREAKER_THRESHOLD,
        reset_seconds: float = ControlServerConstants.CIRCUIT_BREAKER_RESET_SECONDS,
        clock: Clock = system_clock,
    ):
        self.failure_threshold = failure_threshold
        self.reset_seconds = reset_seconds
        self._clock = clock
        self._states: Dict[str, BreakerState] = {}

    def is_open(self, key: str) -> bool:
        state = self._states.get(key)
        if state is None or state.failures < self.failure_threshold:
            return False
        elapsed = self._clock().timestamp() - (state.last_failure or 0.0)
        if elapsed >= self.reset_seconds:
            logger.info("Circuit breaker reset", extra={"agent_id": key})
            del self._states[key]
            return False
        return True

    def check(self, key: str) -> None:
        """Raise ``ServiceUnavailableError`` while the breaker is open."""
        if self.is_open(key):
            raise ServiceUnavailableError(
                key, {"failures": self._states[key].failures}
            )

    def record_success(self, key: str) -> None:
        self._states.pop(key, None)

    def record_failure(self, key: str) -> None:
        state = self._states.setdefault(key, BreakerState())
        state.failures += 1
        state.last_failure = self._clock().timestamp()
        if state.failures == self.failure_threshold:
            logger.error(
                "Circuit breaker opened",
                extra={"agent_id": key, "failures": state.failures},
            )

    def failure_count(self, key: str) -> int:
        state = self._states.get(key)
        return state.failures if state else 0
