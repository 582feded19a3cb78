"""Shared fixtures: a controllable clock, storage and policy seeding."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import pytest

from returnflow.common.constants import Tables
from returnflow.control.envelope import RequestEnvelope
from returnflow.control.sessions import SessionRegistry
from returnflow.storage.memory import InMemoryStorage


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


DEFAULT_RULES: Dict[str, Any] = {
    "return_window_days": 30,
    "auto_approve_threshold": 100,
    "required_evidence": [],
    "acceptable_reasons": ["defective", "damaged", "wrong item", "changed mind"],
    "allow_voice_calls": True,
    "allow_video_calls": True,
    "max_call_duration": 1800,
}


async def insert_policy(storage: InMemoryStorage, business_id: str = "biz-1", **rules: Any):
    """Store an active policy for ``business_id`` with ``rules`` over the defaults."""
    return await storage.insert(Tables.POLICIES, {
        "business_id": business_id,
        "version": "1.0",
        "is_active": True,
        "rules": {**DEFAULT_RULES, **rules},
    })


def envelope(action: str, data: Optional[Dict[str, Any]] = None, **context: Any) -> RequestEnvelope:
    """Envelope from a test agent for tenant ``biz-1``."""
    return RequestEnvelope.create("test-agent", "biz-1", action, data, **context)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage(clock):
    return InMemoryStorage(clock)


@pytest.fixture
def registry(clock):
    return SessionRegistry(clock)


@pytest.fixture
def seed_policy(storage):
    """Coroutine function inserting a policy into the ``storage`` fixture."""

    async def _seed(business_id: str = "biz-1", **rules: Any):
        return await insert_policy(storage, business_id, **rules)

    return _seed


@pytest.fixture
def make_envelope():
    return envelope
