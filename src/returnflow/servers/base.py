"""Helpers shared by the domain servers."""

from datetime import timedelta
from enum import Enum
from typing import Any, Mapping, Type, TypeVar

from returnflow.common.exceptions import InvalidRequestError
from returnflow.control.envelope import RequestEnvelope
from returnflow.control.sessions import SessionRegistry

ANALYTICS_RANGES = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}


def business_id_of(request: RequestEnvelope) -> str:
    """Payload ``businessId`` wins over the envelope's tenant."""
    return request.data.get("businessId") or request.business_id


def require_field(data: Mapping[str, Any], key: str) -> Any:
    value = data.get(key)
    if value is None or value == "":
        raise InvalidRequestError(f"{key} is required", {"field": key})
    return value


def system_load(registry: SessionRegistry, weight: int) -> int:
    """Synthetic 0-100 load score from live session counts."""
    active = len(registry.active_conversations()) + len(registry.active_call_sessions())
    return min(100, active * weight)


E = TypeVar("E", bound=Enum)


def parse_enum(enum: Type[E], value: Any, field: str) -> E:
    """Coerce a payload value into ``enum`` or raise InvalidRequestError."""
    try:
        return enum(value)
    except ValueError:
        raise InvalidRequestError(f"Unsupported {field} '{value}'", {"field": field})
