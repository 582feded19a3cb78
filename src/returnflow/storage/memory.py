"""Process-local storage backend."""

import copy
import logging
from typing import Any, Dict, List, Mapping, Optional
from uuid import uuid4

from returnflow.core.types import Clock, isoformat, system_clock
from returnflow.storage.base import Predicate, Record, Storage

logger = logging.getLogger(__name__)


class InMemoryStorage(Storage):
    """Dict-of-lists storage for development and tests.

    Inserted rows get an ``id`` and ``created_at`` when the caller does not
    supply them; updates stamp ``updated_at``. Rows are copied on the way in
    and out so callers never share mutable state with the store.
    """

    def __init__(self, clock: Clock = system_clock):
        self._clock = clock
        self._tables: Dict[str, List[Record]] = {}

    async def insert(self, table: str, record: Mapping[str, Any]) -> Record:
        row = copy.deepcopy(dict(record))
        row.setdefault("id", str(uuid4()))
        row.setdefault("created_at", isoformat(self._clock()))
        self._tables.setdefault(table, []).append(row)
        logger.debug("Inserted row %s into %s", row["id"], table)
        return copy.deepcopy(row)

    async def update(
        self, table: str, match: Mapping[str, Any], changes: Mapping[str, Any]
    ) -> List[Record]:
        updated = []
        for row in self._tables.get(table, []):
            if _matches(row, match):
                row.update(copy.deepcopy(dict(changes)))
                row["updated_at"] = isoformat(self._clock())
                updated.append(copy.deepcopy(row))
        return updated

    async def find(
        self,
        table: str,
        match: Optional[Mapping[str, Any]] = None,
        where: Optional[Predicate] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Record]:
        rows = [
            row for row in self._tables.get(table, [])
            if _matches(row, match or {}) and (where is None or where(row))
        ]
        if order_by is not None:
            rows.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by)), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    def count(self, table: str) -> int:
        return len(self._tables.get(table, []))


def _matches(row: Record, match: Mapping[str, Any]) -> bool:
    return all(row.get(key) == value for key, value in match.items())
