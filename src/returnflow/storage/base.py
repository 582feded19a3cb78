"""Storage port used by the control servers.

The control servers treat persistence as an external collaborator: a small
async CRUD surface over named tables of flat JSON-like records.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Mapping, Optional

Record = Dict[str, Any]
Predicate = Callable[[Record], bool]


class Storage(ABC):
    """Async CRUD over named tables.

    Implementations raise ``UpstreamFailureError`` when the backing store
    fails; a missing row is not an error (``find_one`` returns None).
    """

    @abstractmethod
    async def insert(self, table: str, record: Mapping[str, Any]) -> Record:
        """Insert a row and return it as stored (with generated fields)."""

    @abstractmethod
    async def update(
        self, table: str, match: Mapping[str, Any], changes: Mapping[str, Any]
    ) -> List[Record]:
        """Apply ``changes`` to every row matching ``match``; return updated rows."""

    @abstractmethod
    async def find(
        self,
        table: str,
        match: Optional[Mapping[str, Any]] = None,
        where: Optional[Predicate] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Record]:
        """Return rows equal to ``match`` and satisfying ``where``."""

    async def find_one(self, table: str, **match: Any) -> Optional[Record]:
        rows = await self.find(table, match=match, limit=1)
        return rows[0] if rows else None
