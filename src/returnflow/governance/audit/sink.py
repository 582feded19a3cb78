"""Explicit audit capability threaded through one decision request."""

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from returnflow.common.exceptions import AuditError
from returnflow.core.types import Clock, isoformat, system_clock
from returnflow.governance.audit.logger import AuditLogger
from returnflow.governance.schemas import AuditEntry

if TYPE_CHECKING:
    from returnflow.control.envelope import ResponseEnvelope

logger = logging.getLogger(__name__)


class AuditSink:
    """Append-only buffer of audit records, flushed exactly once.

    The decision engine appends one entry per stage and every control
    server it calls appends the audit trail of its response envelope.
    Nothing is written out until ``flush``.
    """

    def __init__(
        self,
        audit_logger: Optional[AuditLogger] = None,
        clock: Clock = system_clock,
    ):
        self._audit_logger = audit_logger
        self._clock = clock
        self._entries: List[Dict[str, Any]] = []
        self._responses: List[Dict[str, Any]] = []
        self._flushed = False

    @property
    def entries(self) -> List[Dict[str, Any]]:
        return list(self._entries)

    @property
    def responses(self) -> List[Dict[str, Any]]:
        return list(self._responses)

    @property
    def flushed(self) -> bool:
        return self._flushed

    def _ensure_open(self) -> None:
        if self._flushed:
            raise AuditError("Audit sink already flushed")

    def append(self, stage: str, **fields: Any) -> Dict[str, Any]:
        """Append a stage entry and return it."""
        self._ensure_open()
        entry = {"stage": stage, "timestamp": isoformat(self._clock()), **fields}
        self._entries.append(entry)
        return entry

    def record_response(self, response: "ResponseEnvelope") -> None:
        """Keep the audit trail of a control-server response."""
        self._ensure_open()
        record = response.audit_trail.to_wire()
        record["success"] = response.success
        if response.error:
            record["error"] = response.error
        self._responses.append(record)

    def flush(
        self,
        decision_id: str,
        business_id: str,
        session_id: Optional[str] = None,
        decision: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> Optional[AuditEntry]:
        """Write everything buffered as one audit log entry.

        Returns the written entry, or None when no audit logger is attached.
        """
        self._ensure_open()
        self._flushed = True
        if self._audit_logger is None:
            return None

        trail = self.entries
        if decision is None:
            return self._audit_logger.log_aborted_decision(
                decision_id=decision_id,
                business_id=business_id,
                session_id=session_id,
                error=error or "unknown",
                trail=trail,
            )
        entry = self._audit_logger.log_decision(
            decision_id=decision_id,
            business_id=business_id,
            session_id=session_id,
            action=decision.get("finalAction", ""),
            confidence_score=float(decision.get("confidence", 0.0)),
            requires_human_review=bool(decision.get("requiresHumanReview", True)),
            trail=trail,
            metadata={"subRequests": self.responses},
        )
        logger.debug("Flushed audit sink for decision %s", decision_id)
        return entry
