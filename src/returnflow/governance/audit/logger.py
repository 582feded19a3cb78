"""Audit Logger - append-only, hash-chained record of every decision.

One JSONL file per UTC day. With chaining on, every line stores the hash
of the line before it and the hash of its own content, so editing,
reordering or dropping a line is detected by ``verify_integrity``.
"""

import hashlib
import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from returnflow.common.constants import AuditConstants
from returnflow.common.exceptions import AuditError
from returnflow.core.types import Clock, system_clock
from returnflow.governance.schemas import AuditEntry, AuditEventType

logger = logging.getLogger(__name__)


class AuditLogIntegrityError(AuditError):
    """Raised when a log file does not verify against its hash chain."""


class AuditLogger:
    """Writes decision records to the daily audit file.

    Args:
        log_dir: Directory for the JSONL files; created when missing.
        log_filename_pattern: File name with a ``{date}`` placeholder.
        enable_hash_chain: Chain entries by hash.
        hash_algorithm: Any name accepted by ``hashlib.new``.
        clock: Time source for entry timestamps and file rotation.
    """

    def __init__(
        self,
        log_dir: Union[str, Path],
        log_filename_pattern: str = "returnflow_audit_{date}.jsonl",
        enable_hash_chain: bool = True,
        hash_algorithm: str = AuditConstants.HASH_ALGORITHM,
        clock: Clock = system_clock,
    ):
        self.log_dir = Path(log_dir)
        self.log_filename_pattern = log_filename_pattern
        self.enable_hash_chain = enable_hash_chain
        self.hash_algorithm = hash_algorithm
        self._clock = clock
        self._lock = threading.Lock()

        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._last_hash = self._resume_chain() if enable_hash_chain else None

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def _log_path(self, date: Optional[str] = None) -> Path:
        date = date or self._clock().strftime("%Y-%m-%d")
        return self.log_dir / self.log_filename_pattern.replace("{date}", date)

    @staticmethod
    def _lines(path: Path) -> Iterator[Tuple[int, str]]:
        """Non-blank lines of ``path`` with 1-based line numbers."""
        if not path.exists():
            return
        with open(path, "r") as f:
            for number, line in enumerate(f, start=1):
                line = line.strip()
                if line:
                    yield number, line

    def _entries(self, path: Path) -> Iterator[AuditEntry]:
        for _, line in self._lines(path):
            try:
                yield AuditEntry.from_jsonl(line)
            except ValueError:
                logger.warning("Skipping malformed audit line in %s", path)

    def _resume_chain(self) -> Optional[str]:
        """Hash of the last line in today's file, if any."""
        path = self._log_path()
        last_hash = None
        try:
            for _, line in self._lines(path):
                last_hash = json.loads(line).get("entry_hash")
        except (json.JSONDecodeError, OSError):
            logger.warning("Could not resume hash chain from %s", path)
            return None
        return last_hash

    def get_log_files(self) -> List[Path]:
        return sorted(self.log_dir.glob("*.jsonl"))

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def _digest(self, payload: Dict[str, Any]) -> str:
        content = json.dumps(payload, sort_keys=True, default=str)
        return hashlib.new(self.hash_algorithm, content.encode("utf-8")).hexdigest()

    def _append(self, **fields: Any) -> AuditEntry:
        with self._lock:
            entry = AuditEntry(timestamp=self._clock(), **fields)
            if self.enable_hash_chain:
                entry = entry.model_copy(update={"previous_hash": self._last_hash})
                entry = entry.model_copy(update={"entry_hash": self._digest(entry.hash_payload())})

            try:
                with open(self._log_path(), "a") as f:
                    f.write(entry.to_jsonl() + "\n")
            except OSError as e:
                raise AuditError(f"Failed to write audit entry: {e}")

            if self.enable_hash_chain:
                self._last_hash = entry.entry_hash
            return entry

    def log_decision(
        self,
        decision_id: str,
        business_id: str,
        session_id: Optional[str],
        action: str,
        confidence_score: float,
        requires_human_review: bool,
        trail: List[Dict[str, Any]],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """Log a completed decision with its full stage trail."""
        return self._append(
            event_type=AuditEventType.DECISION,
            decision_id=decision_id,
            business_id=business_id,
            session_id=session_id,
            action=action,
            confidence_score=min(1.0, max(0.0, confidence_score)),
            requires_human_review=requires_human_review,
            trail=trail,
            metadata=metadata or {},
        )

    def log_aborted_decision(
        self,
        decision_id: str,
        business_id: str,
        session_id: Optional[str],
        error: str,
        trail: List[Dict[str, Any]],
    ) -> AuditEntry:
        """Log a decision that stopped at a failing stage."""
        return self._append(
            event_type=AuditEventType.DECISION_ABORTED,
            decision_id=decision_id,
            business_id=business_id,
            session_id=session_id,
            trail=trail,
            metadata={"error": error},
        )

    def log_system_event(
        self, event_description: str, metadata: Optional[Dict[str, Any]] = None
    ) -> AuditEntry:
        return self._append(
            event_type=AuditEventType.SYSTEM_EVENT,
            metadata={"event_description": event_description, **(metadata or {})},
        )

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def get_entries(
        self,
        date: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        decision_id: Optional[str] = None,
        business_id: Optional[str] = None,
    ) -> Iterator[AuditEntry]:
        """Entries of one day's file, optionally filtered."""
        for entry in self._entries(self._log_path(date)):
            if event_type and entry.event_type != event_type:
                continue
            if decision_id and entry.decision_id != decision_id:
                continue
            if business_id and entry.business_id != business_id:
                continue
            yield entry

    def get_decision_history(self, decision_id: str) -> List[AuditEntry]:
        """Every entry of ``decision_id`` across all files, oldest first."""
        entries = [
            entry
            for path in self.get_log_files()
            for entry in self._entries(path)
            if entry.decision_id == decision_id
        ]
        return sorted(entries, key=lambda e: e.timestamp)

    def get_entry_count(self, date: Optional[str] = None) -> int:
        return sum(1 for _ in self._lines(self._log_path(date)))

    def verify_integrity(self, date: Optional[str] = None) -> bool:
        """Check one day's file against its hash chain.

        Raises:
            AuditLogIntegrityError: On the first line that does not verify.
        """
        if not self.enable_hash_chain:
            return True

        previous_hash = None
        for number, line in self._lines(self._log_path(date)):
            try:
                payload = json.loads(line)
            except json.JSONDecodeError as e:
                raise AuditLogIntegrityError(f"Malformed JSON at line {number}: {e}")

            if payload.get("previous_hash") != previous_hash:
                raise AuditLogIntegrityError(
                    f"Hash chain broken at line {number}: expected previous_hash "
                    f"{previous_hash}, got {payload.get('previous_hash')}"
                )
            stored_hash = payload.pop("entry_hash", None)
            if self._digest(payload) != stored_hash:
                raise AuditLogIntegrityError(
                    f"Entry hash mismatch at line {number}, entry was modified"
                )
            previous_hash = stored_hash

        return True
