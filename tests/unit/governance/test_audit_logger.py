"""Unit tests for Audit Logger.

Tests that audit logs are immutable, append-only, and maintain integrity.
"""

import json
import os
import shutil
import tempfile
from pathlib import Path

import pytest

from returnflow.governance.audit.logger import AuditLogger, AuditLogIntegrityError
from returnflow.governance.schemas import AuditEventType


@pytest.fixture
def temp_log_dir():
    """Create a temporary directory for logs."""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def audit_logger(temp_log_dir, clock):
    """Create an AuditLogger with temp directory."""
    return AuditLogger(log_dir=temp_log_dir, enable_hash_chain=True, clock=clock)


@pytest.fixture
def audit_logger_no_hash(temp_log_dir, clock):
    """Create an AuditLogger without hash chain."""
    return AuditLogger(log_dir=temp_log_dir, enable_hash_chain=False, clock=clock)


def _log(audit_logger, decision_id="dec_123", **overrides):
    fields = dict(
        decision_id=decision_id,
        business_id="biz-1",
        session_id="sess_123",
        action="create_return_request",
        confidence_score=0.9,
        requires_human_review=False,
        trail=[{"stage": "data_collection", "layer": 1, "success": True}],
    )
    fields.update(overrides)
    return audit_logger.log_decision(**fields)


class TestAuditLoggerInit:
    """Test AuditLogger initialization."""

    def test_creates_log_directory(self, temp_log_dir):
        """Test that log directory is created."""
        new_dir = os.path.join(temp_log_dir, "subdir", "logs")
        AuditLogger(log_dir=new_dir)
        assert os.path.exists(new_dir)

    def test_log_file_named_by_date(self, audit_logger, temp_log_dir):
        """Test that log file is created on first entry, named by day."""
        _log(audit_logger)
        log_files = list(Path(temp_log_dir).glob("*.jsonl"))
        assert [f.name for f in log_files] == ["returnflow_audit_2026-03-10.jsonl"]


class TestDecisionLogging:
    """Test decision entries."""

    def test_log_decision_creates_entry(self, audit_logger):
        entry = _log(audit_logger)
        assert entry.event_type == AuditEventType.DECISION
        assert entry.decision_id == "dec_123"
        assert entry.action == "create_return_request"
        assert entry.trail[0]["stage"] == "data_collection"

    def test_confidence_is_clamped(self, audit_logger):
        assert _log(audit_logger, confidence_score=1.7).confidence_score == 1.0

    def test_log_aborted_decision(self, audit_logger):
        entry = audit_logger.log_aborted_decision(
            decision_id="dec_9", business_id="biz-1", session_id=None,
            error="Layer 2 failed: No active policy found", trail=[],
        )
        assert entry.event_type == AuditEventType.DECISION_ABORTED
        assert entry.metadata["error"].startswith("Layer 2 failed")

    def test_filter_entries(self, audit_logger):
        _log(audit_logger, "dec_1")
        _log(audit_logger, "dec_2", business_id="biz-2")
        audit_logger.log_system_event("startup")

        assert [e.decision_id for e in audit_logger.get_entries(business_id="biz-2")] == ["dec_2"]
        assert len(list(audit_logger.get_entries(event_type=AuditEventType.SYSTEM_EVENT))) == 1
        assert len(audit_logger.get_decision_history("dec_1")) == 1
        assert audit_logger.get_entry_count() == 3


class TestAppendOnly:
    """Test append-only behavior."""

    def test_entries_are_appended(self, audit_logger, temp_log_dir):
        for i in range(3):
            _log(audit_logger, f"dec_{i}")

        log_file = next(Path(temp_log_dir).glob("*.jsonl"))
        lines = log_file.read_text().strip().split("\n")
        assert [json.loads(line)["decision_id"] for line in lines] == ["dec_0", "dec_1", "dec_2"]


class TestHashChainIntegrity:
    """Test hash chain integrity verification."""

    def test_hash_chain_created(self, audit_logger):
        first = _log(audit_logger, "dec_1")
        second = _log(audit_logger, "dec_2")
        assert first.previous_hash is None
        assert first.entry_hash
        assert second.previous_hash == first.entry_hash

    def test_verify_integrity_passes(self, audit_logger):
        for i in range(5):
            _log(audit_logger, f"dec_{i}")
        assert audit_logger.verify_integrity() is True

    def test_verify_integrity_detects_tampering(self, audit_logger, temp_log_dir):
        _log(audit_logger, "dec_1")
        _log(audit_logger, "dec_2")

        log_file = next(Path(temp_log_dir).glob("*.jsonl"))
        lines = log_file.read_text().strip().split("\n")
        tampered = json.loads(lines[0])
        tampered["action"] = "human_review"
        lines[0] = json.dumps(tampered)
        log_file.write_text("\n".join(lines) + "\n")

        with pytest.raises(AuditLogIntegrityError):
            audit_logger.verify_integrity()

    def test_chain_resumes_across_instances(self, audit_logger, temp_log_dir, clock):
        first = _log(audit_logger, "dec_1")
        reopened = AuditLogger(log_dir=temp_log_dir, clock=clock)
        second = _log(reopened, "dec_2")
        assert second.previous_hash == first.entry_hash
        assert reopened.verify_integrity() is True

    def test_no_hash_chain_when_disabled(self, audit_logger_no_hash):
        entry = _log(audit_logger_no_hash)
        assert entry.entry_hash is None
        assert audit_logger_no_hash.verify_integrity() is True
