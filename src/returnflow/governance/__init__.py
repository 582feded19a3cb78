"""Governance - decision audit trail."""

from returnflow.governance.schemas import AuditEntry, AuditEventType
from returnflow.governance.audit import AuditLogger, AuditLogIntegrityError, AuditSink

__all__ = [
    "AuditEntry",
    "AuditEventType",
    "AuditLogger",
    "AuditLogIntegrityError",
    "AuditSink",
]
