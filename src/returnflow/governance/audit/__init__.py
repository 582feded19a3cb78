"""Audit logging."""

from returnflow.governance.audit.logger import AuditLogger, AuditLogIntegrityError
from returnflow.governance.audit.sink import AuditSink

__all__ = ["AuditLogger", "AuditLogIntegrityError", "AuditSink"]
