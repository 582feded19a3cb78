"""ReturnFlow - Return-management control plane and layered decision engine."""

__version__ = "0.1.0"
__author__ = "ReturnFlow Team"

# Core exports
from returnflow.core.types import CallStatus, FinalAction, TriageVerdict

__all__ = [
    "CallStatus",
    "FinalAction",
    "TriageVerdict",
]
