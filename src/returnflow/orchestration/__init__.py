"""Orchestration - the layered decision pipeline.

Components:
- DecisionContext: per-request record threaded through the stages
- combine_decision: AI verdict + policy compliance -> final action
- LayeredDecisionEngine: the four-stage pipeline
"""

from returnflow.orchestration.decision_context import DecisionContext, Stage, StageResult
from returnflow.orchestration.decision_engine import (
    PROCESS_DECISION,
    LayeredDecisionEngine,
    combine_decision,
)
from returnflow.governance.audit.sink import AuditSink

__all__ = [
    "DecisionContext",
    "Stage",
    "StageResult",
    "PROCESS_DECISION",
    "LayeredDecisionEngine",
    "combine_decision",
    "AuditSink",
]
