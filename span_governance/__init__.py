"""
Span Governance

Governed, reversible units of work ("spans") with a safety net around them.

PURPOSE:
- Every operation is simulated before it runs, producing a predicted diff
- Policy, risk and PII checks decide whether the span may execute
- Risky spans wait for a quorum of human approvers
- Every transition is mirrored into an observability timeline

KEY PRINCIPLE:
"Nothing executes without a passing validation or a granted approval."

ARCHITECTURE:
- span_engine.py: span registry and lifecycle state machine
- governance_engine.py: risk scoring, PII detection, policies, approvals
- timeline_store.py: events, metrics, alerts, audit, health, traces
- orchestrator.py: call-site boundary wiring the three together

All state is in-memory and lives as long as the process.
"""

from span_governance.errors import (
    SpanGovernanceError,
    NotFound,
    InvalidState,
    NotReady,
    NotReversible,
    InvalidApprovalState,
    NotAnApprover,
    NoAuthenticatedUser,
    ExecutionNotAuthorized,
    PolicyDenied,
    PolicyValidationError,
)
from span_governance.span_models import (
    SpanType,
    SpanStatus,
    SpanContext,
    SpanOperation,
    SpanDiff,
    DiffChange,
    ChangeKind,
    ImpactLevel,
)
from span_governance.span_engine import SpanEngine
from span_governance.governance_models import (
    RiskLevel,
    ApprovalState,
    GovernanceApproval,
    PolicyEvaluation,
    ExecutionValidation,
    SecurityPolicy,
    Identity,
)
from span_governance.governance_engine import SecurityGovernanceEngine
from span_governance.identity import IdentityRegistry, acting_as, current_identity
from span_governance.timeline_models import (
    EventType,
    Severity,
    AlertSeverity,
    TimelineEvent,
    TimelineQuery,
    MetricsQuery,
    AuditQuery,
)
from span_governance.timeline_store import TimelineObservabilityStore
from span_governance.orchestrator import GovernedSpanOrchestrator, Runtime, build_runtime

__all__ = [
    "SpanGovernanceError",
    "NotFound",
    "InvalidState",
    "NotReady",
    "NotReversible",
    "InvalidApprovalState",
    "NotAnApprover",
    "NoAuthenticatedUser",
    "ExecutionNotAuthorized",
    "PolicyDenied",
    "PolicyValidationError",
    "SpanType",
    "SpanStatus",
    "SpanContext",
    "SpanOperation",
    "SpanDiff",
    "DiffChange",
    "ChangeKind",
    "ImpactLevel",
    "SpanEngine",
    "RiskLevel",
    "ApprovalState",
    "GovernanceApproval",
    "PolicyEvaluation",
    "ExecutionValidation",
    "SecurityPolicy",
    "Identity",
    "SecurityGovernanceEngine",
    "IdentityRegistry",
    "acting_as",
    "current_identity",
    "EventType",
    "Severity",
    "AlertSeverity",
    "TimelineEvent",
    "TimelineQuery",
    "MetricsQuery",
    "AuditQuery",
    "TimelineObservabilityStore",
    "GovernedSpanOrchestrator",
    "Runtime",
    "build_runtime",
]
