"""
Governed Span Orchestrator

Call-site boundary for governed work. Wires the span engine, the governance
engine and the timeline store together through explicit construction, and
mirrors every externally relevant transition into the timeline.

EXECUTION GATE:
execute() is refused with ExecutionNotAuthorized unless the latest validation
of the span either returned can_execute=True or opened an approval that is
now APPROVED. A blocked validation never authorizes, and approvals opened for
other requests are ignored.

The span engine stays governance-agnostic; only this boundary enforces the gate.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from .config import get_settings
from .errors import ExecutionNotAuthorized, InvalidState, NotFound
from .governance_engine import SecurityGovernanceEngine
from .governance_models import ApprovalState, ApproverDecision, ExecutionValidation, GovernanceApproval
from .identity import IdentityRegistry, current_identity
from .metrics import start_metrics_server_if_enabled
from .span_engine import SpanEngine
from .span_models import SpanDiff, SpanOperation, SpanType
from .timeline_models import EventType, Severity
from .timeline_store import TimelineObservabilityStore

logger = logging.getLogger(__name__)

SPAN_SOURCE = "span_engine"
SECURITY_SOURCE = "security_engine"


class GovernedSpanOrchestrator:
    """
    Drives spans through simulate -> validate -> (approve) -> execute and
    records the narrative of each span as one trace.
    """

    def __init__(
        self,
        engine: SpanEngine,
        governance: SecurityGovernanceEngine,
        timeline: TimelineObservabilityStore,
    ):
        self.engine = engine
        self.governance = governance
        self.timeline = timeline
        self._traces: Dict[str, str] = {}
        self._validations: Dict[str, ExecutionValidation] = {}
        timeline.register_health_sources(
            active_spans=engine.active_count,
            pending_approvals=governance.pending_approval_count,
        )

    # ------------------------------------------------------------------

    def _user_id(self) -> Optional[str]:
        identity = current_identity()
        return identity.id if identity else None

    def _log(
        self,
        event_type: EventType,
        source: str,
        message: str,
        span_id: str,
        severity: Severity = Severity.INFO,
        metadata: Optional[Dict[str, Any]] = None,
        tags: Optional[list] = None,
    ) -> str:
        return self.timeline.log_event(
            event_type,
            source,
            message,
            span_id=span_id,
            user_id=self._user_id(),
            trace_id=self._traces.get(span_id),
            severity=severity,
            metadata=metadata,
            tags=tags,
        )

    def _refused(self, phase: str, span_id: str, error: InvalidState) -> None:
        self._log(
            EventType.SYSTEM_EVENT,
            SPAN_SOURCE,
            f"Span {phase} refused: {error}",
            span_id,
            severity=Severity.WARNING,
            metadata={"phase": phase, "error": str(error), "refused": True},
            tags=["span", "refused"],
        )

    def trace_for(self, span_id: str) -> Optional[str]:
        return self._traces.get(span_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_span(
        self,
        span_type: SpanType,
        operation: SpanOperation,
        parent_id: Optional[str] = None,
        args: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        span_id = self.engine.create(span_type, operation, parent_id, args, metadata)
        # Children share their parent's trace
        trace_id = self._traces.get(parent_id) if parent_id else None
        self._traces[span_id] = trace_id or self.timeline.create_trace()
        span = self.engine.get(span_id)
        self._log(
            EventType.SPAN_CREATED,
            SPAN_SOURCE,
            f"Span created: {span.type.value}",
            span_id,
            metadata={"type": span.type.value, "reversible": span.reversible, "parent_id": parent_id},
            tags=["span", span.type.value],
        )
        return span_id

    async def simulate(self, span_id: str) -> SpanDiff:
        try:
            diff = await self.engine.simulate(span_id)
        except NotFound:
            raise
        except InvalidState as e:
            self._refused("simulate", span_id, e)
            raise
        except Exception as e:
            self._log(
                EventType.SPAN_FAILED,
                SPAN_SOURCE,
                f"Span simulation failed: {e}",
                span_id,
                severity=Severity.ERROR,
                metadata={"phase": "simulate", "error": str(e)},
                tags=["span", "failure"],
            )
            raise
        self._log(
            EventType.SPAN_SIMULATED,
            SPAN_SOURCE,
            f"Span simulated with {len(diff.changes)} changes",
            span_id,
            metadata=diff.to_dict(),
            tags=["span", "simulation"],
        )
        return diff

    def validate(self, span_id: str) -> ExecutionValidation:
        """Run governance for the span and mirror the decision into the timeline."""
        result = self.governance.validate_span_execution(span_id)
        self._validations[span_id] = result

        self._log(
            EventType.POLICY_EVALUATED,
            SECURITY_SOURCE,
            f"Policy evaluated: can_execute={result.can_execute}, requires_approval={result.requires_approval}",
            span_id,
            metadata=result.to_dict(),
            tags=["governance"],
        )
        if result.pii_detected:
            self._log(
                EventType.PII_DETECTED,
                SECURITY_SOURCE,
                "PII detected in span arguments",
                span_id,
                severity=Severity.WARNING,
                metadata={"contract_required": result.contract_required},
                tags=["governance", "pii"],
            )
        if not result.can_execute and not result.requires_approval:
            self._log(
                EventType.SECURITY_VIOLATION,
                SECURITY_SOURCE,
                "Span blocked: " + "; ".join(result.violations),
                span_id,
                severity=Severity.ERROR,
                metadata={"violations": list(result.violations)},
                tags=["governance", "violation"],
            )
        if result.approval_id:
            self._log(
                EventType.APPROVAL_REQUESTED,
                SECURITY_SOURCE,
                f"Approval requested: {result.approval_id}",
                span_id,
                metadata={"approval_id": result.approval_id},
                tags=["governance", "approval"],
            )
        return result

    def approve(self, approval_id: str, approver_id: str, comment: Optional[str] = None) -> GovernanceApproval:
        try:
            approval = self.governance.approve(approval_id, approver_id, comment)
        except Exception as e:
            self.timeline.log_audit(approver_id, "approval.approve", approval_id, "failure", {"error": str(e)})
            raise
        self.timeline.log_audit(approver_id, "approval.approve", approval_id, "success", {"comment": comment})
        if approval.status == ApprovalState.APPROVED:
            self._log(
                EventType.APPROVAL_GRANTED,
                SECURITY_SOURCE,
                f"Approval granted: {approval_id}",
                approval.span_id,
                metadata={"approval_id": approval_id},
                tags=["governance", "approval"],
            )
        elif approval.status == ApprovalState.PENDING:
            outstanding = [a.user_id for a in approval.approvers if a.status != ApproverDecision.APPROVED]
            self._log(
                EventType.USER_ACTION,
                SECURITY_SOURCE,
                f"Approval recorded by {approver_id}, {len(outstanding)} outstanding",
                approval.span_id,
                metadata={"approval_id": approval_id, "approver_id": approver_id, "outstanding": outstanding},
                tags=["governance", "approval"],
            )
        return approval

    def reject(self, approval_id: str, approver_id: str, comment: Optional[str] = None) -> GovernanceApproval:
        try:
            approval = self.governance.reject(approval_id, approver_id, comment)
        except Exception as e:
            self.timeline.log_audit(approver_id, "approval.reject", approval_id, "failure", {"error": str(e)})
            raise
        self.timeline.log_audit(approver_id, "approval.reject", approval_id, "success", {"comment": comment})
        self._log(
            EventType.APPROVAL_REJECTED,
            SECURITY_SOURCE,
            f"Approval rejected by {approver_id}",
            approval.span_id,
            severity=Severity.WARNING,
            metadata={"approval_id": approval_id, "comment": comment},
            tags=["governance", "approval"],
        )
        return approval

    def is_authorized(self, span_id: str) -> bool:
        """True when the span's latest validation passed or its approval was granted."""
        validation = self._validations.get(span_id)
        if validation is None:
            return False
        if validation.can_execute:
            return True
        if not validation.requires_approval or not validation.approval_id:
            return False
        approval = self.governance.get_approval(validation.approval_id)
        return approval.span_id == span_id and approval.status == ApprovalState.APPROVED

    def expire_stale_approvals(self, now: Optional[datetime] = None) -> List[str]:
        """Expire pending approvals past their window and log each one."""
        expired = self.governance.expire_stale_approvals(now)
        for approval_id in expired:
            approval = self.governance.get_approval(approval_id)
            self._log(
                EventType.APPROVAL_EXPIRED,
                SECURITY_SOURCE,
                f"Approval expired: {approval_id}",
                approval.span_id,
                severity=Severity.WARNING,
                metadata={"approval_id": approval_id, "expires_at": approval.expires_at.isoformat()},
                tags=["governance", "approval"],
            )
        return expired

    def remove_span(self, span_id: str) -> None:
        """Drop a finished span from the engine and forget its trace and validation."""
        self.engine.remove(span_id)
        self._traces.pop(span_id, None)
        self._validations.pop(span_id, None)

    async def execute(self, span_id: str) -> Any:
        """
        Execute a span that passed governance.

        Raises:
            ExecutionNotAuthorized: no passing validation and no granted approval
        """
        if not self.is_authorized(span_id):
            self._log(
                EventType.SECURITY_VIOLATION,
                SECURITY_SOURCE,
                f"Unauthorized execution attempt for span {span_id}",
                span_id,
                severity=Severity.ERROR,
                tags=["governance", "violation"],
            )
            raise ExecutionNotAuthorized(f"Span {span_id} has no passing validation or granted approval")

        started = time.perf_counter()
        try:
            result = await self.engine.execute(span_id)
        except NotFound:
            raise
        except InvalidState as e:
            self._refused("execute", span_id, e)
            raise
        except Exception as e:
            self._log(
                EventType.SPAN_FAILED,
                SPAN_SOURCE,
                f"Span execution failed: {e}",
                span_id,
                severity=Severity.ERROR,
                metadata={"phase": "execute", "error": str(e)},
                tags=["span", "failure"],
            )
            raise
        duration_ms = (time.perf_counter() - started) * 1000.0

        self.timeline.record_metric(
            "span_execution_time", duration_ms, "ms", SPAN_SOURCE, {"span_id": span_id}
        )
        self._log(
            EventType.SPAN_EXECUTED,
            SPAN_SOURCE,
            f"Span executed in {duration_ms:.1f}ms",
            span_id,
            metadata={"duration_ms": duration_ms},
            tags=["span", "execution"],
        )
        return result

    async def rollback(self, span_id: str) -> None:
        try:
            await self.engine.rollback(span_id)
        except Exception as e:
            self._log(
                EventType.SYSTEM_EVENT,
                SPAN_SOURCE,
                f"Span rollback failed: {e}",
                span_id,
                severity=Severity.ERROR,
                metadata={"phase": "rollback", "error": str(e)},
                tags=["span", "rollback"],
            )
            raise
        self._log(
            EventType.SPAN_ROLLED_BACK,
            SPAN_SOURCE,
            "Span rolled back",
            span_id,
            tags=["span", "rollback"],
        )


@dataclass
class Runtime:
    engine: SpanEngine
    identities: IdentityRegistry
    governance: SecurityGovernanceEngine
    timeline: TimelineObservabilityStore
    orchestrator: GovernedSpanOrchestrator


def build_runtime(default_listeners: bool = True, start_metrics: bool = False) -> Runtime:
    """Construct every component once and wire them together."""
    cfg = get_settings()
    engine = SpanEngine()
    identities = IdentityRegistry()
    governance = SecurityGovernanceEngine(engine, identities=identities)
    timeline = TimelineObservabilityStore(
        event_capacity=cfg.EVENT_RING_CAPACITY,
        metric_capacity=cfg.METRIC_RING_CAPACITY,
        audit_capacity=cfg.AUDIT_RING_CAPACITY,
        alert_capacity=cfg.ALERT_RING_CAPACITY,
    )
    if default_listeners:
        timeline.install_default_listeners()
    orchestrator = GovernedSpanOrchestrator(engine, governance, timeline)
    if start_metrics:
        start_metrics_server_if_enabled()
    logger.info("Span governance runtime initialized")
    return Runtime(engine, identities, governance, timeline, orchestrator)
