"""
Quorum Approval Workflow

Human-in-the-loop gate between simulation and execution.

PRINCIPLES:
1. Quorum: an approval is APPROVED only when EVERY listed approver approved
2. Veto: a single rejection REJECTS the whole approval immediately
3. Deterministic approver sets: who must approve is a pure function of risk level
4. Expiry: approvals carry a fixed window (24h by default); acting on an
   approval past its window moves it to EXPIRED instead
5. Audit immutability: every human decision is appended, never modified

This workflow never executes anything. Once an approval reaches APPROVED the
caller is expected to invoke execution itself.
"""

import logging
import threading
from copy import deepcopy
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from .errors import InvalidApprovalState, NotAnApprover, NotFound
from .governance_models import (
    ApprovalState,
    ApproverDecision,
    ApproverStatus,
    GovernanceApproval,
    RiskAssessment,
    RiskLevel,
)
from .metrics import approvals_total

logger = logging.getLogger(__name__)

SECURITY_ADMIN = "security_admin"

APPROVER_MATRIX: Dict[RiskLevel, List[str]] = {
    RiskLevel.LOW: [],
    RiskLevel.MEDIUM: ["approver_1"],
    RiskLevel.HIGH: ["approver_1", "approver_2"],
    RiskLevel.CRITICAL: ["approver_1", "approver_2", SECURITY_ADMIN],
}


def required_approvers(level: RiskLevel) -> List[str]:
    """Approver ids required for a risk level. Count is monotonic in level."""
    return list(APPROVER_MATRIX[RiskLevel(level)])


@dataclass(frozen=True)
class ApprovalAuditEntry:
    """IMMUTABLE record of one action taken on an approval."""
    approval_id: str
    span_id: str
    actor: str
    action: str  # requested | approved | rejected | expired
    resulting_status: ApprovalState
    timestamp: datetime
    comment: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approval_id": self.approval_id,
            "span_id": self.span_id,
            "actor": self.actor,
            "action": self.action,
            "resulting_status": self.resulting_status.value,
            "timestamp": self.timestamp.isoformat(),
            "comment": self.comment,
        }


class ApprovalWorkflow:
    """In-memory store and state machine for governance approvals."""

    def __init__(self, ttl: timedelta = timedelta(hours=24)):
        self.ttl = ttl
        self._approvals: Dict[str, GovernanceApproval] = {}
        self._audit_log: List[ApprovalAuditEntry] = []
        self._lock = threading.RLock()

    def create(
        self,
        span_id: str,
        requested_by: str,
        risk_assessment: RiskAssessment,
        approvers: List[str],
        covers_pii: bool = False,
        pii_types: Optional[List[str]] = None,
        now: Optional[datetime] = None,
    ) -> GovernanceApproval:
        """Open a PENDING approval listing the given approvers in order."""
        now = now or datetime.now(timezone.utc)
        approval = GovernanceApproval(
            id=f"approval_{uuid4().hex}",
            span_id=span_id,
            requested_by=requested_by,
            requested_at=now,
            approvers=[ApproverStatus(user_id=a) for a in approvers],
            risk_assessment=risk_assessment,
            expires_at=now + self.ttl,
            covers_pii=covers_pii,
            pii_types=list(pii_types or []),
        )
        with self._lock:
            self._approvals[approval.id] = approval
            self._record(approval, requested_by, "requested", now)
        approvals_total.labels(status="requested").inc()
        logger.info(
            "Approval requested (approval_id: %s, span_id: %s, approvers: %s, risk: %s)",
            approval.id, span_id, ",".join(approvers), risk_assessment.level.value,
        )
        return deepcopy(approval)

    def approve(
        self,
        approval_id: str,
        approver_id: str,
        comment: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> GovernanceApproval:
        """
        Record one approver's approval.

        The approval becomes APPROVED once every approver has approved.

        Raises:
            NotFound, InvalidApprovalState, NotAnApprover
        """
        now = now or datetime.now(timezone.utc)
        with self._lock:
            approval, approver = self._actionable(approval_id, approver_id, now)
            approver.status = ApproverDecision.APPROVED
            approver.timestamp = now
            approver.comment = comment

            if all(a.status == ApproverDecision.APPROVED for a in approval.approvers):
                approval.status = ApprovalState.APPROVED
            self._record(approval, approver_id, "approved", now, comment)
            snapshot = deepcopy(approval)

        approvals_total.labels(status="approver_approved").inc()
        if snapshot.status == ApprovalState.APPROVED:
            approvals_total.labels(status="approved").inc()
            logger.info("Approval granted (approval_id: %s, span_id: %s)", approval_id, snapshot.span_id)
        else:
            logger.info(
                "Approver approved (approval_id: %s, approver: %s, remaining: %d)",
                approval_id,
                approver_id,
                sum(1 for a in snapshot.approvers if a.status != ApproverDecision.APPROVED),
            )
        return snapshot

    def reject(
        self,
        approval_id: str,
        approver_id: str,
        comment: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> GovernanceApproval:
        """
        Record a rejection. Any single rejection rejects the whole approval,
        whatever the other approvers decided.
        """
        now = now or datetime.now(timezone.utc)
        with self._lock:
            approval, approver = self._actionable(approval_id, approver_id, now)
            approver.status = ApproverDecision.REJECTED
            approver.timestamp = now
            approver.comment = comment
            approval.status = ApprovalState.REJECTED
            self._record(approval, approver_id, "rejected", now, comment)
            snapshot = deepcopy(approval)

        approvals_total.labels(status="rejected").inc()
        logger.warning(
            "Approval rejected (approval_id: %s, span_id: %s, by: %s)",
            approval_id, snapshot.span_id, approver_id,
        )
        return snapshot

    def expire_stale(self, now: Optional[datetime] = None) -> List[str]:
        """Move every pending approval past its window to EXPIRED."""
        now = now or datetime.now(timezone.utc)
        expired = []
        with self._lock:
            for approval in self._approvals.values():
                if approval.status == ApprovalState.PENDING and now >= approval.expires_at:
                    self._expire(approval, now)
                    expired.append(approval.id)
        if expired:
            logger.warning("Expired %d stale approvals", len(expired))
        return expired

    def get(self, approval_id: str) -> GovernanceApproval:
        with self._lock:
            approval = self._approvals.get(approval_id)
            if approval is None:
                raise NotFound("Approval", approval_id)
            return deepcopy(approval)

    def list(self, status: Optional[ApprovalState] = None) -> List[GovernanceApproval]:
        with self._lock:
            return [
                deepcopy(a) for a in self._approvals.values()
                if status is None or a.status == status
            ]

    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for a in self._approvals.values() if a.status == ApprovalState.PENDING)

    def has_approved(self, span_id: str, covers_pii: Optional[bool] = None) -> bool:
        """True when an APPROVED approval exists for the span (optionally PII-covering)."""
        with self._lock:
            return any(
                a.span_id == span_id
                and a.status == ApprovalState.APPROVED
                and (covers_pii is None or a.covers_pii == covers_pii)
                for a in self._approvals.values()
            )

    def get_audit_trail(self, approval_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            entries = list(self._audit_log)
        return [e.to_dict() for e in entries if approval_id is None or e.approval_id == approval_id]

    # ------------------------------------------------------------------

    def _actionable(self, approval_id: str, approver_id: str, now: datetime):
        # Caller holds self._lock
        approval = self._approvals.get(approval_id)
        if approval is None:
            raise NotFound("Approval", approval_id)

        if approval.status == ApprovalState.PENDING and now >= approval.expires_at:
            self._expire(approval, now)

        if approval.status != ApprovalState.PENDING:
            raise InvalidApprovalState(
                f"Approval {approval_id} is {approval.status.value}, not pending"
            )

        approver = next((a for a in approval.approvers if a.user_id == approver_id), None)
        if approver is None:
            raise NotAnApprover(f"User {approver_id} is not an approver for {approval_id}")
        return approval, approver

    def _expire(self, approval: GovernanceApproval, now: datetime) -> None:
        approval.status = ApprovalState.EXPIRED
        self._record(approval, "system", "expired", now)
        approvals_total.labels(status="expired").inc()

    def _record(
        self,
        approval: GovernanceApproval,
        actor: str,
        action: str,
        now: datetime,
        comment: Optional[str] = None,
    ) -> None:
        self._audit_log.append(
            ApprovalAuditEntry(
                approval_id=approval.id,
                span_id=approval.span_id,
                actor=actor,
                action=action,
                resulting_status=approval.status,
                timestamp=now,
                comment=comment,
            )
        )
