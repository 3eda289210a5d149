"""
Security Governance Engine

Decides whether a span may proceed and orchestrates human approval when it
may not proceed unconditionally.

Responsibilities:
- Risk assessment from span type and reversibility (pure, never cached)
- PII detection over the span's argument payload
- Declarative policy evaluation (allow / deny / require_approval)
- Quorum approval requests sized by risk level
- PII contract generation (user-facing artifact; enforcement is the
  contract_required flag)

The engine reads spans from the SpanEngine it is given and never mutates
them. It never calls execute(): once an approval is granted, the caller
executes. Unknown ids raise NotFound; nothing is retried.
"""

import json
import logging
import threading
from copy import deepcopy
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Mapping, Optional
from uuid import uuid4

from .approval_workflow import ApprovalWorkflow, required_approvers
from .config import get_settings
from .errors import NotFound, PolicyDenied
from .governance_models import (
    ApprovalState,
    ExecutionValidation,
    GovernanceApproval,
    Identity,
    Permission,
    PIIDetectionResult,
    PolicyCondition,
    PolicyEvaluation,
    PolicyRule,
    RiskAssessment,
    RiskFactor,
    RiskLevel,
    RuleType,
    SecurityContract,
    SecurityPolicy,
    TimeWindow,
)
from .identity import IdentityRegistry, current_identity, require_identity
from .metrics import governance_decisions_total
from .pii_detector import PIIDetector
from .policy_evaluator import PolicyEvaluator
from .policy_schemas import parse_policy, parse_policy_update
from .span_engine import SpanEngine
from .span_models import SpanContext, SpanType

logger = logging.getLogger(__name__)

PII_VIOLATION = "PII detected - contract approval required before execution"

# Per-type risk factors: (factor type, description, impact, likelihood)
SPAN_TYPE_FACTORS = {
    SpanType.NAVIGATION: ("navigation_risk", "Navigation to external domains", 3, 2),
    SpanType.WRITE: ("data_modification", "Potential data modification", 4, 3),
    SpanType.GUI_AUTOMATION: ("user_interaction", "Automated user interactions", 3, 4),
}
IRREVERSIBLE_FACTOR = ("irreversible_action", "Action cannot be undone", 5, 5)

# Upper score bound (inclusive) for each level; anything above is CRITICAL
RISK_THRESHOLDS = (
    (10, RiskLevel.LOW),
    (20, RiskLevel.MEDIUM),
    (35, RiskLevel.HIGH),
)


def risk_level_for_score(score: int) -> RiskLevel:
    for bound, level in RISK_THRESHOLDS:
        if score <= bound:
            return level
    return RiskLevel.CRITICAL


def default_policies() -> List[SecurityPolicy]:
    return [
        SecurityPolicy(
            id="high-risk-approval",
            name="High Risk Operations Require Approval",
            description="Operations with high risk level must be approved before execution",
            rules=[
                PolicyRule(
                    id="rule-1",
                    type=RuleType.REQUIRE_APPROVAL,
                    condition=PolicyCondition(risk_levels=["high", "critical"]),
                    action="require_governance_approval",
                    priority=1,
                )
            ],
        ),
        SecurityPolicy(
            id="domain-restrictions",
            name="Domain Access Restrictions",
            description="Restrict access to sensitive domains",
            rules=[
                PolicyRule(
                    id="rule-2",
                    type=RuleType.DENY,
                    condition=PolicyCondition(
                        target_domains=["admin.internal", "secure.company.com", "*.gov"]
                    ),
                    action="block_access",
                    priority=2,
                )
            ],
        ),
        SecurityPolicy(
            id="business-hours",
            name="Business Hours Only",
            description="Restrict automation to business hours",
            rules=[
                PolicyRule(
                    id="rule-3",
                    type=RuleType.DENY,
                    condition=PolicyCondition(
                        time_restrictions=TimeWindow(allowed_hours=(9, 17), allowed_days=[1, 2, 3, 4, 5])
                    ),
                    action="time_restriction",
                    priority=3,
                )
            ],
            enabled=False,
        ),
    ]


class SecurityGovernanceEngine:
    """
    Policy and risk governance over spans owned by a SpanEngine.

    Args:
        span_engine: source of span snapshots (read-only use)
        identities: identity registry; a default one with demo-user is built if omitted
        approvals: approval workflow; built with the configured TTL if omitted
        policies: initial policies; the built-in defaults if omitted
    """

    def __init__(
        self,
        span_engine: SpanEngine,
        identities: Optional[IdentityRegistry] = None,
        approvals: Optional[ApprovalWorkflow] = None,
        policies: Optional[List[SecurityPolicy]] = None,
    ):
        cfg = get_settings()
        self.span_engine = span_engine
        self.identities = identities or IdentityRegistry()
        self.approvals = approvals or ApprovalWorkflow(ttl=timedelta(hours=cfg.APPROVAL_TTL_HOURS))
        self.evaluator = PolicyEvaluator()
        self._policies: Dict[str, SecurityPolicy] = {}
        self._contracts: Dict[str, SecurityContract] = {}
        self._lock = threading.RLock()
        for policy in (default_policies() if policies is None else policies):
            self._policies[policy.id] = policy

    # ------------------------------------------------------------------
    # Policy management
    # ------------------------------------------------------------------

    def create_policy(self, definition: Mapping[str, Any]) -> str:
        """Validate an untyped policy definition and register it."""
        policy = parse_policy(definition)
        with self._lock:
            self._policies[policy.id] = policy
        logger.info("Policy created (policy_id: %s, rules: %d)", policy.id, len(policy.rules))
        return policy.id

    def update_policy(self, policy_id: str, **updates: Any) -> SecurityPolicy:
        """Update name/description/enabled/rules of an existing policy."""
        fields = parse_policy_update(updates, policy_id)
        with self._lock:
            policy = self._policies.get(policy_id)
            if policy is None:
                raise NotFound("Policy", policy_id)
            for key, value in fields.items():
                setattr(policy, key, value)
            policy.last_modified = datetime.now(timezone.utc)
            logger.info("Policy updated (policy_id: %s, fields: %s)", policy_id, sorted(fields))
            return deepcopy(policy)

    def get_policy(self, policy_id: str) -> SecurityPolicy:
        with self._lock:
            policy = self._policies.get(policy_id)
            if policy is None:
                raise NotFound("Policy", policy_id)
            return deepcopy(policy)

    def get_policies(self) -> List[SecurityPolicy]:
        with self._lock:
            return [deepcopy(p) for p in self._policies.values()]

    # ------------------------------------------------------------------
    # Risk and PII
    # ------------------------------------------------------------------

    def assess_risk(self, span_id: str) -> RiskAssessment:
        """
        Score a span from its type and reversibility.

        Scores: navigation 6, write 12, gui_automation 12, irreversible +25.
        Levels: <=10 low, <=20 medium, <=35 high, >35 critical.
        """
        span = self.span_engine.get(span_id)
        return self._assess(span)

    @staticmethod
    def _assess(span: SpanContext) -> RiskAssessment:
        factors: List[RiskFactor] = []
        type_factor = SPAN_TYPE_FACTORS.get(span.type)
        if type_factor:
            factors.append(RiskFactor(*type_factor))
        if not span.reversible:
            factors.append(RiskFactor(*IRREVERSIBLE_FACTOR))

        score = sum(f.score for f in factors)
        level = risk_level_for_score(score)

        mitigations: List[str] = []
        if level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            mitigations.append("Require manual approval before execution")
            mitigations.append("Enable comprehensive audit logging")
        if not span.reversible:
            mitigations.append("Create backup before execution")

        return RiskAssessment(level=level, score=score, factors=factors, mitigations=mitigations)

    @staticmethod
    def detect_pii(content: str) -> PIIDetectionResult:
        return PIIDetector.detect_pii(content)

    @staticmethod
    def _serialize_args(span: SpanContext) -> str:
        return json.dumps(span.args or {}, sort_keys=True, default=str)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, span_id: str, now: Optional[datetime] = None) -> PolicyEvaluation:
        """
        Run risk assessment, PII detection and every enabled policy.

        PII without an approved PII-covering approval forces
        contract_required and requires_approval; no ALLOW rule can lift it.

        Raises:
            NotFound: unknown span (the only failure mode)
        """
        span = self.span_engine.get(span_id)
        risk = self._assess(span)
        pii = PIIDetector.detect_pii(self._serialize_args(span))

        violations: List[str] = []
        requires_approval = False
        contract_required = False

        if pii.has_pii and not self.has_approved_pii_contract(span_id):
            contract_required = True
            requires_approval = True
            violations.append(PII_VIOLATION)

        with self._lock:
            policies = list(self._policies.values())
        outcome = self.evaluator.evaluate(policies, span, risk, current_identity(), now)

        violations.extend(outcome.violations)
        evaluation = PolicyEvaluation(
            allowed=outcome.allowed,
            requires_approval=requires_approval or outcome.requires_approval,
            violations=violations,
            applicable_policies=outcome.applicable_policies,
            pii_detected=pii.has_pii,
            pii_types=pii.pii_types,
            contract_required=contract_required,
            risk_assessment=risk,
        )
        logger.debug(
            "Span evaluated (span_id: %s, allowed: %s, approval: %s, pii: %s, risk: %s)",
            span_id, evaluation.allowed, evaluation.requires_approval,
            evaluation.pii_detected, risk.level.value,
        )
        return evaluation

    def has_approved_pii_contract(self, span_id: str) -> bool:
        return self.approvals.has_approved(span_id, covers_pii=True)

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    @staticmethod
    def required_approvers(level: RiskLevel) -> List[str]:
        return required_approvers(level)

    def request_approval(
        self,
        span_id: str,
        covers_pii: bool = False,
        pii_types: Optional[List[str]] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """
        Open a pending approval for a span.

        Approvers follow the risk level. A human must always sign off, so a
        low-risk request gets the medium approver set, and a PII contract is
        treated as high risk. A span blocked by a deny rule cannot be approved.

        Raises:
            NoAuthenticatedUser: no acting identity
            NotFound: unknown span
            PolicyDenied: a deny rule matches the span
        """
        user = require_identity()
        evaluation = self.evaluate(span_id, now)
        if not evaluation.allowed:
            logger.warning(
                "Approval refused for denied span (span_id: %s, violations: %s)",
                span_id, "; ".join(evaluation.violations),
            )
            raise PolicyDenied(
                f"Span {span_id} is denied by policy: " + "; ".join(evaluation.violations)
            )
        return self._open_approval(user, span_id, evaluation.risk_assessment, covers_pii, pii_types)

    def _open_approval(
        self,
        user: Identity,
        span_id: str,
        risk: RiskAssessment,
        covers_pii: bool,
        pii_types: Optional[List[str]],
    ) -> str:
        effective = risk.level
        floor = RiskLevel.HIGH if covers_pii else RiskLevel.MEDIUM
        if effective.rank < floor.rank:
            effective = floor

        approval = self.approvals.create(
            span_id=span_id,
            requested_by=user.id,
            risk_assessment=risk,
            approvers=required_approvers(effective),
            covers_pii=covers_pii,
            pii_types=pii_types,
        )
        return approval.id

    def approve(self, approval_id: str, approver_id: str, comment: Optional[str] = None) -> GovernanceApproval:
        return self.approvals.approve(approval_id, approver_id, comment)

    def reject(self, approval_id: str, approver_id: str, comment: Optional[str] = None) -> GovernanceApproval:
        return self.approvals.reject(approval_id, approver_id, comment)

    def get_approval(self, approval_id: str) -> GovernanceApproval:
        return self.approvals.get(approval_id)

    def get_approvals(self) -> List[GovernanceApproval]:
        return self.approvals.list()

    def get_pending_approvals(self) -> List[GovernanceApproval]:
        return self.approvals.list(ApprovalState.PENDING)

    def pending_approval_count(self) -> int:
        return self.approvals.pending_count()

    def expire_stale_approvals(self, now: Optional[datetime] = None) -> List[str]:
        return self.approvals.expire_stale(now)

    # ------------------------------------------------------------------
    # Composed entry point
    # ------------------------------------------------------------------

    def validate_span_execution(self, span_id: str, now: Optional[datetime] = None) -> ExecutionValidation:
        """
        Single entry point for callers about to execute a span.

        - disallowed → blocked with violations
        - approval or contract required → approval requested, can_execute False
        - otherwise → can_execute True
        """
        evaluation = self.evaluate(span_id, now)
        level = evaluation.risk_assessment.level

        if not evaluation.allowed:
            governance_decisions_total.labels(result="blocked").inc()
            logger.warning(
                "Span execution blocked (span_id: %s, violations: %s)",
                span_id, "; ".join(evaluation.violations),
            )
            return ExecutionValidation(
                can_execute=False,
                requires_approval=False,
                violations=evaluation.violations,
                pii_detected=evaluation.pii_detected,
                contract_required=evaluation.contract_required,
                risk_level=level,
            )

        if evaluation.requires_approval or evaluation.contract_required:
            approval_id = self._open_approval(
                require_identity(),
                span_id,
                evaluation.risk_assessment,
                covers_pii=evaluation.contract_required,
                pii_types=evaluation.pii_types if evaluation.contract_required else None,
            )
            governance_decisions_total.labels(result="approval_required").inc()
            return ExecutionValidation(
                can_execute=False,
                requires_approval=True,
                approval_id=approval_id,
                violations=[],
                pii_detected=evaluation.pii_detected,
                contract_required=evaluation.contract_required,
                risk_level=level,
            )

        governance_decisions_total.labels(result="allowed").inc()
        return ExecutionValidation(
            can_execute=True,
            requires_approval=False,
            violations=[],
            pii_detected=evaluation.pii_detected,
            contract_required=False,
            risk_level=level,
        )

    # ------------------------------------------------------------------
    # Contracts
    # ------------------------------------------------------------------

    def generate_pii_contract(self, span_id: str, pii_types: List[str]) -> Dict[str, Any]:
        """Build the disclosure document shown to approvers of a PII span."""
        self.span_engine.get(span_id)
        return {
            "id": f"contract_pii_{uuid4().hex[:12]}",
            "span_id": span_id,
            "title": "PII Data Processing Contract",
            "summary": f"Contract for processing data containing {', '.join(pii_types)} information",
            "details": {
                "scope": [
                    "Process data containing personally identifiable information",
                    "Apply appropriate data masking and anonymization",
                    "Ensure compliance with data protection regulations",
                    "Maintain audit trail of PII access",
                ],
                "risk_level": "high",
                "estimated_cost": 0.1,
                "estimated_time": 45,
                "pii_handling": True,
                "pii_types": list(pii_types),
                "benefits": (
                    "Enables secure processing of sensitive data with appropriate "
                    "safeguards and compliance measures"
                ),
            },
            "status": "pending",
            "created": datetime.now(timezone.utc).isoformat(),
        }

    def create_contract(
        self,
        name: str,
        version: str,
        policies: Optional[List[str]] = None,
        permissions: Optional[List[Permission]] = None,
        approvers: Optional[List[str]] = None,
        expires_at: Optional[datetime] = None,
    ) -> str:
        contract = SecurityContract(
            id=f"contract_{uuid4().hex[:12]}",
            name=name,
            version=version,
            policies=list(policies or []),
            permissions=list(permissions or []),
            approvers=list(approvers or []),
            expires_at=expires_at,
        )
        with self._lock:
            for policy_id in contract.policies:
                if policy_id not in self._policies:
                    raise NotFound("Policy", policy_id)
            self._contracts[contract.id] = contract
        logger.info("Contract created (contract_id: %s, name: %s)", contract.id, name)
        return contract.id

    def get_contracts(self) -> List[SecurityContract]:
        with self._lock:
            return [deepcopy(c) for c in self._contracts.values()]

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def get_current_user(self) -> Optional[Identity]:
        return current_identity()
