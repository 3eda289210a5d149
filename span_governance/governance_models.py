"""
Governance: Data Models

Risk assessments, policies, approvals, identities and evaluation results.
Pure data; the rules that produce and mutate them live in the governance
modules.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class RiskLevel(str, Enum):
    """Risk levels, declared in ascending order of severity."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(RiskLevel).index(self)


class RuleType(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    REQUIRE_APPROVAL = "require_approval"


class ApprovalState(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ApproverDecision(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# ============================================================================
# RISK
# ============================================================================

@dataclass(frozen=True)
class RiskFactor:
    type: str
    description: str
    impact: int
    likelihood: int

    @property
    def score(self) -> int:
        return self.impact * self.likelihood


@dataclass(frozen=True)
class RiskAssessment:
    """Computed fresh on every evaluation; never cached."""
    level: RiskLevel
    score: int
    factors: List[RiskFactor] = field(default_factory=list)
    mitigations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "score": self.score,
            "factors": [asdict(f) for f in self.factors],
            "mitigations": list(self.mitigations),
        }


# ============================================================================
# POLICY
# ============================================================================

@dataclass
class TimeWindow:
    """
    Allowed operating window.

    allowed_hours: (start, end) hours, start inclusive, end exclusive.
    allowed_days: weekday numbers with 0 = Sunday.
    """
    allowed_hours: Optional[tuple] = None
    allowed_days: Optional[List[int]] = None


@dataclass
class PolicyCondition:
    """
    Conjunction of optional criteria. An empty condition matches every span.
    """
    span_types: Optional[List[str]] = None
    target_domains: Optional[List[str]] = None
    risk_levels: Optional[List[str]] = None
    user_roles: Optional[List[str]] = None
    time_restrictions: Optional[TimeWindow] = None


@dataclass
class PolicyRule:
    id: str
    type: RuleType
    condition: PolicyCondition
    action: str
    # Ordering/documentation only; all matching rules are applied
    priority: int = 0


@dataclass
class SecurityPolicy:
    id: str
    name: str
    rules: List[PolicyRule]
    description: str = ""
    enabled: bool = True
    created: datetime = field(default_factory=_utcnow)
    last_modified: datetime = field(default_factory=_utcnow)


# ============================================================================
# APPROVAL
# ============================================================================

@dataclass
class ApproverStatus:
    user_id: str
    status: ApproverDecision = ApproverDecision.PENDING
    timestamp: Optional[datetime] = None
    comment: Optional[str] = None


@dataclass
class GovernanceApproval:
    """
    Quorum approval: APPROVED only when every listed approver approved,
    REJECTED as soon as any one of them rejects.
    """
    id: str
    span_id: str
    requested_by: str
    approvers: List[ApproverStatus]
    risk_assessment: RiskAssessment
    expires_at: datetime
    requested_at: datetime = field(default_factory=_utcnow)
    status: ApprovalState = ApprovalState.PENDING
    covers_pii: bool = False
    pii_types: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "span_id": self.span_id,
            "requested_by": self.requested_by,
            "requested_at": _iso(self.requested_at),
            "approvers": [
                {
                    "user_id": a.user_id,
                    "status": a.status.value,
                    "timestamp": _iso(a.timestamp),
                    "comment": a.comment,
                }
                for a in self.approvers
            ],
            "status": self.status.value,
            "risk_assessment": self.risk_assessment.to_dict(),
            "expires_at": _iso(self.expires_at),
            "covers_pii": self.covers_pii,
            "pii_types": list(self.pii_types),
        }


# ============================================================================
# IDENTITY AND CONTRACTS
# ============================================================================

@dataclass
class Identity:
    id: str
    username: str
    email: str = ""
    roles: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)
    contracts: List[str] = field(default_factory=list)
    status: str = "active"  # active | suspended | inactive
    created: datetime = field(default_factory=_utcnow)
    last_active: datetime = field(default_factory=_utcnow)


@dataclass
class Permission:
    resource: str
    actions: List[str]
    conditions: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SecurityContract:
    id: str
    name: str
    version: str
    policies: List[str] = field(default_factory=list)
    permissions: List[Permission] = field(default_factory=list)
    approvers: List[str] = field(default_factory=list)
    created: datetime = field(default_factory=_utcnow)
    expires_at: Optional[datetime] = None


# ============================================================================
# RESULTS
# ============================================================================

@dataclass(frozen=True)
class PIIDetectionResult:
    has_pii: bool
    pii_types: List[str]
    confidence: float
    masked_content: str
    original_content: str


@dataclass
class PolicyEvaluation:
    allowed: bool
    requires_approval: bool
    violations: List[str]
    applicable_policies: List[str]
    pii_detected: bool
    contract_required: bool
    risk_assessment: RiskAssessment
    pii_types: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "requires_approval": self.requires_approval,
            "violations": list(self.violations),
            "applicable_policies": list(self.applicable_policies),
            "pii_detected": self.pii_detected,
            "pii_types": list(self.pii_types),
            "contract_required": self.contract_required,
            "risk_assessment": self.risk_assessment.to_dict(),
        }


@dataclass
class ExecutionValidation:
    can_execute: bool
    requires_approval: bool
    violations: List[str]
    pii_detected: bool
    contract_required: bool
    approval_id: Optional[str] = None
    risk_level: Optional[RiskLevel] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "can_execute": self.can_execute,
            "requires_approval": self.requires_approval,
            "approval_id": self.approval_id,
            "violations": list(self.violations),
            "pii_detected": self.pii_detected,
            "contract_required": self.contract_required,
            "risk_level": self.risk_level.value if self.risk_level else None,
        }
