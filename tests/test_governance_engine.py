"""
Tests for Security Governance Engine

Verifies risk scoring, PII-driven contract requirements, default policies,
approval requests and the composed validate_span_execution entry point.
"""

from datetime import datetime, timezone

import pytest

from span_governance.errors import NoAuthenticatedUser, NotFound, PolicyDenied, PolicyValidationError
from span_governance.governance_engine import PII_VIOLATION, risk_level_for_score
from span_governance.governance_models import ApprovalState, PolicyRule, RiskLevel
from span_governance.identity import acting_as, current_identity
from span_governance.span_models import SpanType

SATURDAY_10AM = datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc)
WEDNESDAY_10AM = datetime(2024, 6, 5, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def user(identities):
    with acting_as(identities.default_user) as identity:
        yield identity


# ============================================================================
# RISK
# ============================================================================

class TestRiskAssessment:
    """Scores derive from span type and reversibility only."""

    @pytest.mark.parametrize(
        "span_type, reversible, score, level",
        [
            (SpanType.READ, True, 0, RiskLevel.LOW),
            (SpanType.NAVIGATION, True, 6, RiskLevel.LOW),
            (SpanType.WRITE, True, 12, RiskLevel.MEDIUM),
            (SpanType.GUI_AUTOMATION, True, 12, RiskLevel.MEDIUM),
            (SpanType.READ, False, 25, RiskLevel.HIGH),
            (SpanType.NAVIGATION, False, 31, RiskLevel.HIGH),
            (SpanType.WRITE, False, 37, RiskLevel.CRITICAL),
        ],
    )
    def test_scores(self, engine, governance, make_operation, span_type, reversible, score, level):
        span_id = engine.create(span_type, make_operation(reversible=reversible))
        risk = governance.assess_risk(span_id)

        assert risk.score == score
        assert risk.level == level

    def test_thresholds(self):
        assert risk_level_for_score(10) == RiskLevel.LOW
        assert risk_level_for_score(11) == RiskLevel.MEDIUM
        assert risk_level_for_score(20) == RiskLevel.MEDIUM
        assert risk_level_for_score(35) == RiskLevel.HIGH
        assert risk_level_for_score(36) == RiskLevel.CRITICAL

    def test_mitigations_for_irreversible_critical(self, engine, governance, make_operation):
        span_id = engine.create(SpanType.WRITE, make_operation(reversible=False))
        risk = governance.assess_risk(span_id)

        assert [f.type for f in risk.factors] == ["data_modification", "irreversible_action"]
        assert risk.mitigations == [
            "Require manual approval before execution",
            "Enable comprehensive audit logging",
            "Create backup before execution",
        ]

    def test_unknown_span(self, governance):
        with pytest.raises(NotFound):
            governance.assess_risk("span_missing")


# ============================================================================
# END-TO-END SCENARIOS
# ============================================================================

class TestScenarios:
    """Governance decisions over realistic spans."""

    def test_irreversible_write_needs_three_approvers(self, engine, governance, make_operation, user):
        """A non-reversible write is critical and needs the security admin."""
        span_id = engine.create(
            SpanType.WRITE,
            make_operation(reversible=False),
            metadata={"target": "customer_records"},
        )

        risk = governance.assess_risk(span_id)
        assert risk.level == RiskLevel.CRITICAL
        assert risk.score == 37

        evaluation = governance.evaluate(span_id)
        assert evaluation.allowed is True
        assert evaluation.requires_approval is True
        assert "high-risk-approval" in evaluation.applicable_policies

        result = governance.validate_span_execution(span_id)
        assert result.can_execute is False
        assert result.requires_approval is True

        approval = governance.get_approval(result.approval_id)
        assert [a.user_id for a in approval.approvers] == ["approver_1", "approver_2", "security_admin"]
        assert approval.requested_by == user.id

    def test_pii_requires_contract_even_when_allowed(self, engine, governance, make_operation, user):
        """An email in the payload forces a contract although an allow rule matches."""
        governance.create_policy({
            "name": "Reads Allowed",
            "rules": [{"type": "allow", "condition": {"span_types": ["read"]}, "action": "allow_reads"}],
        })
        span_id = engine.create(
            SpanType.READ, make_operation(), args={"selector": "#contact", "value": "john@example.com"}
        )

        evaluation = governance.evaluate(span_id)
        assert evaluation.allowed is True
        assert evaluation.pii_detected is True
        assert evaluation.pii_types == ["email"]
        assert evaluation.contract_required is True
        assert evaluation.requires_approval is True
        assert PII_VIOLATION in evaluation.violations

        result = governance.validate_span_execution(span_id)
        assert result.can_execute is False
        assert result.contract_required is True
        approval = governance.get_approval(result.approval_id)
        assert approval.covers_pii is True
        assert approval.pii_types == ["email"]
        # Contracts are reviewed at least as high risk
        assert [a.user_id for a in approval.approvers] == ["approver_1", "approver_2"]

    def test_approved_contract_lifts_pii_requirement(self, engine, governance, make_operation, user):
        span_id = engine.create(SpanType.READ, make_operation(), args={"email": "john@example.com"})
        result = governance.validate_span_execution(span_id)
        governance.approve(result.approval_id, "approver_1")
        governance.approve(result.approval_id, "approver_2")

        evaluation = governance.evaluate(span_id)
        assert evaluation.pii_detected is True
        assert evaluation.contract_required is False
        assert PII_VIOLATION not in evaluation.violations

        assert governance.validate_span_execution(span_id).can_execute is True

    def test_two_approve_one_rejects(self, engine, governance, make_operation, user):
        """Quorum veto: the third approver's rejection rejects the whole approval."""
        span_id = engine.create(SpanType.WRITE, make_operation(reversible=False))
        approval_id = governance.validate_span_execution(span_id).approval_id

        governance.approve(approval_id, "approver_1")
        governance.approve(approval_id, "approver_2")
        final = governance.reject(approval_id, "security_admin", "not during freeze")

        assert final.status == ApprovalState.REJECTED
        assert governance.get_pending_approvals() == []

    def test_low_risk_read_allowed(self, engine, governance, make_operation, user):
        span_id = engine.create(SpanType.READ, make_operation(), args={"selector": "h1"})
        result = governance.validate_span_execution(span_id)

        assert result.can_execute is True
        assert result.approval_id is None
        assert result.risk_level == RiskLevel.LOW
        assert governance.get_approvals() == []

    def test_restricted_domain_blocked(self, engine, governance, make_operation, user):
        span_id = engine.create(
            SpanType.NAVIGATION, make_operation(), metadata={"url": "https://admin.internal/users"}
        )
        result = governance.validate_span_execution(span_id)

        assert result.can_execute is False
        assert result.requires_approval is False
        assert result.violations == ["Policy 'Domain Access Restrictions': block_access"]
        assert governance.get_approvals() == []

    def test_gov_wildcard_blocked(self, engine, governance, make_operation, user):
        span_id = engine.create(SpanType.NAVIGATION, make_operation(), args={"url": "https://www.irs.gov"})
        assert governance.evaluate(span_id).allowed is False


# ============================================================================
# POLICIES
# ============================================================================

class TestPolicyManagement:

    def test_default_policies(self, governance):
        policies = {p.id: p for p in governance.get_policies()}
        assert set(policies) == {"high-risk-approval", "domain-restrictions", "business-hours"}
        assert policies["business-hours"].enabled is False

    def test_business_hours_when_enabled(self, engine, governance, make_operation, user):
        governance.update_policy("business-hours", enabled=True)
        span_id = engine.create(SpanType.READ, make_operation())

        weekend = governance.evaluate(span_id, now=SATURDAY_10AM)
        weekday = governance.evaluate(span_id, now=WEDNESDAY_10AM)

        assert weekend.allowed is False
        assert weekend.violations == ["Policy 'Business Hours Only': time_restriction"]
        assert weekday.allowed is True

    def test_update_policy(self, governance):
        before = governance.get_policy("domain-restrictions")
        updated = governance.update_policy("domain-restrictions", description="Blocked hosts")

        assert updated.description == "Blocked hosts"
        assert updated.last_modified >= before.last_modified

    def test_update_unknown_policy(self, governance):
        with pytest.raises(NotFound):
            governance.update_policy("policy_missing", enabled=False)

    def test_update_rejects_unknown_fields(self, governance):
        with pytest.raises(ValueError):
            governance.update_policy("business-hours", id="hijack")

    def test_update_replaces_rules(self, engine, governance, make_operation, user):
        updated = governance.update_policy("domain-restrictions", rules=[
            {"type": "deny", "condition": {"targetDomains": ["example.org"]}, "action": "block_example"},
        ])
        assert isinstance(updated.rules[0], PolicyRule)
        assert updated.rules[0].id == "domain-restrictions-rule-1"

        blocked = engine.create(SpanType.NAVIGATION, make_operation(), args={"url": "https://example.org/a"})
        admin = engine.create(SpanType.NAVIGATION, make_operation(), args={"url": "https://admin.internal/x"})

        assert governance.evaluate(blocked).violations == ["Policy 'Domain Access Restrictions': block_example"]
        assert governance.evaluate(admin).allowed is True

    @pytest.mark.parametrize(
        "updates",
        [
            {"rules": [{"type": "deny", "action": ""}]},
            {"rules": [{"type": "explode", "action": "x"}]},
            {"rules": "deny everything"},
            {"enabled": "yes"},
            {"enabled": None},
            {"name": ""},
        ],
    )
    def test_update_rejects_malformed_values(self, governance, updates):
        with pytest.raises(PolicyValidationError):
            governance.update_policy("domain-restrictions", **updates)

        assert governance.get_policy("domain-restrictions").rules[0].id == "rule-2"

    def test_create_policy_applies(self, engine, governance, make_operation, user):
        policy_id = governance.create_policy({
            "name": "No GUI Automation",
            "rules": [{"type": "deny", "condition": {"spanTypes": ["gui_automation"]}, "action": "no_gui"}],
        })
        span_id = engine.create(SpanType.GUI_AUTOMATION, make_operation())

        evaluation = governance.evaluate(span_id)
        assert evaluation.allowed is False
        assert policy_id in evaluation.applicable_policies

    def test_create_policy_invalid(self, governance):
        with pytest.raises(PolicyValidationError):
            governance.create_policy({"name": "Broken", "rules": [{"type": "explode", "action": "x"}]})

    def test_role_policy_uses_acting_identity(self, engine, governance, identities, make_operation):
        governance.create_policy({
            "name": "Viewers Need Approval",
            "rules": [{"type": "require_approval", "condition": {"userRoles": ["viewer"]}, "action": "review"}],
        })
        span_id = engine.create(SpanType.READ, make_operation())

        with acting_as(identities.default_user):
            assert governance.evaluate(span_id).requires_approval is True
        with acting_as(None):
            assert governance.evaluate(span_id).requires_approval is False


# ============================================================================
# APPROVALS, CONTRACTS AND IDENTITY
# ============================================================================

class TestApprovalRequests:

    def test_requires_identity(self, engine, governance, make_operation):
        span_id = engine.create(SpanType.WRITE, make_operation(reversible=False))
        with acting_as(None):
            with pytest.raises(NoAuthenticatedUser):
                governance.request_approval(span_id)
            with pytest.raises(NoAuthenticatedUser):
                governance.validate_span_execution(span_id)

    def test_low_risk_request_gets_one_approver(self, engine, governance, make_operation, user):
        span_id = engine.create(SpanType.READ, make_operation())
        approval = governance.get_approval(governance.request_approval(span_id))
        assert [a.user_id for a in approval.approvers] == ["approver_1"]

    def test_denied_span_cannot_request_approval(self, engine, governance, make_operation, user):
        span_id = engine.create(SpanType.READ, make_operation(), args={"url": "https://admin.internal/x"})

        with pytest.raises(PolicyDenied):
            governance.request_approval(span_id)
        assert governance.get_approvals() == []

    def test_pending_count_and_sweep(self, engine, governance, make_operation, user):
        span_id = engine.create(SpanType.WRITE, make_operation(reversible=False))
        governance.request_approval(span_id)
        assert governance.pending_approval_count() == 1

        far_future = datetime(2999, 1, 1, tzinfo=timezone.utc)
        assert len(governance.expire_stale_approvals(now=far_future)) == 1
        assert governance.pending_approval_count() == 0


class TestContracts:

    def test_pii_contract_document(self, engine, governance, make_operation):
        span_id = engine.create(SpanType.READ, make_operation())
        contract = governance.generate_pii_contract(span_id, ["email", "phone"])

        assert contract["span_id"] == span_id
        assert contract["title"] == "PII Data Processing Contract"
        assert contract["summary"] == "Contract for processing data containing email, phone information"
        assert contract["details"]["risk_level"] == "high"
        assert contract["details"]["pii_handling"] is True
        assert contract["details"]["pii_types"] == ["email", "phone"]
        assert contract["status"] == "pending"

    def test_pii_contract_unknown_span(self, governance):
        with pytest.raises(NotFound):
            governance.generate_pii_contract("span_missing", ["email"])

    def test_create_contract(self, governance):
        contract_id = governance.create_contract("Data Export", "1.0", policies=["domain-restrictions"])
        contracts = governance.get_contracts()
        assert [c.id for c in contracts] == [contract_id]

    def test_create_contract_unknown_policy(self, governance):
        with pytest.raises(NotFound):
            governance.create_contract("Bad", "1.0", policies=["policy_missing"])
        assert governance.get_contracts() == []


class TestIdentity:

    def test_authenticate_sets_acting_identity(self, identities, governance):
        with acting_as(None):
            identity = identities.authenticate("demo-user")
            assert current_identity().id == identity.id
            assert governance.get_current_user().username == "demo-user"
            assert identities.current_user().id == identity.id

    def test_authenticate_unknown(self, identities):
        with pytest.raises(NotFound):
            identities.authenticate("nobody")

    def test_authenticate_suspended(self, identities):
        identities.create_user("mallory", status="suspended")
        with pytest.raises(NoAuthenticatedUser):
            identities.authenticate("mallory")

    def test_create_and_get_user(self, identities):
        user_id = identities.create_user("alice", email="alice@example.com", roles=["admin"])
        assert identities.get_user(user_id).roles == ["admin"]
        assert len(identities.get_users()) == 2
        with pytest.raises(NotFound):
            identities.get_user("user_missing")
