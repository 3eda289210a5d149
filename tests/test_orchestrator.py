"""
Tests for Governed Span Orchestrator

Verifies the execution gate, the timeline narrative of each span, audit
records for human decisions and the health wiring between components.
"""

from datetime import datetime, timezone

import pytest

from span_governance.errors import ExecutionNotAuthorized, InvalidState, NotAnApprover, NotFound, NotReversible
from span_governance.governance_models import ApprovalState
from span_governance.identity import acting_as
from span_governance.orchestrator import GovernedSpanOrchestrator, build_runtime
from span_governance.span_models import SpanStatus, SpanType
from span_governance.timeline_models import EventType, MetricsQuery, TimelineQuery
from span_governance.timeline_store import TimelineObservabilityStore


@pytest.fixture
def orchestrator(engine, governance, timeline):
    timeline.install_default_listeners()
    return GovernedSpanOrchestrator(engine, governance, timeline)


def trace_types(orchestrator, span_id):
    trace_id = orchestrator.trace_for(span_id)
    return [e.type for e in orchestrator.timeline.get_trace(trace_id)]


class TestHappyPath:
    """Low-risk spans pass governance and execute."""

    @pytest.mark.asyncio
    async def test_allowed_span_executes(self, orchestrator, identities, make_operation):
        with acting_as(identities.default_user):
            span_id = orchestrator.create_span(SpanType.READ, make_operation(result="title"), args={"selector": "h1"})
            await orchestrator.simulate(span_id)
            validation = orchestrator.validate(span_id)
            result = await orchestrator.execute(span_id)

        assert validation.can_execute is True
        assert result == "title"
        assert orchestrator.engine.get(span_id).status == SpanStatus.COMPLETED
        assert trace_types(orchestrator, span_id) == [
            EventType.SPAN_CREATED,
            EventType.SPAN_SIMULATED,
            EventType.POLICY_EVALUATED,
            EventType.SPAN_EXECUTED,
        ]

    @pytest.mark.asyncio
    async def test_events_carry_acting_user(self, orchestrator, identities, make_operation):
        with acting_as(identities.default_user):
            span_id = orchestrator.create_span(SpanType.READ, make_operation())

        events = orchestrator.timeline.query_events(TimelineQuery(span_ids=[span_id]))
        assert [e.user_id for e in events] == ["user_default"]

    @pytest.mark.asyncio
    async def test_execution_time_recorded(self, orchestrator, identities, make_operation):
        with acting_as(identities.default_user):
            span_id = orchestrator.create_span(SpanType.READ, make_operation())
            await orchestrator.simulate(span_id)
            orchestrator.validate(span_id)
            await orchestrator.execute(span_id)

        samples = orchestrator.timeline.query_metrics(MetricsQuery(metrics=["span_execution_time"]))
        assert len(samples) == 1
        assert samples[0].unit == "ms"
        assert samples[0].tags == {"span_id": span_id}

        counters = {m.metric for m in orchestrator.timeline.query_metrics()}
        assert {"spans_created_total", "spans_executed_total"} <= counters

    @pytest.mark.asyncio
    async def test_rollback_logged(self, orchestrator, identities, make_operation):
        with acting_as(identities.default_user):
            span_id = orchestrator.create_span(SpanType.READ, make_operation())
            await orchestrator.simulate(span_id)
            orchestrator.validate(span_id)
            await orchestrator.execute(span_id)
            await orchestrator.rollback(span_id)

        assert orchestrator.engine.get(span_id).status == SpanStatus.ROLLED_BACK
        assert trace_types(orchestrator, span_id)[-1] == EventType.SPAN_ROLLED_BACK

    @pytest.mark.asyncio
    async def test_failed_rollback_reraised(self, orchestrator, identities, make_operation):
        with acting_as(identities.default_user):
            span_id = orchestrator.create_span(SpanType.READ, make_operation(reversible=False))
            await orchestrator.simulate(span_id)
            orchestrator.validate(span_id)
            await orchestrator.execute(span_id)
            with pytest.raises(NotReversible):
                await orchestrator.rollback(span_id)

        assert trace_types(orchestrator, span_id)[-1] == EventType.SYSTEM_EVENT

    def test_child_shares_parent_trace(self, orchestrator, make_operation):
        parent = orchestrator.create_span(SpanType.NAVIGATION, make_operation())
        child = orchestrator.create_span(SpanType.READ, make_operation(), parent_id=parent)
        other = orchestrator.create_span(SpanType.READ, make_operation())

        assert orchestrator.trace_for(child) == orchestrator.trace_for(parent)
        assert orchestrator.trace_for(other) != orchestrator.trace_for(parent)


class TestExecutionGate:
    """execute() requires a passing validation or a granted approval."""

    @pytest.mark.asyncio
    async def test_execute_without_validation_refused(self, orchestrator, make_operation):
        calls = []
        span_id = orchestrator.create_span(SpanType.READ, make_operation(calls=calls))
        await orchestrator.simulate(span_id)

        with pytest.raises(ExecutionNotAuthorized):
            await orchestrator.execute(span_id)

        assert calls == ["simulate"]
        assert orchestrator.engine.get(span_id).status == SpanStatus.AWAITING_APPROVAL
        assert trace_types(orchestrator, span_id)[-1] == EventType.SECURITY_VIOLATION

    @pytest.mark.asyncio
    async def test_approval_unlocks_execution(self, orchestrator, identities, make_operation):
        with acting_as(identities.default_user):
            span_id = orchestrator.create_span(SpanType.WRITE, make_operation(reversible=False))
            await orchestrator.simulate(span_id)
            validation = orchestrator.validate(span_id)

            assert validation.requires_approval is True
            with pytest.raises(ExecutionNotAuthorized):
                await orchestrator.execute(span_id)

            for approver in ("approver_1", "approver_2", "security_admin"):
                approval = orchestrator.approve(validation.approval_id, approver, "ok")
            assert approval.status == ApprovalState.APPROVED

            await orchestrator.execute(span_id)

        assert orchestrator.engine.get(span_id).status == SpanStatus.COMPLETED
        types = trace_types(orchestrator, span_id)
        assert types.count(EventType.APPROVAL_REQUESTED) == 1
        assert types.count(EventType.APPROVAL_GRANTED) == 1
        assert types[-1] == EventType.SPAN_EXECUTED

        audit = orchestrator.timeline.get_audit_logs()
        assert sorted(r.user_id for r in audit) == ["approver_1", "approver_2", "security_admin"]
        assert all(r.outcome == "success" for r in audit)

    @pytest.mark.asyncio
    async def test_rejection_keeps_gate_closed(self, orchestrator, identities, make_operation):
        with acting_as(identities.default_user):
            span_id = orchestrator.create_span(SpanType.WRITE, make_operation(reversible=False))
            await orchestrator.simulate(span_id)
            approval_id = orchestrator.validate(span_id).approval_id
            orchestrator.reject(approval_id, "approver_2", "no")

            with pytest.raises(ExecutionNotAuthorized):
                await orchestrator.execute(span_id)

        assert EventType.APPROVAL_REJECTED in trace_types(orchestrator, span_id)

    @pytest.mark.asyncio
    async def test_approval_outside_latest_validation_ignored(self, orchestrator, identities, make_operation):
        """Only the approval opened by the latest validation can unlock the gate."""
        with acting_as(identities.default_user):
            span_id = orchestrator.create_span(SpanType.WRITE, make_operation(reversible=False))
            await orchestrator.simulate(span_id)
            validation = orchestrator.validate(span_id)
            side_request = orchestrator.governance.request_approval(span_id)
            for approver in ("approver_1", "approver_2", "security_admin"):
                orchestrator.approve(side_request, approver)

            assert orchestrator.governance.get_approval(validation.approval_id).status == ApprovalState.PENDING
            with pytest.raises(ExecutionNotAuthorized):
                await orchestrator.execute(span_id)

        assert orchestrator.engine.get(span_id).status == SpanStatus.AWAITING_APPROVAL

    @pytest.mark.asyncio
    async def test_blocked_validation_overrides_granted_approval(self, orchestrator, identities, make_operation):
        calls = []
        with acting_as(identities.default_user):
            span_id = orchestrator.create_span(
                SpanType.NAVIGATION, make_operation(calls=calls), metadata={"url": "https://admin.internal/users"}
            )
            await orchestrator.simulate(span_id)

            orchestrator.governance.update_policy("domain-restrictions", enabled=False)
            approval_id = orchestrator.governance.request_approval(span_id)
            assert orchestrator.approve(approval_id, "approver_1").status == ApprovalState.APPROVED
            orchestrator.governance.update_policy("domain-restrictions", enabled=True)

            assert orchestrator.validate(span_id).can_execute is False
            with pytest.raises(ExecutionNotAuthorized):
                await orchestrator.execute(span_id)

        assert calls == ["simulate"]

    @pytest.mark.asyncio
    async def test_pii_approval_unlocks_execution(self, orchestrator, identities, make_operation):
        with acting_as(identities.default_user):
            span_id = orchestrator.create_span(
                SpanType.READ, make_operation(result="row"), args={"email": "jane@example.com"}
            )
            await orchestrator.simulate(span_id)
            validation = orchestrator.validate(span_id)
            orchestrator.approve(validation.approval_id, "approver_1")
            orchestrator.approve(validation.approval_id, "approver_2")

            assert await orchestrator.execute(span_id) == "row"

    def test_failed_human_action_audited(self, orchestrator, identities, make_operation):
        with acting_as(identities.default_user):
            span_id = orchestrator.create_span(SpanType.WRITE, make_operation(reversible=False))
            approval_id = orchestrator.governance.request_approval(span_id)

        with pytest.raises(NotAnApprover):
            orchestrator.approve(approval_id, "not_an_approver")

        records = orchestrator.timeline.get_audit_logs()
        assert [(r.user_id, r.outcome) for r in records] == [("not_an_approver", "failure")]

    def test_blocked_span_raises_violation_alert(self, orchestrator, identities, make_operation):
        with acting_as(identities.default_user):
            span_id = orchestrator.create_span(
                SpanType.NAVIGATION, make_operation(), metadata={"url": "https://secure.company.com"}
            )
            validation = orchestrator.validate(span_id)

        assert validation.can_execute is False
        assert EventType.SECURITY_VIOLATION in trace_types(orchestrator, span_id)
        titles = [a.title for a in orchestrator.timeline.get_alerts()]
        assert "Security Policy Violation" in titles

    def test_pii_detected_event(self, orchestrator, identities, make_operation):
        with acting_as(identities.default_user):
            span_id = orchestrator.create_span(SpanType.READ, make_operation(), args={"phone": "555-123-4567"})
            validation = orchestrator.validate(span_id)

        assert validation.contract_required is True
        types = trace_types(orchestrator, span_id)
        assert EventType.PII_DETECTED in types
        assert EventType.APPROVAL_REQUESTED in types


class TestFailures:

    @pytest.mark.asyncio
    async def test_execution_failure_logged_and_alerted(self, orchestrator, identities, make_operation):
        with acting_as(identities.default_user):
            span_id = orchestrator.create_span(SpanType.READ, make_operation(fail_on="operation"))
            await orchestrator.simulate(span_id)
            orchestrator.validate(span_id)
            with pytest.raises(RuntimeError):
                await orchestrator.execute(span_id)

        assert orchestrator.engine.get(span_id).status == SpanStatus.FAILED
        assert trace_types(orchestrator, span_id)[-1] == EventType.SPAN_FAILED
        assert "Span Execution Failed" in [a.title for a in orchestrator.timeline.get_alerts()]

    @pytest.mark.asyncio
    async def test_simulation_failure_logged(self, orchestrator, make_operation):
        span_id = orchestrator.create_span(SpanType.READ, make_operation(fail_on="simulate"))
        with pytest.raises(RuntimeError):
            await orchestrator.simulate(span_id)

        assert trace_types(orchestrator, span_id)[-1] == EventType.SPAN_FAILED

    @pytest.mark.asyncio
    async def test_repeat_execution_refused_without_failure(self, orchestrator, identities, make_operation):
        with acting_as(identities.default_user):
            span_id = orchestrator.create_span(SpanType.READ, make_operation())
            await orchestrator.simulate(span_id)
            orchestrator.validate(span_id)
            await orchestrator.execute(span_id)

            with pytest.raises(InvalidState):
                await orchestrator.execute(span_id)
            with pytest.raises(InvalidState):
                await orchestrator.simulate(span_id)

        assert orchestrator.engine.get(span_id).status == SpanStatus.COMPLETED
        types = trace_types(orchestrator, span_id)
        assert EventType.SPAN_FAILED not in types
        assert types[-2:] == [EventType.SYSTEM_EVENT, EventType.SYSTEM_EVENT]
        assert orchestrator.timeline.get_alerts() == []
        assert "spans_failed_total" not in {m.metric for m in orchestrator.timeline.query_metrics()}

    @pytest.mark.asyncio
    async def test_unknown_span_not_logged(self, orchestrator):
        with pytest.raises(NotFound):
            await orchestrator.simulate("span_missing")

        assert orchestrator.timeline.query_events() == []


class TestApprovalNarrative:

    def test_partial_approval_logged_as_user_action(self, orchestrator, identities, make_operation):
        with acting_as(identities.default_user):
            span_id = orchestrator.create_span(SpanType.WRITE, make_operation(reversible=False))
            approval_id = orchestrator.validate(span_id).approval_id
            orchestrator.approve(approval_id, "approver_1")

        actions = orchestrator.timeline.query_events(TimelineQuery(event_types=[EventType.USER_ACTION]))
        assert len(actions) == 1
        assert actions[0].span_id == span_id
        assert actions[0].metadata["outstanding"] == ["approver_2", "security_admin"]
        assert EventType.APPROVAL_GRANTED not in trace_types(orchestrator, span_id)

    def test_expired_approvals_logged(self, orchestrator, identities, make_operation):
        with acting_as(identities.default_user):
            span_id = orchestrator.create_span(SpanType.WRITE, make_operation(reversible=False))
            approval_id = orchestrator.validate(span_id).approval_id

        expired = orchestrator.expire_stale_approvals(now=datetime(2999, 1, 1, tzinfo=timezone.utc))

        assert expired == [approval_id]
        assert orchestrator.governance.get_approval(approval_id).status == ApprovalState.EXPIRED
        assert trace_types(orchestrator, span_id)[-1] == EventType.APPROVAL_EXPIRED
        assert orchestrator.expire_stale_approvals(now=datetime(2999, 1, 1, tzinfo=timezone.utc)) == []


class TestSpanRemoval:

    @pytest.mark.asyncio
    async def test_remove_span_forgets_trace_and_validation(self, orchestrator, identities, make_operation):
        with acting_as(identities.default_user):
            span_id = orchestrator.create_span(SpanType.READ, make_operation())
            await orchestrator.simulate(span_id)
            orchestrator.validate(span_id)
            await orchestrator.execute(span_id)

        orchestrator.remove_span(span_id)

        assert orchestrator.trace_for(span_id) is None
        assert orchestrator.is_authorized(span_id) is False
        with pytest.raises(NotFound):
            orchestrator.engine.get(span_id)

    @pytest.mark.asyncio
    async def test_long_run_stays_bounded(self, engine, governance, identities, make_operation):
        timeline = TimelineObservabilityStore(event_capacity=10)
        orchestrator = GovernedSpanOrchestrator(engine, governance, timeline)

        with acting_as(identities.default_user):
            for _ in range(20):
                span_id = orchestrator.create_span(SpanType.READ, make_operation())
                await orchestrator.simulate(span_id)
                orchestrator.validate(span_id)
                await orchestrator.execute(span_id)
                orchestrator.remove_span(span_id)

        assert timeline.trace_count() <= 10
        assert orchestrator._traces == {}
        assert orchestrator._validations == {}
        assert engine.list() == []


class TestHealthWiring:

    def test_health_reads_live_components(self, orchestrator, identities, make_operation):
        with acting_as(identities.default_user):
            span_id = orchestrator.create_span(SpanType.WRITE, make_operation(reversible=False))
            orchestrator.validate(span_id)

        checks = {c.name: c for c in orchestrator.timeline.get_system_health().checks}
        assert checks["Span Engine"].message == "1 active spans"
        assert checks["Security Engine"].message == "1 pending approvals"


class TestBuildRuntime:

    @pytest.mark.asyncio
    async def test_runtime_wired(self, make_operation):
        runtime = build_runtime()

        assert runtime.orchestrator.engine is runtime.engine
        assert runtime.governance.span_engine is runtime.engine
        assert runtime.governance.identities is runtime.identities

        with acting_as(runtime.identities.default_user):
            span_id = runtime.orchestrator.create_span(SpanType.READ, make_operation())
            await runtime.orchestrator.simulate(span_id)
            runtime.orchestrator.validate(span_id)
            await runtime.orchestrator.execute(span_id)

        metrics = {m.metric for m in runtime.timeline.query_metrics()}
        assert "spans_executed_total" in metrics
