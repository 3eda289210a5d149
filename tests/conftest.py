import sys
import os

import pytest

# Ensure repository root is on sys.path for package imports
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from span_governance.governance_engine import SecurityGovernanceEngine
from span_governance.identity import IdentityRegistry
from span_governance.span_engine import SpanEngine
from span_governance.span_models import ChangeKind, DiffChange, ImpactLevel, SpanDiff, SpanOperation
from span_governance.timeline_store import TimelineObservabilityStore


@pytest.fixture
def engine():
    return SpanEngine()


@pytest.fixture
def identities():
    return IdentityRegistry()


@pytest.fixture
def governance(engine, identities):
    return SecurityGovernanceEngine(engine, identities=identities)


@pytest.fixture
def timeline():
    return TimelineObservabilityStore()


@pytest.fixture
def make_operation():
    """
    Factory for SpanOperation bindings backed by simple coroutines.

    calls: list that records which procedures ran
    fail_on: "operation" | "simulate" | "rollback" to make that procedure raise
    """
    def _make(result="done", reversible=True, fail_on=None, calls=None, diff=None):
        calls = calls if calls is not None else []

        async def operation():
            calls.append("operation")
            if fail_on == "operation":
                raise RuntimeError("operation failed")
            return result

        async def simulate():
            calls.append("simulate")
            if fail_on == "simulate":
                raise RuntimeError("simulation failed")
            return diff or SpanDiff(
                changes=[DiffChange(ChangeKind.UPDATE, "page.title", "Old", "New")],
                impact=ImpactLevel.LOW,
                reversible=reversible,
            )

        async def rollback():
            calls.append("rollback")
            if fail_on == "rollback":
                raise RuntimeError("rollback failed")

        return SpanOperation(
            operation=operation,
            simulate=simulate,
            rollback=rollback if reversible else None,
            description="test operation",
        )

    return _make
