"""
Span Governance: Error Taxonomy

Every failure raised by the span engine, the governance engine and the
orchestrator derives from SpanGovernanceError. All of them are synchronous
failures surfaced to the immediate caller; nothing in this package retries.
"""


class SpanGovernanceError(Exception):
    """Base class for all span governance failures."""


class NotFound(SpanGovernanceError, LookupError):
    """Unknown span, approval, policy or identity id."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found")


class InvalidState(SpanGovernanceError):
    """Illegal lifecycle transition. The span is left unchanged."""


class NotReady(InvalidState):
    """execute() called on a span that is not awaiting approval."""


class NotReversible(SpanGovernanceError):
    """rollback() on a span created without a rollback procedure."""


class InvalidApprovalState(SpanGovernanceError):
    """approve()/reject() on an approval that is no longer pending."""


class NotAnApprover(SpanGovernanceError):
    """Acting user is not listed on the approval."""


class NoAuthenticatedUser(SpanGovernanceError):
    """No acting identity is set for the current request."""


class ExecutionNotAuthorized(SpanGovernanceError):
    """execute() attempted without a passing governance validation or approval."""


class PolicyValidationError(SpanGovernanceError, ValueError):
    """Malformed policy definition."""


class PolicyDenied(SpanGovernanceError):
    """Approval requested for a span that a deny rule blocks."""
