"""
Span Lifecycle: Data Models

A span is a unit of governed, potentially reversible work. These models are
PURE DATA: the legal transitions between statuses are enforced by SpanEngine,
not here.

A span is owned by the engine. Governance and the timeline only ever hold
the span id; snapshots handed out by the engine are copies.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional, Dict, Any, Callable, Awaitable, Tuple
from datetime import datetime, timezone
from uuid import uuid4


class SpanType(str, Enum):
    """Closed set of operation kinds a span can represent."""
    NAVIGATION = "navigation"
    READ = "read"
    WRITE = "write"
    GUI_AUTOMATION = "gui_automation"
    IO_OPERATION = "io_operation"
    COMPUTATION = "computation"


class SpanStatus(str, Enum):
    """Lifecycle states of a span."""
    PENDING = "pending"
    SIMULATING = "simulating"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


TERMINAL_STATUSES = frozenset({SpanStatus.FAILED, SpanStatus.ROLLED_BACK})

# Every legal edge of the state machine. Anything else is InvalidState.
ALLOWED_TRANSITIONS: Dict[SpanStatus, frozenset] = {
    SpanStatus.PENDING: frozenset({SpanStatus.SIMULATING}),
    SpanStatus.SIMULATING: frozenset({SpanStatus.AWAITING_APPROVAL, SpanStatus.FAILED}),
    SpanStatus.AWAITING_APPROVAL: frozenset({SpanStatus.EXECUTING}),
    SpanStatus.EXECUTING: frozenset({SpanStatus.COMPLETED, SpanStatus.FAILED}),
    SpanStatus.COMPLETED: frozenset({SpanStatus.ROLLED_BACK}),
    SpanStatus.FAILED: frozenset(),
    SpanStatus.ROLLED_BACK: frozenset(),
}


class ChangeKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ImpactLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class DiffChange:
    """One predicted change produced by a simulate procedure."""
    kind: ChangeKind
    target: str
    before: Any = None
    after: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "target": self.target,
            "before": self.before,
            "after": self.after,
        }


@dataclass(frozen=True)
class SpanDiff:
    """
    IMMUTABLE prediction of a span's effect.

    Produced once per simulate() call. The diff is not stored on the span;
    the caller feeds it to whatever needs it (governance, a reviewer UI).
    """
    changes: Tuple[DiffChange, ...] = ()
    impact: ImpactLevel = ImpactLevel.LOW
    reversible: bool = True

    def __post_init__(self):
        # Accept any iterable of changes but store an immutable tuple
        object.__setattr__(self, "changes", tuple(self.changes))
        object.__setattr__(self, "impact", ImpactLevel(self.impact))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "changes": [c.to_dict() for c in self.changes],
            "impact": self.impact.value,
            "reversible": self.reversible,
        }


@dataclass
class SpanOperation:
    """
    Procedures bound to a span for its whole lifetime.

    operation: forward action, performs the real effect.
    simulate: predicts a SpanDiff without side effects.
    rollback: optional undo; its presence is what makes a span reversible.

    All three are awaited by the engine; none is fire-and-forget.
    """
    operation: Callable[[], Awaitable[Any]]
    simulate: Callable[[], Awaitable[SpanDiff]]
    rollback: Optional[Callable[[], Awaitable[None]]] = None
    description: str = ""
    id: str = field(default_factory=lambda: f"op_{uuid4().hex[:12]}")


@dataclass
class SpanContext:
    """State of one span. Mutated only by SpanEngine."""
    id: str
    type: SpanType
    reversible: bool
    parent_id: Optional[str] = None
    status: SpanStatus = SpanStatus.PENDING
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: Optional[datetime] = None
    description: str = ""
    args: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        data = asdict(self)
        data["type"] = self.type.value
        data["status"] = self.status.value
        data["start_time"] = self.start_time.isoformat()
        data["end_time"] = self.end_time.isoformat() if self.end_time else None
        return data


@dataclass(frozen=True)
class SpanTimelineEntry:
    """Local, engine-internal record of a single transition."""
    span_id: str
    timestamp: datetime
    event: str
    sequence: int
