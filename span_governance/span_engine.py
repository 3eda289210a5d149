"""
Span Lifecycle Engine

Owns the state machine for a unit of governed work:

    pending -> simulating -> awaiting_approval -> executing -> completed | failed
    simulating -> failed
    completed -> rolled_back        (only when a rollback procedure was bound)

SAFETY MECHANISM:
simulate() predicts a diff without side effects and execute() performs the real
effect. Keeping them apart lets governance intervene between prediction and
commitment. The engine itself knows nothing about governance; the gate lives
at the call-site boundary (GovernedSpanOrchestrator).

CONCURRENCY:
- A registry lock guards the span/operation maps and the local timeline.
- A per-span lock serialises the bookkeeping of each transition.
- An in-flight set blocks a second transition on the same span while its
  bound procedure is being awaited. No lock is held across an await.

Every transition appends one entry to a local append-only timeline after the
status has been mutated.
"""

import logging
import threading
from copy import deepcopy
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from .errors import InvalidState, NotFound, NotReady, NotReversible
from .metrics import active_spans, span_transitions_total
from .span_models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    SpanContext,
    SpanDiff,
    SpanOperation,
    SpanStatus,
    SpanTimelineEntry,
    SpanType,
)

logger = logging.getLogger(__name__)


class SpanEngine:
    """In-memory registry and state machine for spans."""

    def __init__(self):
        self._spans: Dict[str, SpanContext] = {}
        self._operations: Dict[str, SpanOperation] = {}
        self._span_locks: Dict[str, threading.Lock] = {}
        self._in_flight: set = set()
        self._timeline: List[SpanTimelineEntry] = []
        self._sequence = 0
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    def create(
        self,
        span_type: SpanType,
        operation: SpanOperation,
        parent_id: Optional[str] = None,
        args: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Allocate a span in PENDING and bind its procedures.

        Reversibility is derived from whether a rollback procedure was supplied.
        A parent, when given, must already exist, so the span graph stays a forest.

        Returns:
            The new span id
        """
        span_type = SpanType(span_type)
        span_id = f"span_{uuid4().hex}"
        span = SpanContext(
            id=span_id,
            type=span_type,
            reversible=operation.rollback is not None,
            parent_id=parent_id,
            description=operation.description,
            args=deepcopy(args or {}),
            metadata=deepcopy(metadata or {}),
        )
        with self._lock:
            if parent_id is not None and parent_id not in self._spans:
                raise NotFound("Span", parent_id)
            self._spans[span_id] = span
            self._operations[span_id] = operation
            self._span_locks[span_id] = threading.Lock()
            self._append_timeline(span_id, "span_created")
            active_spans.set(self._count_active())

        span_transitions_total.labels(event="span_created").inc()
        logger.info(
            "Span created (span_id: %s, type: %s, reversible: %s, parent: %s)",
            span_id, span_type.value, span.reversible, parent_id,
        )
        return span_id

    def get(self, span_id: str) -> SpanContext:
        """Return a snapshot of a span. Raises NotFound for unknown ids."""
        with self._lock:
            span = self._spans.get(span_id)
            if span is None:
                raise NotFound("Span", span_id)
            return deepcopy(span)

    def list(self) -> List[SpanContext]:
        """Snapshots of every span, in creation order."""
        with self._lock:
            return [deepcopy(s) for s in self._spans.values()]

    def active_count(self) -> int:
        """Number of spans not yet in a terminal state."""
        with self._lock:
            return self._count_active()

    def get_timeline(self, span_id: Optional[str] = None) -> List[SpanTimelineEntry]:
        """Local transition log in causal order, optionally for one span."""
        with self._lock:
            entries = list(self._timeline)
        if span_id is not None:
            entries = [e for e in entries if e.span_id == span_id]
        return entries

    def remove(self, span_id: str) -> None:
        """Discard a span together with its operation binding."""
        with self._lock:
            if span_id not in self._spans:
                raise NotFound("Span", span_id)
            if span_id in self._in_flight:
                raise InvalidState(f"Span {span_id} has a transition in flight")
            del self._spans[span_id]
            del self._operations[span_id]
            del self._span_locks[span_id]
            active_spans.set(self._count_active())
        logger.debug("Span removed (span_id: %s)", span_id)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def simulate(self, span_id: str) -> SpanDiff:
        """
        Predict the span's effect.

        Requires PENDING. On success the span moves to AWAITING_APPROVAL and
        the diff is returned; on failure the span moves to FAILED and the
        error is re-raised.
        """
        operation = self._begin(
            span_id,
            expected=(SpanStatus.PENDING,),
            target=SpanStatus.SIMULATING,
            event="simulation_started",
            error_cls=InvalidState,
        )
        try:
            diff = await operation.simulate()
            if not isinstance(diff, SpanDiff):
                raise TypeError(
                    f"simulate procedure for {span_id} returned {type(diff).__name__}, expected SpanDiff"
                )
        except Exception:
            self._finish(span_id, SpanStatus.FAILED, "simulation_failed")
            logger.warning("Span simulation failed (span_id: %s)", span_id, exc_info=True)
            raise
        else:
            self._finish(span_id, SpanStatus.AWAITING_APPROVAL, "simulation_completed")
        finally:
            self._release(span_id)

        logger.info(
            "Span simulated (span_id: %s, changes: %d, impact: %s)",
            span_id, len(diff.changes), diff.impact.value,
        )
        return diff

    async def execute(self, span_id: str) -> Any:
        """
        Perform the span's real effect.

        Requires AWAITING_APPROVAL, otherwise NotReady. Success sets COMPLETED,
        failure sets FAILED and re-raises; both set end_time.
        """
        operation = self._begin(
            span_id,
            expected=(SpanStatus.AWAITING_APPROVAL,),
            target=SpanStatus.EXECUTING,
            event="execution_started",
            error_cls=NotReady,
        )
        try:
            result = await operation.operation()
        except Exception:
            self._finish(span_id, SpanStatus.FAILED, "execution_failed", ended=True)
            logger.error("Span execution failed (span_id: %s)", span_id, exc_info=True)
            raise
        else:
            self._finish(span_id, SpanStatus.COMPLETED, "execution_completed", ended=True)
        finally:
            self._release(span_id)

        logger.info("Span executed (span_id: %s)", span_id)
        return result

    async def rollback(self, span_id: str) -> None:
        """
        Undo a completed, reversible span.

        Failure re-raises and leaves the span COMPLETED so the caller may retry.
        """
        span, _, _ = self._lookup(span_id)
        if not span.reversible:
            raise NotReversible(f"Span {span_id} is not reversible")

        operation = self._begin(
            span_id,
            expected=(SpanStatus.COMPLETED,),
            target=None,
            event="rollback_started",
            error_cls=InvalidState,
        )
        try:
            await operation.rollback()
        except Exception:
            self._finish(span_id, None, "rollback_failed")
            logger.error("Span rollback failed (span_id: %s)", span_id, exc_info=True)
            raise
        else:
            self._finish(span_id, SpanStatus.ROLLED_BACK, "rollback_completed")
        finally:
            self._release(span_id)

        logger.info("Span rolled back (span_id: %s)", span_id)

    # ------------------------------------------------------------------
    # Internal bookkeeping
    # ------------------------------------------------------------------

    def _lookup(self, span_id: str) -> Tuple[SpanContext, SpanOperation, threading.Lock]:
        with self._lock:
            span = self._spans.get(span_id)
            if span is None:
                raise NotFound("Span", span_id)
            return span, self._operations[span_id], self._span_locks[span_id]

    def _begin(
        self,
        span_id: str,
        expected: Iterable[SpanStatus],
        target: Optional[SpanStatus],
        event: str,
        error_cls: type,
    ) -> SpanOperation:
        """Check-and-set the status under the span lock and mark the span in flight."""
        span, operation, span_lock = self._lookup(span_id)
        with span_lock, self._lock:
            if span_id in self._in_flight:
                raise InvalidState(f"Span {span_id} has a transition in flight")
            if span.status not in expected:
                raise error_cls(
                    f"Span {span_id} is {span.status.value}, expected "
                    + " or ".join(s.value for s in expected)
                )
            if target is not None:
                self._check_edge(span, target)
                span.status = target
            self._in_flight.add(span_id)
            self._append_timeline(span_id, event)
        span_transitions_total.labels(event=event).inc()
        return operation

    def _finish(self, span_id: str, target: Optional[SpanStatus], event: str, ended: bool = False) -> None:
        span, _, span_lock = self._lookup(span_id)
        with span_lock:
            if target is not None:
                self._check_edge(span, target)
                span.status = target
            if ended:
                span.end_time = datetime.now(timezone.utc)
            with self._lock:
                self._append_timeline(span_id, event)
                active_spans.set(self._count_active())
        span_transitions_total.labels(event=event).inc()

    def _release(self, span_id: str) -> None:
        with self._lock:
            self._in_flight.discard(span_id)

    @staticmethod
    def _check_edge(span: SpanContext, target: SpanStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[span.status]:
            raise InvalidState(
                f"Span {span.id}: illegal transition {span.status.value} -> {target.value}"
            )

    def _append_timeline(self, span_id: str, event: str) -> None:
        # Caller holds self._lock
        self._timeline.append(
            SpanTimelineEntry(
                span_id=span_id,
                timestamp=datetime.now(timezone.utc),
                event=event,
                sequence=self._sequence,
            )
        )
        self._sequence += 1

    def _count_active(self) -> int:
        # Caller holds self._lock. Completed spans are idle even though they may still roll back.
        return sum(
            1 for s in self._spans.values()
            if s.status not in TERMINAL_STATUSES and s.status != SpanStatus.COMPLETED
        )
