"""
Timeline & Observability Store

A single append-only sink plus derived views:
- Event ring (oldest evicted past capacity) with per-type listeners
- Metric ring with fixed-threshold alerting
- Alerts, resolved only by explicit acknowledgment
- Audit ring for compliance-style records
- System health aggregation and dashboards
- Trace correlation across causally related events

CRITICAL: This store records only. Other components write into it but never
read from it to make decisions. A failing listener is logged and swallowed so
observability can never break the operation being observed.

Ordering:
- query_events / query_metrics / get_audit_logs are newest-first
- get_trace is oldest-first (a trace reads as a causal narrative)
Ties on timestamp are broken by a global sequence number.
"""

import logging
import threading
from collections import deque
from copy import deepcopy
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional
from uuid import uuid4

from .config import get_settings
from .metrics import alerts_created_total, listener_errors_total, timeline_events_total
from .timeline_models import (
    Alert,
    AlertSeverity,
    AuditQuery,
    AuditRecord,
    DashboardWidget,
    EventType,
    HealthCheck,
    MetricSample,
    MetricsQuery,
    ObservabilityDashboard,
    Severity,
    SystemHealth,
    TimelineEvent,
    TimelineQuery,
)

logger = logging.getLogger(__name__)

EventListener = Callable[[TimelineEvent], None]

# metric name -> (warning, critical); a breach is value >= threshold
METRIC_THRESHOLDS: Dict[str, tuple] = {
    "cpu_usage": (80, 95),
    "memory_usage": (80, 95),
    "span_execution_time": (5000, 10000),
}

_ALERT_EVENT_SEVERITY = {
    AlertSeverity.CRITICAL: Severity.CRITICAL,
    AlertSeverity.HIGH: Severity.ERROR,
}


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


class TimelineObservabilityStore:
    """
    In-memory observability sink.

    Args:
        event_capacity / metric_capacity / audit_capacity: ring sizes
            (configured defaults 1000 / 10000 / 5000)
        alert_capacity: alerts kept; resolved ones are dropped first (default 1000)
        active_spans: callable returning the active span count for health checks
        pending_approvals: callable returning the pending approval count
    """

    def __init__(
        self,
        event_capacity: Optional[int] = None,
        metric_capacity: Optional[int] = None,
        audit_capacity: Optional[int] = None,
        alert_capacity: Optional[int] = None,
        active_spans: Optional[Callable[[], int]] = None,
        pending_approvals: Optional[Callable[[], int]] = None,
    ):
        cfg = get_settings()
        self.event_capacity = event_capacity or cfg.EVENT_RING_CAPACITY
        self.metric_capacity = metric_capacity or cfg.METRIC_RING_CAPACITY
        self.audit_capacity = audit_capacity or cfg.AUDIT_RING_CAPACITY
        self.alert_capacity = alert_capacity or cfg.ALERT_RING_CAPACITY

        self._events: Deque[TimelineEvent] = deque()
        self._events_by_id: Dict[str, TimelineEvent] = {}
        self._metrics: Deque[MetricSample] = deque(maxlen=self.metric_capacity)
        self._audit: Deque[AuditRecord] = deque(maxlen=self.audit_capacity)
        self._alerts: List[Alert] = []
        self._traces: Dict[str, List[str]] = {}
        self._dashboards: Dict[str, ObservabilityDashboard] = {}
        self._listeners: Dict[EventType, List[EventListener]] = {}

        self._sequence = 0
        self._lock = threading.RLock()
        self._started_at = datetime.now(timezone.utc)

        self._active_spans = active_spans or (lambda: 0)
        self._pending_approvals = pending_approvals or (lambda: 0)
        self.health_limits = {
            "active_spans": cfg.HEALTH_MAX_ACTIVE_SPANS,
            "pending_approvals": cfg.HEALTH_MAX_PENDING_APPROVALS,
            "unresolved_alerts": cfg.HEALTH_MAX_UNRESOLVED_ALERTS,
        }
        self._initialize_default_dashboard()

    def register_health_sources(
        self,
        active_spans: Optional[Callable[[], int]] = None,
        pending_approvals: Optional[Callable[[], int]] = None,
    ) -> None:
        if active_spans is not None:
            self._active_spans = active_spans
        if pending_approvals is not None:
            self._pending_approvals = pending_approvals

    def _next_sequence(self) -> int:
        # Caller holds self._lock
        seq = self._sequence
        self._sequence += 1
        return seq

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def log_event(
        self,
        event_type: EventType,
        source: str,
        message: str,
        span_id: Optional[str] = None,
        user_id: Optional[str] = None,
        trace_id: Optional[str] = None,
        severity: Severity = Severity.INFO,
        metadata: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
    ) -> str:
        """
        Append an event and notify listeners for its type.

        Listeners run synchronously in registration order, after the event is
        stored. Listener exceptions are logged, never propagated.

        Returns:
            The event id
        """
        event_type = EventType(event_type)
        with self._lock:
            event = TimelineEvent(
                id=_new_id("event"),
                timestamp=datetime.now(timezone.utc),
                sequence=self._next_sequence(),
                type=event_type,
                source=source,
                message=message,
                severity=Severity(severity),
                span_id=span_id,
                user_id=user_id,
                trace_id=trace_id,
                metadata=deepcopy(metadata or {}),
                tags=list(tags or []),
            )
            self._events.append(event)
            self._events_by_id[event.id] = event
            while len(self._events) > self.event_capacity:
                evicted = self._events.popleft()
                self._events_by_id.pop(evicted.id, None)
                self._unlink(evicted)
            if trace_id:
                self._traces.setdefault(trace_id, []).append(event.id)
            listeners = list(self._listeners.get(event_type, []))
            snapshot = deepcopy(event)

        timeline_events_total.labels(type=event_type.value).inc()
        logger.debug("Timeline event %s from %s (seq: %d)", event_type.value, source, snapshot.sequence)

        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                listener_errors_total.inc()
                logger.exception(
                    "Timeline listener failed (event_type: %s, event_id: %s)",
                    event_type.value, snapshot.id,
                )
        return snapshot.id

    def add_event_listener(self, event_type: EventType, listener: EventListener) -> None:
        with self._lock:
            self._listeners.setdefault(EventType(event_type), []).append(listener)

    def remove_event_listener(self, event_type: EventType, listener: EventListener) -> None:
        with self._lock:
            listeners = self._listeners.get(EventType(event_type), [])
            if listener in listeners:
                listeners.remove(listener)

    def query_events(self, query: Optional[TimelineQuery] = None) -> List[TimelineEvent]:
        """Filter events; newest first, then offset/limit."""
        query = query or TimelineQuery()
        with self._lock:
            events = deepcopy(list(self._events))

        if query.start_time:
            events = [e for e in events if e.timestamp >= query.start_time]
        if query.end_time:
            events = [e for e in events if e.timestamp <= query.end_time]
        if query.event_types:
            types = {EventType(t) for t in query.event_types}
            events = [e for e in events if e.type in types]
        if query.sources:
            events = [e for e in events if e.source in query.sources]
        if query.severities:
            severities = {Severity(s) for s in query.severities}
            events = [e for e in events if e.severity in severities]
        if query.span_ids:
            events = [e for e in events if e.span_id and e.span_id in query.span_ids]
        if query.user_ids:
            events = [e for e in events if e.user_id and e.user_id in query.user_ids]
        if query.tags:
            events = [e for e in events if any(tag in e.tags for tag in query.tags)]

        events.sort(key=lambda e: (e.timestamp, e.sequence), reverse=True)
        return events[query.offset:query.offset + query.limit]

    def get_event(self, event_id: str) -> Optional[TimelineEvent]:
        with self._lock:
            event = self._events_by_id.get(event_id)
            return deepcopy(event) if event else None

    # ------------------------------------------------------------------
    # Metrics and alerts
    # ------------------------------------------------------------------

    def record_metric(
        self,
        metric: str,
        value: float,
        unit: str,
        source: str,
        tags: Optional[Dict[str, str]] = None,
    ) -> str:
        """Append a sample and raise an alert when it breaches a fixed threshold."""
        with self._lock:
            sample = MetricSample(
                id=_new_id("metric"),
                timestamp=datetime.now(timezone.utc),
                sequence=self._next_sequence(),
                metric=metric,
                value=float(value),
                unit=unit,
                source=source,
                tags=dict(tags or {}),
            )
            self._metrics.append(sample)

        self._check_thresholds(metric, sample.value, source)
        return sample.id

    def _check_thresholds(self, metric: str, value: float, source: str) -> None:
        threshold = METRIC_THRESHOLDS.get(metric)
        if not threshold:
            return
        warning, critical = threshold
        if value >= critical:
            self.create_alert(
                "performance",
                AlertSeverity.CRITICAL,
                f"Critical {metric} threshold exceeded",
                f"{metric} is {value:g} (threshold: {critical})",
                source,
            )
        elif value >= warning:
            self.create_alert(
                "performance",
                AlertSeverity.MEDIUM,
                f"Warning {metric} threshold exceeded",
                f"{metric} is {value:g} (threshold: {warning})",
                source,
            )

    def query_metrics(self, query: Optional[MetricsQuery] = None) -> List[MetricSample]:
        """Filter metric samples; newest first, then offset/limit."""
        query = query or MetricsQuery()
        with self._lock:
            samples = list(self._metrics)

        if query.start_time:
            samples = [m for m in samples if m.timestamp >= query.start_time]
        if query.end_time:
            samples = [m for m in samples if m.timestamp <= query.end_time]
        if query.metrics:
            samples = [m for m in samples if m.metric in query.metrics]
        if query.sources:
            samples = [m for m in samples if m.source in query.sources]
        if query.tags:
            samples = [
                m for m in samples
                if all(m.tags.get(k) == v for k, v in query.tags.items())
            ]

        samples.sort(key=lambda m: (m.timestamp, m.sequence), reverse=True)
        return samples[query.offset:query.offset + query.limit]

    def create_alert(
        self,
        alert_type: str,
        severity: AlertSeverity,
        title: str,
        description: str,
        source: str,
    ) -> str:
        """Raise an alert and mirror it as a performance_alert event."""
        severity = AlertSeverity(severity)
        alert = Alert(
            id=_new_id("alert"),
            timestamp=datetime.now(timezone.utc),
            type=alert_type,
            severity=severity,
            title=title,
            description=description,
            source=source,
        )
        with self._lock:
            self._alerts.append(alert)
            while len(self._alerts) > self.alert_capacity:
                dropped = next((a for a in self._alerts if a.resolved), self._alerts[0])
                self._alerts.remove(dropped)

        alerts_created_total.labels(severity=severity.value).inc()
        logger.warning("Alert raised (%s/%s): %s", alert_type, severity.value, title)
        self.log_event(
            EventType.PERFORMANCE_ALERT,
            source,
            f"Alert created: {title}",
            severity=_ALERT_EVENT_SEVERITY.get(severity, Severity.WARNING),
            metadata={"alert_id": alert.id, "alert_type": alert_type},
            tags=["alert", alert_type],
        )
        return alert.id

    def resolve_alert(self, alert_id: str, resolved_by: str) -> bool:
        """
        Acknowledge an alert. Idempotent: resolving an already resolved (or
        unknown) alert is a no-op.

        Returns:
            True if this call resolved the alert
        """
        with self._lock:
            alert = next((a for a in self._alerts if a.id == alert_id), None)
            if alert is None or alert.resolved:
                return False
            alert.resolved = True
            alert.resolved_at = datetime.now(timezone.utc)
            alert.resolved_by = resolved_by
            source, title = alert.source, alert.title

        self.log_event(
            EventType.PERFORMANCE_ALERT,
            source,
            f"Alert resolved: {title}",
            severity=Severity.INFO,
            metadata={"alert_id": alert_id, "resolved_by": resolved_by},
            tags=["alert", "resolved"],
        )
        return True

    def get_alerts(self, resolved: Optional[bool] = None) -> List[Alert]:
        with self._lock:
            alerts = [
                deepcopy(a) for a in self._alerts
                if resolved is None or a.resolved == resolved
            ]
        return sorted(alerts, key=lambda a: a.timestamp, reverse=True)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def log_audit(
        self,
        user_id: str,
        action: str,
        resource: str,
        outcome: str,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        if outcome not in ("success", "failure"):
            raise ValueError(f"audit outcome must be 'success' or 'failure', got '{outcome}'")
        with self._lock:
            record = AuditRecord(
                id=_new_id("audit"),
                timestamp=datetime.now(timezone.utc),
                sequence=self._next_sequence(),
                user_id=user_id,
                action=action,
                resource=resource,
                outcome=outcome,
                details=deepcopy(details or {}),
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self._audit.append(record)
        logger.debug("Audit %s %s on %s: %s", user_id, action, resource, outcome)
        return record.id

    def get_audit_logs(self, query: Optional[AuditQuery] = None) -> List[AuditRecord]:
        query = query or AuditQuery()
        with self._lock:
            records = list(self._audit)

        if query.user_id:
            records = [r for r in records if r.user_id == query.user_id]
        if query.action:
            records = [r for r in records if query.action in r.action]
        if query.resource:
            records = [r for r in records if query.resource in r.resource]
        if query.outcome:
            records = [r for r in records if r.outcome == query.outcome]
        if query.start_time:
            records = [r for r in records if r.timestamp >= query.start_time]
        if query.end_time:
            records = [r for r in records if r.timestamp <= query.end_time]

        records.sort(key=lambda r: (r.timestamp, r.sequence), reverse=True)
        return records[query.offset:query.offset + query.limit]

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def get_system_health(self) -> SystemHealth:
        """
        Run the fixed check battery. 0 failures: healthy, 1: degraded,
        2 or more: critical.
        """
        span_count = self._active_spans()
        pending = self._pending_approvals()
        unresolved = len(self.get_alerts(resolved=False))
        limits = self.health_limits

        checks = [
            HealthCheck(
                name="Span Engine",
                status="pass" if span_count < limits["active_spans"] else "fail",
                message=f"{span_count} active spans",
            ),
            HealthCheck(
                name="Security Engine",
                status="pass" if pending < limits["pending_approvals"] else "fail",
                message=f"{pending} pending approvals",
            ),
            HealthCheck(
                name="Active Alerts",
                status="pass" if unresolved < limits["unresolved_alerts"] else "fail",
                message=f"{unresolved} unresolved alerts",
            ),
        ]
        failed = sum(1 for c in checks if c.status == "fail")
        status = "healthy" if failed == 0 else "degraded" if failed == 1 else "critical"

        now = datetime.now(timezone.utc)
        return SystemHealth(
            status=status,
            checks=checks,
            uptime_seconds=(now - self._started_at).total_seconds(),
            last_check=now,
        )

    # ------------------------------------------------------------------
    # Traces
    # ------------------------------------------------------------------

    def create_trace(self) -> str:
        trace_id = _new_id("trace")
        with self._lock:
            self._traces[trace_id] = []
        return trace_id

    def link_events(self, event_ids: List[str], trace_id: Optional[str] = None) -> str:
        """
        Attach existing events to a trace, creating one when trace_id is
        omitted. Unknown (or already evicted) event ids are skipped.
        """
        trace_id = trace_id or self.create_trace()
        with self._lock:
            linked = self._traces.setdefault(trace_id, [])
            for event_id in event_ids:
                event = self._events_by_id.get(event_id)
                if event is None:
                    logger.warning("Cannot link unknown event %s to trace %s", event_id, trace_id)
                    continue
                if event.trace_id and event.trace_id != trace_id:
                    self._unlink(event)
                event.trace_id = trace_id
                if event_id not in linked:
                    linked.append(event_id)
        return trace_id

    def _unlink(self, event: TimelineEvent) -> None:
        # Caller holds self._lock; a trace with no events left is dropped
        if not event.trace_id:
            return
        linked = self._traces.get(event.trace_id)
        if linked is None:
            return
        if event.id in linked:
            linked.remove(event.id)
        if not linked:
            del self._traces[event.trace_id]

    def trace_count(self) -> int:
        with self._lock:
            return len(self._traces)

    def get_trace(self, trace_id: str) -> List[TimelineEvent]:
        """Events of a trace still in the ring, oldest first."""
        with self._lock:
            events = [
                deepcopy(self._events_by_id[eid])
                for eid in self._traces.get(trace_id, [])
                if eid in self._events_by_id
            ]
        return sorted(events, key=lambda e: (e.timestamp, e.sequence))

    # ------------------------------------------------------------------
    # Dashboards
    # ------------------------------------------------------------------

    def _initialize_default_dashboard(self) -> None:
        now = datetime.now(timezone.utc)
        self._dashboards["default"] = ObservabilityDashboard(
            id="default",
            name="System Overview",
            widgets=[
                DashboardWidget(
                    id="system-metrics",
                    type="metric",
                    title="System Metrics",
                    config={"metrics": ["span_execution_time", "spans_executed_total", "spans_failed_total"]},
                    position={"x": 0, "y": 0, "width": 6, "height": 4},
                ),
                DashboardWidget(
                    id="recent-events",
                    type="timeline",
                    title="Recent Events",
                    config={"limit": 10, "severities": ["warning", "error", "critical"]},
                    position={"x": 6, "y": 0, "width": 6, "height": 4},
                ),
                DashboardWidget(
                    id="active-alerts",
                    type="alert",
                    title="Active Alerts",
                    config={"resolved": False},
                    position={"x": 0, "y": 4, "width": 12, "height": 3},
                ),
            ],
            created=now,
            last_modified=now,
        )

    def create_dashboard(self, name: str, widgets: List[DashboardWidget]) -> str:
        now = datetime.now(timezone.utc)
        dashboard = ObservabilityDashboard(
            id=_new_id("dashboard"),
            name=name,
            widgets=list(widgets),
            created=now,
            last_modified=now,
        )
        with self._lock:
            self._dashboards[dashboard.id] = dashboard
        return dashboard.id

    def get_dashboard(self, dashboard_id: str) -> Optional[ObservabilityDashboard]:
        with self._lock:
            dashboard = self._dashboards.get(dashboard_id)
            return deepcopy(dashboard) if dashboard else None

    def get_dashboards(self) -> List[ObservabilityDashboard]:
        with self._lock:
            return [deepcopy(d) for d in self._dashboards.values()]

    # ------------------------------------------------------------------
    # Default listeners
    # ------------------------------------------------------------------

    def install_default_listeners(self) -> None:
        """Derive counters and alerts from span and security events."""

        def on_created(event: TimelineEvent) -> None:
            self.record_metric("spans_created_total", 1, "count", "span_engine")

        def on_executed(event: TimelineEvent) -> None:
            self.record_metric("spans_executed_total", 1, "count", "span_engine")

        def on_failed(event: TimelineEvent) -> None:
            self.record_metric("spans_failed_total", 1, "count", "span_engine")
            self.create_alert(
                "error",
                AlertSeverity.HIGH,
                "Span Execution Failed",
                f"Span {event.span_id} failed to execute",
                "span_engine",
            )

        def on_violation(event: TimelineEvent) -> None:
            self.create_alert(
                "security",
                AlertSeverity.CRITICAL,
                "Security Policy Violation",
                event.message,
                "security_engine",
            )

        self.add_event_listener(EventType.SPAN_CREATED, on_created)
        self.add_event_listener(EventType.SPAN_EXECUTED, on_executed)
        self.add_event_listener(EventType.SPAN_FAILED, on_failed)
        self.add_event_listener(EventType.SECURITY_VIOLATION, on_violation)
