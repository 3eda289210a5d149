"""Prometheus metrics for the span lifecycle, governance and timeline store.

These counters are process-wide exporter metrics. They are independent of the
in-memory metric ring kept by TimelineObservabilityStore, which is what the
threshold alerting and the query API read.
"""

from __future__ import annotations
import logging

from prometheus_client import Counter, Gauge, start_http_server

from .config import get_settings

logger = logging.getLogger(__name__)


span_transitions_total = Counter(
    "span_transitions_total", "Span lifecycle transitions", ["event"]
)
governance_decisions_total = Counter(
    "governance_decisions_total", "Span execution validations", ["result"]
)
approvals_total = Counter(
    "governance_approvals_total", "Approval lifecycle events", ["status"]
)
timeline_events_total = Counter(
    "timeline_events_total", "Timeline events logged", ["type"]
)
alerts_created_total = Counter(
    "alerts_created_total", "Alerts raised", ["severity"]
)
listener_errors_total = Counter(
    "timeline_listener_errors_total", "Timeline listener exceptions swallowed"
)
active_spans = Gauge("active_spans", "Spans not yet in a terminal state")


def start_metrics_server_if_enabled():
    cfg = get_settings()
    try:
        if cfg.METRICS_PORT:
            start_http_server(cfg.METRICS_PORT)
            logger.info("metrics exporter listening on :%d", cfg.METRICS_PORT)
    except OSError:
        logger.exception("failed to start metrics server")
