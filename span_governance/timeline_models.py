"""
Timeline & Observability: Data Models

Events, metric samples, alerts, audit records, dashboards and the query
shapes used to read them back. Records are append-only once stored; the
store hands out copies.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime


class EventType(str, Enum):
    SPAN_CREATED = "span_created"
    SPAN_SIMULATED = "span_simulated"
    SPAN_EXECUTED = "span_executed"
    SPAN_FAILED = "span_failed"
    SPAN_ROLLED_BACK = "span_rolled_back"
    POLICY_EVALUATED = "policy_evaluated"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_GRANTED = "approval_granted"
    APPROVAL_REJECTED = "approval_rejected"
    APPROVAL_EXPIRED = "approval_expired"
    SECURITY_VIOLATION = "security_violation"
    PII_DETECTED = "pii_detected"
    PERFORMANCE_ALERT = "performance_alert"
    USER_ACTION = "user_action"
    SYSTEM_EVENT = "system_event"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class TimelineEvent:
    id: str
    timestamp: datetime
    sequence: int
    type: EventType
    source: str
    message: str
    severity: Severity = Severity.INFO
    span_id: Optional[str] = None
    user_id: Optional[str] = None
    trace_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "sequence": self.sequence,
            "type": self.type.value,
            "source": self.source,
            "message": self.message,
            "severity": self.severity.value,
            "span_id": self.span_id,
            "user_id": self.user_id,
            "trace_id": self.trace_id,
            "metadata": dict(self.metadata),
            "tags": list(self.tags),
        }


@dataclass(frozen=True)
class MetricSample:
    id: str
    timestamp: datetime
    sequence: int
    metric: str
    value: float
    unit: str
    source: str
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class Alert:
    id: str
    timestamp: datetime
    type: str
    severity: AlertSeverity
    title: str
    description: str
    source: str
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None


@dataclass(frozen=True)
class AuditRecord:
    id: str
    timestamp: datetime
    sequence: int
    user_id: str
    action: str
    resource: str
    outcome: str  # success | failure
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


# ============================================================================
# QUERIES
# ============================================================================

@dataclass
class TimelineQuery:
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    event_types: Optional[List[EventType]] = None
    sources: Optional[List[str]] = None
    severities: Optional[List[Severity]] = None
    span_ids: Optional[List[str]] = None
    user_ids: Optional[List[str]] = None
    # An event matches when it carries ANY of these tags
    tags: Optional[List[str]] = None
    offset: int = 0
    limit: int = 100


@dataclass
class MetricsQuery:
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    metrics: Optional[List[str]] = None
    sources: Optional[List[str]] = None
    # A sample matches when every given tag key/value is present
    tags: Optional[Dict[str, str]] = None
    offset: int = 0
    limit: int = 100


@dataclass
class AuditQuery:
    user_id: Optional[str] = None
    action: Optional[str] = None  # substring
    resource: Optional[str] = None  # substring
    outcome: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    offset: int = 0
    limit: int = 100


# ============================================================================
# HEALTH AND DASHBOARDS
# ============================================================================

@dataclass(frozen=True)
class HealthCheck:
    name: str
    status: str  # pass | fail
    message: str


@dataclass(frozen=True)
class SystemHealth:
    status: str  # healthy | degraded | critical
    checks: List[HealthCheck]
    uptime_seconds: float
    last_check: datetime


@dataclass
class DashboardWidget:
    id: str
    type: str  # metric | timeline | alert
    title: str
    config: Dict[str, Any] = field(default_factory=dict)
    position: Dict[str, int] = field(default_factory=dict)


@dataclass
class ObservabilityDashboard:
    id: str
    name: str
    widgets: List[DashboardWidget]
    created: datetime
    last_modified: datetime
