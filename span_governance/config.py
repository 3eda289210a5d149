import os
from functools import lru_cache


class Settings:
    # Bounded ring capacities
    EVENT_RING_CAPACITY: int = int(os.getenv("EVENT_RING_CAPACITY", "1000"))
    METRIC_RING_CAPACITY: int = int(os.getenv("METRIC_RING_CAPACITY", "10000"))
    AUDIT_RING_CAPACITY: int = int(os.getenv("AUDIT_RING_CAPACITY", "5000"))
    ALERT_RING_CAPACITY: int = int(os.getenv("ALERT_RING_CAPACITY", "1000"))
    # Approval window
    APPROVAL_TTL_HOURS: float = float(os.getenv("APPROVAL_TTL_HOURS", "24"))
    # System health thresholds (a check fails at or above the limit)
    HEALTH_MAX_ACTIVE_SPANS: int = int(os.getenv("HEALTH_MAX_ACTIVE_SPANS", "100"))
    HEALTH_MAX_PENDING_APPROVALS: int = int(os.getenv("HEALTH_MAX_PENDING_APPROVALS", "10"))
    HEALTH_MAX_UNRESOLVED_ALERTS: int = int(os.getenv("HEALTH_MAX_UNRESOLVED_ALERTS", "5"))
    # Prometheus exporter port, 0 disables it
    METRICS_PORT: int = int(os.getenv("METRICS_PORT", "0"))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_DIR: str = os.getenv("LOG_DIR", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
