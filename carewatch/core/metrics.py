"""Prometheus metrics definitions and utilities for observability.

Metric Naming Conventions:
- All metrics are prefixed with 'carewatch_'
- Counters end with '_total'
- Histograms/durations end with '_seconds'
- Gauges use descriptive names without suffix

Usage:
    from carewatch.core.metrics import record_tick, observe_detection_duration

    record_tick("processed")
    observe_detection_duration(0.12)
"""

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, generate_latest

from carewatch.core.logging import get_logger

logger = get_logger(__name__)

_registry = REGISTRY

# =============================================================================
# Detection Tick Metrics
# =============================================================================

DETECTION_TICKS_TOTAL = Counter(
    "carewatch_detection_ticks_total",
    "Detection ticks by outcome",
    ["outcome"],
    registry=_registry,
)

DETECTION_DURATION_BUCKETS = (0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)

DETECTION_DURATION_SECONDS = Histogram(
    "carewatch_detection_duration_seconds",
    "Duration of pose detection calls",
    buckets=DETECTION_DURATION_BUCKETS,
    registry=_registry,
)

DETECTION_STATUS = Gauge(
    "carewatch_detection_status",
    "Current detection status (0=normal, 1=warning, 2=alert)",
    registry=_registry,
)

# =============================================================================
# Alert / Store Metrics
# =============================================================================

ALERTS_CREATED_TOTAL = Counter(
    "carewatch_alerts_created_total",
    "Alerts written to the record store by type",
    ["alert_type"],
    registry=_registry,
)

STORE_FAILURES_TOTAL = Counter(
    "carewatch_store_failures_total",
    "Record store failures by operation",
    ["operation"],
    registry=_registry,
)

_STATUS_VALUES = {"normal": 0, "warning": 1, "alert": 2}


def record_tick(outcome: str) -> None:
    """Count a finished detection tick."""
    DETECTION_TICKS_TOTAL.labels(outcome=outcome).inc()


def observe_detection_duration(duration_seconds: float) -> None:
    """Record how long a pose detection call took."""
    DETECTION_DURATION_SECONDS.observe(duration_seconds)


def set_detection_status(status: str) -> None:
    """Publish the current detection status as a gauge value."""
    DETECTION_STATUS.set(_STATUS_VALUES.get(status, 0))


def record_alert_created(alert_type: str) -> None:
    """Count an alert written to the store."""
    ALERTS_CREATED_TOTAL.labels(alert_type=alert_type).inc()


def record_store_failure(operation: str) -> None:
    """Count a failed store operation."""
    STORE_FAILURES_TOTAL.labels(operation=operation).inc()


def get_metrics_response() -> bytes:
    """Generate Prometheus exposition output for all registered metrics."""
    return generate_latest(_registry)
