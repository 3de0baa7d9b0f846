"""Unit tests for Prometheus metric helpers."""

from prometheus_client import REGISTRY

from carewatch.core.metrics import (
    get_metrics_response,
    observe_detection_duration,
    record_alert_created,
    record_store_failure,
    record_tick,
    set_detection_status,
)


def _value(name: str, labels: dict[str, str] | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class TestMetricHelpers:
    def test_record_tick(self):
        before = _value("carewatch_detection_ticks_total", {"outcome": "processed"})
        record_tick("processed")
        after = _value("carewatch_detection_ticks_total", {"outcome": "processed"})
        assert after == before + 1

    def test_detection_status_gauge(self):
        set_detection_status("alert")
        assert _value("carewatch_detection_status") == 2
        set_detection_status("normal")
        assert _value("carewatch_detection_status") == 0

    def test_alerts_and_store_failures(self):
        before_alerts = _value("carewatch_alerts_created_total", {"alert_type": "test"})
        before_failures = _value("carewatch_store_failures_total", {"operation": "update"})
        record_alert_created("test")
        record_store_failure("update")
        assert _value("carewatch_alerts_created_total", {"alert_type": "test"}) == (
            before_alerts + 1
        )
        assert _value("carewatch_store_failures_total", {"operation": "update"}) == (
            before_failures + 1
        )

    def test_exposition(self):
        observe_detection_duration(0.05)
        body = get_metrics_response().decode()
        assert "carewatch_detection_duration_seconds_bucket" in body
