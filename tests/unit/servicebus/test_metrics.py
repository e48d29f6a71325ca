"""
Tests for Toolkit Metrics

Author: sbtoolkit contributors
Date: 2026-10-18
"""

from prometheus_client import REGISTRY

from sbtoolkit.servicebus.metrics import ToolkitMetrics, get_metrics, reset_metrics


class TestToolkitMetrics:
    """Test cases for Prometheus metrics collection."""

    def test_singleton(self):
        assert get_metrics() is get_metrics()

    def test_reset_creates_fresh_registry(self):
        metrics = get_metrics()
        metrics.track_session_accepted("orders")
        reset_metrics()
        fresh = get_metrics()
        assert fresh is not metrics
        assert fresh.get_sample("sbtoolkit_sessions_accepted_total", {"entity_path": "orders"}) == 0.0

    def test_instances_do_not_collide(self):
        """Separate instances own separate registries."""
        first = ToolkitMetrics()
        second = ToolkitMetrics()
        first.track_error("dispatch", "MessageSizeExceeded")
        assert second.get_sample(
            "sbtoolkit_errors_total", {"operation": "dispatch", "error_type": "MessageSizeExceeded"}
        ) == 0.0
        assert REGISTRY.get_sample_value("sbtoolkit_errors_total", {
            "operation": "dispatch", "error_type": "MessageSizeExceeded"
        }) is None

    def test_batch_sent_counts_messages(self):
        metrics = ToolkitMetrics()
        metrics.track_batch_sent("orders", 3)
        metrics.track_batch_sent("orders", 2)
        assert metrics.get_sample("sbtoolkit_batches_sent_total", {"target": "orders"}) == 2
        assert metrics.get_sample("sbtoolkit_messages_sent_total", {"target": "orders"}) == 5

    def test_lock_metrics(self):
        metrics = ToolkitMetrics()
        metrics.track_lock_renewed("sessions")
        metrics.track_lock_renewed("sessions")
        metrics.track_lock_lost("sessions")
        assert metrics.get_sample("sbtoolkit_session_lock_renewals_total", {"entity_path": "sessions"}) == 2
        assert metrics.get_sample("sbtoolkit_session_lock_losses_total", {"entity_path": "sessions"}) == 1

    def test_generate_metrics(self):
        metrics = ToolkitMetrics()
        metrics.track_received("queue", "orders", "receive")
        metrics.track_batch_fetched("orders", 4)
        output = metrics.generate_metrics().decode("utf-8")
        assert 'sbtoolkit_messages_received_total{entity_type="queue",entity_path="orders",mode="receive"} 1.0' in output
        assert "sbtoolkit_fetch_batch_size_messages_count" in output
