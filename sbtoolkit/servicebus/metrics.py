"""
Service Bus Metrics Collection

Prometheus counters for drain, settle, renew and dispatch activity.

Author: sbtoolkit contributors
Date: 2026-10-18
"""

from typing import Optional

from prometheus_client import (
    Counter,
    Histogram,
    CollectorRegistry,
    generate_latest,
)


class ToolkitMetrics:
    """
    Prometheus metrics collector for toolkit operations.

    Each instance owns its own registry so that repeated instantiation (tests,
    embedded use) never collides with the process-wide default registry.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()

        self.messages_received_total = Counter(
            'sbtoolkit_messages_received_total',
            'Messages surfaced to the caller',
            ['entity_type', 'entity_path', 'mode'],
            registry=self.registry
        )

        self.messages_settled_total = Counter(
            'sbtoolkit_messages_settled_total',
            'Messages settled by the toolkit',
            ['entity_type', 'entity_path', 'action'],
            registry=self.registry
        )

        self.messages_sent_total = Counter(
            'sbtoolkit_messages_sent_total',
            'Messages sent',
            ['target'],
            registry=self.registry
        )

        self.batches_sent_total = Counter(
            'sbtoolkit_batches_sent_total',
            'Message batches sent',
            ['target'],
            registry=self.registry
        )

        self.sessions_accepted_total = Counter(
            'sbtoolkit_sessions_accepted_total',
            'Sessions accepted for draining',
            ['entity_path'],
            registry=self.registry
        )

        self.lock_renewals_total = Counter(
            'sbtoolkit_session_lock_renewals_total',
            'Session lock renewals',
            ['entity_path'],
            registry=self.registry
        )

        self.lock_losses_total = Counter(
            'sbtoolkit_session_lock_losses_total',
            'Session locks lost during processing',
            ['entity_path'],
            registry=self.registry
        )

        self.errors_total = Counter(
            'sbtoolkit_errors_total',
            'Errors by operation and type',
            ['operation', 'error_type'],
            registry=self.registry
        )

        self.batch_size_messages = Histogram(
            'sbtoolkit_fetch_batch_size_messages',
            'Messages per fetched batch',
            ['entity_path'],
            buckets=(0, 1, 5, 10, 50, 100, 500, 1000),
            registry=self.registry
        )

    def track_received(self, entity_type: str, entity_path: str, mode: str) -> None:
        self.messages_received_total.labels(
            entity_type=entity_type, entity_path=entity_path, mode=mode
        ).inc()

    def track_settled(self, entity_type: str, entity_path: str, action: str) -> None:
        self.messages_settled_total.labels(
            entity_type=entity_type, entity_path=entity_path, action=action
        ).inc()

    def track_batch_fetched(self, entity_path: str, size: int) -> None:
        self.batch_size_messages.labels(entity_path=entity_path).observe(size)

    def track_batch_sent(self, target: str, size: int) -> None:
        self.batches_sent_total.labels(target=target).inc()
        self.messages_sent_total.labels(target=target).inc(size)

    def track_session_accepted(self, entity_path: str) -> None:
        self.sessions_accepted_total.labels(entity_path=entity_path).inc()

    def track_lock_renewed(self, entity_path: str) -> None:
        self.lock_renewals_total.labels(entity_path=entity_path).inc()

    def track_lock_lost(self, entity_path: str) -> None:
        self.lock_losses_total.labels(entity_path=entity_path).inc()

    def track_error(self, operation: str, error_type: str) -> None:
        """
        Track error occurrence.

        Args:
            operation: Operation that failed (drain, dispatch, renew_lock, ...)
            error_type: Error code or exception class name
        """
        self.errors_total.labels(operation=operation, error_type=error_type).inc()

    def get_sample(self, name: str, labels: dict) -> float:
        """Read one sample value (0.0 if never observed)."""
        value = self.registry.get_sample_value(name, labels)
        return value or 0.0

    def generate_metrics(self) -> bytes:
        """
        Generate metrics in Prometheus text format.

        Returns:
            Metrics in Prometheus text format
        """
        return generate_latest(self.registry)


# Global metrics instance
_metrics: Optional[ToolkitMetrics] = None


def get_metrics() -> ToolkitMetrics:
    """
    Get global metrics instance (singleton).

    Returns:
        ToolkitMetrics instance
    """
    global _metrics
    if _metrics is None:
        _metrics = ToolkitMetrics()
    return _metrics


def reset_metrics() -> None:
    """Reset global metrics instance (for testing)."""
    global _metrics
    _metrics = None
