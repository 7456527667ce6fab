"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from prodline.constants import (
    METRIC_CALLBACK_DELIVERIES,
    METRIC_ITEMS_CLAIMED,
    METRIC_ITEMS_COMPLETED,
    METRIC_LOCKS_RELEASED,
    METRIC_ORPHANS_ADOPTED,
    METRIC_QUEUE_DEPTH,
    METRIC_STAGE_DURATION,
    METRIC_STAGE_TRANSITIONS,
    METRIC_TICK_ERRORS,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the production line.

    Collects metrics for:
    - Queue depth
    - Claims, orphan adoptions and completions
    - Stage transitions and stage durations
    - Callback delivery outcomes
    - Engine tick errors and reaped locks
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of pending items",
            registry=self._registry,
        )

        self.items_claimed = Counter(
            METRIC_ITEMS_CLAIMED,
            "Total number of pending items claimed",
            ["worker_id"],
            registry=self._registry,
        )

        self.orphans_adopted = Counter(
            METRIC_ORPHANS_ADOPTED,
            "Total number of orphaned items adopted",
            ["worker_id"],
            registry=self._registry,
        )

        self.stage_transitions = Counter(
            METRIC_STAGE_TRANSITIONS,
            "Total number of stage transitions",
            ["from_stage", "to_stage"],
            registry=self._registry,
        )

        self.stage_duration = Histogram(
            METRIC_STAGE_DURATION,
            "Observed stage duration in seconds",
            ["stage"],
            buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0),
            registry=self._registry,
        )

        self.items_completed = Counter(
            METRIC_ITEMS_COMPLETED,
            "Total number of items that reached the terminal stage",
            ["worker_id"],
            registry=self._registry,
        )

        self.callback_deliveries = Counter(
            METRIC_CALLBACK_DELIVERIES,
            "Completion callback attempts by outcome",
            ["outcome"],
            registry=self._registry,
        )

        self.tick_errors = Counter(
            METRIC_TICK_ERRORS,
            "Engine ticks aborted by an error",
            ["worker_id"],
            registry=self._registry,
        )

        self.locks_released = Counter(
            METRIC_LOCKS_RELEASED,
            "Stale item locks released by the reaper",
            registry=self._registry,
        )

    def record_claim(self, worker_id: str, orphan: bool = False) -> None:
        """Record a claimed or adopted item."""
        if orphan:
            self.orphans_adopted.labels(worker_id=worker_id).inc()
        else:
            self.items_claimed.labels(worker_id=worker_id).inc()

    def record_stage_transition(
        self,
        from_stage: str,
        to_stage: str,
        duration_seconds: float,
    ) -> None:
        """Record a closed stage and the stage that follows it."""
        self.stage_transitions.labels(from_stage=from_stage, to_stage=to_stage).inc()
        self.stage_duration.labels(stage=from_stage).observe(duration_seconds)

    def record_item_completed(self, worker_id: str) -> None:
        self.items_completed.labels(worker_id=worker_id).inc()

    def record_callback(self, outcome: str) -> None:
        self.callback_deliveries.labels(outcome=outcome).inc()

    def record_tick_error(self, worker_id: str) -> None:
        self.tick_errors.labels(worker_id=worker_id).inc()

    def record_locks_released(self, count: int) -> None:
        self.locks_released.inc(count)

    def update_queue_depth(self, depth: int) -> None:
        self.queue_depth.set(depth)


def setup_metrics(port: int | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: If given, expose the default registry over HTTP on this port.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    if port is not None:
        start_http_server(port)
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
