"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from prodline.observability.logging import bind_worker_context, setup_logging
from prodline.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from prodline.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "bind_worker_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
]
