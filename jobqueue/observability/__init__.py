"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from jobqueue.observability.logging import bind_context, setup_logging, unbind_context
from jobqueue.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from jobqueue.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "bind_context",
    "unbind_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
]
