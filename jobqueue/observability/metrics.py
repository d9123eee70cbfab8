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

from jobqueue.constants import (
    METRIC_BACKEND_ERRORS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_DEQUEUED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_FINISHED,
    METRIC_JOBS_RECOVERED,
    METRIC_QUEUE_DEPTH,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue.

    Collects metrics for:
    - Queue depth by state
    - Job submissions and dequeues
    - Job outcomes and execution duration
    - Backend errors
    - Recovered (stalled) jobs
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        # Queue depth gauge (by state)
        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of records in the queue",
            ["state"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["priority"],
            registry=self._registry,
        )

        self.jobs_dequeued = Counter(
            METRIC_JOBS_DEQUEUED,
            "Total number of jobs handed to workers",
            ["worker"],
            registry=self._registry,
        )

        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of job attempts by outcome",
            ["outcome"],
            registry=self._registry,
        )

        # Job duration histogram
        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["outcome"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.backend_errors = Counter(
            METRIC_BACKEND_ERRORS,
            "Total number of backend operation failures",
            ["operation"],
            registry=self._registry,
        )

        self.jobs_recovered = Counter(
            METRIC_JOBS_RECOVERED,
            "Total number of running jobs returned to the queue after timing out",
            registry=self._registry,
        )

    def record_job_enqueued(self, priority: int) -> None:
        """Record a job submission."""
        self.jobs_enqueued.labels(priority=str(priority)).inc()

    def record_job_dequeued(self, worker: str) -> None:
        """Record a job handed to a worker."""
        self.jobs_dequeued.labels(worker=worker).inc()

    def record_job_finished(self, outcome: str, duration_seconds: float) -> None:
        """Record the outcome of one attempt."""
        self.jobs_finished.labels(outcome=outcome).inc()
        self.job_duration.labels(outcome=outcome).observe(duration_seconds)

    def record_backend_error(self, operation: str) -> None:
        """Record a failed backend operation."""
        self.backend_errors.labels(operation=operation).inc()

    def record_jobs_recovered(self, count: int) -> None:
        """Record jobs recovered by the reaper."""
        self.jobs_recovered.inc(count)

    def update_queue_depth(self, stats: dict[str, int]) -> None:
        """Update queue depth gauges from backend stats."""
        for state, count in stats.items():
            self.queue_depth.labels(state=state).set(count)


def setup_metrics(port: int | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: If given, expose metrics over HTTP on this port.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    if port is not None:
        start_http_server(port, registry=_metrics._registry)
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
