"""
Worker pool for executing jobs.

Each worker pulls records from the queue, runs the job, and reports the
outcome back so the backend can complete, retry or dead-letter the record.
"""

import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable
from datetime import timedelta

from opentelemetry.trace import Status, StatusCode

from jobqueue.backends import create_backend
from jobqueue.config import Settings, get_settings
from jobqueue.constants import (
    OUTCOME_COMPLETED,
    OUTCOME_DEAD_LETTER,
    OUTCOME_RETRYING,
    SPAN_EXECUTE_JOB,
    SPAN_REPORT_JOB,
    UNKNOWN_ERROR,
    JobStatus,
)
from jobqueue.db import close_db
from jobqueue.errors import QueueError, SerializationError
from jobqueue.observability.logging import bind_context, setup_logging, unbind_context
from jobqueue.observability.metrics import get_metrics, setup_metrics
from jobqueue.observability.tracing import get_tracer, instrument_sqlalchemy, setup_tracing
from jobqueue.queue import Queue
from jobqueue.reaper.main import Reaper
from jobqueue.types.job import JobRecord, JobResult
from jobqueue.worker.handlers import decode_job, execute_job

logger = logging.getLogger(__name__)

_CONTEXT_KEYS = ("job_id", "job_name", "attempt", "worker")


class WorkerPool:
    """
    Pool of asyncio workers sharing one queue.

    Features:
    - N concurrent workers, each running at most one job at a time
    - Exponential backoff through the job's backoff() policy
    - Optional per-job timeout
    - Graceful shutdown: in-flight jobs are drained, then cancelled
      after shutdown_timeout and reported as failures
    """

    def __init__(
        self,
        queue: Queue,
        worker_count: int = 4,
        poll_interval: float = 1.0,
        job_timeout: float | None = None,
        shutdown_timeout: float = 30.0,
        name: str = "worker",
    ):
        """
        Initialize the pool.

        Args:
            queue: The queue to consume.
            worker_count: Number of concurrent workers.
            poll_interval: Seconds to wait when the queue is empty or failing.
            job_timeout: Seconds after which a running job is cancelled.
                None lets jobs run forever.
            shutdown_timeout: Seconds to wait for in-flight jobs on stop().
            name: Prefix of the worker names used in logs and metrics.
        """
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")

        self.queue = queue
        self.worker_count = worker_count
        self.poll_interval = poll_interval
        self.job_timeout = job_timeout
        self.shutdown_timeout = shutdown_timeout
        self.name = name

        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._metrics = get_metrics()

    @classmethod
    def from_settings(cls, queue: Queue, settings: Settings | None = None) -> "WorkerPool":
        """Build a pool configured from settings."""
        settings = settings or get_settings()
        return cls(
            queue,
            worker_count=settings.worker_count,
            poll_interval=settings.worker_poll_interval_seconds,
            job_timeout=settings.worker_job_timeout_seconds,
            shutdown_timeout=settings.worker_shutdown_timeout_seconds,
        )

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        """
        Start the workers and wait until they have all stopped.

        Returns once stop() was called and every in-flight job was drained
        (or cancelled after shutdown_timeout).
        """
        if self.running:
            raise RuntimeError("Worker pool already started")

        logger.info(
            "Worker pool starting",
            extra={"workers": self.worker_count, "job_timeout": self.job_timeout},
        )

        self._stop_event.clear()
        self._tasks = [
            asyncio.create_task(self._worker_loop(f"{self.name}-{i}"))
            for i in range(self.worker_count)
        ]

        try:
            await self._stop_event.wait()
            await self._drain()
        finally:
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)

        logger.info("Worker pool stopped")

    async def stop(self) -> None:
        """Ask every worker to stop after its current job."""
        if not self._stop_event.is_set():
            logger.info("Worker pool stopping")
        self._stop_event.set()

    async def run_once(self) -> bool:
        """
        Process at most one record (for testing or cron-style execution).

        Returns:
            True if a record was dequeued and processed.
        """
        worker = f"{self.name}-once"
        record = await self._next_record(worker)
        if record is None:
            return False
        await self._process(record, worker)
        return True

    async def _drain(self) -> None:
        pending = [task for task in self._tasks if not task.done()]
        if not pending:
            return

        logger.info(f"Waiting for {len(pending)} workers to finish their jobs")
        _, still_running = await asyncio.wait(pending, timeout=self.shutdown_timeout)

        if still_running:
            logger.warning(
                f"Cancelling {len(still_running)} jobs still running after shutdown timeout",
                extra={"shutdown_timeout": self.shutdown_timeout},
            )
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)

    async def _worker_loop(self, worker: str) -> None:
        logger.debug("Worker started", extra={"worker": worker})

        while not self._stop_event.is_set():
            try:
                record = await self._next_record(worker)
                if record is not None:
                    await self._process(record, worker)
                    continue
            except Exception as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker": worker},
                )

            await self._idle()

        logger.debug("Worker stopped", extra={"worker": worker})

    async def _idle(self) -> None:
        """Wait poll_interval, waking up early on stop()."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
        except TimeoutError:
            pass

    async def _next_record(self, worker: str) -> JobRecord | None:
        try:
            record = await self.queue.dequeue()
        except QueueError as e:
            logger.warning(
                f"Dequeue failed: {e}",
                extra={"worker": worker},
            )
            self._metrics.record_backend_error("dequeue")
            return None

        if record is not None:
            self._metrics.record_job_dequeued(worker)
        return record

    async def _process(self, record: JobRecord, worker: str) -> None:
        """
        Execute one dequeued record and report its outcome.

        Args:
            record: The record, already marked running by the backend.
            worker: Name of the worker running it.
        """
        bind_context(
            job_id=record.id,
            job_name=record.name,
            attempt=record.attempts,
            worker=worker,
        )
        try:
            try:
                job = decode_job(record)
            except SerializationError as e:
                logger.error(f"Cannot decode job: {e}")
                await self._report(record, JobResult(success=False, error=str(e)), None)
                return

            logger.info("Executing job", extra={"priority": record.priority})

            try:
                with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                    span.set_attribute("job.id", record.id)
                    span.set_attribute("job.name", record.name)
                    span.set_attribute("job.attempt", record.attempts)

                    result = await execute_job(job, timeout=self.job_timeout)

                    if not result.success:
                        span.set_status(Status(StatusCode.ERROR, result.error))
            except asyncio.CancelledError:
                await self._report(
                    record,
                    JobResult(success=False, error="Worker shut down before the job finished"),
                    None,
                )
                raise

            delay = None if result.success else job.backoff(record.attempts)
            await self._report(record, result, delay)
        finally:
            unbind_context(*_CONTEXT_KEYS)

    async def _report(
        self,
        record: JobRecord,
        result: JobResult,
        delay: timedelta | None,
    ) -> None:
        """
        Report an execution result to the queue.

        Reporting errors are logged and swallowed; the reaper returns the
        record to the queue once its visibility timeout expires.
        """
        duration_seconds = (result.duration_ms or 0.0) / 1000

        with get_tracer().start_as_current_span(SPAN_REPORT_JOB) as span:
            span.set_attribute("job.id", record.id)
            span.set_attribute("job.success", result.success)

            try:
                if result.success:
                    acknowledged = await self.queue.complete(record.id)
                    if not acknowledged:
                        logger.warning("Completed job was no longer running")
                    logger.info(
                        "Job completed successfully",
                        extra={"duration": f"{duration_seconds:.2f}s"},
                    )
                    self._metrics.record_job_finished(OUTCOME_COMPLETED, duration_seconds)
                    return

                error = result.error or UNKNOWN_ERROR
                status = await self.queue.fail(record.id, error, delay=delay)
            except QueueError as e:
                operation = "complete" if result.success else "fail"
                logger.error(
                    f"Failed to report job outcome: {e}",
                    extra={"operation": operation},
                )
                self._metrics.record_backend_error(operation)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                return

        if status == JobStatus.RETRYING:
            logger.warning(
                "Job failed, will retry",
                extra={
                    "error": error,
                    "retry_in": delay.total_seconds() if delay else 0,
                },
            )
            self._metrics.record_job_finished(OUTCOME_RETRYING, duration_seconds)
        elif status == JobStatus.FAILED:
            logger.error(
                "Job failed permanently, moved to dead letter queue",
                extra={"error": error, "max_retries": record.max_retries},
            )
            self._metrics.record_job_finished(OUTCOME_DEAD_LETTER, duration_seconds)
        else:
            logger.warning("Failed job was no longer running", extra={"error": error})


def install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    shutdown: Callable[[], Awaitable[None]],
) -> set[asyncio.Task]:
    """
    Run `shutdown` on SIGTERM/SIGINT.

    Returns:
        The set holding shutdown tasks until they finish.
    """
    tasks: set[asyncio.Task] = set()

    def handle_signal() -> None:
        task = loop.create_task(shutdown())
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal)

    return tasks


async def run_async() -> None:
    """Run the worker pool and the reaper until SIGTERM/SIGINT."""
    settings = get_settings()

    setup_logging()
    setup_metrics(settings.prometheus_port)
    if settings.otel_exporter_otlp_endpoint:
        setup_tracing()

    backend = await create_backend(settings)
    if settings.queue_backend == "postgres" and settings.otel_exporter_otlp_endpoint:
        from jobqueue.db import get_engine

        instrument_sqlalchemy(get_engine())

    queue = Queue(backend)
    pool = WorkerPool.from_settings(queue, settings)
    reaper = Reaper(
        queue,
        interval_seconds=settings.reaper_interval_seconds,
        visibility_timeout_seconds=settings.visibility_timeout_seconds,
    )

    async def shutdown() -> None:
        await reaper.stop()
        await pool.stop()

    install_signal_handlers(asyncio.get_running_loop(), shutdown)

    try:
        await asyncio.gather(pool.start(), reaper.start())
    finally:
        await queue.close()
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
