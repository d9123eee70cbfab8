"""
Job registry and dispatch.

Jobs are registered by name so that a worker can rebuild the concrete Job
from a stored record. Jobs must be idempotent - they may be executed
multiple times for the same record in case of worker crashes or network
issues.
"""

import asyncio
import logging
import time

from pydantic import ValidationError

from jobqueue.errors import JobError, SerializationError
from jobqueue.types.job import Job, JobRecord, JobResult

logger = logging.getLogger(__name__)

# Job registry
_jobs: dict[str, type[Job]] = {}


def register_job(cls: type[Job]) -> type[Job]:
    """
    Decorator to register a job class under its name.

    Args:
        cls: The Job subclass.

    Returns:
        The class, unchanged.

    Example:
        @register_job
        class SendEmail(Job):
            job_name = "send_email"
            ...
    """
    name = cls.name()
    existing = _jobs.get(name)
    if existing is not None and existing is not cls:
        logger.warning(f"Replacing job registered as {name}")
    _jobs[name] = cls
    logger.debug(f"Registered job: {name}")
    return cls


def get_job_class(name: str) -> type[Job] | None:
    """
    Get the job class registered under a name.

    Args:
        name: The job name stored on the record.

    Returns:
        The class or None if not found.
    """
    return _jobs.get(name)


def list_jobs() -> list[str]:
    """List all registered job names."""
    return list(_jobs.keys())


def decode_job(record: JobRecord) -> Job:
    """
    Rebuild the job stored in a record.

    Args:
        record: The dequeued record.

    Returns:
        An instance of the registered job class.

    Raises:
        SerializationError: If the name is unknown or the payload is invalid.
    """
    cls = get_job_class(record.name)
    if cls is None:
        raise SerializationError(f"No job registered as {record.name}")

    try:
        return cls.model_validate(record.payload)
    except ValidationError as e:
        raise SerializationError(f"Invalid payload for job {record.name}: {e}") from e


async def execute_job(job: Job, timeout: float | None = None) -> JobResult:
    """
    Run a job and capture the outcome.

    Args:
        job: The job to run.
        timeout: Seconds after which perform() is cancelled. None waits forever.

    Returns:
        JobResult; failures and timeouts are reported, never raised.
    """
    start_time = time.monotonic()

    def elapsed_ms() -> float:
        return (time.monotonic() - start_time) * 1000

    try:
        await asyncio.wait_for(job.perform(), timeout=timeout)
    except TimeoutError:
        return JobResult(
            success=False,
            error=f"Job timed out after {timeout}s",
            duration_ms=elapsed_ms(),
        )
    except JobError as e:
        return JobResult(success=False, error=str(e), duration_ms=elapsed_ms())
    except Exception as e:
        logger.exception(
            "Job raised exception",
            extra={"job_name": job.name(), "error": str(e)},
        )
        return JobResult(
            success=False,
            error=f"{type(e).__name__}: {e}",
            duration_ms=elapsed_ms(),
        )

    return JobResult(success=True, duration_ms=elapsed_ms())


# ============================================================================
# Built-in jobs
# ============================================================================


@register_job
class EchoJob(Job):
    """Echo job for testing. Logs its message."""

    job_name = "echo"

    message: str = ""

    async def perform(self) -> None:
        logger.info("Echo job executing", extra={"echo": self.message})


@register_job
class SleepJob(Job):
    """Sleep job for testing delays and timeouts."""

    job_name = "sleep"

    duration_seconds: float = 1.0

    async def perform(self) -> None:
        logger.info("Sleep job starting", extra={"duration": self.duration_seconds})
        await asyncio.sleep(self.duration_seconds)


@register_job
class FailingJob(Job):
    """
    Job that always fails - for testing retry logic.
    """

    job_name = "failing_job"

    reason: str = "Intentional failure"

    async def perform(self) -> None:
        logger.info("Failing job executing (will fail)")
        raise JobError(self.reason)
