"""
Queue facade.

Producers and workers talk to a Queue; the Queue delegates every operation
to the one backend it owns.
"""

import logging
from datetime import timedelta

from jobqueue.backends.base import QueueBackend
from jobqueue.backends.memory import MemoryBackend
from jobqueue.constants import JobStatus
from jobqueue.observability.metrics import get_metrics
from jobqueue.types.job import DeadLetterRecord, Job, JobRecord

logger = logging.getLogger(__name__)


class Queue:
    """Job lifecycle API over a single backend."""

    def __init__(self, backend: QueueBackend):
        self._backend = backend

    @classmethod
    def memory(cls, max_size: int | None = None) -> "Queue":
        """Create a queue on a fresh in-process backend."""
        return cls(MemoryBackend(max_size=max_size))

    @property
    def backend(self) -> QueueBackend:
        return self._backend

    async def enqueue(self, record: JobRecord) -> str:
        """
        Store a record in the queue.

        Args:
            record: The record to enqueue, usually from JobRecord.wrap().

        Returns:
            The record id.

        Raises:
            QueueFull: If the backend is bounded and at capacity.
            BackendError: On storage failure.
        """
        await self._backend.enqueue(record)
        get_metrics().record_job_enqueued(record.priority)
        logger.info(
            "Job enqueued",
            extra={
                "job_id": record.id,
                "job_name": record.name,
                "priority": record.priority,
                "scheduled_at": record.scheduled_at.isoformat() if record.scheduled_at else None,
            },
        )
        return record.id

    async def push(self, job: Job, delay: timedelta | float | None = None) -> str:
        """Wrap a job, optionally delay it, and enqueue it."""
        record = JobRecord.wrap(job)
        if delay is not None:
            record = record.with_delay(delay)
        return await self.enqueue(record)

    async def dequeue(self) -> JobRecord | None:
        return await self._backend.dequeue()

    async def complete(self, job_id: str) -> bool:
        return await self._backend.complete(job_id)

    async def fail(
        self,
        job_id: str,
        error: str,
        delay: timedelta | None = None,
    ) -> JobStatus | None:
        return await self._backend.fail(job_id, error, delay=delay)

    async def retry(self, record: JobRecord) -> None:
        await self._backend.retry(record)

    async def move_to_dead_letter(self, record: JobRecord) -> None:
        await self._backend.move_to_dead_letter(record)

    async def list_dead_letter(self) -> list[DeadLetterRecord]:
        return await self._backend.list_dead_letter()

    async def retry_from_dead_letter(self, job_id: str) -> JobRecord | None:
        return await self._backend.retry_from_dead_letter(job_id)

    async def recover_expired(self, visibility_timeout: timedelta) -> int:
        return await self._backend.recover_expired(visibility_timeout)

    async def stats(self) -> dict[str, int]:
        return await self._backend.stats()

    async def close(self) -> None:
        await self._backend.close()
