"""
In-process queue backend.

All state lives in this process behind a single asyncio lock, so it is only
suitable for one process (tests, development, embedded use).
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta

from jobqueue.backends.base import QueueBackend
from jobqueue.constants import UNKNOWN_ERROR, JobStatus
from jobqueue.errors import BackendError, QueueFull
from jobqueue.types.job import DeadLetterRecord, JobRecord, utcnow

logger = logging.getLogger(__name__)


@dataclass
class _InFlight:
    """A dequeued record and the time it was handed out."""

    record: JobRecord
    started_at: datetime


class MemoryBackend(QueueBackend):
    """
    Mutex-guarded in-memory backend.

    Pending records are kept sorted by priority (descending) then created_at
    (ascending), so dequeue takes the first due record in list order.
    Records handed to workers are tracked until complete() or fail().
    """

    def __init__(self, max_size: int | None = None):
        """
        Initialize the backend.

        Args:
            max_size: Optional cap on pending + running records. enqueue()
                raises QueueFull once it is reached.
        """
        self._max_size = max_size
        self._lock = asyncio.Lock()
        self._pending: list[JobRecord] = []
        self._in_flight: dict[str, _InFlight] = {}
        self._dead: OrderedDict[str, DeadLetterRecord] = OrderedDict()

    # Helpers below assume the lock is held.

    def _live_size(self) -> int:
        return len(self._pending) + len(self._in_flight)

    def _check_capacity(self) -> None:
        if self._max_size is not None and self._live_size() >= self._max_size:
            raise QueueFull(self._max_size)

    def _contains(self, job_id: str) -> bool:
        return job_id in self._in_flight or any(r.id == job_id for r in self._pending)

    def _insert(self, record: JobRecord) -> None:
        pos = len(self._pending)
        for i, queued in enumerate(self._pending):
            if queued.priority < record.priority or (
                queued.priority == record.priority
                and queued.created_at > record.created_at
            ):
                pos = i
                break
        self._pending.insert(pos, record.model_copy(update={"status": JobStatus.PENDING}))

    def _remove(self, job_id: str) -> JobRecord | None:
        entry = self._in_flight.pop(job_id, None)
        if entry is not None:
            return entry.record
        for i, queued in enumerate(self._pending):
            if queued.id == job_id:
                return self._pending.pop(i)
        return None

    async def enqueue(self, record: JobRecord) -> None:
        async with self._lock:
            if self._contains(record.id):
                raise BackendError(f"Job {record.id} is already queued")
            self._check_capacity()
            self._insert(record)

        logger.debug("Enqueued job", extra={"job_id": record.id, "priority": record.priority})

    async def dequeue(self) -> JobRecord | None:
        async with self._lock:
            now = utcnow()
            for i, queued in enumerate(self._pending):
                if queued.status == JobStatus.PENDING and queued.is_due(now):
                    del self._pending[i]
                    record = queued.model_copy(
                        update={
                            "status": JobStatus.RUNNING,
                            "attempts": queued.attempts + 1,
                        }
                    )
                    self._in_flight[record.id] = _InFlight(record=record, started_at=now)
                    return record
        return None

    async def complete(self, job_id: str) -> bool:
        async with self._lock:
            removed = self._remove(job_id)

        if removed is None:
            logger.warning("Complete called for unknown job", extra={"job_id": job_id})
            return False
        return True

    async def fail(
        self,
        job_id: str,
        error: str,
        delay: timedelta | None = None,
    ) -> JobStatus | None:
        async with self._lock:
            entry = self._in_flight.pop(job_id, None)
            if entry is None:
                logger.warning("Fail called for job that is not running", extra={"job_id": job_id})
                return None

            record = entry.record
            if record.is_retryable:
                scheduled_at = utcnow() + delay if delay else None
                self._insert(record.model_copy(update={"scheduled_at": scheduled_at}))
                outcome = JobStatus.RETRYING
            else:
                self._dead[job_id] = record.to_dead_letter(error)
                outcome = JobStatus.FAILED

        if outcome == JobStatus.FAILED:
            logger.warning(
                f"Job moved to dead letter after {record.attempts} attempts",
                extra={"job_id": job_id, "error": error},
            )
        else:
            logger.info("Job queued for retry", extra={"job_id": job_id, "attempt": record.attempts})
        return outcome

    async def retry(self, record: JobRecord) -> None:
        async with self._lock:
            self._remove(record.id)
            self._check_capacity()
            self._insert(record.reset())

    async def move_to_dead_letter(self, record: JobRecord) -> None:
        async with self._lock:
            self._remove(record.id)
            self._dead[record.id] = record.to_dead_letter(record.error or UNKNOWN_ERROR)
            self._dead.move_to_end(record.id)

    async def list_dead_letter(self) -> list[DeadLetterRecord]:
        async with self._lock:
            return list(reversed(self._dead.values()))

    async def retry_from_dead_letter(self, job_id: str) -> JobRecord | None:
        async with self._lock:
            if job_id not in self._dead:
                return None
            self._check_capacity()
            record = self._dead.pop(job_id).to_job_record()
            self._insert(record)

        logger.info("Job retried from dead letter", extra={"job_id": job_id})
        return record

    async def recover_expired(self, visibility_timeout: timedelta) -> int:
        async with self._lock:
            deadline = utcnow() - visibility_timeout
            expired = [
                job_id
                for job_id, entry in self._in_flight.items()
                if entry.started_at < deadline
            ]
            for job_id in expired:
                entry = self._in_flight.pop(job_id)
                self._insert(entry.record)

        if expired:
            logger.info(f"Recovered {len(expired)} jobs with expired visibility timeout")
        return len(expired)

    async def stats(self) -> dict[str, int]:
        async with self._lock:
            now = utcnow()
            due = sum(1 for r in self._pending if r.is_due(now))
            return {
                "pending": due,
                "scheduled": len(self._pending) - due,
                "running": len(self._in_flight),
                "dead_letter": len(self._dead),
            }
