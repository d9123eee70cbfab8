"""
Queue backend interface.

A backend owns the durable storage of the live queue and the dead-letter
store and is the only place where synchronization between workers happens.
"""

from abc import ABC, abstractmethod
from datetime import timedelta

from jobqueue.constants import JobStatus
from jobqueue.types.job import DeadLetterRecord, JobRecord


class QueueBackend(ABC):
    """
    Storage abstraction behind the Queue facade.

    Implementations must make dequeue() exclusive: two concurrent callers
    never receive the same record.
    """

    @abstractmethod
    async def enqueue(self, record: JobRecord) -> None:
        """
        Insert a record with status PENDING.

        Raises:
            QueueFull: If the backend is bounded and at capacity.
            BackendError: On storage failure.
        """

    @abstractmethod
    async def dequeue(self) -> JobRecord | None:
        """
        Claim the next eligible record.

        Picks a PENDING record whose scheduled_at is absent or in the past,
        marks it RUNNING and increments attempts, atomically.

        Returns:
            The claimed record, or None if nothing is eligible.
        """

    @abstractmethod
    async def complete(self, job_id: str) -> bool:
        """
        Remove a finished record from the live store.

        Returns:
            True if the record was removed, False if the id was unknown.
        """

    @abstractmethod
    async def fail(
        self,
        job_id: str,
        error: str,
        delay: timedelta | None = None,
    ) -> JobStatus | None:
        """
        Report a failed attempt.

        Args:
            job_id: The record id.
            error: Failure reason.
            delay: Backoff before the record becomes eligible again.

        Returns:
            RETRYING if the record went back to the queue, FAILED if it was
            moved to the dead-letter store, None if the id was unknown.
        """

    @abstractmethod
    async def retry(self, record: JobRecord) -> None:
        """Re-enqueue a record from scratch (attempts=0, no error)."""

    @abstractmethod
    async def move_to_dead_letter(self, record: JobRecord) -> None:
        """Move a record to the dead-letter store using record.error."""

    @abstractmethod
    async def list_dead_letter(self) -> list[DeadLetterRecord]:
        """List dead letters, most recently failed first."""

    @abstractmethod
    async def retry_from_dead_letter(self, job_id: str) -> JobRecord | None:
        """
        Move a dead letter back into the live queue as a fresh record.

        Returns:
            The re-enqueued record, or None if the id is not dead-lettered.
        """

    @abstractmethod
    async def recover_expired(self, visibility_timeout: timedelta) -> int:
        """
        Return records running for longer than the timeout to PENDING.

        Returns:
            Number of recovered records.
        """

    @abstractmethod
    async def stats(self) -> dict[str, int]:
        """Counts of pending, scheduled, running and dead_letter records."""

    async def close(self) -> None:
        """Release backend resources."""
