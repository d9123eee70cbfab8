"""
Job-related type definitions.

Job is what producers write; JobRecord is the backend-agnostic envelope that
backends persist; DeadLetterRecord is what is left of a job once it has
exhausted its retries.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar, Self
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError
from pydantic_core import PydanticSerializationError

from jobqueue.constants import (
    BACKOFF_BASE_SECONDS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_PRIORITY,
    UNDECODABLE_JOB_NAME,
    JobStatus,
)
from jobqueue.errors import SerializationError


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _as_timedelta(delay: timedelta | float) -> timedelta:
    if isinstance(delay, timedelta):
        return delay
    return timedelta(seconds=delay)


class Job(BaseModel, ABC):
    """
    Base class for units of deferred work.

    The model fields are the job payload. Subclasses implement perform()
    and may override the policy hooks. perform() can run more than once for
    the same record (at-least-once delivery) and must tolerate that.

    Example:
        @register_job
        class SendEmail(Job):
            job_name = "send_email"
            to: str

            async def perform(self) -> None:
                ...
    """

    job_name: ClassVar[str | None] = None

    @abstractmethod
    async def perform(self) -> None:
        """Execute the unit of work. Raise (usually JobError) on failure."""

    def max_retries(self) -> int:
        """Upper bound on attempts before the job is dead-lettered."""
        return DEFAULT_MAX_RETRIES

    def backoff(self, attempt: int) -> timedelta:
        """Delay before the next attempt, given the 1-based attempt number."""
        return timedelta(seconds=BACKOFF_BASE_SECONDS * 2**attempt)

    def priority(self) -> int:
        """Signed priority, higher runs first."""
        return DEFAULT_PRIORITY

    @classmethod
    def name(cls) -> str:
        """Stable identifier used to find the class again at dispatch time."""
        if cls.job_name:
            return cls.job_name
        return f"{cls.__module__}.{cls.__qualname__}"


class _StoredModel(BaseModel):
    """Helpers shared by the persisted envelopes."""

    @classmethod
    def load(cls, data: dict[str, Any] | str | bytes) -> Self:
        """
        Decode a stored envelope.

        Args:
            data: A JSON string/bytes or an already decoded mapping.

        Returns:
            The validated model.

        Raises:
            SerializationError: If the data is not a valid envelope.
        """
        try:
            if isinstance(data, (str, bytes)):
                return cls.model_validate_json(data)
            return cls.model_validate(data)
        except ValidationError as e:
            raise SerializationError(f"Invalid {cls.__name__}: {e}") from e

    def dump(self) -> dict[str, Any]:
        """Encode to a JSON-compatible mapping."""
        return self.model_dump(mode="json")


class JobRecord(_StoredModel):
    """
    Durable envelope around a job.

    attempts counts successful dequeues; max_retries and priority are
    snapshots taken when the job was wrapped.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    priority: int = DEFAULT_PRIORITY
    created_at: datetime = Field(default_factory=utcnow)
    scheduled_at: datetime | None = None
    error: str | None = None

    @classmethod
    def wrap(cls, job: Job) -> "JobRecord":
        """
        Wrap a job into a fresh pending record.

        Args:
            job: The job to wrap.

        Returns:
            A new JobRecord with attempts=0 and status PENDING.

        Raises:
            SerializationError: If the job payload cannot be encoded.
        """
        try:
            payload = job.model_dump(mode="json")
        except (PydanticSerializationError, ValueError, TypeError) as e:
            raise SerializationError(
                f"Cannot encode payload of job {job.name()}: {e}"
            ) from e

        return cls(
            name=job.name(),
            payload=payload,
            status=JobStatus.PENDING,
            attempts=0,
            max_retries=job.max_retries(),
            priority=job.priority(),
            created_at=utcnow(),
        )

    def with_delay(self, delay: timedelta | float) -> "JobRecord":
        """Return a copy that becomes eligible only after `delay`."""
        return self.model_copy(
            update={"scheduled_at": utcnow() + _as_timedelta(delay)}
        )

    def is_due(self, now: datetime | None = None) -> bool:
        """Check if the record may be handed to a worker at `now`."""
        if self.scheduled_at is None:
            return True
        return self.scheduled_at <= (now or utcnow())

    @property
    def is_retryable(self) -> bool:
        """Check if a failure should put the record back in the queue."""
        return self.attempts < self.max_retries

    def reset(self) -> "JobRecord":
        """Return a copy ready to be re-enqueued from scratch."""
        return self.model_copy(
            update={"attempts": 0, "status": JobStatus.PENDING, "error": None}
        )

    def to_dead_letter(self, error: str) -> "DeadLetterRecord":
        """Build the dead-letter entry for this record."""
        return DeadLetterRecord(
            id=self.id,
            name=self.name,
            payload=self.payload,
            attempts=self.attempts,
            max_retries=self.max_retries,
            priority=self.priority,
            created_at=self.created_at,
            error=error,
        )

    def __repr__(self) -> str:
        return (
            f"JobRecord(id={self.id}, name={self.name}, status={self.status}, "
            f"attempt={self.attempts}/{self.max_retries}, priority={self.priority})"
        )


class DeadLetterRecord(_StoredModel):
    """A job that exhausted its retries, with the last error attached."""

    id: str
    name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.FAILED
    attempts: int = Field(default=0, ge=0)
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    priority: int = DEFAULT_PRIORITY
    created_at: datetime = Field(default_factory=utcnow)
    failed_at: datetime = Field(default_factory=utcnow)
    error: str

    @classmethod
    def undecodable(cls, job_id: str, raw: Any, error: str, **fields: Any) -> Self:
        """
        Build a dead letter for a stored record that could not be decoded.

        The raw stored value is kept under payload["raw"] for inspection.

        Args:
            job_id: Id the record was stored under.
            raw: The stored value as read from the backend.
            error: The decode error.
            **fields: Column values the backend still knows (attempts, ...).
        """
        return cls(
            id=job_id,
            name=UNDECODABLE_JOB_NAME,
            payload={"raw": raw},
            error=error,
            **fields,
        )

    def to_job_record(self) -> JobRecord:
        """Build a fresh live record (attempts=0, no error) from this entry."""
        return JobRecord(
            id=self.id,
            name=self.name,
            payload=self.payload,
            status=JobStatus.PENDING,
            attempts=0,
            max_retries=self.max_retries,
            priority=self.priority,
            created_at=self.created_at,
        )


class JobResult(BaseModel):
    """
    Result of one job execution.
    Produced by the worker after running perform().
    """

    success: bool
    error: str | None = None
    duration_ms: float | None = None
