"""
Unit tests for the Queue facade and backend selection.
"""

import pytest
from prometheus_client import REGISTRY

from jobqueue.backends import create_backend
from jobqueue.backends.memory import MemoryBackend
from jobqueue.config import Settings
from jobqueue.constants import JobStatus
from jobqueue.errors import QueueFull
from jobqueue.queue import Queue
from jobqueue.types.job import JobRecord
from jobqueue.worker.handlers import EchoJob, decode_job


def _enqueued_count(priority: int) -> float:
    value = REGISTRY.get_sample_value(
        "jobqueue_jobs_enqueued_total", {"priority": str(priority)}
    )
    return value or 0.0


class TestQueue:
    """Tests for Queue."""

    @pytest.mark.asyncio
    async def test_push(self, queue: Queue):
        """Test pushing a job."""
        job_id = await queue.push(EchoJob(message="hi"))

        record = await queue.dequeue()

        assert record.id == job_id
        assert decode_job(record) == EchoJob(message="hi")

    @pytest.mark.asyncio
    async def test_push_with_delay(self, queue: Queue):
        """Test pushing a delayed job."""
        await queue.push(EchoJob(), delay=60)

        assert await queue.dequeue() is None
        assert (await queue.stats())["scheduled"] == 1

    @pytest.mark.asyncio
    async def test_enqueue_returns_id(self, queue: Queue):
        """Test that enqueue returns the record id."""
        record = JobRecord.wrap(EchoJob())
        assert await queue.enqueue(record) == record.id

    @pytest.mark.asyncio
    async def test_enqueue_counts_submissions(self, queue: Queue, make_record):
        """Test the submission counter."""
        before = _enqueued_count(42)

        await queue.enqueue(make_record(priority=42))

        assert _enqueued_count(42) == before + 1

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, queue: Queue):
        """Test push -> dequeue -> fail -> dead letter -> retry -> complete."""
        await queue.enqueue(JobRecord.wrap(EchoJob()).model_copy(update={"max_retries": 1}))

        record = await queue.dequeue()
        assert await queue.fail(record.id, "boom") == JobStatus.FAILED

        dead = await queue.list_dead_letter()
        assert dead[0].error == "boom"

        await queue.retry_from_dead_letter(record.id)
        record = await queue.dequeue()
        assert await queue.complete(record.id) is True

        assert await queue.stats() == {
            "pending": 0,
            "scheduled": 0,
            "running": 0,
            "dead_letter": 0,
        }

    @pytest.mark.asyncio
    async def test_memory_constructor(self):
        """Test the in-process shortcut with a bound."""
        queue = Queue.memory(max_size=1)
        await queue.push(EchoJob())

        assert isinstance(queue.backend, MemoryBackend)
        with pytest.raises(QueueFull):
            await queue.push(EchoJob())

        await queue.close()


class TestCreateBackend:
    """Tests for backend selection from settings."""

    @pytest.mark.asyncio
    async def test_memory_backend(self):
        """Test building the in-process backend."""
        settings = Settings(queue_backend="memory", memory_queue_max_size=5)

        backend = await create_backend(settings)

        assert isinstance(backend, MemoryBackend)
        assert backend._max_size == 5

    @pytest.mark.asyncio
    async def test_redis_backend(self):
        """Test building the redis backend (no connection is made)."""
        from jobqueue.backends.redis import RedisBackend

        settings = Settings(queue_backend="redis", redis_queue_key="custom")

        backend = await create_backend(settings)

        assert isinstance(backend, RedisBackend)
        assert backend._key == "custom"
        await backend.close()

    def test_invalid_backend(self):
        """Test that unknown backends are rejected by settings."""
        with pytest.raises(ValueError):
            Settings(queue_backend="kafka")
