"""
Unit tests for the in-process backend.
"""

import asyncio
from datetime import timedelta

import pytest

from jobqueue.backends.memory import MemoryBackend
from jobqueue.constants import JobStatus
from jobqueue.errors import BackendError, QueueFull
from jobqueue.types.job import utcnow


class TestMemoryBackendOrdering:
    """Tests for dequeue ordering."""

    @pytest.mark.asyncio
    async def test_priority_then_created_at(self, memory_backend: MemoryBackend, make_record):
        """Test that ties on priority fall back to creation time."""
        now = utcnow()
        old_low = make_record("old-low", priority=0, created_at=now - timedelta(seconds=3))
        new_high = make_record("new-high", priority=5, created_at=now)
        old_high = make_record("old-high", priority=5, created_at=now - timedelta(seconds=2))
        negative = make_record("negative", priority=-1, created_at=now - timedelta(seconds=9))

        for record in (old_low, new_high, negative, old_high):
            await memory_backend.enqueue(record)

        order = [(await memory_backend.dequeue()).id for _ in range(4)]

        assert order == [old_high.id, new_high.id, old_low.id, negative.id]

    @pytest.mark.asyncio
    async def test_scheduled_record_does_not_block_others(
        self, memory_backend: MemoryBackend, make_record
    ):
        """Test that a future record at the head is skipped."""
        blocked = make_record("later", priority=10).with_delay(60)
        ready = make_record("now")

        await memory_backend.enqueue(blocked)
        await memory_backend.enqueue(ready)

        assert (await memory_backend.dequeue()).id == ready.id
        assert await memory_backend.dequeue() is None


class TestMemoryBackendCapacity:
    """Tests for the optional size bound."""

    @pytest.mark.asyncio
    async def test_queue_full(self, make_record):
        """Test that enqueue fails once max_size records are live."""
        backend = MemoryBackend(max_size=2)
        await backend.enqueue(make_record())
        await backend.enqueue(make_record())

        with pytest.raises(QueueFull) as exc_info:
            await backend.enqueue(make_record())

        assert exc_info.value.max_size == 2

    @pytest.mark.asyncio
    async def test_running_records_count(self, make_record):
        """Test that dequeued but unfinished records take capacity."""
        backend = MemoryBackend(max_size=1)
        await backend.enqueue(make_record())
        record = await backend.dequeue()

        with pytest.raises(QueueFull):
            await backend.enqueue(make_record())

        await backend.complete(record.id)
        await backend.enqueue(make_record())

    @pytest.mark.asyncio
    async def test_retry_from_dead_letter_respects_capacity(self, make_record):
        """Test that reviving a dead letter can be refused."""
        backend = MemoryBackend(max_size=1)
        await backend.enqueue(make_record(max_retries=1))
        record = await backend.dequeue()
        await backend.fail(record.id, "boom")
        await backend.enqueue(make_record())

        with pytest.raises(QueueFull):
            await backend.retry_from_dead_letter(record.id)

        assert len(await backend.list_dead_letter()) == 1


class TestMemoryBackendStates:
    """Tests for state transitions specific to the in-process backend."""

    @pytest.mark.asyncio
    async def test_duplicate_id(self, memory_backend: MemoryBackend, make_record):
        """Test that an id cannot be live twice."""
        record = make_record()
        await memory_backend.enqueue(record)

        with pytest.raises(BackendError):
            await memory_backend.enqueue(record)

    @pytest.mark.asyncio
    async def test_fail_pending_record(self, memory_backend: MemoryBackend, make_record):
        """Test that only running records can fail."""
        record = make_record()
        await memory_backend.enqueue(record)

        assert await memory_backend.fail(record.id, "boom") is None
        assert (await memory_backend.stats())["pending"] == 1

    @pytest.mark.asyncio
    async def test_fail_twice(self, memory_backend: MemoryBackend, make_record):
        """Test that a second failure report for the same attempt is ignored."""
        await memory_backend.enqueue(make_record())
        record = await memory_backend.dequeue()

        assert await memory_backend.fail(record.id, "first") == JobStatus.RETRYING
        assert await memory_backend.fail(record.id, "second") is None

    @pytest.mark.asyncio
    async def test_dead_letters_newest_first(self, memory_backend: MemoryBackend, make_record):
        """Test dead letter listing order."""
        ids = []
        for name in ("a", "b"):
            await memory_backend.enqueue(make_record(name, max_retries=1))
            record = await memory_backend.dequeue()
            await memory_backend.fail(record.id, name)
            ids.append(record.id)

        dead = await memory_backend.list_dead_letter()

        assert [d.id for d in dead] == list(reversed(ids))

    @pytest.mark.asyncio
    async def test_retried_record_keeps_its_place(self, memory_backend: MemoryBackend, make_record):
        """Test that a retried record is ordered by its original creation time."""
        first = make_record("first")
        await memory_backend.enqueue(first)
        await asyncio.sleep(0.01)
        second = make_record("second")
        await memory_backend.enqueue(second)

        record = await memory_backend.dequeue()
        await memory_backend.fail(record.id, "boom")

        assert (await memory_backend.dequeue()).id == first.id
