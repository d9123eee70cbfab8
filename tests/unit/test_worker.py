"""
Unit tests for the worker pool.
"""

import asyncio
import signal
from collections import Counter
from datetime import timedelta

import pytest

from jobqueue.backends.memory import MemoryBackend
from jobqueue.errors import BackendError, JobError
from jobqueue.queue import Queue
from jobqueue.types.job import Job, JobRecord, utcnow
from jobqueue.worker.handlers import register_job
from jobqueue.worker.main import WorkerPool, install_signal_handlers

performed: list[str] = []
calls: Counter = Counter()


@register_job
class CountingJob(Job):
    job_name = "test_worker.counting"

    key: str

    async def perform(self) -> None:
        performed.append(self.key)


@register_job
class FlakyJob(Job):
    """Fails the first `failures` times it runs."""

    job_name = "test_worker.flaky"

    key: str
    failures: int = 1

    def backoff(self, attempt: int) -> timedelta:
        return timedelta(0)

    async def perform(self) -> None:
        calls[self.key] += 1
        if calls[self.key] <= self.failures:
            raise JobError(f"failure {calls[self.key]}")
        performed.append(self.key)


@register_job
class HopelessJob(Job):
    job_name = "test_worker.hopeless"

    def max_retries(self) -> int:
        return 2

    def backoff(self, attempt: int) -> timedelta:
        return timedelta(0)

    async def perform(self) -> None:
        raise JobError("never works")


@register_job
class DefaultBackoffJob(Job):
    job_name = "test_worker.default_backoff"

    async def perform(self) -> None:
        raise JobError("later")


@register_job
class SlowJob(Job):
    job_name = "test_worker.slow"

    key: str
    duration_seconds: float = 0.2

    async def perform(self) -> None:
        await asyncio.sleep(self.duration_seconds)
        performed.append(self.key)


class FlakyBackend(MemoryBackend):
    """In-process backend whose operations can be made to fail."""

    def __init__(self, failing: set[str]):
        super().__init__()
        self.failing = failing

    async def dequeue(self) -> JobRecord | None:
        if "dequeue" in self.failing:
            self.failing.discard("dequeue")
            raise BackendError("connection lost")
        return await super().dequeue()

    async def complete(self, job_id: str) -> bool:
        if "complete" in self.failing:
            raise BackendError("connection lost")
        return await super().complete(job_id)


@pytest.fixture(autouse=True)
def reset_jobs():
    """Clear job side effects between tests."""
    performed.clear()
    calls.clear()


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    async def poll():
        while not await predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=timeout)


class TestRunOnce:
    """Tests for processing a single record."""

    @pytest.mark.asyncio
    async def test_empty_queue(self, queue: Queue):
        """Test run_once on an empty queue."""
        pool = WorkerPool(queue, worker_count=1)
        assert await pool.run_once() is False

    @pytest.mark.asyncio
    async def test_success_completes(self, queue: Queue):
        """Test that a successful job is completed."""
        await queue.push(CountingJob(key="a"))
        pool = WorkerPool(queue, worker_count=1)

        assert await pool.run_once() is True

        assert performed == ["a"]
        stats = await queue.stats()
        assert stats["pending"] == 0
        assert stats["running"] == 0

    @pytest.mark.asyncio
    async def test_failure_applies_backoff(self, queue: Queue):
        """Test that a failed job is rescheduled with the job's backoff."""
        await queue.push(DefaultBackoffJob())
        pool = WorkerPool(queue, worker_count=1)

        before = utcnow()
        assert await pool.run_once() is True
        assert await pool.run_once() is False

        stats = await queue.stats()
        assert stats["scheduled"] == 1
        assert stats["dead_letter"] == 0

        # First attempt backs off 60 * 2**1 seconds
        retried = queue.backend._pending[0]
        assert retried.attempts == 1
        assert retried.scheduled_at >= before + timedelta(seconds=120)

    @pytest.mark.asyncio
    async def test_retry_then_succeed(self, queue: Queue):
        """Test that a flaky job succeeds on its second attempt."""
        await queue.push(FlakyJob(key="a", failures=1))
        pool = WorkerPool(queue, worker_count=1)

        assert await pool.run_once() is True
        assert performed == []

        assert await pool.run_once() is True
        assert performed == ["a"]
        assert calls["a"] == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, queue: Queue):
        """Test that a job is dead-lettered after its last attempt."""
        job_id = await queue.push(HopelessJob())
        pool = WorkerPool(queue, worker_count=1)

        assert await pool.run_once() is True
        assert await pool.run_once() is True
        assert await pool.run_once() is False

        dead = await queue.list_dead_letter()
        assert [d.id for d in dead] == [job_id]
        assert dead[0].error == "never works"
        assert dead[0].attempts == 2

    @pytest.mark.asyncio
    async def test_unknown_job_fails(self, queue: Queue):
        """Test that a record no job class can decode is reported as failed."""
        await queue.enqueue(JobRecord(name="test_worker.missing", max_retries=1))
        pool = WorkerPool(queue, worker_count=1)

        assert await pool.run_once() is True

        dead = await queue.list_dead_letter()
        assert "No job registered" in dead[0].error

    @pytest.mark.asyncio
    async def test_job_timeout(self, queue: Queue):
        """Test that a job running past job_timeout fails."""
        record = JobRecord.wrap(SlowJob(key="a", duration_seconds=5))
        await queue.enqueue(record.model_copy(update={"max_retries": 1}))
        pool = WorkerPool(queue, worker_count=1, job_timeout=0.05)

        assert await pool.run_once() is True

        assert performed == []
        dead = await queue.list_dead_letter()
        assert "timed out" in dead[0].error

    @pytest.mark.asyncio
    async def test_dequeue_error_is_not_raised(self):
        """Test that a backend error on dequeue is absorbed."""
        queue = Queue(FlakyBackend({"dequeue"}))
        await queue.push(CountingJob(key="a"))
        pool = WorkerPool(queue, worker_count=1)

        assert await pool.run_once() is False
        assert await pool.run_once() is True
        assert performed == ["a"]

    @pytest.mark.asyncio
    async def test_report_error_leaves_record_running(self):
        """Test that a failed completion report leaves the record for the reaper."""
        queue = Queue(FlakyBackend({"complete"}))
        await queue.push(CountingJob(key="a"))
        pool = WorkerPool(queue, worker_count=1)

        assert await pool.run_once() is True

        assert performed == ["a"]
        assert (await queue.stats())["running"] == 1


class TestWorkerPool:
    """Tests for the long-running pool."""

    def test_requires_a_worker(self, queue: Queue):
        """Test that an empty pool is rejected."""
        with pytest.raises(ValueError):
            WorkerPool(queue, worker_count=0)

    @pytest.mark.asyncio
    async def test_processes_all_jobs(self, queue: Queue):
        """Test that concurrent workers process every job exactly once."""
        for i in range(20):
            await queue.push(CountingJob(key=str(i)))

        pool = WorkerPool(queue, worker_count=4, poll_interval=0.01)
        task = asyncio.create_task(pool.start())

        async def all_done() -> bool:
            return len(performed) == 20

        await _wait_for(all_done)
        await pool.stop()
        await asyncio.wait_for(task, timeout=5)

        assert sorted(performed) == sorted(str(i) for i in range(20))
        assert not pool.running

    @pytest.mark.asyncio
    async def test_picks_up_jobs_pushed_later(self, queue: Queue):
        """Test that idle workers poll for new work."""
        pool = WorkerPool(queue, worker_count=2, poll_interval=0.01)
        task = asyncio.create_task(pool.start())

        await asyncio.sleep(0.05)
        await queue.push(CountingJob(key="late"))

        async def done() -> bool:
            return performed == ["late"]

        await _wait_for(done)
        await pool.stop()
        await asyncio.wait_for(task, timeout=5)

    @pytest.mark.asyncio
    async def test_stop_drains_in_flight_job(self, queue: Queue):
        """Test that stop() lets a running job finish."""
        await queue.push(SlowJob(key="slow", duration_seconds=0.2))
        pool = WorkerPool(queue, worker_count=1, poll_interval=0.01, shutdown_timeout=5)
        task = asyncio.create_task(pool.start())

        async def running() -> bool:
            return (await queue.stats())["running"] == 1

        await _wait_for(running)
        await pool.stop()
        await asyncio.wait_for(task, timeout=5)

        assert performed == ["slow"]
        stats = await queue.stats()
        assert stats["running"] == 0
        assert stats["pending"] == 0

    @pytest.mark.asyncio
    async def test_shutdown_timeout_cancels_job(self, queue: Queue):
        """Test that a job outliving shutdown_timeout is cancelled and failed."""
        await queue.push(SlowJob(key="stuck", duration_seconds=30))
        pool = WorkerPool(queue, worker_count=1, poll_interval=0.01, shutdown_timeout=0.05)
        task = asyncio.create_task(pool.start())

        async def running() -> bool:
            return (await queue.stats())["running"] == 1

        await _wait_for(running)
        await pool.stop()
        await asyncio.wait_for(task, timeout=5)

        assert performed == []
        stats = await queue.stats()
        assert stats["running"] == 0
        assert stats["pending"] == 1

    @pytest.mark.asyncio
    async def test_start_twice(self, queue: Queue):
        """Test that a running pool cannot be started again."""
        pool = WorkerPool(queue, worker_count=1, poll_interval=0.01)
        task = asyncio.create_task(pool.start())
        await asyncio.sleep(0.02)

        with pytest.raises(RuntimeError):
            await pool.start()

        await pool.stop()
        await asyncio.wait_for(task, timeout=5)


class RecordingLoop:
    """Event loop stand-in that records signal handlers."""

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self._loop = loop
        self.handlers = {}

    def add_signal_handler(self, sig, callback) -> None:
        self.handlers[sig] = callback

    def create_task(self, coro) -> asyncio.Task:
        return self._loop.create_task(coro)


class TestSignalHandlers:
    """Tests for shutdown on SIGTERM/SIGINT."""

    @pytest.mark.asyncio
    async def test_shutdown_task_is_held_until_done(self):
        """Test that a signal starts shutdown and keeps its task referenced."""
        calls_made = []

        async def shutdown() -> None:
            await asyncio.sleep(0.01)
            calls_made.append("shutdown")

        loop = RecordingLoop(asyncio.get_running_loop())
        tasks = install_signal_handlers(loop, shutdown)

        assert set(loop.handlers) == {signal.SIGTERM, signal.SIGINT}

        loop.handlers[signal.SIGTERM]()
        assert len(tasks) == 1

        await asyncio.wait_for(next(iter(tasks)), timeout=5)
        await asyncio.sleep(0)

        assert calls_made == ["shutdown"]
        assert tasks == set()
