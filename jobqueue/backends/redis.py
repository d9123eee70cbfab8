"""
Redis queue backend.

Stores the queue in Redis lists, hashes and sorted sets. Ordering is FIFO by
the time a record became eligible: priority is NOT enforced by this backend.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import timedelta

import redis.asyncio as redis
from redis.asyncio.client import Pipeline
from redis.exceptions import RedisError

from jobqueue.backends.base import QueueBackend
from jobqueue.constants import UNKNOWN_ERROR, JobStatus
from jobqueue.errors import BackendError, SerializationError
from jobqueue.types.job import DeadLetterRecord, JobRecord, utcnow

logger = logging.getLogger(__name__)

# KEYS[1]=pending, KEYS[2]=processing, KEYS[3]=leases; ARGV[1]=now
_CLAIM_LUA = """
local job_id = redis.call('LMOVE', KEYS[1], KEYS[2], 'RIGHT', 'LEFT')
if not job_id then
  return nil
end
redis.call('ZADD', KEYS[3], ARGV[1], job_id)
return job_id
"""


class RedisBackend(QueueBackend):
    """
    List-store backend on Redis.

    Key layout (all under `key`):
    - `{key}`             list of pending ids (LPUSH in, LMOVE out)
    - `{key}:processing`  ids handed to workers and not yet finalized
    - `{key}:jobs`        hash id -> JobRecord JSON
    - `{key}:scheduled`   sorted set id -> due timestamp
    - `{key}:leases`      sorted set id -> dequeue timestamp
    - `{key}:dlq`         hash id -> DeadLetterRecord JSON

    A Lua script moves an id to the processing list and leases it in one
    step, so only one consumer can pop a given id and every processing id has
    a lease. Popped ids stay in the processing list until complete() or
    fail(). recover_expired() requeues ids whose lease is older than the
    visibility timeout, so a crashed worker does not lose its job. A stored
    record that cannot be decoded is moved to the dead letters. Wherever two actors could race for the same
    id (promotion, failure, recovery, dead-letter retry) the single command
    that removes it (ZREM, LREM, HDEL) decides the winner.
    """

    def __init__(self, client: redis.Redis, key: str = "jobqueue"):
        """
        Initialize the backend.

        Args:
            client: Redis client created with decode_responses=True.
            key: Prefix for all keys used by this queue.
        """
        self._redis = client
        self._key = key
        self._processing = f"{key}:processing"
        self._jobs = f"{key}:jobs"
        self._scheduled = f"{key}:scheduled"
        self._leases = f"{key}:leases"
        self._dlq = f"{key}:dlq"

    @classmethod
    def from_url(cls, url: str, key: str = "jobqueue") -> "RedisBackend":
        """Create a backend with its own client."""
        return cls(redis.Redis.from_url(url, decode_responses=True), key=key)

    @asynccontextmanager
    async def _errors(self, operation: str) -> AsyncGenerator[None, None]:
        try:
            yield
        except RedisError as e:
            logger.error(
                f"Redis error during {operation}",
                extra={"operation": operation, "error": str(e)},
            )
            raise BackendError(f"{operation} failed: {e}") from e

    def _push(self, pipe: Pipeline, record: JobRecord) -> None:
        if record.is_due():
            pipe.lpush(self._key, record.id)
        else:
            pipe.zadd(self._scheduled, {record.id: record.scheduled_at.timestamp()})

    def _unlink(self, pipe: Pipeline, job_id: str) -> None:
        pipe.lrem(self._key, 0, job_id)
        pipe.lrem(self._processing, 0, job_id)
        pipe.zrem(self._scheduled, job_id)
        pipe.zrem(self._leases, job_id)

    def _bury(self, pipe: Pipeline, job_id: str, raw: str, error: str) -> None:
        dead = DeadLetterRecord.undecodable(job_id, raw, error)
        pipe.lrem(self._processing, 0, job_id)
        pipe.zrem(self._leases, job_id)
        pipe.hdel(self._jobs, job_id)
        pipe.hset(self._dlq, job_id, dead.model_dump_json())

        logger.error(
            "Moved undecodable job to dead letter",
            extra={"job_id": job_id, "error": error},
        )

    async def _claim(self) -> str | None:
        return await self._redis.eval(
            _CLAIM_LUA,
            3,
            self._key,
            self._processing,
            self._leases,
            str(utcnow().timestamp()),
        )

    async def _promote_due(self) -> None:
        now = utcnow().timestamp()
        for job_id in await self._redis.zrangebyscore(self._scheduled, "-inf", now):
            if await self._redis.zrem(self._scheduled, job_id):
                await self._redis.lpush(self._key, job_id)

    async def enqueue(self, record: JobRecord) -> None:
        record = record.model_copy(update={"status": JobStatus.PENDING})

        async with self._errors("enqueue"):
            if await self._redis.hexists(self._jobs, record.id):
                raise BackendError(f"Job {record.id} is already queued")

            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._jobs, record.id, record.model_dump_json())
                self._push(pipe, record)
                await pipe.execute()

        logger.debug("Enqueued job", extra={"job_id": record.id})

    async def dequeue(self) -> JobRecord | None:
        async with self._errors("dequeue"):
            await self._promote_due()

            while True:
                job_id = await self._claim()
                if job_id is None:
                    return None

                raw = await self._redis.hget(self._jobs, job_id)
                if raw is None:
                    # Removed by retry() or move_to_dead_letter() while still listed
                    async with self._redis.pipeline(transaction=True) as pipe:
                        pipe.lrem(self._processing, 0, job_id)
                        pipe.zrem(self._leases, job_id)
                        await pipe.execute()
                    return None

                try:
                    stored = JobRecord.load(raw)
                except SerializationError as e:
                    async with self._redis.pipeline(transaction=True) as pipe:
                        self._bury(pipe, job_id, raw, str(e))
                        await pipe.execute()
                    continue
                break

            record = stored.model_copy(
                update={
                    "status": JobStatus.RUNNING,
                    "attempts": stored.attempts + 1,
                }
            )
            await self._redis.hset(self._jobs, job_id, record.model_dump_json())

        logger.debug(
            "Dequeued job",
            extra={"job_id": record.id, "attempt": record.attempts},
        )
        return record

    async def complete(self, job_id: str) -> bool:
        async with self._errors("complete"):
            async with self._redis.pipeline(transaction=True) as pipe:
                self._unlink(pipe, job_id)
                pipe.hdel(self._jobs, job_id)
                results = await pipe.execute()

        removed = results[-1] > 0
        if not removed:
            logger.warning("Complete called for unknown job", extra={"job_id": job_id})
        return removed

    async def fail(
        self,
        job_id: str,
        error: str,
        delay: timedelta | None = None,
    ) -> JobStatus | None:
        async with self._errors("fail"):
            raw = await self._redis.hget(self._jobs, job_id)
            # Claim the in-flight entry; losing means it is not ours anymore
            if raw is None or not await self._redis.lrem(self._processing, 1, job_id):
                logger.warning(
                    "Fail called for job that is not running",
                    extra={"job_id": job_id},
                )
                return None

            record = JobRecord.load(raw)
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.zrem(self._leases, job_id)
                if record.is_retryable:
                    scheduled_at = utcnow() + delay if delay else None
                    record = record.model_copy(
                        update={"status": JobStatus.PENDING, "scheduled_at": scheduled_at}
                    )
                    pipe.hset(self._jobs, job_id, record.model_dump_json())
                    self._push(pipe, record)
                    outcome = JobStatus.RETRYING
                else:
                    dead = record.to_dead_letter(error)
                    pipe.hset(self._dlq, job_id, dead.model_dump_json())
                    pipe.hdel(self._jobs, job_id)
                    outcome = JobStatus.FAILED
                await pipe.execute()

        if outcome == JobStatus.FAILED:
            logger.warning(
                f"Job moved to dead letter after {record.attempts} attempts",
                extra={"job_id": job_id, "error": error},
            )
        else:
            logger.info(
                "Job queued for retry",
                extra={"job_id": job_id, "attempt": record.attempts},
            )
        return outcome

    async def retry(self, record: JobRecord) -> None:
        fresh = record.reset()
        async with self._errors("retry"):
            async with self._redis.pipeline(transaction=True) as pipe:
                self._unlink(pipe, fresh.id)
                pipe.hset(self._jobs, fresh.id, fresh.model_dump_json())
                self._push(pipe, fresh)
                await pipe.execute()

    async def move_to_dead_letter(self, record: JobRecord) -> None:
        dead = record.to_dead_letter(record.error or UNKNOWN_ERROR)
        async with self._errors("move_to_dead_letter"):
            async with self._redis.pipeline(transaction=True) as pipe:
                self._unlink(pipe, record.id)
                pipe.hdel(self._jobs, record.id)
                pipe.hset(self._dlq, record.id, dead.model_dump_json())
                await pipe.execute()

    async def list_dead_letter(self) -> list[DeadLetterRecord]:
        async with self._errors("list_dead_letter"):
            values = await self._redis.hvals(self._dlq)

        records = [DeadLetterRecord.load(raw) for raw in values]
        return sorted(records, key=lambda r: r.failed_at, reverse=True)

    async def retry_from_dead_letter(self, job_id: str) -> JobRecord | None:
        async with self._errors("retry_from_dead_letter"):
            raw = await self._redis.hget(self._dlq, job_id)
            if raw is None or not await self._redis.hdel(self._dlq, job_id):
                return None

            record = DeadLetterRecord.load(raw).to_job_record()
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._jobs, record.id, record.model_dump_json())
                self._push(pipe, record)
                await pipe.execute()

        logger.info("Job retried from dead letter", extra={"job_id": job_id})
        return record

    async def recover_expired(self, visibility_timeout: timedelta) -> int:
        cutoff = (utcnow() - visibility_timeout).timestamp()
        recovered = 0

        async with self._errors("recover_expired"):
            for job_id in await self._redis.zrangebyscore(self._leases, "-inf", cutoff):
                if not await self._redis.lrem(self._processing, 1, job_id):
                    continue

                raw = await self._redis.hget(self._jobs, job_id)
                requeued = False
                async with self._redis.pipeline(transaction=True) as pipe:
                    pipe.zrem(self._leases, job_id)
                    if raw is not None:
                        try:
                            record = JobRecord.load(raw).model_copy(
                                update={"status": JobStatus.PENDING}
                            )
                        except SerializationError as e:
                            self._bury(pipe, job_id, raw, str(e))
                        else:
                            pipe.hset(self._jobs, job_id, record.model_dump_json())
                            pipe.lpush(self._key, job_id)
                            requeued = True
                    await pipe.execute()
                if requeued:
                    recovered += 1

        if recovered:
            logger.info(f"Recovered {recovered} jobs with expired visibility timeout")
        return recovered

    async def stats(self) -> dict[str, int]:
        async with self._errors("stats"):
            async with self._redis.pipeline(transaction=False) as pipe:
                pipe.llen(self._key)
                pipe.zcard(self._scheduled)
                pipe.llen(self._processing)
                pipe.hlen(self._dlq)
                pending, scheduled, running, dead = await pipe.execute()

        return {
            "pending": pending,
            "scheduled": scheduled,
            "running": running,
            "dead_letter": dead,
        }

    async def close(self) -> None:
        await self._redis.aclose()
