"""
PostgreSQL queue backend.

Implements the queue on two tables (live queue and dead letters) using
SQLAlchemy's asyncio API. Exclusive dequeue across processes relies on
row locks with FOR UPDATE SKIP LOCKED.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

from sqlalchemy import and_, delete, func, not_, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from jobqueue.backends.base import QueueBackend
from jobqueue.constants import DEAD_LETTER_STATUS, UNKNOWN_ERROR, JobStatus
from jobqueue.db.connection import create_session_factory, create_tables
from jobqueue.db.models import DeadLetterJob, QueueJob
from jobqueue.errors import BackendError, SerializationError
from jobqueue.types.job import DeadLetterRecord, JobRecord, utcnow

logger = logging.getLogger(__name__)


def _is_due(now: datetime):
    return or_(QueueJob.scheduled_at.is_(None), QueueJob.scheduled_at <= now)


class PostgresBackend(QueueBackend):
    """
    Relational backend for PostgreSQL.

    Implements atomic operations for:
    - Dequeue with UPDATE ... WHERE id = (SELECT ... FOR UPDATE SKIP LOCKED)
    - Failure handling (retry or dead letter) under a row lock
    - Dead-letter migration in a single transaction
    - Recovery of rows left running by crashed workers
    """

    def __init__(self, engine: AsyncEngine):
        """
        Initialize the backend.

        Args:
            engine: Async engine bound to a PostgreSQL database.
        """
        self._engine = engine
        self._session_factory = create_session_factory(engine)

    async def create_tables(self) -> None:
        """Create the queue tables if they do not exist yet."""
        try:
            await create_tables(self._engine)
        except SQLAlchemyError as e:
            raise BackendError(f"create_tables failed: {e}") from e

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        """
        Run a block in one transaction, mapping database errors.

        Raises:
            BackendError: If the database raised.
        """
        try:
            async with self._session_factory() as session, session.begin():
                yield session
        except SQLAlchemyError as e:
            logger.error(
                f"Database error during {operation}",
                extra={"operation": operation, "error": str(e)},
            )
            raise BackendError(f"{operation} failed: {e}") from e

    @staticmethod
    def _to_row(record: JobRecord, now: datetime) -> QueueJob:
        return QueueJob(
            id=record.id,
            payload=record.dump(),
            priority=record.priority,
            attempts=record.attempts,
            max_attempts=record.max_retries,
            scheduled_at=record.scheduled_at,
            created_at=record.created_at,
            updated_at=now,
            status=JobStatus.PENDING.value,
        )

    @staticmethod
    def _to_record(row: QueueJob) -> JobRecord:
        record = JobRecord.load(row.payload)
        return record.model_copy(
            update={
                "status": JobStatus(row.status),
                "attempts": row.attempts,
                "max_retries": row.max_attempts,
                "priority": row.priority,
                "scheduled_at": row.scheduled_at,
                "created_at": row.created_at,
            }
        )

    @staticmethod
    async def _write_dead_letter(
        session: AsyncSession,
        dead: DeadLetterRecord,
        now: datetime,
    ) -> None:
        values = {
            "payload": dead.dump(),
            "priority": dead.priority,
            "attempts": dead.attempts,
            "error": dead.error,
            "updated_at": now,
            "status": DEAD_LETTER_STATUS,
        }
        stmt = (
            insert(DeadLetterJob)
            .values(id=dead.id, created_at=now, **values)
            .on_conflict_do_update(index_elements=[DeadLetterJob.id], set_=values)
        )
        await session.execute(stmt)

    async def _bury(
        self,
        session: AsyncSession,
        row: QueueJob,
        error: str,
        now: datetime,
    ) -> None:
        dead = DeadLetterRecord.undecodable(
            row.id,
            row.payload,
            error,
            attempts=row.attempts,
            priority=row.priority,
            created_at=row.created_at,
        )
        await self._write_dead_letter(session, dead, now)
        await session.delete(row)

        logger.error(
            "Moved undecodable job to dead letter",
            extra={"job_id": row.id, "error": error},
        )

    async def enqueue(self, record: JobRecord) -> None:
        async with self._transaction("enqueue") as session:
            session.add(self._to_row(record, utcnow()))

        logger.debug(
            "Enqueued job",
            extra={"job_id": record.id, "priority": record.priority},
        )

    async def dequeue(self) -> JobRecord | None:
        """
        Claim the next eligible row.

        The candidate subquery locks its row with FOR UPDATE SKIP LOCKED, so
        concurrent dequeues in other transactions skip it instead of waiting
        or returning it twice. A claimed row whose payload cannot be decoded
        is moved to the dead-letter table in the same transaction and the
        next row is tried.
        """
        now = utcnow()
        candidate = (
            select(QueueJob.id)
            .where(QueueJob.status == JobStatus.PENDING.value, _is_due(now))
            .order_by(QueueJob.priority.desc(), QueueJob.created_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(QueueJob)
            .where(QueueJob.id == candidate)
            .values(
                status=JobStatus.RUNNING.value,
                attempts=QueueJob.attempts + 1,
                updated_at=now,
            )
            .returning(QueueJob)
            .execution_options(synchronize_session=False)
        )

        while True:
            async with self._transaction("dequeue") as session:
                result = await session.execute(stmt)
                row = result.scalar_one_or_none()
                if row is None:
                    return None
                try:
                    record = self._to_record(row)
                except SerializationError as e:
                    await self._bury(session, row, str(e), now)
                    continue
            break

        logger.debug(
            "Dequeued job",
            extra={"job_id": record.id, "attempt": record.attempts},
        )
        return record

    async def complete(self, job_id: str) -> bool:
        async with self._transaction("complete") as session:
            result = await session.execute(delete(QueueJob).where(QueueJob.id == job_id))
            removed = result.rowcount > 0

        if not removed:
            logger.warning("Complete called for unknown job", extra={"job_id": job_id})
        return removed

    async def fail(
        self,
        job_id: str,
        error: str,
        delay: timedelta | None = None,
    ) -> JobStatus | None:
        """
        Handle a failed attempt. Either retry or move to the dead-letter table.

        The attempts check and the branch run in one transaction holding the
        row lock, so two failure reports for the same id cannot both act.
        """
        now = utcnow()

        async with self._transaction("fail") as session:
            result = await session.execute(
                select(QueueJob).where(QueueJob.id == job_id).with_for_update()
            )
            row = result.scalar_one_or_none()

            if row is None or row.status != JobStatus.RUNNING.value:
                logger.warning(
                    "Fail called for job that is not running",
                    extra={"job_id": job_id},
                )
                return None

            attempts = row.attempts
            if attempts < row.max_attempts:
                row.status = JobStatus.PENDING.value
                row.scheduled_at = now + delay if delay else None
                row.updated_at = now
                outcome = JobStatus.RETRYING
            else:
                dead = self._to_record(row).to_dead_letter(error)
                await self._write_dead_letter(session, dead, now)
                await session.delete(row)
                outcome = JobStatus.FAILED

        if outcome == JobStatus.FAILED:
            logger.warning(
                f"Job moved to dead letter after {attempts} attempts",
                extra={"job_id": job_id, "error": error},
            )
        else:
            logger.info(
                "Job queued for retry",
                extra={"job_id": job_id, "attempt": attempts},
            )
        return outcome

    async def retry(self, record: JobRecord) -> None:
        fresh = record.reset()
        async with self._transaction("retry") as session:
            await session.execute(delete(QueueJob).where(QueueJob.id == fresh.id))
            session.add(self._to_row(fresh, utcnow()))

    async def move_to_dead_letter(self, record: JobRecord) -> None:
        now = utcnow()
        dead = record.to_dead_letter(record.error or UNKNOWN_ERROR)
        async with self._transaction("move_to_dead_letter") as session:
            await self._write_dead_letter(session, dead, now)
            await session.execute(delete(QueueJob).where(QueueJob.id == record.id))

    async def list_dead_letter(self) -> list[DeadLetterRecord]:
        async with self._transaction("list_dead_letter") as session:
            result = await session.execute(
                select(DeadLetterJob).order_by(DeadLetterJob.created_at.desc())
            )
            rows = result.scalars().all()

        return [
            DeadLetterRecord.load(row.payload).model_copy(
                update={
                    "attempts": row.attempts,
                    "priority": row.priority,
                    "error": row.error or UNKNOWN_ERROR,
                }
            )
            for row in rows
        ]

    async def retry_from_dead_letter(self, job_id: str) -> JobRecord | None:
        async with self._transaction("retry_from_dead_letter") as session:
            result = await session.execute(
                select(DeadLetterJob).where(DeadLetterJob.id == job_id).with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None

            record = DeadLetterRecord.load(row.payload).to_job_record()
            await session.delete(row)
            session.add(self._to_row(record, utcnow()))

        logger.info("Job retried from dead letter", extra={"job_id": job_id})
        return record

    async def recover_expired(self, visibility_timeout: timedelta) -> int:
        """
        Return rows stuck in RUNNING to PENDING.

        updated_at of a running row is its dequeue time, so a row older than
        the visibility timeout belongs to a worker that died or hung.
        """
        now = utcnow()
        stmt = (
            update(QueueJob)
            .where(
                and_(
                    QueueJob.status == JobStatus.RUNNING.value,
                    QueueJob.updated_at < now - visibility_timeout,
                )
            )
            .values(status=JobStatus.PENDING.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )

        async with self._transaction("recover_expired") as session:
            result = await session.execute(stmt)
            count = result.rowcount

        if count > 0:
            logger.info(f"Recovered {count} jobs with expired visibility timeout")
        return count

    async def stats(self) -> dict[str, int]:
        now = utcnow()
        pending = QueueJob.status == JobStatus.PENDING.value
        stmt = select(
            func.count().filter(and_(pending, _is_due(now))),
            func.count().filter(and_(pending, not_(_is_due(now)))),
            func.count().filter(QueueJob.status == JobStatus.RUNNING.value),
        ).select_from(QueueJob)

        async with self._transaction("stats") as session:
            due, scheduled, running = (await session.execute(stmt)).one()
            dead = await session.scalar(select(func.count()).select_from(DeadLetterJob))

        return {
            "pending": due,
            "scheduled": scheduled,
            "running": running,
            "dead_letter": dead or 0,
        }

    async def close(self) -> None:
        await self._engine.dispose()
