"""
SQLAlchemy database models.
Defines the live queue table and the dead-letter table.
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobqueue.constants import (
    DEAD_LETTER_STATUS,
    DEAD_LETTER_TABLE,
    DEFAULT_MAX_RETRIES,
    JOBS_TABLE,
    JobStatus,
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class QueueJob(Base):
    """
    Row of the live queue.

    payload holds the full JobRecord envelope as JSON. The scalar columns
    are authoritative for status, attempts, priority and scheduling; the
    envelope copies of those fields are refreshed on every read.
    """

    __tablename__ = JOBS_TABLE

    id: Mapped[str] = mapped_column(Text, primary_key=True)

    payload: Mapped[dict] = mapped_column(JSONB, nullable=False)

    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_MAX_RETRIES,
        server_default=text(str(DEFAULT_MAX_RETRIES)),
    )

    scheduled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=JobStatus.PENDING.value,
        server_default=text(f"'{JobStatus.PENDING.value}'"),
    )

    __table_args__ = (
        # Index for dequeue polling
        Index(
            "ix_jobs_dequeue",
            "status",
            "priority",
            "created_at",
        ),
        # Partial index for visibility timeout recovery
        Index(
            "ix_jobs_running_updated_at",
            "updated_at",
            postgresql_where=text(f"status = '{JobStatus.RUNNING.value}'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"QueueJob(id={self.id}, status={self.status}, "
            f"attempt={self.attempts}/{self.max_attempts}, priority={self.priority})"
        )


class DeadLetterJob(Base):
    """Row of the dead-letter table: a queue row minus scheduling, plus error."""

    __tablename__ = DEAD_LETTER_TABLE

    id: Mapped[str] = mapped_column(Text, primary_key=True)

    payload: Mapped[dict] = mapped_column(JSONB, nullable=False)

    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )

    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=DEAD_LETTER_STATUS,
        server_default=text(f"'{DEAD_LETTER_STATUS}'"),
    )

    def __repr__(self) -> str:
        return f"DeadLetterJob(id={self.id}, attempts={self.attempts}, error={self.error!r})"
