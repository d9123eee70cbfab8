"""
Queue backends.
Contains the backend interface and its in-process, PostgreSQL and Redis
implementations.
"""

import logging

from jobqueue.backends.base import QueueBackend
from jobqueue.backends.memory import MemoryBackend
from jobqueue.config import Settings, get_settings

logger = logging.getLogger(__name__)


async def create_backend(settings: Settings | None = None) -> QueueBackend:
    """
    Build the backend selected by `queue_backend`.

    The postgres and redis implementations are imported on demand.

    Args:
        settings: Settings to use. Defaults to the cached settings.

    Returns:
        A ready-to-use backend instance.
    """
    settings = settings or get_settings()

    if settings.queue_backend == "postgres":
        from jobqueue.backends.postgres import PostgresBackend
        from jobqueue.db.connection import get_engine

        backend = PostgresBackend(get_engine())
        await backend.create_tables()
    elif settings.queue_backend == "redis":
        from jobqueue.backends.redis import RedisBackend

        backend = RedisBackend.from_url(settings.redis_url, key=settings.redis_queue_key)
    else:
        backend = MemoryBackend(max_size=settings.memory_queue_max_size)

    logger.info("Queue backend created", extra={"backend": settings.queue_backend})
    return backend


__all__ = [
    "QueueBackend",
    "MemoryBackend",
    "create_backend",
]
