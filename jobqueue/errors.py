"""
Queue error taxonomy.

Every error raised by the queue derives from QueueError so callers can catch
the whole family at once.
"""


class QueueError(Exception):
    """Base class for all job queue errors."""


class SerializationError(QueueError):
    """A job payload could not be encoded or decoded."""


class JobError(QueueError):
    """
    Raised by Job.perform() to signal that the unit of work failed.

    Workers turn it into a retry or a dead-letter transition; it never
    reaches the producer.
    """


class BackendError(QueueError):
    """The storage backend failed (connection lost, query error, ...)."""


class QueueFull(QueueError):
    """A bounded backend refused a new record because it is at capacity."""

    def __init__(self, max_size: int):
        super().__init__(f"Queue full (max_size={max_size})")
        self.max_size = max_size
