"""
Type definitions for the job queue.
"""

from jobqueue.types.job import (
    DeadLetterRecord,
    Job,
    JobRecord,
    JobResult,
    utcnow,
)

__all__ = [
    "Job",
    "JobRecord",
    "DeadLetterRecord",
    "JobResult",
    "utcnow",
]
