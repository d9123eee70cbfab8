"""
Worker module.
Contains the job registry and the worker pool (jobqueue.worker.main).
"""

from jobqueue.worker.handlers import (
    decode_job,
    execute_job,
    get_job_class,
    list_jobs,
    register_job,
)

__all__ = [
    "register_job",
    "get_job_class",
    "list_jobs",
    "decode_job",
    "execute_job",
]
