"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> RUNNING (dequeued by a worker, attempts + 1)
    - RUNNING -> COMPLETED (success, record removed from the live queue)
    - RUNNING -> PENDING (failure with retries remaining, reported as RETRYING)
    - RUNNING -> FAILED (retries exhausted, moved to the dead-letter store)
    - RUNNING -> PENDING (visibility timeout expired - crash recovery)
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


# Status stored on dead-letter rows
DEAD_LETTER_STATUS = "dead_letter"

# Default values
DEFAULT_MAX_RETRIES = 3
DEFAULT_PRIORITY = 0
BACKOFF_BASE_SECONDS = 60
UNKNOWN_ERROR = "Unknown error"
UNDECODABLE_JOB_NAME = "undecodable"

# Table names (postgres backend)
JOBS_TABLE = "jobs"
DEAD_LETTER_TABLE = "jobs_dlq"

# Metrics names
METRIC_QUEUE_DEPTH = "jobqueue_queue_depth"
METRIC_JOBS_ENQUEUED = "jobqueue_jobs_enqueued_total"
METRIC_JOBS_DEQUEUED = "jobqueue_jobs_dequeued_total"
METRIC_JOBS_FINISHED = "jobqueue_jobs_finished_total"
METRIC_JOB_DURATION = "jobqueue_job_duration_seconds"
METRIC_BACKEND_ERRORS = "jobqueue_backend_errors_total"
METRIC_JOBS_RECOVERED = "jobqueue_jobs_recovered_total"

# Job outcomes (metric labels)
OUTCOME_COMPLETED = "completed"
OUTCOME_RETRYING = "retrying"
OUTCOME_DEAD_LETTER = "dead_letter"

# Trace span names
SPAN_EXECUTE_JOB = "execute_job"
SPAN_REPORT_JOB = "report_job"
