"""
Database module.
Contains database connection and table models for the postgres backend.
"""

from jobqueue.db.connection import (
    close_db,
    create_session_factory,
    create_tables,
    get_engine,
    get_test_engine,
)
from jobqueue.db.models import Base, DeadLetterJob, QueueJob

__all__ = [
    "get_engine",
    "get_test_engine",
    "create_session_factory",
    "create_tables",
    "close_db",
    "QueueJob",
    "DeadLetterJob",
    "Base",
]
