"""
Background Job Queue

A durable background job queue with interchangeable storage backends
(in-process, PostgreSQL, Redis), priority ordering, delayed execution,
bounded retries with exponential backoff, and a dead-letter store.
"""

__version__ = "1.0.0"
