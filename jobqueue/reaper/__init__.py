"""
Reaper module.
Contains the reaper that returns stalled jobs to the queue.
"""

from jobqueue.reaper.main import Reaper

__all__ = ["Reaper"]
