"""
Reaper for recovering stalled jobs.

The reaper runs periodically to find records that have been running for
longer than the visibility timeout and returns them to the queue. This
handles worker crashes and ensures at-least-once delivery.
"""

import asyncio
import logging
from datetime import timedelta

from jobqueue.errors import QueueError
from jobqueue.observability.metrics import get_metrics
from jobqueue.queue import Queue

logger = logging.getLogger(__name__)


class Reaper:
    """
    Reaper that recovers jobs abandoned by workers.

    Runs periodically to:
    1. Return records running longer than the visibility timeout to the queue
    2. Refresh the queue depth gauges
    3. Record metrics for monitoring

    The visibility timeout must exceed the longest job timeout, otherwise
    a job that is still running gets delivered a second time.
    """

    def __init__(
        self,
        queue: Queue,
        interval_seconds: float = 10.0,
        visibility_timeout_seconds: float = 300.0,
    ):
        """
        Initialize the reaper.

        Args:
            queue: The queue to watch.
            interval_seconds: Seconds between reaper runs.
            visibility_timeout_seconds: How long a record may stay running.
        """
        self.queue = queue
        self.interval = interval_seconds
        self.visibility_timeout = timedelta(seconds=visibility_timeout_seconds)
        self._stop_event = asyncio.Event()
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(f"Reaper starting with interval {self.interval}s")
        self._stop_event.clear()

        while not self._stop_event.is_set():
            try:
                recovered = await self.run_once()

                if recovered > 0:
                    logger.info(f"Recovered {recovered} stalled jobs")

            except QueueError as e:
                logger.error(f"Error in reaper loop: {e}")
                self._metrics.record_backend_error("recover_expired")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except TimeoutError:
                pass

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._stop_event.set()

    async def run_once(self) -> int:
        """
        Run the reaper once (for testing or cron-style execution).

        Returns:
            Number of jobs recovered.
        """
        count = await self.queue.recover_expired(self.visibility_timeout)
        if count > 0:
            self._metrics.record_jobs_recovered(count)

        self._metrics.update_queue_depth(await self.queue.stats())
        return count
