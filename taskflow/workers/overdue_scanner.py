import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from taskflow.core.database import Database
from taskflow.core.metrics import MetricsSink
from taskflow.core.queue import RedisJobQueue
from taskflow.models.job import JobSpec, JobType, RetryPolicy
from taskflow.models.task import utcnow
from taskflow.services.task_store import TaskStore

logger = logging.getLogger(__name__)


def overdue_key(task_id) -> str:
    return f"overdue-{task_id}"


@dataclass
class ScanResult:
    detected: int = 0
    queued: int = 0
    pages: int = 0
    error: Optional[str] = None


class OverdueScanner:
    """
    Periodically finds tasks past their due date and queues a follow-up job for each.

    Jobs are keyed by task id, so re-running a scan before the previous jobs are
    processed does not create duplicate work.

    Pages are read by offset. A task that changes status between two page reads
    shifts the remaining rows, so one run may skip or revisit a row; the next
    run rediscovers anything skipped.
    """

    def __init__(
        self,
        database: Database,
        queue: RedisJobQueue,
        metrics: MetricsSink,
        overdue_hours: float = 0.0,
        batch_size: int = 500,
        interval: float = 3600.0,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.database = database
        self.queue = queue
        self.metrics = metrics
        self.overdue_hours = overdue_hours
        self.batch_size = batch_size
        self.interval = interval
        self.retry_policy = retry_policy
        self.last_result: Optional[ScanResult] = None
        self._scan_task = None

    async def start(self):
        """Start the periodic scan"""
        self._scan_task = asyncio.create_task(self._scan_loop())
        logger.info(f"Overdue scanner started (interval={self.interval}s)")

    async def stop(self):
        """Stop the periodic scan"""
        if self._scan_task:
            self._scan_task.cancel()
            try:
                await self._scan_task
            except asyncio.CancelledError:
                pass
            self._scan_task = None
        logger.info("Overdue scanner stopped")

    async def _scan_loop(self):
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval)

    def _read_page(self, cutoff: datetime, offset: int):
        with self.database.session() as db:
            return TaskStore(db).find_overdue(cutoff, limit=self.batch_size, offset=offset)

    async def run_once(self, now: Optional[datetime] = None) -> ScanResult:
        """One full scan. Errors are logged and reported, never raised."""
        logger.debug("Starting overdue tasks check...")
        now = now or utcnow()
        cutoff = now - timedelta(hours=self.overdue_hours)
        result = ScanResult()
        offset = 0

        try:
            while True:
                page = await asyncio.to_thread(self._read_page, cutoff, offset)
                result.pages += 1
                if not page:
                    break

                logger.info(f"Processing {len(page)} overdue tasks in batch {result.pages}")
                enqueued = await self.queue.enqueue_bulk(
                    [
                        JobSpec(
                            type=JobType.PROCESS_OVERDUE_TASK.value,
                            payload={"task_id": str(task.id)},
                            dedupe_key=overdue_key(task.id),
                            retry_policy=self.retry_policy,
                        )
                        for task in page
                    ]
                )
                if not enqueued.ok:
                    logger.warning(f"{enqueued.failed} overdue job(s) not queued in batch {result.pages}")

                result.detected += len(page)
                result.queued += enqueued.queued
                self.metrics.overdue_detected(len(page))

                # A short page is the last one
                if len(page) < self.batch_size:
                    break
                offset += self.batch_size
        except Exception as e:
            logger.error(f"Error checking overdue tasks: {e}", exc_info=True)
            result.error = str(e)

        if result.detected == 0 and result.error is None:
            logger.info("No overdue tasks found.")
        logger.info(
            f"Overdue tasks check completed. Detected: {result.detected}, newly queued: {result.queued}"
        )
        self.last_result = result
        return result
