import asyncio
import logging
import uuid
from typing import Dict, Callable, Any, Coroutine, Optional
from fastapi import FastAPI
from fastapi.responses import Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from taskflow.core.config import Settings
from taskflow.core.database import Database
from taskflow.core.errors import JobPermanentFailure
from taskflow.core.metrics import MetricsSink, PrometheusMetrics
from taskflow.core.queue import RedisJobQueue, TRANSPORT_ERRORS
from taskflow.models.job import Job, JobResult, RetryPolicy
from taskflow.services.notifications import LoggingNotifier
from taskflow.services.task_service import TaskService
from taskflow.workers.overdue_scanner import OverdueScanner
from taskflow.workers.task_handlers import register_task_handlers

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Coroutine[Any, Any, JobResult]]


class JobWorker:
    """
    Consumes jobs from the queue with at most `concurrency` jobs in flight.

    A handler that raises hands the job back to the queue for retry with
    backoff. A JobPermanentFailure (unknown type, malformed payload) parks the
    job in the dead set immediately.
    """

    def __init__(
        self,
        queue: RedisJobQueue,
        metrics: MetricsSink,
        concurrency: int = 5,
        worker_id: Optional[str] = None,
    ):
        self.queue = queue
        self.metrics = metrics
        self.concurrency = max(1, concurrency)
        self.task_handlers: Dict[str, Handler] = {}
        self.running = False
        self.worker_id = worker_id or str(uuid.uuid4())

    def register_task_handler(self, job_type: str, handler: Handler):
        """Register a handler function for a specific job type"""
        self.task_handlers[job_type] = handler
        logger.info(f"Registered handler for job type: {job_type}")

    async def process_job(self, job: Job) -> Optional[JobResult]:
        """Process a single claimed job and settle it on the queue"""
        logger.debug(f"Processing job {job.id} [type={job.type}] attempt={job.attempts + 1}")

        try:
            handler = self.task_handlers.get(job.type)
            if handler is None:
                raise JobPermanentFailure(f"No handler registered for job type: {job.type}")
            result = await handler(job.parse_payload())
        except JobPermanentFailure as e:
            logger.error(f"Job {job.id} [type={job.type}] cannot be processed: {e}")
            self.metrics.job_processed(job.type, "error")
            await self.queue.fail(job, str(e), retryable=False)
            return None
        except Exception as e:
            logger.error(f"Job {job.id} [type={job.type}] failed on attempt {job.attempts + 1}: {e}")
            self.metrics.job_processed(job.type, "error")
            await self.queue.fail(job, str(e))
            return None

        # A failed result is a logical rejection: reported, not retried
        self.metrics.job_processed(job.type, "success" if result.success else "error")
        await self.queue.complete(job)
        if result.success:
            logger.info(f"Job {job.id} completed successfully")
        else:
            logger.warning(f"Job {job.id} rejected: {result.error}")
        return result

    async def _run_job(self, job: Job):
        try:
            await self.process_job(job)
        except TRANSPORT_ERRORS as e:
            # The claim expires and the job is re-queued by requeue_stalled
            logger.error(f"Could not settle job {job.id}: {e}")

    async def reclaim_stalled(self, interval: Optional[float] = None):
        """Periodically return expired claims to the waiting set"""
        interval = interval or max(1.0, self.queue.claim_timeout / 2)
        while self.running:
            try:
                await self.queue.requeue_stalled()
            except TRANSPORT_ERRORS as e:
                logger.error(f"Error releasing stalled jobs: {str(e)}")
            await asyncio.sleep(interval)

    async def run(self, poll_interval: float = 1.0):
        """Main worker loop"""
        logger.info(f"Starting worker {self.worker_id} (concurrency={self.concurrency})...")
        await self.queue.connect()
        self.running = True

        slots = asyncio.Semaphore(self.concurrency)
        in_flight = set()
        reclaim_task = asyncio.create_task(self.reclaim_stalled())
        jobs = self.queue.consume(poll_interval, should_continue=lambda: self.running)

        def _release(done: asyncio.Task):
            in_flight.discard(done)
            slots.release()

        try:
            while self.running:
                await slots.acquire()
                try:
                    job = await jobs.__anext__()
                except StopAsyncIteration:
                    slots.release()
                    break
                job_task = asyncio.create_task(self._run_job(job))
                in_flight.add(job_task)
                job_task.add_done_callback(_release)
        finally:
            self.running = False
            reclaim_task.cancel()
            try:
                await reclaim_task
            except asyncio.CancelledError:
                pass
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)
            await jobs.aclose()
            logger.info("Worker stopped")
            await self.queue.disconnect()


# Worker process: consumes jobs, runs the overdue scanner, exposes its metrics
app = FastAPI()

settings = Settings.from_env()
logging.basicConfig(level=settings.log_level)

metrics = PrometheusMetrics()
worker: Optional[JobWorker] = None
worker_task: Optional[asyncio.Task] = None
scanner: Optional[OverdueScanner] = None
database: Optional[Database] = None


@app.get("/metrics")
async def prometheus_metrics():
    """Expose Prometheus metrics"""
    return Response(generate_latest(metrics.registry), media_type=CONTENT_TYPE_LATEST)


@app.on_event("startup")
async def startup_event():
    global worker, worker_task, scanner, database
    database = Database(settings.database_url)
    database.check_connection()

    retry_policy = RetryPolicy(max_attempts=settings.job_attempts, backoff_delay=settings.job_backoff_seconds)
    queue = RedisJobQueue(
        settings.redis_url,
        name=settings.queue_name,
        default_retry_policy=retry_policy,
        claim_timeout=settings.job_claim_timeout_seconds,
    )
    await queue.connect()

    service = TaskService(database, queue, settings)
    worker = JobWorker(queue, metrics, concurrency=settings.worker_concurrency, worker_id=settings.worker_id or None)
    register_task_handlers(worker, service, LoggingNotifier())
    worker_task = asyncio.create_task(worker.run(poll_interval=settings.worker_poll_interval))

    scanner = OverdueScanner(
        database,
        queue,
        metrics,
        overdue_hours=settings.overdue_task_ttl_hours,
        batch_size=settings.overdue_scan_batch_size,
        interval=settings.overdue_scan_interval_seconds,
        retry_policy=retry_policy,
    )
    await scanner.start()


@app.on_event("shutdown")
async def shutdown_event():
    if scanner:
        await scanner.stop()
    if worker:
        worker.running = False
    if worker_task:
        # Lets in-flight jobs settle before the queue disconnects
        await worker_task
    if database:
        database.dispose()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
