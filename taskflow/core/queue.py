import logging
import time
from typing import AsyncIterator, Callable, Dict, Any, List, Optional
import redis.asyncio as aioredis
from redis.exceptions import RedisError
import asyncio

from taskflow.core.errors import QueueUnavailable
from taskflow.models.job import (
    BulkEnqueueResult,
    EnqueueResult,
    Job,
    JobSpec,
    JobState,
    RetryPolicy,
    make_job_id,
)
from taskflow.models.task import utcnow

logger = logging.getLogger(__name__)

# Errors that mean "the transport is down", as opposed to programming errors
TRANSPORT_ERRORS = (RedisError, OSError, QueueUnavailable)


class RedisJobQueue:
    """
    At-least-once job queue on Redis.

    Keys (prefixed by the queue name):
      <name>:jobs     hash   job id -> job JSON
      <name>:waiting  zset   job id -> time the job becomes ready
      <name>:active   zset   job id -> claim deadline
      <name>:dead     zset   job id -> time the job was parked
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        name: str = "task-processing",
        redis: Optional[aioredis.Redis] = None,
        default_retry_policy: Optional[RetryPolicy] = None,
        claim_timeout: float = 30.0,
    ):
        self.redis_url = redis_url
        self.name = name
        self.redis = redis
        self._owns_client = False
        self.default_retry_policy = default_retry_policy or RetryPolicy()
        self.claim_timeout = claim_timeout

        self.jobs_key = f"{name}:jobs"
        self.waiting_key = f"{name}:waiting"
        self.active_key = f"{name}:active"
        self.dead_key = f"{name}:dead"

    async def connect(self, max_retries: int = 5):
        if self.redis is not None:
            return
        for attempt in range(max_retries):
            client = aioredis.from_url(
                self.redis_url,
                encoding='utf-8',
                decode_responses=True,
                max_connections=250,
            )
            try:
                await client.ping()
            except (RedisError, OSError) as e:
                await client.aclose()
                if attempt == max_retries - 1:
                    raise QueueUnavailable(f"Redis unreachable at {self.redis_url}: {e}") from e
                logger.warning(f"Redis not ready (attempt {attempt + 1}/{max_retries}): {e}")
                await asyncio.sleep(2 ** attempt)
                continue
            self.redis = client
            self._owns_client = True
            logger.info(f"Connected job queue '{self.name}' to {self.redis_url}")
            return

    async def disconnect(self):
        """Close the client if this queue opened it; injected clients are left alone."""
        if self.redis is not None and self._owns_client:
            await self.redis.aclose()
            self.redis = None
            self._owns_client = False

    def _require_client(self) -> aioredis.Redis:
        if self.redis is None:
            raise QueueUnavailable(f"Job queue '{self.name}' is not connected")
        return self.redis

    _enqueue_lua = """
    -- KEYS[1]: jobs hash, KEYS[2]: waiting zset, KEYS[3]: dead zset
    -- ARGV[1]: job id, ARGV[2]: job JSON, ARGV[3]: ready-at score
    if redis.call('HEXISTS', KEYS[1], ARGV[1]) == 1
       and redis.call('ZSCORE', KEYS[3], ARGV[1]) == false then
        return 0
    end
    redis.call('ZREM', KEYS[3], ARGV[1])
    redis.call('HSET', KEYS[1], ARGV[1], ARGV[2])
    redis.call('ZADD', KEYS[2], ARGV[3], ARGV[1])
    return 1
    """

    def _build_job(self, spec: JobSpec) -> Job:
        return Job(
            id=make_job_id(spec.type, spec.dedupe_key),
            type=spec.type,
            payload=spec.payload,
            retry_policy=spec.retry_policy or self.default_retry_policy,
        )

    async def enqueue(
        self,
        job_type: str,
        payload: Dict[str, Any],
        dedupe_key: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> EnqueueResult:
        """
        Add a job unless one with the same id is already pending.

        Transport failures are returned in the result, never raised, so callers
        can log them without aborting their own work.
        """
        job = self._build_job(JobSpec(type=job_type, payload=payload, dedupe_key=dedupe_key, retry_policy=retry_policy))
        try:
            created = await self._require_client().eval(
                self._enqueue_lua,
                3,
                self.jobs_key,
                self.waiting_key,
                self.dead_key,
                job.id,
                job.model_dump_json(),
                time.time(),
            )
        except TRANSPORT_ERRORS as e:
            logger.warning(f"Failed to enqueue job {job.id}: {e}")
            return EnqueueResult(job_id=job.id, error=str(e))

        if not created:
            logger.debug(f"Job {job.id} already pending; enqueue skipped")
        return EnqueueResult(job_id=job.id, queued=bool(created))

    async def enqueue_bulk(self, items: List[JobSpec]) -> BulkEnqueueResult:
        """Enqueue many jobs in one round trip; per-item failures are counted, not raised."""
        result = BulkEnqueueResult()
        if not items:
            return result

        jobs = [self._build_job(item) for item in items]
        now = time.time()
        try:
            async with self._require_client().pipeline(transaction=False) as pipe:
                for job in jobs:
                    pipe.eval(
                        self._enqueue_lua,
                        3,
                        self.jobs_key,
                        self.waiting_key,
                        self.dead_key,
                        job.id,
                        job.model_dump_json(),
                        now,
                    )
                replies = await pipe.execute(raise_on_error=False)
        except TRANSPORT_ERRORS as e:
            logger.warning(f"Bulk enqueue of {len(jobs)} jobs failed: {e}")
            result.failed = len(jobs)
            result.errors.append(str(e))
            return result

        for job, reply in zip(jobs, replies):
            if isinstance(reply, Exception):
                result.failed += 1
                result.errors.append(f"{job.id}: {reply}")
            elif reply:
                result.queued += 1
            else:
                result.skipped += 1
        return result

    # Atomic claim: pop the earliest ready job and mark it active until the deadline
    _dequeue_lua = """
    -- KEYS[1]: waiting zset, KEYS[2]: active zset, KEYS[3]: jobs hash
    -- ARGV[1]: now, ARGV[2]: claim deadline
    local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, 1)
    if #ids == 0 then return nil end
    local job_id = ids[1]
    redis.call('ZREM', KEYS[1], job_id)

    local job_data = redis.call('HGET', KEYS[3], job_id)
    if not job_data then
        -- Orphaned id (job completed by a slower consumer after a reclaim)
        return nil
    end

    redis.call('ZADD', KEYS[2], ARGV[2], job_id)
    return {job_id, job_data}
    """

    async def dequeue(self, now: Optional[float] = None) -> Optional[Job]:
        now = time.time() if now is None else now
        redis = self._require_client()
        result = await redis.eval(
            self._dequeue_lua,
            3,
            self.waiting_key,
            self.active_key,
            self.jobs_key,
            now,
            now + self.claim_timeout,
        )
        if not result:
            return None

        job_id, job_data = result
        job = Job.model_validate_json(job_data)
        job.state = JobState.ACTIVE
        job.updated_at = utcnow()
        await redis.hset(self.jobs_key, job_id, job.model_dump_json())
        return job

    async def consume(
        self,
        poll_interval: float = 1.0,
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> AsyncIterator[Job]:
        """Yield claimed jobs as they become ready, polling while the queue is empty."""
        while should_continue is None or should_continue():
            try:
                job = await self.dequeue()
            except TRANSPORT_ERRORS as e:
                logger.error(f"Error dequeuing job: {str(e)}")
                job = None
            if job is None:
                await asyncio.sleep(poll_interval)
                continue
            yield job

    async def complete(self, job: Job):
        async with self._require_client().pipeline(transaction=True) as pipe:
            pipe.zrem(self.active_key, job.id)
            pipe.hdel(self.jobs_key, job.id)
            await pipe.execute()

    # Settle a failed attempt only while the job is still claimed; a claim that
    # expired and was completed elsewhere must not be written back
    _fail_lua = """
    -- KEYS[1]: active zset, KEYS[2]: jobs hash, KEYS[3]: waiting or dead zset
    -- ARGV[1]: job id, ARGV[2]: job JSON, ARGV[3]: score in the target zset
    if redis.call('ZSCORE', KEYS[1], ARGV[1]) == false then
        return 0
    end
    redis.call('ZREM', KEYS[1], ARGV[1])
    redis.call('HSET', KEYS[2], ARGV[1], ARGV[2])
    redis.call('ZADD', KEYS[3], ARGV[3], ARGV[1])
    return 1
    """

    async def fail(self, job: Job, error: str, retryable: bool = True, now: Optional[float] = None) -> Job:
        """
        Record a failed attempt. The job goes back to waiting after its backoff
        delay, or to the dead set once attempts are exhausted or the failure is
        permanent.
        """
        now = time.time() if now is None else now
        job.attempts += 1
        job.last_error = (error or "")[:512]
        job.updated_at = utcnow()

        if not retryable or job.attempts >= job.max_attempts:
            job.state = JobState.DEAD
            target_key, score = self.dead_key, now
        else:
            job.state = JobState.WAITING
            delay = job.retry_policy.delay_for(job.attempts)
            target_key, score = self.waiting_key, now + delay

        settled = await self._require_client().eval(
            self._fail_lua,
            3,
            self.active_key,
            self.jobs_key,
            target_key,
            job.id,
            job.model_dump_json(),
            score,
        )
        if not settled:
            logger.warning(f"Job {job.id} is no longer claimed by this consumer; failure not recorded")
        elif job.state == JobState.DEAD:
            logger.error(f"Job {job.id} moved to dead set after {job.attempts} attempt(s): {job.last_error}")
        else:
            logger.warning(
                f"Job {job.id} failed (attempt {job.attempts}/{job.max_attempts}), retrying in {delay:.1f}s"
            )
        return job

    _requeue_stalled_lua = """
    -- KEYS[1]: active zset, KEYS[2]: waiting zset; ARGV[1]: now
    local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
    for _, job_id in ipairs(ids) do
        redis.call('ZREM', KEYS[1], job_id)
        redis.call('ZADD', KEYS[2], ARGV[1], job_id)
    end
    return #ids
    """

    async def requeue_stalled(self, now: Optional[float] = None) -> int:
        """Release claims whose deadline passed so another consumer can retry them."""
        now = time.time() if now is None else now
        released = await self._require_client().eval(
            self._requeue_stalled_lua, 2, self.active_key, self.waiting_key, now
        )
        if released:
            logger.warning(f"Released {released} stalled job(s) back to '{self.name}'")
        return int(released or 0)

    async def get_job(self, job_id: str) -> Optional[Job]:
        job_data = await self._require_client().hget(self.jobs_key, job_id)
        if not job_data:
            return None
        return Job.model_validate_json(job_data)

    async def get_queue_length(self) -> int:
        return await self._require_client().zcard(self.waiting_key)

    async def get_active_count(self) -> int:
        return await self._require_client().zcard(self.active_key)

    async def get_dead_letter_queue_length(self) -> int:
        return await self._require_client().zcard(self.dead_key)

    async def get_dead_jobs(self, limit: int = 10) -> List[Job]:
        job_ids = await self._require_client().zrange(self.dead_key, 0, limit - 1)
        jobs = []
        for job_id in job_ids:
            job = await self.get_job(job_id)
            if job:
                jobs.append(job)
        return jobs

    async def retry_dead_job(self, job_id: str) -> bool:
        """Move a parked job back to waiting with a fresh attempt budget."""
        redis = self._require_client()
        job = await self.get_job(job_id)
        if job is None or job.state != JobState.DEAD:
            return False
        job.attempts = 0
        job.state = JobState.WAITING
        job.updated_at = utcnow()
        async with redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self.dead_key, job_id)
            pipe.hset(self.jobs_key, job_id, job.model_dump_json())
            pipe.zadd(self.waiting_key, {job_id: time.time()})
            await pipe.execute()
        logger.info(f"Dead job {job_id} re-queued for manual retry")
        return True
