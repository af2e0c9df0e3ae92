import logging
from fastapi import APIRouter, HTTPException
from fastapi.responses import Response
from typing import Dict, List

from prometheus_client import generate_latest, CONTENT_TYPE_LATEST, Gauge, CollectorRegistry

from taskflow.core.queue import RedisJobQueue, TRANSPORT_ERRORS
from taskflow.models.job import Job

logger = logging.getLogger(__name__)

# Initialize Prometheus metrics with a new registry
REGISTRY = CollectorRegistry()
QUEUE_SIZE = Gauge('queue_size', 'Jobs waiting in the task-processing queue', registry=REGISTRY)
JOBS_IN_PROGRESS = Gauge('jobs_in_progress', 'Jobs currently claimed by a worker', registry=REGISTRY)
DEAD_LETTER_QUEUE_SIZE = Gauge('dead_letter_queue_size', 'Jobs parked after exhausting retries', registry=REGISTRY)

router = APIRouter(tags=["monitoring"])

# This will be injected as dependency
job_queue: RedisJobQueue = None


def set_job_queue(queue: RedisJobQueue):
    """Set the job queue instance for this router"""
    global job_queue
    job_queue = queue


@router.get("/metrics")
async def prometheus_metrics():
    """
    Prometheus metrics endpoint - returns metrics in Prometheus format
    """
    try:
        QUEUE_SIZE.set(await job_queue.get_queue_length())
        JOBS_IN_PROGRESS.set(await job_queue.get_active_count())
        DEAD_LETTER_QUEUE_SIZE.set(await job_queue.get_dead_letter_queue_length())
    except TRANSPORT_ERRORS as e:
        # Still return the last known values
        logger.error(f"Error updating queue metrics: {e}")

    return Response(
        content=generate_latest(REGISTRY),
        media_type=CONTENT_TYPE_LATEST
    )


@router.get("/queue/stats")
async def get_queue_stats() -> Dict[str, int]:
    """
    Get statistics about the job queue.
    """
    return {
        "waiting": await job_queue.get_queue_length(),
        "active": await job_queue.get_active_count(),
        "dead": await job_queue.get_dead_letter_queue_length(),
    }


@router.get("/queue/dead", response_model=List[Job])
async def get_dead_jobs(limit: int = 10):
    """
    Get jobs parked in the dead set for manual inspection.
    """
    return await job_queue.get_dead_jobs(limit=limit)


@router.post("/queue/dead/{job_id}/retry")
async def retry_dead_job(job_id: str) -> Dict[str, str]:
    if not await job_queue.retry_dead_job(job_id):
        raise HTTPException(status_code=404, detail="Dead job not found")
    return {"job_id": job_id, "state": "waiting"}
