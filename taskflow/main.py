import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from taskflow.api.errors import register_exception_handlers
from taskflow.api.router import create_api_router, configure_dependencies
from taskflow.core.config import Settings
from taskflow.core.database import Database
from taskflow.core.queue import RedisJobQueue
from taskflow.models.job import RetryPolicy
from taskflow.services.task_service import TaskService

settings = Settings.from_env()
logging.basicConfig(level=settings.log_level)

app = FastAPI(
    title="Taskflow",
    description="Task management with queued status propagation",
    version="1.0.0"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

database = Database(settings.database_url)
job_queue = RedisJobQueue(
    settings.redis_url,
    name=settings.queue_name,
    default_retry_policy=RetryPolicy(max_attempts=settings.job_attempts, backoff_delay=settings.job_backoff_seconds),
    claim_timeout=settings.job_claim_timeout_seconds,
)


@app.on_event("startup")
async def startup_event():
    database.check_connection()
    await job_queue.connect()
    # Configure dependencies for API routers
    configure_dependencies(TaskService(database, job_queue, settings), job_queue)


@app.on_event("shutdown")
async def shutdown_event():
    await job_queue.disconnect()
    database.dispose()


# Include the API router
api_router = create_api_router()
app.include_router(api_router)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
