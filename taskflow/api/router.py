from fastapi import APIRouter
from taskflow.api import tasks, monitoring


def create_api_router() -> APIRouter:
    """
    Create and configure the main API router with all sub-routers
    """
    api_router = APIRouter()

    api_router.include_router(tasks.router)
    api_router.include_router(monitoring.router)

    return api_router


def configure_dependencies(task_service, job_queue):
    """
    Configure dependencies for all API routers
    """
    tasks.set_task_service(task_service)
    monitoring.set_job_queue(job_queue)
