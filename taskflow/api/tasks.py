from fastapi import APIRouter, Depends, Response
from typing import Optional
from uuid import UUID

from taskflow.models.task import (
    BatchRequest,
    BatchResult,
    PaginatedTasks,
    Task,
    TaskCreate,
    TaskFilter,
    TaskPriority,
    TaskStats,
    TaskStatus,
    TaskUpdate,
)
from taskflow.services.task_service import TaskService

router = APIRouter(prefix="/tasks", tags=["tasks"])

# This will be injected as dependency
task_service: TaskService = None


def set_task_service(service: TaskService):
    """Set the task service instance for this router"""
    global task_service
    task_service = service


def get_filters(
    status: Optional[TaskStatus] = None,
    priority: Optional[TaskPriority] = None,
    page: int = 1,
    limit: int = 10,
) -> TaskFilter:
    return TaskFilter(status=status, priority=priority, page=page, limit=limit)


@router.post("", response_model=Task, status_code=201)
async def create_task(task_create: TaskCreate):
    """
    Create a new task and queue its status-update job.
    """
    return await task_service.create(task_create)


@router.get("", response_model=PaginatedTasks)
def list_tasks(filters: TaskFilter = Depends(get_filters)):
    """
    List tasks, newest first, with optional status/priority filters.
    """
    return task_service.find_all(filters)


@router.get("/stats", response_model=TaskStats)
def get_stats():
    return task_service.get_stats()


@router.post("/batch", response_model=BatchResult)
async def batch_process(request: BatchRequest):
    """
    Complete or delete many tasks; one result per distinct id.
    """
    return await task_service.batch_process(request.task_ids, request.action)


@router.get("/{task_id}", response_model=Task)
def get_task(task_id: UUID):
    return task_service.find_one(task_id)


@router.patch("/{task_id}", response_model=Task)
async def update_task(task_id: UUID, task_update: TaskUpdate):
    return await task_service.update(task_id, task_update)


@router.delete("/{task_id}", status_code=204)
def delete_task(task_id: UUID):
    task_service.remove(task_id)
    return Response(status_code=204)
