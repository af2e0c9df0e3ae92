import asyncio
import logging
from typing import Awaitable, Callable, Dict, Any

from sqlalchemy.exc import SQLAlchemyError

from taskflow.core.errors import JobHandlerFailure, NotFound
from taskflow.models.job import (
    JobResult,
    JobType,
    OverdueNotificationPayload,
    OverdueTaskPayload,
    StatusUpdatePayload,
)
from taskflow.models.task import TaskStatus
from taskflow.services.notifications import Notifier
from taskflow.services.task_service import TaskService

logger = logging.getLogger(__name__)

OVERDUE_NOTIFICATION_BATCH_SIZE = 100


async def _notify_quietly(notifier: Notifier, user_id, task_id):
    # Fire-and-forget: a notification failure never fails the job
    try:
        await notifier.notify(user_id, task_id)
    except Exception as e:
        logger.error(f"Notification for task {task_id} failed: {e}")


def make_status_update_handler(service: TaskService) -> Callable[[StatusUpdatePayload], Awaitable[JobResult]]:
    async def handle_status_update(payload: StatusUpdatePayload) -> JobResult:
        if not payload.task_id or not payload.status:
            logger.warning("Missing required task_id or status in job data")
            return JobResult(success=False, error="Missing required data")

        try:
            status = TaskStatus(payload.status)
        except ValueError:
            logger.warning(f"Invalid status {payload.status!r} for task {payload.task_id}")
            return JobResult(success=False, task_id=payload.task_id, error="Invalid status")

        try:
            task = await asyncio.to_thread(service.update_status, payload.task_id, status, payload.updated_at)
        except NotFound:
            # Deleted after the job was queued; retrying cannot help
            logger.info(f"Task {payload.task_id} no longer exists; status update dropped")
            return JobResult(success=False, task_id=payload.task_id, error="Task not found")
        except SQLAlchemyError as e:
            raise JobHandlerFailure(f"Store error updating task {payload.task_id}: {e}") from e

        if task is None:
            logger.info(f"Task {payload.task_id} changed after this event; {status.value} not applied")
            return JobResult(success=True, task_id=payload.task_id, new_status=status.value, applied=False)

        return JobResult(success=True, task_id=task.id, new_status=task.status.value)

    return handle_status_update


def make_overdue_task_handler(
    service: TaskService, notifier: Notifier
) -> Callable[[OverdueTaskPayload], Awaitable[JobResult]]:
    async def handle_overdue_task(payload: OverdueTaskPayload) -> JobResult:
        try:
            task = await asyncio.to_thread(service.find_one, payload.task_id)
        except NotFound:
            return JobResult(success=True, task_id=payload.task_id, count=0)
        except SQLAlchemyError as e:
            raise JobHandlerFailure(f"Store error reading task {payload.task_id}: {e}") from e

        # Completed since the scan found it
        if task.status.is_terminal:
            return JobResult(success=True, task_id=task.id, count=0)

        await _notify_quietly(notifier, task.user_id, task.id)
        return JobResult(success=True, task_id=task.id, count=1)

    return handle_overdue_task


def make_overdue_notification_handler(
    service: TaskService, notifier: Notifier, batch_size: int = OVERDUE_NOTIFICATION_BATCH_SIZE
) -> Callable[[OverdueNotificationPayload], Awaitable[JobResult]]:
    async def handle_overdue_notification(payload: OverdueNotificationPayload) -> JobResult:
        offset = 0
        total_processed = 0

        while True:
            overdue_tasks = await asyncio.to_thread(service.find_overdue_tasks, batch_size, offset)
            if not overdue_tasks:
                break

            if payload.notify_users:
                for task in overdue_tasks:
                    await _notify_quietly(notifier, task.user_id, task.id)

            total_processed += len(overdue_tasks)
            offset += batch_size

        logger.info(f"Processed {total_processed} overdue tasks")
        return JobResult(success=True, count=total_processed)

    return handle_overdue_notification


def register_task_handlers(worker, service: TaskService, notifier: Notifier):
    """Register the built-in job handlers with the worker"""
    handlers: Dict[JobType, Any] = {
        JobType.STATUS_UPDATE: make_status_update_handler(service),
        JobType.PROCESS_OVERDUE_TASK: make_overdue_task_handler(service, notifier),
        JobType.OVERDUE_NOTIFICATION: make_overdue_notification_handler(service, notifier),
    }
    for job_type, handler in handlers.items():
        worker.register_task_handler(job_type.value, handler)
