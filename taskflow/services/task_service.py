import asyncio
import logging
import math
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from taskflow.core.config import Settings
from taskflow.core.database import Database
from taskflow.core.errors import InvalidArgument, NotFound
from taskflow.core.queue import RedisJobQueue
from taskflow.models.job import JobSpec, JobType, RetryPolicy
from taskflow.models.orm import TaskRow
from taskflow.models.task import (
    BatchAction,
    BatchItemResult,
    BatchResult,
    PageMeta,
    PaginatedTasks,
    Task,
    TaskCreate,
    TaskFilter,
    TaskStats,
    TaskStatus,
    TaskUpdate,
    utcnow,
)
from taskflow.services.task_store import TaskStore

logger = logging.getLogger(__name__)

# Fields a patch may explicitly clear
NULLABLE_FIELDS = ("description", "due_date")


def status_update_key(task_id: UUID, status: TaskStatus, updated_at: datetime) -> str:
    # One key per status-change event; retries of that event coalesce
    return f"{task_id}:{status.value}:{updated_at.isoformat()}"


def status_update_payload(task_id: UUID, status: TaskStatus, updated_at: datetime) -> Dict[str, str]:
    return {"task_id": str(task_id), "status": status.value, "updated_at": updated_at.isoformat()}


class TaskService:
    """
    Coordinates task mutations in the database with side-effect jobs on the queue.

    Store writes are transactional. Enqueues are best-effort: a failed enqueue is
    logged and never turns a successful mutation into an error. Lost side effects
    are healed by idempotent consumers and the periodic overdue scan.
    """

    def __init__(self, database: Database, queue: RedisJobQueue, settings: Optional[Settings] = None):
        self.database = database
        self.queue = queue
        self.settings = settings or Settings()
        self.retry_policy = RetryPolicy(
            max_attempts=self.settings.job_attempts,
            backoff_delay=self.settings.job_backoff_seconds,
        )

    async def _enqueue_status_update(self, task: Task):
        result = await self.queue.enqueue(
            JobType.STATUS_UPDATE.value,
            status_update_payload(task.id, task.status, task.updated_at),
            dedupe_key=status_update_key(task.id, task.status, task.updated_at),
            retry_policy=self.retry_policy,
        )
        if not result.ok:
            logger.warning(f"Queue unavailable; status update for task {task.id} not queued: {result.error}")

    async def create(self, spec: TaskCreate) -> Task:
        async with self.database.async_session() as db:
            task = await asyncio.to_thread(TaskStore(db).create, spec)
            # Enqueued after the insert is flushed but before commit; a later
            # rollback can leave a job for a missing task, which consumers tolerate.
            await self._enqueue_status_update(task)
        logger.info(f"Created task {task.id}")
        return task

    def find_all(self, filters: TaskFilter) -> PaginatedTasks:
        offset = (filters.page - 1) * filters.limit
        with self.database.session() as db:
            items, total = TaskStore(db).find_by_predicate(filters, offset=offset, limit=filters.limit)

        page_count = math.ceil(total / filters.limit)
        return PaginatedTasks(
            data=items,
            meta=PageMeta(
                total=total,
                page=filters.page,
                limit=filters.limit,
                page_count=page_count,
                has_next_page=filters.page < page_count,
                has_prev_page=filters.page > 1,
            ),
        )

    def find_one(self, task_id: UUID) -> Task:
        with self.database.session() as db:
            return TaskStore(db).get(task_id)

    async def update(self, task_id: UUID, patch: TaskUpdate) -> Task:
        changes = {
            field: value
            for field, value in patch.model_dump(exclude_unset=True).items()
            if value is not None or field in NULLABLE_FIELDS
        }
        before, updated = await asyncio.to_thread(self._apply_update, task_id, changes)
        status_changed = "status" in changes and updated.status != before
        if status_changed:
            await self._enqueue_status_update(updated)
        return updated

    def _apply_update(self, task_id: UUID, changes: Dict) -> Tuple[TaskStatus, Task]:
        with self.database.session() as db:
            store = TaskStore(db)
            before = store.get_status(task_id)
            if before is None:
                raise NotFound()
            return before, store.update_atomic(task_id, changes)

    def remove(self, task_id: UUID):
        with self.database.session() as db:
            affected = TaskStore(db).delete(task_id)
        if not affected:
            raise NotFound()
        logger.info(f"Deleted task {task_id}")

    def update_status(self, task_id: UUID, status: TaskStatus, as_of: Optional[datetime] = None) -> Optional[Task]:
        """
        Terminal effect of a status-update job. Returns None when the task was
        modified after as_of, so a stale event never overwrites a newer write.
        """
        with self.database.session() as db:
            return TaskStore(db).set_status(task_id, status, as_of=as_of)

    def overdue_cutoff(self, now: Optional[datetime] = None) -> datetime:
        now = now or utcnow()
        return now - timedelta(hours=self.settings.overdue_task_ttl_hours)

    def find_overdue_tasks(self, limit: int, offset: int) -> List[Task]:
        with self.database.session() as db:
            return TaskStore(db).find_overdue(self.overdue_cutoff(), limit=limit, offset=offset)

    def get_stats(self) -> TaskStats:
        with self.database.session() as db:
            return TaskStore(db).stats()

    async def batch_process(self, task_ids: List[UUID], action: str) -> BatchResult:
        """Apply one action to many tasks, reporting one outcome per distinct id."""
        if not task_ids:
            raise InvalidArgument("No task IDs provided")
        try:
            batch_action = BatchAction(action)
        except ValueError:
            raise InvalidArgument(f"Unknown action: {action}")

        ids = list(dict.fromkeys(task_ids))
        if len(ids) > self.settings.batch_max_size:
            raise InvalidArgument(f"At most {self.settings.batch_max_size} task IDs per batch")

        if batch_action == BatchAction.COMPLETE:
            result, changed_ids, completed_at = await asyncio.to_thread(self._complete_many, ids)
            if changed_ids:
                await self._enqueue_completed(changed_ids, completed_at)
        else:
            result = await asyncio.to_thread(self._delete_many, ids)

        logger.info(
            f"Batch {batch_action.value}: requested={result.requested} "
            f"affected={result.affected} not_found={result.not_found}"
        )
        return result

    def _complete_many(self, ids: List[UUID]) -> Tuple[BatchResult, List[UUID], datetime]:
        completed_at = utcnow()
        with self.database.session() as db:
            store = TaskStore(db)
            existing = store.find_existing(ids)
            changed_ids = store.bulk_update_by_predicate(
                existing.keys(),
                TaskRow.status != TaskStatus.COMPLETED,
                {"status": TaskStatus.COMPLETED, "updated_at": completed_at},
            )

        changed = set(changed_ids)
        results = []
        for task_id in ids:
            if task_id not in existing:
                results.append(BatchItemResult(task_id=task_id, success=False, error="not_found"))
            elif task_id in changed:
                results.append(BatchItemResult(task_id=task_id, success=True, result="updated"))
            else:
                results.append(BatchItemResult(task_id=task_id, success=True, result="noop"))

        batch = BatchResult(
            action=BatchAction.COMPLETE,
            requested=len(ids),
            affected=len(changed),
            not_found=len(ids) - len(existing),
            results=results,
        )
        return batch, changed_ids, completed_at

    def _delete_many(self, ids: List[UUID]) -> BatchResult:
        with self.database.session() as db:
            store = TaskStore(db)
            existing = store.find_existing(ids)
            affected = store.bulk_delete(existing.keys())

        results = [
            BatchItemResult(task_id=task_id, success=True, result="deleted")
            if task_id in existing
            else BatchItemResult(task_id=task_id, success=False, error="not_found")
            for task_id in ids
        ]
        return BatchResult(
            action=BatchAction.DELETE,
            requested=len(ids),
            affected=affected,
            not_found=len(ids) - len(existing),
            results=results,
        )

    async def _enqueue_completed(self, task_ids: List[UUID], completed_at: datetime):
        specs = [
            JobSpec(
                type=JobType.STATUS_UPDATE.value,
                payload=status_update_payload(task_id, TaskStatus.COMPLETED, completed_at),
                dedupe_key=status_update_key(task_id, TaskStatus.COMPLETED, completed_at),
                retry_policy=self.retry_policy,
            )
            for task_id in task_ids
        ]
        result = await self.queue.enqueue_bulk(specs)
        if not result.ok:
            logger.warning(
                f"Bulk enqueue partially failed: queued={result.queued} "
                f"skipped={result.skipped} failed={result.failed}"
            )
