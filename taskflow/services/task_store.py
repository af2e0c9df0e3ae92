"""
Task repository over a SQLAlchemy session.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.orm import Session

from taskflow.core.errors import NotFound, ValidationError
from taskflow.models.orm import TaskRow
from taskflow.models.task import (
    NON_TERMINAL_STATUSES,
    Task,
    TaskCreate,
    TaskFilter,
    TaskPriority,
    TaskStats,
    TaskStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


class TaskStore:
    """
    Repository for task rows.

    Bound to one session; the caller's unit of work (Database.session()) owns
    commit and rollback, so several calls made with the same store share one
    transaction. Rows never leave this class: callers get Task read models.
    """

    def __init__(self, db: Session):
        self.db = db

    def create(self, spec: TaskCreate) -> Task:
        """Insert a new task row."""
        if not spec.title or not spec.title.strip():
            raise ValidationError("title is required")
        if spec.user_id is None:
            raise ValidationError("user_id is required")

        now = utcnow()
        row = TaskRow(
            title=spec.title.strip(),
            description=spec.description,
            status=spec.status,
            priority=spec.priority,
            due_date=spec.due_date,
            user_id=spec.user_id,
            created_at=now,
            updated_at=now,
        )
        self.db.add(row)
        self.db.flush()
        logger.debug(f"Task added id={row.id} status={row.status.value} due_date={row.due_date}")
        return Task.model_validate(row)

    def get(self, task_id: UUID) -> Task:
        row = self.db.get(TaskRow, task_id)
        if row is None:
            raise NotFound()
        return Task.model_validate(row)

    def get_status(self, task_id: UUID) -> Optional[TaskStatus]:
        """Read only the status column (pre-image for change detection)."""
        return self.db.execute(select(TaskRow.status).where(TaskRow.id == task_id)).scalar_one_or_none()

    def update_atomic(self, task_id: UUID, patch: Dict[str, Any]) -> Task:
        """Single UPDATE ... RETURNING; returns the post-update row image."""
        values = dict(patch)
        values["updated_at"] = utcnow()
        stmt = (
            update(TaskRow)
            .where(TaskRow.id == task_id)
            .values(**values)
            .returning(TaskRow)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        row = self.db.scalars(stmt).one_or_none()
        if row is None:
            raise NotFound()
        return Task.model_validate(row)

    def set_status(self, task_id: UUID, status: TaskStatus, as_of: Optional[datetime] = None) -> Optional[Task]:
        """
        Set the status in one conditional UPDATE.

        With as_of, the row is only written if it was not modified after as_of;
        None is returned when a newer write has superseded the caller's view.
        """
        conditions = [TaskRow.id == task_id]
        if as_of is not None:
            conditions.append(TaskRow.updated_at <= as_of)
        stmt = (
            update(TaskRow)
            .where(*conditions)
            .values(status=status, updated_at=utcnow())
            .returning(TaskRow)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        row = self.db.scalars(stmt).one_or_none()
        if row is None:
            if self.get_status(task_id) is None:
                raise NotFound()
            return None
        return Task.model_validate(row)

    def bulk_update_by_predicate(self, task_ids: Iterable[UUID], predicate, patch: Dict[str, Any]) -> List[UUID]:
        """
        Update rows in task_ids that also match predicate, in one statement.

        Returns exactly the ids that changed; ids that matched the id set but not
        the predicate are left untouched and are absent from the result.
        """
        ids = list(task_ids)
        if not ids:
            return []
        values = dict(patch)
        values.setdefault("updated_at", utcnow())
        stmt = (
            update(TaskRow)
            .where(TaskRow.id.in_(ids), predicate)
            .values(**values)
            .returning(TaskRow.id)
            .execution_options(synchronize_session=False)
        )
        return list(self.db.execute(stmt).scalars().all())

    def bulk_delete(self, task_ids: Iterable[UUID]) -> int:
        ids = list(task_ids)
        if not ids:
            return 0
        result = self.db.execute(
            delete(TaskRow).where(TaskRow.id.in_(ids)).execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def delete(self, task_id: UUID) -> int:
        return self.bulk_delete([task_id])

    def find_existing(self, task_ids: Iterable[UUID]) -> Dict[UUID, TaskStatus]:
        """Map of id -> status for the ids that exist."""
        ids = list(task_ids)
        if not ids:
            return {}
        rows = self.db.execute(select(TaskRow.id, TaskRow.status).where(TaskRow.id.in_(ids))).all()
        return {row.id: row.status for row in rows}

    def find_by_predicate(self, filters: TaskFilter, offset: int, limit: int) -> Tuple[List[Task], int]:
        conditions = []
        if filters.status is not None:
            conditions.append(TaskRow.status == filters.status)
        if filters.priority is not None:
            conditions.append(TaskRow.priority == filters.priority)

        total = self.db.execute(select(func.count()).select_from(TaskRow).where(*conditions)).scalar_one()
        rows = self.db.scalars(
            select(TaskRow)
            .where(*conditions)
            .order_by(TaskRow.created_at.desc(), TaskRow.id)
            .offset(offset)
            .limit(limit)
        ).all()
        return [Task.model_validate(row) for row in rows], int(total)

    def find_overdue(self, cutoff: datetime, limit: int, offset: int) -> List[Task]:
        """
        Non-terminal tasks due strictly before cutoff, ordered by id so that
        consecutive pages of one scan see a stable ordering.
        """
        rows = self.db.scalars(
            select(TaskRow)
            .where(TaskRow.due_date < cutoff, TaskRow.status.in_(NON_TERMINAL_STATUSES))
            .order_by(TaskRow.id)
            .offset(offset)
            .limit(limit)
        ).all()
        return [Task.model_validate(row) for row in rows]

    def stats(self) -> TaskStats:
        """Aggregate counts in a single query."""

        def count_where(condition):
            return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)

        row = self.db.execute(
            select(
                func.count().label("total"),
                count_where(TaskRow.status == TaskStatus.COMPLETED).label("completed"),
                count_where(TaskRow.status == TaskStatus.IN_PROGRESS).label("in_progress"),
                count_where(TaskRow.status == TaskStatus.PENDING).label("pending"),
                count_where(TaskRow.priority == TaskPriority.HIGH).label("high_priority"),
            ).select_from(TaskRow)
        ).one()
        return TaskStats(
            total=int(row.total),
            completed=int(row.completed),
            in_progress=int(row.in_progress),
            pending=int(row.pending),
            high_priority=int(row.high_priority),
        )
