from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime, timezone
import uuid


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in the tasks table."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self is TaskStatus.COMPLETED


NON_TERMINAL_STATUSES = (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TaskCreate(BaseModel):
    title: str
    user_id: uuid.UUID
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[datetime] = None


class TaskUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None


class Task(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    title: str
    description: Optional[str] = None
    status: TaskStatus
    priority: TaskPriority
    due_date: Optional[datetime] = None
    user_id: uuid.UUID
    created_at: datetime
    updated_at: datetime


class TaskFilter(BaseModel):
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)


class PageMeta(BaseModel):
    total: int
    page: int
    limit: int
    page_count: int
    has_next_page: bool
    has_prev_page: bool


class PaginatedTasks(BaseModel):
    data: List[Task]
    meta: PageMeta


class TaskStats(BaseModel):
    total: int = 0
    completed: int = 0
    in_progress: int = 0
    pending: int = 0
    high_priority: int = 0


class BatchAction(str, Enum):
    COMPLETE = "complete"
    DELETE = "delete"


class BatchRequest(BaseModel):
    task_ids: List[uuid.UUID]
    # Validated by the service so unknown actions surface as InvalidArgument
    action: str


class BatchItemResult(BaseModel):
    task_id: uuid.UUID
    success: bool
    result: Optional[str] = None  # updated | deleted | noop
    error: Optional[str] = None  # not_found

    @property
    def outcome(self) -> str:
        return self.result if self.success else self.error


class BatchResult(BaseModel):
    action: BatchAction
    requested: int
    affected: int
    not_found: int
    results: List[BatchItemResult]
