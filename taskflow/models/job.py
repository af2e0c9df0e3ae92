from enum import Enum
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, Field, ValidationError
from datetime import datetime
import uuid

from taskflow.core.errors import JobPermanentFailure
from taskflow.models.task import utcnow


class JobType(str, Enum):
    STATUS_UPDATE = "task-status-update"
    PROCESS_OVERDUE_TASK = "process-overdue-task"
    OVERDUE_NOTIFICATION = "overdue-tasks-notification"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DEAD = "dead"


class RetryPolicy(BaseModel):
    max_attempts: int = 3
    backoff_type: str = "exponential"
    backoff_delay: float = 2.0  # seconds

    def delay_for(self, attempts: int) -> float:
        """Seconds to wait before the next try, given how many attempts already failed."""
        if self.backoff_type == "fixed":
            return self.backoff_delay
        return self.backoff_delay * (2 ** max(0, attempts - 1))


# Payload variants, one per job type. Fields the producer may omit are optional
# so the handler can report missing data instead of failing to parse.

class StatusUpdatePayload(BaseModel):
    task_id: Optional[uuid.UUID] = None
    status: Optional[str] = None
    # updated_at of the write that produced this event
    updated_at: Optional[datetime] = None


class OverdueTaskPayload(BaseModel):
    task_id: uuid.UUID


class OverdueNotificationPayload(BaseModel):
    notify_users: bool = False


JobPayload = Union[StatusUpdatePayload, OverdueTaskPayload, OverdueNotificationPayload]

PAYLOAD_MODELS = {
    JobType.STATUS_UPDATE: StatusUpdatePayload,
    JobType.PROCESS_OVERDUE_TASK: OverdueTaskPayload,
    JobType.OVERDUE_NOTIFICATION: OverdueNotificationPayload,
}


def make_job_id(job_type: str, dedupe_key: Optional[str] = None) -> str:
    """Dedupe keys are scoped to the job type; keyless jobs get a random id."""
    if dedupe_key is None:
        return f"{job_type}:{uuid.uuid4()}"
    return f"{job_type}:{dedupe_key}"


class Job(BaseModel):
    id: str
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    attempts: int = 0
    state: JobState = JobState.WAITING
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def max_attempts(self) -> int:
        return self.retry_policy.max_attempts

    def parse_payload(self) -> JobPayload:
        """Return the typed payload for this job's type."""
        try:
            model = PAYLOAD_MODELS[JobType(self.type)]
        except ValueError:
            raise JobPermanentFailure(f"Unknown job type: {self.type}")
        try:
            return model.model_validate(self.payload)
        except ValidationError as e:
            raise JobPermanentFailure(f"Malformed payload for {self.type}: {e}")


class JobSpec(BaseModel):
    """One item of a bulk enqueue."""

    type: str
    payload: Dict[str, Any]
    dedupe_key: Optional[str] = None
    retry_policy: Optional[RetryPolicy] = None


class JobResult(BaseModel):
    success: bool
    error: Optional[str] = None
    task_id: Optional[uuid.UUID] = None
    new_status: Optional[str] = None
    count: Optional[int] = None
    applied: bool = True


class EnqueueResult(BaseModel):
    job_id: str
    queued: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BulkEnqueueResult(BaseModel):
    queued: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0
