# tests/conftest.py

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

import fakeredis
import pytest
import pytest_asyncio

from taskflow.core.config import Settings
from taskflow.core.database import Database
from taskflow.core.metrics import PrometheusMetrics
from taskflow.core.queue import RedisJobQueue
from taskflow.models.task import TaskCreate, TaskStatus, utcnow
from taskflow.services.task_service import TaskService


@dataclass
class FakeNotifier:
    """Records notifications instead of delivering them."""

    sent: list[tuple[uuid.UUID, uuid.UUID]] = field(default_factory=list)
    fail: bool = False

    async def notify(self, user_id: uuid.UUID, task_id: uuid.UUID) -> None:
        if self.fail:
            raise RuntimeError("mail server down")
        self.sent.append((user_id, task_id))


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'tasks.sqlite3'}",
        overdue_task_ttl_hours=0,
        overdue_scan_batch_size=500,
        job_attempts=3,
        job_backoff_seconds=2.0,
        batch_max_size=500,
    )


@pytest.fixture()
def database(settings: Settings):
    db = Database(settings.database_url)
    db.create_all()
    yield db
    db.dispose()


@pytest_asyncio.fixture()
async def redis_client():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture()
def queue(redis_client) -> RedisJobQueue:
    return RedisJobQueue(redis=redis_client, claim_timeout=30.0)


@pytest.fixture()
def offline_queue() -> RedisJobQueue:
    """A queue that was never connected: every enqueue reports a transport error."""
    return RedisJobQueue(redis_url="redis://unreachable:6379")


@pytest.fixture()
def metrics() -> PrometheusMetrics:
    return PrometheusMetrics()


@pytest.fixture()
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture()
def service(database: Database, queue: RedisJobQueue, settings: Settings) -> TaskService:
    return TaskService(database, queue, settings)


@pytest.fixture()
def user_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def make_task(database: Database, user_id: uuid.UUID):
    """Insert a task directly through the store (no queue side effects)."""
    from taskflow.services.task_store import TaskStore

    def _make(
        title: str = "write report",
        status: TaskStatus = TaskStatus.PENDING,
        due_date: datetime | None = None,
        **kwargs,
    ):
        spec = TaskCreate(title=title, user_id=user_id, status=status, due_date=due_date, **kwargs)
        with database.session() as db:
            return TaskStore(db).create(spec)

    return _make


@pytest.fixture()
def yesterday() -> datetime:
    return utcnow() - timedelta(days=1)
