# tests/test_worker.py

from __future__ import annotations

import asyncio
import time
import uuid

import pytest

from taskflow.core.database import Database
from taskflow.core.errors import NotFound
from taskflow.models.job import JobResult, JobState, JobType, RetryPolicy
from taskflow.models.task import TaskCreate, TaskStatus, TaskUpdate
from taskflow.services.task_service import TaskService
from taskflow.workers.overdue_scanner import OverdueScanner
from taskflow.workers.task_handlers import register_task_handlers
from taskflow.workers.worker import JobWorker


def processed(metrics, job_type: str, status: str) -> float:
    value = metrics.registry.get_sample_value(
        "jobs_processed_total", {"jobType": job_type, "status": status}
    )
    return value or 0.0


@pytest.fixture()
def worker(queue, metrics, service, notifier) -> JobWorker:
    w = JobWorker(queue, metrics, concurrency=2)
    register_task_handlers(w, service, notifier)
    return w


@pytest.mark.asyncio
async def test_overdue_task_flows_from_create_to_notification(
    service, queue, metrics, notifier, worker, database, user_id, yesterday
) -> None:
    task = await service.create(TaskCreate(title="late report", user_id=user_id, due_date=yesterday))

    scan = await OverdueScanner(database, queue, metrics).run_once()
    assert scan.detected == 1
    assert await queue.get_queue_length() == 2

    status_job = await queue.dequeue()
    assert status_job.type == JobType.STATUS_UPDATE.value
    status_result = await worker.process_job(status_job)
    assert status_result.success
    assert status_result.new_status == "pending"

    overdue_job = await queue.dequeue()
    assert overdue_job.type == JobType.PROCESS_OVERDUE_TASK.value
    overdue_result = await worker.process_job(overdue_job)
    assert overdue_result.success
    assert overdue_result.count == 1

    assert notifier.sent == [(user_id, task.id)]
    assert processed(metrics, JobType.STATUS_UPDATE.value, "success") == 1
    assert processed(metrics, JobType.PROCESS_OVERDUE_TASK.value, "success") == 1
    assert await queue.get_queue_length() == 0
    assert await queue.get_active_count() == 0


@pytest.mark.asyncio
async def test_status_update_job_applies_status(service, queue, worker, make_task) -> None:
    task = make_task()
    await queue.enqueue(
        JobType.STATUS_UPDATE.value,
        {"task_id": str(task.id), "status": "completed"},
        dedupe_key=f"{task.id}:completed",
    )

    result = await worker.process_job(await queue.dequeue())

    assert result.success
    assert service.find_one(task.id).status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_status_update_with_missing_data_is_not_retried(queue, metrics, worker) -> None:
    await queue.enqueue(JobType.STATUS_UPDATE.value, {"status": "completed"})
    job = await queue.dequeue()

    result = await worker.process_job(job)

    assert result.success is False
    assert result.error == "Missing required data"
    assert await queue.get_job(job.id) is None
    assert await queue.get_dead_letter_queue_length() == 0
    assert processed(metrics, JobType.STATUS_UPDATE.value, "error") == 1


@pytest.mark.asyncio
async def test_status_update_for_deleted_task_is_dropped(queue, worker, make_task, service) -> None:
    task = make_task()
    service.remove(task.id)
    await queue.enqueue(JobType.STATUS_UPDATE.value, {"task_id": str(task.id), "status": "completed"})

    result = await worker.process_job(await queue.dequeue())

    assert result.success is False
    assert result.error == "Task not found"
    assert await queue.get_queue_length() == 0


@pytest.mark.asyncio
async def test_unknown_job_type_goes_to_dead_set(queue, metrics, worker) -> None:
    await queue.enqueue("reticulate-splines", {})
    job = await queue.dequeue()

    assert await worker.process_job(job) is None

    parked = await queue.get_job(job.id)
    assert parked.state == JobState.DEAD
    assert parked.attempts == 1
    assert processed(metrics, "reticulate-splines", "error") == 1


@pytest.mark.asyncio
async def test_malformed_payload_goes_to_dead_set(queue, worker) -> None:
    await queue.enqueue(JobType.PROCESS_OVERDUE_TASK.value, {"task_id": "not-a-uuid"})
    job = await queue.dequeue()

    await worker.process_job(job)

    assert (await queue.get_job(job.id)).state == JobState.DEAD


@pytest.mark.asyncio
async def test_raising_handler_is_retried_then_parked(queue, metrics) -> None:
    worker = JobWorker(queue, metrics)
    calls = []

    async def flaky(payload):
        calls.append(payload)
        raise RuntimeError("downstream unavailable")

    worker.register_task_handler(JobType.OVERDUE_NOTIFICATION.value, flaky)
    await queue.enqueue(
        JobType.OVERDUE_NOTIFICATION.value, {}, retry_policy=RetryPolicy(max_attempts=2, backoff_delay=0.0)
    )

    first = await queue.dequeue()
    await worker.process_job(first)
    assert (await queue.get_job(first.id)).state == JobState.WAITING

    second = await queue.dequeue()
    await worker.process_job(second)

    parked = await queue.get_job(first.id)
    assert parked.state == JobState.DEAD
    assert parked.attempts == 2
    assert parked.last_error == "downstream unavailable"
    assert len(calls) == 2
    assert processed(metrics, JobType.OVERDUE_NOTIFICATION.value, "error") == 2


@pytest.mark.asyncio
async def test_overdue_task_completed_since_scan_is_not_notified(queue, worker, notifier, make_task, yesterday, service) -> None:
    task = make_task(due_date=yesterday)
    service.update_status(task.id, TaskStatus.COMPLETED)
    await queue.enqueue(JobType.PROCESS_OVERDUE_TASK.value, {"task_id": str(task.id)})

    result = await worker.process_job(await queue.dequeue())

    assert result.success
    assert result.count == 0
    assert notifier.sent == []


@pytest.mark.asyncio
@pytest.mark.parametrize("notify_users", [True, False])
async def test_overdue_notification_counts_and_optionally_notifies(
    queue, worker, notifier, make_task, yesterday, notify_users
) -> None:
    for i in range(3):
        make_task(f"late {i}", due_date=yesterday)
    make_task("done", status=TaskStatus.COMPLETED, due_date=yesterday)
    await queue.enqueue(JobType.OVERDUE_NOTIFICATION.value, {"notify_users": notify_users})

    result = await worker.process_job(await queue.dequeue())

    assert result.success
    assert result.count == 3
    assert len(notifier.sent) == (3 if notify_users else 0)


@pytest.mark.asyncio
async def test_notifier_failure_does_not_fail_the_job(queue, worker, notifier, make_task, yesterday) -> None:
    notifier.fail = True
    task = make_task(due_date=yesterday)
    await queue.enqueue(JobType.PROCESS_OVERDUE_TASK.value, {"task_id": str(task.id)})

    result = await worker.process_job(await queue.dequeue())

    assert result.success
    assert result.count == 1
    assert await queue.get_dead_letter_queue_length() == 0


@pytest.mark.asyncio
async def test_run_keeps_in_flight_jobs_within_concurrency(queue, metrics) -> None:
    worker = JobWorker(queue, metrics, concurrency=2)
    in_flight = 0
    peak = 0
    done = []

    async def slow(payload):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.02)
        in_flight -= 1
        done.append(payload)
        return JobResult(success=True, count=0)

    worker.register_task_handler(JobType.OVERDUE_NOTIFICATION.value, slow)
    for _ in range(6):
        await queue.enqueue(JobType.OVERDUE_NOTIFICATION.value, {})

    runner = asyncio.create_task(worker.run(poll_interval=0.01))
    for _ in range(200):
        if len(done) == 6:
            break
        await asyncio.sleep(0.01)
    worker.running = False
    await asyncio.wait_for(runner, timeout=5)

    assert len(done) == 6
    assert peak == 2
    assert processed(metrics, JobType.OVERDUE_NOTIFICATION.value, "success") == 6
    assert await queue.get_active_count() == 0


@pytest.mark.asyncio
async def test_store_error_in_handler_is_retried(tmp_path, queue, metrics, settings, notifier) -> None:
    # Schema never created: every store call fails
    broken = Database(f"sqlite:///{tmp_path / 'empty.sqlite3'}")
    worker = JobWorker(queue, metrics)
    register_task_handlers(worker, TaskService(broken, queue, settings), notifier)
    await queue.enqueue(JobType.STATUS_UPDATE.value, {"task_id": str(uuid.uuid4()), "status": "completed"})
    job = await queue.dequeue()

    try:
        assert await worker.process_job(job) is None
    finally:
        broken.dispose()

    retried = await queue.get_job(job.id)
    assert retried.state == JobState.WAITING
    assert retried.attempts == 1
    assert "Store error" in retried.last_error


async def drain(queue, worker) -> list:
    results = []
    while True:
        job = await queue.dequeue()
        if job is None:
            return results
        results.append(await worker.process_job(job))


@pytest.mark.asyncio
async def test_status_flip_back_keeps_latest_write(service, queue, worker, user_id) -> None:
    task = await service.create(TaskCreate(title="flip", user_id=user_id))
    await service.update(task.id, TaskUpdate(status=TaskStatus.IN_PROGRESS))
    await service.update(task.id, TaskUpdate(status=TaskStatus.PENDING))

    # Each status change is its own event
    assert await queue.get_queue_length() == 3

    results = await drain(queue, worker)

    assert service.find_one(task.id).status == TaskStatus.PENDING
    assert sorted(r.applied for r in results) == [False, False, True]
    assert all(r.success for r in results)


@pytest.mark.asyncio
async def test_older_status_event_processed_last_is_not_applied(service, queue, worker, make_task) -> None:
    task = make_task()
    await service.update(task.id, TaskUpdate(status=TaskStatus.IN_PROGRESS))
    await service.update(task.id, TaskUpdate(status=TaskStatus.COMPLETED))

    older = await queue.dequeue()
    newer = await queue.dequeue()
    assert (await worker.process_job(newer)).applied is True
    stale = await worker.process_job(older)

    assert stale.success is True
    assert stale.applied is False
    assert service.find_one(task.id).status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_store_bound_handler_does_not_block_the_loop(queue, metrics, notifier) -> None:
    class SlowService:
        def find_one(self, task_id):
            time.sleep(0.2)
            raise NotFound()

    worker = JobWorker(queue, metrics)
    register_task_handlers(worker, SlowService(), notifier)
    await queue.enqueue(JobType.PROCESS_OVERDUE_TASK.value, {"task_id": str(uuid.uuid4())})
    job = await queue.dequeue()

    ticks = 0

    async def ticker():
        nonlocal ticks
        while True:
            await asyncio.sleep(0.01)
            ticks += 1

    ticking = asyncio.create_task(ticker())
    try:
        result = await worker.process_job(job)
    finally:
        ticking.cancel()

    assert result.count == 0
    assert ticks >= 5
