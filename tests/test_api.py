# tests/test_api.py

from __future__ import annotations

import uuid

import fakeredis
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from taskflow.api.errors import register_exception_handlers
from taskflow.api.router import configure_dependencies, create_api_router
from taskflow.core.queue import RedisJobQueue
from taskflow.services.task_service import TaskService


@pytest.fixture()
def api_queue() -> RedisJobQueue:
    # Built outside any event loop; the client connects lazily inside the TestClient's loop
    return RedisJobQueue(redis=fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True))


@pytest.fixture()
def client(database, api_queue, settings):
    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(create_api_router())
    configure_dependencies(TaskService(database, api_queue, settings), api_queue)
    with TestClient(app) as test_client:
        yield test_client


def create(client, user_id, **fields):
    body = {"title": "review PR", "user_id": str(user_id), **fields}
    response = client.post("/tasks", json=body)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_get_update_delete(client, user_id) -> None:
    task = create(client, user_id, priority="high")
    assert task["status"] == "pending"
    assert task["priority"] == "high"

    fetched = client.get(f"/tasks/{task['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["title"] == "review PR"

    patched = client.patch(f"/tasks/{task['id']}", json={"status": "in_progress"})
    assert patched.status_code == 200
    assert patched.json()["status"] == "in_progress"

    assert client.delete(f"/tasks/{task['id']}").status_code == 204
    assert client.get(f"/tasks/{task['id']}").status_code == 404


def test_list_filters_and_paginates(client, user_id) -> None:
    for i in range(3):
        create(client, user_id, title=f"task {i}", priority="low")
    create(client, user_id, title="urgent", priority="high")

    body = client.get("/tasks", params={"priority": "low", "page": 1, "limit": 2}).json()

    assert body["meta"]["total"] == 3
    assert body["meta"]["page_count"] == 2
    assert body["meta"]["has_next_page"] is True
    assert [t["title"] for t in body["data"]] == ["task 2", "task 1"]


def test_missing_task_returns_error_envelope(client) -> None:
    response = client.patch(f"/tasks/{uuid.uuid4()}", json={"title": "x"})

    assert response.status_code == 404
    body = response.json()
    assert body["success"] is False
    assert body["statusCode"] == 404
    assert body["method"] == "PATCH"
    assert body["message"] == "Task not found"
    assert body["path"].startswith("/tasks/")


def test_stats(client, user_id) -> None:
    create(client, user_id, priority="high")
    create(client, user_id, status="completed")

    assert client.get("/tasks/stats").json() == {
        "total": 2,
        "completed": 1,
        "in_progress": 0,
        "pending": 1,
        "high_priority": 1,
    }


def test_batch_complete(client, user_id) -> None:
    a = create(client, user_id)
    missing = str(uuid.uuid4())

    response = client.post("/tasks/batch", json={"task_ids": [a["id"], missing], "action": "complete"})

    assert response.status_code == 200
    body = response.json()
    assert body["affected"] == 1
    assert body["not_found"] == 1
    assert [r["success"] for r in body["results"]] == [True, False]
    assert client.get(f"/tasks/{a['id']}").json()["status"] == "completed"


@pytest.mark.parametrize(
    "payload",
    [
        {"task_ids": [], "action": "complete"},
        {"task_ids": [str(uuid.uuid4())], "action": "archive"},
    ],
)
def test_batch_rejects_bad_requests(client, payload) -> None:
    response = client.post("/tasks/batch", json=payload)

    assert response.status_code == 400
    assert response.json()["statusCode"] == 400


def test_queue_stats_and_dead_jobs(client, user_id) -> None:
    create(client, user_id)

    assert client.get("/queue/stats").json() == {"waiting": 1, "active": 0, "dead": 0}
    assert client.get("/queue/dead").json() == []
    assert client.post("/queue/dead/nope/retry").status_code == 404

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "queue_size 1.0" in metrics.text
