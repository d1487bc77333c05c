from __future__ import annotations

from fastapi.testclient import TestClient

from fleettasks.core.engine import TaskEngine
from fleettasks.core.gateway import create_app
from fleettasks.core.log_buffer import LogCoalescer


def _client(fake_timer) -> tuple[TestClient, TaskEngine]:
    engine = TaskEngine(logs=LogCoalescer(timer=fake_timer))
    return TestClient(create_app(engine=engine)), engine


def test_health(fake_timer) -> None:
    client, _ = _client(fake_timer)
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_begin_task_and_fetch(fake_timer) -> None:
    client, _ = _client(fake_timer)
    response = client.post("/tasks", json={"kind": "shell", "title": "Shell: ls", "serials": ["A", "B"]})
    assert response.status_code == 200
    task_id = response.json()["task_id"]

    task = client.get(f"/tasks/{task_id}").json()
    assert task["status"] == "running"
    assert sorted(task["devices"]) == ["A", "B"]

    listed = client.get("/tasks", params={"kind": "shell"}).json()["tasks"]
    assert [t["id"] for t in listed] == [task_id]


def test_begin_task_rejects_bad_input(fake_timer) -> None:
    client, _ = _client(fake_timer)
    assert client.post("/tasks", json={"kind": "reboot", "title": "x", "serials": ["A"]}).status_code == 422
    assert client.post("/tasks", json={"kind": "shell", "title": "x", "serials": []}).status_code == 422


def test_unknown_task_404(fake_timer) -> None:
    client, _ = _client(fake_timer)
    assert client.get("/tasks/task-nope").status_code == 404
    assert client.post("/tasks/task-nope/trace", json={}).status_code == 404


def test_transfer_events_by_trace(fake_timer) -> None:
    client, _ = _client(fake_timer)
    task_id = client.post("/tasks", json={"kind": "file_pull", "title": "Pull", "serials": ["A"]}).json()["task_id"]
    trace_id = client.post(f"/tasks/{task_id}/trace", json={}).json()["trace_id"]
    assert trace_id.startswith("trace-")

    progress = {"event": "progress", "kind": "file_pull", "trace_id": trace_id, "progress": 40}
    assert client.post("/events", json=progress).json() == {"applied": True}
    complete = {
        "event": "complete",
        "kind": "file_pull",
        "trace_id": trace_id,
        "result": {"success": True, "output_path": "/tmp/out.bin"},
    }
    assert client.post("/events", json=complete).json() == {"applied": True}

    task = client.get(f"/tasks/{task_id}").json()
    assert task["status"] == "success"
    assert task["devices"]["A"]["output_path"] == "/tmp/out.bin"

    notes = client.get("/notifications").json()["notifications"]
    assert [n["task_id"] for n in notes] == [task_id]


def test_events_validation(fake_timer) -> None:
    client, _ = _client(fake_timer)
    assert client.post("/events", json={"event": "progress", "progress": 5}).status_code == 422
    miss = {"event": "progress", "kind": "file_pull", "trace_id": "trace-none", "progress": 5}
    assert client.post("/events", json=miss).json() == {"applied": False}


def test_status_and_clear_completed(fake_timer) -> None:
    client, _ = _client(fake_timer)
    task_id = client.post("/tasks", json={"kind": "bugreport", "title": "Bugreport", "serials": ["A"]}).json()["task_id"]
    assert client.post(f"/tasks/{task_id}/status", json={"status": "paused"}).status_code == 422

    task = client.post(f"/tasks/{task_id}/status", json={"status": "cancelled"}).json()
    assert task["status"] == "cancelled"
    assert task["devices"]["A"]["status"] == "cancelled"

    assert client.get("/tasks/resolve/bugreport").json() == {"kind": "bugreport", "task_id": task_id}
    assert client.post("/tasks/clear-completed").json() == {"cleared": 1}
    assert client.get("/tasks").json() == {"tasks": []}


def test_logs(fake_timer) -> None:
    client, _ = _client(fake_timer)
    client.post("/events", json={"event": "line-batch", "serial": "A", "lines": ["a", "b", "c"]})
    assert client.get("/logs/A").json() == {"serial": "A", "lines": []}
    fake_timer.fire()
    lines = client.get("/logs/A", params={"after": 1}).json()["lines"]
    assert lines == [{"id": 2, "text": "b"}, {"id": 3, "text": "c"}]
    assert client.delete("/logs/A").json() == {"status": "ok"}
    assert client.get("/logs/A").json()["lines"] == []


def test_lifespan_flushes_on_shutdown(tmp_path, timer_factory) -> None:
    from fleettasks.core.persistence import TaskStateStore

    store = TaskStateStore(str(tmp_path / "tasks.json"), timer=timer_factory("task-state-save"))
    engine = TaskEngine(store=store, logs=LogCoalescer(timer=timer_factory("log-flush")))
    with TestClient(create_app(engine=engine)) as client:
        client.post("/tasks", json={"kind": "shell", "title": "Shell", "serials": ["A"]})
        assert timer_factory.timers["task-state-save"].is_armed()
        assert not (tmp_path / "tasks.json").exists()
    assert (tmp_path / "tasks.json").exists()
