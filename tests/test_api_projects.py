import json
from pathlib import Path
from typing import Any

from fastapi.testclient import TestClient

from agenthub_api.config import Settings
from agenthub_api.main import create_app
from agenthub_api.persistence import ProjectStateFiles
from agenthub_api.store import ProjectStore


class _FakeInspector:
    configured = True

    def __init__(self, snapshot: dict[str, Any] | None) -> None:
        self.snapshot = snapshot

    def inspect(self) -> dict[str, Any] | None:
        return self.snapshot


def _client(tmp_path: Path, inspector: _FakeInspector | None = None) -> TestClient:
    store = ProjectStore(ProjectStateFiles(tmp_path / "state"))
    app = create_app(store=store, inspector=inspector or _FakeInspector(None), settings=Settings())
    return TestClient(app)


def _create_task(client: TestClient, project_id: str, title: str, **fields: Any) -> dict[str, Any]:
    response = client.post(f"/projects/{project_id}/tasks", json={"title": title, **fields})
    assert response.status_code == 201
    return response.json()


def test_health_reports_persistence_state(tmp_path: Path) -> None:
    client = _client(tmp_path)

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "persistence": "ok", "inspector": "configured", "failed_writes": 0}


def test_health_reports_degraded_persistence(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("occupied", encoding="utf-8")
    store = ProjectStore(ProjectStateFiles(blocker))
    client = TestClient(create_app(store=store, inspector=_FakeInspector(None), settings=Settings()))

    assert client.post("/projects/p1/tasks", json={"title": "kept in memory"}).status_code == 201
    body = client.get("/health").json()

    assert body["persistence"] == "degraded"
    assert body["failed_writes"] >= 1
    assert len(client.get("/projects/p1/tasks").json()) == 1


def test_task_lifecycle_through_agent_result(tmp_path: Path) -> None:
    inspector = _FakeInspector({"repo_info": {"current_branch": "main", "repo_root": "/work/app"}})
    client = _client(tmp_path, inspector)

    task = _create_task(client, "p1", "Add login")
    assert task["status"] == "todo"
    assert task["source"] == "manual"
    assert task["priority"] == 5
    assert task["agent_hint"] == "coder"

    started = client.post(f"/projects/p1/tasks/{task['id']}/runs", json={"mode": "dry_run"})
    assert started.status_code == 201
    run = started.json()["run"]
    assert run["status"] == "waiting_for_user"
    assert run["metadata"]["mode"] == "dry_run"
    assert started.json()["handoff"]["goal"] == "Add login"
    assert started.json()["handoff"]["context"]["branch"] == "main"

    patched = client.patch(f"/projects/p1/runs/{run['id']}", json={"status": "success"})
    assert patched.status_code == 200
    finished_at = patched.json()["finished_at"]
    assert finished_at is not None

    result = client.post(
        f"/projects/p1/runs/{run['id']}/result",
        json={"result": {"status": "success", "summary": "Login page added"}},
    )
    assert result.status_code == 200
    body = result.json()
    assert body["task_id"] == task["id"]
    assert body["run"]["status"] == "success"
    assert body["run"]["finished_at"] == finished_at
    assert body["run"]["metadata"]["agent_result"]["summary"] == "Login page added"

    tasks = client.get("/projects/p1/tasks").json()
    assert tasks[0]["status"] == "done"

    event_types = [event["type"] for event in client.get("/projects/p1/events").json()]
    assert event_types.index("task_run_started") < event_types.index("task_run_finished")
    assert event_types[0] == "task_created_manual"

    logs = client.get(f"/projects/p1/runs/{run['id']}/logs").json()
    assert [entry["type"] for entry in logs] == ["info", "summary"]

    state_file = tmp_path / "state" / "p1.json"
    persisted = json.loads(state_file.read_text(encoding="utf-8"))
    assert persisted["task_runs"][0]["status"] == "success"


def test_result_without_status_is_rejected_and_run_unchanged(tmp_path: Path) -> None:
    client = _client(tmp_path)
    task = _create_task(client, "p1", "Add login")
    run = client.post(f"/projects/p1/tasks/{task['id']}/runs").json()["run"]

    response = client.post(f"/projects/p1/runs/{run['id']}/result", json={"result": {"summary": "done?"}})

    assert response.status_code == 422
    runs = client.get("/projects/p1/runs").json()
    assert runs[0]["status"] == "waiting_for_user"
    assert runs[0]["finished_at"] is None
    assert len(runs[0]["logs"]) == len(run["logs"])


def test_finished_run_cannot_be_reopened(tmp_path: Path) -> None:
    client = _client(tmp_path)
    task = _create_task(client, "p1", "Add login")
    run = client.post(f"/projects/p1/tasks/{task['id']}/runs").json()["run"]
    assert client.patch(f"/projects/p1/runs/{run['id']}", json={"status": "cancelled"}).status_code == 200

    response = client.patch(f"/projects/p1/runs/{run['id']}", json={"status": "running"})

    assert response.status_code == 422
    assert "cancelled" in response.json()["detail"]


def test_missing_entities_return_404(tmp_path: Path) -> None:
    client = _client(tmp_path)

    assert client.patch("/projects/p1/tasks/T_missing", json={"title": "x"}).status_code == 404
    assert client.post("/projects/p1/tasks/T_missing/runs").status_code == 404
    assert client.patch("/projects/p1/runs/run_missing", json={"status": "running"}).status_code == 404
    assert client.get("/projects/p1/runs/run_missing/logs").status_code == 404
    assert client.post("/projects/p1/runs/run_missing/logs", json={"message": "x"}).status_code == 404
    assert client.post(
        "/projects/p1/runs/run_missing/result",
        json={"result": {"status": "success"}},
    ).status_code == 404
    assert client.get("/projects/p1/tasks").json() == []


def test_task_input_validation(tmp_path: Path) -> None:
    client = _client(tmp_path)
    task = _create_task(client, "p1", "Add login")

    assert client.post("/projects/p1/tasks", json={"title": "x", "bogus": 1}).status_code == 422
    assert client.post("/projects/p1/tasks", json={"title": "x", "type": "design"}).status_code == 422
    assert client.patch(f"/projects/p1/tasks/{task['id']}", json={"title": None}).status_code == 422
    assert client.patch(f"/projects/p1/tasks/{task['id']}", json={"created_at": "never"}).status_code == 422

    duplicate = client.post("/projects/p1/tasks", json={"id": task["id"], "title": "again"})
    assert duplicate.status_code == 422


def test_task_list_is_sorted_by_priority(tmp_path: Path) -> None:
    client = _client(tmp_path)
    _create_task(client, "p1", "A", id="A", priority=5)
    _create_task(client, "p1", "B", id="B", priority=1)
    _create_task(client, "p1", "C", id="C", priority=5)

    assert [task["id"] for task in client.get("/projects/p1/tasks").json()] == ["B", "A", "C"]


def test_plan_import_is_atomic(tmp_path: Path) -> None:
    client = _client(tmp_path)

    rejected = client.post(
        "/projects/p1/plans",
        json={"tasks": [{"id": "T_x", "title": "one"}, {"id": "T_x", "title": "two"}]},
    )
    assert rejected.status_code == 422
    assert client.get("/projects/p1/tasks").json() == []

    created = client.post(
        "/projects/p1/plans",
        json={
            "project_title": "Auth",
            "summary": "Build auth in two steps",
            "tasks": [{"title": "Schema", "priority": 2}, {"title": "Form", "priority": 1}],
        },
    )
    assert created.status_code == 201
    assert [task["source"] for task in created.json()] == ["planner", "planner"]
    assert [task["title"] for task in client.get("/projects/p1/tasks").json()] == ["Form", "Schema"]
    messages = client.get("/projects/p1/messages").json()
    assert messages[-1]["source"] == "planner"
    assert messages[-1]["content"] == "Build auth in two steps"


def test_run_logs_and_filters(tmp_path: Path) -> None:
    client = _client(tmp_path)
    task = _create_task(client, "p1", "Add login")
    run = client.post(f"/projects/p1/tasks/{task['id']}/runs").json()["run"]

    appended = client.post(f"/projects/p1/runs/{run['id']}/logs", json={"type": "command", "message": "npm test"})
    assert appended.status_code == 201
    assert appended.json()["logs"][-1]["message"] == "npm test"

    assert len(client.get("/projects/p1/runs", params={"task_id": task["id"]}).json()) == 1
    assert client.get("/projects/p1/runs", params={"status": "running"}).json() == []
    assert client.get("/projects/p1/runs", params={"status": "bogus"}).status_code == 422


def test_messages_and_state_summary(tmp_path: Path) -> None:
    client = _client(tmp_path)
    posted = client.post("/projects/p1/messages", json={"content": "hello"})
    assert posted.status_code == 201
    assert posted.json()["role"] == "user"
    assert posted.json()["source"] == "ui"

    state = client.get("/projects/p1/state").json()

    assert state["id"] == "p1"
    assert [message["content"] for message in state["recent_messages"]] == ["hello"]
    assert state["repo_snapshot"] is None


def test_repo_snapshot_merge_and_refresh(tmp_path: Path) -> None:
    client = _client(tmp_path, _FakeInspector({"git_status": " M app.py"}))

    merged = client.patch("/projects/p1/repo-snapshot", json={"repo_info": {"current_branch": "main"}})
    assert merged.status_code == 200
    refreshed = client.post("/projects/p1/repo-snapshot/refresh")

    assert refreshed.status_code == 200
    body = refreshed.json()
    assert body["updated"] is True
    assert body["repo_snapshot"]["repo_info"] == {"current_branch": "main"}
    assert body["repo_snapshot"]["git_status"] == " M app.py"


def test_repo_snapshot_refresh_without_inspector_data(tmp_path: Path) -> None:
    client = _client(tmp_path)

    body = client.post("/projects/p1/repo-snapshot/refresh").json()

    assert body == {"updated": False, "repo_snapshot": None}


def test_projects_survive_app_restart(tmp_path: Path) -> None:
    first = _client(tmp_path)
    task = _create_task(first, "p1", "Add login")

    second = _client(tmp_path)

    assert [item["id"] for item in second.get("/projects/p1/tasks").json()] == [task["id"]]


def test_lifespan_builds_store_from_settings(tmp_path: Path) -> None:
    settings = Settings(state_dir=str(tmp_path / "lifespan-state"))
    app = create_app(inspector=_FakeInspector(None), settings=settings)

    with TestClient(app) as client:
        _create_task(client, "p1", "Add login")

    assert (tmp_path / "lifespan-state" / "p1.json").exists()
