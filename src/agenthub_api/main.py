from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from agenthub_api import workflows
from agenthub_api.config import Settings, configure_logging
from agenthub_api.errors import ValidationError
from agenthub_api.persistence import ProjectStateFiles
from agenthub_api.repo_inspector import RepoInspector
from agenthub_api.schemas import (
    AgentResultCallback,
    AgentResultResponse,
    Event,
    LogEntry,
    LogEntryCreate,
    Message,
    MessageCreate,
    PlanImport,
    ProjectSummary,
    RepoSnapshot,
    RepoSnapshotRefresh,
    StartRunRequest,
    StartRunResponse,
    Task,
    TaskCreate,
    TaskRun,
    TaskRunStatus,
    TaskRunUpdate,
    TaskUpdate,
)
from agenthub_api.store import ProjectStore


def create_app(
    *,
    store: ProjectStore | None = None,
    inspector: workflows.SnapshotSource | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.log_level)
        owns_store = getattr(app.state, "store", None) is None
        if owns_store:
            app.state.store = ProjectStore(
                ProjectStateFiles(settings.state_dir),
                default_project_id=settings.default_project_id,
                event_replay_limit=settings.event_replay_limit,
                recent_items_limit=settings.recent_items_limit,
            )
        try:
            yield
        finally:
            if owns_store:
                app.state.store.close()
                app.state.store = None

    app = FastAPI(title="agent hub api", version="0.1.0", lifespan=lifespan)
    app.state.store = store
    app.state.inspector = inspector if inspector is not None else RepoInspector.from_settings(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_origin_regex=settings.cors_allow_origin_regex,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_routes(app)
    return app


def get_store(request: Request) -> ProjectStore:
    store = request.app.state.store
    if store is None:
        raise HTTPException(status_code=503, detail="project store is not initialized")
    return store


def get_inspector(request: Request) -> workflows.SnapshotSource | None:
    return request.app.state.inspector


def _not_found(kind: str, identifier: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"{kind} {identifier} not found")


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    def health(
        store: ProjectStore = Depends(get_store),
        inspector: workflows.SnapshotSource | None = Depends(get_inspector),
    ) -> dict[str, Any]:
        files = store.files
        persistence = "memory" if files is None else ("ok" if files.healthy else "degraded")
        inspection = "configured" if inspector is not None and inspector.configured else "not_configured"
        body: dict[str, Any] = {"status": "ok", "persistence": persistence, "inspector": inspection}
        if files is not None:
            body["failed_writes"] = files.failed_writes
        return body

    @app.get("/projects/{project_id}/state", response_model=ProjectSummary)
    def get_project_state(project_id: str, store: ProjectStore = Depends(get_store)) -> ProjectSummary:
        return store.get_project_summary(project_id)

    @app.get("/projects/{project_id}/tasks", response_model=list[Task])
    def list_tasks(project_id: str, store: ProjectStore = Depends(get_store)) -> list[Task]:
        return store.list_tasks_sorted(project_id)

    @app.post("/projects/{project_id}/tasks", response_model=Task, status_code=201)
    def create_task(project_id: str, payload: TaskCreate, store: ProjectStore = Depends(get_store)) -> Task:
        try:
            return workflows.create_manual_task(store, project_id, payload)
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    @app.patch("/projects/{project_id}/tasks/{task_id}", response_model=Task)
    def update_task(
        project_id: str,
        task_id: str,
        payload: TaskUpdate,
        store: ProjectStore = Depends(get_store),
    ) -> Task:
        updated = workflows.patch_task(store, project_id, task_id, payload)
        if updated is None:
            raise _not_found("task", task_id)
        return updated

    @app.post("/projects/{project_id}/tasks/{task_id}/runs", response_model=StartRunResponse, status_code=201)
    def start_task_run(
        project_id: str,
        task_id: str,
        payload: StartRunRequest | None = None,
        store: ProjectStore = Depends(get_store),
        inspector: workflows.SnapshotSource | None = Depends(get_inspector),
    ) -> StartRunResponse:
        request = payload or StartRunRequest()
        try:
            started = workflows.start_task_run(store, inspector, project_id, task_id, request.mode)
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        if started is None:
            raise _not_found("task", task_id)
        return started

    @app.post("/projects/{project_id}/plans", response_model=list[Task], status_code=201)
    def import_plan(project_id: str, payload: PlanImport, store: ProjectStore = Depends(get_store)) -> list[Task]:
        try:
            return workflows.import_plan(store, project_id, payload)
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    @app.get("/projects/{project_id}/runs", response_model=list[TaskRun])
    def list_runs(
        project_id: str,
        task_id: str | None = None,
        status: TaskRunStatus | None = None,
        store: ProjectStore = Depends(get_store),
    ) -> list[TaskRun]:
        return store.list_task_runs(project_id, task_id=task_id, status=status)

    @app.patch("/projects/{project_id}/runs/{run_id}", response_model=TaskRun)
    def update_run(
        project_id: str,
        run_id: str,
        payload: TaskRunUpdate,
        store: ProjectStore = Depends(get_store),
    ) -> TaskRun:
        try:
            updated = workflows.patch_run(store, project_id, run_id, payload)
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        if updated is None:
            raise _not_found("run", run_id)
        return updated

    @app.get("/projects/{project_id}/runs/{run_id}/logs", response_model=list[LogEntry])
    def get_run_logs(project_id: str, run_id: str, store: ProjectStore = Depends(get_store)) -> list[LogEntry]:
        logs = store.get_run_logs(project_id, run_id)
        if logs is None:
            raise _not_found("run", run_id)
        return logs

    @app.post("/projects/{project_id}/runs/{run_id}/logs", response_model=TaskRun, status_code=201)
    def append_run_log(
        project_id: str,
        run_id: str,
        payload: LogEntryCreate,
        store: ProjectStore = Depends(get_store),
    ) -> TaskRun:
        run = store.append_run_log(project_id, run_id, payload)
        if run is None:
            raise _not_found("run", run_id)
        return run

    @app.post("/projects/{project_id}/runs/{run_id}/result", response_model=AgentResultResponse)
    def record_agent_result(
        project_id: str,
        run_id: str,
        payload: AgentResultCallback,
        store: ProjectStore = Depends(get_store),
        inspector: workflows.SnapshotSource | None = Depends(get_inspector),
    ) -> AgentResultResponse:
        try:
            recorded = workflows.record_agent_result(
                store,
                inspector,
                project_id,
                run_id,
                payload.result,
                task_id=payload.task_id,
            )
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        if recorded is None:
            raise _not_found("run", run_id)
        return recorded

    @app.get("/projects/{project_id}/messages", response_model=list[Message])
    def list_messages(
        project_id: str,
        limit: int | None = None,
        store: ProjectStore = Depends(get_store),
    ) -> list[Message]:
        return store.list_messages(project_id, limit=limit)

    @app.post("/projects/{project_id}/messages", response_model=Message, status_code=201)
    def add_message(project_id: str, payload: MessageCreate, store: ProjectStore = Depends(get_store)) -> Message:
        return store.add_message(project_id, payload)

    @app.get("/projects/{project_id}/events", response_model=list[Event])
    def list_events(project_id: str, limit: int | None = None, store: ProjectStore = Depends(get_store)) -> list[Event]:
        return store.list_events(project_id, limit=limit)

    @app.patch("/projects/{project_id}/repo-snapshot", response_model=RepoSnapshot)
    def merge_repo_snapshot(
        project_id: str,
        payload: dict[str, Any] = Body(...),
        store: ProjectStore = Depends(get_store),
    ) -> RepoSnapshot:
        return store.merge_repo_snapshot(project_id, payload)

    @app.post("/projects/{project_id}/repo-snapshot/refresh", response_model=RepoSnapshotRefresh)
    def refresh_repo_snapshot(
        project_id: str,
        store: ProjectStore = Depends(get_store),
        inspector: workflows.SnapshotSource | None = Depends(get_inspector),
    ) -> RepoSnapshotRefresh:
        refreshed = workflows.refresh_repo_snapshot(store, inspector, project_id)
        if refreshed is None:
            return RepoSnapshotRefresh(updated=False, repo_snapshot=store.get_repo_snapshot(project_id))
        return RepoSnapshotRefresh(updated=True, repo_snapshot=refreshed)


app = create_app()
