from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Iterable

from pydantic import ValidationError as SchemaValidationError

from agenthub_api.errors import ValidationError
from agenthub_api.ids import new_id
from agenthub_api.lifecycle import ensure_transition, is_terminal
from agenthub_api.persistence import ProjectStateFiles
from agenthub_api.schemas import (
    Event,
    LogEntry,
    LogEntryCreate,
    Message,
    MessageCreate,
    ProjectState,
    ProjectSummary,
    RepoSnapshot,
    Task,
    TaskCreate,
    TaskRun,
    TaskRunCreate,
    TaskRunStatus,
    TaskRunUpdate,
    TaskUpdate,
)

logger = logging.getLogger(__name__)

DEFAULT_PROJECT_ID = "default"
DEFAULT_EVENT_REPLAY_LIMIT = 100
DEFAULT_RECENT_ITEMS_LIMIT = 50


class ProjectStore:
    """Cache of project aggregates with write-through persistence.

    Each project has its own lock; every public method runs to completion
    under it, so requests for the same project never interleave while
    different projects proceed independently. Without ``files`` the store
    keeps state in memory only.
    """

    def __init__(
        self,
        files: ProjectStateFiles | None = None,
        *,
        default_project_id: str = DEFAULT_PROJECT_ID,
        event_replay_limit: int = DEFAULT_EVENT_REPLAY_LIMIT,
        recent_items_limit: int = DEFAULT_RECENT_ITEMS_LIMIT,
    ) -> None:
        self._files = files
        self._default_project_id = default_project_id
        self._event_replay_limit = event_replay_limit
        self._recent_items_limit = recent_items_limit
        self._projects: dict[str, ProjectState] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    @property
    def files(self) -> ProjectStateFiles | None:
        return self._files

    def close(self) -> None:
        # Without files the cache is the only copy of the state.
        if self._files is None:
            return
        with self._guard:
            project_ids = list(self._projects)
        for project_id in project_ids:
            with self._lock_for(project_id):
                state = self._projects.pop(project_id, None)
                if state is not None:
                    self._write_through(state)

    # ----- projects -----

    def resolve_project_id(self, project_id: str | None) -> str:
        if project_id is None or not project_id.strip():
            return self._default_project_id
        return project_id

    def get_or_create_project(self, project_id: str | None = None) -> ProjectState:
        pid = self.resolve_project_id(project_id)
        with self._lock_for(pid):
            return self._load_or_create(pid).model_copy(deep=True)

    def get_project_summary(self, project_id: str | None = None) -> ProjectSummary:
        pid = self.resolve_project_id(project_id)
        with self._lock_for(pid):
            state = self._load_or_create(pid)
            return ProjectSummary(
                id=state.id,
                created_at=state.created_at,
                updated_at=state.updated_at,
                tasks=self._sorted_tasks(state.tasks),
                recent_task_runs=state.task_runs[-self._recent_items_limit :],
                recent_messages=state.messages[-self._recent_items_limit :],
                repo_snapshot=state.repo_snapshot,
                recent_events=state.events[-self._event_replay_limit :],
            )

    # ----- tasks -----

    def add_task(self, project_id: str | None, payload: TaskCreate) -> Task:
        return self.add_tasks(project_id, [payload])[0]

    def add_tasks(self, project_id: str | None, payloads: Iterable[TaskCreate]) -> list[Task]:
        payloads = list(payloads)
        pid = self.resolve_project_id(project_id)
        with self._lock_for(pid):
            state = self._load_or_create(pid)
            taken = {task.id for task in state.tasks}
            requested: set[str] = set()
            for payload in payloads:
                if payload.id is None:
                    continue
                if payload.id in taken:
                    raise ValidationError(f"task {payload.id} already exists")
                if payload.id in requested:
                    raise ValidationError(f"task {payload.id} appears more than once")
                requested.add(payload.id)

            if not payloads:
                return []

            now = self._utc_now()
            created: list[Task] = []
            for payload in payloads:
                task_id = payload.id or new_id("T", taken=taken | requested)
                taken.add(task_id)
                created.append(
                    Task(
                        id=task_id,
                        title=payload.title,
                        description=payload.description,
                        type=payload.type,
                        priority=payload.priority,
                        status=payload.status,
                        depends_on=list(payload.depends_on),
                        agent_hint=payload.agent_hint,
                        source=payload.source,
                        created_at=now,
                        updated_at=now,
                    )
                )
            state.tasks.extend(created)
            self._touch(state)
            self._write_through(state)
            return created

    def get_tasks(self, project_id: str | None) -> list[Task]:
        pid = self.resolve_project_id(project_id)
        with self._lock_for(pid):
            return list(self._load_or_create(pid).tasks)

    def list_tasks_sorted(self, project_id: str | None) -> list[Task]:
        return self._sorted_tasks(self.get_tasks(project_id))

    def get_task(self, project_id: str | None, task_id: str) -> Task | None:
        pid = self.resolve_project_id(project_id)
        with self._lock_for(pid):
            state = self._load_or_create(pid)
            index = self._task_index(state, task_id)
            return state.tasks[index] if index is not None else None

    def update_task(self, project_id: str | None, task_id: str, patch: TaskUpdate) -> Task | None:
        pid = self.resolve_project_id(project_id)
        with self._lock_for(pid):
            state = self._load_or_create(pid)
            index = self._task_index(state, task_id)
            if index is None:
                return None

            changes = patch.model_dump(exclude_unset=True)
            now = self._utc_now()
            updated = state.tasks[index].model_copy(update={**changes, "updated_at": now})
            state.tasks[index] = updated
            self._touch(state)
            self._write_through(state)
            return updated

    # ----- task runs -----

    def create_task_run(self, project_id: str | None, payload: TaskRunCreate) -> TaskRun:
        pid = self.resolve_project_id(project_id)
        with self._lock_for(pid):
            state = self._load_or_create(pid)
            run = TaskRun(
                id=new_id("run", taken={item.id for item in state.task_runs}),
                task_id=payload.task_id,
                agent=payload.agent,
                status=TaskRunStatus.PENDING,
                mode=payload.mode,
                started_at=self._utc_now(),
                metadata=dict(payload.metadata),
            )
            state.task_runs.append(run)
            self._touch(state)
            self._write_through(state)
            return run

    def get_task_run(self, project_id: str | None, run_id: str) -> TaskRun | None:
        pid = self.resolve_project_id(project_id)
        with self._lock_for(pid):
            state = self._load_or_create(pid)
            index = self._run_index(state, run_id)
            return state.task_runs[index] if index is not None else None

    def update_task_run(self, project_id: str | None, run_id: str, patch: TaskRunUpdate) -> TaskRun | None:
        pid = self.resolve_project_id(project_id)
        with self._lock_for(pid):
            state = self._load_or_create(pid)
            index = self._run_index(state, run_id)
            if index is None:
                return None

            run = state.task_runs[index]
            changes = patch.model_dump(exclude_unset=True)
            metadata_patch = changes.pop("metadata", None)
            next_status = changes.get("status", run.status)
            ensure_transition(run.status, next_status)

            metadata = dict(run.metadata)
            if metadata_patch:
                metadata.update(metadata_patch)
            finished_at = run.finished_at
            if is_terminal(next_status) and finished_at is None:
                finished_at = self._utc_now()

            updated = run.model_copy(
                update={**changes, "metadata": metadata, "finished_at": finished_at}
            )
            state.task_runs[index] = updated
            self._touch(state)
            self._write_through(state)
            return updated

    def check_run_transition(self, project_id: str | None, run_id: str, target: TaskRunStatus) -> TaskRun | None:
        """Return the run if moving it to ``target`` is legal, None if it does not exist."""
        run = self.get_task_run(project_id, run_id)
        if run is None:
            return None
        ensure_transition(run.status, target)
        return run

    def append_run_log(self, project_id: str | None, run_id: str, entry: LogEntryCreate) -> TaskRun | None:
        pid = self.resolve_project_id(project_id)
        with self._lock_for(pid):
            state = self._load_or_create(pid)
            index = self._run_index(state, run_id)
            if index is None:
                return None

            run = state.task_runs[index]
            log_entry = LogEntry(
                id=new_id("log", taken={item.id for item in run.logs}),
                ts=entry.ts or self._utc_now(),
                type=entry.type,
                message=entry.message,
                data=dict(entry.data),
            )
            updated = run.model_copy(update={"logs": [*run.logs, log_entry]})
            state.task_runs[index] = updated
            self._touch(state)
            self._write_through(state)
            return updated

    def get_run_logs(self, project_id: str | None, run_id: str) -> list[LogEntry] | None:
        run = self.get_task_run(project_id, run_id)
        if run is None:
            return None
        return list(run.logs)

    def list_task_runs(
        self,
        project_id: str | None,
        *,
        task_id: str | None = None,
        status: TaskRunStatus | None = None,
    ) -> list[TaskRun]:
        pid = self.resolve_project_id(project_id)
        with self._lock_for(pid):
            state = self._load_or_create(pid)
            return [
                run
                for run in state.task_runs
                if (task_id is None or run.task_id == task_id)
                and (status is None or run.status == status)
            ]

    # ----- messages -----

    def add_message(self, project_id: str | None, payload: MessageCreate) -> Message:
        pid = self.resolve_project_id(project_id)
        with self._lock_for(pid):
            state = self._load_or_create(pid)
            message = Message(
                id=new_id("msg", taken={item.id for item in state.messages}),
                role=payload.role,
                source=payload.source,
                content=payload.content,
                created_at=self._utc_now(),
                task_id=payload.task_id,
                run_id=payload.run_id,
                metadata=dict(payload.metadata),
            )
            state.messages.append(message)
            self._touch(state)
            self._write_through(state)
            return message

    def list_messages(self, project_id: str | None, limit: int | None = None) -> list[Message]:
        limit = self._recent_items_limit if limit is None else limit
        if limit <= 0:
            return []
        pid = self.resolve_project_id(project_id)
        with self._lock_for(pid):
            return self._load_or_create(pid).messages[-limit:]

    # ----- events -----

    def append_event(self, project_id: str | None, event_type: str, data: dict[str, Any] | None = None) -> Event:
        if not event_type:
            raise ValidationError("event type is required")
        pid = self.resolve_project_id(project_id)
        with self._lock_for(pid):
            state = self._load_or_create(pid)
            event = Event(
                id=new_id("evt", taken={item.id for item in state.events}),
                ts=self._utc_now(),
                type=event_type,
                data=dict(data or {}),
            )
            state.events.append(event)
            self._touch(state)
            self._write_through(state)
            return event

    def list_events(self, project_id: str | None, limit: int | None = None) -> list[Event]:
        window = self._event_replay_limit if limit is None else min(limit, self._event_replay_limit)
        if window <= 0:
            return []
        pid = self.resolve_project_id(project_id)
        with self._lock_for(pid):
            return self._load_or_create(pid).events[-window:]

    # ----- repo snapshot -----

    def merge_repo_snapshot(self, project_id: str | None, partial: dict[str, Any]) -> RepoSnapshot:
        pid = self.resolve_project_id(project_id)
        with self._lock_for(pid):
            state = self._load_or_create(pid)
            merged: dict[str, Any] = state.repo_snapshot.model_dump() if state.repo_snapshot else {}
            merged.update(partial)
            merged["updated_at"] = self._utc_now()
            snapshot = RepoSnapshot(**merged)
            state.repo_snapshot = snapshot
            self._touch(state)
            self._write_through(state)
            return snapshot

    def get_repo_snapshot(self, project_id: str | None) -> RepoSnapshot | None:
        pid = self.resolve_project_id(project_id)
        with self._lock_for(pid):
            return self._load_or_create(pid).repo_snapshot

    # ----- internals -----

    def _lock_for(self, project_id: str) -> threading.RLock:
        with self._guard:
            return self._locks.setdefault(project_id, threading.RLock())

    def _load_or_create(self, project_id: str) -> ProjectState:
        state = self._projects.get(project_id)
        if state is not None:
            return state

        state = self._load_from_disk(project_id)
        created = state is None
        if state is None:
            now = self._utc_now()
            state = ProjectState(id=project_id, created_at=now, updated_at=now)
            logger.info("created project %r", project_id)
        self._projects[project_id] = state
        if created:
            self._write_through(state)
        return state

    def _load_from_disk(self, project_id: str) -> ProjectState | None:
        if self._files is None:
            return None
        raw = self._files.load(project_id)
        if raw is None:
            return None
        try:
            state = ProjectState.model_validate(raw)
        except SchemaValidationError as exc:
            logger.error("state document for project %r failed validation: %s", project_id, exc)
            self._files.quarantine(project_id)
            return None
        if state.id != project_id:
            logger.error(
                "state document %s was written for project %r, not %r",
                self._files.path_for(project_id),
                state.id,
                project_id,
            )
            self._files.quarantine(project_id)
            return None
        return state

    def _write_through(self, state: ProjectState) -> None:
        if self._files is None:
            return
        self._files.save(state.id, state.model_dump(mode="json"))

    def _touch(self, state: ProjectState) -> None:
        state.updated_at = max(state.updated_at, self._utc_now())

    @staticmethod
    def _task_index(state: ProjectState, task_id: str) -> int | None:
        for index, task in enumerate(state.tasks):
            if task.id == task_id:
                return index
        return None

    @staticmethod
    def _run_index(state: ProjectState, run_id: str) -> int | None:
        for index, run in enumerate(state.task_runs):
            if run.id == run_id:
                return index
        return None

    @staticmethod
    def _sorted_tasks(tasks: list[Task]) -> list[Task]:
        return sorted(tasks, key=lambda task: (task.priority, task.created_at))

    @staticmethod
    def _utc_now() -> str:
        return datetime.now(timezone.utc).isoformat(timespec="microseconds")
