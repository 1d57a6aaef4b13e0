"""Multi-step operations composed from store calls.

Each step is its own store operation (and its own write), mirroring how the
execution agent and the UI observe progress. Inspection calls happen between
steps, never while a project lock is held.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from pydantic import ValidationError as SchemaValidationError

from agenthub_api.errors import ValidationError
from agenthub_api.handoff import build_handoff_payload
from agenthub_api.schemas import (
    AgentResult,
    AgentResultResponse,
    AgentResultStatus,
    LogEntryCreate,
    LogEntryType,
    MessageCreate,
    MessageRole,
    MessageSource,
    PlanImport,
    RepoSnapshot,
    RunMode,
    StartRunResponse,
    Task,
    TaskCreate,
    TaskRun,
    TaskRunCreate,
    TaskRunStatus,
    TaskRunUpdate,
    TaskSource,
    TaskStatus,
    TaskUpdate,
)
from agenthub_api.store import ProjectStore

logger = logging.getLogger(__name__)


class SnapshotSource(Protocol):
    @property
    def configured(self) -> bool: ...

    def inspect(self) -> dict[str, Any] | None: ...


def create_manual_task(store: ProjectStore, project_id: str | None, payload: TaskCreate) -> Task:
    task = store.add_task(
        project_id,
        payload.model_copy(update={"status": TaskStatus.TODO, "source": TaskSource.MANUAL}),
    )
    store.append_event(project_id, "task_created_manual", {"task_id": task.id})
    return task


def patch_task(store: ProjectStore, project_id: str | None, task_id: str, patch: TaskUpdate) -> Task | None:
    updated = store.update_task(project_id, task_id, patch)
    if updated is None:
        return None
    store.append_event(project_id, "task_updated", {"task_id": task_id})
    return updated


def patch_run(store: ProjectStore, project_id: str | None, run_id: str, patch: TaskRunUpdate) -> TaskRun | None:
    updated = store.update_task_run(project_id, run_id, patch)
    if updated is None:
        return None
    store.append_event(project_id, "task_run_updated", {"run_id": run_id, "status": updated.status.value})
    return updated


def import_plan(store: ProjectStore, project_id: str | None, plan: PlanImport) -> list[Task]:
    payloads = [
        TaskCreate(
            id=item.id,
            title=item.title,
            description=item.description,
            type=item.type,
            priority=item.priority,
            depends_on=item.depends_on,
            agent_hint=item.agent_hint,
            status=TaskStatus.TODO,
            source=TaskSource.PLANNER,
        )
        for item in plan.tasks
    ]
    created = store.add_tasks(project_id, payloads)
    store.append_event(project_id, "planner_created_tasks", {"count": len(created)})
    if plan.summary:
        store.add_message(
            project_id,
            MessageCreate(
                role=MessageRole.ASSISTANT,
                source=MessageSource.PLANNER,
                content=plan.summary,
                metadata={"project_title": plan.project_title} if plan.project_title else {},
            ),
        )
    logger.info("imported %d planned tasks into project %r", len(created), store.resolve_project_id(project_id))
    return created


def refresh_repo_snapshot(
    store: ProjectStore,
    inspector: SnapshotSource | None,
    project_id: str | None,
) -> RepoSnapshot | None:
    if inspector is None:
        return None
    partial = inspector.inspect()
    if partial is None:
        logger.warning(
            "repository snapshot for project %r left unchanged: inspection returned no data",
            store.resolve_project_id(project_id),
        )
        return None
    return store.merge_repo_snapshot(project_id, partial)


def start_task_run(
    store: ProjectStore,
    inspector: SnapshotSource | None,
    project_id: str | None,
    task_id: str,
    mode: RunMode = RunMode.NORMAL,
) -> StartRunResponse | None:
    task = store.get_task(project_id, task_id)
    if task is None:
        return None

    run = store.create_task_run(
        project_id,
        TaskRunCreate(task_id=task.id, mode=mode, metadata={"mode": mode.value}),
    )
    store.append_event(
        project_id,
        "task_run_started",
        {"run_id": run.id, "task_id": task.id, "mode": mode.value},
    )

    snapshot = refresh_repo_snapshot(store, inspector, project_id) or store.get_repo_snapshot(project_id)
    handoff = build_handoff_payload(
        project_id=store.resolve_project_id(project_id),
        task=task,
        run=run,
        repo_snapshot=snapshot,
    )
    handoff_data = handoff.model_dump(mode="json")

    run = store.update_task_run(
        project_id,
        run.id,
        TaskRunUpdate(status=TaskRunStatus.WAITING_FOR_USER, metadata={"handoff": handoff_data}),
    ) or run
    run = store.append_run_log(
        project_id,
        run.id,
        LogEntryCreate(
            type=LogEntryType.INFO,
            message="Handoff prepared. Give `metadata.handoff` to the execution agent to perform this task.",
            data={"handoff": handoff_data},
        ),
    ) or run
    store.append_event(project_id, "handoff_prepared", {"run_id": run.id, "task_id": task.id})

    return StartRunResponse(
        project_id=store.resolve_project_id(project_id),
        task=task,
        run=run,
        handoff=handoff,
    )


def record_agent_result(
    store: ProjectStore,
    inspector: SnapshotSource | None,
    project_id: str | None,
    run_id: str,
    result: AgentResult | dict[str, Any],
    *,
    task_id: str | None = None,
) -> AgentResultResponse | None:
    agent_result = _coerce_agent_result(result)
    succeeded = agent_result.status == AgentResultStatus.SUCCESS
    target_status = TaskRunStatus.SUCCESS if succeeded else TaskRunStatus.FAILED

    run = store.check_run_transition(project_id, run_id, target_status)
    if run is None:
        return None

    linked_task_id = task_id or run.task_id
    if run.status == target_status and "agent_result" in run.metadata:
        logger.info("ignoring replayed %s result for run %s", agent_result.status.value, run_id)
        return AgentResultResponse(
            project_id=store.resolve_project_id(project_id),
            run_id=run_id,
            task_id=linked_task_id,
            run=run,
            repo_snapshot=store.get_repo_snapshot(project_id),
        )

    store.update_task_run(
        project_id,
        run_id,
        TaskRunUpdate(status=target_status, metadata={"agent_result": agent_result.model_dump(mode="json")}),
    )
    for entry in _result_log_entries(agent_result):
        store.append_run_log(project_id, run_id, entry)

    if linked_task_id:
        store.update_task(
            project_id,
            linked_task_id,
            TaskUpdate(status=TaskStatus.DONE if succeeded else TaskStatus.FAILED),
        )

    status = agent_result.status.value
    store.add_message(
        project_id,
        MessageCreate(
            role=MessageRole.ASSISTANT,
            source=MessageSource.CODER,
            task_id=linked_task_id,
            run_id=run_id,
            content=(
                f"Run **{run_id}** for task **{linked_task_id or 'N/A'}** finished with status: **{status}**.\n"
                f"{agent_result.summary or ''}"
            ),
        ),
    )
    store.append_event(
        project_id,
        "task_run_finished",
        {"run_id": run_id, "task_id": linked_task_id, "status": status},
    )

    snapshot = refresh_repo_snapshot(store, inspector, project_id)
    final_run = store.get_task_run(project_id, run_id) or run
    return AgentResultResponse(
        project_id=store.resolve_project_id(project_id),
        run_id=run_id,
        task_id=linked_task_id,
        run=final_run,
        repo_snapshot=snapshot,
    )


def _coerce_agent_result(result: AgentResult | dict[str, Any]) -> AgentResult:
    if isinstance(result, AgentResult):
        return result
    if not isinstance(result, dict):
        raise ValidationError("result object is required")
    if not result.get("status"):
        raise ValidationError("result.status (success/failed) is required")
    try:
        return AgentResult.model_validate(result)
    except SchemaValidationError as exc:
        raise ValidationError(f"invalid agent result: {exc.error_count()} error(s): {exc.errors()[0]['msg']}") from exc


def _result_log_entries(result: AgentResult) -> list[LogEntryCreate]:
    entries: list[LogEntryCreate] = []
    if result.summary:
        entries.append(LogEntryCreate(type=LogEntryType.SUMMARY, message=result.summary))
    for touched in result.files_touched:
        entries.append(
            LogEntryCreate(
                type=LogEntryType.FILE,
                message=f"File {touched.change_type}: {touched.path}",
                data=touched.model_dump(mode="json"),
            )
        )
    for command in result.commands_run:
        entries.append(
            LogEntryCreate(
                type=LogEntryType.COMMAND,
                message=f"Command: {command.command} ({command.outcome})",
                data=command.model_dump(mode="json"),
            )
        )
    for check in result.acceptance_criteria:
        entries.append(
            LogEntryCreate(
                type=LogEntryType.CRITERIA,
                message=f'Criteria "{check.criteria}" met={str(check.met).lower()}',
                data=check.model_dump(mode="json"),
            )
        )
    if result.notes:
        entries.append(LogEntryCreate(type=LogEntryType.NOTES, message=result.notes))
    if result.error:
        entries.append(LogEntryCreate(type=LogEntryType.ERROR, message=result.error))
    return entries
