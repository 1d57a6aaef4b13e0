from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Any

from agenthub_api.errors import InvalidTransitionError
from agenthub_api.persistence import ProjectStateFiles
from agenthub_api.schemas import (
    LogEntryCreate,
    TaskCreate,
    TaskRunCreate,
    TaskRunStatus,
    TaskRunUpdate,
)
from agenthub_api.store import ProjectStore

RESTART_PROJECT_ID = "durability-restart"
CONCURRENCY_PROJECT_ID = "durability-concurrency"


@dataclass(frozen=True)
class DurabilityConfig:
    restarts: int = 2
    concurrent_appends: int = 200
    workers: int = 8


def run_durability_suite(config: DurabilityConfig | None = None) -> dict[str, Any]:
    cfg = config or DurabilityConfig()
    if cfg.restarts < 1:
        raise ValueError("restarts must be >= 1")
    if cfg.concurrent_appends < 1:
        raise ValueError("concurrent_appends must be >= 1")
    if cfg.workers < 1:
        raise ValueError("workers must be >= 1")

    with TemporaryDirectory(prefix="agenthub-durability-") as tmp_dir:
        state_dir = Path(tmp_dir)
        scenarios = [
            _run_restart_recovery_scenario(state_dir=state_dir, config=cfg),
            _run_concurrent_append_scenario(state_dir=state_dir, config=cfg),
        ]

    invariants = [invariant for scenario in scenarios for invariant in scenario["invariants"]]
    invariants_total = len(invariants)
    invariants_passed = sum(1 for invariant in invariants if invariant["passed"])
    overall_status = "pass" if invariants_total == invariants_passed else "fail"
    return {
        "suite": "durability",
        "generated_at_utc": datetime.now(tz=timezone.utc).isoformat(),
        "config": {
            "restarts": cfg.restarts,
            "concurrent_appends": cfg.concurrent_appends,
            "workers": cfg.workers,
        },
        "summary": {
            "scenario_count": len(scenarios),
            "invariants_total": invariants_total,
            "invariants_passed": invariants_passed,
            "overall_status": overall_status,
        },
        "scenarios": scenarios,
    }


def _open_store(state_dir: Path) -> ProjectStore:
    return ProjectStore(ProjectStateFiles(state_dir))


def _run_restart_recovery_scenario(*, state_dir: Path, config: DurabilityConfig) -> dict[str, Any]:
    store = _open_store(state_dir)
    project = store.get_or_create_project(RESTART_PROJECT_ID)
    task = store.add_task(RESTART_PROJECT_ID, TaskCreate(title="durability restart task", priority=1))
    run = store.create_task_run(
        RESTART_PROJECT_ID,
        TaskRunCreate(task_id=task.id, metadata={"a": 1}),
    )
    store.update_task_run(RESTART_PROJECT_ID, run.id, TaskRunUpdate(status=TaskRunStatus.RUNNING))
    store.append_run_log(RESTART_PROJECT_ID, run.id, LogEntryCreate(message="before restart"))
    store.update_task_run(
        RESTART_PROJECT_ID,
        run.id,
        TaskRunUpdate(status=TaskRunStatus.SUCCESS, metadata={"b": 2}),
    )
    store.append_event(RESTART_PROJECT_ID, "task_run_finished", {"run_id": run.id, "task_id": task.id})
    finished = store.get_task_run(RESTART_PROJECT_ID, run.id)
    finished_at = finished.finished_at if finished is not None else None

    checkpoints: list[dict[str, Any]] = [_checkpoint(store, label="before-restart", run_id=run.id)]
    rejected_after_restart: list[bool] = []
    for restart_index in range(config.restarts):
        store.close()
        store = _open_store(state_dir)
        checkpoints.append(_checkpoint(store, label=f"after-restart-{restart_index + 1}", run_id=run.id))
        try:
            store.update_task_run(RESTART_PROJECT_ID, run.id, TaskRunUpdate(status=TaskRunStatus.RUNNING))
        except InvalidTransitionError:
            rejected_after_restart.append(True)
        else:
            rejected_after_restart.append(False)

    store.close()
    final_store = _open_store(state_dir)
    final_project = final_store.get_or_create_project(RESTART_PROJECT_ID)
    final_run = final_store.get_task_run(RESTART_PROJECT_ID, run.id)
    final_task = final_store.get_task(RESTART_PROJECT_ID, task.id)
    final_store.close()

    event_counts = [item["event_count"] for item in checkpoints]
    invariants = [
        _invariant(
            invariant_id="terminal-run-survives-restart",
            description="A finished run keeps its status, finish timestamp and merged metadata across restarts.",
            expected={
                "status": TaskRunStatus.SUCCESS.value,
                "finished_at": finished_at,
                "metadata": {"a": 1, "b": 2},
                "log_count": 1,
            },
            actual={
                "status": final_run.status.value if final_run else None,
                "finished_at": final_run.finished_at if final_run else None,
                "metadata": dict(final_run.metadata) if final_run else None,
                "log_count": len(final_run.logs) if final_run else None,
            },
            passed=(
                final_run is not None
                and final_run.status == TaskRunStatus.SUCCESS
                and final_run.finished_at == finished_at
                and final_run.metadata == {"a": 1, "b": 2}
                and len(final_run.logs) == 1
            ),
        ),
        _invariant(
            invariant_id="terminal-run-stays-terminal",
            description="Reopening a finished run after a restart is rejected.",
            expected={"rejected": [True] * config.restarts},
            actual={"rejected": rejected_after_restart},
            passed=all(rejected_after_restart) and len(rejected_after_restart) == config.restarts,
        ),
        _invariant(
            invariant_id="project-identity-stable",
            description="Project creation time and task records are unchanged by restarts.",
            expected={"created_at": project.created_at, "task_title": task.title},
            actual={
                "created_at": final_project.created_at,
                "task_title": final_task.title if final_task else None,
            },
            passed=(
                final_project.created_at == project.created_at
                and final_task is not None
                and final_task.title == task.title
            ),
        ),
        _invariant(
            invariant_id="updated-at-monotonic",
            description="Project updated_at never moves backwards across restarts.",
            expected={"monotonic": True},
            actual={"updated_at": [item["updated_at"] for item in checkpoints]},
            passed=_is_monotonic([item["updated_at"] for item in checkpoints])
            and final_project.updated_at >= project.updated_at,
        ),
        _invariant(
            invariant_id="event-count-monotonic",
            description="Event history length never shrinks across restarts.",
            expected={"monotonic": True},
            actual={"event_counts": event_counts},
            passed=_is_monotonic(event_counts),
        ),
    ]
    return {
        "name": "restart-recovery",
        "objective": "Reload a project from disk after each restart without losing or reopening run state.",
        "status": "pass" if all(item["passed"] for item in invariants) else "fail",
        "invariants": invariants,
        "checkpoints": checkpoints,
    }


def _run_concurrent_append_scenario(*, state_dir: Path, config: DurabilityConfig) -> dict[str, Any]:
    store = _open_store(state_dir)
    run = store.create_task_run(CONCURRENCY_PROJECT_ID, TaskRunCreate())

    def append(index: int) -> None:
        store.append_run_log(
            CONCURRENCY_PROJECT_ID,
            run.id,
            LogEntryCreate(message=f"concurrent entry {index}", data={"index": index}),
        )

    with ThreadPoolExecutor(max_workers=config.workers) as executor:
        list(executor.map(append, range(config.concurrent_appends)))

    in_memory = store.get_task_run(CONCURRENCY_PROJECT_ID, run.id)
    failed_writes = store.files.failed_writes if store.files is not None else 0
    store.close()

    reloaded_store = _open_store(state_dir)
    reloaded = reloaded_store.get_task_run(CONCURRENCY_PROJECT_ID, run.id)
    reloaded_store.close()

    reloaded_indexes = sorted(entry.data.get("index") for entry in reloaded.logs) if reloaded else []
    log_ids = [entry.id for entry in reloaded.logs] if reloaded else []
    invariants = [
        _invariant(
            invariant_id="no-lost-appends",
            description="Every concurrent log append is present in memory and after reload.",
            expected={"log_count": config.concurrent_appends},
            actual={
                "in_memory_log_count": len(in_memory.logs) if in_memory else None,
                "reloaded_log_count": len(reloaded.logs) if reloaded else None,
            },
            passed=(
                in_memory is not None
                and reloaded is not None
                and len(in_memory.logs) == config.concurrent_appends
                and reloaded_indexes == list(range(config.concurrent_appends))
            ),
        ),
        _invariant(
            invariant_id="unique-log-ids",
            description="Log entry ids are unique within the run.",
            expected={"duplicates": 0},
            actual={"duplicates": len(log_ids) - len(set(log_ids))},
            passed=len(log_ids) == len(set(log_ids)),
        ),
        _invariant(
            invariant_id="no-write-failures",
            description="No persistence write failed while appends were racing.",
            expected={"failed_writes": 0},
            actual={"failed_writes": failed_writes},
            passed=failed_writes == 0,
        ),
    ]
    return {
        "name": "concurrent-log-appends",
        "objective": "Append run logs from parallel workers and confirm the persisted document keeps all of them.",
        "status": "pass" if all(item["passed"] for item in invariants) else "fail",
        "invariants": invariants,
        "checkpoints": [],
    }


def _checkpoint(store: ProjectStore, *, label: str, run_id: str) -> dict[str, Any]:
    project = store.get_or_create_project(RESTART_PROJECT_ID)
    run = store.get_task_run(RESTART_PROJECT_ID, run_id)
    return {
        "label": label,
        "run_status": run.status.value if run else None,
        "updated_at": project.updated_at,
        "event_count": len(project.events),
    }


def _is_monotonic(values: list[Any]) -> bool:
    return all(current >= previous for previous, current in zip(values, values[1:]))


def _invariant(
    *,
    invariant_id: str,
    description: str,
    expected: dict[str, Any],
    actual: dict[str, Any],
    passed: bool,
) -> dict[str, Any]:
    return {
        "id": invariant_id,
        "description": description,
        "expected": expected,
        "actual": actual,
        "passed": passed,
    }


def render_markdown(report: dict[str, Any]) -> str:
    summary = report["summary"]
    scenarios = {scenario["name"]: scenario for scenario in report["scenarios"]}
    invariants = {item["id"]: item for scenario in report["scenarios"] for item in scenario["invariants"]}
    config = report["config"]

    lines = [
        f"# Durability report ({summary['overall_status'].upper()})",
        "",
        f"Generated {report['generated_at_utc']}. "
        f"{summary['invariants_passed']} of {summary['invariants_total']} invariants held.",
        "",
        f"## Restarts ({config['restarts']})",
        "",
        "| checkpoint | run status | events | updated_at |",
        "|---|---|---|---|",
    ]
    for checkpoint in scenarios["restart-recovery"]["checkpoints"]:
        lines.append(
            f"| {checkpoint['label']} | {checkpoint['run_status']} "
            f"| {checkpoint['event_count']} | {checkpoint['updated_at']} |"
        )

    appended = invariants["no-lost-appends"]["actual"]
    lines += [
        "",
        f"## Parallel log appends ({config['concurrent_appends']} entries, {config['workers']} workers)",
        "",
        f"- in memory: {appended['in_memory_log_count']}",
        f"- after reload: {appended['reloaded_log_count']}",
        f"- duplicate ids: {invariants['unique-log-ids']['actual']['duplicates']}",
        f"- failed writes: {invariants['no-write-failures']['actual']['failed_writes']}",
        "",
        "## Invariants",
        "",
    ]
    for item in invariants.values():
        lines.append(f"- [{'x' if item['passed'] else ' '}] `{item['id']}` {item['description']}")
        if not item["passed"]:
            lines.append(f"  expected `{item['expected']}`, got `{item['actual']}`")
    return "\n".join(lines) + "\n"
