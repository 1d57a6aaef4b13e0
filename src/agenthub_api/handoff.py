from __future__ import annotations

from typing import Any

from agenthub_api.schemas import HandoffContext, HandoffPayload, RepoSnapshot, Task, TaskRun

HANDOFF_INSTRUCTIONS = [
    "Work directly in the repository to complete this task.",
    "Prefer minimal, focused changes.",
    "Keep existing styles, behavior, and public APIs unless explicitly asked to change them.",
]

HANDOFF_ACCEPTANCE_CRITERIA = [
    "The task goal is satisfied.",
    "No new runtime errors.",
    "No obvious regressions in related features.",
]


def build_handoff_payload(
    *,
    project_id: str,
    task: Task,
    run: TaskRun,
    repo_snapshot: RepoSnapshot | None,
) -> HandoffPayload:
    snapshot = repo_snapshot.model_dump() if repo_snapshot is not None else {}
    repo_info: Any = snapshot.get("repo_info")
    if not isinstance(repo_info, dict):
        repo_info = {}
    git_status = snapshot.get("git_status")

    return HandoffPayload(
        project_id=project_id,
        task_id=task.id,
        run_id=run.id,
        goal=task.title,
        description=task.description,
        context=HandoffContext(
            repo_root=_text(repo_info.get("repo_root")),
            branch=_text(repo_info.get("current_branch")),
            latest_commit=_text(repo_info.get("latest_commit")),
            git_status=_text(git_status),
        ),
        instructions=list(HANDOFF_INSTRUCTIONS),
        acceptance_criteria=list(HANDOFF_ACCEPTANCE_CRITERIA),
        mode=run.mode,
    )


def _text(value: Any) -> str | None:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)
