from __future__ import annotations

from agenthub_api.errors import InvalidTransitionError
from agenthub_api.schemas import TaskRunStatus

TERMINAL_RUN_STATUSES = frozenset(
    {
        TaskRunStatus.SUCCESS,
        TaskRunStatus.FAILED,
        TaskRunStatus.CANCELLED,
    }
)

_ALLOWED_TRANSITIONS: dict[TaskRunStatus, frozenset[TaskRunStatus]] = {
    TaskRunStatus.PENDING: frozenset(
        {TaskRunStatus.RUNNING, TaskRunStatus.WAITING_FOR_USER, TaskRunStatus.CANCELLED}
    ),
    TaskRunStatus.RUNNING: TERMINAL_RUN_STATUSES,
    TaskRunStatus.WAITING_FOR_USER: TERMINAL_RUN_STATUSES,
    TaskRunStatus.SUCCESS: frozenset(),
    TaskRunStatus.FAILED: frozenset(),
    TaskRunStatus.CANCELLED: frozenset(),
}


def is_terminal(status: TaskRunStatus) -> bool:
    return status in TERMINAL_RUN_STATUSES


def can_transition(current: TaskRunStatus, target: TaskRunStatus) -> bool:
    # Re-applying the current status is accepted as a no-op status change.
    if current == target:
        return True
    return target in _ALLOWED_TRANSITIONS[current]


def ensure_transition(current: TaskRunStatus, target: TaskRunStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value)
