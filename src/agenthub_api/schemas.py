from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_TASK_PRIORITY = 5
DEFAULT_AGENT_HINT = "coder"
DEFAULT_RUN_AGENT = "executor"


class TaskType(str, Enum):
    ANALYSIS = "analysis"
    FRONTEND = "frontend"
    BACKEND = "backend"
    INFRA = "infra"
    RESEARCH = "research"
    TESTING = "testing"


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    BLOCKED = "blocked"
    FAILED = "failed"


class TaskSource(str, Enum):
    MANUAL = "manual"
    PLANNER = "planner"


class TaskRunStatus(str, Enum):
    PENDING = "pending"
    WAITING_FOR_USER = "waiting_for_user"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunMode(str, Enum):
    NORMAL = "normal"
    DRY_RUN = "dry_run"
    DEBUG = "debug"


class LogEntryType(str, Enum):
    INFO = "info"
    SUMMARY = "summary"
    FILE = "file"
    COMMAND = "command"
    CRITERIA = "criteria"
    NOTES = "notes"
    ERROR = "error"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageSource(str, Enum):
    UI = "ui"
    PLANNER = "planner"
    CODER = "coder"


class AgentResultStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class _InputModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class _PatchModel(_InputModel):
    """Partial update: unset fields are left alone, explicit nulls are rejected."""

    @model_validator(mode="after")
    def reject_explicit_nulls(self) -> "_PatchModel":
        for name in self.model_fields_set:
            if getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self


class Task(BaseModel):
    id: str
    title: str
    description: str = ""
    type: TaskType = TaskType.ANALYSIS
    priority: int = DEFAULT_TASK_PRIORITY
    status: TaskStatus = TaskStatus.TODO
    depends_on: list[str] = Field(default_factory=list)
    agent_hint: str = DEFAULT_AGENT_HINT
    source: TaskSource = TaskSource.MANUAL
    created_at: str
    updated_at: str


class TaskCreate(_InputModel):
    id: str | None = Field(default=None, min_length=1)
    title: str = Field(default="Untitled task", min_length=1)
    description: str = ""
    type: TaskType = TaskType.ANALYSIS
    priority: int = DEFAULT_TASK_PRIORITY
    status: TaskStatus = TaskStatus.TODO
    depends_on: list[str] = Field(default_factory=list)
    agent_hint: str = Field(default=DEFAULT_AGENT_HINT, min_length=1)
    source: TaskSource = TaskSource.MANUAL

    @model_validator(mode="after")
    def normalize_fields(self) -> "TaskCreate":
        self.depends_on = _normalize_string_list(self.depends_on)
        return self


class TaskUpdate(_PatchModel):
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    type: TaskType | None = None
    priority: int | None = None
    status: TaskStatus | None = None
    depends_on: list[str] | None = None
    agent_hint: str | None = Field(default=None, min_length=1)
    source: TaskSource | None = None

    @model_validator(mode="after")
    def normalize_fields(self) -> "TaskUpdate":
        if self.depends_on is not None:
            self.depends_on = _normalize_string_list(self.depends_on)
        return self


class LogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    ts: str
    type: LogEntryType = LogEntryType.INFO
    message: str = ""
    data: dict[str, Any] = Field(default_factory=dict)


class LogEntryCreate(_InputModel):
    ts: str | None = None
    type: LogEntryType = LogEntryType.INFO
    message: str = ""
    data: dict[str, Any] = Field(default_factory=dict)


class TaskRun(BaseModel):
    id: str
    task_id: str | None = None
    agent: str = DEFAULT_RUN_AGENT
    status: TaskRunStatus = TaskRunStatus.PENDING
    mode: RunMode = RunMode.NORMAL
    started_at: str
    finished_at: str | None = None
    logs: list[LogEntry] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class TaskRunCreate(_InputModel):
    task_id: str | None = None
    agent: str = Field(default=DEFAULT_RUN_AGENT, min_length=1)
    mode: RunMode = RunMode.NORMAL
    metadata: dict[str, Any] = Field(default_factory=dict)


class TaskRunUpdate(_PatchModel):
    status: TaskRunStatus | None = None
    agent: str | None = Field(default=None, min_length=1)
    mode: RunMode | None = None
    metadata: dict[str, Any] | None = None


class Message(BaseModel):
    id: str
    role: MessageRole = MessageRole.USER
    source: MessageSource = MessageSource.UI
    content: str = ""
    created_at: str
    task_id: str | None = None
    run_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class MessageCreate(_InputModel):
    role: MessageRole = MessageRole.USER
    source: MessageSource = MessageSource.UI
    content: str = ""
    task_id: str | None = None
    run_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Event(BaseModel):
    id: str
    ts: str
    type: str
    data: dict[str, Any] = Field(default_factory=dict)


class RepoSnapshot(BaseModel):
    model_config = ConfigDict(extra="allow")

    updated_at: str


class ProjectState(BaseModel):
    id: str
    created_at: str
    updated_at: str
    messages: list[Message] = Field(default_factory=list)
    tasks: list[Task] = Field(default_factory=list)
    task_runs: list[TaskRun] = Field(default_factory=list)
    events: list[Event] = Field(default_factory=list)
    repo_snapshot: RepoSnapshot | None = None


class ProjectSummary(BaseModel):
    id: str
    created_at: str
    updated_at: str
    tasks: list[Task] = Field(default_factory=list)
    recent_task_runs: list[TaskRun] = Field(default_factory=list)
    recent_messages: list[Message] = Field(default_factory=list)
    repo_snapshot: RepoSnapshot | None = None
    recent_events: list[Event] = Field(default_factory=list)


class StartRunRequest(_InputModel):
    mode: RunMode = RunMode.NORMAL


class HandoffContext(BaseModel):
    repo_root: str | None = None
    branch: str | None = None
    latest_commit: str | None = None
    git_status: str | None = None


class HandoffPayload(BaseModel):
    project_id: str
    task_id: str
    run_id: str
    goal: str
    description: str = ""
    context: HandoffContext
    instructions: list[str] = Field(default_factory=list)
    acceptance_criteria: list[str] = Field(default_factory=list)
    mode: RunMode = RunMode.NORMAL


class StartRunResponse(BaseModel):
    project_id: str
    task: Task
    run: TaskRun
    handoff: HandoffPayload


class FileTouched(BaseModel):
    model_config = ConfigDict(extra="allow")

    path: str = Field(min_length=1)
    change_type: str = "modified"


class CommandRun(BaseModel):
    model_config = ConfigDict(extra="allow")

    command: str = Field(min_length=1)
    outcome: str = "unknown"


class CriterionCheck(BaseModel):
    model_config = ConfigDict(extra="allow")

    criteria: str = Field(min_length=1)
    met: bool


class AgentResult(BaseModel):
    status: AgentResultStatus
    summary: str | None = None
    files_touched: list[FileTouched] = Field(default_factory=list)
    commands_run: list[CommandRun] = Field(default_factory=list)
    acceptance_criteria: list[CriterionCheck] = Field(default_factory=list)
    notes: str | None = None
    error: str | None = None


class AgentResultCallback(_InputModel):
    task_id: str | None = None
    result: AgentResult


class AgentResultResponse(BaseModel):
    project_id: str
    run_id: str
    task_id: str | None = None
    run: TaskRun
    repo_snapshot: RepoSnapshot | None = None


class PlannedTask(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = Field(default=None, min_length=1)
    title: str = Field(default="Untitled task", min_length=1)
    description: str = ""
    type: TaskType = TaskType.ANALYSIS
    priority: int = DEFAULT_TASK_PRIORITY
    depends_on: list[str] = Field(default_factory=list)
    agent_hint: str = Field(default=DEFAULT_AGENT_HINT, min_length=1)


class PlanImport(BaseModel):
    model_config = ConfigDict(extra="ignore")

    project_title: str | None = None
    summary: str | None = None
    tasks: list[PlannedTask] = Field(min_length=1)


class RepoSnapshotRefresh(BaseModel):
    updated: bool
    repo_snapshot: RepoSnapshot | None = None


def _normalize_string_list(values: list[str]) -> list[str]:
    normalized: list[str] = []
    for value in values:
        trimmed = value.strip()
        if not trimmed:
            continue
        if trimmed in normalized:
            continue
        normalized.append(trimmed)
    return normalized
