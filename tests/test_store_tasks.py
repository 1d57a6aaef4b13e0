from pathlib import Path

import pytest

from agenthub_api.errors import ValidationError
from agenthub_api.persistence import ProjectStateFiles
from agenthub_api.schemas import TaskCreate, TaskSource, TaskStatus, TaskType, TaskUpdate
from agenthub_api.store import ProjectStore


def _store(tmp_path: Path) -> ProjectStore:
    return ProjectStore(ProjectStateFiles(tmp_path / "state"))


def test_add_task_applies_defaults(tmp_path: Path) -> None:
    store = _store(tmp_path)

    task = store.add_task("p1", TaskCreate())

    assert task.id.startswith("T_")
    assert task.title == "Untitled task"
    assert task.description == ""
    assert task.type == TaskType.ANALYSIS
    assert task.priority == 5
    assert task.status == TaskStatus.TODO
    assert task.depends_on == []
    assert task.agent_hint == "coder"
    assert task.source == TaskSource.MANUAL
    assert task.created_at == task.updated_at


def test_tasks_sort_by_priority_then_creation(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.add_task("p1", TaskCreate(id="A", priority=5))
    store.add_task("p1", TaskCreate(id="B", priority=1))
    store.add_task("p1", TaskCreate(id="C", priority=5))

    assert [task.id for task in store.list_tasks_sorted("p1")] == ["B", "A", "C"]
    assert [task.id for task in store.get_tasks("p1")] == ["A", "B", "C"]


def test_update_task_changes_only_supplied_fields(tmp_path: Path) -> None:
    store = _store(tmp_path)
    task = store.add_task("p1", TaskCreate(title="original", priority=3))

    updated = store.update_task("p1", task.id, TaskUpdate(status=TaskStatus.IN_PROGRESS))

    assert updated is not None
    assert updated.status == TaskStatus.IN_PROGRESS
    assert updated.title == "original"
    assert updated.priority == 3
    assert updated.created_at == task.created_at
    assert updated.updated_at >= task.updated_at


def test_update_missing_task_returns_none_without_changes(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.add_task("p1", TaskCreate(title="only"))
    before = store.get_or_create_project("p1")

    assert store.update_task("p1", "T_missing", TaskUpdate(title="nope")) is None

    after = store.get_or_create_project("p1")
    assert len(after.tasks) == 1
    assert after.updated_at == before.updated_at


def test_patch_rejects_explicit_null() -> None:
    with pytest.raises(ValueError):
        TaskUpdate.model_validate({"title": None})


def test_batch_with_duplicate_ids_is_rejected_atomically(tmp_path: Path) -> None:
    store = _store(tmp_path)

    with pytest.raises(ValidationError):
        store.add_tasks("p1", [TaskCreate(id="X", title="first"), TaskCreate(id="X", title="second")])

    assert store.get_tasks("p1") == []


def test_batch_conflicting_with_existing_task_is_rejected(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.add_task("p1", TaskCreate(id="X"))

    with pytest.raises(ValidationError, match="already exists"):
        store.add_tasks("p1", [TaskCreate(id="Y"), TaskCreate(id="X")])

    assert [task.id for task in store.get_tasks("p1")] == ["X"]


def test_batch_creates_all_tasks_with_one_timestamp(tmp_path: Path) -> None:
    store = _store(tmp_path)

    created = store.add_tasks("p1", [TaskCreate(title="one"), TaskCreate(title="two"), TaskCreate(title="three")])

    assert [task.title for task in created] == ["one", "two", "three"]
    assert len({task.id for task in created}) == 3
    assert len({task.created_at for task in created}) == 1


def test_depends_on_is_deduplicated_without_integrity_checks(tmp_path: Path) -> None:
    store = _store(tmp_path)

    task = store.add_task("p1", TaskCreate(depends_on=["ghost", " ghost ", "other", ""]))

    assert task.depends_on == ["ghost", "other"]
