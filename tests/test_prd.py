import json
from pathlib import Path

import pytest

from prdsched.prd import (
    Prd,
    PrdError,
    PrdStore,
    Task,
    add_dependency,
    remove_dependency,
    resolve_task_index,
    set_dependencies,
)


def _prd() -> Prd:
    return Prd(
        project="demo",
        tasks=[
            Task(title="Set up database", id="db"),
            Task(title="Build API", id="api", depends_on=["db"]),
            Task(title="Write docs"),
        ],
    )


def test_task_from_dict_accepts_camel_case_dependencies() -> None:
    task = Task.from_dict({"title": "Build API", "id": "api", "dependsOn": ["db"], "priority": 2})

    assert task.depends_on == ["db"]
    assert task.priority == 2


def test_task_from_dict_ignores_boolean_priority() -> None:
    task = Task.from_dict({"title": "x", "priority": True})

    assert task.priority is None


def test_task_to_dict_omits_unset_fields() -> None:
    payload = Task(title="Write docs").to_dict()

    assert payload == {"title": "Write docs", "description": "", "steps": [], "done": False}


def test_store_roundtrip_and_reload(tmp_path: Path) -> None:
    path = tmp_path / "prd.json"
    store = PrdStore(path)
    store.save(_prd())

    assert store.load() == _prd()

    payload = json.loads(path.read_text(encoding="utf-8"))
    payload["tasks"][0]["done"] = True
    path.write_text(json.dumps(payload), encoding="utf-8")

    assert store.load() == _prd()
    reloaded = store.reload()
    assert reloaded is not None
    assert reloaded.tasks[0].done is True


def test_store_missing_and_corrupt_files(tmp_path: Path) -> None:
    path = tmp_path / "prd.json"
    store = PrdStore(path)

    assert store.load() is None
    with pytest.raises(PrdError, match="No PRD found"):
        store.load(strict=True)

    path.write_text('{"tasks": "nope"}', encoding="utf-8")
    assert store.reload() is None
    with pytest.raises(PrdError, match="Invalid PRD"):
        store.reload(strict=True)


def test_resolve_task_index() -> None:
    prd = _prd()

    assert resolve_task_index(prd, "2") == 1
    assert resolve_task_index(prd, "build api") == 1
    assert resolve_task_index(prd, "db") == 0
    assert resolve_task_index(prd, "9") is None
    assert resolve_task_index(prd, "  ") is None


def test_set_dependencies_replaces_and_clears() -> None:
    prd = set_dependencies(_prd(), "api", ["db"])
    assert prd.tasks[1].depends_on == ["db"]

    cleared = set_dependencies(prd, "api", [])
    assert cleared.tasks[1].depends_on is None


def test_set_dependencies_rejects_unknown_ids() -> None:
    with pytest.raises(PrdError, match='"ghost" does not exist'):
        set_dependencies(_prd(), "api", ["ghost"])


def test_add_dependency_requires_task_id() -> None:
    with pytest.raises(PrdError, match="needs an id"):
        add_dependency(_prd(), "Write docs", "db")


def test_add_dependency_is_idempotent() -> None:
    prd = _prd()

    assert add_dependency(prd, "api", "db") is prd


def test_remove_last_dependency_clears_field() -> None:
    prd = remove_dependency(_prd(), "api", "db")

    assert prd.tasks[1].depends_on is None
    assert _prd().tasks[1].depends_on == ["db"]


def test_editing_unknown_task_raises() -> None:
    with pytest.raises(PrdError, match="Task not found"):
        remove_dependency(_prd(), "missing", "db")
