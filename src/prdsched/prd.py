from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class PrdError(RuntimeError):
    """Raised when the PRD file cannot be read, written, or edited."""


@dataclass(slots=True)
class Task:
    title: str
    description: str = ""
    steps: list[str] = field(default_factory=list)
    done: bool = False
    id: str | None = None
    depends_on: list[str] | None = None
    priority: float | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        depends_on = payload.get("depends_on", payload.get("dependsOn"))
        priority = payload.get("priority")
        return cls(
            title=str(payload["title"]),
            description=str(payload.get("description", "")),
            steps=[str(step) for step in payload.get("steps", [])],
            done=bool(payload.get("done", False)),
            id=str(payload["id"]) if payload.get("id") else None,
            depends_on=[str(dep) for dep in depends_on] if depends_on is not None else None,
            priority=(
                priority
                if isinstance(priority, int | float) and not isinstance(priority, bool)
                else None
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.id:
            payload["id"] = self.id
        payload["title"] = self.title
        payload["description"] = self.description
        payload["steps"] = list(self.steps)
        payload["done"] = self.done
        if self.depends_on is not None:
            payload["depends_on"] = list(self.depends_on)
        if self.priority is not None:
            payload["priority"] = self.priority
        return payload


@dataclass(slots=True)
class Prd:
    project: str
    tasks: list[Task] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Prd:
        tasks = payload.get("tasks", [])
        if not isinstance(tasks, list):
            raise ValueError("PRD 'tasks' must be a list")
        return cls(
            project=str(payload.get("project", "")),
            tasks=[Task.from_dict(item) for item in tasks],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "project": self.project,
            "tasks": [task.to_dict() for task in self.tasks],
        }

    def is_complete(self) -> bool:
        return all(task.done for task in self.tasks)


class PrdStore:
    """File-backed task source. `reload` always re-reads the file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._cached: Prd | None = None

    def exists(self) -> bool:
        return self.path.exists()

    def invalidate(self) -> None:
        self._cached = None

    def load(self, *, strict: bool = False) -> Prd | None:
        if self._cached is not None:
            return self._cached
        return self.reload(strict=strict)

    def reload(self, *, strict: bool = False) -> Prd | None:
        self._cached = None
        if not self.path.exists():
            if strict:
                raise PrdError(f"No PRD found at {self.path}")
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("PRD root must be an object")
            prd = Prd.from_dict(payload)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("[prd] Cannot read %s: %s", self.path, exc)
            if strict:
                raise PrdError(f"Invalid PRD at {self.path}: {exc}") from exc
            return None
        self._cached = prd
        return prd

    def save(self, prd: Prd) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        serialized = json.dumps(prd.to_dict(), ensure_ascii=False, indent=2) + "\n"
        fd, tmp_name = tempfile.mkstemp(prefix=".prd-", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
            os.replace(tmp_name, self.path)
        except OSError as exc:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise PrdError(f"Cannot write PRD to {self.path}: {exc}") from exc
        self._cached = prd


def resolve_task_index(prd: Prd, identifier: str) -> int | None:
    """Resolve a 1-based number, a case-insensitive title, or an explicit id."""
    trimmed = identifier.strip()
    if not trimmed:
        return None

    if trimmed.isdigit():
        number = int(trimmed)
        if 1 <= number <= len(prd.tasks):
            return number - 1

    lowered = trimmed.lower()
    for index, task in enumerate(prd.tasks):
        if task.title.lower() == lowered:
            return index

    for index, task in enumerate(prd.tasks):
        if task.id == trimmed:
            return index
    return None


def _require_task(prd: Prd, identifier: str) -> int:
    index = resolve_task_index(prd, identifier)
    if index is None:
        raise PrdError(f'Task not found: "{identifier}"')
    return index


def _with_task(prd: Prd, index: int, task: Task) -> Prd:
    tasks = list(prd.tasks)
    tasks[index] = task
    return Prd(project=prd.project, tasks=tasks)


def set_dependencies(prd: Prd, identifier: str, dependencies: list[str]) -> Prd:
    index = _require_task(prd, identifier)
    task = prd.tasks[index]
    if dependencies and not task.id:
        raise PrdError(f'Task "{task.title}" needs an id to have dependencies')

    known_ids = {item.id for item in prd.tasks if item.id}
    for dependency_id in dependencies:
        if dependency_id not in known_ids:
            raise PrdError(f'Dependency "{dependency_id}" does not exist')

    updated = replace(task, depends_on=list(dependencies) if dependencies else None)
    return _with_task(prd, index, updated)


def add_dependency(prd: Prd, identifier: str, dependency_id: str) -> Prd:
    if not dependency_id.strip():
        raise PrdError("Dependency id is required")
    index = _require_task(prd, identifier)
    task = prd.tasks[index]
    if not task.id:
        raise PrdError(f'Task "{task.title}" needs an id to have dependencies')
    if not any(item.id == dependency_id for item in prd.tasks):
        raise PrdError(f'Task with id "{dependency_id}" does not exist')

    existing = list(task.depends_on or [])
    if dependency_id in existing:
        return prd
    return _with_task(prd, index, replace(task, depends_on=[*existing, dependency_id]))


def remove_dependency(prd: Prd, identifier: str, dependency_id: str) -> Prd:
    if not dependency_id.strip():
        raise PrdError("Dependency id is required")
    index = _require_task(prd, identifier)
    task = prd.tasks[index]
    existing = list(task.depends_on or [])
    if dependency_id not in existing:
        return prd
    remaining = [dep for dep in existing if dep != dependency_id]
    return _with_task(prd, index, replace(task, depends_on=remaining or None))
