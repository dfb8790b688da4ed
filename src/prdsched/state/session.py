"""Execution session value and its parallel-state transitions.

Sessions are immutable. Each transition returns a new session, or the input
unchanged when the session is not in parallel mode. Persisting the result is
the caller's job (see ``SessionStore``).
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any, Literal

SessionStatus = Literal["running", "paused", "stopped", "completed"]
TaskExecutionStatus = Literal["running", "completed", "failed"]

SESSION_STATUSES: tuple[str, ...] = ("running", "paused", "stopped", "completed")
TASK_EXECUTION_STATUSES: tuple[str, ...] = ("running", "completed", "failed")
RESUMABLE_STATUSES = {"running", "paused", "stopped"}


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _require(payload: dict[str, Any], key: str, kind: type | tuple[type, ...]) -> Any:
    value = payload.get(key)
    if not isinstance(value, kind) or isinstance(value, bool) and kind is not bool:
        raise ValueError(f"Invalid session field '{key}': {value!r}")
    return value


def _optional_str(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"Invalid session field '{key}': {value!r}")
    return value


@dataclass(frozen=True, slots=True)
class TaskExecutionInfo:
    task_id: str
    task_title: str
    task_index: int
    process_id: str


@dataclass(frozen=True, slots=True)
class TaskExecution:
    task_id: str
    task_title: str
    task_index: int
    status: TaskExecutionStatus
    start_time: str
    end_time: str | None = None
    process_id: str = ""
    retry_count: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "task_title": self.task_title,
            "task_index": self.task_index,
            "status": self.status,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "process_id": self.process_id,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskExecution:
        status = payload.get("status")
        if status not in TASK_EXECUTION_STATUSES:
            raise ValueError(f"Invalid task execution status: {status!r}")
        return cls(
            task_id=_require(payload, "task_id", str),
            task_title=_require(payload, "task_title", str),
            task_index=_require(payload, "task_index", int),
            status=status,
            start_time=_require(payload, "start_time", str),
            end_time=_optional_str(payload, "end_time"),
            process_id=_require(payload, "process_id", str),
            retry_count=_require(payload, "retry_count", int),
            last_error=_optional_str(payload, "last_error"),
        )


@dataclass(frozen=True, slots=True)
class GroupProgress:
    """Persisted progress of one started group; not the in-memory group plan."""

    group_index: int
    start_time: str
    end_time: str | None = None
    task_executions: tuple[TaskExecution, ...] = ()
    is_complete: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_index": self.group_index,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "task_executions": [execution.to_dict() for execution in self.task_executions],
            "is_complete": self.is_complete,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> GroupProgress:
        return cls(
            group_index=_require(payload, "group_index", int),
            start_time=_require(payload, "start_time", str),
            end_time=_optional_str(payload, "end_time"),
            task_executions=tuple(
                TaskExecution.from_dict(item)
                for item in _require(payload, "task_executions", list)
            ),
            is_complete=_require(payload, "is_complete", bool),
        )


@dataclass(frozen=True, slots=True)
class ParallelSessionState:
    is_parallel_mode: bool
    current_group_index: int
    execution_groups: tuple[GroupProgress, ...]
    active_executions: tuple[TaskExecution, ...]
    max_concurrent_tasks: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_parallel_mode": self.is_parallel_mode,
            "current_group_index": self.current_group_index,
            "execution_groups": [group.to_dict() for group in self.execution_groups],
            "active_executions": [item.to_dict() for item in self.active_executions],
            "max_concurrent_tasks": self.max_concurrent_tasks,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ParallelSessionState:
        return cls(
            is_parallel_mode=_require(payload, "is_parallel_mode", bool),
            current_group_index=_require(payload, "current_group_index", int),
            execution_groups=tuple(
                GroupProgress.from_dict(item)
                for item in _require(payload, "execution_groups", list)
            ),
            active_executions=tuple(
                TaskExecution.from_dict(item)
                for item in _require(payload, "active_executions", list)
            ),
            max_concurrent_tasks=_require(payload, "max_concurrent_tasks", int),
        )


@dataclass(frozen=True, slots=True)
class Session:
    start_time: str
    last_update_time: str
    current_iteration: int = 0
    total_iterations: int = 0
    current_task_index: int = 0
    status: SessionStatus = "running"
    elapsed_time_seconds: float = 0
    parallel_state: ParallelSessionState | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "start_time": self.start_time,
            "last_update_time": self.last_update_time,
            "current_iteration": self.current_iteration,
            "total_iterations": self.total_iterations,
            "current_task_index": self.current_task_index,
            "status": self.status,
            "elapsed_time_seconds": self.elapsed_time_seconds,
        }
        if self.parallel_state is not None:
            payload["parallel_state"] = self.parallel_state.to_dict()
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Session:
        status = payload.get("status")
        if status not in SESSION_STATUSES:
            raise ValueError(f"Invalid session status: {status!r}")
        parallel_payload = payload.get("parallel_state")
        if parallel_payload is not None and not isinstance(parallel_payload, dict):
            raise ValueError("Invalid session field 'parallel_state'")
        return cls(
            start_time=_require(payload, "start_time", str),
            last_update_time=_require(payload, "last_update_time", str),
            current_iteration=_require(payload, "current_iteration", int),
            total_iterations=_require(payload, "total_iterations", int),
            current_task_index=_require(payload, "current_task_index", int),
            status=status,
            elapsed_time_seconds=_require(payload, "elapsed_time_seconds", (int, float)),
            parallel_state=(
                ParallelSessionState.from_dict(parallel_payload)
                if parallel_payload is not None
                else None
            ),
        )


def create_session(total_iterations: int, current_task_index: int = 0) -> Session:
    now = _utcnow_iso()
    return Session(
        start_time=now,
        last_update_time=now,
        total_iterations=total_iterations,
        current_task_index=current_task_index,
    )


def update_status(session: Session, status: SessionStatus) -> Session:
    return replace(session, status=status, last_update_time=_utcnow_iso())


def update_iteration(
    session: Session,
    current_iteration: int,
    current_task_index: int,
    elapsed_time_seconds: float,
) -> Session:
    return replace(
        session,
        current_iteration=current_iteration,
        current_task_index=current_task_index,
        elapsed_time_seconds=elapsed_time_seconds,
        last_update_time=_utcnow_iso(),
    )


def is_resumable(session: Session | None) -> bool:
    return session is not None and session.status in RESUMABLE_STATUSES


def is_parallel_mode(session: Session) -> bool:
    return session.parallel_state is not None and session.parallel_state.is_parallel_mode


def _with_parallel(session: Session, state: ParallelSessionState, now: str) -> Session:
    return replace(session, parallel_state=state, last_update_time=now)


def _update_execution(session: Session, task_id: str, **changes: Any) -> Session:
    # Only the latest record for task_id moves; earlier attempts stay as they were.
    state = session.parallel_state
    target = get_task_execution(session, task_id)
    if state is None or target is None:
        return session
    updated = replace(target, **changes)

    def _swap(executions: tuple[TaskExecution, ...]) -> tuple[TaskExecution, ...]:
        return tuple(updated if item == target else item for item in executions)

    groups = tuple(
        replace(group, task_executions=_swap(group.task_executions))
        for group in state.execution_groups
    )
    return _with_parallel(
        session,
        replace(
            state,
            execution_groups=groups,
            active_executions=_swap(state.active_executions),
        ),
        _utcnow_iso(),
    )


def enable_parallel_mode(session: Session, max_concurrent_tasks: int) -> Session:
    state = ParallelSessionState(
        is_parallel_mode=True,
        current_group_index=-1,
        execution_groups=(),
        active_executions=(),
        max_concurrent_tasks=max_concurrent_tasks,
    )
    return _with_parallel(session, state, _utcnow_iso())


def disable_parallel_mode(session: Session) -> Session:
    if session.parallel_state is None:
        return session
    return replace(session, parallel_state=None, last_update_time=_utcnow_iso())


def start_parallel_group(session: Session, group_index: int) -> Session:
    state = session.parallel_state
    if state is None:
        return session
    now = _utcnow_iso()
    group = GroupProgress(group_index=group_index, start_time=now)
    return _with_parallel(
        session,
        replace(
            state,
            current_group_index=group_index,
            execution_groups=(*state.execution_groups, group),
        ),
        now,
    )


def complete_parallel_group(session: Session, group_index: int) -> Session:
    state = session.parallel_state
    if state is None:
        return session
    now = _utcnow_iso()

    groups = tuple(
        replace(group, end_time=now, is_complete=True)
        if group.group_index == group_index and not group.is_complete
        else group
        for group in state.execution_groups
    )
    return _with_parallel(session, replace(state, execution_groups=groups), now)


def get_current_parallel_group(session: Session) -> GroupProgress | None:
    state = session.parallel_state
    if state is None or state.current_group_index < 0:
        return None
    for group in state.execution_groups:
        if group.group_index == state.current_group_index and not group.is_complete:
            return group
    return None


def start_task_execution(session: Session, info: TaskExecutionInfo) -> Session:
    state = session.parallel_state
    if state is None:
        return session
    now = _utcnow_iso()
    execution = TaskExecution(
        task_id=info.task_id,
        task_title=info.task_title,
        task_index=info.task_index,
        status="running",
        start_time=now,
        process_id=info.process_id,
    )
    current = get_current_parallel_group(session)
    groups = tuple(
        replace(group, task_executions=(*group.task_executions, execution))
        if group is current
        else group
        for group in state.execution_groups
    )
    return _with_parallel(
        session,
        replace(
            state,
            execution_groups=groups,
            active_executions=(*state.active_executions, execution),
        ),
        now,
    )


def complete_task_execution(session: Session, task_id: str, was_successful: bool) -> Session:
    if session.parallel_state is None:
        return session
    return _update_execution(
        session,
        task_id,
        status="completed" if was_successful else "failed",
        end_time=_utcnow_iso(),
    )


def fail_task_execution(session: Session, task_id: str, error: str) -> Session:
    if session.parallel_state is None:
        return session
    return _update_execution(
        session, task_id, status="failed", end_time=_utcnow_iso(), last_error=error
    )


def retry_task_execution(session: Session, task_id: str) -> Session:
    execution = get_task_execution(session, task_id)
    if execution is None:
        return session
    return _update_execution(
        session,
        task_id,
        status="running",
        start_time=_utcnow_iso(),
        end_time=None,
        last_error=None,
        retry_count=execution.retry_count + 1,
    )


def get_active_executions(session: Session) -> list[TaskExecution]:
    if session.parallel_state is None:
        return []
    return [item for item in session.parallel_state.active_executions if item.status == "running"]


def get_task_execution(session: Session, task_id: str) -> TaskExecution | None:
    if session.parallel_state is None:
        return None
    for execution in reversed(session.parallel_state.active_executions):
        if execution.task_id == task_id:
            return execution
    return None


def is_task_executing(session: Session, task_id: str) -> bool:
    execution = get_task_execution(session, task_id)
    return execution is not None and execution.status == "running"


def get_active_execution_count(session: Session) -> int:
    return len(get_active_executions(session))
