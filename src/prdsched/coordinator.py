from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

from prdsched.config import ParallelConfig, SchedulerConfig
from prdsched.graph import (
    GraphNode,
    build_graph,
    get_ready_tasks,
    parallel_levels,
    validate_for_scheduling,
)
from prdsched.prd import Prd, Task
from prdsched.progress import ProgressLog
from prdsched.state import session as transitions
from prdsched.state.session import Session, TaskExecution, TaskExecutionInfo

logger = logging.getLogger(__name__)


class TaskSource(Protocol):
    def reload(self) -> Prd | None: ...


class SessionSink(Protocol):
    def load(self) -> Session | None: ...

    def save(self, session: Session) -> Any: ...


@dataclass(frozen=True, slots=True)
class PlannedGroup:
    index: int
    task_ids: tuple[str, ...]


@dataclass(slots=True)
class GroupInFlight:
    group_index: int
    tasks: list[Task]
    task_ids: list[str]
    completed_task_ids: set[str] = field(default_factory=set)
    failed_task_ids: set[str] = field(default_factory=set)
    start_time: float = field(default_factory=time.time)


@dataclass(frozen=True, slots=True)
class TaskResult:
    task_id: str
    task_title: str
    success: bool
    error: str | None = None


@dataclass(frozen=True, slots=True)
class InitializeResult:
    is_valid: bool
    error: str | None = None


@dataclass(frozen=True, slots=True)
class StartGroupResult:
    started: bool
    group_index: int
    tasks: list[Task] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class TaskCompletion:
    group_complete: bool
    all_succeeded: bool


@dataclass(frozen=True, slots=True)
class ExecutionSummary:
    total_groups: int
    completed_groups: int
    current_group_index: int
    is_active: bool


@dataclass(frozen=True, slots=True)
class ResumeInfo:
    last_group_index: int
    interrupted: list[TaskExecution]
    max_concurrent_tasks: int


def _disabled_config() -> ParallelConfig:
    return ParallelConfig(enabled=False, max_concurrent_tasks=1)


class ParallelExecutionCoordinator:
    """Advances through dependency levels and records task outcomes.

    The coordinator never runs tasks itself. An external executor asks for a
    batch with ``start_next_group`` and reports back through
    ``record_task_start`` / ``record_task_complete``. Every change to the
    attached session is saved immediately so an interrupted run can be
    inspected from the session file.
    """

    def __init__(
        self,
        task_source: TaskSource,
        session_store: SessionSink,
        progress: ProgressLog | None = None,
        session: Session | None = None,
        settings: SchedulerConfig | None = None,
    ) -> None:
        self.task_source = task_source
        self.session_store = session_store
        self.progress = progress
        self._session = session
        self._settings = settings
        self._config = _disabled_config()
        self._plan: tuple[PlannedGroup, ...] = ()
        self._nodes: dict[str, GraphNode] = {}
        self._ids_by_task: dict[int, str] = {}
        self._current_group_index = 0
        self._level_offset = 0
        self._current_group: GroupInFlight | None = None
        self._task_results: dict[str, TaskResult] = {}

    # -- session ---------------------------------------------------------

    @property
    def session(self) -> Session | None:
        return self._session

    def attach_session(self, session: Session | None) -> None:
        self._session = session

    def set_settings(self, settings: SchedulerConfig | None) -> None:
        self._settings = settings

    def _persist(self, session: Session) -> None:
        self._session = session
        self.session_store.save(session)

    # -- observers -------------------------------------------------------

    def is_enabled(self) -> bool:
        return self._config.enabled

    def get_config(self) -> ParallelConfig:
        return replace(self._config)

    def get_current_group(self) -> GroupInFlight | None:
        return self._current_group

    def get_plan(self) -> tuple[PlannedGroup, ...]:
        return self._plan

    def get_execution_groups(self) -> list[list[Task]]:
        return [[self._nodes[task_id].task for task_id in group.task_ids] for group in self._plan]

    def get_task_results(self) -> dict[str, TaskResult]:
        return dict(self._task_results)

    def has_more_groups(self) -> bool:
        return self._current_group_index < len(self._plan)

    def get_summary(self) -> ExecutionSummary:
        return ExecutionSummary(
            total_groups=len(self._plan),
            completed_groups=self._current_group_index,
            current_group_index=self._current_group_index,
            is_active=self._current_group is not None,
        )

    # -- lifecycle -------------------------------------------------------

    def initialize(
        self, tasks: Sequence[Task], config: ParallelConfig | None = None
    ) -> InitializeResult:
        if config is None:
            config = self._settings.parallel if self._settings else _disabled_config()

        if not config.enabled:
            self._config = replace(config)
            return InitializeResult(is_valid=True)

        snapshot = list(tasks)
        validation = validate_for_scheduling(snapshot)
        if not validation.is_valid:
            messages = "\n".join(f"{error.kind}: {error.details}" for error in validation.errors)
            logger.error(
                "[coordinator] Dependency validation failed with %d error(s)",
                len(validation.errors),
            )
            return InitializeResult(
                is_valid=False,
                error=f"Invalid task dependencies:\n{messages}",
            )

        graph = build_graph(snapshot)
        self._config = replace(config)
        self._nodes = dict(graph.nodes)
        self._ids_by_task = {id(node.task): task_id for task_id, node in graph.nodes.items()}
        self._plan = tuple(
            PlannedGroup(index=index, task_ids=tuple(level))
            for index, level in enumerate(parallel_levels(graph))
        )
        self._current_group_index = 0
        self._level_offset = 0
        self._current_group = None
        self._task_results.clear()

        logger.info(
            "[coordinator] Initialized parallel execution: %d group(s), max %d concurrent",
            len(self._plan),
            self._config.max_concurrent_tasks,
        )

        if self._session is not None:
            self._persist(
                transitions.enable_parallel_mode(self._session, self._config.max_concurrent_tasks)
            )
        return InitializeResult(is_valid=True)

    def start_next_group(self) -> StartGroupResult:
        if self._current_group is not None:
            logger.warning(
                "[coordinator] Group %d is still in flight; not starting another",
                self._current_group.group_index,
            )
            return StartGroupResult(started=False, group_index=self._current_group.group_index)

        while self._current_group_index < len(self._plan):
            group = self._plan[self._current_group_index]
            remaining = group.task_ids[self._level_offset :]
            if not remaining:
                logger.warning(
                    "[coordinator] Empty parallel group encountered: %d", self._current_group_index
                )
                self._current_group_index += 1
                self._level_offset = 0
                continue

            batch_ids = list(remaining[: self._config.max_concurrent_tasks])
            batch = [self._nodes[task_id].task for task_id in batch_ids]
            self._current_group = GroupInFlight(
                group_index=self._current_group_index,
                tasks=batch,
                task_ids=batch_ids,
            )
            self._task_results.clear()

            logger.info(
                "[coordinator] Starting parallel group %d with %d task(s): %s",
                self._current_group_index,
                len(batch),
                ", ".join(task.title for task in batch),
            )
            if self._session is not None:
                self._persist(
                    transitions.start_parallel_group(self._session, self._current_group_index)
                )
            return StartGroupResult(
                started=True, group_index=self._current_group_index, tasks=batch
            )

        logger.info("[coordinator] All parallel groups completed")
        return StartGroupResult(started=False, group_index=-1)

    def execution_id_for(self, task: Task) -> str:
        """Explicit id, else the positional node id from this run's snapshot."""
        if task.id:
            return task.id
        task_id = self._ids_by_task.get(id(task))
        if task_id is not None:
            return task_id
        for candidate_id, node in self._nodes.items():
            if node.task == task:
                return candidate_id
        logger.warning("[coordinator] Task %r is not part of the current plan", task.title)
        return task.title

    def _task_index(self, execution_id: str) -> int:
        node = self._nodes.get(execution_id)
        return node.index if node is not None else -1

    def record_task_start(self, task: Task, process_id: str | int) -> str:
        execution_id = self.execution_id_for(task)
        logger.info(
            "[coordinator] Task started: %s (%s) process=%s group=%d",
            task.title,
            execution_id,
            process_id,
            self._current_group_index,
        )
        if self._session is not None:
            self._persist(
                transitions.start_task_execution(
                    self._session,
                    TaskExecutionInfo(
                        task_id=execution_id,
                        task_title=task.title,
                        task_index=self._task_index(execution_id),
                        process_id=str(process_id),
                    ),
                )
            )
        return execution_id

    def record_task_complete(
        self,
        task_id: str,
        task_title: str,
        was_successful: bool,
        error: str | None = None,
    ) -> TaskCompletion:
        group = self._current_group
        if group is None:
            # Not an "all done" signal: a stale callback arrived after its group closed.
            logger.warning("[coordinator] No active group when recording completion of %s", task_id)
            return TaskCompletion(group_complete=True, all_succeeded=False)

        if task_id not in group.task_ids:
            logger.warning(
                "[coordinator] Ignoring completion of %s; not part of group %d",
                task_id,
                group.group_index,
            )
            return TaskCompletion(group_complete=False, all_succeeded=not group.failed_task_ids)

        self._task_results[task_id] = TaskResult(
            task_id=task_id, task_title=task_title, success=was_successful, error=error
        )
        if was_successful:
            group.failed_task_ids.discard(task_id)
            group.completed_task_ids.add(task_id)
        else:
            group.completed_task_ids.discard(task_id)
            group.failed_task_ids.add(task_id)

        logger.info(
            "[coordinator] Task finished: %s success=%s (%d ok, %d failed, %d in group)",
            task_title,
            was_successful,
            len(group.completed_task_ids),
            len(group.failed_task_ids),
            len(group.tasks),
        )

        if self._session is not None:
            if was_successful:
                updated = transitions.complete_task_execution(self._session, task_id, True)
            else:
                updated = transitions.fail_task_execution(
                    self._session, task_id, error or "Unknown error"
                )
            self._persist(updated)

        finished = len(group.completed_task_ids) + len(group.failed_task_ids)
        group_complete = finished >= len(group.tasks)
        all_succeeded = not group.failed_task_ids
        if group_complete:
            self._complete_current_group()
        return TaskCompletion(group_complete=group_complete, all_succeeded=all_succeeded)

    def _complete_current_group(self) -> None:
        group = self._current_group
        if group is None:
            return

        duration = time.time() - group.start_time
        logger.info(
            "[coordinator] Parallel group %d completed in %.1fs (%d ok, %d failed)",
            group.group_index,
            duration,
            len(group.completed_task_ids),
            len(group.failed_task_ids),
        )
        if self._session is not None:
            self._persist(transitions.complete_parallel_group(self._session, group.group_index))
        if self.progress is not None:
            self.progress.append(
                f"=== Parallel Group {group.group_index + 1} Complete ===\n"
                f"Completed: {len(group.completed_task_ids)}, "
                f"Failed: {len(group.failed_task_ids)}, "
                f"Duration: {round(duration)}s\n"
            )

        level_size = len(self._plan[group.group_index].task_ids)
        next_offset = self._level_offset + len(group.tasks)
        if self._config.split_oversized_groups and next_offset < level_size:
            self._level_offset = next_offset
        else:
            self._current_group_index += 1
            self._level_offset = 0
        self._current_group = None

    def get_ready_tasks_for_execution(self) -> list[Task]:
        prd = self.task_source.reload()
        if prd is None:
            return []
        ready = [info.task for info in get_ready_tasks(prd.tasks) if not info.task.done]
        return ready[: self._config.max_concurrent_tasks]

    def resume_info(self) -> ResumeInfo | None:
        """What the persisted session says about an interrupted parallel run."""
        session = self._session if self._session is not None else self.session_store.load()
        if session is None or session.parallel_state is None:
            return None
        state = session.parallel_state
        return ResumeInfo(
            last_group_index=state.current_group_index,
            interrupted=transitions.get_active_executions(session),
            max_concurrent_tasks=state.max_concurrent_tasks,
        )

    def _clear(self) -> None:
        self._config = _disabled_config()
        self._plan = ()
        self._nodes = {}
        self._ids_by_task = {}
        self._current_group_index = 0
        self._level_offset = 0
        self._current_group = None
        self._task_results.clear()

    def disable(self) -> None:
        if not self._config.enabled:
            return
        logger.info("[coordinator] Disabling parallel execution")
        self._clear()
        if self._session is not None:
            self._persist(transitions.disable_parallel_mode(self._session))

    def reset(self) -> None:
        self._clear()
        self._settings = None
