from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from prdsched.config import SchedulerConfig, load_config, save_config
from prdsched.graph import (
    TaskDependencyInfo,
    detect_cycles,
    get_all_tasks_with_dependency_info,
    get_blocked_tasks,
    get_execution_order,
    get_parallel_execution_groups,
    get_ready_tasks,
    node_id,
    validate_for_scheduling,
)
from prdsched.logs import configure_logging
from prdsched.prd import (
    Prd,
    PrdError,
    PrdStore,
    add_dependency,
    remove_dependency,
    resolve_task_index,
    set_dependencies,
)
from prdsched.state import SessionStore, SessionStoreError
from prdsched.state.session import get_active_executions, is_parallel_mode

DEFAULT_CONFIG = "prdsched.toml"

config_option = click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
json_option = click.option("--json", "as_json", is_flag=True, default=False)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: SchedulerConfig
    prd_store: PrdStore
    session_store: SessionStore


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    configure_logging(config.logging.level, config.resolve(repo_root, config.logging.log_file))
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        prd_store=PrdStore(config.resolve(repo_root, config.project.prd_file)),
        session_store=SessionStore(config.resolve(repo_root, config.state.session_file)),
    )


def _load_prd(runtime: Runtime) -> Prd:
    try:
        prd = runtime.prd_store.load(strict=True)
    except PrdError as exc:
        raise click.ClickException(str(exc)) from exc
    if prd is None:
        raise click.ClickException(f"No PRD found at {runtime.prd_store.path}")
    return prd


def _save_prd(runtime: Runtime, prd: Prd) -> None:
    try:
        runtime.prd_store.save(prd)
    except PrdError as exc:
        raise click.ClickException(str(exc)) from exc


def _info_payload(info: TaskDependencyInfo) -> dict[str, Any]:
    return {
        "index": info.index + 1,
        "id": node_id(info.task, info.index),
        "title": info.task.title,
        "done": info.task.done,
        "depends_on": info.dependency_ids,
        "is_ready": info.is_ready,
        "blocked_by": info.blocked_by,
    }


def _label(info: TaskDependencyInfo) -> str:
    suffix = f" ({info.task.id})" if info.task.id else ""
    return f"{info.index + 1}. {info.task.title}{suffix}"


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@click.group()
def cli() -> None:
    """PRD task scheduler."""


@cli.command("init")
@config_option
def init_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    save_config(config_path, config)

    prd_store = PrdStore(config.resolve(repo_root, config.project.prd_file))
    if not prd_store.exists():
        try:
            prd_store.save(Prd(project=config.project.name))
        except PrdError as exc:
            raise click.ClickException(str(exc)) from exc

    click.echo(f"Initialized prdsched in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"PRD: {prd_store.path}")


@cli.group("dependency")
def dependency_group() -> None:
    """Inspect and edit task dependencies."""


@dependency_group.command("graph")
@json_option
@config_option
def graph_command(as_json: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    tasks = _load_prd(runtime).tasks
    infos = get_all_tasks_with_dependency_info(tasks)
    positions = {id(task): index for index, task in enumerate(tasks)}
    groups = [
        [node_id(task, positions[id(task)]) for task in group]
        for group in get_parallel_execution_groups(tasks)
    ]

    if as_json:
        _echo_json({"tasks": [_info_payload(info) for info in infos], "groups": groups})
        return

    if not infos:
        click.echo("No tasks.")
        return
    for info in infos:
        marker = "x" if info.task.done else " "
        click.echo(f"[{marker}] {_label(info)}")
        for dependency_id in info.dependency_ids:
            click.echo(f"      <- {dependency_id}")
    click.echo("")
    click.echo("Parallel groups:")
    for number, group in enumerate(groups, start=1):
        click.echo(f"  {number}: {', '.join(group)}")


@dependency_group.command("validate")
@json_option
@config_option
@click.pass_context
def validate_command(ctx: click.Context, as_json: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    tasks = _load_prd(runtime).tasks
    result = validate_for_scheduling(tasks)

    if as_json:
        _echo_json(
            {
                "is_valid": result.is_valid,
                "errors": [error.to_dict() for error in result.errors],
                "cycle": detect_cycles(tasks).cycle_nodes,
            }
        )
    elif result.is_valid:
        click.echo("Dependencies are valid.")
    else:
        click.echo(f"Found {len(result.errors)} dependency error(s):")
        for error in result.errors:
            click.echo(f"  {error.kind}: {error.task_title}: {error.details}")

    if not result.is_valid:
        ctx.exit(1)


def _echo_infos(infos: list[TaskDependencyInfo], as_json: bool, empty: str) -> None:
    if as_json:
        _echo_json([_info_payload(info) for info in infos])
        return
    if not infos:
        click.echo(empty)
        return
    for info in infos:
        line = _label(info)
        if info.blocked_by:
            line += f"  blocked by: {', '.join(info.blocked_by)}"
        click.echo(line)


@dependency_group.command("ready")
@json_option
@config_option
def ready_command(as_json: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    _echo_infos(get_ready_tasks(_load_prd(runtime).tasks), as_json, "No ready tasks.")


@dependency_group.command("blocked")
@json_option
@config_option
def blocked_command(as_json: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    _echo_infos(get_blocked_tasks(_load_prd(runtime).tasks), as_json, "No blocked tasks.")


@dependency_group.command("order")
@json_option
@config_option
def order_command(as_json: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    tasks = _load_prd(runtime).tasks
    positions = {id(task): index for index, task in enumerate(tasks)}
    ordered = get_execution_order(tasks)

    if as_json:
        _echo_json(
            [
                {"id": node_id(task, positions[id(task)]), "title": task.title}
                for task in ordered
            ]
        )
        return
    if not ordered:
        click.echo("Nothing left to run.")
        return
    for number, task in enumerate(ordered, start=1):
        click.echo(f"{number}. {task.title}")


@dependency_group.command("show")
@click.argument("task_ref")
@json_option
@config_option
def show_command(task_ref: str, as_json: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    tasks = _load_prd(runtime).tasks
    infos = get_all_tasks_with_dependency_info(tasks)
    index = resolve_task_index(Prd(project="", tasks=tasks), task_ref)
    if index is None:
        raise click.ClickException(f'Task not found: "{task_ref}"')

    info = next((item for item in infos if item.index == index), None)
    if info is None:
        raise click.ClickException(f"Task {index + 1} shares its id with a later task.")
    identifier = node_id(info.task, info.index)
    dependents = [
        other.task.title for other in infos if identifier in other.dependency_ids
    ]
    if as_json:
        payload = _info_payload(info)
        payload["dependents"] = dependents
        _echo_json(payload)
        return

    click.echo(_label(info))
    click.echo(f"Status: {'done' if info.task.done else 'ready' if info.is_ready else 'blocked'}")
    click.echo(f"Depends on: {', '.join(info.dependency_ids) or '-'}")
    if info.blocked_by:
        click.echo(f"Blocked by: {', '.join(info.blocked_by)}")
    click.echo(f"Dependents: {', '.join(dependents) or '-'}")


@dependency_group.command("set")
@click.argument("task_ref")
@click.argument("dependencies", nargs=-1)
@config_option
def set_command(task_ref: str, dependencies: tuple[str, ...], config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        prd = set_dependencies(_load_prd(runtime), task_ref, list(dependencies))
    except PrdError as exc:
        raise click.ClickException(str(exc)) from exc
    _save_prd(runtime, prd)
    if dependencies:
        click.echo(f"Dependencies set: {', '.join(dependencies)}")
    else:
        click.echo("Dependencies cleared.")


@dependency_group.command("add")
@click.argument("task_ref")
@click.argument("dependency_id")
@config_option
def add_command(task_ref: str, dependency_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        prd = add_dependency(_load_prd(runtime), task_ref, dependency_id)
    except PrdError as exc:
        raise click.ClickException(str(exc)) from exc
    _save_prd(runtime, prd)
    click.echo(f"Added dependency: {dependency_id}")


@dependency_group.command("remove")
@click.argument("task_ref")
@click.argument("dependency_id")
@config_option
def remove_command(task_ref: str, dependency_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        prd = remove_dependency(_load_prd(runtime), task_ref, dependency_id)
    except PrdError as exc:
        raise click.ClickException(str(exc)) from exc
    _save_prd(runtime, prd)
    click.echo(f"Removed dependency: {dependency_id}")


@cli.group("session")
def session_group() -> None:
    """Inspect the persisted execution session."""


@session_group.command("status")
@json_option
@config_option
def session_status_command(as_json: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    session = runtime.session_store.load()
    if session is None:
        if as_json:
            _echo_json(None)
        else:
            click.echo("No session.")
        return

    if as_json:
        _echo_json(session.to_dict())
        return

    click.echo(f"Status: {session.status}")
    click.echo(f"Iteration: {session.current_iteration}/{session.total_iterations}")
    click.echo(f"Started: {session.start_time}")
    click.echo(f"Updated: {session.last_update_time}")
    if not is_parallel_mode(session) or session.parallel_state is None:
        click.echo("Parallel mode: off")
        return

    state = session.parallel_state
    click.echo(f"Parallel mode: on (max {state.max_concurrent_tasks} concurrent)")
    click.echo(f"Current group: {state.current_group_index}")
    click.echo(f"Groups started: {len(state.execution_groups)}")
    running = get_active_executions(session)
    click.echo(f"Running: {len(running)}")
    for execution in running:
        click.echo(f"  {execution.task_id} {execution.task_title} ({execution.process_id})")


@session_group.command("clear")
@config_option
def session_clear_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        runtime.session_store.delete()
    except SessionStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo("Session cleared.")
