import json
from pathlib import Path

from click.testing import CliRunner

from prdsched.cli import cli
from prdsched.prd import Prd, PrdStore, Task
from prdsched.state import SessionStore
from prdsched.state.session import create_session, enable_parallel_mode


def _write_prd(repo: Path, tasks: list[Task]) -> PrdStore:
    store = PrdStore(repo / ".prdsched" / "prd.json")
    store.save(Prd(project="demo", tasks=tasks))
    return store


def _diamond() -> list[Task]:
    return [
        Task(title="Schema", id="schema"),
        Task(title="API", id="api", depends_on=["schema"]),
        Task(title="UI", id="ui", depends_on=["schema"]),
        Task(title="Release", id="release", depends_on=["api", "ui"]),
    ]


def test_init_writes_config_and_empty_prd(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    result = runner.invoke(cli, ["init"])

    assert result.exit_code == 0, result.output
    assert (tmp_path / "prdsched.toml").exists()
    prd = PrdStore(tmp_path / ".prdsched" / "prd.json").load()
    assert prd is not None
    assert prd.tasks == []


def test_dependency_graph_json(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    _write_prd(tmp_path, _diamond())
    runner = CliRunner()

    result = runner.invoke(cli, ["dependency", "graph", "--json"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["groups"][0] == ["schema"]
    assert sorted(payload["groups"][1]) == ["api", "ui"]
    assert payload["groups"][2] == ["release"]
    assert payload["tasks"][3]["blocked_by"] == ["API", "UI"]


def test_validate_exits_nonzero_on_invalid_dependencies(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    _write_prd(tmp_path, _diamond())
    ok = runner.invoke(cli, ["dependency", "validate"])
    assert ok.exit_code == 0
    assert "Dependencies are valid." in ok.output

    _write_prd(
        tmp_path,
        [Task(title="A", id="a", depends_on=["b"]), Task(title="B", id="b", depends_on=["a"])],
    )
    bad = runner.invoke(cli, ["dependency", "validate"])
    assert bad.exit_code == 1
    assert "cycle: " in bad.output

    _write_prd(tmp_path, [Task(title="A", id="a"), Task(title="Again", id="a")])
    duplicate = runner.invoke(cli, ["dependency", "validate"])
    assert duplicate.exit_code == 1
    assert "duplicate_id: " in duplicate.output


def test_ready_blocked_and_order(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    tasks = _diamond()
    tasks[0].done = True
    _write_prd(tmp_path, tasks)
    runner = CliRunner()

    ready = runner.invoke(cli, ["dependency", "ready", "--json"])
    blocked = runner.invoke(cli, ["dependency", "blocked"])
    order = runner.invoke(cli, ["dependency", "order", "--json"])

    assert [item["id"] for item in json.loads(ready.output)] == ["api", "ui"]
    assert "4. Release (release)  blocked by: API, UI" in blocked.output
    assert [item["id"] for item in json.loads(order.output)] == ["api", "ui", "release"]


def test_edit_dependencies(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    store = _write_prd(tmp_path, _diamond())
    runner = CliRunner()

    removed = runner.invoke(cli, ["dependency", "remove", "release", "ui"])
    added = runner.invoke(cli, ["dependency", "add", "UI", "api"])
    missing = runner.invoke(cli, ["dependency", "add", "ui", "ghost"])
    cleared = runner.invoke(cli, ["dependency", "set", "2"])

    assert removed.exit_code == 0, removed.output
    assert added.exit_code == 0, added.output
    assert missing.exit_code == 1
    assert 'Task with id "ghost" does not exist' in missing.output
    assert cleared.exit_code == 0
    assert "Dependencies cleared." in cleared.output

    prd = store.reload()
    assert prd is not None
    assert prd.tasks[1].depends_on is None
    assert prd.tasks[2].depends_on == ["schema", "api"]
    assert prd.tasks[3].depends_on == ["api"]


def test_show_task(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    _write_prd(tmp_path, _diamond())
    runner = CliRunner()

    result = runner.invoke(cli, ["dependency", "show", "schema", "--json"])
    unknown = runner.invoke(cli, ["dependency", "show", "nope"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["dependents"] == ["API", "UI"]
    assert unknown.exit_code == 1


def test_missing_prd_is_a_clean_error(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["dependency", "ready"])

    assert result.exit_code == 1
    assert "No PRD found" in result.output


def test_session_status_and_clear(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    empty = runner.invoke(cli, ["session", "status"])
    assert "No session." in empty.output

    store = SessionStore(tmp_path / ".prdsched" / "session.json")
    store.save(enable_parallel_mode(create_session(5), 2))

    status = runner.invoke(cli, ["session", "status"])
    assert status.exit_code == 0, status.output
    assert "Parallel mode: on (max 2 concurrent)" in status.output

    as_json = runner.invoke(cli, ["session", "status", "--json"])
    assert json.loads(as_json.output)["parallel_state"]["max_concurrent_tasks"] == 2

    cleared = runner.invoke(cli, ["session", "clear"])
    assert cleared.exit_code == 0
    assert store.exists() is False
