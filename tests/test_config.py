import tomllib
from pathlib import Path

from prdsched import __version__
from prdsched.config import ParallelConfig, SchedulerConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "prdsched.toml"
    config = SchedulerConfig.default()
    config.project.name = "prdsched-test"
    config.project.prd_file = "plans/prd.json"
    config.parallel.enabled = True
    config.parallel.max_concurrent_tasks = 4
    config.parallel.split_oversized_groups = False
    config.state.progress_max_bytes = 2048
    config.logging.level = "DEBUG"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "prdsched-test"
    assert loaded.project.prd_file == "plans/prd.json"
    assert loaded.parallel.enabled is True
    assert loaded.parallel.max_concurrent_tasks == 4
    assert loaded.parallel.split_oversized_groups is False
    assert loaded.state.session_file == ".prdsched/session.json"
    assert loaded.state.progress_max_bytes == 2048
    assert loaded.logging.level == "DEBUG"


def test_missing_config_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded == SchedulerConfig.default()
    assert loaded.parallel.enabled is False
    assert loaded.parallel.max_concurrent_tasks == 1


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(SchedulerConfig.default())

    for section in ("[project]", "[parallel]", "[state]", "[logging]"):
        assert section in rendered
    assert "split_oversized_groups = true" in rendered
    assert tomllib.loads(rendered)["state"]["progress_backups"] == 2


def test_toml_strings_are_quoted_and_escaped() -> None:
    config = SchedulerConfig.default()
    config.project.name = 'say "héllo"'

    parsed = tomllib.loads(dumps_toml(config))

    assert parsed["project"]["name"] == 'say "héllo"'
    assert parsed["parallel"]["enabled"] is False
    assert parsed["parallel"]["max_concurrent_tasks"] == 1


def test_max_concurrent_tasks_is_clamped() -> None:
    assert ParallelConfig(enabled=True, max_concurrent_tasks=0).max_concurrent_tasks == 1


def test_resolve_relative_and_absolute_paths(tmp_path: Path) -> None:
    config = SchedulerConfig.default()

    assert config.resolve(tmp_path, "a/b.json") == tmp_path / "a" / "b.json"
    assert config.resolve(tmp_path, str(tmp_path / "x")) == tmp_path / "x"


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
