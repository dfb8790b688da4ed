from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    prd_file: str = ".prdsched/prd.json"


@dataclass(slots=True)
class ParallelConfig:
    enabled: bool = False
    max_concurrent_tasks: int = 1
    split_oversized_groups: bool = True

    def __post_init__(self) -> None:
        self.max_concurrent_tasks = max(1, int(self.max_concurrent_tasks))


@dataclass(slots=True)
class StateConfig:
    session_file: str = ".prdsched/session.json"
    progress_file: str = ".prdsched/progress.txt"
    progress_max_bytes: int = 1024 * 1024
    progress_backups: int = 2


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevel = "INFO"
    log_file: str = ".prdsched/prdsched.log"


@dataclass(slots=True)
class SchedulerConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    parallel: ParallelConfig = field(default_factory=ParallelConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> SchedulerConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> SchedulerConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            parallel=ParallelConfig(**data.get("parallel", {})),
            state=StateConfig(**data.get("state", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "prd_file": self.project.prd_file,
            },
            "parallel": {
                "enabled": self.parallel.enabled,
                "max_concurrent_tasks": self.parallel.max_concurrent_tasks,
                "split_oversized_groups": self.parallel.split_oversized_groups,
            },
            "state": {
                "session_file": self.state.session_file,
                "progress_file": self.state.progress_file,
                "progress_max_bytes": self.state.progress_max_bytes,
                "progress_backups": self.state.progress_backups,
            },
            "logging": {
                "level": self.logging.level,
                "log_file": self.logging.log_file,
            },
        }

    def resolve(self, repo_root: Path, value: str) -> Path:
        path = Path(value)
        if not path.is_absolute():
            path = repo_root / path
        return path


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: SchedulerConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "parallel", "state", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> SchedulerConfig:
    if not path.exists():
        return SchedulerConfig.default()
    return SchedulerConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: SchedulerConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
