from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from autokanban.errors import ConfigError

EngineName = Literal["claude", "opencode"]
ENGINE_NAMES = ("claude", "opencode")

ENV_KANBAN_PATH = "AUTOKANBAN_PATH"
ENV_ENGINE = "AUTOKANBAN_ENGINE"


@dataclass(slots=True)
class ProjectConfig:
    path: str = "."
    kanban_path: str = ""
    description: str = ""


@dataclass(slots=True)
class AgentConfig:
    engine: EngineName = "claude"
    claude_binary: str = "claude"
    opencode_binary: str = "opencode"


@dataclass(slots=True)
class GitConfig:
    enabled: bool = True
    base_branch: str = "main"
    auto_push: bool = False
    auto_merge: bool = True
    remote: str = "origin"


@dataclass(slots=True)
class LoopConfig:
    wait_seconds: float = 30.0
    max_tasks_per_run: int = 0
    auto_retry: bool = True
    max_retries: int = 3
    retry_delay_minutes: float = 5.0
    pid_file: str = "~/.autokanban/engine.pid"


@dataclass(slots=True)
class PhasesConfig:
    max_iterations: int = 3
    phase_timeout_seconds: float = 900.0
    inactivity_timeout_seconds: float = 300.0
    kill_grace_seconds: float = 5.0
    marker_window_lines: int = 30
    keep_raw_output: bool = True


@dataclass(slots=True)
class HistoryConfig:
    max_records: int = 20


@dataclass(slots=True)
class RegisteredProject:
    path: str
    enabled: bool | None = None
    base_branch: str | None = None
    auto_push: bool | None = None
    auto_merge: bool | None = None


@dataclass(slots=True)
class EngineConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    git: GitConfig = field(default_factory=GitConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    phases: PhasesConfig = field(default_factory=PhasesConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    projects: dict[str, RegisteredProject] = field(default_factory=dict)
    default_project: str = ""

    @classmethod
    def default(cls) -> EngineConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> EngineConfig:
        try:
            projects = {
                str(name): RegisteredProject(**values)
                for name, values in dict(data.get("projects", {})).items()
            }
            config = cls(
                project=ProjectConfig(**data.get("project", {})),
                agent=AgentConfig(**data.get("agent", {})),
                git=GitConfig(**data.get("git", {})),
                loop=LoopConfig(**data.get("loop", {})),
                phases=PhasesConfig(**data.get("phases", {})),
                history=HistoryConfig(**data.get("history", {})),
                projects=projects,
                default_project=str(data.get("default_project", "")),
            )
        except TypeError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        if self.agent.engine not in ENGINE_NAMES:
            raise ConfigError(
                f"Unsupported agent engine '{self.agent.engine}'. "
                f"Expected one of: {', '.join(ENGINE_NAMES)}"
            )
        if self.phases.max_iterations < 1:
            raise ConfigError("phases.max_iterations must be at least 1.")
        if self.phases.phase_timeout_seconds <= 0 or self.phases.inactivity_timeout_seconds <= 0:
            raise ConfigError("Phase timeouts must be positive.")
        if self.history.max_records < 1:
            raise ConfigError("history.max_records must be at least 1.")
        if self.default_project and self.default_project not in self.projects:
            raise ConfigError(f"default_project '{self.default_project}' is not registered.")

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "default_project": self.default_project,
            "project": {
                "path": self.project.path,
                "kanban_path": self.project.kanban_path,
                "description": self.project.description,
            },
            "agent": {
                "engine": self.agent.engine,
                "claude_binary": self.agent.claude_binary,
                "opencode_binary": self.agent.opencode_binary,
            },
            "git": {
                "enabled": self.git.enabled,
                "base_branch": self.git.base_branch,
                "auto_push": self.git.auto_push,
                "auto_merge": self.git.auto_merge,
                "remote": self.git.remote,
            },
            "loop": {
                "wait_seconds": self.loop.wait_seconds,
                "max_tasks_per_run": self.loop.max_tasks_per_run,
                "auto_retry": self.loop.auto_retry,
                "max_retries": self.loop.max_retries,
                "retry_delay_minutes": self.loop.retry_delay_minutes,
                "pid_file": self.loop.pid_file,
            },
            "phases": {
                "max_iterations": self.phases.max_iterations,
                "phase_timeout_seconds": self.phases.phase_timeout_seconds,
                "inactivity_timeout_seconds": self.phases.inactivity_timeout_seconds,
                "kill_grace_seconds": self.phases.kill_grace_seconds,
                "marker_window_lines": self.phases.marker_window_lines,
                "keep_raw_output": self.phases.keep_raw_output,
            },
            "history": {
                "max_records": self.history.max_records,
            },
            "projects": {},
        }
        for name, project in self.projects.items():
            entry: dict[str, Any] = {"path": project.path}
            for key in ("enabled", "base_branch", "auto_push", "auto_merge"):
                value = getattr(project, key)
                if value is not None:
                    entry[key] = value
            data["projects"][name] = entry
        return data

    def project_root(self) -> Path:
        return Path(self.project.path).expanduser().resolve()

    def kanban_root(self) -> Path:
        if self.project.kanban_path:
            return Path(self.project.kanban_path).expanduser().resolve()
        return self.project_root() / "kanban"

    def pid_path(self) -> Path:
        return Path(self.loop.pid_file).expanduser()

    def resolve_project_path(self, project_ref: str | None) -> Path:
        """Registered name, then absolute path, then default project, then ``project.path``."""
        if project_ref:
            registered = self.projects.get(project_ref)
            if registered is not None:
                return Path(registered.path).expanduser().resolve()
            candidate = Path(project_ref).expanduser()
            if candidate.is_absolute():
                return candidate.resolve()
        if self.default_project and self.default_project in self.projects:
            return Path(self.projects[self.default_project].path).expanduser().resolve()
        return self.project_root()

    def resolve_git_config(self, project_ref: str | None) -> GitConfig:
        registered = self.projects.get(project_ref or "")
        if registered is None:
            return GitConfig(
                enabled=self.git.enabled,
                base_branch=self.git.base_branch,
                auto_push=self.git.auto_push,
                auto_merge=self.git.auto_merge,
                remote=self.git.remote,
            )
        return GitConfig(
            enabled=self.git.enabled if registered.enabled is None else registered.enabled,
            base_branch=registered.base_branch or self.git.base_branch,
            auto_push=self.git.auto_push if registered.auto_push is None else registered.auto_push,
            auto_merge=(
                self.git.auto_merge if registered.auto_merge is None else registered.auto_merge
            ),
            remote=self.git.remote,
        )


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: EngineConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    if data["default_project"]:
        lines.append(f"default_project = {_toml_value(data['default_project'])}")
        lines.append("")
    section_order = ["project", "agent", "git", "loop", "phases", "history"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for name, values in data["projects"].items():
        lines.append(f"[projects.{json.dumps(name, ensure_ascii=False)}]")
        for key, value in values.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def apply_env_overrides(config: EngineConfig, environ: dict[str, str] | None = None) -> EngineConfig:
    env = os.environ if environ is None else environ
    kanban_path = env.get(ENV_KANBAN_PATH, "").strip()
    if kanban_path:
        config.project.kanban_path = kanban_path
    engine = env.get(ENV_ENGINE, "").strip()
    if engine:
        if engine not in ENGINE_NAMES:
            raise ConfigError(f"{ENV_ENGINE}={engine!r} is not a known engine.")
        config.agent.engine = engine  # type: ignore[assignment]
    return config


def load_config(path: Path) -> EngineConfig:
    if not path.exists():
        return EngineConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Could not parse {path}: {exc}") from exc
    return EngineConfig.from_dict(data)


def save_config(path: Path, config: EngineConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
