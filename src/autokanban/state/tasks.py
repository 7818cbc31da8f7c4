from __future__ import annotations

import logging
import os
import re
import tempfile
import unicodedata
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml

from autokanban.errors import TaskStoreError

log = logging.getLogger(__name__)

COLUMNS = ("backlog", "todo", "in_progress", "review", "done")
TASK_TYPES = ("feature", "fix", "bug", "architecture")

_FRONT_MATTER = re.compile(r"\A---\s*\n(.*?)\n---\s*(?:\n|\Z)(.*)\Z", re.DOTALL)
_FILE_ID = re.compile(r"^(\d+)-")

# Attribute name -> front-matter key. Keys stay camelCase so the board reads the same files.
_FIELD_KEYS: dict[str, str] = {
    "id": "id",
    "title": "title",
    "type": "type",
    "priority": "priority",
    "branch": "branch",
    "labels": "labels",
    "depends_on": "dependsOn",
    "project": "project",
    "created_at": "createdAt",
    "started_at": "startedAt",
    "completed_at": "completedAt",
    "last_attempt_at": "lastAttemptAt",
    "last_retry_at": "lastRetryAt",
    "retry_count": "retryCount",
    "last_error": "lastError",
    "last_error_phase": "lastErrorPhase",
    "iterations": "iterations",
}
_KEY_FIELDS = {key: name for name, key in _FIELD_KEYS.items()}


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def slugify(text: str, max_length: int | None = None) -> str:
    if not text:
        return ""
    normalized = unicodedata.normalize("NFD", text.lower())
    stripped = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    slug = re.sub(r"[^a-z0-9\s-]", "", stripped).strip()
    slug = re.sub(r"[\s-]+", "-", slug)
    if max_length and len(slug) > max_length:
        slug = slug[:max_length].rstrip("-")
    return slug


def normalize_task_id(task_id: str | int) -> str:
    raw = str(task_id).strip()
    if raw.isdigit():
        return raw.zfill(3)
    return raw


def branch_name_for(task_type: str, title: str) -> str:
    prefix = task_type if task_type in {"feature", "fix", "bug"} else "feature"
    return f"{prefix}/{slugify(title, max_length=50)}"


def _scalar(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


@dataclass(slots=True)
class Task:
    id: str
    title: str
    status: str = "todo"
    type: str = "feature"
    priority: str = "medium"
    branch: str = ""
    labels: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    project: str | None = None
    created_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    last_attempt_at: str | None = None
    last_retry_at: str | None = None
    retry_count: int = 0
    last_error: str | None = None
    last_error_phase: str | None = None
    iterations: int | None = None
    content: str = ""
    extra: dict[str, Any] = field(default_factory=dict)
    path: Path | None = None

    def __post_init__(self) -> None:
        self.id = normalize_task_id(self.id)
        self.depends_on = [normalize_task_id(dep) for dep in self.depends_on]
        if not self.branch:
            self.branch = branch_name_for(self.type, self.title)

    @property
    def is_architecture(self) -> bool:
        return self.type == "architecture"

    def to_front_matter(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for name, key in _FIELD_KEYS.items():
            value = getattr(self, name)
            if value is None:
                continue
            if isinstance(value, list):
                value = list(value)
            data[key] = value
        for key, value in self.extra.items():
            data.setdefault(key, value)
        return data

    def render(self) -> str:
        front = yaml.safe_dump(
            self.to_front_matter(),
            sort_keys=False,
            allow_unicode=True,
            default_flow_style=False,
        )
        body = self.content.strip()
        return f"---\n{front}---\n\n{body}\n" if body else f"---\n{front}---\n"

    @classmethod
    def parse(cls, raw: str, *, status: str, path: Path | None = None) -> Task:
        match = _FRONT_MATTER.match(raw)
        if match is None:
            raise TaskStoreError(f"Task file has no front-matter block: {path or '<memory>'}")
        try:
            data = yaml.safe_load(match.group(1)) or {}
        except yaml.YAMLError as exc:
            raise TaskStoreError(f"Invalid front-matter in {path or '<memory>'}: {exc}") from exc
        if not isinstance(data, dict):
            raise TaskStoreError(f"Front-matter must be a mapping: {path or '<memory>'}")

        values: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for key, value in data.items():
            if key in {"status", "column"}:
                continue
            name = _KEY_FIELDS.get(str(key))
            if name is None:
                extra[str(key)] = _scalar(value)
            else:
                values[name] = _scalar(value)

        task_id = values.pop("id", None)
        if task_id is None and path is not None:
            file_match = _FILE_ID.match(path.name)
            task_id = file_match.group(1) if file_match else None
        if task_id is None:
            raise TaskStoreError(f"Task has no id: {path or '<memory>'}")

        labels = values.pop("labels", [])
        if not isinstance(labels, list):
            labels = [labels] if labels else []
        depends_on = values.pop("depends_on", [])
        if not isinstance(depends_on, list):
            depends_on = [depends_on] if depends_on else []

        retry_count = values.pop("retry_count", 0)
        try:
            retry_count = int(retry_count or 0)
        except (TypeError, ValueError):
            retry_count = 0

        return cls(
            id=str(task_id),
            title=str(values.pop("title", "")),
            status=status,
            labels=[str(label) for label in labels],
            depends_on=[str(dep) for dep in depends_on],
            retry_count=retry_count,
            content=match.group(2).strip(),
            extra=extra,
            path=path,
            **values,
        )


class TaskStore:
    """Markdown task records, one directory per column under ``root``."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def ensure_layout(self) -> None:
        for column in COLUMNS:
            (self.root / column).mkdir(parents=True, exist_ok=True)

    def column_path(self, status: str) -> Path:
        if status not in COLUMNS:
            raise TaskStoreError(f"Invalid column '{status}'. Expected one of: {', '.join(COLUMNS)}")
        return self.root / status

    def _iter_files(self, status: str) -> list[Path]:
        column = self.column_path(status)
        if not column.is_dir():
            return []
        return sorted(path for path in column.iterdir() if path.suffix == ".md")

    def _load(self, path: Path, status: str) -> Task:
        return Task.parse(path.read_text(encoding="utf-8"), status=status, path=path)

    def list(self, status: str | None = None) -> list[Task]:
        statuses = COLUMNS if status is None else (status,)
        tasks: list[Task] = []
        for column in statuses:
            for path in self._iter_files(column):
                try:
                    tasks.append(self._load(path, column))
                except TaskStoreError as exc:
                    log.warning("Skipping unreadable task file %s: %s", path, exc)
        return tasks

    def find(self, task_id: str | int) -> Task | None:
        wanted = normalize_task_id(task_id)
        for task in self.list():
            if task.id == wanted:
                return task
        return None

    def get(self, task_id: str | int) -> Task:
        task = self.find(task_id)
        if task is None:
            raise TaskStoreError(f"Task {normalize_task_id(task_id)} not found.")
        return task

    def counts(self) -> dict[str, int]:
        return {column: len(self._iter_files(column)) for column in COLUMNS}

    def next_id(self) -> str:
        highest = 0
        for column in COLUMNS:
            for path in self._iter_files(column):
                match = _FILE_ID.match(path.name)
                if match:
                    highest = max(highest, int(match.group(1)))
        return str(highest + 1).zfill(3)

    def _write(self, task: Task, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(
            prefix=f".{destination.name}.", suffix=".tmp", dir=destination.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(task.render())
            os.replace(temp_name, destination)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise
        task.path = destination

    def create(
        self,
        title: str,
        *,
        type: str = "feature",
        priority: str = "medium",
        content: str = "",
        labels: list[str] | None = None,
        depends_on: list[str] | None = None,
        project: str | None = None,
        status: str = "todo",
    ) -> Task:
        if type not in TASK_TYPES:
            raise TaskStoreError(f"Invalid task type '{type}'. Expected one of: {', '.join(TASK_TYPES)}")
        task = Task(
            id=self.next_id(),
            title=title,
            status=status,
            type=type,
            priority=priority,
            labels=list(labels or []),
            depends_on=list(depends_on or []),
            project=project,
            created_at=_utcnow_iso(),
            content=content,
        )
        filename = f"{task.id}-{slugify(title, max_length=40) or 'task'}.md"
        self._write(task, self.column_path(status) / filename)
        return task

    def update(self, task_id: str | int, **fields: Any) -> Task:
        task = self.get(task_id)
        for name, value in fields.items():
            if name not in _FIELD_KEYS and name != "content":
                raise TaskStoreError(f"Unknown task field '{name}'.")
            setattr(task, name, value)
        assert task.path is not None
        self._write(task, task.path)
        return task

    def move(self, task_id: str | int, status: str, **fields: Any) -> Task:
        task = self.get(task_id)
        target_dir = self.column_path(status)
        for name, value in fields.items():
            if name not in _FIELD_KEYS and name != "content":
                raise TaskStoreError(f"Unknown task field '{name}'.")
            setattr(task, name, value)
        assert task.path is not None
        source = task.path
        destination = target_dir / source.name
        self._write(task, destination)
        if source != destination:
            source.unlink(missing_ok=True)
        task.status = status
        log.debug("Moved task %s to %s", task.id, status)
        return task

    def delete(self, task_id: str | int) -> None:
        task = self.get(task_id)
        assert task.path is not None
        task.path.unlink()
