from __future__ import annotations

import logging
from pathlib import Path

from autokanban.state.tasks import normalize_task_id

log = logging.getLogger(__name__)

CONTEXT_FILENAME = ".project-context.md"


class ArtifactStore:
    """Per-task phase artifacts under ``<kanban>/.history/<id>/``."""

    def __init__(self, kanban_root: Path, keep_raw_output: bool = True) -> None:
        self.root = kanban_root / ".history"
        self.keep_raw_output = keep_raw_output

    def task_dir(self, task_id: str | int) -> Path:
        return self.root / normalize_task_id(task_id)

    def write(
        self,
        task_id: str | int,
        name: str,
        content: str,
        raw_output: str | None = None,
    ) -> Path:
        directory = self.task_dir(task_id)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{name}.md"
        path.write_text(content, encoding="utf-8")
        if raw_output is not None and self.keep_raw_output:
            (directory / f"{name}.log").write_text(raw_output, encoding="utf-8")
        log.debug("Saved artifact %s", path)
        return path

    def names(self, task_id: str | int) -> list[str]:
        directory = self.task_dir(task_id)
        if not directory.is_dir():
            return []
        return sorted(path.stem for path in directory.iterdir() if path.suffix == ".md")

    def clear(self, task_id: str | int) -> None:
        directory = self.task_dir(task_id)
        if not directory.is_dir():
            return
        for path in directory.iterdir():
            if path.suffix in {".md", ".log"}:
                path.unlink()


def context_path(kanban_root: Path) -> Path:
    return kanban_root / CONTEXT_FILENAME


def read_context(kanban_root: Path) -> str | None:
    path = context_path(kanban_root)
    if not path.exists():
        return None
    text = path.read_text(encoding="utf-8")
    return text if text.strip() else None
