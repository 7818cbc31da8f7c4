from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from autokanban.state.artifacts import ArtifactStore
from autokanban.state.tasks import normalize_task_id

log = logging.getLogger(__name__)

PHASE_STATUSES = ("ok", "failed", "rejected", "timeout", "lost", "unknown")
ITERATED_PHASES = ("code", "review", "test")

_ITER_ARTIFACT = re.compile(r"^(code|review|test)-iter(\d+)$")


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class PhaseResult:
    phase: str
    status: str
    duration: int = 0
    summary: str = ""
    iteration: int | None = None
    reconstructed: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status, "duration": self.duration, "summary": self.summary}
        if self.iteration is not None:
            data = {"iteration": self.iteration, **data}
        if self.reconstructed:
            data["reconstructed"] = True
        return data

    @classmethod
    def from_dict(cls, phase: str, data: dict[str, Any]) -> PhaseResult:
        iteration = data.get("iteration")
        return cls(
            phase=phase,
            status=str(data.get("status", "unknown")),
            duration=int(data.get("duration") or 0),
            summary=str(data.get("summary") or ""),
            iteration=int(iteration) if iteration is not None else None,
            reconstructed=bool(data.get("reconstructed", False)),
        )


@dataclass(slots=True)
class PhaseLog:
    plan: PhaseResult | None = None
    code: list[PhaseResult] = field(default_factory=list)
    review: list[PhaseResult] = field(default_factory=list)
    test: list[PhaseResult] = field(default_factory=list)
    scope: PhaseResult | None = None

    def add(self, result: PhaseResult) -> None:
        if result.phase in ITERATED_PHASES:
            getattr(self, result.phase).append(result)
        elif result.phase in {"plan", "scope"}:
            setattr(self, result.phase, result)
        else:
            raise ValueError(f"Unknown phase '{result.phase}'.")

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan": self.plan.to_dict() if self.plan else None,
            "code": [item.to_dict() for item in self.code],
            "review": [item.to_dict() for item in self.review],
            "test": [item.to_dict() for item in self.test],
            "scope": self.scope.to_dict() if self.scope else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhaseLog:
        phases = cls()
        for name in ("plan", "scope"):
            entry = data.get(name)
            if isinstance(entry, dict):
                setattr(phases, name, PhaseResult.from_dict(name, entry))
        for name in ITERATED_PHASES:
            entries = data.get(name) or []
            getattr(phases, name).extend(
                PhaseResult.from_dict(name, entry) for entry in entries if isinstance(entry, dict)
            )
        return phases


@dataclass(slots=True)
class ExecutionRecord:
    result: str
    total_duration: int = 0
    iterations: int = 0
    summary: str = ""
    phases: PhaseLog = field(default_factory=PhaseLog)
    timestamp: str = field(default_factory=_utcnow_iso)
    reconstructed: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "timestamp": self.timestamp,
            "result": self.result,
            "totalDuration": self.total_duration,
            "iterations": self.iterations,
            "summary": self.summary,
            "phases": self.phases.to_dict(),
        }
        if self.reconstructed:
            data["reconstructed"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionRecord:
        phases = data.get("phases")
        return cls(
            result=str(data.get("result", "failed")),
            total_duration=int(data.get("totalDuration") or 0),
            iterations=int(data.get("iterations") or 0),
            summary=str(data.get("summary") or ""),
            phases=PhaseLog.from_dict(phases) if isinstance(phases, dict) else PhaseLog(),
            timestamp=str(data.get("timestamp") or ""),
            reconstructed=bool(data.get("reconstructed", False)),
        )


def phases_are_valid(phases: Any) -> bool:
    if not isinstance(phases, dict) or not phases:
        return False
    for name in ("plan", "scope"):
        entry = phases.get(name)
        if entry is not None and (not isinstance(entry, dict) or entry.get("status") not in PHASE_STATUSES):
            return False
    for name in ITERATED_PHASES:
        entries = phases.get(name)
        if not isinstance(entries, list):
            return False
        if any(
            not isinstance(entry, dict) or entry.get("status") not in PHASE_STATUSES for entry in entries
        ):
            return False
    return True


def repair_record(record: dict[str, Any], artifact_names: Iterable[str]) -> dict[str, Any]:
    """Return ``record`` with its phase detail rebuilt from surviving artifact names.

    Well-formed records come back unchanged. A phase is ``ok`` only when its artifact
    survived; everything else is ``lost``.
    """
    if phases_are_valid(record.get("phases")):
        return record

    names = set(artifact_names)
    rebuilt = PhaseLog()
    for name in ("plan", "scope"):
        if name in names:
            rebuilt.add(PhaseResult(name, "ok", summary="Reconstructed from artifact", reconstructed=True))
        else:
            rebuilt.add(PhaseResult(name, "lost", summary="No data available", reconstructed=True))

    iterated: list[tuple[str, int]] = []
    for artifact in names:
        match = _ITER_ARTIFACT.match(artifact)
        if match:
            iterated.append((match.group(1), int(match.group(2))))
    for phase, iteration in sorted(iterated, key=lambda item: (ITERATED_PHASES.index(item[0]), item[1])):
        rebuilt.add(
            PhaseResult(
                phase,
                "ok",
                summary="Reconstructed from artifact",
                iteration=iteration,
                reconstructed=True,
            )
        )

    repaired = dict(record)
    repaired["phases"] = rebuilt.to_dict()
    repaired["reconstructed"] = True
    return repaired


class HistoryStore:
    def __init__(self, kanban_root: Path, max_records: int = 20) -> None:
        self.root = kanban_root / ".history"
        self.max_records = max_records
        self.artifacts = ArtifactStore(kanban_root)

    def path_for(self, task_id: str | int) -> Path:
        return self.root / f"{normalize_task_id(task_id)}.json"

    def _read_raw(self, task_id: str | int) -> list[dict[str, Any]]:
        path = self.path_for(task_id)
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            log.warning("History file %s is not valid JSON; starting over.", path)
            return []
        if not isinstance(data, list):
            log.warning("History file %s does not hold a list; starting over.", path)
            return []
        return [entry for entry in data if isinstance(entry, dict)]

    def _write_raw(self, task_id: str | int, entries: list[dict[str, Any]]) -> None:
        path = self.path_for(task_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(entries, handle, indent=2, ensure_ascii=False)
                handle.write("\n")
            os.replace(temp_name, path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise

    def append(self, task_id: str | int, record: ExecutionRecord) -> None:
        entries = self._read_raw(task_id)
        entries.append(record.to_dict())
        self._write_raw(task_id, entries[-self.max_records :])

    def read(self, task_id: str | int) -> list[ExecutionRecord]:
        entries = self._read_raw(task_id)
        if not entries:
            return []
        names = self.artifacts.names(task_id)
        repaired = [repair_record(entry, names) for entry in entries]
        if any(new is not old for new, old in zip(repaired, entries, strict=True)):
            log.info("Repaired execution history for task %s", normalize_task_id(task_id))
            self._write_raw(task_id, repaired)
        return [ExecutionRecord.from_dict(entry) for entry in repaired]

    def clear(self, task_id: str | int) -> None:
        self.path_for(task_id).unlink(missing_ok=True)

    def previous_attempts_summary(self, task_id: str | int, limit: int = 3) -> str:
        records = self.read(task_id)[-limit:]
        if not records:
            return ""
        lines: list[str] = []
        for index, record in enumerate(records, start=1):
            seconds = record.total_duration // 1000
            lines.append(
                f"Attempt {index} ({record.timestamp}): {record.result} "
                f"after {record.iterations} iteration(s), {seconds}s"
            )
            if record.summary:
                lines.append(f"  Summary: {_clip(record.summary)}")
            for phase in _failed_phases(record.phases):
                label = phase.phase if phase.iteration is None else f"{phase.phase} #{phase.iteration}"
                detail = f": {_clip(phase.summary)}" if phase.summary else ""
                lines.append(f"  - {label} {phase.status}{detail}")
        return "\n".join(lines)


def _clip(text: str, limit: int = 300) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _failed_phases(phases: PhaseLog) -> list[PhaseResult]:
    ordered: list[PhaseResult] = []
    if phases.plan is not None:
        ordered.append(phases.plan)
    ordered.extend(phases.code)
    ordered.extend(phases.review)
    ordered.extend(phases.test)
    if phases.scope is not None:
        ordered.append(phases.scope)
    return [phase for phase in ordered if phase.status not in {"ok", "unknown"}]
