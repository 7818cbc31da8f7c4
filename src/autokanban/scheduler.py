from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from autokanban.backends import build_backend
from autokanban.config import EngineConfig, GitConfig
from autokanban.errors import GitLifecycleError
from autokanban.phases import EventHook, PhaseEngine, TaskOutcome
from autokanban.process import ProcessSupervisor
from autokanban.state.artifacts import ArtifactStore
from autokanban.state.history import HistoryStore, PhaseLog, PhaseResult
from autokanban.state.lifecycle import GitLifecycle
from autokanban.state.tasks import Task, TaskStore, normalize_task_id

log = logging.getLogger(__name__)

EngineFactory = Callable[[Task, Path], PhaseEngine]
LifecycleFactory = Callable[..., GitLifecycle]


def _utcnow() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def commit_message(task: Task) -> str:
    prefix = "feat" if task.type == "feature" else task.type
    return f"{prefix}({task.id}): {task.title}"


def find_cycle(start: str, graph: dict[str, list[str]]) -> list[str] | None:
    """Depth-first walk from ``start``; returns the members of the first cycle reached."""
    path: list[str] = []
    on_path: set[str] = set()
    finished: set[str] = set()

    def visit(node: str) -> list[str] | None:
        if node in on_path:
            return path[path.index(node) :]
        if node in finished:
            return None
        path.append(node)
        on_path.add(node)
        for dep in graph.get(node, []):
            cycle = visit(dep)
            if cycle is not None:
                return cycle
        path.pop()
        on_path.discard(node)
        finished.add(node)
        return None

    return visit(normalize_task_id(start))


@dataclass(slots=True)
class Selection:
    task: Task | None
    blocked: dict[str, list[str]] = field(default_factory=dict)
    circular: dict[str, list[str]] = field(default_factory=dict)


def select_candidate(todo: Iterable[Task], all_tasks: Iterable[Task]) -> Selection:
    """First ``todo`` task, in file order, that sits on no dependency cycle and whose
    dependencies are all ``done``."""
    tasks = list(all_tasks)
    graph = {task.id: list(task.depends_on) for task in tasks}
    status = {task.id: task.status for task in tasks}
    selection = Selection(task=None)
    for candidate in todo:
        cycle = find_cycle(candidate.id, graph)
        if cycle is not None:
            for member in cycle:
                selection.circular[member] = cycle
            selection.circular.setdefault(candidate.id, cycle)
            continue
        pending = [dep for dep in candidate.depends_on if status.get(dep) != "done"]
        if pending:
            selection.blocked[candidate.id] = pending
            continue
        selection.task = candidate
        break
    return selection


@dataclass(slots=True)
class CycleReport:
    task: Task | None = None
    outcome: TaskOutcome | None = None
    retried: list[str] = field(default_factory=list)
    blocked: dict[str, list[str]] = field(default_factory=dict)
    circular: dict[str, list[str]] = field(default_factory=dict)
    skipped: str | None = None


class Scheduler:
    def __init__(
        self,
        config: EngineConfig,
        store: TaskStore,
        *,
        engine_name: str | None = None,
        history: HistoryStore | None = None,
        artifacts: ArtifactStore | None = None,
        supervisor: ProcessSupervisor | None = None,
        engine_factory: EngineFactory | None = None,
        lifecycle_factory: LifecycleFactory = GitLifecycle,
        dry_run: bool = False,
        interactive: bool = False,
        event_hook: EventHook | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config
        self.store = store
        self.engine_name = engine_name or config.agent.engine
        self.history = history or HistoryStore(store.root, config.history.max_records)
        self.artifacts = artifacts or ArtifactStore(store.root, config.phases.keep_raw_output)
        self.supervisor = supervisor or ProcessSupervisor(config.phases.kill_grace_seconds)
        self.engine_factory = engine_factory or self._build_engine
        self.lifecycle_factory = lifecycle_factory
        self.dry_run = dry_run
        self.interactive = interactive
        self.event_hook = event_hook
        self.clock = clock
        self._stop_requested = False
        self._wake: asyncio.Event | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def _build_engine(self, task: Task, project_path: Path) -> PhaseEngine:
        _ = task
        return PhaseEngine(
            build_backend(self.engine_name, self.config.agent, project_path),
            project_path=project_path,
            kanban_root=self.store.root,
            history=self.history,
            artifacts=self.artifacts,
            supervisor=self.supervisor,
            config=self.config.phases,
            project_description=self.config.project.description,
            event_hook=self.event_hook,
        )

    def _lifecycle_for(self, project_path: Path, git_config: GitConfig) -> GitLifecycle | None:
        if not git_config.enabled:
            return None
        lifecycle = self.lifecycle_factory(project_path, git_config, ignore_paths=[self.store.root])
        if not lifecycle.is_git_repo():
            log.warning("%s is not a git repository; running without branch management", project_path)
            return None
        return lifecycle

    def stop(self) -> None:
        """Cancel the running agent and make the loop exit once the current task is routed."""
        if not self._stop_requested:
            log.info("Stop requested")
        self._stop_requested = True
        self.supervisor.cancel()
        if self._wake is not None:
            self._wake.set()

    async def _sleep(self, seconds: float) -> None:
        if self._wake is None:
            self._wake = asyncio.Event()
        if self._stop_requested:
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except TimeoutError:
            pass

    def verify_base(self) -> None:
        """Check the default project and every project a waiting or running task points at."""
        if self.dry_run:
            return
        refs: list[str | None] = [None]
        for task in [*self.store.list("in_progress"), *self.store.list("todo")]:
            if task.project not in refs:
                refs.append(task.project)
        seen: set[Path] = set()
        for ref in refs:
            project_path = self.config.resolve_project_path(ref)
            if project_path in seen:
                continue
            seen.add(project_path)
            lifecycle = self._lifecycle_for(project_path, self.config.resolve_git_config(ref))
            if lifecycle is None:
                continue
            report = lifecycle.verify()
            if report.fixed:
                log.warning(
                    "Work tree of %s repaired: now on '%s' with %d dirty file(s)",
                    project_path,
                    report.branch,
                    report.dirty,
                )

    def sweep_retries(self, now: datetime | None = None) -> list[str]:
        now = now or self.clock()
        delay = timedelta(minutes=self.config.loop.retry_delay_minutes)
        moved: list[str] = []
        for task in self.store.list("review"):
            if task.retry_count >= self.config.loop.max_retries:
                continue
            last_attempt = _parse_time(task.last_attempt_at)
            if last_attempt is None or now - last_attempt < delay:
                continue
            self.store.move(
                task.id,
                "todo",
                retry_count=task.retry_count + 1,
                last_retry_at=now.isoformat(),
            )
            moved.append(task.id)
            log.info("Task %s scheduled for retry %d/%d", task.id, task.retry_count + 1, self.config.loop.max_retries)
            self._emit({"event": "retry_scheduled", "task_id": task.id, "retry_count": task.retry_count + 1})
        return moved

    def _report_selection(self, selection: Selection) -> None:
        for task_id, pending in selection.blocked.items():
            log.info("Task %s blocked by %s", task_id, ", ".join(pending))
            self._emit({"event": "dependency_blocked", "task_id": task_id, "blocked_by": pending})
        for task_id, cycle in selection.circular.items():
            log.error("Task %s is part of a circular dependency: %s", task_id, " -> ".join([*cycle, cycle[0]]))
            self._emit({"event": "circular_dependency", "task_id": task_id, "cycle": cycle})

    async def run_cycle(self) -> CycleReport:
        report = CycleReport()
        try:
            self.verify_base()
        except GitLifecycleError as exc:
            log.error("Could not restore the base branch: %s", exc)
            report.skipped = "verify-failed"
            return report

        if self.config.loop.auto_retry:
            report.retried = self.sweep_retries()

        tasks = self.store.list()
        running = [task for task in tasks if task.status == "in_progress"]
        if running:
            log.info("Task %s is in progress; waiting", running[0].id)
            report.skipped = "busy"
            return report

        todo = [task for task in tasks if task.status == "todo"]
        if not todo:
            log.info("No tasks in todo")
            report.skipped = "empty"
            return report

        selection = select_candidate(todo, tasks)
        report.blocked = selection.blocked
        report.circular = selection.circular
        self._report_selection(selection)
        if selection.task is None:
            report.skipped = "no-eligible-task"
            return report

        report.task = selection.task
        report.outcome = await self.process_task(selection.task)
        return report

    async def process_task(self, task: Task) -> TaskOutcome:
        project_path = self.config.resolve_project_path(task.project)
        git_config = self.config.resolve_git_config(task.project)
        task = self.store.move(task.id, "in_progress", started_at=self.clock().isoformat())
        log.info("Task %s started: %s (branch %s)", task.id, task.title, task.branch)
        self._emit({"event": "task_started", "task_id": task.id, "title": task.title})

        if self.dry_run:
            outcome = TaskOutcome(success=True, result="success", summary="[dry run] simulated", iterations=0)
            self.store.move(task.id, "done", completed_at=self.clock().isoformat(), iterations=0)
            self._emit({"event": "task_finished", "task_id": task.id, "status": "done", "result": "success"})
            return outcome

        lifecycle: GitLifecycle | None = None
        try:
            lifecycle = self._lifecycle_for(project_path, git_config)
            if lifecycle is not None:
                lifecycle.prepare(task.branch)
            engine = self.engine_factory(task, project_path)
            if self.interactive:
                outcome = await engine.run_interactive(task)
            else:
                outcome = await engine.execute(task)
            if lifecycle is not None:
                outcome = self._settle_branch(lifecycle, task, outcome)
        except Exception as exc:
            log.exception("Task %s failed with an unexpected error", task.id)
            outcome = TaskOutcome(
                success=False,
                result="failed",
                summary=str(exc) or type(exc).__name__,
                iterations=0,
                phases=PhaseLog(plan=PhaseResult("plan", "unknown", summary="Interrupted by an error")),
                failed_phase="engine",
            )
            if lifecycle is not None:
                try:
                    lifecycle.abort(task.branch)
                except GitLifecycleError:
                    log.exception("Abort after failure of task %s did not complete", task.id)
        finally:
            if lifecycle is not None:
                try:
                    final = lifecycle.verify()
                    if not final.clean:
                        log.error("Work tree still not clean after task %s; aborting again", task.id)
                        lifecycle.abort(task.branch)
                        lifecycle.verify()
                    kept = lifecycle.release_stash()
                    if kept is not None:
                        log.warning(
                            "Changes pending before task %s are kept in %s; apply them with "
                            "'git stash pop %s'",
                            task.id,
                            kept,
                            kept,
                        )
                except GitLifecycleError:
                    log.exception("Final verification after task %s failed", task.id)

        self._route(task, outcome)
        self.history.append(task.id, outcome.to_record())
        return outcome

    def _settle_branch(self, lifecycle: GitLifecycle, task: Task, outcome: TaskOutcome) -> TaskOutcome:
        if not outcome.success:
            lifecycle.abort(task.branch)
            return outcome
        try:
            lifecycle.finalize(task.branch, commit_message(task))
        except GitLifecycleError as exc:
            log.error("Could not integrate branch %s: %s", task.branch, exc)
            lifecycle.abort(task.branch)
            return TaskOutcome(
                success=False,
                result="failed",
                summary=f"Git integration failed: {exc}",
                iterations=outcome.iterations,
                phases=outcome.phases,
                total_duration=outcome.total_duration,
                failed_phase="git",
                plan=outcome.plan,
            )
        return outcome

    def _route(self, task: Task, outcome: TaskOutcome) -> None:
        now = self.clock().isoformat()
        if outcome.success and not outcome.scope_incomplete:
            self.store.move(
                task.id,
                "done",
                completed_at=now,
                last_attempt_at=now,
                iterations=outcome.iterations,
                last_error=None,
                last_error_phase=None,
            )
            status = "done"
            log.info("Task %s done: %s", task.id, outcome.summary)
        else:
            error_phase = "scope" if outcome.scope_incomplete else outcome.failed_phase
            self.store.move(
                task.id,
                "review",
                completed_at=now,
                last_attempt_at=now,
                iterations=outcome.iterations,
                last_error=outcome.summary,
                last_error_phase=error_phase,
            )
            status = "review"
            log.warning("Task %s moved to review (%s): %s", task.id, error_phase, outcome.summary)
        self._emit(
            {
                "event": "task_finished",
                "task_id": task.id,
                "status": status,
                "result": outcome.result,
                "iterations": outcome.iterations,
                "summary": outcome.summary,
            }
        )

    async def run(self, *, once: bool = False) -> int:
        """Run cycles until stopped; returns the number of tasks processed."""
        self._wake = asyncio.Event()
        if self._stop_requested:
            self._wake.set()
        processed = 0
        limit = self.config.loop.max_tasks_per_run
        while not self._stop_requested:
            try:
                report = await self.run_cycle()
            except Exception:
                log.exception("Scheduler cycle failed")
                report = CycleReport(skipped="error")
            if report.task is not None:
                processed += 1
            if once or self._stop_requested:
                break
            if limit and processed >= limit:
                log.info("Processed %d task(s); stopping", processed)
                break
            await self._sleep(self.config.loop.wait_seconds)
        return processed
