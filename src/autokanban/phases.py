from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from autokanban import prompts
from autokanban.backends.base import AgentBackend
from autokanban.config import PhasesConfig
from autokanban.markers import (
    FALLBACK_CHARS,
    PHASE_TAGS,
    MarkerResult,
    classify,
    find_marker,
    strip_outcome_word,
)
from autokanban.process import (
    OutputSink,
    PhaseRun,
    ProcessSupervisor,
    echo_to_console,
    run_agent_process,
    run_interactive_process,
)
from autokanban.state.artifacts import ArtifactStore, context_path, read_context
from autokanban.state.history import ExecutionRecord, HistoryStore, PhaseLog, PhaseResult
from autokanban.state.tasks import Task

log = logging.getLogger(__name__)

PhaseRunner = Callable[[str, str], Awaitable[PhaseRun]]
EventHook = Callable[[dict[str, Any]], None]

DEFAULT_PLAN = "No explicit plan; proceed from the task description."

# Record result when the iteration bound runs out in each phase.
_EXHAUSTED_RESULTS = {"code": "exhausted", "review": "review-failed", "test": "test-failed"}
_NEGATIVE_STATUS = {"code": "failed", "review": "rejected", "test": "failed"}
_FALLBACK_SUMMARY = {"code": "Implemented", "review": "OK", "test": "Tests passed"}


@dataclass(slots=True)
class TaskOutcome:
    success: bool
    result: str
    summary: str
    iterations: int
    phases: PhaseLog = field(default_factory=PhaseLog)
    total_duration: int = 0
    failed_phase: str | None = None
    scope_incomplete: bool = False
    plan: str = ""
    cancelled: bool = False

    def to_record(self) -> ExecutionRecord:
        return ExecutionRecord(
            result=self.result,
            total_duration=self.total_duration,
            iterations=self.iterations,
            summary=self.summary,
            phases=self.phases,
        )


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _seconds(duration_ms: int) -> int:
    return round(duration_ms / 1000)


class PhaseEngine:
    """Drives one task through PLAN, the CODE/REVIEW/TEST iterations, and SCOPE."""

    def __init__(
        self,
        backend: AgentBackend | None,
        *,
        project_path: Path,
        kanban_root: Path,
        history: HistoryStore,
        artifacts: ArtifactStore,
        supervisor: ProcessSupervisor,
        config: PhasesConfig | None = None,
        project_description: str = "",
        runner: PhaseRunner | None = None,
        event_hook: EventHook | None = None,
        echo: OutputSink | None = echo_to_console,
    ) -> None:
        self.backend = backend
        self.project_path = project_path
        self.kanban_root = kanban_root
        self.history = history
        self.artifacts = artifacts
        self.supervisor = supervisor
        self.config = config or PhasesConfig()
        self.project_description = project_description
        self.event_hook = event_hook
        self.echo = echo
        self._runner = runner or self._run_with_backend

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    async def _run_with_backend(self, phase: str, prompt: str) -> PhaseRun:
        if self.backend is None:
            raise RuntimeError("PhaseEngine has no agent backend configured.")
        return await run_agent_process(
            self.backend,
            prompt,
            supervisor=self.supervisor,
            phase_timeout=self.config.phase_timeout_seconds,
            inactivity_timeout=self.config.inactivity_timeout_seconds,
            echo=self.echo,
        )

    async def _run_phase(
        self, task: Task, phase: str, prompt: str, iteration: int | None = None
    ) -> tuple[PhaseRun, MarkerResult]:
        label = phase.upper() if iteration is None else f"{phase.upper()} (iteration {iteration})"
        log.info("Task %s: %s started", task.id, label)
        self._emit({"event": "phase_started", "task_id": task.id, "phase": phase, "iteration": iteration})
        if self.supervisor.cancelled:
            run = PhaseRun(output="", exit_code=None, duration=0, cancelled=True)
        else:
            run = await self._runner(phase, prompt)
        marker = find_marker(run.output, PHASE_TAGS[phase], self.config.marker_window_lines)
        log.info(
            "Task %s: %s finished in %ss (exit=%s, marker=%s)",
            task.id,
            label,
            _seconds(run.duration),
            run.exit_code,
            marker.tag if marker.found else "none",
        )
        return run, marker

    def _finish_phase(self, task: Task, phases: PhaseLog, result: PhaseResult) -> None:
        phases.add(result)
        self._emit(
            {
                "event": "phase_finished",
                "task_id": task.id,
                "phase": result.phase,
                "iteration": result.iteration,
                "status": result.status,
                "duration": result.duration,
                "summary": result.summary,
            }
        )

    def _save_artifact(self, task: Task, name: str, title: str, body: str, run: PhaseRun) -> None:
        content = (
            f"# {title} - Task #{task.id}: {task.title}\n\n{body}\n\n---\n"
            f"_{_utcnow_iso()} | {_seconds(run.duration)}s_\n"
        )
        self.artifacts.write(task.id, name, content, raw_output=run.output)

    @staticmethod
    def _failure_reason(phase: str, run: PhaseRun, marker: MarkerResult) -> str:
        if run.timed_out:
            return f"{phase.upper()} timed out ({run.timeout_reason})"
        if run.error:
            return run.error
        if marker.found:
            return strip_outcome_word(phase, marker.value) or f"{phase.upper()} reported failure"
        return f"{phase.upper()} exited with code {run.exit_code}"

    @staticmethod
    def _feedback(phase: str, run: PhaseRun, reason: str) -> str:
        if run.timed_out:
            return {
                "code": "The CODE phase hung and was stopped by a timeout. "
                "Try a simpler, more direct solution.",
                "review": "The REVIEW phase hung. Check the code yourself and simplify where possible.",
                "test": "The tests hung (timeout). Make sure nothing loops forever or never exits.",
            }[phase]
        return {
            "code": f"The previous implementation failed: {reason}. Try a different approach.",
            "review": f"The reviewer rejected the code with these problems:\n{reason}\n"
            "Fix exactly these points.",
            "test": f"The tests failed with this result:\n{reason}\nFix the code so the tests pass.",
        }[phase]

    def _outcome(
        self,
        started: float,
        phases: PhaseLog,
        *,
        success: bool,
        result: str,
        summary: str,
        iterations: int,
        failed_phase: str | None = None,
        scope_incomplete: bool = False,
        plan: str = "",
        cancelled: bool = False,
    ) -> TaskOutcome:
        return TaskOutcome(
            success=success,
            result=result,
            summary=summary,
            iterations=iterations,
            phases=phases,
            total_duration=int((time.monotonic() - started) * 1000),
            failed_phase=failed_phase,
            scope_incomplete=scope_incomplete,
            plan=plan,
            cancelled=cancelled,
        )

    async def execute(self, task: Task) -> TaskOutcome:
        started = time.monotonic()
        phases = PhaseLog()
        project_context = read_context(self.kanban_root)
        previous_attempts = self.history.previous_attempts_summary(task.id)
        description = prompts.describe_project(self.project_path, self.project_description)
        max_iterations = self.config.max_iterations

        # PLAN
        run, marker = await self._run_phase(
            task,
            "plan",
            prompts.plan_prompt(task, self.project_path, description, project_context, previous_attempts),
        )
        if run.cancelled:
            self._finish_phase(
                task, phases, PhaseResult("plan", "unknown", run.duration, "Stopped before PLAN finished")
            )
            return self._outcome(
                started, phases, success=False, result="failed", summary="Stopped during PLAN",
                iterations=0, failed_phase="plan", cancelled=True,
            )
        if run.timed_out or run.error:
            reason = self._failure_reason("plan", run, marker)
            status = "timeout" if run.timed_out else "failed"
            self._finish_phase(task, phases, PhaseResult("plan", status, run.duration, reason))
            return self._outcome(
                started, phases, success=False, result="timeout" if run.timed_out else "failed",
                summary=reason, iterations=0, failed_phase="plan",
            )
        if marker.found and marker.value:
            plan = marker.value
            plan_status = "ok"
        else:
            log.warning("Task %s: PLAN has no marker; using the output tail as the plan", task.id)
            plan = run.output.strip()[-FALLBACK_CHARS:] or DEFAULT_PLAN
            plan_status = "ok" if run.exit_code == 0 else "unknown"
        self._finish_phase(task, phases, PhaseResult("plan", plan_status, run.duration, plan[:200]))
        self._save_artifact(task, "plan", "Plan", plan, run)

        # CODE -> REVIEW -> TEST, bounded
        feedback: str | None = None
        code_summary = ""
        iteration = 0
        passed = False
        while iteration < max_iterations and not passed:
            iteration += 1
            if task.is_architecture:
                code_text = prompts.architecture_prompt(task, self.project_path, plan)
            else:
                code_text = prompts.code_prompt(task, self.project_path, description, plan, feedback)

            stage_failed = False
            for phase in ("code", "review", "test"):
                if phase == "code":
                    prompt = code_text
                elif phase == "review":
                    prompt = prompts.review_prompt(task, self.project_path, plan)
                else:
                    prompt = prompts.qa_prompt(task, self.project_path)

                run, marker = await self._run_phase(task, phase, prompt, iteration)
                if run.cancelled:
                    return self._outcome(
                        started, phases, success=False, result="failed",
                        summary=f"Stopped during {phase.upper()}", iterations=iteration,
                        failed_phase=phase, plan=plan, cancelled=True,
                    )
                ok = not run.timed_out and not run.error and classify(phase, marker, run.exit_code)
                if not ok:
                    reason = self._failure_reason(phase, run, marker)
                    status = "timeout" if run.timed_out else _NEGATIVE_STATUS[phase]
                    self._finish_phase(
                        task, phases, PhaseResult(phase, status, run.duration, reason, iteration)
                    )
                    log.warning("Task %s: %s %s: %s", task.id, phase.upper(), status, reason)
                    if not run.retriable:
                        return self._outcome(
                            started, phases, success=False, result="failed", summary=reason,
                            iterations=iteration, failed_phase=phase, plan=plan,
                        )
                    if iteration >= max_iterations:
                        result = "timeout" if run.timed_out else _EXHAUSTED_RESULTS[phase]
                        return self._outcome(
                            started, phases, success=False, result=result,
                            summary=f"{phase.upper()} failed after {max_iterations} attempt(s): {reason}",
                            iterations=iteration, failed_phase=phase, plan=plan,
                        )
                    feedback = self._feedback(phase, run, reason)
                    stage_failed = True
                    break

                summary = strip_outcome_word(phase, marker.value) if marker.found else ""
                summary = summary or _FALLBACK_SUMMARY[phase]
                self._finish_phase(task, phases, PhaseResult(phase, "ok", run.duration, summary, iteration))
                if phase == "code":
                    code_summary = summary
                    self._save_artifact(
                        task, f"code-iter{iteration}", "Code", f"**Result:** {summary}", run
                    )
                    if task.is_architecture:
                        break
                elif phase == "review":
                    self._save_artifact(
                        task, f"review-iter{iteration}", "Review",
                        f"**Verdict:** approved\n**Comment:** {summary}", run,
                    )
                else:
                    self._save_artifact(
                        task, f"test-iter{iteration}", "Tests", f"**Result:** ok\n**Detail:** {summary}", run
                    )
            passed = not stage_failed

        # SCOPE
        run, marker = await self._run_phase(
            task,
            "scope",
            prompts.scope_prompt(
                task, self.project_path, plan, code_summary, context_path(self.kanban_root), project_context
            ),
        )
        if run.cancelled:
            return self._outcome(
                started, phases, success=False, result="failed", summary="Stopped during SCOPE",
                iterations=iteration, failed_phase="scope", plan=plan, cancelled=True,
            )
        if run.timed_out or run.error:
            reason = self._failure_reason("scope", run, marker)
            status = "timeout" if run.timed_out else "failed"
            self._finish_phase(task, phases, PhaseResult("scope", status, run.duration, reason))
            return self._outcome(
                started, phases, success=False, result=status, summary=reason,
                iterations=iteration, failed_phase="scope", plan=plan,
            )
        if classify("scope", marker, run.exit_code):
            scope_summary = strip_outcome_word("scope", marker.value) if marker.found else ""
            scope_summary = scope_summary or "Requirements verified"
            self._finish_phase(task, phases, PhaseResult("scope", "ok", run.duration, scope_summary))
            self._save_artifact(task, "scope", "Scope", f"**Verdict:** ok\n**Detail:** {scope_summary}", run)
            return self._outcome(
                started, phases, success=True, result="success", summary=code_summary,
                iterations=iteration, plan=plan,
            )

        gaps = strip_outcome_word("scope", marker.value) or "Requirements incomplete"
        self._finish_phase(task, phases, PhaseResult("scope", "rejected", run.duration, gaps))
        log.warning("Task %s: SCOPE incomplete: %s", task.id, gaps)
        return self._outcome(
            started, phases, success=True, result="scope-incomplete", summary=gaps,
            iterations=iteration, scope_incomplete=True, plan=plan,
        )

    async def run_interactive(self, task: Task) -> TaskOutcome:
        """Hand the task to an operator-attached agent session; the exit code decides."""
        if self.backend is None:
            raise RuntimeError("PhaseEngine has no agent backend configured.")
        started = time.monotonic()
        phases = PhaseLog()
        self._emit({"event": "phase_started", "task_id": task.id, "phase": "code", "iteration": 1})
        run = await run_interactive_process(
            self.backend, prompts.interactive_prompt(task), supervisor=self.supervisor
        )
        success = not run.cancelled and not run.error and run.exit_code == 0
        summary = "Interactive session completed" if success else (
            run.error or f"Interactive session ended with code {run.exit_code}"
        )
        phases.add(PhaseResult("plan", "unknown", 0, "Interactive session; no plan phase"))
        self._finish_phase(
            task, phases, PhaseResult("code", "ok" if success else "failed", run.duration, summary, 1)
        )
        return self._outcome(
            started, phases, success=success, result="success" if success else "failed",
            summary=summary, iterations=1, failed_phase=None if success else "code",
            cancelled=run.cancelled,
        )
