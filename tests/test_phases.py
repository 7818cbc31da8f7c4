import asyncio
from pathlib import Path
from typing import Any

from autokanban.config import PhasesConfig
from autokanban.phases import PhaseEngine, TaskOutcome
from autokanban.process import PhaseRun, ProcessSupervisor
from autokanban.state.artifacts import ArtifactStore
from autokanban.state.history import ExecutionRecord, HistoryStore
from autokanban.state.tasks import Task


def _ok(output: str, exit_code: int = 0) -> PhaseRun:
    return PhaseRun(output=output, exit_code=exit_code, duration=1500)


def _timeout(reason: str = "no output for 300s") -> PhaseRun:
    return PhaseRun(output="partial", exit_code=-15, duration=300_000, timed_out=True, timeout_reason=reason)


PASSING = {
    "plan": ["Reading files...\nPLAN: add a model and a route"],
    "code": ["editing\nRESULT: completed - added model and route"],
    "review": ["REVIEW: approved - clean"],
    "test": ["TESTS: ok - 4 passed"],
    "scope": ["SCOPE: ok - all criteria met"],
}


class ScriptedRunner:
    """Answers each phase from a queue of canned runs; the last entry repeats."""

    def __init__(self, script: dict[str, list[PhaseRun | str]]) -> None:
        self.script = {phase: list(runs) for phase, runs in script.items()}
        self.calls: list[tuple[str, str]] = []

    async def __call__(self, phase: str, prompt: str) -> PhaseRun:
        self.calls.append((phase, prompt))
        queue = self.script[phase]
        run = queue.pop(0) if len(queue) > 1 else queue[0]
        return _ok(run) if isinstance(run, str) else run

    def phases(self) -> list[str]:
        return [phase for phase, _ in self.calls]


def _engine(
    tmp_path: Path,
    runner: ScriptedRunner,
    *,
    max_iterations: int = 3,
    events: list[dict[str, Any]] | None = None,
    supervisor: ProcessSupervisor | None = None,
) -> PhaseEngine:
    kanban = tmp_path / "kanban"
    project = tmp_path / "project"
    project.mkdir(exist_ok=True)
    return PhaseEngine(
        None,
        project_path=project,
        kanban_root=kanban,
        history=HistoryStore(kanban),
        artifacts=ArtifactStore(kanban),
        supervisor=supervisor or ProcessSupervisor(),
        config=PhasesConfig(max_iterations=max_iterations),
        runner=runner,
        event_hook=events.append if events is not None else None,
        echo=None,
    )


def _task(task_type: str = "feature") -> Task:
    return Task(id="1", title="Add orders endpoint", type=task_type, content="- GET /orders lists orders")


def _execute(engine: PhaseEngine, task: Task) -> TaskOutcome:
    return asyncio.run(engine.execute(task))


def test_all_phases_pass_on_first_iteration(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    runner = ScriptedRunner(PASSING)

    outcome = _execute(_engine(tmp_path, runner, events=events), _task())

    assert outcome.success is True
    assert outcome.result == "success"
    assert outcome.iterations == 1
    assert outcome.summary == "added model and route"
    assert outcome.plan == "add a model and a route"
    assert runner.phases() == ["plan", "code", "review", "test", "scope"]
    assert ArtifactStore(tmp_path / "kanban").names("001") == [
        "code-iter1",
        "plan",
        "review-iter1",
        "scope",
        "test-iter1",
    ]
    assert outcome.phases.review[0].summary == "clean"
    assert [event["event"] for event in events].count("phase_finished") == 5


def test_code_failure_feeds_back_until_it_passes(tmp_path: Path) -> None:
    runner = ScriptedRunner(
        {
            **PASSING,
            "code": [
                "RESULT: failed - compile error in models.py",
                "RESULT: failed - import cycle",
                "RESULT: completed - fixed imports",
            ],
        }
    )

    outcome = _execute(_engine(tmp_path, runner), _task())

    assert outcome.success is True
    assert outcome.iterations == 3
    assert [entry.status for entry in outcome.phases.code] == ["failed", "failed", "ok"]
    assert [entry.iteration for entry in outcome.phases.code] == [1, 2, 3]
    assert len(outcome.phases.review) == 1
    code_prompts = [prompt for phase, prompt in runner.calls if phase == "code"]
    assert "FEEDBACK" not in code_prompts[0]
    assert "compile error in models.py" in code_prompts[1]
    assert "import cycle" in code_prompts[2]


def test_review_rejections_exhaust_the_bound(tmp_path: Path) -> None:
    runner = ScriptedRunner({**PASSING, "review": ["REVIEW: rejected - missing validation"]})

    outcome = _execute(_engine(tmp_path, runner, max_iterations=2), _task())

    assert outcome.success is False
    assert outcome.result == "review-failed"
    assert outcome.failed_phase == "review"
    assert outcome.iterations == 2
    assert [entry.status for entry in outcome.phases.review] == ["rejected", "rejected"]
    assert "scope" not in runner.phases()
    review_feedback = [prompt for phase, prompt in runner.calls if phase == "code"][1]
    assert "missing validation" in review_feedback


def test_review_timeout_on_last_iteration_fails_task(tmp_path: Path) -> None:
    runner = ScriptedRunner(
        {**PASSING, "review": ["REVIEW: rejected - needs tests", _timeout()]}
    )

    outcome = _execute(_engine(tmp_path, runner, max_iterations=2), _task())

    assert outcome.success is False
    assert outcome.result == "timeout"
    assert outcome.failed_phase == "review"
    assert [entry.status for entry in outcome.phases.review] == ["rejected", "timeout"]
    assert outcome.phases.scope is None


def test_test_failures_exhaust_the_bound(tmp_path: Path) -> None:
    runner = ScriptedRunner({**PASSING, "test": ["TESTS: failed - test_orders broken"]})

    outcome = _execute(_engine(tmp_path, runner, max_iterations=1), _task())

    assert outcome.result == "test-failed"
    assert outcome.failed_phase == "test"
    assert "test_orders broken" in outcome.summary


def test_code_exhaustion_reports_exhausted(tmp_path: Path) -> None:
    runner = ScriptedRunner({**PASSING, "code": [_ok("crashed", exit_code=1)]})

    outcome = _execute(_engine(tmp_path, runner, max_iterations=2), _task())

    assert outcome.result == "exhausted"
    assert outcome.failed_phase == "code"
    assert runner.phases() == ["plan", "code", "code"]


def test_plan_timeout_is_fatal(tmp_path: Path) -> None:
    runner = ScriptedRunner({**PASSING, "plan": [_timeout("phase exceeded 900s")]})

    outcome = _execute(_engine(tmp_path, runner), _task())

    assert outcome.success is False
    assert outcome.result == "timeout"
    assert outcome.failed_phase == "plan"
    assert outcome.phases.plan is not None
    assert outcome.phases.plan.status == "timeout"
    assert runner.phases() == ["plan"]


def test_scope_timeout_is_fatal(tmp_path: Path) -> None:
    runner = ScriptedRunner({**PASSING, "scope": [_timeout()]})

    outcome = _execute(_engine(tmp_path, runner), _task())

    assert outcome.success is False
    assert outcome.result == "timeout"
    assert outcome.failed_phase == "scope"


def test_scope_backend_error_fails_task(tmp_path: Path) -> None:
    broken = PhaseRun(output="", exit_code=None, duration=0, error="claude binary not found: claude")
    runner = ScriptedRunner({**PASSING, "scope": [broken]})

    outcome = _execute(_engine(tmp_path, runner), _task())

    assert outcome.success is False
    assert outcome.scope_incomplete is False
    assert outcome.result == "failed"
    assert outcome.failed_phase == "scope"
    assert outcome.summary == "claude binary not found: claude"
    assert outcome.phases.scope is not None
    assert outcome.phases.scope.status == "failed"


def test_missing_binary_stops_without_retrying(tmp_path: Path) -> None:
    missing = PhaseRun(
        output="", exit_code=None, duration=0, error="opencode binary not found: opencode", retriable=False
    )
    runner = ScriptedRunner({**PASSING, "code": [missing]})

    outcome = _execute(_engine(tmp_path, runner, max_iterations=3), _task())

    assert outcome.success is False
    assert outcome.result == "failed"
    assert outcome.failed_phase == "code"
    assert outcome.iterations == 1
    assert runner.phases() == ["plan", "code"]


def test_scope_incomplete_is_a_flagged_success(tmp_path: Path) -> None:
    runner = ScriptedRunner({**PASSING, "scope": ["SCOPE: incomplete - pagination missing"]})

    outcome = _execute(_engine(tmp_path, runner), _task())

    assert outcome.success is True
    assert outcome.scope_incomplete is True
    assert outcome.result == "scope-incomplete"
    assert outcome.summary == "pagination missing"
    assert outcome.phases.scope is not None
    assert outcome.phases.scope.status == "rejected"
    assert "scope" not in ArtifactStore(tmp_path / "kanban").names("001")


def test_architecture_task_skips_review_and_test(tmp_path: Path) -> None:
    runner = ScriptedRunner(PASSING)

    outcome = _execute(_engine(tmp_path, runner), _task("architecture"))

    assert outcome.success is True
    assert runner.phases() == ["plan", "code", "scope"]
    assert "software architect" in runner.calls[1][1]
    assert outcome.phases.review == []
    assert outcome.phases.test == []


def test_plan_without_marker_uses_output_tail(tmp_path: Path) -> None:
    runner = ScriptedRunner({**PASSING, "plan": ["1. touch models.py\n2. touch routes.py"]})

    outcome = _execute(_engine(tmp_path, runner), _task())

    assert outcome.plan == "1. touch models.py\n2. touch routes.py"
    assert outcome.phases.plan is not None
    assert outcome.phases.plan.status == "ok"
    assert "1. touch models.py" in runner.calls[1][1]


def test_plan_without_marker_and_failing_exit_is_unknown(tmp_path: Path) -> None:
    runner = ScriptedRunner({**PASSING, "plan": [_ok("", exit_code=1)]})

    outcome = _execute(_engine(tmp_path, runner), _task())

    assert outcome.phases.plan is not None
    assert outcome.phases.plan.status == "unknown"
    assert outcome.success is True


def test_missing_marker_falls_back_to_exit_code(tmp_path: Path) -> None:
    runner = ScriptedRunner({**PASSING, "review": ["looks fine to me"]})

    outcome = _execute(_engine(tmp_path, runner), _task())

    assert outcome.success is True
    assert outcome.phases.review[0].summary == "OK"


def test_previous_attempts_and_context_reach_the_plan_prompt(tmp_path: Path) -> None:
    kanban = tmp_path / "kanban"
    HistoryStore(kanban).append("001", ExecutionRecord(result="review-failed", summary="reviewer wanted docs"))
    kanban.joinpath(".project-context.md").write_text("Stack: FastAPI + SQLite\n", encoding="utf-8")
    runner = ScriptedRunner(PASSING)

    _execute(_engine(tmp_path, runner), _task())

    plan_text = runner.calls[0][1]
    assert "reviewer wanted docs" in plan_text
    assert "Stack: FastAPI + SQLite" in plan_text
    assert str(kanban / ".project-context.md") in runner.calls[-1][1]


def test_cancelled_supervisor_stops_before_plan(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor()
    supervisor.cancel()
    runner = ScriptedRunner(PASSING)

    outcome = _execute(_engine(tmp_path, runner, supervisor=supervisor), _task())

    assert outcome.cancelled is True
    assert outcome.success is False
    assert outcome.failed_phase == "plan"
    assert outcome.phases.plan is not None
    assert outcome.phases.plan.status == "unknown"
    assert runner.calls == []


def test_outcome_converts_to_history_record(tmp_path: Path) -> None:
    outcome = _execute(_engine(tmp_path, ScriptedRunner(PASSING)), _task())

    record = outcome.to_record().to_dict()
    assert record["result"] == "success"
    assert record["iterations"] == 1
    assert record["phases"]["plan"]["status"] == "ok"
    assert record["phases"]["scope"]["status"] == "ok"
