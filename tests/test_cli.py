import json
import os
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from click.testing import CliRunner

import autokanban.cli as cli_module
from autokanban.cli import cli
from autokanban.config import EngineConfig, load_config, save_config
from autokanban.state.history import ExecutionRecord, HistoryStore
from autokanban.state.tasks import TaskStore


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("AUTOKANBAN_PATH", raising=False)
    monkeypatch.delenv("AUTOKANBAN_ENGINE", raising=False)


def _write_config(tmp_path: Path) -> tuple[Path, EngineConfig]:
    project = tmp_path / "project"
    project.mkdir(exist_ok=True)
    config = EngineConfig.default()
    config.project.path = str(project)
    config.git.enabled = False
    config.loop.wait_seconds = 0
    config.loop.pid_file = str(tmp_path / "engine.pid")
    config_path = tmp_path / "autokanban.toml"
    save_config(config_path, config)
    return config_path, config


def _store(config: EngineConfig) -> TaskStore:
    store = TaskStore(config.kanban_root())
    store.ensure_layout()
    return store


def test_init_writes_config_and_board(tmp_path: Path) -> None:
    runner = CliRunner()
    config_path = tmp_path / "autokanban.toml"
    project = tmp_path / "project"

    result = runner.invoke(
        cli,
        ["init", "--config", str(config_path), "--project", str(project), "--engine", "opencode"],
    )

    assert result.exit_code == 0, result.output
    loaded = load_config(config_path)
    assert loaded.agent.engine == "opencode"
    assert loaded.project.path == str(project.resolve())
    for column in ("backlog", "todo", "in_progress", "review", "done"):
        assert (project / "kanban" / column).is_dir()


def test_status_reports_counts(tmp_path: Path) -> None:
    config_path, config = _write_config(tmp_path)
    store = _store(config)
    store.create("One")
    store.create("Two", status="review")

    result = CliRunner().invoke(cli, ["status", "--config", str(config_path)])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["running"] is False
    assert payload["pid"] is None
    assert payload["columns"]["todo"] == 1
    assert payload["columns"]["review"] == 1


def test_retry_moves_task_to_todo(tmp_path: Path) -> None:
    config_path, config = _write_config(tmp_path)
    store = _store(config)
    store.create("Failed earlier", status="review")

    result = CliRunner().invoke(cli, ["retry", "1", "--config", str(config_path)])

    assert result.exit_code == 0, result.output
    assert "review -> todo" in result.output
    assert store.get("001").status == "todo"


def test_retry_unknown_task_fails(tmp_path: Path) -> None:
    config_path, config = _write_config(tmp_path)
    _store(config)

    result = CliRunner().invoke(cli, ["retry", "99", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "Task 099 not found" in result.output


def test_unstuck_moves_stale_in_progress_tasks(tmp_path: Path) -> None:
    config_path, config = _write_config(tmp_path)
    store = _store(config)
    stale = store.create("Stale", status="in_progress")
    store.update(stale.id, started_at=(datetime.now(UTC) - timedelta(hours=2)).isoformat())
    fresh = store.create("Fresh", status="in_progress")
    store.update(fresh.id, started_at=datetime.now(UTC).isoformat())
    runner = CliRunner()

    preview = runner.invoke(cli, ["unstuck", "--dry-run", "--config", str(config_path)])
    assert preview.exit_code == 0, preview.output
    assert "would move to review" in preview.output
    assert store.get(stale.id).status == "in_progress"

    result = runner.invoke(cli, ["unstuck", "--config", str(config_path)])
    assert result.exit_code == 0, result.output
    assert store.get(stale.id).status == "review"
    assert store.get(fresh.id).status == "in_progress"

    result = runner.invoke(cli, ["unstuck", "--all", "--config", str(config_path)])
    assert result.exit_code == 0, result.output
    assert store.get(stale.id).status == "todo"


def test_history_prints_records(tmp_path: Path) -> None:
    config_path, config = _write_config(tmp_path)
    history = HistoryStore(config.kanban_root())
    history.append("3", ExecutionRecord(result="success", summary="done"))
    path = history.path_for("3")
    entries = json.loads(path.read_text(encoding="utf-8"))
    entries.append({"timestamp": "t", "result": "timeout", "summary": "hung"})
    path.write_text(json.dumps(entries), encoding="utf-8")

    result = CliRunner().invoke(cli, ["history", "3", "--config", str(config_path)])

    assert result.exit_code == 0, result.output
    records = json.loads(result.output)
    assert [record["result"] for record in records] == ["success", "timeout"]
    assert "reconstructed" not in records[0]
    assert records[1]["reconstructed"] is True
    assert records[1]["phases"]["plan"]["status"] == "lost"


def test_start_without_engine_exits_with_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path, _ = _write_config(tmp_path)
    monkeypatch.setattr(cli_module, "detect_available_engine", lambda preferred, agent=None: None)

    result = CliRunner().invoke(cli, ["start", "--once", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "No agent engine found" in result.output


def test_start_dry_run_processes_one_task(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path, config = _write_config(tmp_path)
    store = _store(config)
    store.create("Simulated task")
    monkeypatch.setattr(cli_module, "detect_available_engine", lambda preferred, agent=None: None)

    result = CliRunner().invoke(cli, ["start", "--once", "--dry-run", "--config", str(config_path)])

    assert result.exit_code == 0, result.output
    assert "Engine stopped after 1 task(s)." in result.output
    assert store.get("001").status == "done"
    assert not (tmp_path / "engine.pid").exists()


def test_start_refuses_when_engine_already_running(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path, _ = _write_config(tmp_path)
    (tmp_path / "engine.pid").write_text(f"{os.getppid()}\n", encoding="utf-8")
    monkeypatch.setattr(cli_module, "detect_available_engine", lambda preferred, agent=None: "claude")

    result = CliRunner().invoke(cli, ["start", "--once", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "already running" in result.output


def test_stop_without_running_engine(tmp_path: Path) -> None:
    config_path, _ = _write_config(tmp_path)

    result = CliRunner().invoke(cli, ["stop", "--config", str(config_path)])

    assert result.exit_code == 0
    assert "Engine is not running." in result.output


def test_invalid_config_is_reported(tmp_path: Path) -> None:
    config_path = tmp_path / "autokanban.toml"
    config_path.write_text('[agent]\nengine = "copilot"\n', encoding="utf-8")

    result = CliRunner().invoke(cli, ["status", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "Unsupported agent engine" in result.output
