from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from datetime import UTC, datetime, timedelta
from pathlib import Path

import click

from autokanban.backends import detect_available_engine
from autokanban.config import (
    ENGINE_NAMES,
    EngineConfig,
    apply_env_overrides,
    load_config,
    save_config,
)
from autokanban.errors import AutokanbanError
from autokanban.lease import LeaseHeldError, PidLease
from autokanban.scheduler import Scheduler
from autokanban.state.history import HistoryStore
from autokanban.state.tasks import TaskStore

STUCK_AFTER = timedelta(hours=1)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _resolve_config_path(config_value: str) -> Path:
    config_path = Path(config_value).expanduser()
    if not config_path.is_absolute():
        config_path = Path.cwd() / config_path
    return config_path.resolve()


def _load(config_value: str, project: str | None = None, engine: str | None = None) -> EngineConfig:
    try:
        config = apply_env_overrides(load_config(_resolve_config_path(config_value)))
    except AutokanbanError as exc:
        raise click.ClickException(str(exc)) from exc
    if project:
        config.project.path = str(config.resolve_project_path(project))
        if project in config.projects:
            config.default_project = project
        elif config.default_project:
            config.default_project = ""
    if engine:
        config.agent.engine = engine  # type: ignore[assignment]
    return config


def _store(config: EngineConfig) -> TaskStore:
    return TaskStore(config.kanban_root())


async def _run_scheduler(scheduler: Scheduler, once: bool) -> int:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, scheduler.stop)
    try:
        return await scheduler.run(once=once)
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


@click.group()
def cli() -> None:
    """Autonomous kanban task engine."""


@cli.command("init")
@click.option("--engine", type=click.Choice(ENGINE_NAMES), default=None)
@click.option("--project", "project_path", default=None, help="Project root the engine works in.")
@click.option("--config", "config_value", default="autokanban.toml", show_default=True)
def init_command(engine: str | None, project_path: str | None, config_value: str) -> None:
    config_path = _resolve_config_path(config_value)
    try:
        config = load_config(config_path)
    except AutokanbanError as exc:
        raise click.ClickException(str(exc)) from exc
    if engine:
        config.agent.engine = engine  # type: ignore[assignment]
    if project_path:
        config.project.path = str(Path(project_path).expanduser().resolve())
    save_config(config_path, config)
    _store(config).ensure_layout()

    click.echo(f"Config: {config_path}")
    click.echo(f"Project: {config.project_root()}")
    click.echo(f"Tasks: {config.kanban_root()}")
    click.echo(f"Engine: {config.agent.engine}")


@cli.command("start")
@click.option("--project", default=None, help="Registered project name or project path.")
@click.option("--engine", type=click.Choice(ENGINE_NAMES), default=None)
@click.option("--once", is_flag=True, default=False, help="Run a single scheduling cycle.")
@click.option("--dry-run", is_flag=True, default=False, help="Move tasks without running an agent.")
@click.option("--interactive", is_flag=True, default=False, help="Attach the agent to this terminal.")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default="autokanban.toml", show_default=True)
def start_command(
    project: str | None,
    engine: str | None,
    once: bool,
    dry_run: bool,
    interactive: bool,
    verbose: bool,
    config_value: str,
) -> None:
    _configure_logging(verbose)
    config = _load(config_value, project, engine)
    engine_name = detect_available_engine(config.agent.engine, config.agent)
    if engine_name is None and not dry_run:
        raise click.ClickException(
            "No agent engine found on PATH (claude or opencode). Install one to run tasks."
        )

    store = _store(config)
    store.ensure_layout()
    lease = PidLease(config.pid_path())
    try:
        lease.acquire()
    except LeaseHeldError as exc:
        raise click.ClickException(str(exc)) from exc

    scheduler = Scheduler(
        config,
        store,
        engine_name=engine_name or config.agent.engine,
        dry_run=dry_run,
        interactive=interactive,
    )
    click.echo(f"Project: {config.project_root()}")
    click.echo(f"Tasks: {store.root}")
    click.echo(f"Engine: {engine_name or 'dry-run'}")
    click.echo(f"Git: {'enabled' if config.git.enabled else 'disabled'}")
    try:
        processed = asyncio.run(_run_scheduler(scheduler, once))
    except AutokanbanError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        lease.release()
    click.echo(f"Engine stopped after {processed} task(s).")


@cli.command("stop")
@click.option("--config", "config_value", default="autokanban.toml", show_default=True)
def stop_command(config_value: str) -> None:
    config = _load(config_value)
    pid = PidLease(config.pid_path()).holder()
    if pid is None:
        click.echo("Engine is not running.")
        return
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        click.echo("Engine is not running.")
        return
    click.echo(f"Sent SIGTERM to engine (PID {pid}).")


@cli.command("status")
@click.option("--config", "config_value", default="autokanban.toml", show_default=True)
def status_command(config_value: str) -> None:
    config = _load(config_value)
    store = _store(config)
    pid = PidLease(config.pid_path()).holder()
    payload = {
        "running": pid is not None,
        "pid": pid,
        "project": str(config.project_root()),
        "tasks_path": str(store.root),
        "engine": config.agent.engine,
        "columns": store.counts(),
        "in_progress": [
            {"id": task.id, "title": task.title, "started_at": task.started_at}
            for task in store.list("in_progress")
        ],
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("retry")
@click.argument("task_id")
@click.option("--config", "config_value", default="autokanban.toml", show_default=True)
def retry_command(task_id: str, config_value: str) -> None:
    store = _store(_load(config_value))
    try:
        previous = store.get(task_id).status
        task = store.move(task_id, "todo")
    except AutokanbanError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Task {task.id} moved: {previous} -> todo")


@cli.command("unstuck")
@click.option("--all", "include_all", is_flag=True, default=False, help="Also move review tasks to todo.")
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--config", "config_value", default="autokanban.toml", show_default=True)
def unstuck_command(include_all: bool, dry_run: bool, config_value: str) -> None:
    store = _store(_load(config_value))
    now = datetime.now(UTC)
    fixed = 0
    for task in store.list("in_progress"):
        started = task.started_at
        try:
            started_at = datetime.fromisoformat(started) if started else None
        except ValueError:
            started_at = None
        if started_at is not None and started_at.tzinfo is None:
            started_at = started_at.replace(tzinfo=UTC)
        if started_at is None or now - started_at < STUCK_AFTER:
            continue
        click.echo(f"[{task.id}] {task.title}: in progress for more than an hour")
        if dry_run:
            click.echo("  would move to review")
        else:
            store.move(task.id, "review", last_error="Stuck in progress", last_error_phase="engine")
            click.echo("  moved to review")
        fixed += 1

    for task in store.list("review"):
        error = (task.last_error or "no details")[:60]
        click.echo(f"[{task.id}] {task.title} (retries: {task.retry_count}, error: {error})")
        if include_all:
            if dry_run:
                click.echo("  would move to todo")
            else:
                store.move(task.id, "todo")
                click.echo("  moved to todo")
            fixed += 1

    click.echo(f"{fixed} task(s) {'would be ' if dry_run else ''}fixed.")


@cli.command("history")
@click.argument("task_id")
@click.option("--config", "config_value", default="autokanban.toml", show_default=True)
def history_command(task_id: str, config_value: str) -> None:
    config = _load(config_value)
    history = HistoryStore(config.kanban_root(), config.history.max_records)
    records = [record.to_dict() for record in history.read(task_id)]
    click.echo(json.dumps(records, ensure_ascii=False, indent=2))


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
