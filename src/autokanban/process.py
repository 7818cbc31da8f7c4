from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass

from autokanban.backends.base import AgentBackend, BackendProcessError

log = logging.getLogger(__name__)

OutputSink = Callable[[str], None]


@dataclass(slots=True)
class PhaseRun:
    output: str
    exit_code: int | None
    duration: int
    timed_out: bool = False
    timeout_reason: str | None = None
    cancelled: bool = False
    error: str | None = None
    retriable: bool = True


def echo_to_console(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    if process.returncode is not None:
        return
    try:
        group = os.getpgid(process.pid)
        if group == os.getpgid(0):
            # Shares our group (interactive sessions); signal the child alone.
            process.send_signal(sig)
        else:
            os.killpg(group, sig)
    except ProcessLookupError:
        return
    except PermissionError:
        process.send_signal(sig)


async def terminate_process(process: asyncio.subprocess.Process, grace_seconds: float) -> None:
    """SIGTERM the agent's process group, then SIGKILL once ``grace_seconds`` pass."""
    if process.returncode is not None:
        return
    _signal_group(process, signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except TimeoutError:
        log.warning("Agent process %s ignored SIGTERM; sending SIGKILL", process.pid)
        _signal_group(process, signal.SIGKILL)
        await process.wait()


class ProcessSupervisor:
    """Handle on the running agent process that a signal handler can cancel."""

    def __init__(self, kill_grace_seconds: float = 5.0) -> None:
        self.kill_grace_seconds = kill_grace_seconds
        self._cancelled = False
        self._event: asyncio.Event | None = None
        self._process: asyncio.subprocess.Process | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def process(self) -> asyncio.subprocess.Process | None:
        return self._process

    def _cancel_event(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        return self._event

    def attach(self, process: asyncio.subprocess.Process) -> None:
        self._process = process

    def detach(self) -> None:
        self._process = None

    def cancel(self) -> None:
        self._cancelled = True
        if self._event is not None:
            self._event.set()

    async def wait_cancelled(self) -> None:
        await self._cancel_event().wait()


async def run_interactive_process(
    backend: AgentBackend,
    prompt: str,
    *,
    supervisor: ProcessSupervisor,
) -> PhaseRun:
    """Run the agent attached to the operator's terminal; only a stop request ends it early."""
    started = time.monotonic()
    if supervisor.cancelled:
        return PhaseRun(output="", exit_code=None, duration=0, cancelled=True)
    try:
        process = await backend.spawn_interactive(prompt)
    except BackendProcessError as exc:
        return PhaseRun(
            output="",
            exit_code=None,
            duration=_elapsed_ms(started),
            error=str(exc),
            retriable=exc.retriable,
        )

    supervisor.attach(process)
    waiter = asyncio.create_task(process.wait())
    cancel_waiter = asyncio.create_task(supervisor.wait_cancelled())
    try:
        done, _ = await asyncio.wait({waiter, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
        cancel_waiter.cancel()
        await asyncio.gather(cancel_waiter, return_exceptions=True)
        cancelled = waiter not in done
        if cancelled:
            await terminate_process(process, supervisor.kill_grace_seconds)
        exit_code = await waiter
    finally:
        supervisor.detach()
    return PhaseRun(
        output="",
        exit_code=exit_code,
        duration=_elapsed_ms(started),
        cancelled=cancelled,
    )


async def _watch_inactivity(activity: asyncio.Event, timeout: float) -> None:
    while True:
        activity.clear()
        try:
            await asyncio.wait_for(activity.wait(), timeout=timeout)
        except TimeoutError:
            return


async def run_agent_process(
    backend: AgentBackend,
    prompt: str,
    *,
    supervisor: ProcessSupervisor,
    phase_timeout: float,
    inactivity_timeout: float,
    echo: OutputSink | None = echo_to_console,
) -> PhaseRun:
    started = time.monotonic()
    if supervisor.cancelled:
        return PhaseRun(output="", exit_code=None, duration=0, cancelled=True)
    try:
        process = await backend.spawn(prompt)
    except BackendProcessError as exc:
        return PhaseRun(
            output="",
            exit_code=None,
            duration=_elapsed_ms(started),
            error=str(exc),
            retriable=exc.retriable,
        )

    supervisor.attach(process)
    chunks: list[str] = []
    activity = asyncio.Event()
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def _take(text: str) -> None:
        if not text:
            return
        chunks.append(text)
        if echo is not None:
            echo(text)

    async def _pump() -> int:
        assert process.stdout is not None
        while True:
            data = await process.stdout.read(4096)
            if not data:
                break
            activity.set()
            _take(decoder.decode(data))
        _take(decoder.decode(b"", final=True))
        return await process.wait()

    reader = asyncio.create_task(_pump())
    total_timer = asyncio.create_task(asyncio.sleep(phase_timeout))
    idle_timer = asyncio.create_task(_watch_inactivity(activity, inactivity_timeout))
    cancel_waiter = asyncio.create_task(supervisor.wait_cancelled())
    timers = (total_timer, idle_timer, cancel_waiter)

    try:
        done, _ = await asyncio.wait(
            {reader, *timers}, return_when=asyncio.FIRST_COMPLETED
        )
        for timer in timers:
            timer.cancel()
        await asyncio.gather(*timers, return_exceptions=True)

        timed_out = False
        cancelled = False
        reason: str | None = None
        if reader not in done:
            if cancel_waiter in done:
                cancelled = True
                reason = "cancelled by stop request"
            elif total_timer in done:
                timed_out = True
                reason = f"phase exceeded {phase_timeout:g}s"
            else:
                timed_out = True
                reason = f"no output for {inactivity_timeout:g}s"
            log.warning("Stopping agent process %s: %s", process.pid, reason)
            await terminate_process(process, supervisor.kill_grace_seconds)
            try:
                await asyncio.wait_for(reader, timeout=supervisor.kill_grace_seconds)
            except TimeoutError:
                log.warning("Output pipe of agent process %s stayed open after kill", process.pid)
        exit_code = reader.result() if reader.done() and not reader.cancelled() else process.returncode
    finally:
        if not reader.done():
            reader.cancel()
        if process.returncode is None:
            _signal_group(process, signal.SIGKILL)
        supervisor.detach()

    return PhaseRun(
        output="".join(chunks),
        exit_code=exit_code,
        duration=_elapsed_ms(started),
        timed_out=timed_out,
        timeout_reason=reason,
        cancelled=cancelled,
    )
