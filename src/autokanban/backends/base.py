from __future__ import annotations

import asyncio
import os
from abc import ABC, abstractmethod
from pathlib import Path


class BackendExecutionError(RuntimeError):
    """Raised when an agent process cannot be run to completion."""

    def __init__(self, message: str, *, retriable: bool = True) -> None:
        super().__init__(message)
        self.retriable = retriable


class BackendProcessError(BackendExecutionError):
    """Raised when the agent process cannot be started."""


class AgentBackend(ABC):
    name: str = "agent"

    def __init__(self, binary: str, working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    @abstractmethod
    def build_command(self, prompt: str) -> list[str]:
        """Command line for a non-interactive phase run."""

    @abstractmethod
    def build_interactive_command(self, prompt: str) -> list[str]:
        """Command line for an operator-attached session."""

    def environment(self) -> dict[str, str]:
        env = os.environ.copy()
        # A nested agent refuses to start when it sees its parent's session marker.
        env.pop("CLAUDECODE", None)
        return env

    def _cwd(self) -> str | None:
        return str(self.working_directory) if self.working_directory else None

    async def spawn(self, prompt: str) -> asyncio.subprocess.Process:
        """Start a phase run with stdout and stderr merged into one pipe."""
        try:
            return await asyncio.create_subprocess_exec(
                *self.build_command(prompt),
                cwd=self._cwd(),
                env=self.environment(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}",
                retriable=False,
            ) from exc

    async def spawn_interactive(self, prompt: str) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *self.build_interactive_command(prompt),
                cwd=self._cwd(),
                env=self.environment(),
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}",
                retriable=False,
            ) from exc
