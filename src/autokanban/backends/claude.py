from __future__ import annotations

from pathlib import Path

from autokanban.backends.base import AgentBackend


class ClaudeCodeBackend(AgentBackend):
    name = "claude"

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        super().__init__(binary, working_directory)

    def build_command(self, prompt: str) -> list[str]:
        return [self.binary, "--dangerously-skip-permissions", "-p", prompt]

    def build_interactive_command(self, prompt: str) -> list[str]:
        return [self.binary, "--dangerously-skip-permissions", prompt]
