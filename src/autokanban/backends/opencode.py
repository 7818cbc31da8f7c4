from __future__ import annotations

from pathlib import Path

from autokanban.backends.base import AgentBackend


class OpenCodeBackend(AgentBackend):
    name = "opencode"

    def __init__(self, binary: str = "opencode", working_directory: Path | None = None) -> None:
        super().__init__(binary, working_directory)

    def _directory(self) -> str:
        return str(self.working_directory) if self.working_directory else "."

    def build_command(self, prompt: str) -> list[str]:
        return [self.binary, "run", prompt, "--dir", self._directory()]

    def build_interactive_command(self, prompt: str) -> list[str]:
        return [self.binary, self._directory(), "--prompt", prompt]
