from __future__ import annotations

import shutil
from pathlib import Path

from autokanban.backends.base import AgentBackend, BackendExecutionError, BackendProcessError
from autokanban.backends.claude import ClaudeCodeBackend
from autokanban.backends.opencode import OpenCodeBackend
from autokanban.config import ENGINE_NAMES, AgentConfig

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "ClaudeCodeBackend",
    "OpenCodeBackend",
    "build_backend",
    "detect_available_engine",
]


def _binary_for(engine: str, agent: AgentConfig) -> str:
    return agent.claude_binary if engine == "claude" else agent.opencode_binary


def detect_available_engine(preferred: str | None, agent: AgentConfig | None = None) -> str | None:
    """Preferred engine when its binary is on PATH, else the first available one."""
    agent = agent or AgentConfig()
    candidates = [preferred] if preferred in ENGINE_NAMES else []
    candidates.extend(name for name in ENGINE_NAMES if name not in candidates)
    for engine in candidates:
        if shutil.which(_binary_for(engine, agent)):
            return engine
    return None


def build_backend(
    engine: str,
    agent: AgentConfig | None = None,
    working_directory: Path | None = None,
) -> AgentBackend:
    agent = agent or AgentConfig()
    if engine == "claude":
        return ClaudeCodeBackend(binary=agent.claude_binary, working_directory=working_directory)
    if engine == "opencode":
        return OpenCodeBackend(binary=agent.opencode_binary, working_directory=working_directory)
    raise ValueError(f"Unsupported engine '{engine}'. Expected one of: {', '.join(ENGINE_NAMES)}")
