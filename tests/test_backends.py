from pathlib import Path

import pytest

import autokanban.backends as backends
from autokanban.backends import build_backend, detect_available_engine
from autokanban.backends.claude import ClaudeCodeBackend
from autokanban.backends.opencode import OpenCodeBackend
from autokanban.config import AgentConfig


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("/work"))

    assert backend.build_command("do it") == ["claude", "--dangerously-skip-permissions", "-p", "do it"]
    assert backend.build_interactive_command("do it") == ["claude", "--dangerously-skip-permissions", "do it"]


def test_opencode_build_command_shape() -> None:
    backend = OpenCodeBackend(binary="opencode", working_directory=Path("/work"))

    assert backend.build_command("do it") == ["opencode", "run", "do it", "--dir", "/work"]
    assert backend.build_interactive_command("do it") == ["opencode", "/work", "--prompt", "do it"]


def test_environment_drops_parent_session_marker(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLAUDECODE", "1")
    monkeypatch.setenv("AUTOKANBAN_TEST_MARKER", "kept")
    env = ClaudeCodeBackend().environment()

    assert "CLAUDECODE" not in env
    assert env["AUTOKANBAN_TEST_MARKER"] == "kept"


def test_build_backend_by_engine_name(tmp_path: Path) -> None:
    agent = AgentConfig(claude_binary="/opt/claude", opencode_binary="/opt/opencode")

    claude = build_backend("claude", agent, tmp_path)
    opencode = build_backend("opencode", agent, tmp_path)

    assert isinstance(claude, ClaudeCodeBackend)
    assert claude.binary == "/opt/claude"
    assert isinstance(opencode, OpenCodeBackend)
    assert opencode.working_directory == tmp_path
    with pytest.raises(ValueError):
        build_backend("copilot", agent, tmp_path)


def test_detect_prefers_requested_engine(monkeypatch: pytest.MonkeyPatch) -> None:
    available = {"claude", "opencode"}
    monkeypatch.setattr(backends.shutil, "which", lambda name: f"/usr/bin/{name}" if name in available else None)

    assert detect_available_engine("opencode") == "opencode"
    assert detect_available_engine("claude") == "claude"

    available.discard("opencode")
    assert detect_available_engine("opencode") == "claude"

    available.clear()
    assert detect_available_engine("claude") is None
