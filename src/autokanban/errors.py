from __future__ import annotations


class AutokanbanError(RuntimeError):
    """Base class for engine failures surfaced to operators."""


class ConfigError(AutokanbanError):
    """Raised when the configuration file holds invalid values."""


class TaskStoreError(AutokanbanError):
    """Raised when a task record cannot be found, parsed, or moved."""


class GitLifecycleError(AutokanbanError):
    """Raised when a git operation around a task fails."""

    def __init__(self, message: str, *, command: list[str] | None = None) -> None:
        super().__init__(message)
        self.command = command or []

