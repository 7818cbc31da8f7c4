from autokanban.state.artifacts import ArtifactStore
from autokanban.state.history import ExecutionRecord, HistoryStore, PhaseLog, PhaseResult
from autokanban.state.lifecycle import GitLifecycle
from autokanban.state.tasks import Task, TaskStore

__all__ = [
    "ArtifactStore",
    "ExecutionRecord",
    "GitLifecycle",
    "HistoryStore",
    "PhaseLog",
    "PhaseResult",
    "Task",
    "TaskStore",
]
