"""Process task supervisor core."""

from codex_connector.task.errors import PersistenceFailure, SupervisorError, TaskNotFoundError
from codex_connector.task.registry import TaskRegistry
from codex_connector.task.store import TaskStore
from codex_connector.task.types import (
    CancelResult,
    CommandTemplate,
    FailureKind,
    StartResult,
    TaskRecord,
    TaskSnapshot,
    TaskSpec,
    TaskStatus,
    WaitResult,
)

__all__ = [
    "CancelResult",
    "CommandTemplate",
    "FailureKind",
    "PersistenceFailure",
    "StartResult",
    "SupervisorError",
    "TaskNotFoundError",
    "TaskRecord",
    "TaskRegistry",
    "TaskSnapshot",
    "TaskSpec",
    "TaskStatus",
    "TaskStore",
    "WaitResult",
]
