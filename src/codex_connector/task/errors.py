"""Exceptions raised by the task supervisor core."""

from __future__ import annotations

from typing import Any, Dict


class SupervisorError(RuntimeError):
    """Base error for registry operations."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self._details: Dict[str, Any] = {}
        for key, value in details.items():
            if value is None:
                continue
            self._details[str(key)] = value

    @property
    def details(self) -> Dict[str, Any]:
        return dict(self._details)


class TaskNotFoundError(SupervisorError):
    """Raised when a task id is unknown to the registry."""

    def __init__(self, task_id: str) -> None:
        super().__init__("task not found: {0}".format(task_id), task_id=task_id)
        self.task_id = task_id


class PersistenceFailure(OSError):
    """Raised when the task state file cannot be written."""
