"""Error taxonomy for task lifecycle operations."""

from __future__ import annotations


class TaskError(RuntimeError):
    """Base class for errors reported by tasks and the task manager."""


class ValidationError(TaskError):
    """Bad input to task creation or restart."""


class UUIDNotFound(TaskError):
    """Operation addressed a task id the manager does not know."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"{task_id} not found")
        self.task_id = task_id


class LaunchError(TaskError):
    """External process could not be started."""


class RuntimeFailure(TaskError):
    """External process exited with a non-zero code."""

    def __init__(self, exit_code: int) -> None:
        super().__init__(f"Process exited with code {exit_code}")
        self.exit_code = exit_code


class PersistenceError(TaskError):
    """Snapshot file could not be read or written."""


class IllegalTransition(TaskError):
    """Requested state change is not allowed from the current state."""
