"""Exception hierarchy for the supervision engine.

There is no parse error class: malformed log lines and corrupted JSON
files are counted and logged, never raised.
"""

from __future__ import annotations


class FlowwatchError(Exception):
    """Base class for all flowwatch errors."""


class WorkspaceError(FlowwatchError):
    """The working directory could not be created. Fatal at startup."""


class StateInconsistencyError(FlowwatchError):
    """A persisted snapshot does not line up with the event log."""


class QueueError(FlowwatchError):
    """Base class for task queue errors."""


class TaskNotFoundError(QueueError, KeyError):
    """No task with the given id exists in the queue."""

    def __init__(self, task_id: str) -> None:
        super().__init__(task_id)
        self.task_id = task_id

    def __str__(self) -> str:
        return f"Task not found: {self.task_id}"


class InvalidTransitionError(QueueError, ValueError):
    """A status change would move a task backwards in its lifecycle."""

    def __init__(self, task_id: str, current: str, requested: str) -> None:
        super().__init__(task_id, current, requested)
        self.task_id = task_id
        self.current = current
        self.requested = requested

    def __str__(self) -> str:
        return f"Task {self.task_id}: cannot move from {self.current} to {self.requested}"
