"""Typed queue errors carrying their error kind."""

from __future__ import annotations

from autoresume.taskqueue.models import ErrorKind


class QueueError(RuntimeError):
    """Base error for queue operations; ``kind`` drives CLI exit codes and recovery."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, *, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class StoreError(QueueError):
    kind = ErrorKind.IO


class LockTimeoutError(QueueError):
    kind = ErrorKind.LOCK_TIMEOUT


class ValidationError(QueueError):
    kind = ErrorKind.VALIDATION


class TaskNotFoundError(ValidationError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TaskStateError(ValidationError):
    """Requested transition is not allowed from the task's current status."""
