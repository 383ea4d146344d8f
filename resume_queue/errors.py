"""Domain exceptions for the resume queue."""

from typing import Optional


class QueueError(Exception):
    """Base class for expected queue errors (maps to CLI exit code 1)."""


class ValidationError(QueueError, ValueError):
    """Malformed add/update input. The queue is left unchanged."""


class TaskNotFoundError(QueueError):
    """No task with the requested id exists."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class StateTransitionError(QueueError):
    """An edge outside the allowed transition table was requested."""

    def __init__(self, task_id: str, from_status: str, to_status: str, detail: str = ""):
        self.task_id = task_id
        self.from_status = from_status
        self.to_status = to_status
        message = f"[{task_id}] Illegal transition {from_status} -> {to_status}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class LockTimeoutError(QueueError):
    """The lock could not be acquired before its timeout."""

    def __init__(
        self,
        lock_type: str,
        operation: str,
        waited: float,
        holder: Optional[str] = None
    ):
        self.lock_type = lock_type
        self.operation = operation
        self.waited = waited
        self.holder = holder
        message = (
            f"Could not acquire '{lock_type}' lock for '{operation}' "
            f"after {waited:.1f}s"
        )
        if holder:
            message += f" (held by {holder})"
        super().__init__(message)


class OperationCancelled(QueueError):
    """A wait was interrupted by a cancellation request."""


class PersistenceCorruptionError(QueueError):
    """The live store is unparseable and no backup could be used."""

    def __init__(self, path, detail: str = ""):
        self.path = path
        message = f"Queue file is corrupt and no valid backup was found: {path}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class ExecutorFailure(QueueError):
    """The executor reported that a task attempt failed."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class ExecutorTimeout(QueueError):
    """The executor did not finish within the task's timeout."""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Task exceeded timeout of {timeout_seconds}s")
