# src/cronledger/tasks/errors.py

from __future__ import annotations


class CronledgerError(Exception):
    """Base class for errors raised by the task registry and execution tracker."""

    kind = "error"


class TaskNotFoundError(CronledgerError):
    kind = "not_found"


class ExecutionNotFoundError(CronledgerError):
    kind = "not_found"


class TaskInactiveError(CronledgerError):
    kind = "inactive"


class InvalidTransitionError(CronledgerError):
    kind = "invalid_transition"

    def __init__(self, current: str, new: str) -> None:
        super().__init__(f"Invalid status transition: {current} -> {new}")
        self.current = current
        self.new = new


class StorageError(CronledgerError):
    kind = "storage"
