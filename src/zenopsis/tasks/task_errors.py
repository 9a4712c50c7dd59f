# src/zenopsis/tasks/task_errors.py

from __future__ import annotations


class TaskError(Exception):
    """Base class for task queue errors."""


class StoreWriteError(TaskError):
    """The persistence layer rejected a write (insert, claim, outcome or cleanup)."""

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation


class HandlerNotFoundError(TaskError):
    """No handler is registered for a task type. Never retried."""

    def __init__(self, task_type: str) -> None:
        super().__init__(f'No handler registered for type "{task_type}"')
        self.task_type = task_type


class PayloadDecodeError(TaskError):
    """A stored payload could not be decoded. Never retried."""

    def __init__(self, task_id: int, message: str) -> None:
        super().__init__(f"Task {task_id} payload is not valid JSON: {message}")
        self.task_id = task_id


class HandlerExecutionError(TaskError):
    """A handler raised. Retried until max_attempts is reached."""

    def __init__(self, task_id: int, task_type: str, attempt: int, message: str) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.task_type = task_type
        self.attempt = attempt
