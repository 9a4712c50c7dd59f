# src/zenopsis/tasks/task_models.py

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import StrEnum

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_CLAIM_LIMIT = 10
DEFAULT_RETENTION_MS = 24 * 60 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


class TaskStatus(StrEnum):
    """
    Task lifecycle status.

    pending -> running -> completed
                       -> pending (retry, attempts < max_attempts)
                       -> failed  (attempts exhausted or no handler)

    completed and failed are terminal.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.PENDING
        return cls(raw)


@dataclass(slots=True)
class Task:
    id: int
    type: str
    # Encoded blob (JSON text); the store never interprets it.
    payload: str
    run_at: int
    status: TaskStatus
    attempts: int
    max_attempts: int
    created_at: int
    updated_at: int

    last_error: str | None = None
    completed_at: int | None = None

    @property
    def attempts_left(self) -> int:
        return max(0, self.max_attempts - self.attempts)
