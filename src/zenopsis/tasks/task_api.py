# src/zenopsis/tasks/task_api.py

from __future__ import annotations

import json
import logging
import re
from typing import Any

from ..core.ports import TaskRepo
from .task_models import DEFAULT_MAX_ATTEMPTS, Task, now_ms

logger = logging.getLogger(__name__)

DELETE_MESSAGE = "delete_message"

_TASK_TYPE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.:-]*$")


def encode_payload(payload: Any) -> str:
    try:
        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as e:
        raise ValueError(f"payload is not JSON-serializable: {e}") from e


def schedule_task(
    repo: TaskRepo,
    task_type: str,
    payload: Any,
    run_at_ms: int,
    max_attempts: int | None = None,
) -> Task:
    """
    Persist a new pending task and return it.

    run_at_ms may be in the past: the task is then due on the next sweep.
    Nothing is dispatched here; the worker picks the task up later.

    Raises ValueError for invalid input and StoreWriteError if the write is rejected.
    """
    if not isinstance(task_type, str) or not _TASK_TYPE_RE.match(task_type):
        raise ValueError(f"invalid task type: {task_type!r}")

    if max_attempts is None:
        max_attempts = DEFAULT_MAX_ATTEMPTS
    if int(max_attempts) < 1:
        raise ValueError("max_attempts must be >= 1")

    task = repo.add_task(
        task_type=task_type,
        payload=encode_payload(payload),
        run_at_ms=int(run_at_ms),
        max_attempts=int(max_attempts),
    )
    logger.info("Task %s scheduled type=%s run_at=%s", task.id, task.type, task.run_at)
    return task


def schedule_after(
    repo: TaskRepo,
    task_type: str,
    payload: Any,
    *,
    delay_ms: int,
    max_attempts: int | None = None,
) -> Task:
    """Convenience helper: schedule a task `delay_ms` from now."""
    run_at = now_ms() + max(0, int(delay_ms))
    return schedule_task(repo, task_type, payload, run_at, max_attempts=max_attempts)


def schedule_message_deletion(
    repo: TaskRepo,
    *,
    chat_id: str,
    message_id: str,
    delay_ms: int,
    max_attempts: int | None = None,
) -> Task:
    return schedule_after(
        repo,
        DELETE_MESSAGE,
        {"chat_id": chat_id, "message_id": message_id},
        delay_ms=delay_ms,
        max_attempts=max_attempts,
    )
