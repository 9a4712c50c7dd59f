# src/zenopsis/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires the task store, handler registry and worker into AppState.
"""

from __future__ import annotations

import logging

from ..config import get_settings
from ..core.state import AppState
from ..tasks.task_handlers import register_task_handlers
from ..tasks.task_registry import HandlerRegistry
from ..tasks.task_store import TaskStore
from ..tasks.task_worker import TaskWorker

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.tasks_db_path.parent.mkdir(parents=True, exist_ok=True)


def create_initial_state(*, settings=None) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings injectable makes the app easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    task_store = TaskStore(settings.tasks_db_path)
    handlers = HandlerRegistry()
    worker = TaskWorker(
        task_store,
        handlers,
        batch_limit=settings.task_batch_limit,
        retention_ms=settings.task_retention_ms,
    )

    state = AppState(
        settings=settings,
        task_store=task_store,
        handlers=handlers,
        worker=worker,
    )

    # Handlers resolve the chat API at call time: the connector publishes it after login.
    register_task_handlers(handlers, lambda: state.chat_api)
    handlers.freeze()
    return state


def report_stale_tasks(state: AppState) -> int:
    """Log tasks left 'running' by a previous process. They are not reset."""
    stale = state.task_store.list_stale_running(older_than_ms=state.settings.task_stale_running_ms)
    for task in stale:
        logger.warning(
            "Task %s (%s) has been running since %s (attempt %d/%d); a previous worker likely died",
            task.id,
            task.type,
            task.updated_at,
            task.attempts,
            task.max_attempts,
        )
    return len(stale)
