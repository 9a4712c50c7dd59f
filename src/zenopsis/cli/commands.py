# src/zenopsis/cli/commands.py

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from ..core.state import AppState
from ..tasks.task_models import Task, TaskStatus

CommandHandler = Callable[[AppState, list[str], str | None, str | None], str]

logger = logging.getLogger(__name__)

_LIST_LIMIT = 10


class CommandRegistry:
    """Simple slash-command registry used by connectors (/help, /tasks, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    def handle(
        self,
        state: AppState,
        line: str,
        user_id: str | None = None,
        room_id: str | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        admins = list(getattr(state.settings, "admin_user_ids", []) or [])
        if admins and user_id not in admins:
            logger.info("Command /%s refused for user=%s", name, user_id)
            return "This command is restricted to bot administrators."

        return handler(state, args, user_id, room_id)

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


def _fmt_ts(ms: int | None) -> str:
    if ms is None:
        return "-"
    return datetime.fromtimestamp(ms / 1000).astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _fmt_task(task: Task) -> str:
    line = (
        f"#{task.id} {task.type} [{task.status.value}] "
        f"attempts={task.attempts}/{task.max_attempts} run_at={_fmt_ts(task.run_at)}"
    )
    if task.last_error:
        line += f" error={task.last_error!r}"
    return line


def cmd_help(state: AppState, args: list[str], user_id: str | None, room_id: str | None) -> str:
    return registry.build_help()


def cmd_status(state: AppState, args: list[str], user_id: str | None, room_id: str | None) -> str:
    counts = state.task_store.count_by_status()
    worker = "RUNNING" if state.worker.is_running else "STOPPED"
    chat = "CONNECTED" if state.chat_api is not None else "OFFLINE"
    return (
        "Status:\n"
        f"  Worker: {worker}\n"
        f"  Chat connector: {chat}\n"
        f"  Handlers: {', '.join(state.handlers.types()) or '-'}\n"
        "  Tasks: " + ", ".join(f"{s.value}={counts.get(s, 0)}" for s in TaskStatus)
    )


def cmd_tasks(state: AppState, args: list[str], user_id: str | None, room_id: str | None) -> str:
    """
    /tasks            -> latest tasks
    /tasks <status>   -> latest tasks with that status (pending|running|completed|failed)
    /tasks stuck      -> tasks left 'running' past the stale threshold
    """
    sub = args[0].lower() if args else ""

    if sub == "stuck":
        older_than = int(getattr(state.settings, "task_stale_running_ms", 15 * 60 * 1000))
        tasks = state.task_store.list_stale_running(older_than_ms=older_than)
        if not tasks:
            return "No stuck tasks."
        lines = [f"Tasks running for more than {older_than // 1000}s:"]
        lines.extend(_fmt_task(t) for t in tasks[:_LIST_LIMIT])
        return "\n".join(lines)

    status: TaskStatus | None = None
    if sub:
        try:
            status = TaskStatus(sub)
        except ValueError:
            return "Usage: /tasks [pending|running|completed|failed|stuck]"

    tasks = state.task_store.list_tasks(status=status, limit=_LIST_LIMIT)
    if not tasks:
        return f"No {status.value} tasks." if status else "No tasks."
    title = f"Latest {status.value} tasks:" if status else "Latest tasks:"
    return "\n".join([title, *(_fmt_task(t) for t in tasks)])


def cmd_cleanup(state: AppState, args: list[str], user_id: str | None, room_id: str | None) -> str:
    retention = int(getattr(state.settings, "task_retention_ms", 24 * 60 * 60 * 1000))
    deleted = state.task_store.cleanup(max_age_ms=retention)
    logger.info("Manual cleanup by user=%s deleted=%d", user_id, deleted)
    return f"Deleted {deleted} finished task(s) older than {retention // 1000}s."


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("status", cmd_status, help_text="Show worker state and task counts.")
registry.register(
    "tasks",
    cmd_tasks,
    help_text="Inspect the task queue: /tasks [pending|running|completed|failed|stuck].",
)
registry.register("cleanup", cmd_cleanup, help_text="Delete finished tasks past the retention window.")
