# tests/test_commands.py

from __future__ import annotations

from zenopsis.cli.commands import CommandRegistry, registry
from zenopsis.tasks.task_api import schedule_task
from zenopsis.tasks.task_models import TaskStatus, now_ms


def test_command_registry_routes_handlers(state) -> None:
    reg = CommandRegistry()
    seen: list[tuple] = []

    def handler(state, args, user_id, room_id):
        seen.append((args, user_id, room_id))
        return "ok"

    reg.register("a", handler, "a", aliases=["alpha"])

    assert reg.handle(state, "/a x y", user_id="u", room_id="r") == "ok"
    assert reg.handle(state, "/ALPHA", user_id="u", room_id="r") == "ok"
    assert seen == [(["x", "y"], "u", "r"), ([], "u", "r")]


def test_command_registry_unknown_and_non_command(state) -> None:
    reg = CommandRegistry()
    assert reg.handle(state, "hello") is None
    assert "Unknown command" in (reg.handle(state, "/nope") or "")
    assert "Empty command" in (reg.handle(state, "/") or "")


def test_admin_restriction(state) -> None:
    state.settings.admin_user_ids = ["@admin:example.org"]

    assert "restricted" in registry.handle(state, "/status", user_id="@rando:example.org")
    assert registry.handle(state, "/status", user_id="@admin:example.org").startswith("Status:")


def test_help_lists_commands(state) -> None:
    text = registry.handle(state, "/help")
    for name in ("/help", "/status", "/tasks", "/cleanup"):
        assert name in text


def test_status_reports_counts(state) -> None:
    schedule_task(state.task_store, "delete_message", {"chat_id": "c", "message_id": "m"}, now_ms() + 60_000)

    text = registry.handle(state, "/status")

    assert "Worker: STOPPED" in text
    assert "Chat connector: OFFLINE" in text
    assert "delete_message" in text
    assert "pending=1" in text


def test_tasks_lists_and_filters(state) -> None:
    store = state.task_store
    done = schedule_task(store, "delete_message", {"chat_id": "c", "message_id": "1"}, 0)
    schedule_task(store, "delete_message", {"chat_id": "c", "message_id": "2"}, now_ms() + 60_000)
    store.claim_due_tasks()
    store.mark_failed(done.id, "rate limited", attempts=1, max_attempts=1)

    assert registry.handle(state, "/tasks").startswith("Latest tasks:")

    failed = registry.handle(state, "/tasks failed")
    assert f"#{done.id}" in failed
    assert "'rate limited'" in failed

    assert registry.handle(state, "/tasks running") == "No running tasks."
    assert registry.handle(state, "/tasks bogus").startswith("Usage:")


def test_tasks_stuck(state) -> None:
    store = state.task_store
    task = schedule_task(store, "delete_message", {"chat_id": "c", "message_id": "1"}, 0)
    store.claim_due_tasks(now_ms=1)

    assert registry.handle(state, "/tasks stuck").startswith("Tasks running for more than")
    assert f"#{task.id}" in registry.handle(state, "/tasks stuck")
    assert store.get_task(task.id).status == TaskStatus.RUNNING


def test_cleanup_command(state) -> None:
    store = state.task_store
    task = schedule_task(store, "delete_message", {"chat_id": "c", "message_id": "1"}, 0)
    store.claim_due_tasks(now_ms=1)
    store.mark_completed(task.id, now_ms=1)

    assert registry.handle(state, "/cleanup") == "Deleted 1 finished task(s) older than 86400s."
    assert store.get_task(task.id) is None
