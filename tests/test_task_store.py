# tests/test_task_store.py

from __future__ import annotations

import json
import sqlite3
from pathlib import Path

import pytest

from zenopsis.tasks.task_errors import StoreWriteError
from zenopsis.tasks.task_models import TaskStatus
from zenopsis.tasks.task_store import TaskStore

from .fakes import reject_update

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS
NOW = 1_700_000_000_000


def _add(store: TaskStore, *, run_at: int = NOW - 1000, max_attempts: int = 3, task_type="delete_message"):
    return store.add_task(
        task_type=task_type,
        payload=json.dumps({"chat_id": "!room:example.org", "message_id": "$ev"}),
        run_at_ms=run_at,
        max_attempts=max_attempts,
        now_ms=NOW - 5000,
    )


def test_add_task_persists_pending_row(store: TaskStore) -> None:
    task = _add(store)

    assert task.id > 0
    assert task.status == TaskStatus.PENDING
    assert task.attempts == 0
    assert task.max_attempts == 3
    assert task.completed_at is None

    loaded = store.get_task(task.id)
    assert loaded == task
    assert json.loads(loaded.payload) == {"chat_id": "!room:example.org", "message_id": "$ev"}


def test_add_task_rejected_by_constraint_raises_store_write_error(store: TaskStore) -> None:
    with pytest.raises(StoreWriteError):
        _add(store, max_attempts=0)
    assert store.count_tasks() == 0


def test_ids_are_monotonic(store: TaskStore) -> None:
    ids = [_add(store).id for _ in range(3)]
    assert ids == sorted(ids)
    assert len(set(ids)) == 3


def test_claim_only_due_pending_tasks(store: TaskStore) -> None:
    due = _add(store, run_at=NOW - 1000)
    _add(store, run_at=NOW + 60_000)

    claimed = store.claim_due_tasks(now_ms=NOW)
    assert [t.id for t in claimed] == [due.id]
    assert claimed[0].status == TaskStatus.RUNNING
    assert claimed[0].attempts == 1

    row = store.get_task(due.id)
    assert row is not None
    assert row.status == TaskStatus.RUNNING
    assert row.attempts == 1


def test_claim_at_exact_run_at_is_due(store: TaskStore) -> None:
    task = _add(store, run_at=NOW)
    assert [t.id for t in store.claim_due_tasks(now_ms=NOW)] == [task.id]


def test_claim_is_once_per_task(store: TaskStore) -> None:
    _add(store)
    assert len(store.claim_due_tasks(now_ms=NOW)) == 1
    assert store.claim_due_tasks(now_ms=NOW) == []


def test_claim_orders_by_run_at_and_respects_limit(store: TaskStore) -> None:
    late = _add(store, run_at=NOW - 1000)
    early = _add(store, run_at=NOW - 9000)
    middle = _add(store, run_at=NOW - 5000)

    claimed = store.claim_due_tasks(limit=2, now_ms=NOW)
    assert [t.id for t in claimed] == [early.id, middle.id]

    rest = store.claim_due_tasks(limit=2, now_ms=NOW)
    assert [t.id for t in rest] == [late.id]


def test_claim_skips_running_and_terminal_tasks(store: TaskStore) -> None:
    running = _add(store)
    completed = _add(store)
    failed = _add(store, max_attempts=1)
    store.claim_due_tasks(now_ms=NOW)
    store.mark_completed(completed.id, now_ms=NOW)
    store.mark_failed(failed.id, "boom", attempts=1, max_attempts=1, now_ms=NOW)

    assert store.get_task(running.id).status == TaskStatus.RUNNING
    assert store.claim_due_tasks(now_ms=NOW + DAY_MS) == []


def test_mark_completed_sets_completed_at(store: TaskStore) -> None:
    task = _add(store)
    store.claim_due_tasks(now_ms=NOW)

    assert store.mark_completed(task.id, now_ms=NOW + 10) is True

    row = store.get_task(task.id)
    assert row.status == TaskStatus.COMPLETED
    assert row.completed_at == NOW + 10
    assert store.claim_due_tasks(now_ms=NOW + DAY_MS) == []


def test_mark_completed_requires_running(store: TaskStore) -> None:
    task = _add(store)
    assert store.mark_completed(task.id, now_ms=NOW) is False
    assert store.get_task(task.id).status == TaskStatus.PENDING


def test_mark_failed_with_attempts_left_returns_to_pending(store: TaskStore) -> None:
    task = _add(store)
    store.claim_due_tasks(now_ms=NOW)

    status = store.mark_failed(task.id, "not found", attempts=1, max_attempts=3, now_ms=NOW)

    assert status == TaskStatus.PENDING
    row = store.get_task(task.id)
    assert row.status == TaskStatus.PENDING
    assert row.last_error == "not found"
    assert row.completed_at is None
    # run_at is unchanged, so the task is due again right away.
    assert row.run_at == task.run_at
    assert [t.id for t in store.claim_due_tasks(now_ms=NOW)] == [task.id]


def test_mark_failed_at_max_attempts_is_terminal(store: TaskStore) -> None:
    task = _add(store, max_attempts=3)
    for attempt in (1, 2, 3):
        (claimed,) = store.claim_due_tasks(now_ms=NOW)
        assert claimed.attempts == attempt
        store.mark_failed(task.id, f"error {attempt}", attempts=attempt, max_attempts=3, now_ms=NOW)

    row = store.get_task(task.id)
    assert row.status == TaskStatus.FAILED
    assert row.attempts == 3
    assert row.last_error == "error 3"
    assert row.completed_at == NOW
    assert store.claim_due_tasks(now_ms=NOW + DAY_MS) == []


def test_mark_failed_not_retryable_is_terminal_immediately(store: TaskStore) -> None:
    task = _add(store, max_attempts=5)
    store.claim_due_tasks(now_ms=NOW)

    status = store.mark_failed(
        task.id, "no handler", attempts=1, max_attempts=5, retryable=False, now_ms=NOW
    )

    assert status == TaskStatus.FAILED
    row = store.get_task(task.id)
    assert row.attempts == 1
    assert row.status == TaskStatus.FAILED


def test_last_error_survives_later_success(store: TaskStore) -> None:
    task = _add(store)
    store.claim_due_tasks(now_ms=NOW)
    store.mark_failed(task.id, "transient", attempts=1, max_attempts=3, now_ms=NOW)
    store.claim_due_tasks(now_ms=NOW)
    store.mark_completed(task.id, now_ms=NOW)

    row = store.get_task(task.id)
    assert row.status == TaskStatus.COMPLETED
    assert row.last_error == "transient"


def test_terminal_rows_cannot_be_rewritten(store: TaskStore) -> None:
    task = _add(store)
    store.claim_due_tasks(now_ms=NOW)
    store.mark_completed(task.id, now_ms=NOW)

    assert store.mark_failed(task.id, "late", attempts=1, max_attempts=3, now_ms=NOW) is None
    row = store.get_task(task.id)
    assert row.status == TaskStatus.COMPLETED
    assert row.last_error is None


def test_cleanup_removes_only_old_terminal_rows(store: TaskStore) -> None:
    old = _add(store)
    recent = _add(store)
    store.claim_due_tasks(now_ms=NOW)
    store.mark_completed(old.id, now_ms=NOW - 48 * HOUR_MS)
    store.mark_completed(recent.id, now_ms=NOW - 1 * HOUR_MS)

    deleted = store.cleanup(max_age_ms=DAY_MS, now_ms=NOW)

    assert deleted == 1
    assert store.get_task(old.id) is None
    assert store.get_task(recent.id) is not None


def test_cleanup_removes_old_failed_rows(store: TaskStore) -> None:
    task = _add(store, max_attempts=1)
    store.claim_due_tasks(now_ms=NOW)
    store.mark_failed(task.id, "gone", attempts=1, max_attempts=1, now_ms=NOW - 48 * HOUR_MS)

    assert store.cleanup(max_age_ms=DAY_MS, now_ms=NOW) == 1
    assert store.get_task(task.id) is None


def test_cleanup_never_touches_pending_or_running(store: TaskStore) -> None:
    first = _add(store, run_at=NOW - 30 * DAY_MS)
    second = _add(store, run_at=NOW - 30 * DAY_MS)
    # Only the first one is claimed; the second stays pending.
    store.claim_due_tasks(limit=1, now_ms=NOW - 29 * DAY_MS)

    assert store.cleanup(max_age_ms=DAY_MS, now_ms=NOW) == 0
    assert store.get_task(first.id).status == TaskStatus.RUNNING
    assert store.get_task(second.id).status == TaskStatus.PENDING


def test_list_pending_by_type(store: TaskStore) -> None:
    a = _add(store, task_type="delete_message")
    _add(store, task_type="notify_admin")
    b = _add(store, task_type="delete_message", run_at=NOW - 9000)

    assert [t.id for t in store.list_pending_by_type("delete_message")] == [b.id, a.id]
    assert store.list_pending_by_type("unknown") == []


def test_counts_and_listing(store: TaskStore) -> None:
    first = _add(store)
    _add(store, run_at=NOW + 60_000)
    store.claim_due_tasks(now_ms=NOW)
    store.mark_completed(first.id, now_ms=NOW)

    counts = store.count_by_status()
    assert counts[TaskStatus.COMPLETED] == 1
    assert counts[TaskStatus.PENDING] == 1
    assert counts[TaskStatus.RUNNING] == 0
    assert counts[TaskStatus.FAILED] == 0

    assert [t.id for t in store.list_tasks(status=TaskStatus.COMPLETED)] == [first.id]
    assert len(store.list_tasks()) == 2


def test_list_stale_running(store: TaskStore) -> None:
    task = _add(store)
    store.claim_due_tasks(now_ms=NOW)

    assert store.list_stale_running(older_than_ms=HOUR_MS, now_ms=NOW + 1000) == []
    stale = store.list_stale_running(older_than_ms=HOUR_MS, now_ms=NOW + 2 * HOUR_MS)
    assert [t.id for t in stale] == [task.id]
    # Reporting never changes the row.
    assert store.get_task(task.id).status == TaskStatus.RUNNING


def test_schema_migration_adds_missing_columns(tmp_path: Path) -> None:
    db = tmp_path / "legacy.sqlite3"
    conn = sqlite3.connect(db)
    conn.execute(
        """
        CREATE TABLE scheduled_tasks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            type TEXT NOT NULL,
            payload TEXT NOT NULL,
            run_at INTEGER NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending'
        )
        """
    )
    conn.execute(
        "INSERT INTO scheduled_tasks(type, payload, run_at) VALUES ('delete_message', '{}', 1)"
    )
    conn.commit()
    conn.close()

    store = TaskStore(db)

    (task,) = store.claim_due_tasks(now_ms=NOW)
    assert task.attempts == 1
    assert task.max_attempts == 3
    assert store.mark_completed(task.id, now_ms=NOW) is True


def test_claim_failure_on_one_row_keeps_rows_already_won(store: TaskStore) -> None:
    first = _add(store, run_at=NOW - 3000)
    rejected = _add(store, run_at=NOW - 2000)
    last = _add(store, run_at=NOW - 1000)
    reject_update(store.db_path, rejected.id, "running")

    claimed = store.claim_due_tasks(now_ms=NOW)

    assert [t.id for t in claimed] == [first.id, last.id]
    row = store.get_task(rejected.id)
    assert row.status == TaskStatus.PENDING
    assert row.attempts == 0


def test_rows_past_attempt_cap_do_not_block_claims(store: TaskStore) -> None:
    stuck = [_add(store, run_at=NOW - 9000), _add(store, run_at=NOW - 8000)]
    good = _add(store, run_at=NOW - 1000)
    conn = sqlite3.connect(store.db_path)
    conn.execute(
        "UPDATE scheduled_tasks SET attempts = max_attempts WHERE id IN (?, ?)",
        tuple(t.id for t in stuck),
    )
    conn.commit()
    conn.close()

    claimed = store.claim_due_tasks(limit=2, now_ms=NOW)

    assert [t.id for t in claimed] == [good.id]
    assert [store.get_task(t.id).status for t in stuck] == [TaskStatus.PENDING] * 2


def test_connection_failure_surfaces_as_store_write_error(store: TaskStore, monkeypatch) -> None:
    task = _add(store)

    def cannot_open():
        raise sqlite3.OperationalError("unable to open database file")

    monkeypatch.setattr(store, "_get_conn", cannot_open)

    with pytest.raises(StoreWriteError) as exc:
        _add(store)
    assert exc.value.operation == "schedule"
    with pytest.raises(StoreWriteError):
        store.claim_due_tasks(now_ms=NOW)
    with pytest.raises(StoreWriteError):
        store.mark_completed(task.id, now_ms=NOW)
    with pytest.raises(StoreWriteError):
        store.mark_failed(task.id, "x", attempts=1, max_attempts=3, now_ms=NOW)
    with pytest.raises(StoreWriteError):
        store.cleanup(now_ms=NOW)
