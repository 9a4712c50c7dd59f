# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from zenopsis.cli.bootstrap import create_initial_state
from zenopsis.core.state import AppState
from zenopsis.tasks.task_store import TaskStore

from .fakes import FakeClock


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with AppState and the task queue.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="zenopsis-test",
        data_dir=tmp_path,
        tasks_db_path=tmp_path / "tasks.sqlite3",
        task_worker_interval_ms=50,
        task_batch_limit=10,
        task_default_max_attempts=3,
        task_retention_ms=24 * 60 * 60 * 1000,
        task_shutdown_timeout_s=1.0,
        task_stale_running_ms=15 * 60 * 1000,
        command_reply_ttl_ms=15_000,
        admin_user_ids=[],
        matrix_enabled=False,
    )


@pytest.fixture()
def store(tmp_path: Path) -> TaskStore:
    return TaskStore(tmp_path / "tasks.sqlite3")


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def state(settings: SimpleNamespace) -> AppState:
    """
    AppState wired by the real composition root.

    NOTE: We keep the real SQLite TaskStore here because its correctness is
    part of what we want to test.
    """
    return create_initial_state(settings=settings)
