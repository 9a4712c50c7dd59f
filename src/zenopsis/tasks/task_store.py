# src/zenopsis/tasks/task_store.py

from __future__ import annotations

import contextlib
import logging
import sqlite3
from pathlib import Path

from .task_errors import StoreWriteError
from .task_models import (
    DEFAULT_CLAIM_LIMIT,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETENTION_MS,
    Task,
    TaskStatus,
    now_ms as _now_ms,
)

logger = logging.getLogger(__name__)

_TERMINAL = (TaskStatus.COMPLETED.value, TaskStatus.FAILED.value)


class TaskStore:
    """
    SQLite task store.

    The schema is intentionally simple and migration-safe:
    - create table if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Every row mutation goes through one of four paths: claim, complete, fail, cleanup.
    Each of them is a conditional UPDATE/DELETE, so a row is never moved out of a
    state it is no longer in.

    Thread-safety:
    - each method opens its own SQLite connection
    """

    def __init__(self, db_path: str | Path = "tasks.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        logger.info("TaskStore ready db=%s total=%s", self._db_path, self.count_tasks())

    @property
    def db_path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        """Compatibility hook for shutdown (no persistent connections to close)."""
        return

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS scheduled_tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    type TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    run_at INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    attempts INTEGER NOT NULL DEFAULT 0 CHECK (attempts >= 0),
                    max_attempts INTEGER NOT NULL DEFAULT 3 CHECK (max_attempts >= 1),
                    last_error TEXT,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    completed_at INTEGER
                )
                """
            )

            # Migrations (safe): add missing columns.
            cur.execute("PRAGMA table_info(scheduled_tasks)")
            cols = {row["name"] for row in cur.fetchall()}

            def add_col(name: str, decl: str) -> None:
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE scheduled_tasks ADD COLUMN {name} {decl}")
                logger.info("TaskStore migration: added column %s", name)

            add_col("attempts", "INTEGER NOT NULL DEFAULT 0")
            add_col("max_attempts", "INTEGER NOT NULL DEFAULT 3")
            add_col("last_error", "TEXT")
            add_col("created_at", "INTEGER NOT NULL DEFAULT 0")
            add_col("updated_at", "INTEGER NOT NULL DEFAULT 0")
            add_col("completed_at", "INTEGER")

            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_scheduled_tasks_due "
                "ON scheduled_tasks(status, run_at)"
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_scheduled_tasks_retention "
                "ON scheduled_tasks(status, completed_at)"
            )

            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            id=int(row["id"]),
            type=str(row["type"]),
            payload=str(row["payload"]),
            run_at=int(row["run_at"]),
            status=TaskStatus.from_db(row["status"]),
            attempts=int(row["attempts"] or 0),
            max_attempts=int(row["max_attempts"] or DEFAULT_MAX_ATTEMPTS),
            created_at=int(row["created_at"] or 0),
            updated_at=int(row["updated_at"] or 0),
            last_error=row["last_error"],
            completed_at=int(row["completed_at"]) if row["completed_at"] is not None else None,
        )

    # ---- read API ----

    def count_tasks(self) -> int:
        conn = self._get_conn()
        try:
            (n,) = conn.execute("SELECT COUNT(*) FROM scheduled_tasks").fetchone()
            return int(n)
        finally:
            conn.close()

    def count_by_status(self) -> dict[TaskStatus, int]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM scheduled_tasks GROUP BY status"
            ).fetchall()
        finally:
            conn.close()

        out = {status: 0 for status in TaskStatus}
        for row in rows:
            out[TaskStatus.from_db(row["status"])] = int(row["n"])
        return out

    def get_task(self, task_id: int) -> Task | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM scheduled_tasks WHERE id = ?", (int(task_id),)
            ).fetchone()
            return self._row_to_task(row) if row else None
        finally:
            conn.close()

    def list_pending_by_type(self, task_type: str) -> list[Task]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """
                SELECT *
                FROM scheduled_tasks
                WHERE type = ?
                  AND status = 'pending'
                ORDER BY run_at ASC, id ASC
                """,
                (task_type,),
            ).fetchall()
            return [self._row_to_task(r) for r in rows]
        finally:
            conn.close()

    def list_tasks(self, *, status: TaskStatus | None = None, limit: int = 20) -> list[Task]:
        """Latest tasks first, optionally filtered by status (operator inspection)."""
        conn = self._get_conn()
        try:
            if status is None:
                rows = conn.execute(
                    "SELECT * FROM scheduled_tasks ORDER BY updated_at DESC, id DESC LIMIT ?",
                    (int(limit),),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT *
                    FROM scheduled_tasks
                    WHERE status = ?
                    ORDER BY updated_at DESC, id DESC
                        LIMIT ?
                    """,
                    (status.value, int(limit)),
                ).fetchall()
            return [self._row_to_task(r) for r in rows]
        finally:
            conn.close()

    def list_stale_running(self, *, older_than_ms: int, now_ms: int | None = None) -> list[Task]:
        """
        Tasks stuck in 'running' for longer than older_than_ms.

        A sweep that finishes always moves its rows out of 'running', so these
        rows mean a worker died mid-handler. They are reported, never reset.
        """
        if now_ms is None:
            now_ms = _now_ms()
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """
                SELECT *
                FROM scheduled_tasks
                WHERE status = 'running'
                  AND updated_at <= ?
                ORDER BY updated_at ASC
                """,
                (int(now_ms) - int(older_than_ms),),
            ).fetchall()
            return [self._row_to_task(r) for r in rows]
        finally:
            conn.close()

    # ---- write API ----

    def add_task(
        self,
        *,
        task_type: str,
        payload: str,
        run_at_ms: int,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        now_ms: int | None = None,
    ) -> Task:
        """Insert a new pending task. The payload is stored as given."""
        if now_ms is None:
            now_ms = _now_ms()

        conn: sqlite3.Connection | None = None
        try:
            conn = self._get_conn()
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO scheduled_tasks(
                    type, payload, run_at, status, attempts, max_attempts,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, 'pending', 0, ?, ?, ?)
                """,
                (task_type, payload, int(run_at_ms), int(max_attempts), int(now_ms), int(now_ms)),
            )
            conn.commit()
            rowid = cur.lastrowid
            if rowid is None:
                raise StoreWriteError("schedule", "SQLite did not return lastrowid")
        except sqlite3.Error as e:
            raise StoreWriteError("schedule", str(e)) from e
        finally:
            if conn is not None:
                conn.close()

        task = Task(
            id=int(rowid),
            type=task_type,
            payload=payload,
            run_at=int(run_at_ms),
            status=TaskStatus.PENDING,
            attempts=0,
            max_attempts=int(max_attempts),
            created_at=int(now_ms),
            updated_at=int(now_ms),
        )
        logger.debug(
            "Task added id=%s type=%s run_at=%s max_attempts=%s",
            task.id,
            task.type,
            task.run_at,
            task.max_attempts,
        )
        return task

    def claim_due_tasks(
        self, *, limit: int = DEFAULT_CLAIM_LIMIT, now_ms: int | None = None
    ) -> list[Task]:
        """
        Claim up to `limit` due tasks, earliest run_at first.

        Each candidate is moved pending -> running with a compare-and-swap:
          UPDATE ... WHERE id = ? AND status = 'pending'
        A zero rowcount means another sweep won the row; it is skipped.

        Each row is committed on its own. A row whose UPDATE fails is rolled
        back, logged and skipped, so rows already won are still returned to
        the caller and never left 'running' without an owner.

        Returned tasks are the ones this call won, already reflecting
        status=running and the incremented attempts counter.
        Raises StoreWriteError only if the candidate query itself fails.
        """
        if now_ms is None:
            now_ms = _now_ms()

        conn: sqlite3.Connection | None = None
        try:
            try:
                conn = self._get_conn()
                # Rows past their attempt cap can never be claimed; keep them
                # out of the batch so they cannot crowd out runnable tasks.
                candidates = conn.execute(
                    """
                    SELECT *
                    FROM scheduled_tasks
                    WHERE status = 'pending'
                      AND run_at <= ?
                      AND attempts < max_attempts
                    ORDER BY run_at ASC, id ASC
                        LIMIT ?
                    """,
                    (int(now_ms), int(limit)),
                ).fetchall()
            except sqlite3.Error as e:
                raise StoreWriteError("claim", str(e)) from e

            claimed: list[Task] = []
            for row in candidates:
                task = self._row_to_task(row)
                try:
                    cur = conn.execute(
                        """
                        UPDATE scheduled_tasks
                        SET status = 'running',
                            attempts = attempts + 1,
                            updated_at = ?
                        WHERE id = ?
                          AND status = 'pending'
                          AND attempts < max_attempts
                        """,
                        (int(now_ms), task.id),
                    )
                    conn.commit()
                    updated = cur.rowcount
                except sqlite3.Error:
                    logger.exception("Claim of task %s failed; skipping", task.id)
                    with contextlib.suppress(sqlite3.Error):
                        conn.rollback()
                    continue

                if updated != 1:
                    logger.debug("Task %s claimed elsewhere; skipping", task.id)
                    continue

                task.status = TaskStatus.RUNNING
                task.attempts += 1
                task.updated_at = int(now_ms)
                claimed.append(task)

            return claimed
        finally:
            if conn is not None:
                conn.close()

    def mark_completed(self, task_id: int, *, now_ms: int | None = None) -> bool:
        """running -> completed. Returns False if the row was not running."""
        if now_ms is None:
            now_ms = _now_ms()

        conn: sqlite3.Connection | None = None
        try:
            conn = self._get_conn()
            cur = conn.execute(
                """
                UPDATE scheduled_tasks
                SET status = 'completed',
                    completed_at = ?,
                    updated_at = ?
                WHERE id = ?
                  AND status = 'running'
                """,
                (int(now_ms), int(now_ms), int(task_id)),
            )
            conn.commit()
            updated = cur.rowcount
        except sqlite3.Error as e:
            raise StoreWriteError("mark_completed", str(e)) from e
        finally:
            if conn is not None:
                conn.close()

        if updated != 1:
            logger.warning("mark_completed: task %s is not running; nothing updated", task_id)
            return False
        return True

    def mark_failed(
        self,
        task_id: int,
        error: str,
        *,
        attempts: int,
        max_attempts: int,
        retryable: bool = True,
        now_ms: int | None = None,
    ) -> TaskStatus | None:
        """
        Record a failed execution.

          running -> pending  if retryable and attempts < max_attempts
          running -> failed   otherwise (terminal, completed_at set)

        run_at is left untouched, so a retried task is due again on the next sweep.
        Returns the new status, or None if the row was not running.
        """
        if now_ms is None:
            now_ms = _now_ms()

        terminal = (not retryable) or attempts >= max_attempts
        new_status = TaskStatus.FAILED if terminal else TaskStatus.PENDING

        conn: sqlite3.Connection | None = None
        try:
            conn = self._get_conn()
            cur = conn.execute(
                """
                UPDATE scheduled_tasks
                SET status = ?,
                    last_error = ?,
                    completed_at = ?,
                    updated_at = ?
                WHERE id = ?
                  AND status = 'running'
                """,
                (
                    new_status.value,
                    error,
                    int(now_ms) if terminal else None,
                    int(now_ms),
                    int(task_id),
                ),
            )
            conn.commit()
            updated = cur.rowcount
        except sqlite3.Error as e:
            raise StoreWriteError("mark_failed", str(e)) from e
        finally:
            if conn is not None:
                conn.close()

        if updated != 1:
            logger.warning("mark_failed: task %s is not running; nothing updated", task_id)
            return None
        return new_status

    def cleanup(
        self, *, max_age_ms: int = DEFAULT_RETENTION_MS, now_ms: int | None = None
    ) -> int:
        """
        Delete terminal tasks whose completed_at is older than max_age_ms.

        pending and running rows are never touched, whatever their age.
        Returns the number of deleted rows.
        """
        if now_ms is None:
            now_ms = _now_ms()
        cutoff = int(now_ms) - int(max_age_ms)

        conn: sqlite3.Connection | None = None
        try:
            conn = self._get_conn()
            cur = conn.execute(
                """
                DELETE FROM scheduled_tasks
                WHERE status IN (?, ?)
                  AND completed_at IS NOT NULL
                  AND completed_at <= ?
                """,
                (*_TERMINAL, cutoff),
            )
            conn.commit()
            deleted = int(cur.rowcount or 0)
        except sqlite3.Error as e:
            raise StoreWriteError("cleanup", str(e)) from e
        finally:
            if conn is not None:
                conn.close()

        if deleted:
            logger.info("TaskStore cleanup: deleted %d terminal task(s)", deleted)
        return deleted
