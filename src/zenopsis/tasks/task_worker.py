# src/zenopsis/tasks/task_worker.py

from __future__ import annotations

"""
Task worker.

A small polling loop that, on every tick:
- claims due tasks (pending, run_at <= now) through the store's compare-and-swap claim,
- decodes each payload and dispatches it to the registered handler,
- records the outcome (completed / back to pending / failed),
- prunes terminal tasks past the retention window.

Handlers run sequentially inside a sweep. A handler exception is recorded
against its own task and never aborts the sweep for the others.

The worker owns all of its mutable state (timer task, single-flight flag);
nothing lives at module level.
"""

import asyncio
import contextlib
import inspect
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..core.ports import TaskRepo
from .task_errors import (
    HandlerExecutionError,
    HandlerNotFoundError,
    PayloadDecodeError,
    TaskError,
)
from .task_models import (
    DEFAULT_CLAIM_LIMIT,
    DEFAULT_RETENTION_MS,
    Task,
    TaskStatus,
    now_ms,
)
from .task_registry import HandlerRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SweepStats:
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    store_errors: int = 0
    cleaned: int = 0


def decode_payload(task: Task) -> dict[str, Any]:
    try:
        value = json.loads(task.payload)
    except (TypeError, ValueError) as e:
        raise PayloadDecodeError(task.id, str(e)) from e
    if not isinstance(value, dict):
        raise PayloadDecodeError(task.id, f"expected an object, got {type(value).__name__}")
    return value


def _describe(exc: BaseException) -> str:
    text = str(exc).strip()
    return text or type(exc).__name__


class TaskWorker:
    def __init__(
        self,
        store: TaskRepo,
        registry: HandlerRegistry,
        *,
        batch_limit: int = DEFAULT_CLAIM_LIMIT,
        retention_ms: int = DEFAULT_RETENTION_MS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._registry = registry
        self._batch_limit = max(1, int(batch_limit))
        self._retention_ms = max(0, int(retention_ms))
        self._clock = clock

        self._sweeping = False
        self._in_flight: Task | None = None
        self._runner: asyncio.Task[None] | None = None
        self._sweep: asyncio.Task[SweepStats | None] | None = None

    @property
    def is_running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    @property
    def is_sweeping(self) -> bool:
        return self._sweeping

    # ---- one sweep ----

    async def process_due_tasks(self) -> SweepStats | None:
        """
        Run one sweep. Returns None when another sweep is still in progress
        (the call is skipped, not queued).
        """
        if self._sweeping:
            logger.debug("Sweep already in progress; skipping")
            return None
        self._sweeping = True

        stats = SweepStats()
        try:
            try:
                tasks = self._store.claim_due_tasks(limit=self._batch_limit, now_ms=self._clock())
            except Exception:
                logger.exception("claim_due_tasks failed")
                stats.store_errors += 1
                tasks = []

            stats.claimed = len(tasks)
            if tasks:
                logger.debug("Claimed %d task(s): %s", len(tasks), [t.id for t in tasks])

            for task in tasks:
                self._in_flight = task
                try:
                    await self._execute(task, stats)
                finally:
                    self._in_flight = None

            try:
                stats.cleaned = self._store.cleanup(
                    max_age_ms=self._retention_ms, now_ms=self._clock()
                )
            except Exception:
                logger.exception("cleanup failed")
                stats.store_errors += 1
        finally:
            self._sweeping = False

        return stats

    async def _execute(self, task: Task, stats: SweepStats) -> None:
        try:
            handler = self._registry.get(task.type)
            payload = decode_payload(task)
        except (HandlerNotFoundError, PayloadDecodeError) as e:
            # Retrying can never help here.
            self._record_failure(task, e, retryable=False, stats=stats)
            return

        try:
            result = handler(payload)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            err = HandlerExecutionError(task.id, task.type, task.attempts, _describe(e))
            err.__cause__ = e
            self._record_failure(task, err, retryable=True, stats=stats)
            return

        try:
            if self._store.mark_completed(task.id, now_ms=self._clock()):
                stats.completed += 1
                logger.info("Task %s (%s) -> completed", task.id, task.type)
        except Exception:
            logger.exception("mark_completed failed task_id=%s", task.id)
            stats.store_errors += 1

    def _record_failure(
        self, task: Task, error: TaskError, *, retryable: bool, stats: SweepStats
    ) -> None:
        message = _describe(error)
        try:
            new_status = self._store.mark_failed(
                task.id,
                message,
                attempts=task.attempts,
                max_attempts=task.max_attempts,
                retryable=retryable,
                now_ms=self._clock(),
            )
        except Exception:
            logger.exception("mark_failed failed task_id=%s", task.id)
            stats.store_errors += 1
            return

        cause = error.__cause__ or error
        if new_status == TaskStatus.PENDING:
            stats.retried += 1
            logger.warning(
                "Task %s (%s) attempt %d/%d failed, will retry: %s",
                task.id,
                task.type,
                task.attempts,
                task.max_attempts,
                message,
                exc_info=(type(cause), cause, cause.__traceback__),
            )
        elif new_status == TaskStatus.FAILED:
            stats.failed += 1
            logger.error(
                "Task %s (%s) -> failed after %d/%d attempt(s): %s",
                task.id,
                task.type,
                task.attempts,
                task.max_attempts,
                message,
            )

    # ---- lifecycle ----

    def start(self, interval_ms: int = 5000) -> None:
        """
        Start periodic sweeps on the running event loop.

        The first sweep runs immediately, to pick up tasks that came due while
        the process was down.
        """
        if self.is_running:
            logger.warning("TaskWorker already running")
            return

        interval_s = max(0.1, int(interval_ms) / 1000.0)
        self._runner = asyncio.get_running_loop().create_task(
            self._run_loop(interval_s), name="task-worker"
        )
        logger.info(
            "TaskWorker started interval=%.1fs batch_limit=%d handlers=%s",
            interval_s,
            self._batch_limit,
            self._registry.types(),
        )

    async def stop(self, timeout_s: float | None = 10.0) -> None:
        """
        Stop the timer, then wait up to timeout_s for an in-flight sweep.

        If the deadline passes, the sweep is cancelled. A task whose handler
        was interrupted stays 'running' and shows up in list_stale_running().
        """
        runner, self._runner = self._runner, None
        if runner is not None:
            runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await runner

        sweep = self._sweep
        if sweep is not None and not sweep.done():
            logger.info("Waiting up to %ss for the in-flight sweep", timeout_s)
            done, _ = await asyncio.wait({sweep}, timeout=timeout_s)
            if not done:
                task = self._in_flight
                logger.warning(
                    "Sweep did not finish in %ss; cancelling (task %s stays running)",
                    timeout_s,
                    task.id if task is not None else None,
                )
                sweep.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sweep

        logger.info("TaskWorker stopped")

    async def _run_loop(self, interval_s: float) -> None:
        while True:
            self._tick()
            await asyncio.sleep(interval_s)

    def _tick(self) -> None:
        if self._sweep is not None and not self._sweep.done():
            logger.debug("Previous sweep still running; tick skipped")
            return
        self._sweep = asyncio.create_task(self.process_due_tasks(), name="task-sweep")
        self._sweep.add_done_callback(self._on_sweep_done)

    @staticmethod
    def _on_sweep_done(sweep: asyncio.Task[SweepStats | None]) -> None:
        if sweep.cancelled():
            return
        exc = sweep.exception()
        if exc is not None:
            logger.error("Sweep crashed", exc_info=(type(exc), exc, exc.__traceback__))
            return
        stats = sweep.result()
        if stats is not None and (stats.claimed or stats.cleaned or stats.store_errors):
            logger.debug("Sweep done: %s", stats)
