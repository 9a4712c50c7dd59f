# src/zenopsis/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, then runs on one event loop:
- the Matrix connector (optional),
- the task worker (started once the connector is ready, or right away without one).

Shutdown (SIGINT/SIGTERM): the worker timer stops first, an in-flight sweep gets
`task_shutdown_timeout_s` to finish, then the connector is cancelled.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from ..cli.bootstrap import create_initial_state, report_stale_tasks
from ..config import get_settings
from ..core.state import AppState
from ..logging_setup import setup_logging

logger = logging.getLogger(__name__)


async def _wait_for_connector(ready: asyncio.Event, connector: asyncio.Task, timeout_s: float) -> None:
    waiter = asyncio.create_task(ready.wait())
    try:
        await asyncio.wait({waiter, connector}, timeout=timeout_s, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await waiter

    if not ready.is_set():
        logger.warning(
            "Chat connector not ready after %.0fs; starting worker anyway "
            "(chat tasks will retry until it is)",
            timeout_s,
        )


async def run(state: AppState) -> None:
    settings = state.settings
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _handle_signal(signum: int) -> None:
        logger.info("Signal %s received, shutting down...", signum)
        stop.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        # Not available on every platform (e.g. Windows event loops).
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signum, _handle_signal, signum)

    report_stale_tasks(state)

    connector: asyncio.Task | None = None
    if settings.matrix_enabled:
        from ..connectors.matrix_connector import run_matrix_bot

        ready = asyncio.Event()
        connector = asyncio.create_task(run_matrix_bot(state, ready), name="matrix-connector")
        await _wait_for_connector(ready, connector, settings.matrix_ready_timeout_s)
    else:
        logger.info("Matrix connector disabled; chat tasks will retry and fail without it.")

    state.worker.start(settings.task_worker_interval_ms)

    try:
        await stop.wait()
    finally:
        await state.worker.stop(timeout_s=settings.task_shutdown_timeout_s)

        if connector is not None:
            connector.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await connector

        state.task_store.close()


def main() -> None:
    settings = get_settings()

    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)

    setup_logging(log_dir=settings.data_dir, console_level=console_level)

    logging.getLogger("nio").setLevel(max(console_level, logging.INFO))
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    logger.info("Starting %s...", settings.app_name)

    state = create_initial_state(settings=settings)

    try:
        asyncio.run(run(state))
    except KeyboardInterrupt:
        logger.info("Interrupted.")

    logger.info("Bye.")


if __name__ == "__main__":
    main()
