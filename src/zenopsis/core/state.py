# src/zenopsis/core/state.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..tasks.task_registry import HandlerRegistry
from ..tasks.task_store import TaskStore
from ..tasks.task_worker import TaskWorker
from .ports import ChatApi


@dataclass
class AppState:
    # Settings are kept on the state so commands and connectors read the same object.
    settings: Any

    task_store: TaskStore
    handlers: HandlerRegistry
    worker: TaskWorker

    # Published by the chat connector once it is logged in and synced.
    chat_api: ChatApi | None = None
