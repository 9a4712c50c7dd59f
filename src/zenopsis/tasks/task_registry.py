# src/zenopsis/tasks/task_registry.py

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from types import MappingProxyType
from typing import Any

from .task_errors import HandlerNotFoundError

logger = logging.getLogger(__name__)

# A handler receives the decoded payload. It either returns (success) or raises.
# Both plain functions and coroutine functions are accepted.
TaskHandler = Callable[[dict[str, Any]], Awaitable[None] | None]


class HandlerRegistry:
    """
    Task type -> handler mapping.

    Handlers are registered during setup. After freeze() the registry is
    read-only, so the worker can share it without locking.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, TaskHandler] = {}
        self._frozen = False

    def register(self, task_type: str, handler: TaskHandler) -> None:
        if self._frozen:
            raise RuntimeError(f'Cannot register "{task_type}": registry is frozen')
        key = (task_type or "").strip()
        if not key:
            raise ValueError("task_type is required")
        if not callable(handler):
            raise TypeError(f'Handler for "{key}" is not callable')
        if key in self._handlers:
            logger.warning("Replacing task handler for type=%s", key)
        self._handlers[key] = handler
        logger.debug("Task handler registered type=%s", key)

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, task_type: str) -> TaskHandler:
        handler = self._handlers.get(task_type)
        if handler is None:
            raise HandlerNotFoundError(task_type)
        return handler

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._handlers

    def types(self) -> list[str]:
        return sorted(self._handlers)

    def as_mapping(self) -> Mapping[str, TaskHandler]:
        return MappingProxyType(self._handlers)
