# src/zenopsis/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The task queue and its handlers depend on Protocols instead of concrete
implementations. This keeps the chat platform and storage swappable and makes
testing easier.
"""

from enum import StrEnum
from typing import Any, Awaitable, Protocol


class ChatErrorCode(StrEnum):
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


class ChatApiError(Exception):
    """
    Typed failure from a chat platform client.

    Callers classify failures by `code`, never by message text.
    """

    def __init__(self, code: ChatErrorCode, message: str = "") -> None:
        super().__init__(f"{code.value}: {message}" if message else code.value)
        self.code = code
        self.message = message


class ChatApi(Protocol):
    """
    Connector-side port: the chat operations task handlers may perform.

    chat_id / message_id are platform identifiers (room id / event id on Matrix).
    """

    def send_text(self, *, chat_id: str, text: str) -> Awaitable[str | None]: ...

    def delete_message(
            self,
            *,
            chat_id: str,
            message_id: str,
            reason: str | None = None,
    ) -> Awaitable[None]: ...


class TaskRepo(Protocol):
    # Scheduler API
    def add_task(
            self,
            *,
            task_type: str,
            payload: str,
            run_at_ms: int,
            max_attempts: int = 3,
            now_ms: int | None = None,
    ) -> Any: ...

    # Claim protocol / outcome recording
    def claim_due_tasks(self, *, limit: int = 10, now_ms: int | None = None) -> list[Any]: ...
    def mark_completed(self, task_id: int, *, now_ms: int | None = None) -> bool: ...
    def mark_failed(
            self,
            task_id: int,
            error: str,
            *,
            attempts: int,
            max_attempts: int,
            retryable: bool = True,
            now_ms: int | None = None,
    ) -> Any | None: ...

    # Retention
    def cleanup(self, *, max_age_ms: int = 86_400_000, now_ms: int | None = None) -> int: ...

    # Inspection
    def get_task(self, task_id: int) -> Any | None: ...
    def list_tasks(self, *, status: Any | None = None, limit: int = 20) -> list[Any]: ...
    def list_pending_by_type(self, task_type: str) -> list[Any]: ...
    def list_stale_running(self, *, older_than_ms: int, now_ms: int | None = None) -> list[Any]: ...
    def count_by_status(self) -> dict[Any, int]: ...
    def count_tasks(self) -> int: ...
