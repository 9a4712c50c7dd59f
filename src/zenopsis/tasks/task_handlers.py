# src/zenopsis/tasks/task_handlers.py

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from ..core.ports import ChatApi, ChatApiError, ChatErrorCode
from .task_api import DELETE_MESSAGE
from .task_registry import HandlerRegistry

logger = logging.getLogger(__name__)

ChatApiProvider = Callable[[], ChatApi | None]

# The message is already gone, or we will never be allowed to delete it.
# Either way the deletion is done as far as the queue is concerned.
_DELETE_SETTLED = frozenset({ChatErrorCode.NOT_FOUND, ChatErrorCode.FORBIDDEN})


def _require_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if value is None or str(value).strip() == "":
        raise ValueError(f"payload is missing {key!r}")
    return str(value)


def make_delete_message_handler(get_chat_api: ChatApiProvider):
    async def delete_message(payload: dict[str, Any]) -> None:
        chat_id = _require_str(payload, "chat_id")
        message_id = _require_str(payload, "message_id")

        chat_api = get_chat_api()
        if chat_api is None:
            raise ChatApiError(ChatErrorCode.UNAVAILABLE, "chat connector is not ready")

        try:
            await chat_api.delete_message(chat_id=chat_id, message_id=message_id)
        except ChatApiError as e:
            if e.code in _DELETE_SETTLED:
                logger.info(
                    "delete_message chat=%s message=%s settled as %s",
                    chat_id,
                    message_id,
                    e.code.value,
                )
                return
            raise

        logger.debug("delete_message chat=%s message=%s done", chat_id, message_id)

    return delete_message


def register_task_handlers(registry: HandlerRegistry, get_chat_api: ChatApiProvider) -> None:
    registry.register(DELETE_MESSAGE, make_delete_message_handler(get_chat_api))
