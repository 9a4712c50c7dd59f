# src/zenopsis/connectors/matrix_connector.py

from __future__ import annotations

import asyncio
import contextlib
import logging
import time

from nio import MatrixRoom, RoomMessageText

from ..cli.commands import registry as command_registry
from ..core.ports import ChatApiError
from ..core.state import AppState
from ..tasks.task_api import schedule_message_deletion
from ..tasks.task_errors import StoreWriteError
from .matrix_client import MatrixChatApi, create_matrix_client

logger = logging.getLogger(__name__)


def _ms_now() -> int:
    return int(time.time() * 1000)


def _room_allowlist(settings_rooms: list[str]) -> set[str] | None:
    rooms = [r.strip() for r in (settings_rooms or []) if str(r).strip()]
    return set(rooms) if rooms else None


def _schedule_auto_delete(state: AppState, room_id: str, event_ids: list[str]) -> None:
    """Queue deletion of command traffic so admin chatter does not linger in the room."""
    ttl_ms = int(getattr(state.settings, "command_reply_ttl_ms", 0) or 0)
    if ttl_ms <= 0:
        return
    max_attempts = getattr(state.settings, "task_default_max_attempts", None)

    for event_id in event_ids:
        try:
            schedule_message_deletion(
                state.task_store,
                chat_id=room_id,
                message_id=event_id,
                delay_ms=ttl_ms,
                max_attempts=max_attempts,
            )
        except StoreWriteError:
            logger.exception("Failed to schedule deletion of %s in %s", event_id, room_id)


async def run_matrix_bot(state: AppState, ready: asyncio.Event) -> None:
    """
    Matrix connector:

    login -> initial sync -> publish state.chat_api + set `ready` -> sync loop

    Slash commands are answered in the room; the command and the reply are
    then scheduled for deletion after `command_reply_ttl_ms`.

    To stop the connector, cancel the coroutine/task.
    """
    settings = state.settings

    startup_ts = _ms_now()
    allowed_rooms = _room_allowlist(getattr(settings, "matrix_rooms", []) or [])
    logger.info("Matrix allowed_rooms=%s", allowed_rooms if allowed_rooms is not None else "ALL")

    client = await create_matrix_client(settings)
    if client is None:
        logger.error("Matrix client creation failed; connector will stop.")
        return

    chat_api = MatrixChatApi(client)

    async def message_callback(room: MatrixRoom, event: RoomMessageText) -> None:
        # Ignore history replayed by the initial sync.
        ts = getattr(event, "server_timestamp", None)
        if ts is not None and ts <= startup_ts:
            return

        if event.sender == client.user_id:
            return

        if allowed_rooms is not None and room.room_id not in allowed_rooms:
            return

        body = (event.body or "").strip()
        if not body.startswith("/"):
            return

        logger.info("Matrix <%s> %s: %r", room.display_name, event.sender, body)

        try:
            resp = command_registry.handle(state, body, user_id=event.sender, room_id=room.room_id)
        except Exception:
            logger.exception("Command handler crashed.")
            resp = "Internal error while handling a command."

        if not resp:
            return

        to_delete = [event.event_id]
        try:
            reply_id = await chat_api.send_text(chat_id=room.room_id, text=resp)
            if reply_id:
                to_delete.append(reply_id)
        except ChatApiError as e:
            logger.warning("Failed to send command reply in %s: %s", room.room_id, e)

        _schedule_auto_delete(state, room.room_id, to_delete)

    client.add_event_callback(message_callback, RoomMessageText)

    try:
        logger.info("Matrix initial sync...")
        await client.sync(timeout=30000, full_state=True)
        logger.info("Matrix initial sync done. Joined rooms: %d", len(client.rooms))

        state.chat_api = chat_api
        ready.set()

        while True:
            await client.sync(timeout=30000, full_state=False)

    except asyncio.CancelledError:
        logger.info("Matrix connector cancelled.")
        raise
    except Exception:
        logger.exception("Matrix connector crashed.")
    finally:
        state.chat_api = None
        with contextlib.suppress(Exception):
            await client.close()
        logger.info("Matrix connector stopped.")
