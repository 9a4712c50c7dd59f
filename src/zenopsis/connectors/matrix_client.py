# src/zenopsis/connectors/matrix_client.py

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from nio import (
    AsyncClient,
    AsyncClientConfig,
    ErrorResponse,
    LoginResponse,
    RoomRedactError,
    RoomSendResponse,
)

from ..core.ports import ChatApiError, ChatErrorCode

logger = logging.getLogger(__name__)

_ERRCODE_MAP = {
    "M_NOT_FOUND": ChatErrorCode.NOT_FOUND,
    "M_FORBIDDEN": ChatErrorCode.FORBIDDEN,
    "M_LIMIT_EXCEEDED": ChatErrorCode.RATE_LIMITED,
}


def classify_matrix_error(resp: ErrorResponse) -> ChatErrorCode:
    """Map a Matrix errcode (M_NOT_FOUND, ...) to a ChatErrorCode."""
    return _ERRCODE_MAP.get(str(getattr(resp, "status_code", "") or ""), ChatErrorCode.UNKNOWN)


def _session_path(store_dir: Path) -> Path:
    return store_dir / "session.json"


def _safe_mkdir(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.warning("Failed to create directory %s: %r", path, e)


def _load_json(path: Path) -> dict[str, Any]:
    val = json.loads(path.read_text("utf-8"))
    if isinstance(val, dict):
        return val
    raise ValueError("Expected JSON object")


def _atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, ensure_ascii=False), "utf-8")
    os.replace(tmp, path)
    try:
        os.chmod(path, 0o600)
    except OSError:
        # Not critical on Windows or restricted FS.
        logger.debug("chmod 600 failed for %s", path, exc_info=True)


async def create_matrix_client(settings) -> AsyncClient | None:
    """
    Create a logged-in Matrix AsyncClient.

    The access token and device id are persisted to session.json so restarts
    reuse the same device instead of logging in again. The file holds a
    credential and lives under the gitignored data dir.
    """
    homeserver = (getattr(settings, "matrix_homeserver", "") or "").strip()
    user_id = (getattr(settings, "matrix_user_id", "") or "").strip()
    password = (getattr(settings, "matrix_password", "") or "").strip()
    store_dir = Path(getattr(settings, "matrix_store_path", Path(".local/zenopsis/matrix_store")))

    if not homeserver or not user_id:
        logger.error(
            "Matrix is not configured: set ZENOPSIS_MATRIX_HOMESERVER and ZENOPSIS_MATRIX_USER_ID"
        )
        return None

    _safe_mkdir(store_dir)
    session_file = _session_path(store_dir)

    client = AsyncClient(
        homeserver,
        user_id,
        config=AsyncClientConfig(encryption_enabled=False, store_sync_tokens=False),
    )

    # ---- Session restore ----
    if session_file.exists():
        try:
            data = _load_json(session_file)

            access_token = data.get("access_token")
            sess_user_id = data.get("user_id")
            device_id = data.get("device_id")

            if not access_token or not sess_user_id or not device_id:
                raise ValueError("session.json is missing required fields")

            client.access_token = str(access_token)
            client.user_id = str(sess_user_id)
            client.device_id = str(device_id)
            logger.info("Matrix session restored for %s", client.user_id)
            return client
        except (OSError, ValueError) as e:
            logger.warning("Failed to restore Matrix session.json, will try password login: %r", e)

    # ---- Password login bootstrap ----
    if not password:
        logger.error(
            "Matrix session.json not found and password is not set. "
            "Set ZENOPSIS_MATRIX_PASSWORD once to bootstrap a session."
        )
        await client.close()
        return None

    device_name = f"{getattr(settings, 'app_name', 'zenopsis')} (Python)"
    logger.info("Logging in to Matrix to bootstrap a new session (device_name=%r)...", device_name)

    resp = await client.login(password=password, device_name=device_name)

    if not isinstance(resp, LoginResponse):
        logger.error("Matrix login failed: %r", resp)
        await client.close()
        return None

    try:
        _atomic_write_json(
            session_file,
            {
                "access_token": resp.access_token,
                "user_id": resp.user_id,
                "device_id": resp.device_id,
            },
        )
        logger.info("Matrix session saved to %s (user=%s)", session_file, resp.user_id)
    except OSError as e:
        # The session still works for this run; we will log in again next time.
        logger.error("Failed to write Matrix session.json (%s): %r", session_file, e)

    return client


class MatrixChatApi:
    """
    ChatApi on top of a nio AsyncClient.

    chat_id is a room id, message_id an event id. Deletion is a redaction.
    Error responses are turned into ChatApiError with a typed code.
    """

    def __init__(self, client: AsyncClient) -> None:
        self._client = client

    async def send_text(self, *, chat_id: str, text: str) -> str | None:
        resp = await self._client.room_send(
            room_id=chat_id,
            message_type="m.room.message",
            content={"msgtype": "m.text", "body": text},
            ignore_unverified_devices=True,
        )
        if isinstance(resp, RoomSendResponse):
            return resp.event_id
        if isinstance(resp, ErrorResponse):
            raise ChatApiError(classify_matrix_error(resp), str(resp.message or ""))
        return None

    async def delete_message(
        self,
        *,
        chat_id: str,
        message_id: str,
        reason: str | None = None,
    ) -> None:
        resp = await self._client.room_redact(chat_id, message_id, reason=reason)
        if isinstance(resp, RoomRedactError):
            raise ChatApiError(classify_matrix_error(resp), str(resp.message or ""))
