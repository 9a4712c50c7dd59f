# src/zenopsis/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app (normal "settings layer").
- No secrets required at import time.
- Malformed values fall back to defaults instead of crashing the bot at startup.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "ZENOPSIS"

load_dotenv(override=False)


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return list(default)
    return [p.strip() for p in raw.replace(",", " ").split() if p.strip()]


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    tasks_db_path: Path

    # ---- Task queue ----
    task_worker_interval_ms: int
    task_batch_limit: int
    task_default_max_attempts: int
    task_retention_ms: int
    task_shutdown_timeout_s: float
    task_stale_running_ms: int

    # ---- Chat behaviour ----
    command_reply_ttl_ms: int
    admin_user_ids: list[str]

    # ---- Matrix ----
    matrix_enabled: bool
    matrix_homeserver: str
    matrix_user_id: str
    matrix_password: str
    matrix_rooms: list[str]
    matrix_store_path: Path
    matrix_ready_timeout_s: float

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "zenopsis").strip() or "zenopsis"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/zenopsis"))
        tasks_db_path = _env_path(_k("TASKS_DB_PATH"), data_dir / "tasks.sqlite3")

        task_worker_interval_ms = max(100, _env_int(_k("TASK_WORKER_INTERVAL_MS"), 5000))
        task_batch_limit = max(1, _env_int(_k("TASK_BATCH_LIMIT"), 10))
        task_default_max_attempts = max(1, _env_int(_k("TASK_MAX_ATTEMPTS"), 3))
        task_retention_ms = max(0, _env_int(_k("TASK_RETENTION_MS"), 24 * 60 * 60 * 1000))
        task_shutdown_timeout_s = max(0.0, _env_float(_k("TASK_SHUTDOWN_TIMEOUT_S"), 10.0))
        task_stale_running_ms = max(0, _env_int(_k("TASK_STALE_RUNNING_MS"), 15 * 60 * 1000))

        command_reply_ttl_ms = max(0, _env_int(_k("COMMAND_REPLY_TTL_MS"), 15_000))
        admin_user_ids = _env_list(_k("ADMIN_USER_IDS"), [])

        matrix_enabled = _env_bool(_k("MATRIX_ENABLED"), False)
        matrix_homeserver = _env(_k("MATRIX_HOMESERVER"), "").strip()
        matrix_user_id = _env(_k("MATRIX_USER_ID"), "").strip()
        matrix_password = _env(_k("MATRIX_PASSWORD"), "").strip()
        matrix_rooms = _env_list(_k("MATRIX_ROOMS"), [])
        matrix_store_path = _env_path(_k("MATRIX_STORE_PATH"), data_dir / "matrix_store")
        matrix_ready_timeout_s = max(0.0, _env_float(_k("MATRIX_READY_TIMEOUT_S"), 60.0))

        return Settings(
            app_name=app_name,
            log_level=log_level,
            data_dir=data_dir,
            tasks_db_path=tasks_db_path,
            task_worker_interval_ms=task_worker_interval_ms,
            task_batch_limit=task_batch_limit,
            task_default_max_attempts=task_default_max_attempts,
            task_retention_ms=task_retention_ms,
            task_shutdown_timeout_s=task_shutdown_timeout_s,
            task_stale_running_ms=task_stale_running_ms,
            command_reply_ttl_ms=command_reply_ttl_ms,
            admin_user_ids=admin_user_ids,
            matrix_enabled=matrix_enabled,
            matrix_homeserver=matrix_homeserver,
            matrix_user_id=matrix_user_id,
            matrix_password=matrix_password,
            matrix_rooms=matrix_rooms,
            matrix_store_path=matrix_store_path,
            matrix_ready_timeout_s=matrix_ready_timeout_s,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
