# src/cronledger/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app (normal "settings layer").
- No secrets required at import time.
- Every knob has a sane default so a bare checkout can run locally.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "CRONLEDGER"

DEFAULT_TIMEZONE = "Asia/Jakarta"
DEFAULT_TASK_TIMEOUT_MS = 5 * 60 * 1000
DEFAULT_SLOW_QUERY_THRESHOLD_MS = 1000


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


# Variables already set in the environment take precedence over .env.
load_dotenv(override=False)


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
    db_path: Path

    # ---- Scheduling ----
    default_timezone: str
    task_timeout_ms: int
    scheduler_enabled: bool
    scheduler_interval_seconds: float

    # ---- Diagnostics ----
    slow_query_threshold_ms: int

    # ---- Notifications ----
    failure_recipient_role: str
    matrix_enabled: bool
    matrix_homeserver: str
    matrix_user_id: str
    matrix_password: str
    matrix_room: str
    matrix_store_path: Path

    # ---- Operator console ----
    console_enabled: bool

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "cronledger").strip() or "cronledger"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/cronledger"))
        db_path = _env_path(_k("DB_PATH"), data_dir / "cronledger.sqlite3")

        default_timezone = _env(_k("DEFAULT_TIMEZONE"), DEFAULT_TIMEZONE).strip() or DEFAULT_TIMEZONE
        task_timeout_ms = max(1, _env_int(_k("TASK_TIMEOUT_MS"), DEFAULT_TASK_TIMEOUT_MS))
        scheduler_enabled = _env_bool(_k("SCHEDULER_ENABLED"), False)
        scheduler_interval_seconds = _env_float(_k("SCHEDULER_INTERVAL_SECONDS"), 30.0)

        slow_query_threshold_ms = _env_int(
            _k("SLOW_QUERY_THRESHOLD_MS"), DEFAULT_SLOW_QUERY_THRESHOLD_MS
        )

        failure_recipient_role = _env(_k("FAILURE_RECIPIENT_ROLE"), "director").strip() or "director"
        matrix_enabled = _env_bool(_k("MATRIX_ENABLED"), False)
        matrix_homeserver = _env(_k("MATRIX_HOMESERVER"), "").strip()
        matrix_user_id = _env(_k("MATRIX_USER_ID"), "").strip()
        matrix_password = _env(_k("MATRIX_PASSWORD"), "").strip()
        matrix_room = _env(_k("MATRIX_ROOM"), "").strip()
        matrix_store_path = _env_path(_k("MATRIX_STORE_PATH"), data_dir / "matrix_store")

        console_enabled = _env_bool(_k("CONSOLE_ENABLED"), True)

        return Settings(
            app_name=app_name,
            log_level=log_level,
            data_dir=data_dir,
            db_path=db_path,
            default_timezone=default_timezone,
            task_timeout_ms=task_timeout_ms,
            scheduler_enabled=scheduler_enabled,
            scheduler_interval_seconds=scheduler_interval_seconds,
            slow_query_threshold_ms=slow_query_threshold_ms,
            failure_recipient_role=failure_recipient_role,
            matrix_enabled=matrix_enabled,
            matrix_homeserver=matrix_homeserver,
            matrix_user_id=matrix_user_id,
            matrix_password=matrix_password,
            matrix_room=matrix_room,
            matrix_store_path=matrix_store_path,
            console_enabled=console_enabled,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
