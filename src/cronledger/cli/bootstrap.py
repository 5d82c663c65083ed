# src/cronledger/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires concrete implementations into AppState (task store, notification channels),
- applies process-wide knobs (slow-query threshold).
"""

from __future__ import annotations

import logging

from ..config import get_settings
from ..core.ports import NotificationSink
from ..core.state import AppState
from ..monitoring.performance import set_slow_query_threshold
from ..notifications.notification_store import NotificationStore
from ..notifications.notifier import FanoutNotifier, MessengerNotifier, StoreNotifier
from ..tasks.task_store import TaskStore

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)
    if settings.matrix_enabled:
        settings.matrix_store_path.mkdir(parents=True, exist_ok=True)


def build_notifier(settings, store: NotificationStore) -> NotificationSink:
    """
    Operator notifications always land in the local inbox (/notifications).
    With Matrix enabled they are also pushed to the configured room.
    """
    inbox = StoreNotifier(store)
    if not settings.matrix_enabled:
        return inbox

    from ..notifications.matrix_messenger import MatrixMessenger

    logger.info("Matrix notifications enabled (room=%s)", settings.matrix_room or "-")
    return FanoutNotifier([inbox, MessengerNotifier(MatrixMessenger(settings))])


def create_initial_state(*, settings=None) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings injectable makes the app easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)
    set_slow_query_threshold(settings.slow_query_threshold_ms)

    notification_store = NotificationStore(settings.db_path)
    state = AppState(
        settings=settings,
        task_store=TaskStore(settings.db_path),
        notifier=build_notifier(settings, notification_store),
        notification_store=notification_store,
    )
    logger.info("State ready (db=%s, tasks=%d)", settings.db_path, state.task_store.count_tasks())
    return state
