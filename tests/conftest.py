# tests/conftest.py

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from types import SimpleNamespace

import pytest

from cronledger.core.state import AppState
from cronledger.monitoring.performance import (
    SLOW_QUERY_THRESHOLD_MS,
    clear_slow_query_log,
    set_slow_query_threshold,
)
from cronledger.notifications.notification_store import NotificationStore
from cronledger.tasks.task_store import TaskStore

from .fakes import FakeNotifier


@pytest.fixture(autouse=True)
def _reset_slow_query_log() -> Iterator[None]:
    """The slow-query log is process-wide; keep tests independent of each other."""
    clear_slow_query_log()
    set_slow_query_threshold(SLOW_QUERY_THRESHOLD_MS)
    yield
    clear_slow_query_log()
    set_slow_query_threshold(SLOW_QUERY_THRESHOLD_MS)


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with AppState and the action layer.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="cronledger-test",
        data_dir=tmp_path,
        db_path=tmp_path / "cronledger.sqlite3",
        default_timezone="Asia/Jakarta",
        task_timeout_ms=5 * 60 * 1000,
        failure_recipient_role="director",
        slow_query_threshold_ms=SLOW_QUERY_THRESHOLD_MS,
        scheduler_enabled=False,
        scheduler_interval_seconds=30.0,
        matrix_enabled=False,
        matrix_room="",
        matrix_store_path=tmp_path / "matrix_store",
    )


@pytest.fixture()
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture()
def state(settings: SimpleNamespace, notifier: FakeNotifier) -> AppState:
    """
    AppState wired with a recording notifier.

    NOTE: We keep real SQLite stores here because their correctness
    (transactions, ordering, optimistic updates) is part of what we test.
    """
    return AppState(
        settings=settings,
        task_store=TaskStore(settings.db_path),
        notifier=notifier,
        notification_store=NotificationStore(settings.db_path),
    )
