# src/cronledger/core/state.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..notifications.notification_store import NotificationStore
from .ports import NotificationSink, TaskRepo


@dataclass
class AppState:
    """Everything an action needs: settings plus the wired stores and channels."""

    settings: Any
    task_store: TaskRepo
    notifier: NotificationSink
    notification_store: NotificationStore | None = None

    @property
    def task_timeout_ms(self) -> int:
        return int(getattr(self.settings, "task_timeout_ms", 5 * 60 * 1000))

    @property
    def failure_recipient_role(self) -> str:
        return str(getattr(self.settings, "failure_recipient_role", "director"))
