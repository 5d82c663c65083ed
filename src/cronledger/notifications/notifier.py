# src/cronledger/notifications/notifier.py

"""
Operator notification sinks.

A notifier receives the structured payload built by the failure handler:

    {"template_code": "TASK_EXECUTION_FAILED",
     "recipient_role": "director",
     "data": {"task_code", "task_name", "error_message", "timestamp", "execution_id"}}

and delivers it somewhere an operator will see it.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from ..core.ports import NotificationSink, OutboundMessenger
from .notification_store import NotificationStore

logger = logging.getLogger(__name__)


def render_notification(payload: dict[str, Any]) -> tuple[str, str]:
    """Turn a payload into (title, message) for human-facing channels."""
    data = payload.get("data") or {}
    template = payload.get("template_code", "")

    if template == "TASK_EXECUTION_FAILED":
        name = data.get("task_name") or data.get("task_code") or "unknown task"
        title = f"Scheduled task failed: {name}"
        lines = [
            f"Task {data.get('task_code', '?')} ({name}) failed at {data.get('timestamp', '?')}.",
            f"Error: {data.get('error_message') or '-'}",
        ]
        if data.get("execution_id") is not None:
            lines.append(f"Execution id: {data['execution_id']}")
        return title, "\n".join(lines)

    return str(template or "Notification"), str(data)


class StoreNotifier:
    """Deliver into the in-app notification center."""

    def __init__(self, store: NotificationStore) -> None:
        self._store = store

    async def send(self, payload: dict[str, Any]) -> None:
        title, message = render_notification(payload)
        self._store.add_notification(
            template_code=str(payload.get("template_code", "")),
            recipient_role=str(payload.get("recipient_role", "")),
            title=title,
            message=message,
            data=dict(payload.get("data") or {}),
        )


class MessengerNotifier:
    """Deliver as a plain-text chat message through an OutboundMessenger (e.g. Matrix)."""

    def __init__(self, messenger: OutboundMessenger, *, room_id: str | None = None) -> None:
        self._messenger = messenger
        self._room_id = room_id

    async def send(self, payload: dict[str, Any]) -> None:
        title, message = render_notification(payload)
        role = payload.get("recipient_role")
        prefix = f"[{role}] " if role else ""
        await self._messenger.send_text(text=f"{prefix}{title}\n{message}", room_id=self._room_id)


class FanoutNotifier:
    """
    Deliver to every sink in order.

    A failing sink is logged and skipped; the others still receive the payload.
    """

    def __init__(self, sinks: Sequence[NotificationSink]) -> None:
        self._sinks = list(sinks)

    async def send(self, payload: dict[str, Any]) -> None:
        for sink in self._sinks:
            try:
                await sink.send(payload)
            except Exception:
                logger.exception("Notification sink %s failed", type(sink).__name__)
