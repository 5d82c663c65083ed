# src/cronledger/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The action layer depends on Protocols instead of concrete implementations.
This keeps storage and notification channels swappable and makes testing easier.
"""

from collections.abc import Iterable
from datetime import datetime
from typing import Any, Awaitable, Protocol


class NotificationSink(Protocol):
    """
    Operator-notification channel.

    `payload` is the structured notification:
    {"template_code": ..., "recipient_role": ..., "data": {...}}
    """

    def send(self, payload: dict[str, Any]) -> Awaitable[None]: ...


class OutboundMessenger(Protocol):
    """Transport-side port: how notifiers push plain text to a chat room."""

    def send_text(self, *, text: str, room_id: str | None = None) -> Awaitable[None]: ...


class TaskRepo(Protocol):
    # Registry
    def count_tasks(self) -> int: ...
    def get_task(self, task_id: int) -> Any | None: ...
    def get_task_by_code(self, task_code: str) -> Any | None: ...
    def list_tasks(self, *, active_only: bool = False) -> list[Any]: ...
    def list_due_tasks(self, *, now: datetime, limit: int = 32) -> list[Any]: ...
    def try_claim_due_task(
            self,
            task_id: int,
            *,
            expected_next_run_at: datetime | None,
            next_run_at: datetime | None,
    ) -> bool: ...
    def update_task_fields(
            self,
            task_id: int,
            *,
            is_active: bool | None = None,
            next_run_at: Any = ...,
            last_run_at: Any = ...,
            last_run_status: Any = ...,
            last_run_duration_ms: Any = ...,
    ) -> bool: ...

    # Execution history
    def add_execution(
            self,
            task_id: int,
            *,
            triggered_by: Any,
            started_at: datetime | None = None,
            mark_task_running: bool = False,
    ) -> Any: ...
    def get_execution(self, execution_id: int) -> Any | None: ...
    def list_executions(
            self,
            task_id: int,
            *,
            statuses: Iterable[Any] | None = None,
            triggered_by: Any | None = None,
            limit: int | None = None,
    ) -> list[Any]: ...
    def latest_execution(self, task_id: int, *, statuses: Iterable[Any]) -> Any | None: ...
    def update_execution(
            self,
            execution_id: int,
            *,
            expected_status: Any | None = None,
            status: Any | None = None,
            completed_at: datetime | None = None,
            execution_time_ms: int | None = None,
            records_processed: int | None = None,
            result_summary: dict[str, Any] | None = None,
            error_message: str | None = None,
    ) -> bool: ...
