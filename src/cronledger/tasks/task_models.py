# src/cronledger/tasks/task_models.py

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

DEFAULT_TIMEZONE = "Asia/Jakarta"
TASK_TIMEOUT_MS = 5 * 60 * 1000
TIMEOUT_ERROR_MESSAGE = "Task execution timeout"
FAILURE_TEMPLATE_CODE = "TASK_EXECUTION_FAILED"


class ExecutionStatus(StrEnum):
    """
    Execution lifecycle status.

    "running" is the only non-terminal state; an execution leaves it exactly once.
    """

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.RUNNING

    @classmethod
    def from_db(cls, raw: str | None) -> ExecutionStatus:
        if not raw:
            return cls.RUNNING
        try:
            return cls(raw)
        except ValueError:
            return cls.FAILED


class TriggerType(StrEnum):
    SCHEDULE = "schedule"
    MANUAL = "manual"
    RETRY = "retry"

    @classmethod
    def from_db(cls, raw: str | None) -> TriggerType:
        if not raw:
            return cls.SCHEDULE
        try:
            return cls(raw)
        except ValueError:
            return cls.SCHEDULE


VALID_STATUS_TRANSITIONS: dict[ExecutionStatus, tuple[ExecutionStatus, ...]] = {
    ExecutionStatus.RUNNING: (
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.TIMEOUT,
    ),
    ExecutionStatus.COMPLETED: (),
    ExecutionStatus.FAILED: (),
    ExecutionStatus.TIMEOUT: (),
}

RETRYABLE_STATUSES = (ExecutionStatus.FAILED, ExecutionStatus.TIMEOUT)


@dataclass(slots=True)
class ScheduledTask:
    id: int
    task_code: str
    task_name: str
    cron_expression: str
    timezone: str
    is_active: bool
    created_at: datetime

    description: str | None = None
    # Binding owned by the external workflow engine; we only store it.
    workflow_id: str | None = None
    webhook_url: str | None = None
    task_parameters: dict[str, Any] = field(default_factory=dict)

    last_run_at: datetime | None = None
    last_run_status: ExecutionStatus | None = None
    last_run_duration_ms: int | None = None
    next_run_at: datetime | None = None


@dataclass(slots=True)
class TaskExecution:
    id: int
    task_id: int
    started_at: datetime
    status: ExecutionStatus
    triggered_by: TriggerType
    created_at: datetime

    completed_at: datetime | None = None
    records_processed: int | None = None
    result_summary: dict[str, Any] | None = None
    error_message: str | None = None
    execution_time_ms: int | None = None


@dataclass(slots=True)
class ExecutionFilters:
    status: ExecutionStatus | None = None
    triggered_by: TriggerType | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    limit: int | None = None
    offset: int = 0
