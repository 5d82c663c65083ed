# src/cronledger/tasks/task_utils.py

"""
Pure helpers for scheduled tasks: cron evaluation, status state machine,
execution timing and in-memory filtering.

Nothing here touches storage; the action layer composes these with TaskStore.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import CroniterError, croniter

from .task_models import (
    DEFAULT_TIMEZONE,
    VALID_STATUS_TRANSITIONS,
    ExecutionFilters,
    ExecutionStatus,
    ScheduledTask,
    TaskExecution,
    TriggerType,
)

logger = logging.getLogger(__name__)

_CRON_FIELDS = ("minute", "hour", "day_of_month", "month", "day_of_week")
_WEEKDAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]

# Tolerance used when checking a stored execution_time_ms against its timestamps.
_DURATION_TOLERANCE_MS = 1000


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def to_utc(value: datetime | str) -> datetime:
    """Normalize an ISO string or datetime (naive = UTC) into an aware UTC datetime."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ---- cron ----


def parse_cron_expression(expression: str) -> dict[str, str] | None:
    """
    Split a 5-field (or 6-field, trailing seconds) cron expression.

    Returns None if the field count is wrong; values are not validated here.
    """
    if not expression or not isinstance(expression, str):
        return None
    parts = expression.split()
    if len(parts) not in (5, 6):
        return None
    out = dict(zip(_CRON_FIELDS, parts))
    if len(parts) == 6:
        out["second"] = parts[5]
    return out


def is_valid_cron_expression(expression: str) -> bool:
    if parse_cron_expression(expression) is None:
        return False
    return bool(croniter.is_valid(expression))


def _resolve_zone(timezone: str) -> ZoneInfo | None:
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        # OSError: a key naming a tzdata directory, e.g. "America".
        return None


def is_valid_timezone(timezone: str) -> bool:
    return bool(timezone) and _resolve_zone(timezone) is not None


def get_next_run_time(
    cron_expression: str,
    timezone: str = DEFAULT_TIMEZONE,
    from_time: datetime | None = None,
) -> datetime | None:
    """
    Next firing of `cron_expression` strictly after `from_time` (default: now).

    The expression is evaluated in the wall clock of `timezone`; the result is UTC.
    Day-of-month and day-of-week are OR-ed when both are restricted (standard cron).
    Returns None for invalid expressions, unknown timezones and expressions that
    never fire (e.g. "0 0 30 2 *").
    """
    if not is_valid_cron_expression(cron_expression):
        return None

    zone = _resolve_zone(timezone)
    if zone is None:
        logger.warning("Unknown timezone %r for cron %r", timezone, cron_expression)
        return None

    base = to_utc(from_time or utc_now()).astimezone(zone)
    try:
        nxt = croniter(cron_expression, base, day_or=True).get_next(datetime)
    except CroniterError:
        logger.debug("Cron %r never fires after %s", cron_expression, base.isoformat())
        return None

    nxt_utc = to_utc(nxt)
    if nxt_utc <= to_utc(base):
        return None
    return nxt_utc


def describe_cron_expression(expression: str) -> str:
    """Human-readable description for the common daily/weekly/monthly/hourly patterns."""
    parts = parse_cron_expression(expression)
    if parts is None:
        return "Invalid cron expression"

    minute = parts["minute"]
    hour = parts["hour"]
    dom = parts["day_of_month"]
    month = parts["month"]
    dow = parts["day_of_week"]

    if minute == "0" and hour != "*" and dom == "*" and month == "*" and dow == "*":
        return f"Daily at {hour}:00"

    if minute == "0" and hour == "0" and dom == "*" and month == "*" and dow != "*":
        if dow.isdigit() and 0 <= int(dow) <= 6:
            return f"Weekly on {_WEEKDAY_NAMES[int(dow)]} at midnight"

    if minute == "0" and hour != "*" and dom == "1" and month == "*" and dow == "*":
        return f"Monthly on the 1st at {hour}:00"

    if minute == "0" and hour == "*" and dom == "*" and month == "*" and dow == "*":
        return "Every hour"

    return expression


# ---- status state machine ----


def is_valid_status_transition(current: ExecutionStatus | str, new: ExecutionStatus | str) -> bool:
    """Only running -> completed | failed | timeout is legal."""
    try:
        cur = ExecutionStatus(current)
        nxt = ExecutionStatus(new)
    except ValueError:
        return False
    return nxt in VALID_STATUS_TRANSITIONS[cur]


def is_valid_execution_status(status: str) -> bool:
    return status in {s.value for s in ExecutionStatus}


def is_valid_trigger_type(trigger_type: str) -> bool:
    return trigger_type in {t.value for t in TriggerType}


# ---- timing ----


def calculate_execution_time_ms(started_at: datetime | str, completed_at: datetime | str) -> int:
    """
    Whole milliseconds between two timestamps.

    Raises ValueError when completed_at precedes started_at.
    """
    start = to_utc(started_at)
    end = to_utc(completed_at)
    if end < start:
        raise ValueError(
            f"completed_at ({end.isoformat()}) is earlier than started_at ({start.isoformat()})"
        )
    return (end - start) // timedelta(milliseconds=1)


def format_execution_time(ms: int | None) -> str:
    if ms is None:
        return "-"
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60000:
        return f"{ms / 1000:.1f}s"
    return f"{ms / 60000:.1f}m"


# ---- execution records ----


def create_execution_record(
    task_id: int,
    triggered_by: TriggerType,
    *,
    now: datetime | None = None,
) -> TaskExecution:
    """Unsaved execution in its initial state (id=0 until persisted)."""
    started = to_utc(now or utc_now())
    return TaskExecution(
        id=0,
        task_id=task_id,
        started_at=started,
        status=ExecutionStatus.RUNNING,
        triggered_by=TriggerType(triggered_by),
        created_at=started,
    )


def complete_execution_record(
    execution: TaskExecution,
    *,
    status: ExecutionStatus,
    completed_at: datetime | None = None,
    records_processed: int | None = None,
    result_summary: dict | None = None,
    error_message: str | None = None,
) -> TaskExecution:
    completed = to_utc(completed_at or utc_now())
    return replace(
        execution,
        status=status,
        completed_at=completed,
        execution_time_ms=calculate_execution_time_ms(execution.started_at, completed),
        records_processed=(
            execution.records_processed if records_processed is None else records_processed
        ),
        result_summary=execution.result_summary if result_summary is None else result_summary,
        error_message=execution.error_message if error_message is None else error_message,
    )


def is_execution_record_complete(execution: TaskExecution) -> bool:
    """
    A finished execution must carry completed_at and a duration that matches its
    timestamps (within a second); a running one only needs its identity fields.
    """
    if not execution.task_id or not execution.started_at or not execution.triggered_by:
        return False

    if execution.status is ExecutionStatus.RUNNING:
        return True

    if execution.completed_at is None or execution.execution_time_ms is None:
        return False

    try:
        calculated = calculate_execution_time_ms(execution.started_at, execution.completed_at)
    except ValueError:
        return False
    return abs(calculated - execution.execution_time_ms) <= _DURATION_TOLERANCE_MS


def filter_executions(
    executions: list[TaskExecution],
    filters: ExecutionFilters,
) -> list[TaskExecution]:
    """Filter, sort newest-first by started_at, then paginate."""
    result = list(executions)

    if filters.status is not None:
        result = [e for e in result if e.status == filters.status]
    if filters.triggered_by is not None:
        result = [e for e in result if e.triggered_by == filters.triggered_by]
    if filters.start_date is not None:
        start = to_utc(filters.start_date)
        result = [e for e in result if e.started_at >= start]
    if filters.end_date is not None:
        end = to_utc(filters.end_date)
        result = [e for e in result if e.started_at <= end]

    result.sort(key=lambda e: e.started_at, reverse=True)

    offset = max(0, filters.offset)
    if filters.limit is None:
        return result[offset:]
    return result[offset : offset + filters.limit]


# ---- registry helpers ----


def filter_scheduled_tasks(tasks: list[ScheduledTask], active_only: bool = False) -> list[ScheduledTask]:
    if active_only:
        return [t for t in tasks if t.is_active]
    return list(tasks)


def find_task_by_code(tasks: list[ScheduledTask], task_code: str) -> ScheduledTask | None:
    for t in tasks:
        if t.task_code == task_code:
            return t
    return None


def are_task_codes_unique(tasks: list[ScheduledTask]) -> bool:
    codes = [t.task_code for t in tasks]
    return len(codes) == len(set(codes))


def calculate_task_next_run(task: ScheduledTask, *, now: datetime | None = None) -> ScheduledTask:
    return replace(task, next_run_at=get_next_run_time(task.cron_expression, task.timezone, now))
