# src/cronledger/tasks/task_actions.py

from __future__ import annotations

"""
Task actions: the operations operators, runners and the external workflow
engine call.

Every public function returns a result value instead of raising; typed
errors from the store and validators are converted at this boundary
(`error` for humans, `error_kind` for code).

Schedule preservation: only enable_task() and update_scheduled_next_run()
write next_run_at. Manual and retry runs go through _start_out_of_schedule_run(),
which never touches it.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, TypeVar

from ..core.state import AppState
from .errors import (
    CronledgerError,
    ExecutionNotFoundError,
    InvalidTransitionError,
    TaskInactiveError,
    TaskNotFoundError,
)
from .task_models import (
    FAILURE_TEMPLATE_CODE,
    RETRYABLE_STATUSES,
    TIMEOUT_ERROR_MESSAGE,
    ExecutionStatus,
    ScheduledTask,
    TaskExecution,
    TriggerType,
)
from .task_utils import (
    calculate_execution_time_ms,
    get_next_run_time,
    is_valid_cron_expression,
    is_valid_status_transition,
    is_valid_timezone,
    to_utc,
    utc_now,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---- result types ----


@dataclass(slots=True, frozen=True)
class ActionResult:
    success: bool
    data: Any = None
    error: str | None = None
    error_kind: str | None = None


@dataclass(slots=True, frozen=True)
class TriggerValidation:
    valid: bool
    task: ScheduledTask | None
    error: str | None = None
    error_kind: str | None = None


@dataclass(slots=True, frozen=True)
class TriggerResult:
    execution_id: int | None
    error: str | None = None
    error_kind: str | None = None


@dataclass(slots=True, frozen=True)
class RetryCheck:
    can_retry: bool
    reason: str | None = None


@dataclass(slots=True, frozen=True)
class TimeoutResult(Generic[T]):
    result: T | None
    timed_out: bool
    error: str | None = None


@dataclass(slots=True, frozen=True)
class IsolatedOutcome(Generic[T]):
    success: bool
    result: T | None = None
    error: str | None = None


@dataclass(slots=True)
class BatchResult:
    results: dict[str, IsolatedOutcome[Any]] = field(default_factory=dict)
    total_success: int = 0
    total_failed: int = 0


def _ok(data: Any = None) -> ActionResult:
    return ActionResult(success=True, data=data)


def _fail(exc: Exception) -> ActionResult:
    kind = exc.kind if isinstance(exc, CronledgerError) else "invalid_input"
    return ActionResult(success=False, error=str(exc), error_kind=kind)


def _error_message(exc: BaseException | str) -> str:
    if isinstance(exc, str):
        return exc
    return str(exc) or type(exc).__name__


def _require_task(state: AppState, task_id: int) -> ScheduledTask:
    task = state.task_store.get_task(task_id)
    if task is None:
        raise TaskNotFoundError(f"Task not found: {task_id}")
    return task


# ---- task registry ----


def register_task(
    state: AppState,
    *,
    task_code: str,
    task_name: str,
    cron_expression: str,
    timezone: str | None = None,
    description: str | None = None,
    workflow_id: str | None = None,
    webhook_url: str | None = None,
    task_parameters: dict[str, Any] | None = None,
    is_active: bool = True,
    now: datetime | None = None,
) -> ActionResult:
    """Admin seeding: add a task to the registry with next_run_at precomputed."""
    tz = timezone or getattr(state.settings, "default_timezone", None) or "Asia/Jakarta"
    if not is_valid_cron_expression(cron_expression):
        return ActionResult(
            success=False,
            error=f"Invalid cron expression: {cron_expression!r}",
            error_kind="invalid_input",
        )
    if not is_valid_timezone(tz):
        return ActionResult(success=False, error=f"Unknown timezone: {tz!r}", error_kind="invalid_input")
    try:
        if state.task_store.get_task_by_code(task_code) is not None:
            return ActionResult(
                success=False, error=f"Task code already exists: {task_code}", error_kind="invalid_input"
            )
        task_id = state.task_store.add_task(
            task_code=task_code,
            task_name=task_name,
            cron_expression=cron_expression,
            timezone=tz,
            description=description,
            workflow_id=workflow_id,
            webhook_url=webhook_url,
            task_parameters=task_parameters,
            is_active=is_active,
            next_run_at=get_next_run_time(cron_expression, tz, now) if is_active else None,
        )
        task = _require_task(state, task_id)
    except (CronledgerError, ValueError) as e:
        return _fail(e)

    logger.info("Task registered code=%s id=%s next_run_at=%s", task.task_code, task.id, task.next_run_at)
    return _ok(task)


def get_scheduled_tasks(state: AppState, active_only: bool = False) -> ActionResult:
    try:
        return _ok(state.task_store.list_tasks(active_only=active_only))
    except CronledgerError as e:
        return _fail(e)


def get_scheduled_task_by_code(state: AppState, task_code: str) -> ActionResult:
    try:
        task = state.task_store.get_task_by_code(task_code)
    except CronledgerError as e:
        return _fail(e)
    if task is None:
        return _fail(TaskNotFoundError(f"Task not found: {task_code}"))
    return _ok(task)


def enable_task(state: AppState, task_id: int, *, now: datetime | None = None) -> ActionResult:
    """Activate the task and recompute next_run_at from its cron expression."""
    try:
        task = _require_task(state, task_id)
        if not is_valid_timezone(task.timezone):
            raise ValueError(f"Unknown timezone: {task.timezone!r}")
        next_run = get_next_run_time(task.cron_expression, task.timezone, now)
        if not state.task_store.update_task_fields(task_id, is_active=True, next_run_at=next_run):
            raise TaskNotFoundError(f"Task not found: {task_id}")
    except (CronledgerError, ValueError) as e:
        return _fail(e)

    logger.info("Task enabled code=%s next_run_at=%s", task.task_code, next_run)
    return _ok(next_run)


def disable_task(state: AppState, task_id: int) -> ActionResult:
    """
    Deactivate the task.

    next_run_at is kept as-is so the registry still shows the last computed
    slot; it is recomputed on the next enable.
    """
    try:
        if not state.task_store.update_task_fields(task_id, is_active=False):
            raise TaskNotFoundError(f"Task not found: {task_id}")
    except CronledgerError as e:
        return _fail(e)

    logger.info("Task disabled id=%s", task_id)
    return _ok()


def toggle_task_status(
    state: AppState, task_id: int, is_active: bool, *, now: datetime | None = None
) -> ActionResult:
    if is_active:
        return enable_task(state, task_id, now=now)
    return disable_task(state, task_id)


def get_task_next_run_at(state: AppState, task_id: int) -> ActionResult:
    try:
        return _ok(_require_task(state, task_id).next_run_at)
    except CronledgerError as e:
        return _fail(e)


def update_scheduled_next_run(state: AppState, task_id: int, *, now: datetime | None = None) -> ActionResult:
    """Advance next_run_at after a schedule-triggered run. Never called for manual/retry runs."""
    try:
        task = _require_task(state, task_id)
        next_run = get_next_run_time(task.cron_expression, task.timezone, now)
        state.task_store.update_task_fields(task_id, next_run_at=next_run)
    except CronledgerError as e:
        return _fail(e)

    logger.debug("next_run_at advanced code=%s -> %s", task.task_code, next_run)
    return _ok(next_run)


# ---- manual trigger / retry ----


def validate_manual_trigger(state: AppState, task_code: str) -> TriggerValidation:
    try:
        task = state.task_store.get_task_by_code(task_code)
    except CronledgerError as e:
        return TriggerValidation(valid=False, task=None, error=str(e), error_kind=e.kind)

    if task is None:
        err = TaskNotFoundError(f"Task not found: {task_code}")
        return TriggerValidation(valid=False, task=None, error=str(err), error_kind=err.kind)

    if not task.is_active:
        err = TaskInactiveError(f"Task is inactive: {task_code}")
        return TriggerValidation(valid=False, task=task, error=str(err), error_kind=err.kind)

    return TriggerValidation(valid=True, task=task)


def _start_out_of_schedule_run(
    state: AppState,
    task_code: str,
    triggered_by: TriggerType,
    now: datetime | None,
) -> TriggerResult:
    validation = validate_manual_trigger(state, task_code)
    if not validation.valid or validation.task is None:
        return TriggerResult(execution_id=None, error=validation.error, error_kind=validation.error_kind)

    task = validation.task
    try:
        execution = state.task_store.add_execution(
            task.id,
            triggered_by=triggered_by,
            started_at=now,
            mark_task_running=True,
        )
    except CronledgerError as e:
        return TriggerResult(execution_id=None, error=str(e), error_kind=e.kind)

    logger.info(
        "Task %s started out of schedule (triggered_by=%s execution_id=%s)",
        task.task_code,
        triggered_by.value,
        execution.id,
    )
    return TriggerResult(execution_id=execution.id)


def trigger_task_manually(state: AppState, task_code: str, *, now: datetime | None = None) -> TriggerResult:
    """Operator-forced run. Records a running execution; next_run_at is left untouched."""
    return _start_out_of_schedule_run(state, task_code, TriggerType.MANUAL, now)


def retry_failed_task(state: AppState, task_code: str, *, now: datetime | None = None) -> TriggerResult:
    """Same as a manual trigger, recorded with triggered_by=retry."""
    return _start_out_of_schedule_run(state, task_code, TriggerType.RETRY, now)


def get_last_failed_execution(state: AppState, task_id: int) -> ActionResult:
    try:
        return _ok(state.task_store.latest_execution(task_id, statuses=RETRYABLE_STATUSES))
    except CronledgerError as e:
        return _fail(e)


def can_retry_task(state: AppState, task_id: int) -> RetryCheck:
    """
    Retry is offered while the last known outcome is a failure: some
    failed/timeout execution exists and no completed execution started after it.
    """
    try:
        last_failed = state.task_store.latest_execution(task_id, statuses=RETRYABLE_STATUSES)
        if last_failed is None:
            return RetryCheck(can_retry=False, reason="No failed executions to retry")
        last_success = state.task_store.latest_execution(task_id, statuses=[ExecutionStatus.COMPLETED])
    except CronledgerError as e:
        return RetryCheck(can_retry=False, reason=str(e))

    if last_success is not None and last_success.started_at > last_failed.started_at:
        return RetryCheck(can_retry=False, reason="Task has succeeded since last failure")

    return RetryCheck(can_retry=True)


# ---- execution tracking ----


def create_task_execution(
    state: AppState,
    task_id: int,
    triggered_by: TriggerType,
    *,
    now: datetime | None = None,
) -> ActionResult:
    try:
        _require_task(state, task_id)
        execution = state.task_store.add_execution(task_id, triggered_by=triggered_by, started_at=now)
    except CronledgerError as e:
        return _fail(e)
    return _ok(execution)


def get_task_executions(
    state: AppState,
    task_id: int,
    *,
    status: ExecutionStatus | None = None,
    triggered_by: TriggerType | None = None,
    limit: int | None = None,
) -> ActionResult:
    try:
        executions = state.task_store.list_executions(
            task_id,
            statuses=[status] if status is not None else None,
            triggered_by=triggered_by,
            limit=limit,
        )
    except CronledgerError as e:
        return _fail(e)
    return _ok(executions)


def update_task_execution(
    state: AppState,
    execution_id: int,
    *,
    status: ExecutionStatus | None = None,
    completed_at: datetime | None = None,
    records_processed: int | None = None,
    result_summary: dict[str, Any] | None = None,
    error_message: str | None = None,
) -> ActionResult:
    """
    Validate and persist an execution update.

    A status change stamps completed_at (now, unless given) and
    execution_time_ms. A terminal status also updates the parent task's last_run_status and
    last_run_duration_ms, in the same transaction.
    """
    try:
        current: TaskExecution | None = state.task_store.get_execution(execution_id)
        if current is None:
            raise ExecutionNotFoundError(f"Execution not found: {execution_id}")

        if status is not None and not is_valid_status_transition(current.status, status):
            raise InvalidTransitionError(current.status.value, ExecutionStatus(status).value)

        # completed_at and execution_time_ms are only written when the row leaves running.
        if status is None and completed_at is not None:
            raise ValueError("completed_at can only be set together with a terminal status")
        if status is not None and completed_at is None:
            completed_at = utc_now()

        execution_time_ms = None
        if completed_at is not None:
            completed_at = to_utc(completed_at)
            execution_time_ms = calculate_execution_time_ms(current.started_at, completed_at)

        updated = state.task_store.update_execution(
            execution_id,
            expected_status=current.status if status is not None else None,
            status=ExecutionStatus(status) if status is not None else None,
            completed_at=completed_at,
            execution_time_ms=execution_time_ms,
            records_processed=records_processed,
            result_summary=result_summary,
            error_message=error_message,
        )
        if not updated:
            # Someone else finalized the row between our read and write.
            latest = state.task_store.get_execution(execution_id)
            if latest is None:
                raise ExecutionNotFoundError(f"Execution not found: {execution_id}")
            raise InvalidTransitionError(latest.status.value, ExecutionStatus(status).value if status else "-")
    except (CronledgerError, ValueError) as e:
        logger.warning("update_task_execution(%s) rejected: %s", execution_id, e)
        return _fail(e)

    if status is not None:
        logger.info(
            "Execution %s %s -> %s (duration_ms=%s)",
            execution_id,
            current.status.value,
            ExecutionStatus(status).value,
            execution_time_ms,
        )
    return _ok()


def complete_task_execution(
    state: AppState,
    execution_id: int,
    records_processed: int,
    result_summary: dict[str, Any] | None = None,
) -> ActionResult:
    return update_task_execution(
        state,
        execution_id,
        status=ExecutionStatus.COMPLETED,
        completed_at=utc_now(),
        records_processed=records_processed,
        result_summary=result_summary,
    )


def fail_task_execution(state: AppState, execution_id: int, error_message: str) -> ActionResult:
    return update_task_execution(
        state,
        execution_id,
        status=ExecutionStatus.FAILED,
        completed_at=utc_now(),
        error_message=error_message,
    )


def timeout_task_execution(state: AppState, execution_id: int) -> ActionResult:
    return update_task_execution(
        state,
        execution_id,
        status=ExecutionStatus.TIMEOUT,
        completed_at=utc_now(),
        error_message="Task execution exceeded timeout limit",
    )


# ---- timeout, failure handling, isolation ----


async def execute_with_timeout(
    state: AppState,
    execution_id: int,
    fn: Callable[[], Awaitable[T]],
    timeout_ms: int | None = None,
) -> TimeoutResult[T]:
    """
    Run `fn` against a deadline.

    - deadline hit: the work is cancelled, the execution is marked `timeout`
    - `fn` raises: the execution is marked `failed` with the exception message
    - success: the result is returned and the execution row is not touched
    """
    limit_ms = state.task_timeout_ms if timeout_ms is None else timeout_ms
    deadline = asyncio.timeout(limit_ms / 1000.0)

    try:
        async with deadline:
            result = await fn()
    except Exception as e:
        timed_out = isinstance(e, TimeoutError) and deadline.expired()
        if timed_out:
            message = TIMEOUT_ERROR_MESSAGE
            status = ExecutionStatus.TIMEOUT
            logger.warning("Execution %s timed out after %sms", execution_id, limit_ms)
        else:
            message = _error_message(e)
            status = ExecutionStatus.FAILED
            logger.warning("Execution %s failed: %s", execution_id, message)

        marked = update_task_execution(
            state,
            execution_id,
            status=status,
            completed_at=utc_now(),
            error_message=message,
        )
        if not marked.success:
            logger.error("Could not mark execution %s as %s: %s", execution_id, status.value, marked.error)
        return TimeoutResult(result=None, timed_out=timed_out, error=message)

    return TimeoutResult(result=result, timed_out=False)


def build_failure_notification(
    task: ScheduledTask,
    error_message: str,
    execution_id: int | None,
    *,
    recipient_role: str = "director",
    timestamp: datetime | None = None,
) -> dict[str, Any]:
    return {
        "template_code": FAILURE_TEMPLATE_CODE,
        "recipient_role": recipient_role,
        "data": {
            "task_code": task.task_code,
            "task_name": task.task_name,
            "error_message": error_message,
            "timestamp": to_utc(timestamp or utc_now()).isoformat(),
            "execution_id": execution_id,
        },
    }


async def handle_task_failure(
    state: AppState,
    task: ScheduledTask,
    error: BaseException | str,
    execution_id: int | None = None,
) -> dict[str, Any]:
    """
    Best-effort failure side channel: finalize the execution as failed (if it is
    still running) and deliver an operator notification. Never raises.
    Returns the payload that was sent.
    """
    message = _error_message(error)

    if execution_id is not None:
        current = None
        try:
            current = state.task_store.get_execution(execution_id)
        except CronledgerError:
            logger.exception("Could not load execution %s while handling failure", execution_id)
        if current is not None and current.status is ExecutionStatus.RUNNING:
            res = fail_task_execution(state, execution_id, message)
            if not res.success:
                logger.error("Could not mark execution %s failed: %s", execution_id, res.error)

    payload = build_failure_notification(
        task,
        message,
        execution_id,
        recipient_role=state.failure_recipient_role,
    )
    logger.error("Task %s failed: %s (execution_id=%s)", task.task_code, message, execution_id)

    try:
        await state.notifier.send(payload)
    except Exception:
        logger.exception("Failed to deliver failure notification for task %s", task.task_code)

    return payload


async def execute_task_isolated(task_code: str, fn: Callable[[], Awaitable[T]]) -> IsolatedOutcome[T]:
    """Run one task's work, containing any exception it raises."""
    try:
        result = await fn()
    except Exception as e:
        logger.exception("Isolated task %s failed", task_code)
        return IsolatedOutcome(success=False, error=_error_message(e))
    return IsolatedOutcome(success=True, result=result)


async def execute_tasks_isolated(
    task_codes: Iterable[str],
    fn_map: Mapping[str, Callable[[], Awaitable[Any]]],
) -> BatchResult:
    """
    Run tasks one after another; one task's failure never stops the rest.
    A code without a function counts as a failure.
    """
    batch = BatchResult()

    for code in task_codes:
        fn = fn_map.get(code)
        if fn is None:
            outcome: IsolatedOutcome[Any] = IsolatedOutcome(success=False, error="No execution function provided")
        else:
            outcome = await execute_task_isolated(code, fn)

        batch.results[code] = outcome
        if outcome.success:
            batch.total_success += 1
        else:
            batch.total_failed += 1

    logger.info("Isolated batch done: success=%d failed=%d", batch.total_success, batch.total_failed)
    return batch
