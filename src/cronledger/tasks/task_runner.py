# src/cronledger/tasks/task_runner.py

from __future__ import annotations

"""
Task runners.

Binds task codes to in-process handlers and runs them with full bookkeeping:
- open an execution (schedule / manual / retry),
- run the handler under the execution timeout,
- complete the execution, or fail it and notify operators,
- advance next_run_at only for schedule-triggered runs.

Tasks without a handler are owned by the external workflow engine: we only
open the execution and leave it running for the engine to finalize.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..core.state import AppState
from ..logging_setup import CONSOLE
from ..monitoring.performance import get_performance_metrics
from .errors import CronledgerError
from .task_actions import (
    BatchResult,
    complete_task_execution,
    execute_tasks_isolated,
    execute_with_timeout,
    handle_task_failure,
    retry_failed_task,
    trigger_task_manually,
    update_scheduled_next_run,
)
from .task_models import ScheduledTask, TriggerType
from .task_utils import get_next_run_time, utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class HandlerOutcome:
    records_processed: int = 0
    summary: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class TaskRunResult:
    success: bool
    execution_id: int | None
    records_processed: int = 0
    summary: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


TaskHandler = Callable[[AppState, ScheduledTask], Awaitable[HandlerOutcome]]


class TaskHandlerRegistry:
    """task_code -> async handler."""

    def __init__(self) -> None:
        self._handlers: dict[str, TaskHandler] = {}

    def register(self, task_code: str, handler: TaskHandler) -> None:
        self._handlers[task_code] = handler

    def handler(self, task_code: str) -> Callable[[TaskHandler], TaskHandler]:
        def deco(fn: TaskHandler) -> TaskHandler:
            self.register(task_code, fn)
            return fn

        return deco

    def get(self, task_code: str) -> TaskHandler | None:
        return self._handlers.get(task_code)

    def codes(self) -> list[str]:
        return sorted(self._handlers)


registry = TaskHandlerRegistry()


@registry.handler("SLOW_QUERY_REPORT")
async def slow_query_report(state: AppState, task: ScheduledTask) -> HandlerOutcome:
    metrics = get_performance_metrics()
    slowest = metrics.slowest_query
    return HandlerOutcome(
        records_processed=metrics.slow_query_count,
        summary={
            "slow_query_count": metrics.slow_query_count,
            "average_slow_query_time_ms": round(metrics.average_slow_query_time, 1),
            "slowest_query_ms": round(slowest.execution_time_ms, 1) if slowest else None,
            "slowest_query_table": slowest.table if slowest else None,
        },
    )


def _open_execution(
    state: AppState, task_code: str, triggered_by: TriggerType
) -> tuple[ScheduledTask | None, int | None, str | None]:
    """Returns (task, execution_id, error)."""
    if triggered_by is TriggerType.MANUAL:
        started = trigger_task_manually(state, task_code)
    elif triggered_by is TriggerType.RETRY:
        started = retry_failed_task(state, task_code)
    else:
        task = state.task_store.get_task_by_code(task_code)
        if task is None:
            return None, None, f"Task not found: {task_code}"
        execution = state.task_store.add_execution(
            task.id, triggered_by=TriggerType.SCHEDULE, mark_task_running=True
        )
        return task, execution.id, None

    if started.execution_id is None:
        return None, None, started.error or "Failed to create execution record"
    return state.task_store.get_task_by_code(task_code), started.execution_id, None


async def run_scheduled_task(
    state: AppState,
    task_code: str,
    triggered_by: TriggerType = TriggerType.MANUAL,
    *,
    handlers: TaskHandlerRegistry | None = None,
    timeout_ms: int | None = None,
    now: datetime | None = None,
) -> TaskRunResult:
    handlers = handlers or registry
    handler = handlers.get(task_code)

    try:
        task, execution_id, error = _open_execution(state, task_code, triggered_by)
        if task is None or execution_id is None:
            return TaskRunResult(success=False, execution_id=None, error=error or f"Task not found: {task_code}")

        if handler is None:
            if triggered_by is TriggerType.SCHEDULE:
                update_scheduled_next_run(state, task.id, now=now)
            return TaskRunResult(
                success=True,
                execution_id=execution_id,
                summary={"message": "Task triggered without specific runner"},
            )

        run = await execute_with_timeout(state, execution_id, lambda: handler(state, task), timeout_ms)

        if run.error is not None or run.result is None:
            message = run.error or "Handler returned no outcome"
            await handle_task_failure(state, task, message, execution_id)
            outcome = TaskRunResult(success=False, execution_id=execution_id, error=message)
        else:
            done = complete_task_execution(
                state, execution_id, run.result.records_processed, run.result.summary
            )
            outcome = TaskRunResult(
                success=done.success,
                execution_id=execution_id,
                records_processed=run.result.records_processed,
                summary=dict(run.result.summary),
                error=done.error,
            )

        if triggered_by is TriggerType.SCHEDULE:
            update_scheduled_next_run(state, task.id, now=now)
        return outcome

    except CronledgerError as e:
        logger.exception("run_scheduled_task(%s) failed", task_code)
        return TaskRunResult(success=False, execution_id=None, error=str(e))


async def run_due_tasks(
    state: AppState,
    *,
    now: datetime | None = None,
    handlers: TaskHandlerRegistry | None = None,
    batch_limit: int = 32,
) -> BatchResult:
    """
    One polling pass: claim every due active task and run it as a scheduled run.
    Runs are isolated; one task's failure never stops the others.
    """
    now = now or utc_now()
    due = state.task_store.list_due_tasks(now=now, limit=batch_limit)

    fn_map: dict[str, Callable[[], Awaitable[TaskRunResult]]] = {}
    for task in due:
        following = get_next_run_time(task.cron_expression, task.timezone, now)
        if not state.task_store.try_claim_due_task(
            task.id, expected_next_run_at=task.next_run_at, next_run_at=following
        ):
            logger.debug("Task %s already claimed by another scheduler", task.task_code)
            continue
        fn_map[task.task_code] = _scheduled_run(state, task.task_code, handlers, now)

    if not fn_map:
        return BatchResult()
    return await execute_tasks_isolated(list(fn_map), fn_map)


def _scheduled_run(
    state: AppState, task_code: str, handlers: TaskHandlerRegistry | None, now: datetime
) -> Callable[[], Awaitable[TaskRunResult]]:
    async def _run() -> TaskRunResult:
        result = await run_scheduled_task(
            state, task_code, TriggerType.SCHEDULE, handlers=handlers, now=now
        )
        if not result.success:
            raise RuntimeError(result.error or f"Task {task_code} failed")
        return result

    return _run


def summarize_batch(batch: BatchResult) -> Mapping[str, str]:
    """task_code -> "ok" | error message, as shown in the scheduler pass log."""
    return {
        code: "ok" if outcome.success else (outcome.error or "failed")
        for code, outcome in batch.results.items()
    }


async def run_task_scheduler(
    state: AppState,
    *,
    interval_seconds: float = 30.0,
    handlers: TaskHandlerRegistry | None = None,
    batch_limit: int = 32,
) -> None:
    """
    Simple polling scheduler.

    Every interval_seconds run the due tasks (see run_due_tasks). A failing pass
    is logged and the loop continues. To stop the scheduler, cancel the coroutine.
    """
    sleep_s = max(0.5, float(interval_seconds))
    logger.info("Task scheduler started (interval=%.1fs)", sleep_s)

    while True:
        try:
            batch = await run_due_tasks(state, handlers=handlers, batch_limit=batch_limit)
            if batch.results:
                details = ", ".join(f"{code}={outcome}" for code, outcome in summarize_batch(batch).items())
                logger.info(
                    "Scheduler pass: %d ok, %d failed (%s)",
                    batch.total_success,
                    batch.total_failed,
                    details,
                    extra=CONSOLE,
                )
        except Exception:
            logger.exception("Scheduler pass failed")

        await asyncio.sleep(sleep_s)
