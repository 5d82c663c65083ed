# src/cronledger/cli/commands.py

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Callable
from datetime import datetime
from typing import cast

from ..core.state import AppState
from ..monitoring.performance import get_performance_metrics
from ..tasks.task_actions import (
    can_retry_task,
    disable_task,
    enable_task,
    get_scheduled_task_by_code,
    get_scheduled_tasks,
    get_task_executions,
    retry_failed_task,
    trigger_task_manually,
)
from ..tasks.task_models import TriggerType
from ..tasks.task_runner import run_scheduled_task
from ..tasks.task_utils import describe_cron_expression, format_execution_time

CommandEmitter = Callable[[str], None]
CommandHandler4 = Callable[[AppState, list[str], str | None, str | None], str]
CommandHandler5 = Callable[
    [AppState, list[str], str | None, str | None, CommandEmitter | None], str
]
CommandHandler = CommandHandler4 | CommandHandler5

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Simple slash-command registry used by the operator console (/help, /tasks, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    def handle(
        self,
        state: AppState,
        line: str,
        user_id: str | None = None,
        room_id: str | None = None,
        emit: CommandEmitter | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            nparams = len(inspect.signature(handler).parameters)
        except (TypeError, ValueError):
            nparams = 5

        if nparams >= 5:
            h5 = cast(CommandHandler5, handler)
            return h5(state, args, user_id, room_id, emit)

        h4 = cast(CommandHandler4, handler)
        return h4(state, args, user_id, room_id)

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


def _fmt_ts(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _parse_id(args: list[str], usage: str) -> int | str:
    if not args:
        return usage
    try:
        return int(args[0])
    except ValueError:
        return f"Task id must be a number, got {args[0]!r}. {usage}"


def cmd_help(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
    emit: CommandEmitter | None = None,
) -> str:
    return registry.build_help()


def cmd_tasks(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
) -> str:
    """
    /tasks         -> all tasks
    /tasks active  -> active tasks only
    """
    active_only = bool(args) and args[0].lower() == "active"
    res = get_scheduled_tasks(state, active_only=active_only)
    if not res.success:
        return f"Failed to list tasks: {res.error}"
    if not res.data:
        return "No scheduled tasks registered."

    lines = ["Scheduled tasks:"]
    for t in res.data:
        flag = "ON " if t.is_active else "OFF"
        last = t.last_run_status.value if t.last_run_status else "-"
        lines.append(
            f"  #{t.id} [{flag}] {t.task_code} - {t.task_name}\n"
            f"      {t.cron_expression} ({describe_cron_expression(t.cron_expression)}, {t.timezone})\n"
            f"      next: {_fmt_ts(t.next_run_at)}  last: {last} "
            f"{format_execution_time(t.last_run_duration_ms)}"
        )
    return "\n".join(lines)


def cmd_enable(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
) -> str:
    task_id = _parse_id(args, "Usage: /enable <task_id>")
    if isinstance(task_id, str):
        return task_id
    res = enable_task(state, task_id)
    if not res.success:
        return f"Failed to enable task #{task_id}: {res.error}"
    return f"Task #{task_id} enabled. Next run: {_fmt_ts(res.data)}"


def cmd_disable(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
) -> str:
    task_id = _parse_id(args, "Usage: /disable <task_id>")
    if isinstance(task_id, str):
        return task_id
    res = disable_task(state, task_id)
    if not res.success:
        return f"Failed to disable task #{task_id}: {res.error}"
    return f"Task #{task_id} disabled."


def cmd_trigger(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
) -> str:
    """Open a manual execution for the workflow engine to pick up."""
    if not args:
        return "Usage: /trigger <task_code>"
    started = trigger_task_manually(state, args[0])
    if started.execution_id is None:
        return f"Trigger rejected: {started.error}"
    logger.debug("Manual trigger from console (user_id=%s)", user_id)
    return f"Task {args[0]} triggered (execution #{started.execution_id})."


def cmd_retry(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
) -> str:
    if not args:
        return "Usage: /retry <task_code>"
    code = args[0]
    found = get_scheduled_task_by_code(state, code)
    if not found.success:
        return f"Retry rejected: {found.error}"

    check = can_retry_task(state, found.data.id)
    if not check.can_retry:
        return f"Retry not available: {check.reason}"

    started = retry_failed_task(state, code)
    if started.execution_id is None:
        return f"Retry rejected: {started.error}"
    return f"Task {code} retried (execution #{started.execution_id})."


def cmd_run(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
    emit: CommandEmitter | None = None,
) -> str:
    """
    /run <code>        -> run now with the in-process handler (manual)
    /run <code> retry  -> same, recorded as a retry
    """
    if not args:
        return "Usage: /run <task_code> [retry]"
    code = args[0]
    trigger = TriggerType.RETRY if len(args) > 1 and args[1].lower() == "retry" else TriggerType.MANUAL

    if emit:
        with contextlib.suppress(Exception):
            emit(f"[RUN] {code} started ({trigger.value})...")

    result = asyncio.run(run_scheduled_task(state, code, trigger))
    if not result.success:
        return f"Task {code} failed: {result.error}"

    summary = ", ".join(f"{k}={v}" for k, v in result.summary.items()) or "-"
    return (
        f"Task {code} done (execution #{result.execution_id}): "
        f"{result.records_processed} records; {summary}"
    )


def cmd_history(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
) -> str:
    """
    /history <code> [limit]
    """
    if not args:
        return "Usage: /history <task_code> [limit]"
    code = args[0]
    limit = 10
    if len(args) > 1:
        try:
            limit = max(1, int(args[1]))
        except ValueError:
            return "Usage: /history <task_code> [limit]"

    found = get_scheduled_task_by_code(state, code)
    if not found.success:
        return f"History unavailable: {found.error}"

    res = get_task_executions(state, found.data.id, limit=limit)
    if not res.success:
        return f"History unavailable: {res.error}"
    if not res.data:
        return f"No executions recorded for {code}."

    lines = [f"Executions of {code} (newest first):"]
    for e in res.data:
        line = (
            f"  #{e.id} {e.status.value:<9} {e.triggered_by.value:<8} "
            f"started {_fmt_ts(e.started_at)}  took {format_execution_time(e.execution_time_ms)}"
        )
        if e.error_message:
            line += f"\n      error: {e.error_message}"
        lines.append(line)
    return "\n".join(lines)


def cmd_notifications(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
) -> str:
    """
    /notifications      -> unread notifications (marks them read)
    /notifications all  -> last 20, read or not
    """
    store = state.notification_store
    if store is None:
        return "Notification inbox is not configured."

    show_all = bool(args) and args[0].lower() == "all"
    items = store.list_notifications(
        recipient_role=state.failure_recipient_role,
        unread_only=not show_all,
        limit=20,
    )
    if not items:
        return "No notifications." if show_all else "No unread notifications."

    lines = ["Notifications:"]
    for n in items:
        mark = " " if n.is_read else "*"
        lines.append(f"  {mark} [{_fmt_ts(n.created_at)}] {n.title}\n      {n.message}")
        if not n.is_read:
            store.mark_as_read(n.id)
    return "\n".join(lines)


def cmd_slow(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
) -> str:
    metrics = get_performance_metrics()
    if metrics.slow_query_count == 0:
        return "No slow queries recorded."

    lines = [
        f"Slow queries: {metrics.slow_query_count} "
        f"(avg {metrics.average_slow_query_time:.0f}ms)",
    ]
    if metrics.slowest_query is not None:
        s = metrics.slowest_query
        lines.append(f"  slowest: {s.execution_time_ms:.0f}ms {s.operation or '-'} {s.table or '-'}")
    for q in metrics.recent_slow_queries:
        lines.append(f"  {q.execution_time_ms:>7.0f}ms {q.operation or '-':<6} {q.table or '-'}: {q.query[:80]}")
    return "\n".join(lines)


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("tasks", cmd_tasks, help_text="List scheduled tasks: /tasks [active].")
registry.register("enable", cmd_enable, help_text="Activate a task: /enable <task_id>.")
registry.register("disable", cmd_disable, help_text="Deactivate a task: /disable <task_id>.")
registry.register("trigger", cmd_trigger, help_text="Open a manual execution: /trigger <task_code>.")
registry.register("retry", cmd_retry, help_text="Retry a failed task: /retry <task_code>.")
registry.register("run", cmd_run, help_text="Run a task now in-process: /run <task_code> [retry].")
registry.register("history", cmd_history, help_text="Execution history: /history <task_code> [limit].")
registry.register(
    "notifications",
    cmd_notifications,
    help_text="Operator inbox: /notifications [all].",
    aliases=["inbox"],
)
registry.register("slow", cmd_slow, help_text="Slow-query report.")
