# tests/test_commands.py

from __future__ import annotations

from cronledger.cli.commands import CommandRegistry, registry
from cronledger.monitoring.performance import log_slow_query
from cronledger.tasks.task_actions import fail_task_execution, register_task, trigger_task_manually


def _seed(state, code: str = "nightly-billing", **kw):
    res = register_task(
        state,
        task_code=code,
        task_name=kw.pop("task_name", "Nightly billing"),
        cron_expression=kw.pop("cron_expression", "0 2 * * *"),
        **kw,
    )
    assert res.success, res.error
    return res.data


def test_command_registry_routes_4_and_5_params(state) -> None:
    reg = CommandRegistry()
    called = {"h4": 0, "h5": 0}

    def h4(state, args, user_id, room_id):
        called["h4"] += 1
        return "h4"

    def h5(state, args, user_id, room_id, emit):
        called["h5"] += 1
        if emit is not None:
            emit("note")
        return "h5"

    reg.register("a", h4, "a")
    reg.register("b", h5, "b")

    assert reg.handle(state, "/a x", user_id="u", room_id="r") == "h4"
    assert reg.handle(state, "/b y", user_id="u", room_id="r", emit=lambda _: None) == "h5"
    assert called["h4"] == 1
    assert called["h5"] == 1


def test_command_registry_unknown_and_non_command(state) -> None:
    reg = CommandRegistry()
    assert reg.handle(state, "hello") is None
    assert "Unknown command" in (reg.handle(state, "/nope") or "")
    assert "Empty command" in (reg.handle(state, "/") or "")


def test_help_lists_operator_commands(state) -> None:
    text = registry.handle(state, "/help") or ""
    for name in ("tasks", "enable", "disable", "trigger", "retry", "run", "history", "notifications", "slow"):
        assert f"/{name}" in text


def test_tasks_listing(state) -> None:
    assert registry.handle(state, "/tasks") == "No scheduled tasks registered."
    _seed(state)
    _seed(state, code="weekly-report", cron_expression="0 0 * * 1", is_active=False)

    text = registry.handle(state, "/tasks") or ""
    assert "nightly-billing" in text
    assert "Daily at 2:00" in text
    assert "weekly-report" in text

    active = registry.handle(state, "/tasks active") or ""
    assert "weekly-report" not in active


def test_enable_disable_commands(state) -> None:
    task = _seed(state)

    assert registry.handle(state, f"/disable {task.id}") == f"Task #{task.id} disabled."
    assert not state.task_store.get_task(task.id).is_active

    assert registry.handle(state, f"/enable {task.id}").startswith(f"Task #{task.id} enabled.")
    assert state.task_store.get_task(task.id).is_active

    assert "must be a number" in registry.handle(state, "/enable abc")
    assert registry.handle(state, "/disable") == "Usage: /disable <task_id>"
    assert "Failed to enable" in registry.handle(state, "/enable 999")


def test_trigger_and_retry_commands(state) -> None:
    _seed(state)

    reply = registry.handle(state, "/retry nightly-billing")
    assert reply == "Retry not available: No failed executions to retry"

    reply = registry.handle(state, "/trigger nightly-billing") or ""
    assert reply.startswith("Task nightly-billing triggered")

    task = state.task_store.get_task_by_code("nightly-billing")
    (ex,) = state.task_store.list_executions(task.id)
    fail_task_execution(state, ex.id, "boom")

    reply = registry.handle(state, "/retry nightly-billing") or ""
    assert reply.startswith("Task nightly-billing retried")

    assert registry.handle(state, "/trigger ghost").startswith("Trigger rejected")


def test_run_command_without_handler(state) -> None:
    _seed(state, code="external-only")
    notes: list[str] = []

    reply = registry.handle(state, "/run external-only", emit=notes.append) or ""

    assert reply.startswith("Task external-only done")
    assert "Task triggered without specific runner" in reply
    assert notes and notes[0].startswith("[RUN] external-only")


def test_history_command(state) -> None:
    _seed(state)
    assert registry.handle(state, "/history nightly-billing") == "No executions recorded for nightly-billing."

    started = trigger_task_manually(state, "nightly-billing")
    fail_task_execution(state, started.execution_id, "ledger locked")

    text = registry.handle(state, "/history nightly-billing") or ""
    assert f"#{started.execution_id}" in text
    assert "failed" in text
    assert "error: ledger locked" in text

    assert registry.handle(state, "/history ghost").startswith("History unavailable")


def test_notifications_command_marks_read(state) -> None:
    state.notification_store.add_notification(
        template_code="TASK_EXECUTION_FAILED",
        recipient_role="director",
        title="Scheduled task failed: Nightly billing",
        message="Error: boom",
        data={},
    )

    text = registry.handle(state, "/notifications") or ""
    assert "Scheduled task failed: Nightly billing" in text
    assert registry.handle(state, "/notifications") == "No unread notifications."
    assert "Nightly billing" in (registry.handle(state, "/inbox all") or "")


def test_slow_command(state) -> None:
    assert registry.handle(state, "/slow") == "No slow queries recorded."
    log_slow_query("SELECT * FROM task_executions", 1800, table="task_executions", operation="select")

    text = registry.handle(state, "/slow") or ""
    assert text.startswith("Slow queries: 1")
    assert "task_executions" in text
