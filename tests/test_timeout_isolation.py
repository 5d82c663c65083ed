# tests/test_timeout_isolation.py

from __future__ import annotations

import asyncio

import pytest

from cronledger.core.state import AppState
from cronledger.tasks.task_actions import (
    build_failure_notification,
    complete_task_execution,
    create_task_execution,
    execute_task_isolated,
    execute_tasks_isolated,
    execute_with_timeout,
    handle_task_failure,
    register_task,
)
from cronledger.tasks.task_models import ExecutionStatus, TriggerType

from .fakes import FailingNotifier, FakeNotifier


def _task_and_execution(state: AppState, code: str = "nightly-billing"):
    task = register_task(state, task_code=code, task_name="Nightly billing", cron_expression="0 2 * * *").data
    execution = create_task_execution(state, task.id, TriggerType.SCHEDULE).data
    return task, execution


# ---- execute_with_timeout ----


@pytest.mark.asyncio
async def test_timeout_marks_execution_and_cancels_work(state: AppState) -> None:
    _, ex = _task_and_execution(state)
    finished = asyncio.Event()
    cancelled = asyncio.Event()

    async def slow() -> str:
        try:
            await asyncio.sleep(5)
            finished.set()
            return "late"
        except asyncio.CancelledError:
            cancelled.set()
            raise

    res = await execute_with_timeout(state, ex.id, slow, timeout_ms=50)
    assert res.timed_out is True
    assert res.result is None
    assert res.error == "Task execution timeout"
    assert cancelled.is_set()
    assert not finished.is_set()

    saved = state.task_store.get_execution(ex.id)
    assert saved.status is ExecutionStatus.TIMEOUT
    assert saved.error_message == "Task execution timeout"
    assert saved.completed_at is not None
    assert saved.execution_time_ms is not None


@pytest.mark.asyncio
async def test_failing_work_marks_execution_failed(state: AppState) -> None:
    _, ex = _task_and_execution(state)

    async def broken() -> None:
        raise RuntimeError("upstream returned 502")

    res = await execute_with_timeout(state, ex.id, broken, timeout_ms=1000)
    assert res.timed_out is False
    assert res.error == "upstream returned 502"

    saved = state.task_store.get_execution(ex.id)
    assert saved.status is ExecutionStatus.FAILED
    assert saved.error_message == "upstream returned 502"


@pytest.mark.asyncio
async def test_timeout_error_raised_by_work_is_a_failure_not_a_timeout(state: AppState) -> None:
    _, ex = _task_and_execution(state)

    async def own_timeout() -> None:
        raise TimeoutError("socket read timed out")

    res = await execute_with_timeout(state, ex.id, own_timeout, timeout_ms=1000)
    assert res.timed_out is False
    assert state.task_store.get_execution(ex.id).status is ExecutionStatus.FAILED


@pytest.mark.asyncio
async def test_successful_work_leaves_execution_untouched(state: AppState) -> None:
    _, ex = _task_and_execution(state)

    async def fast() -> dict[str, int]:
        return {"invoices": 3}

    res = await execute_with_timeout(state, ex.id, fast, timeout_ms=1000)
    assert res.timed_out is False
    assert res.error is None
    assert res.result == {"invoices": 3}
    assert state.task_store.get_execution(ex.id).status is ExecutionStatus.RUNNING


@pytest.mark.asyncio
async def test_default_timeout_comes_from_settings(state: AppState) -> None:
    _, ex = _task_and_execution(state)
    state.settings.task_timeout_ms = 30

    async def slow() -> None:
        await asyncio.sleep(5)

    res = await execute_with_timeout(state, ex.id, slow)
    assert res.timed_out is True


# ---- handle_task_failure ----


@pytest.mark.asyncio
async def test_handle_failure_fails_running_execution_and_notifies(
    state: AppState, notifier: FakeNotifier
) -> None:
    task, ex = _task_and_execution(state)

    payload = await handle_task_failure(state, task, RuntimeError("ledger locked"), ex.id)

    assert notifier.sent == [payload]
    assert payload["template_code"] == "TASK_EXECUTION_FAILED"
    assert payload["recipient_role"] == "director"
    data = payload["data"]
    assert data["task_code"] == "nightly-billing"
    assert data["task_name"] == "Nightly billing"
    assert data["error_message"] == "ledger locked"
    assert data["execution_id"] == ex.id
    assert data["timestamp"]

    saved = state.task_store.get_execution(ex.id)
    assert saved.status is ExecutionStatus.FAILED
    assert saved.error_message == "ledger locked"


@pytest.mark.asyncio
async def test_handle_failure_keeps_existing_terminal_status(
    state: AppState, notifier: FakeNotifier
) -> None:
    task, ex = _task_and_execution(state)
    assert complete_task_execution(state, ex.id, 1).success

    await handle_task_failure(state, task, "post-processing failed", ex.id)

    assert state.task_store.get_execution(ex.id).status is ExecutionStatus.COMPLETED
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_handle_failure_without_execution(state: AppState, notifier: FakeNotifier) -> None:
    task, _ = _task_and_execution(state)
    payload = await handle_task_failure(state, task, "webhook unreachable")
    assert payload["data"]["execution_id"] is None
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_handle_failure_survives_broken_notifier(state: AppState) -> None:
    task, ex = _task_and_execution(state)
    broken = FailingNotifier()
    state.notifier = broken

    payload = await handle_task_failure(state, task, "boom", ex.id)

    assert broken.calls == 1
    assert payload["data"]["error_message"] == "boom"
    assert state.task_store.get_execution(ex.id).status is ExecutionStatus.FAILED


def test_failure_payload_shape(state: AppState) -> None:
    task, _ = _task_and_execution(state)
    payload = build_failure_notification(task, "boom", 7, recipient_role="ops")
    assert set(payload) == {"template_code", "recipient_role", "data"}
    assert set(payload["data"]) == {"task_code", "task_name", "error_message", "timestamp", "execution_id"}
    assert payload["recipient_role"] == "ops"


# ---- isolation ----


@pytest.mark.asyncio
async def test_isolated_task_contains_exception() -> None:
    async def boom() -> None:
        raise ValueError("bad row 17")

    out = await execute_task_isolated("import", boom)
    assert out.success is False
    assert out.error == "bad row 17"

    async def ok() -> int:
        return 3

    out = await execute_task_isolated("import", ok)
    assert out.success is True
    assert out.result == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("failing", [set(), {"a"}, {"c", "e"}, {"a", "b", "c", "d", "e"}])
async def test_batch_counts_failures_and_runs_everything(failing: set[str]) -> None:
    codes = ["a", "b", "c", "d", "e"]
    ran: list[str] = []

    def make(code: str):
        async def fn() -> str:
            ran.append(code)
            if code in failing:
                raise RuntimeError(f"{code} failed")
            return code.upper()

        return fn

    batch = await execute_tasks_isolated(codes, {c: make(c) for c in codes})

    assert ran == codes
    assert len(batch.results) == len(codes)
    assert batch.total_failed == len(failing)
    assert batch.total_success == len(codes) - len(failing)
    for code in codes:
        assert batch.results[code].success is (code not in failing)


@pytest.mark.asyncio
async def test_batch_missing_function_counts_as_failure() -> None:
    async def ok() -> None:
        return None

    batch = await execute_tasks_isolated(["a", "b"], {"a": ok})
    assert batch.total_success == 1
    assert batch.total_failed == 1
    assert batch.results["b"].error == "No execution function provided"
