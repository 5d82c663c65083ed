# tests/test_performance.py

from __future__ import annotations

import pytest

from cronledger.monitoring.performance import (
    MAX_SLOW_QUERY_LOG,
    RECENT_SLOW_QUERIES,
    get_performance_metrics,
    get_slow_query_log,
    get_slow_query_threshold,
    is_slow_query,
    log_slow_query,
    set_slow_query_threshold,
    timed_query,
)


def test_threshold_is_inclusive() -> None:
    assert get_slow_query_threshold() == 1000
    assert not is_slow_query(999.9)
    assert is_slow_query(1000)


def test_fast_queries_are_not_recorded() -> None:
    assert log_slow_query("SELECT 1", 12.0) is False
    assert get_slow_query_log() == []


def test_ring_buffer_evicts_oldest_first() -> None:
    for i in range(MAX_SLOW_QUERY_LOG + 5):
        assert log_slow_query(f"SELECT {i}", 1000 + i, table="task_executions", operation="select")

    entries = get_slow_query_log()
    assert len(entries) == MAX_SLOW_QUERY_LOG
    assert entries[0].query == "SELECT 5"
    assert entries[-1].query == f"SELECT {MAX_SLOW_QUERY_LOG + 4}"


def test_metrics_summarize_the_log() -> None:
    empty = get_performance_metrics()
    assert empty.slow_query_count == 0
    assert empty.slowest_query is None
    assert empty.recent_slow_queries == []

    for ms in (1500, 3000, 1200):
        log_slow_query("UPDATE scheduled_tasks SET next_run_at = ?", ms, table="scheduled_tasks", operation="update")

    metrics = get_performance_metrics()
    assert metrics.slow_query_count == 3
    assert metrics.average_slow_query_time == pytest.approx(1900)
    assert metrics.slowest_query.execution_time_ms == 3000
    assert [e.execution_time_ms for e in metrics.recent_slow_queries] == [1500, 3000, 1200]


def test_recent_queries_are_the_newest_ones() -> None:
    for i in range(RECENT_SLOW_QUERIES + 3):
        log_slow_query(f"q{i}", 2000)
    recent = get_performance_metrics().recent_slow_queries
    assert len(recent) == RECENT_SLOW_QUERIES
    assert recent[-1].query == f"q{RECENT_SLOW_QUERIES + 2}"


def test_timed_query_records_when_over_threshold() -> None:
    set_slow_query_threshold(0)
    with timed_query("SELECT * FROM task_executions", table="task_executions", operation="select"):
        pass

    (entry,) = get_slow_query_log()
    assert entry.table == "task_executions"
    assert entry.operation == "select"
    assert entry.execution_time_ms >= 0


def test_timed_query_records_even_when_block_raises() -> None:
    set_slow_query_threshold(0)
    with pytest.raises(RuntimeError):
        with timed_query("DELETE FROM nowhere"):
            raise RuntimeError("boom")
    assert len(get_slow_query_log()) == 1


def test_store_queries_go_through_the_timer(state) -> None:
    set_slow_query_threshold(0)
    state.task_store.list_tasks()
    assert any(e.table == "scheduled_tasks" and e.operation == "select" for e in get_slow_query_log())
