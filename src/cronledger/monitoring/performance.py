# src/cronledger/monitoring/performance.py

"""
Slow-query diagnostics.

A process-wide bounded log of statements that took at least the slow-query
threshold. The newest MAX_SLOW_QUERY_LOG entries are kept; the oldest are
evicted first. Access is guarded by a lock because the operator console and
the background scheduler thread share the same store.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime

logger = logging.getLogger(__name__)

SLOW_QUERY_THRESHOLD_MS = 1000
MAX_SLOW_QUERY_LOG = 100
RECENT_SLOW_QUERIES = 10


@dataclass(frozen=True, slots=True)
class SlowQueryEntry:
    query: str
    execution_time_ms: float
    timestamp: datetime
    table: str | None = None
    operation: str | None = None


@dataclass(frozen=True, slots=True)
class PerformanceMetrics:
    slow_query_count: int
    average_slow_query_time: float
    slowest_query: SlowQueryEntry | None
    recent_slow_queries: list[SlowQueryEntry]


_lock = threading.Lock()
_slow_queries: deque[SlowQueryEntry] = deque(maxlen=MAX_SLOW_QUERY_LOG)
_threshold_ms = SLOW_QUERY_THRESHOLD_MS


def get_slow_query_threshold() -> int:
    return _threshold_ms


def set_slow_query_threshold(threshold_ms: int) -> None:
    global _threshold_ms
    _threshold_ms = max(0, int(threshold_ms))


def is_slow_query(execution_time_ms: float) -> bool:
    return execution_time_ms >= _threshold_ms


def log_slow_query(
    query: str,
    execution_time_ms: float,
    table: str | None = None,
    operation: str | None = None,
) -> bool:
    """Record the query if it is slow. Returns True if it was recorded."""
    if not is_slow_query(execution_time_ms):
        return False

    entry = SlowQueryEntry(
        query=query,
        execution_time_ms=execution_time_ms,
        timestamp=datetime.now(tz=UTC),
        table=table,
        operation=operation,
    )
    with _lock:
        _slow_queries.append(entry)

    logger.warning(
        "Slow query (%.0fms) table=%s op=%s: %s",
        execution_time_ms,
        table,
        operation,
        " ".join(query.split())[:200],
    )
    return True


def get_slow_query_log() -> list[SlowQueryEntry]:
    with _lock:
        return list(_slow_queries)


def clear_slow_query_log() -> None:
    with _lock:
        _slow_queries.clear()


def get_performance_metrics() -> PerformanceMetrics:
    entries = get_slow_query_log()
    if not entries:
        return PerformanceMetrics(
            slow_query_count=0,
            average_slow_query_time=0.0,
            slowest_query=None,
            recent_slow_queries=[],
        )

    total = sum(e.execution_time_ms for e in entries)
    return PerformanceMetrics(
        slow_query_count=len(entries),
        average_slow_query_time=total / len(entries),
        slowest_query=max(entries, key=lambda e: e.execution_time_ms),
        recent_slow_queries=entries[-RECENT_SLOW_QUERIES:],
    )


@contextmanager
def timed_query(
    query: str,
    *,
    table: str | None = None,
    operation: str | None = None,
) -> Iterator[None]:
    """Time the enclosed block and log it as a slow query if needed."""
    started = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        log_slow_query(query, elapsed_ms, table=table, operation=operation)
