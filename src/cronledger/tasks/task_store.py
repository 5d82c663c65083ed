# src/cronledger/tasks/task_store.py

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from datetime import datetime
from pathlib import Path
from typing import Any

from ..monitoring.performance import timed_query
from .errors import StorageError
from .task_models import ExecutionStatus, ScheduledTask, TaskExecution, TriggerType
from .task_utils import to_utc, utc_now

logger = logging.getLogger(__name__)


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


# Distinguishes "leave the column alone" from "set it to NULL".
UNSET: Any = _Unset()


def _dt_to_str(value: datetime | None) -> str | None:
    if value is None:
        return None
    return to_utc(value).isoformat(timespec="microseconds")


def _str_to_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return to_utc(value)
    except ValueError:
        logger.warning("Unparseable timestamp in DB: %r", value)
        return None


def _json_to_str(value: dict[str, Any] | None) -> str | None:
    if value is None:
        return None
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        logger.exception("Failed to JSON-encode payload; storing {}.")
        return "{}"


def _str_to_json(value: str | None) -> dict[str, Any] | None:
    if value is None:
        return None
    try:
        val = json.loads(value)
    except ValueError:
        return {}
    return val if isinstance(val, dict) else {}


class TaskStore:
    """
    SQLite store for the task registry (scheduled_tasks) and run history
    (task_executions).

    The schema is migration-safe:
    - create table if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Thread-safety:
    - each method opens its own SQLite connection
    - writes that touch both tables run in one transaction
    """

    def __init__(self, db_path: str | Path = "cronledger.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        logger.info("TaskStore ready db=%s tasks=%s", self._db_path, self.count_tasks())

    @property
    def db_path(self) -> Path:
        return self._db_path

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")

    @contextlib.contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        """One connection, one transaction: commit on success, roll back on any error."""
        conn = self._get_conn()
        try:
            with conn:
                yield conn
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e
        finally:
            conn.close()

    @staticmethod
    def _run(
        conn: sqlite3.Connection,
        sql: str,
        params: Iterable[Any] = (),
        *,
        table: str,
        operation: str,
    ) -> sqlite3.Cursor:
        with timed_query(sql, table=table, operation=operation):
            return conn.execute(sql, tuple(params))

    def _ensure_schema(self) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS scheduled_tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_code TEXT NOT NULL UNIQUE,
                    task_name TEXT NOT NULL,
                    description TEXT,
                    cron_expression TEXT NOT NULL,
                    timezone TEXT NOT NULL DEFAULT 'Asia/Jakarta',
                    workflow_id TEXT,
                    webhook_url TEXT,
                    task_parameters TEXT NOT NULL DEFAULT '{}',
                    is_active INTEGER NOT NULL DEFAULT 1,
                    last_run_at TEXT,
                    last_run_status TEXT,
                    last_run_duration_ms INTEGER,
                    next_run_at TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS task_executions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id INTEGER NOT NULL REFERENCES scheduled_tasks(id),
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    status TEXT NOT NULL DEFAULT 'running',
                    records_processed INTEGER,
                    result_summary TEXT,
                    error_message TEXT,
                    execution_time_ms INTEGER,
                    triggered_by TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )

            cols = {row["name"] for row in conn.execute("PRAGMA table_info(scheduled_tasks)")}

            def add_col(name: str, decl: str) -> None:
                if name in cols:
                    return
                conn.execute(f"ALTER TABLE scheduled_tasks ADD COLUMN {name} {decl}")
                logger.info("TaskStore migration: added column scheduled_tasks.%s", name)

            # Older databases predate the workflow binding and the run cache.
            add_col("workflow_id", "TEXT")
            add_col("webhook_url", "TEXT")
            add_col("task_parameters", "TEXT NOT NULL DEFAULT '{}'")
            add_col("last_run_duration_ms", "INTEGER")

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_tasks_due ON scheduled_tasks(is_active, next_run_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_executions_task_started "
                "ON task_executions(task_id, started_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_executions_task_status "
                "ON task_executions(task_id, status)"
            )

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> ScheduledTask:
        last_status = row["last_run_status"]
        return ScheduledTask(
            id=int(row["id"]),
            task_code=str(row["task_code"]),
            task_name=str(row["task_name"]),
            description=row["description"],
            cron_expression=str(row["cron_expression"]),
            timezone=str(row["timezone"]),
            workflow_id=row["workflow_id"],
            webhook_url=row["webhook_url"],
            task_parameters=_str_to_json(row["task_parameters"]) or {},
            is_active=bool(row["is_active"]),
            last_run_at=_str_to_dt(row["last_run_at"]),
            last_run_status=ExecutionStatus.from_db(last_status) if last_status else None,
            last_run_duration_ms=(
                int(row["last_run_duration_ms"]) if row["last_run_duration_ms"] is not None else None
            ),
            next_run_at=_str_to_dt(row["next_run_at"]),
            created_at=_str_to_dt(row["created_at"]) or utc_now(),
        )

    @staticmethod
    def _row_to_execution(row: sqlite3.Row) -> TaskExecution:
        return TaskExecution(
            id=int(row["id"]),
            task_id=int(row["task_id"]),
            started_at=_str_to_dt(row["started_at"]) or utc_now(),
            completed_at=_str_to_dt(row["completed_at"]),
            status=ExecutionStatus.from_db(row["status"]),
            records_processed=(
                int(row["records_processed"]) if row["records_processed"] is not None else None
            ),
            result_summary=_str_to_json(row["result_summary"]),
            error_message=row["error_message"],
            execution_time_ms=(
                int(row["execution_time_ms"]) if row["execution_time_ms"] is not None else None
            ),
            triggered_by=TriggerType.from_db(row["triggered_by"]),
            created_at=_str_to_dt(row["created_at"]) or utc_now(),
        )

    # ---- task registry ----

    def count_tasks(self) -> int:
        with self._tx() as conn:
            (n,) = conn.execute("SELECT COUNT(*) FROM scheduled_tasks").fetchone()
            return int(n)

    def add_task(
        self,
        *,
        task_code: str,
        task_name: str,
        cron_expression: str,
        timezone: str,
        description: str | None = None,
        workflow_id: str | None = None,
        webhook_url: str | None = None,
        task_parameters: dict[str, Any] | None = None,
        is_active: bool = True,
        next_run_at: datetime | None = None,
    ) -> int:
        if not task_code or not task_code.strip():
            raise ValueError("task_code is required")
        if not task_name or not task_name.strip():
            raise ValueError("task_name is required")
        if not cron_expression or not cron_expression.strip():
            raise ValueError("cron_expression is required")

        with self._tx() as conn:
            cur = self._run(
                conn,
                """
                INSERT INTO scheduled_tasks(
                    task_code, task_name, description, cron_expression, timezone,
                    workflow_id, webhook_url, task_parameters, is_active,
                    next_run_at, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task_code.strip(),
                    task_name.strip(),
                    description,
                    cron_expression.strip(),
                    timezone,
                    workflow_id,
                    webhook_url,
                    _json_to_str(task_parameters or {}),
                    1 if is_active else 0,
                    _dt_to_str(next_run_at),
                    _dt_to_str(utc_now()),
                ),
                table="scheduled_tasks",
                operation="insert",
            )
            rowid = cur.lastrowid
            if rowid is None:
                raise StorageError("SQLite did not return lastrowid for scheduled_tasks insert")

        task_id = int(rowid)
        logger.debug("Task registered id=%s code=%s cron=%r tz=%s", task_id, task_code, cron_expression, timezone)
        return task_id

    def get_task(self, task_id: int) -> ScheduledTask | None:
        with self._tx() as conn:
            row = self._run(
                conn,
                "SELECT * FROM scheduled_tasks WHERE id = ?",
                (int(task_id),),
                table="scheduled_tasks",
                operation="select",
            ).fetchone()
            return self._row_to_task(row) if row else None

    def get_task_by_code(self, task_code: str) -> ScheduledTask | None:
        with self._tx() as conn:
            row = self._run(
                conn,
                "SELECT * FROM scheduled_tasks WHERE task_code = ?",
                (task_code,),
                table="scheduled_tasks",
                operation="select",
            ).fetchone()
            return self._row_to_task(row) if row else None

    def list_tasks(self, *, active_only: bool = False) -> list[ScheduledTask]:
        sql = "SELECT * FROM scheduled_tasks"
        if active_only:
            sql += " WHERE is_active = 1"
        sql += " ORDER BY task_code ASC"
        with self._tx() as conn:
            rows = self._run(conn, sql, table="scheduled_tasks", operation="select").fetchall()
            return [self._row_to_task(r) for r in rows]

    def list_due_tasks(self, *, now: datetime, limit: int = 32) -> list[ScheduledTask]:
        """Active tasks whose next_run_at is at or before `now`, oldest due first."""
        with self._tx() as conn:
            rows = self._run(
                conn,
                """
                SELECT *
                FROM scheduled_tasks
                WHERE is_active = 1
                  AND next_run_at IS NOT NULL
                  AND next_run_at <= ?
                ORDER BY next_run_at ASC, task_code ASC
                    LIMIT ?
                """,
                (_dt_to_str(now), int(limit)),
                table="scheduled_tasks",
                operation="select",
            ).fetchall()
            return [self._row_to_task(r) for r in rows]

    def try_claim_due_task(
        self,
        task_id: int,
        *,
        expected_next_run_at: datetime | None,
        next_run_at: datetime | None,
    ) -> bool:
        """
        Best-effort claim to avoid duplicate dispatch of one cron slot.

        Atomically moves next_run_at from the slot the caller saw to the following
        slot. Returns True if this caller won the slot.
        """
        with self._tx() as conn:
            cur = self._run(
                conn,
                """
                UPDATE scheduled_tasks
                SET next_run_at = ?
                WHERE id = ?
                  AND is_active = 1
                  AND next_run_at IS ?
                """,
                (_dt_to_str(next_run_at), int(task_id), _dt_to_str(expected_next_run_at)),
                table="scheduled_tasks",
                operation="update",
            )
            return cur.rowcount == 1

    def update_task_fields(
        self,
        task_id: int,
        *,
        is_active: bool | None = None,
        next_run_at: datetime | None = UNSET,
        last_run_at: datetime | None = UNSET,
        last_run_status: ExecutionStatus | None = UNSET,
        last_run_duration_ms: int | None = UNSET,
    ) -> bool:
        """Update the given columns. Returns False if the task does not exist."""
        fields: list[str] = []
        params: list[Any] = []

        if is_active is not None:
            fields.append("is_active = ?")
            params.append(1 if is_active else 0)

        if next_run_at is not UNSET:
            fields.append("next_run_at = ?")
            params.append(_dt_to_str(next_run_at))

        if last_run_at is not UNSET:
            fields.append("last_run_at = ?")
            params.append(_dt_to_str(last_run_at))

        if last_run_status is not UNSET:
            fields.append("last_run_status = ?")
            params.append(last_run_status.value if last_run_status is not None else None)

        if last_run_duration_ms is not UNSET:
            fields.append("last_run_duration_ms = ?")
            params.append(last_run_duration_ms)

        if not fields:
            return self.get_task(task_id) is not None

        params.append(int(task_id))
        sql = f"UPDATE scheduled_tasks SET {', '.join(fields)} WHERE id = ?"

        with self._tx() as conn:
            cur = self._run(conn, sql, params, table="scheduled_tasks", operation="update")
            return cur.rowcount == 1

    # ---- execution history ----

    def add_execution(
        self,
        task_id: int,
        *,
        triggered_by: TriggerType,
        started_at: datetime | None = None,
        mark_task_running: bool = False,
    ) -> TaskExecution:
        """
        Insert a running execution.

        With mark_task_running=True the parent task's last_run_at/last_run_status
        are set in the same transaction. next_run_at is never written here.
        """
        started = to_utc(started_at or utc_now())
        started_s = _dt_to_str(started)

        with self._tx() as conn:
            cur = self._run(
                conn,
                """
                INSERT INTO task_executions(task_id, started_at, status, triggered_by, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (int(task_id), started_s, ExecutionStatus.RUNNING.value, TriggerType(triggered_by).value, started_s),
                table="task_executions",
                operation="insert",
            )
            rowid = cur.lastrowid
            if rowid is None:
                raise StorageError("SQLite did not return lastrowid for task_executions insert")

            if mark_task_running:
                self._run(
                    conn,
                    "UPDATE scheduled_tasks SET last_run_at = ?, last_run_status = ? WHERE id = ?",
                    (started_s, ExecutionStatus.RUNNING.value, int(task_id)),
                    table="scheduled_tasks",
                    operation="update",
                )

            row = conn.execute("SELECT * FROM task_executions WHERE id = ?", (int(rowid),)).fetchone()

        execution = self._row_to_execution(row)
        logger.debug(
            "Execution created id=%s task_id=%s triggered_by=%s",
            execution.id,
            task_id,
            execution.triggered_by.value,
        )
        return execution

    def get_execution(self, execution_id: int) -> TaskExecution | None:
        with self._tx() as conn:
            row = self._run(
                conn,
                "SELECT * FROM task_executions WHERE id = ?",
                (int(execution_id),),
                table="task_executions",
                operation="select",
            ).fetchone()
            return self._row_to_execution(row) if row else None

    def list_executions(
        self,
        task_id: int,
        *,
        statuses: Iterable[ExecutionStatus] | None = None,
        triggered_by: TriggerType | None = None,
        limit: int | None = None,
    ) -> list[TaskExecution]:
        """Executions of one task, most recent start first."""
        where = ["task_id = ?"]
        params: list[Any] = [int(task_id)]

        if statuses is not None:
            values = [ExecutionStatus(s).value for s in statuses]
            if not values:
                return []
            where.append(f"status IN ({','.join('?' for _ in values)})")
            params.extend(values)

        if triggered_by is not None:
            where.append("triggered_by = ?")
            params.append(TriggerType(triggered_by).value)

        sql = f"SELECT * FROM task_executions WHERE {' AND '.join(where)} ORDER BY started_at DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        with self._tx() as conn:
            rows = self._run(conn, sql, params, table="task_executions", operation="select").fetchall()
            return [self._row_to_execution(r) for r in rows]

    def latest_execution(
        self,
        task_id: int,
        *,
        statuses: Iterable[ExecutionStatus],
    ) -> TaskExecution | None:
        found = self.list_executions(task_id, statuses=statuses, limit=1)
        return found[0] if found else None

    def update_execution(
        self,
        execution_id: int,
        *,
        expected_status: ExecutionStatus | None = None,
        status: ExecutionStatus | None = None,
        completed_at: datetime | None = None,
        execution_time_ms: int | None = None,
        records_processed: int | None = None,
        result_summary: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> bool:
        """
        Update an execution row; None means "leave unchanged".

        When `status` is terminal the parent task's last_run_status and
        last_run_duration_ms are mirrored in the same transaction.
        With `expected_status`, the row is only updated if its status still matches
        (returns False otherwise).
        """
        fields: list[str] = []
        params: list[Any] = []

        if status is not None:
            fields.append("status = ?")
            params.append(status.value)
        if completed_at is not None:
            fields.append("completed_at = ?")
            params.append(_dt_to_str(completed_at))
        if execution_time_ms is not None:
            fields.append("execution_time_ms = ?")
            params.append(int(execution_time_ms))
        if records_processed is not None:
            fields.append("records_processed = ?")
            params.append(int(records_processed))
        if result_summary is not None:
            fields.append("result_summary = ?")
            params.append(_json_to_str(result_summary))
        if error_message is not None:
            fields.append("error_message = ?")
            params.append(error_message)

        if not fields:
            return self.get_execution(execution_id) is not None

        sql = f"UPDATE task_executions SET {', '.join(fields)} WHERE id = ?"
        params.append(int(execution_id))
        if expected_status is not None:
            sql += " AND status = ?"
            params.append(expected_status.value)

        with self._tx() as conn:
            cur = self._run(conn, sql, params, table="task_executions", operation="update")
            if cur.rowcount != 1:
                return False

            if status is not None and status.is_terminal:
                self._run(
                    conn,
                    """
                    UPDATE scheduled_tasks
                    SET last_run_status = ?, last_run_duration_ms = ?
                    WHERE id = (SELECT task_id FROM task_executions WHERE id = ?)
                    """,
                    (status.value, execution_time_ms, int(execution_id)),
                    table="scheduled_tasks",
                    operation="update",
                )
        return True
