# src/cronledger/notifications/notification_store.py

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from ..monitoring.performance import timed_query
from ..tasks.errors import StorageError
from ..tasks.task_utils import to_utc, utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Notification:
    id: int
    template_code: str
    recipient_role: str
    title: str
    message: str
    data: dict[str, Any]
    is_read: bool
    created_at: datetime


class NotificationStore:
    """
    SQLite-backed in-app notification center.

    Lives in the same database file as TaskStore and follows the same
    discipline: each method opens its own connection, every statement is
    timed for the slow-query log, and sqlite3 errors surface as StorageError.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextlib.contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
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
        conn: sqlite3.Connection, sql: str, params: Iterable[Any] = (), *, operation: str
    ) -> sqlite3.Cursor:
        with timed_query(sql, table="notifications", operation=operation):
            return conn.execute(sql, tuple(params))

    def _ensure_schema(self) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    template_code TEXT NOT NULL,
                    recipient_role TEXT NOT NULL,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    data TEXT NOT NULL DEFAULT '{}',
                    is_read INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_notifications_role_read "
                "ON notifications(recipient_role, is_read)"
            )

    @staticmethod
    def _row_to_notification(row: sqlite3.Row) -> Notification:
        try:
            data = json.loads(row["data"] or "{}")
        except ValueError:
            data = {}
        return Notification(
            id=int(row["id"]),
            template_code=str(row["template_code"]),
            recipient_role=str(row["recipient_role"]),
            title=str(row["title"]),
            message=str(row["message"]),
            data=data if isinstance(data, dict) else {},
            is_read=bool(row["is_read"]),
            created_at=to_utc(row["created_at"]),
        )

    def add_notification(
        self,
        *,
        template_code: str,
        recipient_role: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> int:
        with self._tx() as conn:
            cur = self._run(
                conn,
                """
                INSERT INTO notifications(template_code, recipient_role, title, message, data, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    template_code,
                    recipient_role,
                    title,
                    message,
                    json.dumps(data or {}, ensure_ascii=False, default=str),
                    utc_now().isoformat(timespec="microseconds"),
                ),
                operation="insert",
            )
            rowid = cur.lastrowid
        if rowid is None:
            raise StorageError("SQLite did not return lastrowid for notifications insert")
        logger.debug("Notification stored id=%s template=%s role=%s", rowid, template_code, recipient_role)
        return int(rowid)

    def list_notifications(
        self,
        *,
        recipient_role: str | None = None,
        unread_only: bool = False,
        limit: int = 50,
    ) -> list[Notification]:
        where: list[str] = []
        params: list[Any] = []
        if recipient_role:
            where.append("recipient_role = ?")
            params.append(recipient_role)
        if unread_only:
            where.append("is_read = 0")

        sql = "SELECT * FROM notifications"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(int(limit))

        with self._tx() as conn:
            rows = self._run(conn, sql, params, operation="select").fetchall()
        return [self._row_to_notification(r) for r in rows]

    def count_unread(self, recipient_role: str | None = None) -> int:
        sql = "SELECT COUNT(*) FROM notifications WHERE is_read = 0"
        params: tuple[Any, ...] = ()
        if recipient_role:
            sql += " AND recipient_role = ?"
            params = (recipient_role,)
        with self._tx() as conn:
            (n,) = self._run(conn, sql, params, operation="select").fetchone()
        return int(n)

    def mark_as_read(self, notification_id: int) -> bool:
        with self._tx() as conn:
            cur = self._run(
                conn,
                "UPDATE notifications SET is_read = 1 WHERE id = ?",
                (int(notification_id),),
                operation="update",
            )
            return cur.rowcount == 1
