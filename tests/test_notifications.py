# tests/test_notifications.py

from __future__ import annotations

import sqlite3
from types import SimpleNamespace

import pytest

from cronledger.monitoring.performance import clear_slow_query_log, get_slow_query_log, set_slow_query_threshold
from cronledger.notifications.matrix_messenger import MatrixMessenger, create_matrix_client
from cronledger.notifications.notification_store import NotificationStore
from cronledger.notifications.notifier import (
    FanoutNotifier,
    MessengerNotifier,
    StoreNotifier,
    render_notification,
)
from cronledger.tasks.errors import StorageError

from .fakes import FailingNotifier, FakeMessenger, FakeNotifier

PAYLOAD = {
    "template_code": "TASK_EXECUTION_FAILED",
    "recipient_role": "director",
    "data": {
        "task_code": "nightly-billing",
        "task_name": "Nightly billing",
        "error_message": "ledger locked",
        "timestamp": "2024-01-15T19:00:05+00:00",
        "execution_id": 42,
    },
}


def test_render_failure_notification() -> None:
    title, message = render_notification(PAYLOAD)
    assert title == "Scheduled task failed: Nightly billing"
    assert "nightly-billing" in message
    assert "Error: ledger locked" in message
    assert "Execution id: 42" in message


def test_render_unknown_template_falls_back() -> None:
    title, message = render_notification({"template_code": "SOMETHING_ELSE", "data": {"k": 1}})
    assert title == "SOMETHING_ELSE"
    assert "k" in message


@pytest.mark.asyncio
async def test_store_notifier_fills_the_inbox(tmp_path) -> None:
    store = NotificationStore(tmp_path / "n.sqlite3")
    await StoreNotifier(store).send(PAYLOAD)

    (n,) = store.list_notifications(recipient_role="director")
    assert n.template_code == "TASK_EXECUTION_FAILED"
    assert n.title == "Scheduled task failed: Nightly billing"
    assert n.data["execution_id"] == 42
    assert n.is_read is False
    assert store.count_unread("director") == 1
    assert store.count_unread("accounting") == 0

    assert store.mark_as_read(n.id)
    assert store.count_unread() == 0
    assert store.list_notifications(unread_only=True) == []
    assert not store.mark_as_read(999)


def test_notification_queries_feed_the_slow_query_log(tmp_path) -> None:
    store = NotificationStore(tmp_path / "n.sqlite3")
    set_slow_query_threshold(0)
    clear_slow_query_log()

    nid = store.add_notification(
        template_code="TASK_EXECUTION_FAILED", recipient_role="director", title="t", message="m"
    )
    store.mark_as_read(nid)
    store.count_unread()

    entries = get_slow_query_log()
    assert {e.table for e in entries} == {"notifications"}
    assert [e.operation for e in entries] == ["insert", "update", "select"]


def test_notification_store_wraps_sqlite_errors(tmp_path) -> None:
    db = tmp_path / "n.sqlite3"
    store = NotificationStore(db)

    conn = sqlite3.connect(str(db))
    try:
        conn.execute("DROP TABLE notifications")
        conn.commit()
    finally:
        conn.close()

    with pytest.raises(StorageError):
        store.list_notifications()


@pytest.mark.asyncio
async def test_messenger_notifier_prefixes_role() -> None:
    messenger = FakeMessenger()
    await MessengerNotifier(messenger, room_id="!ops:example.org").send(PAYLOAD)

    (msg,) = messenger.sent
    assert msg.room_id == "!ops:example.org"
    assert msg.text.startswith("[director] Scheduled task failed: Nightly billing")


@pytest.mark.asyncio
async def test_fanout_skips_failing_sink() -> None:
    first = FakeNotifier()
    broken = FailingNotifier()
    last = FakeNotifier()

    await FanoutNotifier([first, broken, last]).send(PAYLOAD)

    assert first.sent == [PAYLOAD]
    assert broken.calls == 1
    assert last.sent == [PAYLOAD]


@pytest.mark.asyncio
async def test_matrix_messenger_requires_a_room(tmp_path) -> None:
    settings = SimpleNamespace(matrix_room="", matrix_store_path=tmp_path)
    with pytest.raises(RuntimeError, match="No Matrix room"):
        await MatrixMessenger(settings).send_text(text="hello")


@pytest.mark.asyncio
async def test_matrix_client_not_created_without_homeserver(tmp_path) -> None:
    settings = SimpleNamespace(matrix_homeserver="", matrix_user_id="", matrix_store_path=tmp_path)
    assert await create_matrix_client(settings) is None
