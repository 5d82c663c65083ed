# tests/fakes.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from cronledger.core.ports import NotificationSink, OutboundMessenger


@dataclass(slots=True)
class FakeNotifier(NotificationSink):
    """Records every payload it is asked to deliver."""

    sent: list[dict[str, Any]] = field(default_factory=list)

    async def send(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)


class FailingNotifier:
    """A sink whose transport is down."""

    def __init__(self, message: str = "channel down") -> None:
        self.message = message
        self.calls = 0

    async def send(self, payload: dict[str, Any]) -> None:
        self.calls += 1
        raise RuntimeError(self.message)


@dataclass(slots=True)
class SentMessage:
    text: str
    room_id: str | None


@dataclass(slots=True)
class FakeMessenger(OutboundMessenger):
    """Fake OutboundMessenger used by notifier tests."""

    sent: list[SentMessage] = field(default_factory=list)

    async def send_text(self, *, text: str, room_id: str | None = None) -> None:
        self.sent.append(SentMessage(text=text, room_id=room_id))
