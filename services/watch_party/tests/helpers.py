"""Shared test doubles and helpers."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Callable

from watchparty_sync.config import Settings
from watchparty_sync.models import LogEntry


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {"REDIS_URL": "fakeredis://", "delivery_retry_delay_ms": 0}
    values.update(overrides)
    return Settings(**values)


class FakeConnection:
    """Stands in for a websocket; can be told to fail a number of sends."""

    def __init__(self, *, fail_times: int = 0) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed: tuple[int, str | None] | None = None
        self.attempts = 0
        self._fail_times = fail_times

    async def send_json(self, data: Any) -> None:
        self.attempts += 1
        if self._fail_times:
            self._fail_times -= 1
            raise RuntimeError("socket is gone")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed = (code, reason)

    def names(self) -> list[str]:
        return [item["name"] for item in self.sent]

    def logs(self) -> list[dict[str, Any]]:
        return [item for item in self.sent if item["name"] == "log"]

    def log_seqs(self) -> list[int]:
        return [item["payload"]["seq"] for item in self.logs()]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def message(party_id: str, entry_id: str, author: str, text: str = "hi") -> LogEntry:
    return LogEntry.new_message(party_id=party_id, entry_id=entry_id, text=text, author_user_id=author)


def activity(party_id: str, entry_id: str, actor: str = "u-host", text: str = "joined the party") -> LogEntry:
    return LogEntry.new_activity(party_id=party_id, entry_id=entry_id, text=text, actor_user_id=actor)


async def collect(iterator: AsyncIterator[LogEntry]) -> list[LogEntry]:
    return [entry async for entry in iterator]
