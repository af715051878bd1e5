"""Per-party append-only log of chat messages and activity entries."""

from __future__ import annotations

import logging
from typing import AsyncIterator, Dict, Protocol

from redis.exceptions import WatchError

from .models import AppendResult, LogEntry
from .redis_bus import RedisFactory, log_ids_key, log_key

logger = logging.getLogger(__name__)


class LogStore(Protocol):
    """Ordered, idempotent log storage."""

    async def append(self, party_id: str, entry: LogEntry) -> AppendResult: ...

    def read_since(self, party_id: str, cursor: int = 0) -> AsyncIterator[LogEntry]: ...

    async def head(self, party_id: str) -> int: ...

    async def get(self, party_id: str, entry_id: str) -> LogEntry | None: ...

    async def drop(self, party_id: str) -> None: ...


class _PartyLog:
    __slots__ = ("entries", "by_id")

    def __init__(self) -> None:
        self.entries: list[LogEntry] = []
        self.by_id: Dict[str, LogEntry] = {}


class InMemoryLogStore:
    """Process-local log store.

    There is no await between the id lookup and the write, so every append is
    atomic with respect to other tasks on the event loop.
    """

    def __init__(self, *, page_size: int = 200) -> None:
        self._page_size = page_size
        self._logs: Dict[str, _PartyLog] = {}

    async def append(self, party_id: str, entry: LogEntry) -> AppendResult:
        log = self._logs.setdefault(party_id, _PartyLog())
        existing = log.by_id.get(entry.id)
        if existing is not None:
            logger.debug("Duplicate log entry %s for party %s", entry.id, party_id)
            return AppendResult(entry=existing, duplicate=True)
        accepted = entry.sequenced(len(log.entries) + 1)
        log.entries.append(accepted)
        log.by_id[accepted.id] = accepted
        return AppendResult(entry=accepted)

    async def read_since(self, party_id: str, cursor: int = 0) -> AsyncIterator[LogEntry]:
        log = self._logs.get(party_id)
        if log is None:
            return
        # entries appended after the call are not part of this read
        end = len(log.entries)
        start = max(cursor, 0)
        while start < end:
            page = log.entries[start : min(start + self._page_size, end)]
            for entry in page:
                yield entry
            start += len(page)

    async def head(self, party_id: str) -> int:
        log = self._logs.get(party_id)
        return len(log.entries) if log else 0

    async def get(self, party_id: str, entry_id: str) -> LogEntry | None:
        log = self._logs.get(party_id)
        return log.by_id.get(entry_id) if log else None

    async def drop(self, party_id: str) -> None:
        self._logs.pop(party_id, None)


class RedisLogStore:
    """Durable log store backed by a Redis list plus an id -> seq hash.

    The list index of an entry is always ``seq - 1``; sequence numbers are
    assigned inside a WATCH/MULTI transaction so concurrent writers on several
    nodes never produce gaps or duplicates.
    """

    def __init__(self, redis_factory: RedisFactory, *, page_size: int = 200) -> None:
        self._redis_factory = redis_factory
        self._page_size = page_size

    async def append(self, party_id: str, entry: LogEntry) -> AppendResult:
        client = await self._redis_factory.get_client()
        key = log_key(party_id)
        ids_key = log_ids_key(party_id)
        async with client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key, ids_key)
                    existing_seq = await pipe.hget(ids_key, entry.id)
                    if existing_seq is not None:
                        raw = await pipe.lindex(key, int(existing_seq) - 1)
                        await pipe.unwatch()
                        logger.debug("Duplicate log entry %s for party %s", entry.id, party_id)
                        return AppendResult(entry=LogEntry.model_validate_json(raw), duplicate=True)
                    accepted = entry.sequenced(await pipe.llen(key) + 1)
                    pipe.multi()
                    pipe.rpush(key, accepted.model_dump_json())
                    pipe.hset(ids_key, accepted.id, accepted.seq)
                    await pipe.execute()
                    return AppendResult(entry=accepted)
                except WatchError:
                    logger.debug("Concurrent append on party %s, retrying", party_id)
                    continue

    async def read_since(self, party_id: str, cursor: int = 0) -> AsyncIterator[LogEntry]:
        client = await self._redis_factory.get_client()
        key = log_key(party_id)
        end = await client.llen(key)
        start = max(cursor, 0)
        while start < end:
            stop = min(start + self._page_size, end) - 1
            page = await client.lrange(key, start, stop)
            if not page:
                break
            for raw in page:
                yield LogEntry.model_validate_json(raw)
            start += len(page)

    async def head(self, party_id: str) -> int:
        client = await self._redis_factory.get_client()
        return int(await client.llen(log_key(party_id)))

    async def get(self, party_id: str, entry_id: str) -> LogEntry | None:
        client = await self._redis_factory.get_client()
        seq = await client.hget(log_ids_key(party_id), entry_id)
        if seq is None:
            return None
        raw = await client.lindex(log_key(party_id), int(seq) - 1)
        return LogEntry.model_validate_json(raw) if raw else None

    async def drop(self, party_id: str) -> None:
        client = await self._redis_factory.get_client()
        await client.delete(log_key(party_id), log_ids_key(party_id))
