"""Redis connectivity shared by the broadcast hub and the redis store backend."""

from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as redis

try:  # pragma: no cover - optional in production
    import fakeredis.aioredis as fakeredis
    from fakeredis import FakeServer
except Exception:  # pragma: no cover
    fakeredis = None  # type: ignore

logger = logging.getLogger(__name__)

KEY_PREFIX = "watchparty"

_FAKE_SERVER: Optional[object] = None
if fakeredis:
    _FAKE_SERVER = FakeServer()


def party_key(party_id: str) -> str:
    return f"{KEY_PREFIX}:party:{party_id}"


def log_key(party_id: str) -> str:
    return f"{KEY_PREFIX}:log:{party_id}"


def log_ids_key(party_id: str) -> str:
    return f"{KEY_PREFIX}:log:{party_id}:ids"


class RedisFactory:
    """Lazy Redis connector; ``fakeredis://`` URLs use an in-process server."""

    def __init__(self, url: str) -> None:
        self._url = url
        self._client: redis.Redis | None = None

    @property
    def url(self) -> str:
        return self._url

    async def ensure_connected(self) -> None:
        if self._client is not None:
            return
        self._client = self._build_client()
        logger.debug("Redis client created for %s", self._safe_url())

    async def get_client(self) -> redis.Redis:
        if self._client is None:
            await self.ensure_connected()
        assert self._client is not None
        return self._client

    async def close(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.aclose()
        except Exception:
            logger.debug("Failed to close redis client", exc_info=True)
        self._client = None

    def _build_client(self) -> redis.Redis:
        if self._url.startswith("fakeredis://"):
            if not fakeredis:
                raise RuntimeError("fakeredis is not installed")
            return fakeredis.FakeRedis(server=_FAKE_SERVER, decode_responses=True)
        return redis.from_url(self._url, decode_responses=True)

    def _safe_url(self) -> str:
        # strip credentials before logging
        return self._url.rsplit("@", 1)[-1]
