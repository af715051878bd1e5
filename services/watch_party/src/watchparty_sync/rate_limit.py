"""In-app token bucket limiter for chat posting (dev/staging).

Keys are the caller's user id when present, otherwise the client address.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Dict

from fastapi import HTTPException, Request, status

from .config import get_settings


@dataclass
class _Bucket:
    capacity: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    def consume(self, amount: float = 1.0) -> bool:
        now = time.monotonic()
        self.tokens = min(self.capacity, self.tokens + max(0.0, now - self.last_refill) * self.refill_rate)
        self.last_refill = now
        if self.tokens < amount:
            return False
        self.tokens -= amount
        return True


_buckets: Dict[str, _Bucket] = {}
_MAX_KEYS = 10_000


def _key_from_request(request: Request) -> str:
    user_id = request.headers.get("x-user-id")
    if user_id:
        return f"user:{user_id}"
    client = request.client.host if request.client else "unknown"
    return f"ip:{client}"


def reset_buckets() -> None:
    _buckets.clear()


def rate_limit(request: Request) -> None:
    cfg = get_settings()
    if not cfg.rate_limit_enabled:
        return

    key = _key_from_request(request)
    bucket = _buckets.get(key)
    if bucket is None:
        if len(_buckets) >= _MAX_KEYS:
            _buckets.pop(next(iter(_buckets)), None)
        bucket = _buckets[key] = _Bucket(
            capacity=float(cfg.rate_limit_burst),
            refill_rate=float(cfg.rate_limit_rps),
            tokens=float(cfg.rate_limit_burst),
            last_refill=time.monotonic(),
        )

    if not bucket.consume():
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Rate limit exceeded")
