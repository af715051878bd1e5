from __future__ import annotations

from typing import Iterator

import pytest

from watchparty_sync.config import get_settings
from watchparty_sync.rate_limit import reset_buckets


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    monkeypatch.setenv("REDIS_URL", "fakeredis://")
    get_settings.cache_clear()
    reset_buckets()
    yield
    get_settings.cache_clear()
    reset_buckets()
