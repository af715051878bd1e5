"""HTTP client for the watch party sync API."""

from __future__ import annotations

import logging
import time
from typing import Any
from uuid import uuid4

import httpx

from .errors import InvalidEntry, NotMember, PartyNotFound, StateConflict
from .models import LogEntry, LogGroup, Party, PlaybackState

logger = logging.getLogger(__name__)


class WatchPartyClient:
    """Synchronous client acting on behalf of one user.

    Chat messages carry a client generated id; transport failures are retried
    a bounded number of times with the same id, so the server applies the
    message at most once.
    """

    def __init__(
        self,
        base_url: str,
        user_id: str,
        *,
        timeout: float = 5.0,
        max_attempts: int = 3,
        retry_delay: float = 0.2,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self.user_id = user_id
        self._client = httpx.Client(
            base_url=self._base_url,
            timeout=timeout,
            headers={"X-User-Id": user_id},
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "WatchPartyClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def join(self, party_id: str) -> Party:
        resp = self._client.post(f"/parties/{party_id}/members")
        self._raise_for_domain(resp, party_id)
        return Party.model_validate(resp.json())

    def fetch_logs(self, party_id: str, *, cursor: int = 0) -> list[LogEntry]:
        resp = self._client.get(f"/parties/{party_id}/logs", params={"cursor": cursor})
        self._raise_for_domain(resp, party_id)
        return [LogEntry.model_validate(item) for item in resp.json()]

    def fetch_grouped(self, party_id: str) -> list[LogGroup]:
        resp = self._client.get(f"/parties/{party_id}/logs/grouped")
        self._raise_for_domain(resp, party_id)
        return [LogGroup.model_validate(item) for item in resp.json()]

    def send_message(self, party_id: str, text: str, *, entry_id: str | None = None) -> LogEntry:
        body = {"id": entry_id or uuid4().hex, "text": text}
        resp = self._with_retry(lambda: self._client.post(f"/parties/{party_id}/logs/message", json=body))
        self._raise_for_domain(resp, party_id)
        return LogEntry.model_validate(resp.json())

    def update_state(
        self,
        party_id: str,
        *,
        is_playing: bool,
        current_time: float,
        expected_version: int,
    ) -> PlaybackState:
        """PATCH playback state.

        Raises:
            StateConflict: The server holds a newer version; ``exc.current``
                carries it.
        """

        body = {"is_playing": is_playing, "current_time": current_time, "expectedVersion": expected_version}
        resp = self._client.patch(f"/parties/{party_id}/state", json=body)
        if resp.status_code == httpx.codes.CONFLICT:
            current = PlaybackState.model_validate(resp.json()["state"])
            raise StateConflict(party_id, expected_version, current)
        self._raise_for_domain(resp, party_id)
        return PlaybackState.model_validate(resp.json())

    def _with_retry(self, send: Any) -> httpx.Response:
        for attempt in range(1, self._max_attempts + 1):
            try:
                return send()
            except httpx.TransportError as exc:
                if attempt == self._max_attempts:
                    raise
                logger.warning("Request failed (attempt %d/%d): %s", attempt, self._max_attempts, exc)
                time.sleep(self._retry_delay * attempt)
        raise RuntimeError("unreachable")

    def _raise_for_domain(self, resp: httpx.Response, party_id: str) -> None:
        if resp.status_code == httpx.codes.NOT_FOUND:
            raise PartyNotFound(party_id)
        if resp.status_code == httpx.codes.FORBIDDEN:
            raise NotMember(party_id, self.user_id)
        if resp.status_code == httpx.codes.UNPROCESSABLE_ENTITY:
            raise InvalidEntry(_detail(resp))
        resp.raise_for_status()


def _detail(resp: httpx.Response) -> str:
    try:
        detail = resp.json().get("detail")
    except ValueError:
        return resp.text
    return detail if isinstance(detail, str) else str(detail)
