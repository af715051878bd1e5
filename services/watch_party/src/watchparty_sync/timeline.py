"""Client-side view of a party log with optimistic pending entries.

Messages are shown immediately as pending entries, then replaced by id when
the authoritative entry arrives, either as the HTTP response or as a pushed
``log`` envelope, whichever comes first. Re-delivered entries are ignored,
so at-least-once delivery is safe to apply.
"""

from __future__ import annotations

from typing import Any, Dict
from uuid import uuid4

from .grouping import group_entries
from .models import LogEntry, LogGroup, PlaybackState


class ClientTimeline:
    def __init__(self, party_id: str, user_id: str) -> None:
        self.party_id = party_id
        self.user_id = user_id
        self._confirmed: Dict[str, LogEntry] = {}
        self._pending: Dict[str, LogEntry] = {}
        self._cursor = 0
        self._state: PlaybackState | None = None

    @property
    def cursor(self) -> int:
        """Highest applied sequence number; send it when reconnecting."""

        return self._cursor

    @property
    def state(self) -> PlaybackState | None:
        return self._state

    @property
    def entries(self) -> list[LogEntry]:
        confirmed = sorted(self._confirmed.values(), key=lambda entry: entry.seq)
        return confirmed + list(self._pending.values())

    @property
    def pending(self) -> list[LogEntry]:
        return list(self._pending.values())

    def groups(self) -> list[LogGroup]:
        return group_entries(self.entries)

    def add_pending(self, text: str, *, entry_id: str | None = None) -> LogEntry:
        entry = LogEntry.new_message(
            party_id=self.party_id,
            entry_id=entry_id or uuid4().hex,
            text=text,
            author_user_id=self.user_id,
        )
        self._pending[entry.id] = entry
        return entry

    def apply(self, entry: LogEntry) -> bool:
        """Apply an authoritative entry; returns False if it was already known."""

        if entry.id in self._confirmed:
            return False
        self._pending.pop(entry.id, None)
        self._confirmed[entry.id] = entry
        self._cursor = max(self._cursor, entry.seq)
        return True

    confirm = apply

    def fail(self, entry_id: str) -> LogEntry | None:
        """Withdraw a pending entry whose submission gave up."""

        return self._pending.pop(entry_id, None)

    def apply_state(self, state: PlaybackState) -> bool:
        """Apply a playback state unless an equal or newer version is known."""

        if self._state is not None and state.version <= self._state.version:
            return False
        self._state = state
        return True

    def apply_envelope(self, envelope: Dict[str, Any]) -> bool:
        name = envelope.get("name")
        payload = envelope.get("payload") or {}
        if name == "log":
            return self.apply(LogEntry.model_validate(payload))
        if name == "state":
            return self.apply_state(PlaybackState.model_validate(payload))
        return False
