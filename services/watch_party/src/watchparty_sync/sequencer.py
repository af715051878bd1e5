"""Single write path for parties: ordering, deduplication and broadcast."""

from __future__ import annotations

import asyncio
import logging
import weakref
from typing import AsyncIterator, Iterable
from uuid import uuid4

from .config import Settings
from .errors import InvalidEntry, NotMember
from .grouping import group_entries
from .hub import CLOSE_FORBIDDEN, BroadcastHub, Connection, Subscription
from .log_store import LogStore
from .models import AppendResult, Envelope, LogEntry, LogGroup, Party, PlaybackState
from .state_store import PartyStateStore

logger = logging.getLogger(__name__)


def describe_playback_change(previous: PlaybackState, current: PlaybackState) -> str:
    """Activity text for a playback change, phrased to follow the actor's name."""

    if current.is_playing and not previous.is_playing:
        return "played the video"
    if previous.is_playing and not current.is_playing:
        return "paused the video"
    minutes, seconds = divmod(int(current.current_time), 60)
    hours, minutes = divmod(minutes, 60)
    stamp = f"{hours}:{minutes:02d}:{seconds:02d}" if hours else f"{minutes}:{seconds:02d}"
    return f"skipped to {stamp}"


class PartySequencer:
    """Serializes writes per party and publishes them in acceptance order.

    Every party gets its own ``asyncio.Lock``; appends, playback updates and
    the broadcast of their results happen under it, so subscribers observe
    events in exactly the order the stores accepted them. Different parties
    never contend. Locks are held weakly and vanish once no task uses them.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        log_store: LogStore,
        state_store: PartyStateStore,
        hub: BroadcastHub,
    ) -> None:
        self._settings = settings
        self._logs = log_store
        self._states = state_store
        self._hub = hub
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock(self, party_id: str) -> asyncio.Lock:
        lock = self._locks.get(party_id)
        if lock is None:
            lock = self._locks[party_id] = asyncio.Lock()
        return lock

    async def create_party(self, party_id: str | None = None, members: Iterable[str] = ()) -> Party:
        party = await self._states.create(party_id or uuid4().hex, members)
        logger.info("Party %s ready with %d members", party.id, len(party.members))
        return party

    async def get_party(self, party_id: str) -> Party:
        return await self._states.get(party_id)

    async def archive_party(self, party_id: str) -> None:
        async with self._lock(party_id):
            await self._states.archive(party_id)
            await self._logs.drop(party_id)
        await self._close_subscriptions(self._hub.subscribers(party_id), code=1000, reason="Party archived")
        logger.info("Party %s archived", party_id)

    async def join(self, party_id: str, user_id: str) -> Party:
        async with self._lock(party_id):
            party = await self._states.get(party_id)
            if user_id in party.members:
                return party
            party = await self._states.add_member(party_id, user_id)
            await self._append_activity(party_id, "joined the party", user_id)
            return party

    async def leave(self, party_id: str, user_id: str) -> Party:
        async with self._lock(party_id):
            party = await self._states.get(party_id)
            if user_id not in party.members:
                raise NotMember(party_id, user_id)
            party = await self._states.remove_member(party_id, user_id)
            leaving = [s for s in self._hub.subscribers(party_id) if s.user_id == user_id]
            await self._close_subscriptions(leaving, code=CLOSE_FORBIDDEN, reason="Left the party")
            await self._append_activity(party_id, "left the party", user_id)
            return party

    async def post_message(self, party_id: str, entry_id: str, text: str, author_user_id: str) -> AppendResult:
        """Accept a chat message; resubmitting the same ``entry_id`` is a no-op.

        Returns:
            AppendResult: The stored entry and whether it was a replay.

        Raises:
            InvalidEntry: Empty or oversized text.
            PartyNotFound: Unknown party.
            NotMember: Author does not belong to the party.
        """

        text = text.strip()
        if not text:
            raise InvalidEntry("Message text must not be empty")
        if len(text) > self._settings.max_message_length:
            raise InvalidEntry(f"Message text exceeds {self._settings.max_message_length} characters")
        entry = LogEntry.new_message(party_id=party_id, entry_id=entry_id, text=text, author_user_id=author_user_id)

        async with self._lock(party_id):
            party = await self._states.get(party_id)
            if author_user_id not in party.members:
                raise NotMember(party_id, author_user_id)
            result = await self._logs.append(party_id, entry)
            if result.duplicate:
                logger.info("Replayed message %s on party %s", entry_id, party_id)
                return result
            await self._hub.publish(party_id, Envelope.for_log(result.entry))
            return result

    async def update_state(
        self,
        party_id: str,
        *,
        is_playing: bool,
        current_time: float,
        expected_version: int,
        actor_user_id: str | None = None,
    ) -> PlaybackState:
        """Apply a playback change if ``expected_version`` is still current.

        Raises:
            StateConflict: Another update won; carries the current state.
        """

        async with self._lock(party_id):
            party = await self._states.get(party_id)
            if actor_user_id is not None and actor_user_id not in party.members:
                raise NotMember(party_id, actor_user_id)
            proposed = PlaybackState(is_playing=is_playing, current_time=current_time)
            state = await self._states.update(party_id, proposed, expected_version)
            await self._hub.publish(party_id, Envelope.for_state(party_id, state))
            if actor_user_id is not None:
                await self._append_activity(party_id, describe_playback_change(party.state, state), actor_user_id)
            return state

    def read_since(self, party_id: str, cursor: int = 0) -> AsyncIterator[LogEntry]:
        return self._logs.read_since(party_id, cursor)

    async def list_logs(self, party_id: str, cursor: int = 0) -> list[LogEntry]:
        await self._states.get(party_id)
        return [entry async for entry in self._logs.read_since(party_id, cursor)]

    async def grouped_logs(self, party_id: str) -> list[LogGroup]:
        return group_entries(await self.list_logs(party_id))

    async def connect(self, party_id: str, connection: Connection, user_id: str, *, cursor: int = 0) -> Subscription:
        """Subscribe a member, replaying state and log entries after ``cursor``.

        The replay is built under the party lock, so no accepted event can
        land between the replayed backlog and the first live envelope.
        """

        async with self._lock(party_id):
            party = await self._states.get(party_id)
            if user_id not in party.members:
                raise NotMember(party_id, user_id)
            head = await self._logs.head(party_id)
            backlog = [Envelope.for_state(party_id, party.state)]
            async for entry in self._logs.read_since(party_id, cursor):
                backlog.append(Envelope.for_log(entry))
            return await self._hub.subscribe(
                party_id, connection, user_id, backlog=backlog, log_seq=min(cursor, head)
            )

    async def disconnect(self, subscription: Subscription) -> None:
        await self._hub.unsubscribe(subscription)

    async def _close_subscriptions(self, subscriptions: Iterable[Subscription], *, code: int, reason: str) -> None:
        for subscription in subscriptions:
            await self._hub.unsubscribe(subscription)
            try:
                await subscription.connection.close(code=code, reason=reason)
            except RuntimeError:
                logger.debug("Ignored error while closing subscription %s", subscription.id, exc_info=True)

    async def _append_activity(self, party_id: str, text: str, actor_user_id: str | None) -> LogEntry:
        result = await self._logs.append(
            party_id,
            LogEntry.new_activity(party_id=party_id, text=text, actor_user_id=actor_user_id),
        )
        await self._hub.publish(party_id, Envelope.for_log(result.entry))
        return result.entry
