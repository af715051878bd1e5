"""Party records and optimistic-concurrency playback state."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Protocol

from redis.exceptions import WatchError

from .errors import PartyNotFound, StateConflict
from .models import Party, PlaybackState
from .redis_bus import RedisFactory, party_key

logger = logging.getLogger(__name__)


class PartyStateStore(Protocol):
    """Storage for parties, their members and playback state."""

    async def create(self, party_id: str, members: Iterable[str] = ()) -> Party: ...

    async def get(self, party_id: str) -> Party: ...

    async def archive(self, party_id: str) -> None: ...

    async def add_member(self, party_id: str, user_id: str) -> Party: ...

    async def remove_member(self, party_id: str, user_id: str) -> Party: ...

    async def update(self, party_id: str, proposed: PlaybackState, expected_version: int) -> PlaybackState: ...


def _apply_update(party: Party, proposed: PlaybackState, expected_version: int) -> Party:
    """Return the party with ``proposed`` applied, or raise StateConflict."""

    current = party.state
    if current.version != expected_version:
        raise StateConflict(party.id, expected_version, current)
    new_state = PlaybackState(
        is_playing=proposed.is_playing,
        current_time=proposed.current_time,
        version=current.version + 1,
        updated_at=datetime.now(tz=timezone.utc),
    )
    return party.model_copy(update={"state": new_state})


def _with_member(user_id: str) -> Callable[[Party], Party]:
    def mutate(party: Party) -> Party:
        if user_id in party.members:
            return party
        return party.model_copy(update={"members": sorted({*party.members, user_id})})

    return mutate


def _without_member(user_id: str) -> Callable[[Party], Party]:
    def mutate(party: Party) -> Party:
        return party.model_copy(update={"members": [m for m in party.members if m != user_id]})

    return mutate


class InMemoryPartyStateStore:
    """Process-local party store; records are replaced, never mutated in place."""

    def __init__(self) -> None:
        self._parties: Dict[str, Party] = {}

    async def create(self, party_id: str, members: Iterable[str] = ()) -> Party:
        existing = self._parties.get(party_id)
        if existing is not None:
            return existing
        party = Party(id=party_id, members=sorted(set(members)))
        self._parties[party_id] = party
        return party

    async def get(self, party_id: str) -> Party:
        party = self._parties.get(party_id)
        if party is None:
            raise PartyNotFound(party_id)
        return party

    async def archive(self, party_id: str) -> None:
        if self._parties.pop(party_id, None) is None:
            raise PartyNotFound(party_id)

    async def add_member(self, party_id: str, user_id: str) -> Party:
        return self._mutate(party_id, _with_member(user_id))

    async def remove_member(self, party_id: str, user_id: str) -> Party:
        return self._mutate(party_id, _without_member(user_id))

    async def update(self, party_id: str, proposed: PlaybackState, expected_version: int) -> PlaybackState:
        party = self._mutate(party_id, lambda p: _apply_update(p, proposed, expected_version))
        return party.state

    def _mutate(self, party_id: str, mutate: Callable[[Party], Party]) -> Party:
        party = self._parties.get(party_id)
        if party is None:
            raise PartyNotFound(party_id)
        updated = mutate(party)
        self._parties[party_id] = updated
        return updated


class RedisPartyStateStore:
    """Durable party store; each party is one JSON document guarded by WATCH."""

    def __init__(self, redis_factory: RedisFactory) -> None:
        self._redis_factory = redis_factory

    async def create(self, party_id: str, members: Iterable[str] = ()) -> Party:
        client = await self._redis_factory.get_client()
        party = Party(id=party_id, members=sorted(set(members)))
        created = await client.set(party_key(party_id), party.model_dump_json(), nx=True)
        if created:
            return party
        return await self.get(party_id)

    async def get(self, party_id: str) -> Party:
        client = await self._redis_factory.get_client()
        raw = await client.get(party_key(party_id))
        if raw is None:
            raise PartyNotFound(party_id)
        return Party.model_validate_json(raw)

    async def archive(self, party_id: str) -> None:
        client = await self._redis_factory.get_client()
        if not await client.delete(party_key(party_id)):
            raise PartyNotFound(party_id)

    async def add_member(self, party_id: str, user_id: str) -> Party:
        return await self._mutate(party_id, _with_member(user_id))

    async def remove_member(self, party_id: str, user_id: str) -> Party:
        return await self._mutate(party_id, _without_member(user_id))

    async def update(self, party_id: str, proposed: PlaybackState, expected_version: int) -> PlaybackState:
        party = await self._mutate(party_id, lambda p: _apply_update(p, proposed, expected_version))
        return party.state

    async def _mutate(self, party_id: str, mutate: Callable[[Party], Party]) -> Party:
        client = await self._redis_factory.get_client()
        key = party_key(party_id)
        async with client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        await pipe.unwatch()
                        raise PartyNotFound(party_id)
                    try:
                        updated = mutate(Party.model_validate_json(raw))
                    except StateConflict:
                        await pipe.unwatch()
                        raise
                    pipe.multi()
                    pipe.set(key, updated.model_dump_json())
                    await pipe.execute()
                    return updated
                except WatchError:
                    logger.debug("Concurrent write on party %s, retrying", party_id)
                    continue
