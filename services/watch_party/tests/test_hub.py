from __future__ import annotations

import asyncio
from typing import Any
from uuid import uuid4

import pytest

from helpers import FakeConnection, make_settings, message, wait_until

from watchparty_sync.hub import CLOSE_TRY_AGAIN, BroadcastHub, ConnectionLimitError
from watchparty_sync.log_store import InMemoryLogStore, RedisLogStore
from watchparty_sync.models import Envelope, PlaybackState
from watchparty_sync.presence import PresenceTracker
from watchparty_sync.redis_bus import RedisFactory
from watchparty_sync.sequencer import PartySequencer
from watchparty_sync.state_store import RedisPartyStateStore


def _hub(**overrides) -> BroadcastHub:  # type: ignore[no-untyped-def]
    return BroadcastHub(make_settings(**overrides), PresenceTracker())


def _party() -> str:
    return f"party-{uuid4().hex}"


def _log(party: str, seq: int, author: str = "u1") -> Envelope:
    return Envelope.for_log(message(party, f"m{seq}", author).sequenced(seq))


@pytest.mark.asyncio
async def test_publish_preserves_per_party_order() -> None:
    hub = _hub()
    await hub.start()
    party = _party()
    conn_a, conn_b = FakeConnection(), FakeConnection()
    try:
        await hub.subscribe(party, conn_a, "u2")
        await hub.subscribe(party, conn_b, "u3")

        for seq in range(1, 21):
            assert await hub.publish(party, _log(party, seq)) == 2

        await wait_until(lambda: len(conn_a.sent) == 20 and len(conn_b.sent) == 20)
        assert conn_a.log_seqs() == list(range(1, 21))
        assert conn_b.log_seqs() == list(range(1, 21))
    finally:
        await hub.stop()


@pytest.mark.asyncio
async def test_parties_are_isolated() -> None:
    hub = _hub()
    await hub.start()
    party_a, party_b = _party(), _party()
    conn_a, conn_b = FakeConnection(), FakeConnection()
    try:
        await hub.subscribe(party_a, conn_a, "u1")
        await hub.subscribe(party_b, conn_b, "u1")

        await hub.publish(party_a, Envelope.for_state(party_a, PlaybackState(is_playing=True, version=1)))

        await wait_until(lambda: len(conn_a.sent) == 1)
        assert conn_a.sent[0]["channel"] == f"party.{party_a}"
        assert conn_a.sent[0]["payload"] == {"is_playing": True, "current_time": 0.0, "version": 1}
        assert conn_b.sent == []
    finally:
        await hub.stop()


@pytest.mark.asyncio
async def test_backlog_is_delivered_before_live_events() -> None:
    hub = _hub()
    await hub.start()
    party = _party()
    conn = FakeConnection()
    try:
        backlog = [_log(party, 1), _log(party, 2)]
        await hub.subscribe(party, conn, "u2", backlog=backlog)
        await hub.publish(party, _log(party, 3))

        await wait_until(lambda: len(conn.sent) == 3)
        assert conn.log_seqs() == [1, 2, 3]
    finally:
        await hub.stop()


@pytest.mark.asyncio
async def test_attention_flag_is_computed_per_recipient() -> None:
    hub = _hub()
    await hub.start()
    party = _party()
    author, hidden, visible = FakeConnection(), FakeConnection(), FakeConnection()
    try:
        await hub.subscribe(party, author, "u1")
        await hub.subscribe(party, hidden, "u2")
        visible_sub = await hub.subscribe(party, visible, "u3")
        hub.presence.mark_visible(visible_sub.id, True)

        await hub.publish(party, _log(party, 1, author="u1"))

        await wait_until(lambda: all(len(c.sent) == 1 for c in (author, hidden, visible)))
        assert author.sent[0]["attention"] is False
        assert hidden.sent[0]["attention"] is True
        assert visible.sent[0]["attention"] is False
    finally:
        await hub.stop()


@pytest.mark.asyncio
async def test_transient_failure_is_retried_for_that_subscriber_only() -> None:
    hub = _hub(delivery_max_attempts=3)
    await hub.start()
    party = _party()
    flaky, healthy = FakeConnection(fail_times=2), FakeConnection()
    try:
        await hub.subscribe(party, flaky, "u2")
        await hub.subscribe(party, healthy, "u3")

        await hub.publish(party, _log(party, 1))

        await wait_until(lambda: len(flaky.sent) == 1 and len(healthy.sent) == 1)
        assert flaky.attempts == 3
        assert flaky.closed is None
    finally:
        await hub.stop()


@pytest.mark.asyncio
async def test_subscriber_is_dropped_after_retries_are_exhausted() -> None:
    hub = _hub(delivery_max_attempts=2)
    await hub.start()
    party = _party()
    broken, healthy = FakeConnection(fail_times=10), FakeConnection()
    try:
        broken_sub = await hub.subscribe(party, broken, "u2")
        await hub.subscribe(party, healthy, "u3")

        await hub.publish(party, _log(party, 1))
        await wait_until(lambda: broken.closed is not None)
        await hub.publish(party, _log(party, 2))

        await wait_until(lambda: len(healthy.sent) == 2)
        assert broken.closed is not None and broken.closed[0] == CLOSE_TRY_AGAIN
        assert broken.attempts == 2
        assert broken_sub not in hub.subscribers(party)
        assert hub.presence.get(broken_sub.id) is None
    finally:
        await hub.stop()


@pytest.mark.asyncio
async def test_unsubscribe_discards_undelivered_events() -> None:
    hub = _hub()
    await hub.start()
    party = _party()
    conn = FakeConnection()
    try:
        subscription = await hub.subscribe(party, conn, "u2")
        await hub.unsubscribe(subscription)

        assert await hub.publish(party, _log(party, 1)) == 0
        assert subscription.outbox.empty()
        assert hub.subscribers(party) == ()
    finally:
        await hub.stop()


@pytest.mark.asyncio
async def test_connection_limit() -> None:
    hub = _hub(max_connections_per_party=1)
    await hub.start()
    party = _party()
    try:
        await hub.subscribe(party, FakeConnection(), "u1")
        with pytest.raises(ConnectionLimitError):
            await hub.subscribe(party, FakeConnection(), "u2")
    finally:
        await hub.stop()


@pytest.mark.asyncio
async def test_events_reach_subscribers_on_other_nodes() -> None:
    node_a, node_b = _hub(), _hub()
    await node_a.start()
    await node_b.start()
    party = _party()
    local, remote = FakeConnection(), FakeConnection()
    try:
        await node_a.subscribe(party, local, "u1")
        await node_b.subscribe(party, remote, "u2")

        await node_a.publish(party, _log(party, 1, author="u1"))

        await wait_until(lambda: len(remote.sent) == 1 and len(local.sent) == 1)
        assert remote.log_seqs() == [1]
        assert remote.sent[0]["attention"] is True
    finally:
        await node_a.stop()
        await node_b.stop()


class StalledConnection(FakeConnection):
    """Blocks every send until released."""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()

    async def send_json(self, data: Any) -> None:
        await self.release.wait()
        await super().send_json(data)


@pytest.mark.asyncio
async def test_gap_is_filled_from_the_log_before_a_later_entry() -> None:
    store = InMemoryLogStore()
    party = _party()
    for i in range(1, 4):
        await store.append(party, message(party, f"m{i}", "u1"))
    hub = BroadcastHub(make_settings(), PresenceTracker(), log_reader=store.read_since)
    await hub.start()
    conn = FakeConnection()
    try:
        await hub.subscribe(party, conn, "u2")

        # entry 3 shows up first, 1 and 2 were accepted elsewhere and arrive late
        await hub.publish(party, _log(party, 3))
        await wait_until(lambda: len(conn.sent) == 3)
        await hub.publish(party, _log(party, 1))
        await hub.publish(party, _log(party, 2))
        await hub.publish(party, Envelope.for_state(party, PlaybackState(version=1)))

        await wait_until(lambda: len(conn.sent) == 4)
        assert conn.log_seqs() == [1, 2, 3]
        assert conn.names()[-1] == "state"
    finally:
        await hub.stop()


@pytest.mark.asyncio
async def test_two_nodes_deliver_in_sequence_order() -> None:
    settings = make_settings()
    factory = RedisFactory("fakeredis://")
    log_store = RedisLogStore(factory)
    state_store = RedisPartyStateStore(factory)
    nodes = []
    for _ in range(2):
        hub = BroadcastHub(settings, PresenceTracker(), log_reader=log_store.read_since)
        nodes.append(
            (PartySequencer(settings=settings, log_store=log_store, state_store=state_store, hub=hub), hub)
        )
    (node_a, hub_a), (node_b, hub_b) = nodes
    await hub_a.start()
    await hub_b.start()
    party = _party()
    watcher = FakeConnection()
    try:
        await node_a.create_party(party, ["u1", "u2", "u3"])
        await node_b.connect(party, watcher, "u3")

        await node_a.post_message(party, "m1", "first", "u1")
        await node_b.post_message(party, "m2", "second", "u2")
        await node_a.post_message(party, "m3", "third", "u1")

        await wait_until(lambda: len(watcher.logs()) == 3)
        await asyncio.sleep(0.1)
        assert watcher.log_seqs() == [1, 2, 3]
    finally:
        await hub_a.stop()
        await hub_b.stop()
        await factory.close()


@pytest.mark.asyncio
async def test_full_outbox_drop_stops_the_delivery_task() -> None:
    hub = _hub(subscriber_queue_limit=1)
    await hub.start()
    party = _party()
    conn = StalledConnection()
    try:
        subscription = await hub.subscribe(party, conn, "u2")
        await hub.publish(party, _log(party, 1))
        await wait_until(lambda: subscription.outbox.empty())
        await hub.publish(party, _log(party, 2))

        await hub.publish(party, _log(party, 3))

        await wait_until(lambda: conn.closed is not None)
        assert conn.closed[0] == CLOSE_TRY_AGAIN
        assert subscription.task is not None
        await wait_until(subscription.task.done)
        assert hub.subscribers(party) == ()
    finally:
        await hub.stop()


@pytest.mark.asyncio
async def test_stop_waits_for_pending_drops() -> None:
    hub = _hub(subscriber_queue_limit=1)
    await hub.start()
    party = _party()
    subscription = await hub.subscribe(party, StalledConnection(), "u2")
    await hub.publish(party, _log(party, 1))
    await wait_until(lambda: subscription.outbox.empty())
    await hub.publish(party, _log(party, 2))
    # fan out without yielding so the spawned drop has not run yet
    assert hub._fan_out(party, _log(party, 3)) == 0
    pending = list(hub._background)

    await hub.stop()

    assert pending
    assert all(task.done() for task in pending)
