"""Redis-backed broadcast hub fanning party events out to subscribers."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, Iterable, Protocol, Set
from uuid import uuid4

from .config import Settings
from .errors import TransientDeliveryFailure
from .models import Envelope, LogEntry, party_channel
from .presence import PresenceTracker
from .redis_bus import RedisFactory

logger = logging.getLogger(__name__)

# websocket close codes
CLOSE_TRY_AGAIN = 1013
CLOSE_FORBIDDEN = 4403

LogReader = Callable[[str, int], AsyncIterator[LogEntry]]


class Connection(Protocol):
    """Anything that can receive JSON frames; a Starlette WebSocket fits."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


class ConnectionLimitError(RuntimeError):
    """Raised when a party connection limit is exceeded."""


class ChannelLimitError(RuntimeError):
    """Raised when the hub tracks too many party channels."""


class Subscription:
    """Binding of one connection to one party channel.

    Envelopes are queued in an outbox and drained by a dedicated delivery task,
    so a slow or failing subscriber never holds up the others. ``log_seq`` is
    the last log sequence number sent to the connection.
    """

    def __init__(
        self,
        *,
        party_id: str,
        user_id: str,
        connection: Connection,
        queue_limit: int,
        backlog: Iterable[Envelope] = (),
        log_seq: int = 0,
    ) -> None:
        self.id = uuid4().hex
        self.party_id = party_id
        self.user_id = user_id
        self.connection = connection
        self.backlog: list[Envelope] = list(backlog)
        self.outbox: asyncio.Queue[tuple[Envelope, LogEntry | None]] = asyncio.Queue(maxsize=queue_limit)
        self.task: asyncio.Task[None] | None = None
        self.log_seq = log_seq
        self.active = True

    def offer(self, envelope: Envelope, entry: LogEntry | None) -> bool:
        if not self.active:
            return False
        try:
            self.outbox.put_nowait((envelope, entry))
        except asyncio.QueueFull:
            return False
        return True

    def discard_pending(self) -> int:
        dropped = 0
        while not self.outbox.empty():
            self.outbox.get_nowait()
            dropped += 1
        self.backlog.clear()
        return dropped

    def __repr__(self) -> str:
        return f"Subscription(id={self.id!r}, party_id={self.party_id!r}, user_id={self.user_id!r})"


class PartyChannel:
    """Subscribers and the cross-node listener of a single party."""

    def __init__(self, *, party_id: str, redis_factory: RedisFactory, node_id: str) -> None:
        self.party_id = party_id
        self.name = party_channel(party_id)
        self._redis_factory = redis_factory
        self._node_id = node_id
        # copy-on-write so fan-out iterates an immutable snapshot
        self._subscriptions: tuple[Subscription, ...] = ()
        self._listener: asyncio.Task[None] | None = None
        self._on_remote: Any = None

    @property
    def subscriptions(self) -> tuple[Subscription, ...]:
        return self._subscriptions

    def add(self, subscription: Subscription) -> None:
        self._subscriptions = (*self._subscriptions, subscription)

    def remove(self, subscription: Subscription) -> bool:
        remaining = tuple(s for s in self._subscriptions if s is not subscription)
        changed = len(remaining) != len(self._subscriptions)
        self._subscriptions = remaining
        return changed

    async def start(self, on_remote) -> None:  # type: ignore[no-untyped-def]
        if self._listener is not None:
            return
        self._on_remote = on_remote
        redis = await self._redis_factory.get_client()
        pubsub = redis.pubsub()
        await pubsub.subscribe(self.name)
        self._listener = asyncio.create_task(self._consume(pubsub), name=f"party-listener-{self.party_id}")

    async def stop(self) -> None:
        if self._listener:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None

    async def _consume(self, pubsub) -> None:  # type: ignore[no-untyped-def]
        try:
            while True:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if not message:
                    await asyncio.sleep(0.01)
                    continue
                data = message.get("data")
                if not data:
                    continue
                try:
                    decoded = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning("Skip invalid pubsub message for %s", self.name)
                    continue
                if decoded.get("origin") == self._node_id:
                    continue
                try:
                    envelope = Envelope.model_validate(decoded.get("envelope"))
                except Exception as exc:  # pylint: disable=broad-except
                    logger.warning("Invalid envelope from pubsub on %s: %s", self.name, exc)
                    continue
                self._on_remote(self.party_id, envelope)
        except asyncio.CancelledError:
            logger.debug("Party listener %s cancelled", self.name)
            raise
        finally:
            try:
                await pubsub.unsubscribe(self.name)
                await pubsub.aclose()
            except Exception:
                logger.debug("Failed to close pubsub for %s", self.name, exc_info=True)


class BroadcastHub:
    """Fans accepted log entries and playback states out to party members.

    Local events are queued at once while events accepted on other nodes
    arrive later through pub/sub, so log envelopes can reach a subscriber
    ahead of a gap. With a ``log_reader`` the hub fills the gap from the log
    store before sending; envelopes already sent are skipped either way.
    """

    def __init__(
        self,
        settings: Settings,
        presence: PresenceTracker,
        *,
        redis_factory: RedisFactory | None = None,
        log_reader: LogReader | None = None,
    ) -> None:
        self._settings = settings
        self._presence = presence
        self._redis_factory = redis_factory or RedisFactory(settings.redis_url)
        self._log_reader = log_reader
        self._channels: Dict[str, PartyChannel] = {}
        self._lock = asyncio.Lock()
        self._node_id = uuid4().hex
        self._background: Set[asyncio.Task[None]] = set()

    @property
    def presence(self) -> PresenceTracker:
        return self._presence

    async def start(self) -> None:
        await self._redis_factory.ensure_connected()

    async def stop(self) -> None:
        async with self._lock:
            channels = list(self._channels.values())
            self._channels.clear()
        for channel in channels:
            for subscription in channel.subscriptions:
                await self._cancel_delivery(subscription)
                self._presence.mark_disconnected(subscription.id)
            await channel.stop()
        background = list(self._background)
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        await self._redis_factory.close()

    def subscribers(self, party_id: str) -> tuple[Subscription, ...]:
        channel = self._channels.get(party_id)
        return channel.subscriptions if channel else ()

    async def subscribe(
        self,
        party_id: str,
        connection: Connection,
        user_id: str,
        *,
        backlog: Iterable[Envelope] = (),
        log_seq: int = 0,
    ) -> Subscription:
        """Register ``connection`` on the party channel.

        ``backlog`` is delivered before any live envelope. Callers hold the
        party write lock while building it so nothing falls in between.
        ``log_seq`` is the sequence number the backlog continues from.
        """

        subscription = Subscription(
            party_id=party_id,
            user_id=user_id,
            connection=connection,
            queue_limit=self._settings.subscriber_queue_limit,
            backlog=backlog,
            log_seq=log_seq,
        )
        async with self._lock:
            channel = self._acquire_channel_locked(party_id)
            if len(channel.subscriptions) >= self._settings.max_connections_per_party:
                raise ConnectionLimitError(
                    f"Too many subscribers for party {party_id} (limit={self._settings.max_connections_per_party})"
                )
            await channel.start(self._fan_out)
            self._presence.register(subscription.id, party_id, user_id)
            channel.add(subscription)
        self._presence.mark_subscribed(subscription.id)
        subscription.task = asyncio.create_task(
            self._deliver(subscription), name=f"party-delivery-{subscription.id}"
        )
        logger.debug("Subscription %s joined party=%s user=%s", subscription.id, party_id, user_id)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        """Detach the subscription and discard whatever it has not received."""

        await self._cancel_delivery(subscription)
        await self._detach(subscription)

    async def publish(self, party_id: str, event: Envelope) -> int:
        """Deliver to local subscribers and propagate to other nodes via Redis.

        Returns:
            int: Number of local subscribers the event was queued for.
        """

        queued = self._fan_out(party_id, event)
        payload = json.dumps({"origin": self._node_id, "envelope": event.model_dump(mode="json")})
        try:
            redis = await self._redis_factory.get_client()
            await redis.publish(event.channel, payload)
        except Exception as exc:  # pragma: no cover - best-effort
            logger.warning("Failed to publish to Redis: %s", exc)
        logger.info("Broadcast %s to %s for %d receivers", event.name, event.channel, queued)
        return queued

    def _fan_out(self, party_id: str, event: Envelope) -> int:
        channel = self._channels.get(party_id)
        if channel is None:
            return 0
        entry = event.log_entry()
        queued = 0
        for subscription in channel.subscriptions:
            if subscription.offer(event, entry):
                queued += 1
            elif subscription.active:
                logger.warning("Outbox full for subscription %s, dropping it", subscription.id)
                self._spawn(self._drop(subscription, reason="Subscriber too slow"))
        return queued

    async def _deliver(self, subscription: Subscription) -> None:
        try:
            while subscription.backlog:
                envelope = subscription.backlog.pop(0)
                await self._deliver_one(subscription, envelope, envelope.log_entry())
            while True:
                envelope, entry = await subscription.outbox.get()
                await self._deliver_one(subscription, envelope, entry)
        except TransientDeliveryFailure as exc:
            logger.warning("%s", exc)
            await self._drop(subscription, reason="Delivery failed")

    async def _deliver_one(self, subscription: Subscription, envelope: Envelope, entry: LogEntry | None) -> None:
        if entry is None:
            await self._send(subscription, envelope, None)
            return
        if entry.seq <= subscription.log_seq:
            logger.debug("Skip seq %d for %s, already sent", entry.seq, subscription.id)
            return
        if entry.seq > subscription.log_seq + 1 and self._log_reader is not None:
            async for missing in self._log_reader(subscription.party_id, subscription.log_seq):
                if missing.seq >= entry.seq:
                    continue
                await self._send(subscription, Envelope.for_log(missing), missing)
                subscription.log_seq = missing.seq
        await self._send(subscription, envelope, entry)
        subscription.log_seq = entry.seq

    async def _send(self, subscription: Subscription, envelope: Envelope, entry: LogEntry | None) -> None:
        if entry is not None:
            attention = self._presence.record_delivery(subscription.id, entry)
            envelope = envelope.model_copy(update={"attention": attention})
        payload = envelope.model_dump(mode="json")
        attempts = self._settings.delivery_max_attempts
        delay = self._settings.delivery_retry_delay_ms / 1000
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                await subscription.connection.send_json(payload)
                return
            except Exception as exc:  # pylint: disable=broad-except
                last_error = exc
                logger.debug("Send to %s failed (attempt %d/%d): %s", subscription.id, attempt, attempts, exc)
                if attempt < attempts:
                    await asyncio.sleep(delay * (2 ** (attempt - 1)))
        raise TransientDeliveryFailure(subscription.id, attempts, cause=last_error)

    async def _drop(self, subscription: Subscription, *, reason: str) -> None:
        if not subscription.active:
            return
        subscription.active = False
        await self._cancel_delivery(subscription)
        await self._detach(subscription)
        try:
            await subscription.connection.close(code=CLOSE_TRY_AGAIN, reason=reason)
        except Exception:
            logger.debug("Ignored error while closing subscription %s", subscription.id, exc_info=True)

    async def _detach(self, subscription: Subscription) -> None:
        subscription.active = False
        dropped = subscription.discard_pending()
        if dropped:
            logger.debug("Discarded %d undelivered envelopes for %s", dropped, subscription.id)
        self._presence.mark_disconnected(subscription.id)
        channel = self._channels.get(subscription.party_id)
        if channel is not None and channel.remove(subscription):
            logger.debug("Subscription %s left party=%s", subscription.id, subscription.party_id)
            await self._maybe_cleanup_channel(channel)

    async def _cancel_delivery(self, subscription: Subscription) -> None:
        task = subscription.task
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _acquire_channel_locked(self, party_id: str) -> PartyChannel:
        existing = self._channels.get(party_id)
        if existing is not None:
            return existing
        if len(self._channels) >= self._settings.max_parties:
            raise ChannelLimitError("Party channel limit reached")
        channel = PartyChannel(party_id=party_id, redis_factory=self._redis_factory, node_id=self._node_id)
        self._channels[party_id] = channel
        return channel

    async def _maybe_cleanup_channel(self, channel: PartyChannel) -> None:
        if channel.subscriptions:
            return
        async with self._lock:
            if channel.subscriptions or self._channels.get(channel.party_id) is not channel:
                return
            self._channels.pop(channel.party_id, None)
        await channel.stop()

    def _spawn(self, coro) -> None:  # type: ignore[no-untyped-def]
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
