"""Per-subscription presence, visibility heartbeats and unread cursors."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict

from .errors import InvalidTransition
from .models import LogEntry

logger = logging.getLogger(__name__)


class SubscriptionPhase(str, Enum):
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    VISIBLE = "visible"
    HIDDEN = "hidden"
    DISCONNECTED = "disconnected"


_TRANSITIONS: Dict[SubscriptionPhase, frozenset[SubscriptionPhase]] = {
    SubscriptionPhase.CONNECTING: frozenset({SubscriptionPhase.SUBSCRIBED, SubscriptionPhase.DISCONNECTED}),
    SubscriptionPhase.SUBSCRIBED: frozenset(
        {SubscriptionPhase.VISIBLE, SubscriptionPhase.HIDDEN, SubscriptionPhase.DISCONNECTED}
    ),
    # visible/hidden may repeat: every heartbeat re-marks the current value
    SubscriptionPhase.VISIBLE: frozenset(
        {SubscriptionPhase.VISIBLE, SubscriptionPhase.HIDDEN, SubscriptionPhase.DISCONNECTED}
    ),
    SubscriptionPhase.HIDDEN: frozenset(
        {SubscriptionPhase.VISIBLE, SubscriptionPhase.HIDDEN, SubscriptionPhase.DISCONNECTED}
    ),
    SubscriptionPhase.DISCONNECTED: frozenset(),
}


@dataclass
class PresenceRecord:
    subscription_id: str
    party_id: str
    user_id: str
    phase: SubscriptionPhase = SubscriptionPhase.CONNECTING
    heartbeat_at: float = 0.0
    delivered_seq: int = 0
    read_seq: int = 0
    unread: int = 0


class PresenceTracker:
    """Tracks which subscribers are connected and looking at the party.

    Visibility is a heartbeat: a ``visible`` mark older than ``ttl_seconds``
    is treated as hidden.
    """

    def __init__(self, *, ttl_seconds: float = 30.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._records: Dict[str, PresenceRecord] = {}

    def register(self, subscription_id: str, party_id: str, user_id: str) -> PresenceRecord:
        record = PresenceRecord(subscription_id=subscription_id, party_id=party_id, user_id=user_id)
        self._records[subscription_id] = record
        return record

    def get(self, subscription_id: str) -> PresenceRecord | None:
        return self._records.get(subscription_id)

    def phase(self, subscription_id: str) -> SubscriptionPhase:
        record = self._records.get(subscription_id)
        return record.phase if record else SubscriptionPhase.DISCONNECTED

    def mark_subscribed(self, subscription_id: str) -> None:
        self._transition(self._require(subscription_id), SubscriptionPhase.SUBSCRIBED)

    def mark_visible(self, subscription_id: str, visible: bool) -> None:
        record = self._require(subscription_id)
        self._transition(record, SubscriptionPhase.VISIBLE if visible else SubscriptionPhase.HIDDEN)
        record.heartbeat_at = self._clock()
        if visible:
            record.read_seq = record.delivered_seq
            record.unread = 0

    def mark_disconnected(self, subscription_id: str) -> None:
        record = self._records.pop(subscription_id, None)
        if record is None:
            return
        self._transition(record, SubscriptionPhase.DISCONNECTED)

    def is_visible(self, subscription_id: str) -> bool:
        record = self._records.get(subscription_id)
        if record is None or record.phase is not SubscriptionPhase.VISIBLE:
            return False
        return self._clock() - record.heartbeat_at <= self._ttl

    def is_anyone_else_visible(self, party_id: str, exclude_user_id: str | None = None) -> bool:
        for record in list(self._records.values()):
            if record.party_id != party_id or record.user_id == exclude_user_id:
                continue
            if self.is_visible(record.subscription_id):
                return True
        return False

    def needs_attention(self, subscription_id: str, entry: LogEntry) -> bool:
        """Whether a delivered entry should raise an attention signal.

        Only chat messages qualify, never for their own author, and only for
        subscribers that are not currently visible.
        """

        if entry.type != "message":
            return False
        record = self._records.get(subscription_id)
        if record is None or record.user_id == entry.author_id:
            return False
        return not self.is_visible(subscription_id)

    def record_delivery(self, subscription_id: str, entry: LogEntry) -> bool:
        """Advance the delivery cursor; returns the attention decision."""

        record = self._records.get(subscription_id)
        if record is None:
            return False
        attention = self.needs_attention(subscription_id, entry)
        record.delivered_seq = max(record.delivered_seq, entry.seq)
        if self.is_visible(subscription_id):
            record.read_seq = record.delivered_seq
        elif attention:
            record.unread += 1
        return attention

    def unread_count(self, subscription_id: str) -> int:
        record = self._records.get(subscription_id)
        return record.unread if record else 0

    def snapshot(self, party_id: str) -> list[dict[str, object]]:
        return [
            {
                "subscriptionId": record.subscription_id,
                "userId": record.user_id,
                "phase": record.phase.value,
                "visible": self.is_visible(record.subscription_id),
                "unread": record.unread,
            }
            for record in list(self._records.values())
            if record.party_id == party_id
        ]

    def _require(self, subscription_id: str) -> PresenceRecord:
        record = self._records.get(subscription_id)
        if record is None:
            raise InvalidTransition(f"Unknown subscription {subscription_id}")
        return record

    def _transition(self, record: PresenceRecord, target: SubscriptionPhase) -> None:
        if target not in _TRANSITIONS[record.phase]:
            raise InvalidTransition(
                f"Subscription {record.subscription_id} cannot move from {record.phase.value} to {target.value}"
            )
        if record.phase is not target:
            logger.debug("Subscription %s %s -> %s", record.subscription_id, record.phase.value, target.value)
        record.phase = target
