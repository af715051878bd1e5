from __future__ import annotations

import pytest

from helpers import activity, message

from watchparty_sync.errors import InvalidTransition
from watchparty_sync.presence import PresenceTracker, SubscriptionPhase


class Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _tracker(clock: Clock | None = None) -> PresenceTracker:
    tracker = PresenceTracker(ttl_seconds=30, clock=clock or Clock())
    for sub_id, user_id in (("s-author", "u1"), ("s-other", "u2")):
        tracker.register(sub_id, "p1", user_id)
        tracker.mark_subscribed(sub_id)
    return tracker


def test_lifecycle_transitions() -> None:
    tracker = PresenceTracker()
    tracker.register("s1", "p1", "u1")
    assert tracker.phase("s1") is SubscriptionPhase.CONNECTING

    with pytest.raises(InvalidTransition):
        tracker.mark_visible("s1", True)

    tracker.mark_subscribed("s1")
    tracker.mark_visible("s1", True)
    tracker.mark_visible("s1", False)
    assert tracker.phase("s1") is SubscriptionPhase.HIDDEN

    tracker.mark_disconnected("s1")
    assert tracker.phase("s1") is SubscriptionPhase.DISCONNECTED
    with pytest.raises(InvalidTransition):
        tracker.mark_visible("s1", True)


def test_author_never_gets_attention_for_own_message() -> None:
    tracker = _tracker()
    entry = message("p1", "m1", "u1")

    assert tracker.needs_attention("s-author", entry) is False
    assert tracker.needs_attention("s-other", entry) is True


def test_visible_subscriber_and_activity_entries_get_no_attention() -> None:
    tracker = _tracker()
    tracker.mark_visible("s-other", True)

    assert tracker.needs_attention("s-other", message("p1", "m1", "u1")) is False
    assert tracker.needs_attention("s-author", activity("p1", "a1", actor="u2")) is False


def test_visibility_expires_without_heartbeat() -> None:
    clock = Clock()
    tracker = _tracker(clock)
    tracker.mark_visible("s-other", True)
    assert tracker.is_anyone_else_visible("p1", exclude_user_id="u1") is True

    clock.now += 31

    assert tracker.is_visible("s-other") is False
    assert tracker.is_anyone_else_visible("p1", exclude_user_id="u1") is False
    assert tracker.needs_attention("s-other", message("p1", "m1", "u1")) is True


def test_is_anyone_else_visible_excludes_caller_and_other_parties() -> None:
    tracker = _tracker()
    tracker.register("s-elsewhere", "p2", "u3")
    tracker.mark_subscribed("s-elsewhere")
    tracker.mark_visible("s-elsewhere", True)
    tracker.mark_visible("s-author", True)

    assert tracker.is_anyone_else_visible("p1", exclude_user_id="u1") is False
    assert tracker.is_anyone_else_visible("p1", exclude_user_id="u2") is True


def test_unread_counter_resets_when_visible() -> None:
    tracker = _tracker()

    assert tracker.record_delivery("s-other", message("p1", "m1", "u1").sequenced(1)) is True
    assert tracker.record_delivery("s-other", message("p1", "m2", "u1").sequenced(2)) is True
    tracker.record_delivery("s-other", activity("p1", "a1").sequenced(3))
    assert tracker.unread_count("s-other") == 2

    tracker.mark_visible("s-other", True)

    assert tracker.unread_count("s-other") == 0
    record = tracker.get("s-other")
    assert record is not None
    assert record.read_seq == 3
