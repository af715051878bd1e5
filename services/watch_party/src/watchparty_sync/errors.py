"""Domain errors raised by the watch party core."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .models import PlaybackState


class WatchPartyError(RuntimeError):
    """Base class for watch party domain errors."""


class PartyNotFound(WatchPartyError):
    """Party does not exist or has been archived."""

    def __init__(self, party_id: str) -> None:
        super().__init__(f"Party {party_id} not found")
        self.party_id = party_id


class NotMember(WatchPartyError):
    """User is not a member of the party."""

    def __init__(self, party_id: str, user_id: str) -> None:
        super().__init__(f"User {user_id} is not a member of party {party_id}")
        self.party_id = party_id
        self.user_id = user_id


class InvalidEntry(WatchPartyError):
    """Submitted log entry failed validation."""


class StateConflict(WatchPartyError):
    """Playback update carried a stale version.

    The current authoritative state is attached so the caller can re-read and
    retry, or discard its update.
    """

    def __init__(self, party_id: str, expected_version: int, current: "PlaybackState") -> None:
        super().__init__(
            f"Stale playback version for party {party_id}: "
            f"expected {expected_version}, current {current.version}"
        )
        self.party_id = party_id
        self.expected_version = expected_version
        self.current = current


class TransientDeliveryFailure(WatchPartyError):
    """Fan-out to a single subscriber failed after all retries."""

    def __init__(self, subscription_id: str, attempts: int, *, cause: Exception | None = None) -> None:
        super().__init__(f"Delivery to subscription {subscription_id} failed after {attempts} attempts")
        self.subscription_id = subscription_id
        self.attempts = attempts
        if cause is not None:
            self.__cause__ = cause


class InvalidTransition(WatchPartyError):
    """Subscription presence state machine was driven out of order."""
