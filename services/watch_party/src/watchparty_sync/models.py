"""Domain models for watch party synchronization."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

LogType = Literal["activity", "message"]
EnvelopeName = Literal["log", "state"]


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def party_channel(party_id: str) -> str:
    """Return the push channel name for a party."""

    return f"party.{party_id}"


class MessagePayload(BaseModel):
    """Chat message body."""

    model_config = ConfigDict(frozen=True)

    id: str
    text: str
    author_user_id: str


class ActivityPayload(BaseModel):
    """Activity notice body (join, leave, playback changes)."""

    model_config = ConfigDict(frozen=True)

    text: str
    actor_user_id: str | None = None


class LogEntry(BaseModel):
    """One immutable unit of party history.

    ``seq`` is 0 until the entry is accepted by a log store, which then assigns
    the authoritative per-party sequence number.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Client generated idempotency key.")
    party_id: str
    seq: int = Field(0, ge=0, description="Per-party sequence number assigned at acceptance.")
    type: LogType
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    message: MessagePayload | None = None
    activity: ActivityPayload | None = None

    @model_validator(mode="after")
    def _check_payload(self) -> "LogEntry":
        if self.type == "message" and (self.message is None or self.activity is not None):
            raise ValueError("message entries carry exactly a message payload")
        if self.type == "activity" and (self.activity is None or self.message is not None):
            raise ValueError("activity entries carry exactly an activity payload")
        return self

    @property
    def author_id(self) -> str | None:
        if self.message is not None:
            return self.message.author_user_id
        if self.activity is not None:
            return self.activity.actor_user_id
        return None

    def sequenced(self, seq: int) -> "LogEntry":
        return self.model_copy(update={"seq": seq})

    @classmethod
    def new_message(cls, *, party_id: str, entry_id: str, text: str, author_user_id: str) -> "LogEntry":
        return cls(
            id=entry_id,
            party_id=party_id,
            type="message",
            message=MessagePayload(id=entry_id, text=text, author_user_id=author_user_id),
        )

    @classmethod
    def new_activity(
        cls,
        *,
        party_id: str,
        text: str,
        actor_user_id: str | None = None,
        entry_id: str | None = None,
    ) -> "LogEntry":
        return cls(
            id=entry_id or uuid4().hex,
            party_id=party_id,
            type="activity",
            activity=ActivityPayload(text=text, actor_user_id=actor_user_id),
        )


@dataclass(frozen=True)
class AppendResult:
    """Outcome of a log append.

    ``duplicate`` is set when the id had already been accepted; ``entry`` is
    then the previously stored entry.
    """

    entry: LogEntry
    duplicate: bool = False


class PlaybackState(BaseModel):
    """Authoritative playback state of a party."""

    model_config = ConfigDict(frozen=True)

    is_playing: bool = False
    current_time: float = Field(0.0, ge=0, description="Playback position in seconds.")
    version: int = Field(0, ge=0, description="Incremented on every accepted update.")
    updated_at: datetime = Field(default_factory=_now)

    def broadcast_payload(self) -> dict[str, Any]:
        return {"is_playing": self.is_playing, "current_time": self.current_time, "version": self.version}


class PlaybackUpdate(BaseModel):
    """HTTP request body for playback state changes."""

    model_config = ConfigDict(populate_by_name=True)

    is_playing: bool
    current_time: float = Field(..., ge=0)
    expected_version: int = Field(..., ge=0, alias="expectedVersion")


class Party(BaseModel):
    """A group session sharing synchronized playback and chat."""

    id: str
    members: list[str] = Field(default_factory=list)
    state: PlaybackState = Field(default_factory=PlaybackState)
    created_at: datetime = Field(default_factory=_now)


class PartyCreateRequest(BaseModel):
    """HTTP request body for party creation."""

    id: str | None = Field(default=None, min_length=1)
    members: list[str] = Field(default_factory=list)


class MessageRequest(BaseModel):
    """HTTP request body for chat messages."""

    id: str = Field(..., min_length=1, max_length=128, description="Idempotency key generated by the caller.")
    text: str


class ConflictPayload(BaseModel):
    """Body returned with HTTP 409 on stale playback updates."""

    detail: str
    state: PlaybackState


class LogGroup(BaseModel):
    """Consecutive log entries rendered together."""

    type: LogType
    author: str | None = None
    entries: list[LogEntry] = Field(default_factory=list)


class Envelope(BaseModel):
    """Push channel event delivered to subscribers."""

    channel: str
    name: EnvelopeName
    payload: dict[str, Any]
    attention: bool = False

    @classmethod
    def for_log(cls, entry: LogEntry) -> "Envelope":
        return cls(channel=party_channel(entry.party_id), name="log", payload=entry.model_dump(mode="json"))

    @classmethod
    def for_state(cls, party_id: str, state: PlaybackState) -> "Envelope":
        return cls(channel=party_channel(party_id), name="state", payload=state.broadcast_payload())

    def log_entry(self) -> LogEntry | None:
        if self.name != "log":
            return None
        return LogEntry.model_validate(self.payload)
