from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def now() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Base for models that travel over HTTP or the socket (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class EventType(str, Enum):
    QUEUE_UPDATED = "queue:updated"
    PENDING_UPDATED = "pending:updated"
    PLAYBACK_STATE = "playback:state"
    PLAYBACK_SKIP = "playback:skip"
    PLAYBACK_ACTION = "playback:stateChange"
    USERS_UPDATE = "users:update"
    CHAT_MESSAGE = "chat:message"
    SUBMISSION_FAILED = "submission:failed"
    ERROR = "error"


class PlaybackAction(str, Enum):
    PLAY = "play"
    PAUSE = "pause"


class QueueEntry(WireModel):
    entry_id: str
    uri: str
    added_by: str
    # insertion order within the snapshot it was taken from
    position: int = 0


# the full ordered sequence at a point in time, sent wholesale
QueueSnapshot = Tuple[QueueEntry, ...]


class TrackDescriptor(WireModel):
    uri: str
    name: Optional[str] = None
    artists: List[Any] = Field(default_factory=list)
    album: Optional[Any] = None
    duration_ms: Optional[int] = None

    # platform track objects carry many more fields; keep them untouched
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class PlaybackState(WireModel):
    is_playing: bool = False
    current_track: Optional[TrackDescriptor] = None
    # offset in milliseconds at the moment of `last_update`
    position_ms: int = Field(
        default=0,
        validation_alias=AliasChoices("positionMs", "position", "position_ms"),
        serialization_alias="positionMs",
    )
    last_update: datetime = Field(default_factory=now)

    def estimated_position(self, at: Optional[datetime] = None) -> int:
        """Estimate where the DJ's player is now.

        While playing, the elapsed time since the snapshot was stamped is added
        to the recorded position. Paused snapshots do not advance. The result
        is clamped to the track duration when the descriptor carries one.
        """
        if not self.is_playing:
            return self.position_ms
        at = at or now()
        drift_ms = int((at - self.last_update).total_seconds() * 1000)
        position = max(0, self.position_ms + drift_ms)
        if self.current_track is not None and self.current_track.duration_ms:
            position = min(position, self.current_track.duration_ms)
        return position


class Envelope(BaseModel):
    """Server -> client socket frame."""

    event: EventType
    data: Any = None


def dump_queue(queue: QueueSnapshot) -> List[dict]:
    return [entry.to_wire() for entry in queue]


__all__ = [
    "now",
    "WireModel",
    "EventType",
    "PlaybackAction",
    "QueueEntry",
    "QueueSnapshot",
    "TrackDescriptor",
    "PlaybackState",
    "Envelope",
    "dump_queue",
]
