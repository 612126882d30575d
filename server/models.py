"""Server models module.

Shared wire models (used by client and server) are imported from
`shared.models`. Server-only models, the HTTP request/response bodies and
the tagged client -> server socket messages live here.
"""

from __future__ import annotations
from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, TypeAdapter, field_validator

from shared.models import (
    EventType,
    PlaybackAction,
    PlaybackState,
    QueueEntry,
    QueueSnapshot,
    TrackDescriptor,
    WireModel,
    now,
)
from shared.platform import normalize_uri

NonEmpty = Annotated[str, Field(min_length=1)]


class Session(BaseModel):
    token: str
    username: str
    # only sessions created through the password-gated login may mutate state
    authority: bool = False
    access_token: Optional[str] = None
    device_id: Optional[str] = None
    connection_id: Optional[str] = None
    created_at: datetime = Field(default_factory=now)
    credentials_at: Optional[datetime] = None


# --- HTTP bodies -----------------------------------------------------------

class LoginRequest(WireModel):
    # emptiness is reported as MissingField by the registry, not by validation
    username: str = ""
    password: str = ""


class LoginResponse(WireModel):
    token: str
    username: str


class QueueAddRequest(WireModel):
    dj_token: NonEmpty
    access_token: NonEmpty
    uri: NonEmpty
    device_id: Optional[str] = None
    # socket connection of the submitter; late failures are reported there
    connection_id: Optional[str] = None

    @field_validator("uri")
    @classmethod
    def _normalize_link(cls, v: str) -> str:
        # share links arrive straight from the browser address bar
        uri = normalize_uri(v)
        if not uri:
            raise ValueError("uri must not be blank")
        return uri


class QueueRemoveRequest(WireModel):
    dj_token: NonEmpty
    index: int


class PendingCancelRequest(WireModel):
    dj_token: NonEmpty
    submission_id: NonEmpty


class SkipRequest(WireModel):
    dj_token: NonEmpty
    access_token: NonEmpty
    device_id: Optional[str] = None


class PlaybackControlRequest(WireModel):
    dj_token: NonEmpty
    access_token: NonEmpty
    device_id: NonEmpty
    action: PlaybackAction


class QueueResponse(WireModel):
    success: bool = True
    queue: List[QueueEntry]
    # true while submissions still wait for the platform (rate limited or
    # queued behind others)
    pending: bool = False


# --- socket messages (client -> server), tagged by `type` ------------------

class JoinMessage(WireModel):
    type: Literal["join"]
    username: NonEmpty


class RegisterMessage(WireModel):
    type: Literal["register"]
    dj_token: Optional[str] = None
    access_token: Optional[str] = None
    device_id: Optional[str] = None


class PlaybackUpdateMessage(WireModel):
    type: Literal["playback:update"]
    dj_token: NonEmpty
    is_playing: bool = False
    current_track: Optional[TrackDescriptor] = None
    position_ms: int = Field(default=0, validation_alias=AliasChoices("positionMs", "position", "position_ms"))


class PendingSyncMessage(WireModel):
    type: Literal["pending:sync"]


class ChatSendMessage(WireModel):
    type: Literal["chat:send"]
    message: Any


class QueueRequestMessage(WireModel):
    type: Literal["queue:request"]


ClientMessage = Annotated[
    Union[
        JoinMessage,
        RegisterMessage,
        PlaybackUpdateMessage,
        PendingSyncMessage,
        ChatSendMessage,
        QueueRequestMessage,
    ],
    Field(discriminator="type"),
]

client_message_adapter: TypeAdapter = TypeAdapter(ClientMessage)


__all__ = [
    "EventType",
    "PlaybackAction",
    "PlaybackState",
    "QueueEntry",
    "QueueSnapshot",
    "TrackDescriptor",
    "Session",
    "LoginRequest",
    "LoginResponse",
    "QueueAddRequest",
    "QueueRemoveRequest",
    "PendingCancelRequest",
    "SkipRequest",
    "PlaybackControlRequest",
    "QueueResponse",
    "JoinMessage",
    "RegisterMessage",
    "PlaybackUpdateMessage",
    "PendingSyncMessage",
    "ChatSendMessage",
    "QueueRequestMessage",
    "ClientMessage",
    "client_message_adapter",
]
