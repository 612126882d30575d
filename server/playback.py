"""Playback state replicator.

Holds the one shared "now playing" snapshot. Only a DJ session may replace
it, and it is always replaced as a whole and stamped with the server's
clock; listeners derive their drift from that stamp (see
`PlaybackState.estimated_position`).
"""

from __future__ import annotations
import logging
from typing import Optional

from shared.models import EventType, PlaybackAction, PlaybackState, TrackDescriptor, now
from .sessions import SessionRegistry
from .websocket_manager import WebSocketManager

logger = logging.getLogger(__name__)


class PlaybackReplicator:
    def __init__(self, registry: SessionRegistry, bus: WebSocketManager):
        self.registry = registry
        self.bus = bus
        self._state = PlaybackState()

    @property
    def state(self) -> PlaybackState:
        return self._state.model_copy(deep=True)

    def publish(self, token: str, is_playing: bool, current_track: Optional[TrackDescriptor], position_ms: int, origin: Optional[str] = None) -> PlaybackState:
        """Replace the snapshot and send it to everyone but the publisher."""
        session = self.registry.require_authority(token)
        self._state = PlaybackState(
            is_playing=bool(is_playing),
            current_track=current_track,
            position_ms=max(0, int(position_ms)),
            last_update=now(),
        )
        logger.info(
            "Playback update from %s: playing=%s track=%s position=%s",
            session.username,
            self._state.is_playing,
            current_track.uri if current_track else None,
            self._state.position_ms,
        )
        self.bus.broadcast(EventType.PLAYBACK_STATE, self._state.to_wire(), exclude=origin)
        return self.state

    def on_connect(self, connection_id: str) -> PlaybackState:
        """Hand a new connection the current snapshot so it can resync at once."""
        snap = self.state
        self.bus.send(connection_id, EventType.PLAYBACK_STATE, snap.to_wire())
        return snap

    def skip(self, token: str, origin: Optional[str] = None) -> None:
        """Tell listeners to advance now, ahead of the next full snapshot."""
        session = self.registry.require_authority(token)
        logger.info("Skip signalled by %s", session.username)
        self.bus.broadcast(EventType.PLAYBACK_SKIP, {"by": session.username}, exclude=origin)

    def announce_action(self, token: str, action: PlaybackAction, origin: Optional[str] = None) -> None:
        session = self.registry.require_authority(token)
        logger.info("Playback %s signalled by %s", action.value, session.username)
        self.bus.broadcast(EventType.PLAYBACK_ACTION, {"action": action.value}, exclude=origin)
