"""Track queue store.

Owns the ordered list of tracks waiting to be played. Every mutation
broadcasts the full snapshot (never a diff) on the bus. Entries are only
ever appended at the tail; the queue is strictly FIFO.
"""

from __future__ import annotations
import logging
from typing import List, Optional
import uuid

from shared.models import EventType, QueueEntry, QueueSnapshot, dump_queue
from .errors import InvalidIndex
from .sessions import SessionRegistry
from .websocket_manager import WebSocketManager

logger = logging.getLogger(__name__)


class TrackQueueStore:
    def __init__(self, registry: SessionRegistry, bus: WebSocketManager):
        self.registry = registry
        self.bus = bus
        self._entries: List[QueueEntry] = []
        # uri the platform last reported as playing
        self._now_playing: Optional[str] = None

    def snapshot(self) -> QueueSnapshot:
        return tuple(e.model_copy(update={"position": i}) for i, e in enumerate(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, token: str, uri: str) -> QueueSnapshot:
        """Append `uri` for the DJ holding `token` and broadcast the new snapshot."""
        session = self.registry.require_authority(token)
        entry = QueueEntry(entry_id=uuid.uuid4().hex, uri=uri, added_by=session.username)
        self._entries.append(entry)
        logger.info("Queued %s by %s (length=%d)", uri, session.username, len(self._entries))
        return self._publish()

    def extend(self, token: str, uris: List[str]) -> QueueSnapshot:
        """Append several uris in order with a single broadcast."""
        session = self.registry.require_authority(token)
        for uri in uris:
            self._entries.append(QueueEntry(entry_id=uuid.uuid4().hex, uri=uri, added_by=session.username))
        logger.info("Queued %d track(s) by %s (length=%d)", len(uris), session.username, len(self._entries))
        return self._publish()

    def remove_at(self, token: str, index: int) -> QueueSnapshot:
        """Remove the entry at `index`.

        Positional and therefore not idempotent: repeating a call with a stale
        index removes whichever entry has moved into that slot.
        """
        session = self.registry.require_authority(token)
        if not isinstance(index, int) or index < 0 or index >= len(self._entries):
            raise InvalidIndex("Invalid index")
        removed = self._entries.pop(index)
        logger.info("Removed %s at %d by %s (length=%d)", removed.uri, index, session.username, len(self._entries))
        return self._publish()

    def discard(self, entry_id: str) -> bool:
        """Remove an entry by identity (rollback and cancellation only)."""
        for i, e in enumerate(self._entries):
            if e.entry_id == entry_id:
                del self._entries[i]
                logger.info("Discarded %s (length=%d)", e.uri, len(self._entries))
                self._publish()
                return True
        return False

    def consume_if_current(self, uri: Optional[str]) -> bool:
        """Consume the queued entry for `uri` once it starts playing.

        Called by the platform poller. Only a change of the playing uri
        counts, so repeated polls of the same track consume at most one entry.
        """
        if not uri or uri == self._now_playing:
            return False
        self._now_playing = uri
        for i, e in enumerate(self._entries):
            if e.uri == uri:
                del self._entries[i]
                logger.info("Consumed %s now playing (length=%d)", uri, len(self._entries))
                self._publish()
                return True
        return False

    def _publish(self) -> QueueSnapshot:
        snap = self.snapshot()
        self.bus.broadcast(EventType.QUEUE_UPDATED, dump_queue(snap))
        return snap
