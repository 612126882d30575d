from typing import Any, Dict, List, Optional, Set
from functools import partial
import asyncio
import logging
from fastapi import WebSocket
from shared.models import Envelope, EventType

logger = logging.getLogger(__name__)


"""WebSocket manager and connection helpers (the broadcast bus).

This module provides `Connection` which wraps a single FastAPI `WebSocket`
and `WebSocketManager` which tracks active connections and fans events out
to them. Delivery is best-effort: failed sends are logged, never raised to
the code that emitted the event.
"""


class Connection:
    """Represents a single websocket connection and its metadata.

    The `Connection` holds a per-connection lock so sends are serialized
    per-socket. asyncio locks wake waiters in FIFO order, so events reach a
    client in the order the send tasks were created.
    """

    def __init__(self, websocket: WebSocket, connection_id: str, username: str):
        self.websocket = websocket
        self.connection_id = connection_id
        self.username = username
        self._lock = asyncio.Lock()

    async def send_event(self, event: EventType, data: Any = None) -> None:
        async with self._lock:
            payload = Envelope(event=event, data=data).model_dump(mode="json")
            logger.debug("Sending %s to %s", event.value, self.connection_id)
            await self.websocket.send_json(payload)


class WebSocketManager:
    """Track active `Connection` objects and fan events out to them."""

    def __init__(self):
        self._connections: Dict[str, Connection] = {}
        self._lock = asyncio.Lock()
        # in-flight send tasks, kept so they are not garbage collected
        self._tasks: Set[asyncio.Task] = set()

    async def add(self, conn: Connection) -> None:
        """Register a new connection. Overwrites any existing one with the same id."""
        async with self._lock:
            self._connections[conn.connection_id] = conn
            logger.info("Added websocket %s (%s)", conn.connection_id, conn.username)

    async def remove(self, connection_id: str) -> None:
        """Remove the connection if present."""
        async with self._lock:
            conn = self._connections.pop(connection_id, None)
            if conn is not None:
                logger.info("Removed websocket %s (%s)", connection_id, conn.username)

    async def get(self, connection_id: str) -> Optional[Connection]:
        """Return the `Connection` for `connection_id` or `None` if not connected."""
        async with self._lock:
            return self._connections.get(connection_id)

    async def list_connections(self) -> List[str]:
        async with self._lock:
            return list(self._connections.keys())

    def broadcast(self, event: EventType, data: Any = None, exclude: Optional[str] = None) -> None:
        """Send `event` to every connection except `exclude`.

        The recipient snapshot and task creation happen without awaiting, so
        two broadcasts issued one after the other are queued on each
        connection's lock in emission order.
        """
        targets = [c for cid, c in self._connections.items() if cid != exclude]
        logger.debug("Broadcasting %s to %d connection(s)", event.value, len(targets))
        for conn in targets:
            self._schedule(conn, event, data)

    def send(self, connection_id: str, event: EventType, data: Any = None) -> bool:
        """Send `event` to a single connection. Returns False when it is gone."""
        conn = self._connections.get(connection_id)
        if conn is None:
            return False
        self._schedule(conn, event, data)
        return True

    async def drain(self) -> None:
        """Wait until every scheduled send has finished."""
        while True:
            tasks = [t for t in self._tasks if not t.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    def _schedule(self, conn: Connection, event: EventType, data: Any) -> None:
        task = asyncio.create_task(conn.send_event(event, data))
        self._tasks.add(task)
        task.add_done_callback(partial(self._sent, conn.connection_id, event))

    def _sent(self, connection_id: str, event: EventType, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # Log any exceptions raised during sends so failures are visible
            logger.error("Error sending %s to %s", event.value, connection_id, exc_info=exc)
