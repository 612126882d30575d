from __future__ import annotations
import asyncio
from typing import Any, Awaitable, Callable, List, Optional, Set
import logging
import uuid

from fastapi import WebSocket
from pydantic import ValidationError

from shared.models import EventType, PlaybackAction, dump_queue
from shared.platform import PlatformClient, parse_link
from shared.submissions import PendingSubmission, RetryPolicy, SubmissionEngine, SubmissionState
from .config import Settings
from .errors import NotFound, SyncError, UpstreamRejected
from .models import (
    ChatSendMessage,
    JoinMessage,
    PendingSyncMessage,
    PlaybackControlRequest,
    PlaybackUpdateMessage,
    QueueAddRequest,
    QueueRequestMessage,
    QueueResponse,
    RegisterMessage,
    Session,
    SkipRequest,
    client_message_adapter,
)
from .playback import PlaybackReplicator
from .poller import NowPlayingPoller
from .queue_store import TrackQueueStore
from .sessions import SessionRegistry
from .websocket_manager import Connection, WebSocketManager

logger = logging.getLogger(__name__)

# Concurrency notes:
# - Everything runs on one event loop. Registry, queue and playback
#   mutations are synchronous, so each one is atomic with respect to other
#   handlers.
# - The only suspension points are platform calls. A positional queue
#   removal that lands while a submission is awaiting the platform acts on
#   the snapshot as it is at that moment; callers must use the latest
#   broadcast snapshot.
# - Disconnecting never cancels a submission: it mutates shared state.


class Orchestrator:
    """Owns every piece of in-memory state and wires the components together.

    One instance lives for the lifetime of the process (see `api.create_app`);
    handlers receive it explicitly instead of reaching for module globals.
    """

    def __init__(
        self,
        settings: Settings,
        ws_manager: Optional[WebSocketManager] = None,
        platform: Optional[PlatformClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.ws = ws_manager or WebSocketManager()
        self.platform = platform or PlatformClient(settings.spotify_api_url, timeout=settings.upstream_timeout)
        self.sessions = SessionRegistry(settings.room_password, ttl_seconds=settings.session_ttl_seconds)
        self.queue = TrackQueueStore(self.sessions, self.ws)
        self.playback = PlaybackReplicator(self.sessions, self.ws)
        self.submissions = SubmissionEngine(
            deliver=self._deliver,
            policy=RetryPolicy(
                base_delay=settings.retry_base_delay,
                growth_factor=settings.retry_growth_factor,
                max_delay=settings.retry_max_delay,
                jitter=settings.retry_jitter,
            ),
            on_change=self._pending_changed,
            on_failed=self._submission_failed,
            sleep=sleep,
        )
        self.poller = NowPlayingPoller(self.sessions, self.queue, self.platform, settings.poll_interval_seconds)
        # submissions whose HTTP caller is blocked on the first outcome
        self._awaiting: Set[str] = set()

    async def start_background_tasks(self) -> None:
        self.poller.start()

    async def stop_background_tasks(self) -> None:
        """Stop the poller and the submission worker, then flush pending sends."""
        await self.poller.stop()
        await self.submissions.stop()
        await self.ws.drain()

    # --- authority -------------------------------------------------------

    def login(self, username: str, password: str) -> Session:
        return self.sessions.grant_authority(username, password)

    def whoami(self, token: Optional[str]) -> Session:
        return self.sessions.lookup(token)

    def logout(self, token: Optional[str]) -> None:
        session = self.sessions.lookup(token)
        self.sessions.revoke(session.token)

    # --- queue -----------------------------------------------------------

    async def add_track(self, req: QueueAddRequest) -> QueueResponse:
        """Optimistically queue a track (or a whole playlist), then hand it to the platform.

        When nothing is waiting in the engine the call returns once the first
        delivery attempt resolves: a rate limit keeps the entry and answers
        ``pending=True`` while the engine retries in the background, and a
        non-retryable failure has already been rolled back by the time
        `UpstreamRejected` is raised. When other submissions are ahead, the
        call answers ``pending=True`` at once; a later failure is reported on
        the submitter's socket.
        """
        # authorization before any side effect
        self.sessions.require_authority(req.dj_token)
        kind, playlist_id = parse_link(req.uri)
        if kind == "playlist":
            return await self._add_playlist(req, playlist_id)

        idle = self.submissions.idle
        entry = self.queue.append(req.dj_token, req.uri)[-1]
        sub = self.submissions.submit(entry, access_token=req.access_token, device_id=req.device_id, origin=req.connection_id)
        if not idle:
            return QueueResponse(queue=list(self.queue.snapshot()), pending=True)

        self._awaiting.add(sub.submission_id)
        try:
            outcome = await sub.first_outcome
        finally:
            self._awaiting.discard(sub.submission_id)
        if outcome == SubmissionState.FAILED:
            raise UpstreamRejected("Failed to add track to Spotify queue")
        return QueueResponse(
            success=outcome != SubmissionState.CANCELLED,
            queue=list(self.queue.snapshot()),
            pending=outcome == SubmissionState.RATE_LIMITED,
        )

    async def _add_playlist(self, req: QueueAddRequest, playlist_id: str) -> QueueResponse:
        uris = await self.platform.playlist_tracks(playlist_id, req.access_token, limit=self.settings.playlist_track_limit)
        if not uris:
            raise NotFound("Playlist has no playable tracks")
        snap = self.queue.extend(req.dj_token, uris)
        for entry in snap[-len(uris):]:
            self.submissions.submit(entry, access_token=req.access_token, device_id=req.device_id, origin=req.connection_id)
        logger.info("Queued playlist %s (%d tracks)", playlist_id, len(uris))
        return QueueResponse(queue=list(self.queue.snapshot()), pending=True)

    def remove_track(self, token: str, index: int) -> QueueResponse:
        snap = self.queue.remove_at(token, index)
        return QueueResponse(queue=list(snap))

    def cancel_submission(self, token: str, submission_id: str) -> List[PendingSubmission]:
        session = self.sessions.require_authority(token)
        sub = self.submissions.cancel(submission_id)
        if sub is None:
            raise NotFound("No cancellable pending submission")
        self.queue.discard(sub.entry.entry_id)
        logger.info("Submission %s cancelled by %s", submission_id, session.username)
        return self.submissions.pending()

    async def _deliver(self, sub: PendingSubmission) -> None:
        await self.platform.add_to_queue(sub.entry.uri, sub.access_token, sub.device_id)

    def _pending_changed(self, pending: List[PendingSubmission]) -> None:
        self.ws.broadcast(EventType.PENDING_UPDATED, [p.to_wire() for p in pending])

    def _submission_failed(self, sub: PendingSubmission) -> None:
        self.queue.discard(sub.entry.entry_id)
        # a caller still waiting on the first outcome gets the error in its
        # HTTP response; everyone else has been answered and hears it here
        if sub.origin and sub.submission_id not in self._awaiting:
            self.ws.send(sub.origin, EventType.SUBMISSION_FAILED, {"submission": sub.to_wire(), "error": sub.error})

    # --- playback --------------------------------------------------------

    async def skip(self, req: SkipRequest) -> None:
        self.sessions.require_authority(req.dj_token)
        await self.platform.next_track(req.access_token, req.device_id)
        self.playback.skip(req.dj_token)

    async def control_playback(self, req: PlaybackControlRequest) -> PlaybackAction:
        self.sessions.require_authority(req.dj_token)
        if req.action == PlaybackAction.PLAY:
            await self.platform.play(req.access_token, req.device_id)
        else:
            await self.platform.pause(req.access_token, req.device_id)
        self.playback.announce_action(req.dj_token, req.action)
        return req.action

    # --- real-time channel -----------------------------------------------

    async def connect(self, websocket: WebSocket, username: Optional[str] = None) -> Connection:
        """Register a new socket and bring it up to date.

        The newcomer receives the queue, the pending submissions and the
        playback snapshot; everyone receives the new user list.
        """
        connection_id = uuid.uuid4().hex
        display_name = username or f"listener-{connection_id[:6]}"
        conn = Connection(websocket=websocket, connection_id=connection_id, username=display_name)
        await self.ws.add(conn)
        self.sessions.attach_connection(connection_id, display_name)
        self.ws.send(connection_id, EventType.QUEUE_UPDATED, dump_queue(self.queue.snapshot()))
        self.ws.send(connection_id, EventType.PENDING_UPDATED, [p.to_wire() for p in self.submissions.pending()])
        self.playback.on_connect(connection_id)
        self._broadcast_users()
        return conn

    async def disconnect(self, connection_id: str) -> None:
        await self.ws.remove(connection_id)
        if self.sessions.detach_connection(connection_id):
            self._broadcast_users()

    async def handle_message(self, conn: Connection, raw: Any) -> None:
        """Validate and dispatch one client -> server socket message.

        Invalid or unauthorized messages are answered with an `error` event
        to the sender only; the socket stays open.
        """
        try:
            msg = client_message_adapter.validate_python(raw)
        except ValidationError as e:
            logger.info("Invalid message from %s: %s", conn.connection_id, e.errors()[:1])
            self.ws.send(conn.connection_id, EventType.ERROR, {"error": "invalid message"})
            return

        try:
            if isinstance(msg, JoinMessage):
                conn.username = msg.username
                self.sessions.attach_connection(conn.connection_id, msg.username)
                self._broadcast_users()
            elif isinstance(msg, RegisterMessage):
                self.sessions.bind_connection(conn.connection_id, token=msg.dj_token, access_token=msg.access_token, device_id=msg.device_id)
                logger.info("Connection %s registered credentials (dj=%s)", conn.connection_id, bool(msg.dj_token))
            elif isinstance(msg, PlaybackUpdateMessage):
                self.playback.publish(msg.dj_token, msg.is_playing, msg.current_track, msg.position_ms, origin=conn.connection_id)
            elif isinstance(msg, PendingSyncMessage):
                self.ws.send(conn.connection_id, EventType.PENDING_UPDATED, [p.to_wire() for p in self.submissions.pending()])
            elif isinstance(msg, QueueRequestMessage):
                self.ws.send(conn.connection_id, EventType.QUEUE_UPDATED, dump_queue(self.queue.snapshot()))
            elif isinstance(msg, ChatSendMessage):
                self.ws.broadcast(EventType.CHAT_MESSAGE, {"from": conn.username, "message": msg.message})
        except SyncError as e:
            logger.info("Rejected %s from %s: %s", msg.type, conn.connection_id, e.message)
            self.ws.send(conn.connection_id, EventType.ERROR, {"error": e.message, "type": msg.type})

    def _broadcast_users(self) -> None:
        self.ws.broadcast(EventType.USERS_UPDATE, self.sessions.connected_users())
