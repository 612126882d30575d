"""Headless listener client.

This client maintains a persistent WebSocket connection to the sync server
and mirrors what the DJ does onto the listener's own platform device:

- `playback:state` snapshots are applied by starting the current track at
  the drift-corrected position (coarse sync, bounded by network latency);
- `playback:skip` and `playback:stateChange` are forwarded immediately;
- newly queued tracks are pushed to the listener's own platform queue
  through a local `SubmissionEngine`, so rate limits are retried in order.
"""
import asyncio
import json
import logging
from typing import List, Optional, Set
from urllib.parse import quote
import websockets
from . import config
from shared.models import Envelope, EventType, PlaybackAction, PlaybackState, QueueEntry
from shared.platform import PlatformClient
from shared.submissions import PendingSubmission, SubmissionEngine

logger = logging.getLogger(__name__)

# Global settings instance (created at startup)
settings: config.ClientSettings | None = None

# Module-level collaborators and sync state
_platform: PlatformClient | None = None
_engine: SubmissionEngine | None = None
# queue entry ids already mirrored; None until the first snapshot arrives
_seen_entries: Set[str] | None = None
_last_state: PlaybackState | None = None


def reset_state():
    """Forget everything learned from the server (used on fresh start and in tests)."""
    global _engine, _seen_entries, _last_state
    _engine = None
    _seen_entries = None
    _last_state = None


def get_platform() -> PlatformClient:
    """Return a cached `PlatformClient` configured from `settings`."""
    global _platform
    if _platform is None:
        base_url = settings.spotify_api_url if settings is not None else "https://api.spotify.com/v1"
        _platform = PlatformClient(base_url)
    return _platform


async def _deliver(sub: PendingSubmission) -> None:
    await get_platform().add_to_queue(sub.entry.uri, sub.access_token, sub.device_id)


def get_engine() -> SubmissionEngine:
    global _engine
    if _engine is None:
        _engine = SubmissionEngine(deliver=_deliver)
    return _engine


async def apply_playback_state(state: PlaybackState) -> Optional[int]:
    """Bring the local player in line with the DJ's snapshot.

    Returns the position (ms) playback was started at, or None when nothing
    was started (no track, or the DJ is paused).
    """
    global _last_state
    _last_state = state
    if state.current_track is None:
        return None
    platform = get_platform()
    if not state.is_playing:
        logger.info("DJ paused; pausing local player")
        await platform.pause(settings.access_token, settings.device_id)
        return None
    position = state.estimated_position()
    logger.info("Syncing to %s at %dms", state.current_track.uri, position)
    await platform.play(settings.access_token, settings.device_id, uris=[state.current_track.uri], position_ms=position)
    return position


def mirror_queue(entries: List[QueueEntry]) -> List[PendingSubmission]:
    """Submit entries not seen before to the local platform queue.

    The first snapshot after startup only primes the seen-set: those tracks
    were queued before this listener arrived.
    """
    global _seen_entries
    if _seen_entries is None:
        _seen_entries = {e.entry_id for e in entries}
        logger.info("Primed queue mirror with %d existing entr(ies)", len(entries))
        return []
    submitted = []
    for entry in entries:
        if entry.entry_id in _seen_entries:
            continue
        _seen_entries.add(entry.entry_id)
        submitted.append(get_engine().submit(entry, access_token=settings.access_token, device_id=settings.device_id))
    return submitted


async def handle_event(frame: dict):
    """Validate and dispatch one server -> client frame."""
    env = Envelope.model_validate(frame)
    platform = get_platform()

    if env.event == EventType.PLAYBACK_STATE:
        await apply_playback_state(PlaybackState.model_validate(env.data))
    elif env.event == EventType.PLAYBACK_SKIP:
        logger.info("DJ skipped; advancing local player")
        await platform.next_track(settings.access_token, settings.device_id)
    elif env.event == EventType.PLAYBACK_ACTION:
        action = PlaybackAction((env.data or {}).get("action"))
        if action == PlaybackAction.PLAY:
            await platform.play(settings.access_token, settings.device_id)
        else:
            await platform.pause(settings.access_token, settings.device_id)
    elif env.event == EventType.QUEUE_UPDATED:
        mirror_queue([QueueEntry.model_validate(e) for e in env.data or []])
    elif env.event == EventType.USERS_UPDATE:
        logger.info("Listeners online: %s", ", ".join(env.data or []))
    elif env.event in (EventType.ERROR, EventType.SUBMISSION_FAILED):
        logger.warning("Server reported %s: %s", env.event.value, env.data)
    else:
        logger.debug("Ignoring %s", env.event.value)


async def receive_loop(ws):
    """Continuously receive messages from the WebSocket and dispatch them."""
    async for msg in ws:
        try:
            data = json.loads(msg)
            await handle_event(data)
        except Exception:
            logger.warning("Error processing incoming message", exc_info=True)


def build_ws_url(server_url: str, username: str) -> str:
    # Accept both http(s) and ws(s) server_url values by converting
    # http:// -> ws:// and https:// -> wss:// for the websocket connection.
    server_url_str = str(server_url).rstrip('/')
    if server_url_str.startswith("http://"):
        ws_base = "ws://" + server_url_str[len("http://"):]
    elif server_url_str.startswith("https://"):
        ws_base = "wss://" + server_url_str[len("https://"):]
    else:
        ws_base = server_url_str
    return f"{ws_base}/ws?username={quote(username)}"


async def run_client():
    # validate and initialize settings at client startup
    global settings
    if settings is None:
        try:
            settings = config.ClientSettings()
        except Exception as e:
            raise RuntimeError(f"Failed to load client settings: {e}") from e

    # Do not log secrets (access token). Log non-sensitive config for debugging.
    logger.info("Loaded client settings: server_url=%s username=%s device=%s", settings.server_url, settings.username, settings.device_id)

    url = build_ws_url(str(settings.server_url), settings.username)
    logger.info("Connecting to server %s", settings.server_url)

    # Keep attempting to connect; on failure or disconnect wait 5s and retry.
    # Every (re)connect starts with a fresh snapshot from the server.
    while True:
        try:
            async with websockets.connect(url) as ws:
                await ws.send(json.dumps({"type": "join", "username": settings.username}))
                await ws.send(json.dumps({"type": "register", "deviceId": settings.device_id}))
                await receive_loop(ws)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("WebSocket connection failed or was closed")

        logger.info("Reconnecting to server in 5s...")
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            return


def main():
    logging.basicConfig(level=logging.INFO)
    try:
        asyncio.run(run_client())
    except KeyboardInterrupt:
        logger.info("Client exiting")
    finally:
        if _engine is not None and _engine.pending():
            logger.info("Exiting with %d unsent queue submission(s)", len(_engine.pending()))


if __name__ == "__main__":
    main()
