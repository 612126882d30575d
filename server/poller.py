import asyncio
import logging
from typing import Optional

from shared.platform import PlatformClient, UpstreamRateLimited
from .queue_store import TrackQueueStore
from .sessions import SessionRegistry

logger = logging.getLogger(__name__)


class NowPlayingPoller:
    """Periodically asks the platform what the DJ is playing.

    The only background path allowed to touch the queue: it feeds the
    reported uri to `TrackQueueStore.consume_if_current`.
    """

    def __init__(self, registry: SessionRegistry, queue: TrackQueueStore, platform: PlatformClient, interval: float):
        self.registry = registry
        self.queue = queue
        self.platform = platform
        self.interval = float(interval)
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self.interval <= 0 or self._task is not None:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("Now-playing poller started (every %.1fs)", self.interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def poll_once(self) -> Optional[str]:
        session = self.registry.credentialed_authority()
        if session is None:
            return None
        uri = await self.platform.currently_playing(session.access_token)
        self.queue.consume_if_current(uri)
        return uri

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except UpstreamRateLimited:
                logger.info("Now-playing poll rate limited; trying again next tick")
            except Exception:
                logger.warning("Now-playing poll failed", exc_info=True)
            await asyncio.sleep(self.interval)
