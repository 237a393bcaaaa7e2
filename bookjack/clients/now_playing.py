import asyncio
import logging
import httpx
from typing import Optional, Protocol, Set
from ..config import settings
from ..models import NowPlayingInfo

logger = logging.getLogger(__name__)

class NowPlayingSurface(Protocol):
    def publish(self, info: NowPlayingInfo) -> None: ...

class LoggingNowPlaying:
    """Surface used when nothing external is configured."""

    def __init__(self):
        self.last: Optional[NowPlayingInfo] = None

    def publish(self, info: NowPlayingInfo):
        self.last = info
        chapter = f" [{info.chapter_title}]" if info.chapter_title else ""
        logger.info(
            f"Now playing: {info.title} - {info.author}{chapter} "
            f"{info.elapsed_time:.0f}/{info.duration:.0f}s @ {info.playback_rate}x"
        )

class WebhookNowPlaying:
    """POSTs every projection to a webhook. Fire-and-forget: failures are only logged."""

    def __init__(self, url: str, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.client = client or httpx.AsyncClient(timeout=settings.REQUEST_TIMEOUT_SECONDS)
        self._pending: Set[asyncio.Task] = set()

    def publish(self, info: NowPlayingInfo):
        task = asyncio.get_running_loop().create_task(self._send(info))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, info: NowPlayingInfo):
        payload = info.model_dump(mode="json")
        if settings.DRY_RUN:
            logger.info(f"[DRY RUN] Would publish now playing to {self.url}: {payload}")
            return

        try:
            resp = await self.client.post(self.url, json=payload)
            resp.raise_for_status()
            logger.debug(f"Published now playing for {info.item_id} at {info.elapsed_time:.1f}s")
        except Exception as e:
            logger.error(f"Failed to publish now playing to {self.url}: {e}")

    async def aclose(self):
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        await self.client.aclose()
