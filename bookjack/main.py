import asyncio
import logging
import signal
import sys
import uvicorn
from typing import Optional

from .config import settings
from .state import CatalogStore
from .clients.audio_engine import VlcAudioEngine
from .clients.now_playing import LoggingNowPlaying, WebhookNowPlaying
from .errors import PlayerError
from .models import Audiobook
from .session import PlaybackSession
from . import server

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
# Silence noisy libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("vlc").setLevel(logging.WARNING)

logger = logging.getLogger("main")

class PlayerService:
    def __init__(self, engine=None, store: Optional[CatalogStore] = None, now_playing=None):
        self.store = store or CatalogStore(settings.LIBRARY_PATH)
        self.engine = engine or VlcAudioEngine()
        if now_playing is not None:
            self.now_playing = now_playing
        elif settings.NOW_PLAYING_WEBHOOK_URL:
            self.now_playing = WebhookNowPlaying(settings.NOW_PLAYING_WEBHOOK_URL)
        else:
            self.now_playing = LoggingNowPlaying()
        self.session = PlaybackSession(self.engine, self.store, self.now_playing)
        self._stopped = asyncio.Event()

        # Link session to server module
        server.session = self.session

    def resume_candidate(self) -> Optional[Audiobook]:
        if settings.RESUME_ITEM_ID:
            item = self.store.get(settings.RESUME_ITEM_ID)
            if item is None:
                logger.warning(f"RESUME_ITEM_ID {settings.RESUME_ITEM_ID} not in library")
            return item
        return self.store.most_recently_played()

    async def setup(self):
        await self.session.start()
        item = self.resume_candidate()
        if item is None:
            logger.info("Nothing to resume, waiting for commands")
            return
        try:
            await self.session.open_item(item)
        except PlayerError as e:
            logger.error(f"Could not resume '{item.title}': {e}")

    def request_stop(self):
        self._stopped.set()

    async def start(self):
        await self.setup()

        tasks = [asyncio.create_task(self._stopped.wait())]
        if settings.HTTP_SERVER_ENABLED:
            config = uvicorn.Config(server.app, host="0.0.0.0", port=settings.HTTP_SERVER_PORT, log_level="warning")
            tasks.append(asyncio.create_task(uvicorn.Server(config).serve()))

        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGTERM, self.request_stop)

        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            pass
        finally:
            for task in tasks:
                task.cancel()
            # Persist the position before the process goes away
            await self.session.shutdown()
            if isinstance(self.now_playing, WebhookNowPlaying):
                await self.now_playing.aclose()

def main():
    try:
        asyncio.run(PlayerService().start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    sys.exit(0)

if __name__ == "__main__":
    main()
