import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

class PeriodicTask:
    """Runs an async callback every `interval` seconds on the running event loop."""

    def __init__(self, interval: float, callback: Callable[[], Awaitable[None]], name: str):
        self.interval = interval
        self.callback = callback
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None

    def start(self):
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        logger.debug(f"{self.name} started ({self.interval}s)")

    def stop(self):
        task, self._task = self._task, None
        if task is None:
            return
        # Called from inside the callback: the loop below exits on its own.
        if task is not asyncio.current_task():
            task.cancel()
        logger.debug(f"{self.name} stopped")

    async def _run(self):
        me = asyncio.current_task()
        while self._task is me:
            await asyncio.sleep(self.interval)
            if self._task is not me:
                break
            try:
                await self.callback()
            except Exception as e:
                logger.error(f"Error in {self.name}: {e}", exc_info=True)
