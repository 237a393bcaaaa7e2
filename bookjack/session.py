import asyncio
import logging
import time
from typing import List, Optional
from .clients.audio_engine import AudioEngine
from .clients.now_playing import NowPlayingSurface
from .config import settings
from .errors import CommandOnEmptySession, DecodeError, LoadError, PersistenceError
from .models import (
    Audiobook, Chapter, EngineEvent, EngineEventKind, InterruptionEvent, InterruptionKind,
    NowPlayingInfo, PlaybackStatus, RemoteCommand, RemoteCommandKind, SessionSnapshot,
)
from .state import CatalogStore
from .timers import PeriodicTask

logger = logging.getLogger(__name__)

def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(value, high))

def validate_chapters(chapters: List[Chapter]) -> List[Chapter]:
    """Returns chapters ordered by start time. Overlapping chapters raise LoadError; gaps are allowed."""
    ordered = sorted(chapters, key=lambda c: c.start_time)
    for prev, nxt in zip(ordered, ordered[1:]):
        if nxt.start_time < prev.end_time:
            raise LoadError(
                f"Chapter '{nxt.title}' starts at {nxt.start_time:.1f}s, "
                f"before '{prev.title}' ends at {prev.end_time:.1f}s"
            )
    return ordered

def find_chapter(chapters: List[Chapter], t: float) -> Optional[Chapter]:
    for chapter in chapters:
        if chapter.start_time <= t < chapter.end_time:
            return chapter
    return None

class PlaybackSession:
    """
    Owns the single active audio session.

    Every public coroutine takes the session lock, so transport commands, poll ticks,
    sleep-timer ticks, engine events, interruptions and remote commands are applied
    one at a time. The `_locked` helpers assume the lock is held and never take it.
    """

    def __init__(self, engine: AudioEngine, store: CatalogStore, now_playing: Optional[NowPlayingSurface] = None):
        self.engine = engine
        self.store = store
        self.now_playing = now_playing

        self.item: Optional[Audiobook] = None
        self.chapters: List[Chapter] = []
        self.status = PlaybackStatus.IDLE
        self.current_time = 0.0
        self.duration = 0.0
        self.playback_rate = 1.0
        self.volume = 1.0
        self.volume_boost_enabled = False
        self.current_chapter: Optional[Chapter] = None
        self.sleep_timer_remaining = 0.0
        self.last_error: Optional[str] = None
        self.last_now_playing: Optional[NowPlayingInfo] = None

        self._lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._last_autosave_second: Optional[int] = None
        self._generation = 0
        self._poll = PeriodicTask(settings.POLL_INTERVAL_SECONDS, self.tick_progress, name="progress-poll")
        self._sleep_timer = PeriodicTask(settings.SLEEP_TIMER_TICK_SECONDS, self.tick_sleep_timer, name="sleep-timer")

    # Lifecycle

    async def start(self):
        self._loop = asyncio.get_running_loop()
        self.engine.set_event_handler(self.post_engine_event)
        logger.info("Playback session started")

    async def shutdown(self):
        async with self._lock:
            self._stop_locked()
        self.engine.set_event_handler(None)
        self.engine.release()
        logger.info("Playback session shut down")

    # Derived state

    @property
    def is_playing(self) -> bool:
        return self.status == PlaybackStatus.PLAYING

    @property
    def effective_volume(self) -> float:
        if self.volume_boost_enabled:
            return min(self.volume * settings.VOLUME_BOOST_FACTOR, 1.0)
        return self.volume

    def time_left_in_chapter(self) -> Optional[float]:
        """Seconds until the current chapter ends, for the 'end of chapter' sleep option."""
        if self.current_chapter is None:
            return None
        return max(0.0, self.current_chapter.end_time - self.current_time)

    def snapshot(self) -> SessionSnapshot:
        chapter = self.current_chapter
        return SessionSnapshot(
            status=self.status,
            item_id=self.item.id if self.item else None,
            title=self.item.title if self.item else None,
            current_time=self.current_time,
            duration=self.duration,
            playback_rate=self.playback_rate,
            volume=self.volume,
            volume_boost_enabled=self.volume_boost_enabled,
            effective_volume=self.effective_volume,
            chapter_index=self.chapters.index(chapter) if chapter else None,
            chapter_title=chapter.title if chapter else None,
            chapter_elapsed=self.current_time - chapter.start_time if chapter else None,
            chapter_remaining=self.time_left_in_chapter(),
            sleep_timer_remaining=self.sleep_timer_remaining,
            is_finished=self.item.is_finished if self.item else False,
            last_error=self.last_error,
        )

    # Loading

    async def load_item(self, item: Audiobook):
        async with self._lock:
            chapters = validate_chapters(item.chapters)
            if self.is_playing:
                self._refresh_time_from_engine()

            try:
                # Blocking decode runs off the loop; the lock keeps the prior state intact meanwhile
                engine_duration = await asyncio.to_thread(self.engine.load, item.file_path)
            except (OSError, DecodeError) as e:
                logger.error(f"Failed to load '{item.title}' from {item.file_path}: {e}")
                raise LoadError(f"Could not load '{item.title}': {e}") from e

            self._unload_locked()
            self._generation += 1

            self.item = item
            self.chapters = chapters
            self.duration = engine_duration or item.duration
            item.duration = self.duration
            self.current_time = clamp(item.current_position, 0, self.duration)
            self.playback_rate = clamp(item.playback_speed, settings.MIN_PLAYBACK_RATE, settings.MAX_PLAYBACK_RATE)
            self.status = PlaybackStatus.PAUSED
            self.last_error = None
            self._last_autosave_second = None
            self.engine.set_current_time(self.current_time)
            self.engine.set_volume(self.effective_volume)

            self._update_current_chapter()
            self._publish_now_playing()
            logger.info(f"Loaded '{item.title}' at {self.current_time:.1f}/{self.duration:.1f}s")

    async def open_item(self, item: Audiobook):
        """Library tap: resume the loaded item if it is this one, otherwise load it."""
        if self.item is not None and self.item.id == item.id:
            if not self.is_playing:
                await self.play()
            return
        await self.load_item(item)
        if settings.AUTOPLAY_ON_LOAD:
            await self.play()

    def _unload_locked(self):
        if self.item is None:
            return
        self._poll.stop()
        # Final checkpoint for the outgoing item; nothing writes to it after this
        self._save_position()
        logger.info(f"Unloaded '{self.item.title}'")
        self.item = None
        self.chapters = []
        self.current_chapter = None
        self.status = PlaybackStatus.IDLE

    # Transport

    async def play(self):
        async with self._lock:
            self._play_locked()

    def _play_locked(self):
        item = self._require_item("play")
        try:
            self.engine.play(self.playback_rate, self.effective_volume)
        except DecodeError as e:
            self._decode_error_locked(str(e))
            raise

        self.status = PlaybackStatus.PLAYING
        self.last_error = None
        self._poll.start()
        item.last_played_at = time.time()
        self._save_item()
        self._publish_now_playing()
        logger.info(f"Playing '{item.title}' at {self.current_time:.1f}s ({self.playback_rate}x)")

    async def pause(self):
        async with self._lock:
            self._pause_locked()

    def _pause_locked(self):
        if self.item is None:
            return
        if self.is_playing:
            self._refresh_time_from_engine()
            self.status = PlaybackStatus.PAUSED
            logger.info(f"Paused '{self.item.title}' at {self.current_time:.1f}s")
        self.engine.pause()
        self._poll.stop()
        self._save_position()
        self._publish_now_playing()

    async def stop(self):
        async with self._lock:
            self._stop_locked()

    def _stop_locked(self):
        self._pause_locked()
        self._cancel_sleep_timer_locked()
        if self.item is not None:
            self.engine.stop()

    async def seek(self, t: float):
        async with self._lock:
            self._seek_locked(t)

    def _seek_locked(self, t: float):
        self._require_item("seek")
        target = clamp(t, 0, self.duration)
        self.engine.set_current_time(target)
        self.current_time = target
        if self.status == PlaybackStatus.FINISHED:
            self.status = PlaybackStatus.PAUSED
        self._update_current_chapter()
        self._publish_now_playing()
        self._save_position()

    async def skip_forward(self, seconds: Optional[float] = None):
        async with self._lock:
            self._require_item("skip forward")
            if seconds is None:
                seconds = settings.SKIP_FORWARD_SECONDS
            if self.is_playing:
                self._refresh_time_from_engine()
            self._seek_locked(self.current_time + seconds)

    async def skip_backward(self, seconds: Optional[float] = None):
        async with self._lock:
            self._require_item("skip backward")
            if seconds is None:
                seconds = settings.SKIP_BACKWARD_SECONDS
            if self.is_playing:
                self._refresh_time_from_engine()
            rewind = seconds
            # Smart rewind: freshly resumed near the start, go back the full threshold
            if self.is_playing and self.current_time < settings.SMART_REWIND_SECONDS:
                rewind = settings.SMART_REWIND_SECONDS
            self._seek_locked(self.current_time - rewind)

    async def jump_to_chapter(self, chapter: Chapter):
        await self.seek(chapter.start_time)

    async def jump_to_beginning(self):
        await self.seek(0)

    async def set_playback_rate(self, rate: float):
        async with self._lock:
            self.playback_rate = clamp(rate, settings.MIN_PLAYBACK_RATE, settings.MAX_PLAYBACK_RATE)
            if self.item is None:
                return
            if self.engine.is_playing():
                self.engine.set_rate(self.playback_rate)
            self.item.playback_speed = self.playback_rate
            self._save_item()
            self._publish_now_playing()

    async def set_volume(self, volume: float):
        async with self._lock:
            self.volume = clamp(volume, 0.0, 1.0)
            self._apply_volume()

    async def toggle_volume_boost(self):
        async with self._lock:
            self.volume_boost_enabled = not self.volume_boost_enabled
            self._apply_volume()

    def _apply_volume(self):
        if self.item is not None:
            self.engine.set_volume(self.effective_volume)

    # Sleep timer

    async def start_sleep_timer(self, duration: float):
        async with self._lock:
            self._cancel_sleep_timer_locked()
            if duration <= 0:
                return
            self.sleep_timer_remaining = float(duration)
            self._sleep_timer.start()
            logger.info(f"Sleep timer set for {duration:.0f}s")

    async def cancel_sleep_timer(self):
        async with self._lock:
            self._cancel_sleep_timer_locked()

    def _cancel_sleep_timer_locked(self):
        self._sleep_timer.stop()
        self.sleep_timer_remaining = 0.0

    async def tick_sleep_timer(self):
        async with self._lock:
            if self.sleep_timer_remaining <= 0:
                return
            remaining = self.sleep_timer_remaining - self._sleep_timer.interval
            if remaining > 0:
                self.sleep_timer_remaining = remaining
                return
            logger.info("Sleep timer elapsed, pausing")
            self._pause_locked()
            self._cancel_sleep_timer_locked()

    # Progress polling

    async def tick_progress(self):
        async with self._lock:
            if self.item is None or not self.is_playing:
                return
            self._refresh_time_from_engine()
            self._update_current_chapter()

            finished_now = self._mark_finished_if_near_end()
            second = int(self.current_time)
            if second % settings.AUTOSAVE_INTERVAL_SECONDS == 0 and second != self._last_autosave_second:
                self._last_autosave_second = second
                logger.debug(f"Autosaving '{self.item.title}' at {self.current_time:.1f}s")
                self._save_position()
            elif finished_now:
                self._save_position()

    # External channels

    def post_engine_event(self, event: EngineEvent):
        """Thread-safe: hands an engine callback to the session's event loop."""
        if self._loop is None or self._loop.is_closed():
            logger.warning(f"Dropping engine event {event.kind.value}: session not started")
            return
        # Tag with the load the event came from; a later load makes it stale
        generation = self._generation
        future = asyncio.run_coroutine_threadsafe(self.handle_engine_event(event, generation), self._loop)
        future.add_done_callback(self._log_engine_event_failure)

    @staticmethod
    def _log_engine_event_failure(future):
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Error handling engine event: {error}", exc_info=error)

    async def handle_engine_event(self, event: EngineEvent, generation: Optional[int] = None):
        async with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug(f"Dropping stale engine event {event.kind.value} from load {generation}")
                return

            if event.kind == EngineEventKind.DECODE_ERROR:
                self._decode_error_locked(event.error or "unknown decode error")
                return

            if self.item is None or not self.is_playing:
                logger.debug(f"Ignoring engine event {event.kind.value}: not playing")
                return
            self._poll.stop()
            if event.success:
                self.current_time = self.duration
                self.item.current_position = self.duration
                self.item.is_finished = True
                self.status = PlaybackStatus.FINISHED
                self._update_current_chapter()
                self._save_item()
                logger.info(f"Finished '{self.item.title}'")
            else:
                self.status = PlaybackStatus.PAUSED
                logger.warning(f"Playback of '{self.item.title}' ended unsuccessfully")
            self._publish_now_playing()

    def _decode_error_locked(self, error: str):
        logger.error(f"Audio decode error: {error}")
        self._poll.stop()
        self.last_error = error
        if self.item is None:
            return
        self.engine.stop()
        if self.is_playing:
            self.status = PlaybackStatus.PAUSED
        self._publish_now_playing()

    async def handle_interruption(self, event: InterruptionEvent):
        if event.kind == InterruptionKind.BEGAN:
            logger.info("Audio interruption began")
            await self.pause()
        elif event.should_resume:
            logger.info("Audio interruption ended, resuming")
            try:
                await self.play()
            except CommandOnEmptySession as e:
                logger.warning(str(e))
            except DecodeError as e:
                logger.error(f"Could not resume after interruption: {e}")
        else:
            logger.info("Audio interruption ended without resume hint, staying paused")

    async def handle_remote_command(self, command: RemoteCommand) -> bool:
        """Now-playing surface commands. Same code path as any other caller.

        Returns False when the command was ignored because nothing is loaded.
        """
        kind = command.kind
        try:
            if kind == RemoteCommandKind.PLAY:
                await self.play()
            elif kind == RemoteCommandKind.PAUSE:
                await self.pause()
            elif kind == RemoteCommandKind.TOGGLE:
                if self.is_playing:
                    await self.pause()
                else:
                    await self.play()
            elif kind == RemoteCommandKind.SKIP_FORWARD:
                await self.skip_forward(command.seconds)
            elif kind == RemoteCommandKind.SKIP_BACKWARD:
                await self.skip_backward(command.seconds)
            elif kind == RemoteCommandKind.SEEK:
                if command.position is None:
                    raise ValueError("seek requires a position")
                await self.seek(command.position)
        except CommandOnEmptySession as e:
            logger.warning(f"Remote {kind.value} ignored: {e}")
            return False
        return True

    # Internals

    def _require_item(self, command: str) -> Audiobook:
        if self.item is None:
            logger.warning(f"Ignoring {command}: no audiobook loaded")
            raise CommandOnEmptySession(command)
        return self.item

    def _refresh_time_from_engine(self):
        self.current_time = clamp(self.engine.get_current_time(), 0, self.duration)

    def _update_current_chapter(self):
        self.current_chapter = find_chapter(self.chapters, self.current_time)

    def _mark_finished_if_near_end(self) -> bool:
        if self.item is None or self.item.is_finished or self.duration <= 0:
            return False
        if self.duration - self.current_time < settings.FINISH_THRESHOLD_SECONDS:
            self.item.is_finished = True
            logger.info(f"Marked '{self.item.title}' finished ({self.duration - self.current_time:.1f}s left)")
            return True
        return False

    def _save_position(self):
        if self.item is None:
            return
        self.item.current_position = self.current_time
        self._mark_finished_if_near_end()
        self._save_item()

    def _save_item(self):
        try:
            self.store.save(self.item)
        except PersistenceError as e:
            logger.error(f"Failed to persist '{self.item.title}': {e}")

    def _publish_now_playing(self):
        if self.item is None:
            return
        info = NowPlayingInfo(
            item_id=self.item.id,
            title=self.item.title,
            author=self.item.author,
            duration=self.duration,
            elapsed_time=self.current_time,
            playback_rate=self.playback_rate if self.is_playing else 0.0,
            artwork_path=self.item.artwork_path,
            chapter_title=self.current_chapter.title if self.current_chapter else None,
        )
        self.last_now_playing = info
        if self.now_playing is None:
            return
        try:
            self.now_playing.publish(info)
        except Exception as e:
            logger.error(f"Failed to publish now playing: {e}")
