import logging
import os
import sys
from typing import Callable, Optional, Protocol
from ..errors import DecodeError
from ..models import EngineEvent, EngineEventKind

logger = logging.getLogger(__name__)

EngineEventHandler = Callable[[EngineEvent], None]

class AudioEngine(Protocol):
    def load(self, path: str) -> float: ...
    def play(self, rate: float, volume: float) -> None: ...
    def pause(self) -> None: ...
    def stop(self) -> None: ...
    def set_rate(self, rate: float) -> None: ...
    def set_volume(self, volume: float) -> None: ...
    def set_current_time(self, seconds: float) -> None: ...
    def get_current_time(self) -> float: ...
    def is_playing(self) -> bool: ...
    def set_event_handler(self, handler: Optional[EngineEventHandler]) -> None: ...
    def release(self) -> None: ...

class VlcAudioEngine:
    """libVLC-backed engine. Event callbacks arrive on libVLC's own thread."""

    def __init__(self, vlc_module=None, platform_name: Optional[str] = None):
        if vlc_module is None:
            import vlc as vlc_module
        self._vlc = vlc_module
        platform_value = platform_name if platform_name is not None else sys.platform
        args = ["--no-xlib", "--no-video"] if str(platform_value).startswith("linux") else ["--no-video"]
        self.instance = self._vlc.Instance(args)
        self.player = self.instance.media_player_new()
        self.media = None
        self._pending_ms: Optional[int] = None
        self._handler: Optional[EngineEventHandler] = None

        events = self.player.event_manager()
        events.event_attach(self._vlc.EventType.MediaPlayerEndReached, self._on_end_reached)
        events.event_attach(self._vlc.EventType.MediaPlayerEncounteredError, self._on_error)

    def set_event_handler(self, handler: Optional[EngineEventHandler]):
        self._handler = handler

    def _emit(self, event: EngineEvent):
        if self._handler is None:
            logger.debug(f"Dropping engine event {event.kind.value}: no handler")
            return
        self._handler(event)

    def _on_end_reached(self, _event):
        self._emit(EngineEvent(kind=EngineEventKind.FINISHED, success=True))

    def _on_error(self, _event):
        self._emit(EngineEvent(kind=EngineEventKind.DECODE_ERROR, success=False, error="libVLC playback error"))

    def load(self, path: str) -> float:
        """Parse the file and swap it in. The current media is untouched if this fails."""
        if not os.path.isfile(path):
            raise FileNotFoundError(path)

        media = self.instance.media_new(os.path.abspath(path))
        media.parse()
        length_ms = media.get_duration()
        if not length_ms or length_ms <= 0:
            media.release()
            raise DecodeError(f"Could not determine duration of {path}")

        self.player.stop()
        if self.media is not None:
            self.media.release()
        self.player.set_media(media)
        self.media = media
        self._pending_ms = None
        logger.info(f"Loaded {path} ({length_ms / 1000.0:.1f}s)")
        return length_ms / 1000.0

    def play(self, rate: float, volume: float):
        if self.media is None:
            raise DecodeError("No media loaded")
        self.player.audio_set_volume(self._volume_percent(volume))
        if int(self.player.play()) == -1:
            raise DecodeError("libVLC failed to start playback")
        self.player.set_rate(float(rate))
        if self._pending_ms is not None:
            self.player.set_time(self._pending_ms)
            self._pending_ms = None

    def pause(self):
        self.player.set_pause(1)

    def stop(self):
        # Keep the position so a later play() resumes where we stopped
        self._pending_ms = int(self.get_current_time() * 1000)
        self.player.stop()

    def set_rate(self, rate: float):
        self.player.set_rate(float(rate))

    def set_volume(self, volume: float):
        self.player.audio_set_volume(self._volume_percent(volume))

    def set_current_time(self, seconds: float):
        ms = int(seconds * 1000)
        # libVLC ignores seeks on media that has not started
        if self.player.is_playing() or self.player.get_time() > 0:
            self.player.set_time(ms)
            self._pending_ms = None
        else:
            self._pending_ms = ms

    def get_current_time(self) -> float:
        if self._pending_ms is not None:
            return self._pending_ms / 1000.0
        return max(0, int(self.player.get_time() or 0)) / 1000.0

    def is_playing(self) -> bool:
        return bool(self.player.is_playing())

    def release(self):
        self._handler = None
        self.player.stop()
        if self.media is not None:
            self.media.release()
            self.media = None
        self.player.release()
        self.instance.release()

    @staticmethod
    def _volume_percent(volume: float) -> int:
        return max(0, min(100, int(round(volume * 100))))
