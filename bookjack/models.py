import time
import uuid
from enum import Enum
from pydantic import BaseModel, Field
from typing import Dict, List, Optional

def _new_id() -> str:
    return uuid.uuid4().hex

class Chapter(BaseModel):
    id: str = Field(default_factory=_new_id)
    title: str
    start_time: float = Field(ge=0)
    duration: float = Field(ge=0)

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration

class Audiobook(BaseModel):
    id: str = Field(default_factory=_new_id)
    title: str
    author: str = ""
    file_path: str
    duration: float = 0.0
    current_position: float = 0.0
    is_finished: bool = False
    date_added: float = Field(default_factory=time.time)
    last_played_at: Optional[float] = None
    artwork_path: Optional[str] = None
    playback_speed: float = 1.0
    chapters: List[Chapter] = Field(default_factory=list)

    @property
    def progress(self) -> float:
        if self.duration <= 0:
            return 0.0
        return self.current_position / self.duration

    @property
    def remaining_time(self) -> float:
        return self.duration - self.current_position

class Catalog(BaseModel):
    items: Dict[str, Audiobook] = Field(default_factory=dict)
    last_played_id: Optional[str] = None

class PlaybackStatus(str, Enum):
    IDLE = "idle"
    PAUSED = "paused"
    PLAYING = "playing"
    FINISHED = "finished"

class NowPlayingInfo(BaseModel):
    """What the system-level now-playing display shows."""
    item_id: str
    title: str
    author: str
    duration: float
    elapsed_time: float
    playback_rate: float  # 0 while paused
    artwork_path: Optional[str] = None
    chapter_title: Optional[str] = None

class SessionSnapshot(BaseModel):
    status: PlaybackStatus
    item_id: Optional[str] = None
    title: Optional[str] = None
    current_time: float = 0.0
    duration: float = 0.0
    playback_rate: float = 1.0
    volume: float = 1.0
    volume_boost_enabled: bool = False
    effective_volume: float = 1.0
    chapter_index: Optional[int] = None
    chapter_title: Optional[str] = None
    chapter_elapsed: Optional[float] = None
    chapter_remaining: Optional[float] = None
    sleep_timer_remaining: float = 0.0
    is_finished: bool = False
    last_error: Optional[str] = None

class InterruptionKind(str, Enum):
    BEGAN = "began"
    ENDED = "ended"

class InterruptionEvent(BaseModel):
    kind: InterruptionKind
    should_resume: bool = False

class EngineEventKind(str, Enum):
    FINISHED = "finished"
    DECODE_ERROR = "decode_error"

class EngineEvent(BaseModel):
    kind: EngineEventKind
    success: bool = True
    error: Optional[str] = None

class RemoteCommandKind(str, Enum):
    PLAY = "play"
    PAUSE = "pause"
    TOGGLE = "toggle"
    SKIP_FORWARD = "skip_forward"
    SKIP_BACKWARD = "skip_backward"
    SEEK = "seek"

class RemoteCommand(BaseModel):
    kind: RemoteCommandKind
    seconds: Optional[float] = None   # skip interval
    position: Optional[float] = None  # seek target
