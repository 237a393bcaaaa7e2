import time
from fastapi import FastAPI, Depends, HTTPException, Header
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field
from typing import Optional
from .config import settings
from .errors import CommandOnEmptySession, DecodeError, LoadError
from .models import InterruptionEvent, RemoteCommand, RemoteCommandKind
from .session import PlaybackSession

app = FastAPI(title="Bookjack Player")
session: Optional[PlaybackSession] = None
started_at = time.time()

class LoadRequest(BaseModel):
    item_id: str

class SkipRequest(BaseModel):
    seconds: Optional[float] = Field(default=None, gt=0)

class SeekRequest(BaseModel):
    position: float

class RateRequest(BaseModel):
    rate: float

class VolumeRequest(BaseModel):
    volume: float

class SleepTimerRequest(BaseModel):
    duration: float = Field(gt=0)

def get_token(x_token: Optional[str] = Header(None, alias="X-Token")):
    if settings.HTTP_SERVER_TOKEN and x_token != settings.HTTP_SERVER_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid token")

def get_session() -> PlaybackSession:
    if session is None:
        raise HTTPException(status_code=503, detail="Player not ready")
    return session

async def _remote(command: RemoteCommand):
    s = get_session()
    try:
        handled = await s.handle_remote_command(command)
    except DecodeError as e:
        raise HTTPException(status_code=502, detail=f"Audio engine error: {e}")
    if not handled:
        raise HTTPException(status_code=409, detail=f"Cannot {command.kind.value}: no audiobook loaded")
    return s.snapshot()

@app.get("/healthz")
def healthz():
    if not session:
        return {"status": "starting"}
    if session.last_error:
        return {"status": "degraded", "error": session.last_error}
    return {"status": "ok", "uptime": time.time() - started_at}

@app.get("/status", dependencies=[Depends(get_token)])
def status():
    return get_session().snapshot()

@app.get("/now-playing", dependencies=[Depends(get_token)])
def now_playing():
    info = get_session().last_now_playing
    if info is None:
        raise HTTPException(status_code=404, detail="Nothing loaded")
    return info

@app.get("/metrics", response_class=PlainTextResponse)
def metrics():
    # Simple prometheus-style text format
    if not session:
        return ""

    lines = [
        f'bookjack_playing {int(session.is_playing)}',
        f'bookjack_position_seconds {session.current_time}',
        f'bookjack_duration_seconds {session.duration}',
        f'bookjack_playback_rate {session.playback_rate}',
        f'bookjack_sleep_timer_remaining_seconds {session.sleep_timer_remaining}',
    ]
    return "\n".join(lines)

@app.post("/load", dependencies=[Depends(get_token)])
async def load(req: LoadRequest):
    s = get_session()
    item = s.store.get(req.item_id)
    if item is None:
        raise HTTPException(status_code=404, detail=f"Unknown audiobook {req.item_id}")
    try:
        await s.open_item(item)
    except LoadError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except DecodeError as e:
        raise HTTPException(status_code=502, detail=f"Audio engine error: {e}")
    return s.snapshot()

@app.post("/commands/play", dependencies=[Depends(get_token)])
async def play():
    return await _remote(RemoteCommand(kind=RemoteCommandKind.PLAY))

@app.post("/commands/pause", dependencies=[Depends(get_token)])
async def pause():
    return await _remote(RemoteCommand(kind=RemoteCommandKind.PAUSE))

@app.post("/commands/toggle", dependencies=[Depends(get_token)])
async def toggle():
    return await _remote(RemoteCommand(kind=RemoteCommandKind.TOGGLE))

@app.post("/commands/stop", dependencies=[Depends(get_token)])
async def stop():
    s = get_session()
    await s.stop()
    return s.snapshot()

@app.post("/commands/skip-forward", dependencies=[Depends(get_token)])
async def skip_forward(req: Optional[SkipRequest] = None):
    seconds = req.seconds if req else None
    return await _remote(RemoteCommand(kind=RemoteCommandKind.SKIP_FORWARD, seconds=seconds))

@app.post("/commands/skip-backward", dependencies=[Depends(get_token)])
async def skip_backward(req: Optional[SkipRequest] = None):
    seconds = req.seconds if req else None
    return await _remote(RemoteCommand(kind=RemoteCommandKind.SKIP_BACKWARD, seconds=seconds))

@app.post("/commands/seek", dependencies=[Depends(get_token)])
async def seek(req: SeekRequest):
    return await _remote(RemoteCommand(kind=RemoteCommandKind.SEEK, position=req.position))

@app.post("/commands/rate", dependencies=[Depends(get_token)])
async def rate(req: RateRequest):
    s = get_session()
    await s.set_playback_rate(req.rate)
    return s.snapshot()

@app.post("/commands/volume", dependencies=[Depends(get_token)])
async def volume(req: VolumeRequest):
    s = get_session()
    await s.set_volume(req.volume)
    return s.snapshot()

@app.post("/commands/volume-boost", dependencies=[Depends(get_token)])
async def volume_boost():
    s = get_session()
    await s.toggle_volume_boost()
    return s.snapshot()

@app.post("/chapters/{index}/jump", dependencies=[Depends(get_token)])
async def jump_to_chapter(index: int):
    s = get_session()
    if not 0 <= index < len(s.chapters):
        raise HTTPException(status_code=404, detail=f"No chapter {index}")
    try:
        await s.jump_to_chapter(s.chapters[index])
    except CommandOnEmptySession as e:
        raise HTTPException(status_code=409, detail=str(e))
    return s.snapshot()

@app.post("/sleep-timer", dependencies=[Depends(get_token)])
async def start_sleep_timer(req: SleepTimerRequest):
    s = get_session()
    await s.start_sleep_timer(req.duration)
    return s.snapshot()

@app.post("/sleep-timer/end-of-chapter", dependencies=[Depends(get_token)])
async def sleep_at_end_of_chapter():
    s = get_session()
    remaining = s.time_left_in_chapter()
    if remaining is None:
        raise HTTPException(status_code=409, detail="No current chapter")
    await s.start_sleep_timer(remaining)
    return s.snapshot()

@app.delete("/sleep-timer", dependencies=[Depends(get_token)])
async def cancel_sleep_timer():
    s = get_session()
    await s.cancel_sleep_timer()
    return s.snapshot()

@app.post("/interruption", dependencies=[Depends(get_token)])
async def interruption(event: InterruptionEvent):
    s = get_session()
    await s.handle_interruption(event)
    return s.snapshot()
