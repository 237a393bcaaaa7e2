from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Catalog
    LIBRARY_PATH: str = "/data/library.json"
    PERSIST_ENABLED: bool = True
    RESUME_ITEM_ID: Optional[str] = None

    # Playback policy
    POLL_INTERVAL_SECONDS: float = 0.5
    AUTOSAVE_INTERVAL_SECONDS: int = 30
    FINISH_THRESHOLD_SECONDS: float = 30
    SMART_REWIND_SECONDS: float = 30
    SKIP_FORWARD_SECONDS: float = 30
    SKIP_BACKWARD_SECONDS: float = 30
    MIN_PLAYBACK_RATE: float = 0.5
    MAX_PLAYBACK_RATE: float = 3.0
    VOLUME_BOOST_FACTOR: float = 2.0
    SLEEP_TIMER_TICK_SECONDS: float = 1.0
    AUTOPLAY_ON_LOAD: bool = True

    # Now playing
    NOW_PLAYING_WEBHOOK_URL: Optional[str] = None
    REQUEST_TIMEOUT_SECONDS: int = 10

    # System
    LOG_LEVEL: str = "INFO"
    DRY_RUN: bool = False
    HTTP_SERVER_ENABLED: bool = False
    HTTP_SERVER_PORT: int = 8080
    HTTP_SERVER_TOKEN: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

settings = Settings()
