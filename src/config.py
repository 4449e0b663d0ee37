from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

# Application version
VERSION = "0.1.0"


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Utilizes pydantic-settings for robust validation and type-casting.
    """

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 3001
    LOG_LEVEL: str = "info"
    RELOAD: bool = False
    ROOT_PATH: str = ""
    DOCS_URL: str = "/docs"
    REDOC_URL: str = "/redoc"
    OPENAPI_URL: str = "/openapi.json"

    # Segment store
    STREAMS_DIR: str = "./streams"
    # Public path the playlists are served under (/streams/{channel}.m3u8)
    PUBLIC_STREAMS_PATH: str = "/streams"
    # Refuse to (re)start a transcoder when the store has less free space than this
    STORE_MIN_FREE_BYTES: int = 50 * 1024 * 1024
    # Garbage collection of channel directories nobody owns anymore
    HLS_GC_ENABLED: bool = True
    HLS_GC_INTERVAL: int = 600
    HLS_GC_AGE_THRESHOLD: int = 3600  # seconds (1 hour)

    # Locator resolver (yt-dlp compatible command line)
    RESOLVER_COMMAND: str = "yt-dlp"
    RESOLVER_FORMAT: str = "best"
    RESOLVER_TIMEOUT: float = 30.0

    # Transcoder
    FFMPEG_COMMAND: str = "ffmpeg"
    FFMPEG_LOGLEVEL: str = "warning"
    HLS_SEGMENT_DURATION: int = 10
    HLS_LIST_SIZE: int = 3
    # Unreferenced segments FFmpeg keeps on disk before deleting them
    HLS_DELETE_THRESHOLD: int = 1
    VIDEO_CODEC: str = "copy"
    AUDIO_CODEC: str = "aac"
    AUDIO_BITRATE: str = "128k"
    # How long (seconds) to wait for FFmpeg to produce the initial HLS playlist
    # before considering the transcoder failed.
    HLS_WAIT_TIME: float = 20.0
    # Grace period for SIGTERM before the transcoder is killed
    PROCESS_STOP_TIMEOUT: float = 5.0

    # Retry policy for resolution / start failures and crashes
    MAX_ATTEMPTS: int = 5
    BACKOFF_BASE: float = 1.0
    BACKOFF_FACTOR: float = 2.0
    BACKOFF_MAX: float = 60.0
    BACKOFF_JITTER: float = 0.2
    # A channel must stream this long (seconds) before its failure count resets
    HEALTHY_STREAM_PERIOD: float = 30.0

    # Channel records (Redis when enabled, in-memory otherwise)
    REDIS_HOST: str = "localhost"
    REDIS_SERVER_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None
    REDIS_URL: Optional[str] = None
    REDIS_ENABLED: bool = False
    # Restart conversion for every stored channel when the service boots
    RESUME_ON_STARTUP: bool = True

    # Model configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",  # No prefix, read directly from .env
        extra="ignore"  # Ignore extra environment variables from container
    )


# Global settings instance
settings = Settings()
