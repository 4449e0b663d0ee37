from pydantic import BaseModel, Field, HttpUrl
from typing import List, Optional, Dict, Any
from enum import Enum
from datetime import datetime, timezone
import re
import uuid


# Normalized channel keys: lowercase ASCII letters and digits only
CHANNEL_KEY_PATTERN = re.compile(r"^[a-z0-9]{1,64}$")
MAX_CHANNEL_KEY_LENGTH = 64


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineState(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    STARTING = "starting"
    STREAMING = "streaming"
    FAILED = "failed"
    STOPPING = "stopping"


class ErrorKind(str, Enum):
    INVALID_REQUEST = "invalid_request"
    RESOLUTION_FAILURE = "resolution_failure"
    PROCESS_START_FAILURE = "process_start_failure"
    PROCESS_CRASH = "process_crash"
    STORE_FAILURE = "store_failure"


class ProcessEventKind(str, Enum):
    STARTED = "started"
    EXITED_OK = "exited_ok"
    EXITED_ERROR = "exited_error"
    CRASHED = "crashed"
    STOPPED = "stopped"


class EventType(str, Enum):
    CONVERSION_REQUESTED = "conversion_requested"
    PROCESS_STARTED = "process_started"
    PROCESS_EXITED = "process_exited"
    CHANNEL_STREAMING = "channel_streaming"
    CHANNEL_FAILED = "channel_failed"
    CHANNEL_REMOVED = "channel_removed"


class ErrorInfo(BaseModel):
    kind: ErrorKind
    message: str
    at: datetime = Field(default_factory=utcnow)


class ChannelStatus(BaseModel):
    channel: str
    state: PipelineState
    source_reference: str
    playlist_url: str
    consecutive_failures: int = 0
    restart_count: int = 0
    pid: Optional[int] = None
    last_resolved_at: Optional[datetime] = None
    streaming_since: Optional[datetime] = None
    last_error: Optional[ErrorInfo] = None
    updated_at: datetime = Field(default_factory=utcnow)


class ChannelRecord(BaseModel):
    """Metadata record kept in the external record store."""
    channel_key: str
    source_reference: str
    playlist_url: str
    status: PipelineState = PipelineState.STREAMING
    last_updated: datetime = Field(default_factory=utcnow)


class ConversionResult(BaseModel):
    accepted: bool
    channel: Optional[str] = None
    playlist_url: Optional[str] = None
    reason: Optional[str] = None


class ChannelEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    channel: str
    timestamp: datetime = Field(default_factory=utcnow)
    data: Dict[str, Any] = Field(default_factory=dict)


class WebhookConfig(BaseModel):
    url: HttpUrl
    events: List[EventType] = Field(default_factory=lambda: list(EventType))
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: int = Field(default=10, ge=1)
    retry_attempts: int = Field(default=3, ge=0)
    # channel keys to deliver for; empty means every channel
    channels: List[str] = Field(default_factory=list)


class HealthCheck(BaseModel):
    status: str
    version: str
    timestamp: datetime = Field(default_factory=utcnow)
    channels: int = 0
    streaming: int = 0
    live_processes: int = 0
