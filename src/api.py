from fastapi import FastAPI, HTTPException, Query, Response
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import asyncio
import logging
from typing import Optional
from pydantic import AliasChoices, BaseModel, Field

from channel_records import InMemoryChannelRecordStore, RedisChannelRecordStore
from config import settings, VERSION
from events import EventManager
from models import ChannelEvent, EventType, HealthCheck, PipelineState, WebhookConfig
from pipeline_manager import ChannelPipelineManager
from redis_config import get_redis_config, should_use_redis

logger = logging.getLogger(__name__)


def get_content_type(filename: str) -> str:
    """Determine content type based on file extension"""
    name = filename.lower()
    if name.endswith('.ts'):
        return 'video/mp2t'
    elif name.endswith('.m3u8'):
        return 'application/vnd.apple.mpegurl'
    else:
        return 'application/octet-stream'


def _read_file(path: str) -> Optional[bytes]:
    # Segments are evicted by FFmpeg at any moment
    try:
        with open(path, "rb") as fh:
            return fh.read()
    except FileNotFoundError:
        return None


class ConvertRequest(BaseModel):
    channel_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("channelName", "channel"))
    youtube_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("youtubeUrl", "source_reference"))


def create_record_store():
    if should_use_redis():
        return RedisChannelRecordStore(get_redis_config()["redis_url"])
    return InMemoryChannelRecordStore()


# Global pipeline manager and event manager
event_manager = EventManager()
manager = ChannelPipelineManager(records=create_record_store(), event_manager=event_manager)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    logger.info("live-hls-relay starting up...")

    try:
        await manager.records.connect()
    except Exception as e:
        logger.error(f"Channel record store unavailable, keeping records in memory: {e}")
        manager.records = InMemoryChannelRecordStore()

    await event_manager.start()

    def log_event_handler(event: ChannelEvent):
        """Simple event handler that logs all events"""
        logger.info(f"Event: {event.event_type.value} for channel {event.channel} at {event.timestamp}")

    event_manager.add_handler(log_event_handler)
    manager.event_manager = event_manager

    await manager.start()

    yield

    logger.info("live-hls-relay shutting down...")
    await manager.shutdown()
    await event_manager.stop()
    await manager.records.close()


app = FastAPI(
    title="live-hls-relay",
    version=VERSION,
    description="Converts live video pages into continuously refreshed HLS channels",
    lifespan=lifespan,
    root_path=settings.ROOT_PATH,
    docs_url=settings.DOCS_URL,
    redoc_url=settings.REDOC_URL,
    openapi_url=settings.OPENAPI_URL,
)

# Players fetch playlists from arbitrary origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)


@app.get("/")
async def root():
    return {
        "status": "running",
        "message": "live-hls-relay is running",
        "version": VERSION,
        "channels": len(manager.channels),
    }


@app.post("/api/convert")
async def convert(request: ConvertRequest):
    """Start (or restart) converting a live source into a channel playlist"""
    result = manager.request_conversion(request.channel_name, request.youtube_url)
    if not result.accepted:
        return JSONResponse(status_code=400, content={"accepted": False, "reason": result.reason})

    return {
        "accepted": True,
        "channel": result.channel,
        "message": "Conversion started successfully",
        "m3u8Url": result.playlist_url,
    }


@app.get("/api/channels")
async def list_channels():
    return {"channels": manager.list_channels()}


@app.get("/api/channels/{channel}")
async def get_channel(channel: str):
    status = manager.status(channel)
    if status is None:
        raise HTTPException(status_code=404, detail="Channel not found")
    return status


@app.delete("/api/channels/{channel}")
async def delete_channel(channel: str):
    """Stop a channel's pipeline and delete its playlist, segments and record"""
    try:
        removed = await manager.remove(channel)
    except Exception as e:
        logger.error(f"Error removing channel {channel}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    if not removed:
        raise HTTPException(status_code=404, detail="Channel not found")
    return {"message": f"Channel {channel} removed"}


@app.get("/streams/{filename}")
async def get_stream_file(filename: str):
    """Serve a channel playlist or one of its segments"""
    path = manager.store.resolve_public_file(filename)
    content = await asyncio.to_thread(_read_file, path) if path else None
    if content is None:
        raise HTTPException(status_code=404, detail="Not found")

    return Response(
        content=content,
        media_type=get_content_type(filename),
        headers={"Cache-Control": "no-cache"},
    )


@app.get("/stats")
async def get_stats():
    return manager.stats()


@app.get("/health", response_model=HealthCheck)
async def health_check():
    """Health check endpoint with channel counts"""
    streaming = sum(1 for status in manager.list_channels() if status.state == PipelineState.STREAMING)
    live = sum(1 for process in manager.supervisor.snapshot() if process["alive"])
    return HealthCheck(
        status="healthy",
        version=VERSION,
        channels=len(manager.channels),
        streaming=streaming,
        live_processes=live,
    )

# Webhook Management Endpoints


@app.post("/webhooks")
async def add_webhook(webhook: WebhookConfig):
    """Add a new webhook configuration"""
    event_manager.add_webhook(webhook)
    return {
        "message": "Webhook added successfully",
        "webhook_url": str(webhook.url),
        "events": [event.value for event in webhook.events]
    }


@app.get("/webhooks")
async def list_webhooks():
    """List all configured webhooks"""
    webhooks = []
    for wh in event_manager.webhooks:
        stats = event_manager.delivery_stats.get(str(wh.url))
        webhooks.append({
            "url": str(wh.url),
            "events": [event.value for event in wh.events],
            "channels": wh.channels,
            "timeout": wh.timeout,
            "retry_attempts": wh.retry_attempts,
            "delivered": stats.delivered if stats else 0,
            "failed": stats.failed if stats else 0,
            "last_error": stats.last_error if stats else None,
        })
    return {"webhooks": webhooks}


@app.delete("/webhooks")
async def remove_webhook(webhook_url: str = Query(..., description="Webhook URL to remove")):
    """Remove a webhook configuration"""
    if not event_manager.remove_webhook(webhook_url):
        raise HTTPException(status_code=404, detail="Webhook not found")
    return {"message": f"Webhook {webhook_url} removed successfully"}


@app.post("/webhooks/test")
async def test_webhook(webhook_url: str = Query(..., description="Webhook URL to test")):
    """Send a test event to a webhook"""
    webhook = next((wh for wh in event_manager.webhooks if str(wh.url) == webhook_url), None)
    if webhook is None:
        raise HTTPException(status_code=404, detail="Webhook not found")

    test_event = ChannelEvent(
        event_type=EventType.CHANNEL_STREAMING,
        channel="test",
        data={"test": True, "message": "This is a test webhook event"},
    )
    delivered = await event_manager._send_webhook(webhook, test_event)
    return {
        "message": f"Test event sent to {webhook_url}",
        "event_id": test_event.event_id,
        "delivered": delivered,
    }
