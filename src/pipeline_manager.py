"""
Channel Pipeline Manager

Maps channel keys to at most one live conversion pipeline. Each channel is
owned by a single worker task that consumes a command queue and walks the
pipeline state machine:

    idle -> resolving -> starting -> streaming -> (failed | stopping) -> idle

Every wait inside the state machine (resolution, launch, liveness, the
streaming period itself and backoff sleeps) races against the command queue,
so a new conversion request or a removal takes effect immediately and all
transitions of one channel stay strictly sequential. Channels never share a
lock.
"""

import asyncio
import logging
import random
import re
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Deque, Dict, List, Optional
from urllib.parse import urlparse

from channel_records import InMemoryChannelRecordStore
from config import settings
from errors import (
    InvalidRequest,
    PipelineError,
    ProcessCrash,
    ProcessStartFailure,
    ResolutionError,
    StoreFailure,
)
from models import (
    MAX_CHANNEL_KEY_LENGTH,
    ChannelEvent,
    ChannelRecord,
    ChannelStatus,
    ConversionResult,
    ErrorInfo,
    ErrorKind,
    EventType,
    PipelineState,
    ProcessEventKind,
    utcnow,
)
from resolver import Locator, LocatorResolver
from segment_store import SegmentStore
from supervisor import ProcessEvent, ProcessHandle, TranscodeSupervisor

logger = logging.getLogger(__name__)


def normalize_channel_key(name: Any) -> str:
    """Lowercase the channel name and keep only ``[a-z0-9]``."""
    if not isinstance(name, str) or not name.strip():
        raise InvalidRequest("channel name is required")
    key = re.sub(r"[^a-z0-9]", "", name.lower())
    if not key:
        raise InvalidRequest(f"channel name {name!r} contains no letters or digits")
    if len(key) > MAX_CHANNEL_KEY_LENGTH:
        raise InvalidRequest(f"channel name must be at most {MAX_CHANNEL_KEY_LENGTH} characters")
    return key


def validate_source_reference(source_reference: Any) -> str:
    """Validate the live video page URL a channel converts from."""
    if not isinstance(source_reference, str) or not source_reference.strip():
        raise InvalidRequest("source reference is required")
    source_reference = source_reference.strip()

    url_lower = source_reference.lower()
    for pattern in ('<script', 'javascript:', 'data:', 'vbscript:', 'file:'):
        if pattern in url_lower:
            raise InvalidRequest(f"source reference contains dangerous pattern: {pattern}")

    parsed = urlparse(source_reference)
    if parsed.scheme not in ('http', 'https'):
        raise InvalidRequest("source reference must use HTTP or HTTPS")
    if not parsed.netloc:
        raise InvalidRequest("source reference must have a valid domain")
    return source_reference


def compute_backoff(attempt: int, base: float, factor: float, maximum: float,
                    jitter: float = 0.0, rng: Optional[random.Random] = None) -> float:
    """Capped exponential delay for the ``attempt``-th consecutive failure (1-based)."""
    delay = min(maximum, base * (factor ** max(0, attempt - 1)))
    if jitter:
        delay *= 1 + (rng or random).uniform(-jitter, jitter)
    return max(0.0, delay)


class CommandKind(str, Enum):
    CONVERT = "convert"
    REMOVE = "remove"


@dataclass
class ChannelCommand:
    kind: CommandKind
    source_reference: Optional[str] = None


class _Interrupted(Exception):
    """Raised inside a worker when a new command preempts the current wait."""

    def __init__(self, command: ChannelCommand):
        super().__init__(command.kind.value)
        self.command = command


@dataclass
class Pipeline:
    channel_key: str
    state: PipelineState = PipelineState.IDLE
    locator: Optional[Locator] = None
    handle: Optional[ProcessHandle] = None
    restart_count: int = 0
    last_error: Optional[ErrorInfo] = None
    streaming_since: Optional[datetime] = None


@dataclass
class Channel:
    key: str
    source_reference: str
    pipeline: Pipeline
    consecutive_failures: int = 0
    last_resolved_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    removing: bool = False
    transitions: Deque[PipelineState] = field(default_factory=lambda: deque(maxlen=64))
    commands: asyncio.Queue = field(default_factory=asyncio.Queue, repr=False)
    worker: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def state(self) -> PipelineState:
        return self.pipeline.state


class ChannelPipelineManager:
    def __init__(self,
                 resolver: Optional[LocatorResolver] = None,
                 store: Optional[SegmentStore] = None,
                 supervisor: Optional[TranscodeSupervisor] = None,
                 records=None,
                 event_manager=None,
                 max_attempts: Optional[int] = None,
                 backoff_base: Optional[float] = None,
                 backoff_factor: Optional[float] = None,
                 backoff_max: Optional[float] = None,
                 backoff_jitter: Optional[float] = None,
                 start_timeout: Optional[float] = None,
                 healthy_period: Optional[float] = None,
                 gc_enabled: Optional[bool] = None,
                 gc_interval: Optional[float] = None,
                 gc_age_threshold: Optional[float] = None,
                 resume_on_startup: Optional[bool] = None):
        self.store = store or SegmentStore()
        self.resolver = resolver or LocatorResolver()
        self.supervisor = supervisor or TranscodeSupervisor(self.store)
        if self.supervisor.listener is None:
            self.supervisor.listener = self._on_process_event
        self.records = records if records is not None else InMemoryChannelRecordStore()
        self.event_manager = event_manager

        self.max_attempts = max_attempts or settings.MAX_ATTEMPTS
        self.backoff_base = settings.BACKOFF_BASE if backoff_base is None else backoff_base
        self.backoff_factor = settings.BACKOFF_FACTOR if backoff_factor is None else backoff_factor
        self.backoff_max = settings.BACKOFF_MAX if backoff_max is None else backoff_max
        self.backoff_jitter = settings.BACKOFF_JITTER if backoff_jitter is None else backoff_jitter
        self.start_timeout = settings.HLS_WAIT_TIME if start_timeout is None else start_timeout
        self.healthy_period = settings.HEALTHY_STREAM_PERIOD if healthy_period is None else healthy_period

        self.gc_enabled = settings.HLS_GC_ENABLED if gc_enabled is None else gc_enabled
        self.gc_interval = gc_interval or settings.HLS_GC_INTERVAL
        self.gc_age_threshold = settings.HLS_GC_AGE_THRESHOLD if gc_age_threshold is None else gc_age_threshold
        self.resume_on_startup = settings.RESUME_ON_STARTUP if resume_on_startup is None else resume_on_startup

        self.channels: Dict[str, Channel] = {}
        self._gc_task: Optional[asyncio.Task] = None
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        self._running = True
        if self.gc_enabled:
            self._gc_task = asyncio.create_task(self._gc_loop())
        if self.resume_on_startup:
            await self.resume_from_records()
        logger.info("Channel pipeline manager started")

    async def shutdown(self):
        self._running = False
        if self._gc_task:
            self._gc_task.cancel()

        workers = [channel.worker for channel in self.channels.values() if channel.worker]
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

        await self.supervisor.stop_all()
        logger.info("Channel pipeline manager stopped")

    async def resume_from_records(self) -> List[str]:
        """Re-request conversion for every stored channel that had not failed."""
        try:
            records = await self.records.list()
        except Exception as e:
            logger.error(f"Could not load channel records: {e}")
            return []

        resumed = []
        for record in records:
            if record.status == PipelineState.FAILED:
                continue
            result = self.request_conversion(record.channel_key, record.source_reference)
            if result.accepted:
                resumed.append(result.channel)
        if resumed:
            logger.info(f"Resumed {len(resumed)} channels from records: {', '.join(resumed)}")
        return resumed

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def request_conversion(self, channel_name: Any, source_reference: Any) -> ConversionResult:
        """
        Accept a (re)conversion request without waiting for it.

        Returns a rejected result for malformed input; otherwise the channel's
        worker picks the request up asynchronously. A channel that is already
        streaming is torn down and converted again with a fresh locator.
        """
        try:
            key = normalize_channel_key(channel_name)
            source_reference = validate_source_reference(source_reference)
        except InvalidRequest as e:
            logger.warning(f"Rejected conversion request for {channel_name!r}: {e}")
            return ConversionResult(accepted=False, reason=str(e))

        channel = self.channels.get(key)
        if channel is None or channel.removing:
            predecessor = channel.worker if channel is not None else None
            channel = Channel(key=key, source_reference=source_reference, pipeline=Pipeline(key))
            self.channels[key] = channel
            channel.worker = asyncio.create_task(
                self._channel_worker(channel, predecessor), name=f"channel-{key}")
            channel.transitions.append(PipelineState.IDLE)
            logger.info(f"Registered channel {key}")

        channel.updated_at = utcnow()
        channel.commands.put_nowait(ChannelCommand(CommandKind.CONVERT, source_reference))
        self._emit(EventType.CONVERSION_REQUESTED, key, {"source_reference": source_reference})

        return ConversionResult(accepted=True, channel=key, playlist_url=self.store.playlist_url(key))

    async def remove(self, channel_name: Any) -> bool:
        """Stop the channel's pipeline and delete its record and segment store."""
        try:
            key = normalize_channel_key(channel_name)
        except InvalidRequest:
            return False

        channel = self.channels.get(key)
        if channel is None or channel.worker is None:
            try:
                removed = self.store.remove(key)
            except StoreFailure as e:
                logger.error(f"Channel {key}: {e}")
                removed = False
            try:
                removed = await self.records.delete(key) or removed
            except Exception as e:
                logger.error(f"Could not delete record for channel {key}: {e}")
            return removed

        channel.removing = True
        channel.commands.put_nowait(ChannelCommand(CommandKind.REMOVE))
        await asyncio.wait({channel.worker})
        return True

    def status(self, channel_name: Any) -> Optional[ChannelStatus]:
        try:
            key = normalize_channel_key(channel_name)
        except InvalidRequest:
            return None
        channel = self.channels.get(key)
        if channel is None:
            return None
        return self._status(channel)

    def list_channels(self) -> List[ChannelStatus]:
        return [self._status(self.channels[key]) for key in sorted(self.channels)]

    def stats(self) -> Dict[str, Any]:
        by_state = {state.value: 0 for state in PipelineState}
        for channel in self.channels.values():
            by_state[channel.state.value] += 1
        return {
            "channels": len(self.channels),
            "by_state": by_state,
            "processes": self.supervisor.snapshot(),
        }

    def _status(self, channel: Channel) -> ChannelStatus:
        pipeline = channel.pipeline
        return ChannelStatus(
            channel=channel.key,
            state=pipeline.state,
            source_reference=channel.source_reference,
            playlist_url=self.store.playlist_url(channel.key),
            consecutive_failures=channel.consecutive_failures,
            restart_count=pipeline.restart_count,
            pid=pipeline.handle.pid if pipeline.handle and pipeline.handle.is_alive() else None,
            last_resolved_at=channel.last_resolved_at,
            streaming_since=pipeline.streaming_since,
            last_error=pipeline.last_error,
            updated_at=channel.updated_at,
        )

    # ------------------------------------------------------------------
    # Channel worker
    # ------------------------------------------------------------------

    async def _channel_worker(self, channel: Channel, predecessor: Optional[asyncio.Task] = None):
        # A removal of the same key may still be cleaning up the store
        if predecessor is not None and not predecessor.done():
            await asyncio.wait({predecessor})

        command = await channel.commands.get()
        try:
            while True:
                try:
                    if command.kind is CommandKind.REMOVE:
                        await self._teardown(channel)
                        await self._discard(channel)
                        return

                    self._apply_conversion(channel, command)
                    await self._teardown(channel)
                    await self._run_pipeline(channel)
                    command = await channel.commands.get()

                except _Interrupted as interrupt:
                    logger.info(f"Channel {channel.key}: {interrupt.command.kind.value} request "
                                f"interrupts {channel.state.value}")
                    command = interrupt.command

                except Exception as e:
                    logger.exception(f"Unexpected error in pipeline for channel {channel.key}: {e}")
                    await self._fail(channel, e)
                    command = await channel.commands.get()
        finally:
            # stop_channel waits on the key lock, so a launch still in flight is stopped too
            if self.channels.get(channel.key) is channel:
                await self.supervisor.stop_channel(channel.key)

    def _apply_conversion(self, channel: Channel, command: ChannelCommand):
        if command.source_reference and command.source_reference != channel.source_reference:
            logger.info(f"Channel {channel.key}: source reference changed to {command.source_reference}")
            channel.source_reference = command.source_reference
        channel.consecutive_failures = 0
        channel.updated_at = utcnow()

    async def _run_pipeline(self, channel: Channel):
        """Drive one conversion until the channel fails. Streaming never returns on its own."""
        key = channel.key
        pipeline = channel.pipeline

        while True:
            self._transition(channel, PipelineState.RESOLVING)
            try:
                locator = await self._interruptible(channel, self.resolver.resolve(channel.source_reference))
            except ResolutionError as e:
                if not await self._retry_after(channel, e):
                    return
                continue

            pipeline.locator = locator
            channel.last_resolved_at = locator.resolved_at

            self._transition(channel, PipelineState.STARTING)
            try:
                self.store.prepare(key)
                if self.supervisor.live_count(key) == 0:
                    self.store.prune_unreferenced(key)
                handle = await self._interruptible(channel, self.supervisor.start(key, locator.url))
                pipeline.handle = handle
                await self._interruptible(channel, self.supervisor.wait_until_live(handle, self.start_timeout))
            except StoreFailure as e:
                await self._fail(channel, e)
                return
            except ProcessStartFailure as e:
                failed_handle = pipeline.handle
                await self.supervisor.stop_channel(key)
                pipeline.handle = None
                if failed_handle is not None and failed_handle.reports_disk_full():
                    await self._fail(channel, StoreFailure(
                        f"Transcoder for {key} ran out of disk ({failed_handle.describe_exit()})"))
                    return
                if not await self._retry_after(channel, e):
                    return
                continue

            pipeline.streaming_since = utcnow()
            self._transition(channel, PipelineState.STREAMING)
            await self._save_record(channel, PipelineState.STREAMING)
            self._emit(EventType.CHANNEL_STREAMING, key, {
                "pid": handle.pid,
                "playlist_url": self.store.playlist_url(key),
                "restart_count": pipeline.restart_count,
            })

            event = await self._interruptible(channel, self._stream_until_exit(channel, handle))

            pipeline.handle = None
            pipeline.streaming_since = None
            error = self._classify_exit(handle, event)
            if isinstance(error, StoreFailure):
                await self._fail(channel, error)
                return

            pipeline.restart_count += 1
            logger.warning(f"Channel {key}: {error}; re-resolving")
            self._transition(channel, PipelineState.RESOLVING)
            if not await self._retry_after(channel, error):
                return

    async def _stream_until_exit(self, channel: Channel, handle: ProcessHandle) -> ProcessEvent:
        """Wait for the transcoder to end, clearing the failure count once it has streamed long enough."""
        try:
            return await asyncio.wait_for(handle.wait_exit(), timeout=self.healthy_period)
        except asyncio.TimeoutError:
            pass
        if channel.consecutive_failures:
            logger.info(f"Channel {channel.key}: streaming for {self.healthy_period}s, "
                        f"clearing {channel.consecutive_failures} failure(s)")
            channel.consecutive_failures = 0
        return await handle.wait_exit()

    def _classify_exit(self, handle: ProcessHandle, event: ProcessEvent) -> PipelineError:
        if handle.reports_disk_full():
            return StoreFailure(f"Transcoder for {handle.channel_key} ran out of disk ({handle.describe_exit()})")
        if event.kind is ProcessEventKind.EXITED_OK:
            return ProcessCrash(f"Transcoder for {handle.channel_key} ended, upstream finished", 0)
        return ProcessCrash(
            f"Transcoder for {handle.channel_key} exited unexpectedly ({handle.describe_exit()})",
            event.returncode)

    async def _retry_after(self, channel: Channel, error: PipelineError) -> bool:
        """Count a transient failure; back off and return True, or fail the channel."""
        channel.consecutive_failures += 1
        channel.pipeline.last_error = error.to_info()
        channel.updated_at = utcnow()

        if channel.consecutive_failures >= self.max_attempts:
            await self._fail(channel, error)
            return False

        delay = compute_backoff(channel.consecutive_failures, self.backoff_base,
                                self.backoff_factor, self.backoff_max, self.backoff_jitter)
        logger.warning(
            f"Channel {channel.key}: {error.kind.value}: {error} "
            f"(attempt {channel.consecutive_failures}/{self.max_attempts}, retrying in {delay:.2f}s)")
        await self._interruptible(channel, asyncio.sleep(delay))
        return True

    async def _fail(self, channel: Channel, error: Exception):
        if self.supervisor.get(channel.key) is not None:
            await self.supervisor.stop_channel(channel.key)
        pipeline = channel.pipeline
        pipeline.handle = None
        pipeline.streaming_since = None
        if isinstance(error, PipelineError):
            pipeline.last_error = error.to_info()
        else:
            pipeline.last_error = ErrorInfo(kind=ErrorKind.PROCESS_CRASH, message=str(error))

        self._transition(channel, PipelineState.FAILED)
        logger.error(f"Channel {channel.key} failed: {pipeline.last_error.kind.value}: {pipeline.last_error.message}")
        await self._save_record(channel, PipelineState.FAILED)
        self._emit(EventType.CHANNEL_FAILED, channel.key, pipeline.last_error.model_dump(mode="json"))

    async def _teardown(self, channel: Channel):
        """Stop the channel's process, if any, and wait until it is gone."""
        key = channel.key
        if channel.pipeline.handle is None and self.supervisor.get(key) is None and not self.supervisor.busy(key):
            return
        self._transition(channel, PipelineState.STOPPING)
        await self.supervisor.stop_channel(channel.key)
        channel.pipeline.handle = None
        channel.pipeline.streaming_since = None

    async def _discard(self, channel: Channel):
        key = channel.key
        self._transition(channel, PipelineState.IDLE)
        try:
            self.store.remove(key)
        except StoreFailure as e:
            logger.error(f"Channel {key}: {e}")
        try:
            await self.records.delete(key)
        except Exception as e:
            logger.error(f"Could not delete record for channel {key}: {e}")

        if self.channels.get(key) is channel:
            del self.channels[key]
        logger.info(f"Channel {key} removed")
        self._emit(EventType.CHANNEL_REMOVED, key, {})

    async def _interruptible(self, channel: Channel, awaitable: Awaitable):
        """Await ``awaitable`` unless a new command for the channel arrives first."""
        operation = asyncio.ensure_future(awaitable)
        command = asyncio.ensure_future(channel.commands.get())
        try:
            done, _ = await asyncio.wait({operation, command}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            operation.cancel()
            command.cancel()
            raise

        if command in done:
            operation.cancel()
            await asyncio.gather(operation, return_exceptions=True)
            raise _Interrupted(command.result())

        command.cancel()
        return operation.result()

    def _transition(self, channel: Channel, state: PipelineState):
        previous = channel.pipeline.state
        if previous == state:
            return
        channel.pipeline.state = state
        channel.transitions.append(state)
        channel.updated_at = utcnow()
        logger.info(f"Channel {channel.key}: {previous.value} -> {state.value}")

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    async def _save_record(self, channel: Channel, status: PipelineState):
        record = ChannelRecord(
            channel_key=channel.key,
            source_reference=channel.source_reference,
            playlist_url=self.store.playlist_url(channel.key),
            status=status,
        )
        try:
            await self.records.put(record)
        except Exception as e:
            logger.error(f"Could not write record for channel {channel.key}: {e}")

    def _emit(self, event_type: EventType, key: str, data: Dict[str, Any]):
        if self.event_manager:
            self.event_manager.emit_nowait(ChannelEvent(event_type=event_type, channel=key, data=data))

    def _on_process_event(self, event: ProcessEvent):
        if event.kind is ProcessEventKind.STARTED:
            self._emit(EventType.PROCESS_STARTED, event.channel_key, {"pid": event.pid})
        else:
            self._emit(EventType.PROCESS_EXITED, event.channel_key, {
                "pid": event.pid,
                "kind": event.kind.value,
                "returncode": event.returncode,
                "detail": event.detail,
            })

    async def _gc_loop(self):
        while self._running:
            try:
                await asyncio.sleep(self.gc_interval)
                self.store.collect_orphans(self.channels.keys(), self.gc_age_threshold)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Segment store GC error: {e}")
