"""
Transcode process supervisor

Owns the FFmpeg process of every channel: launch, stderr draining, exit
observation and termination. At most one process is registered per channel
key; starting a new one stops the previous one first.
"""

import asyncio
import logging
import os
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from config import settings
from errors import ProcessStartFailure
from models import ProcessEventKind, utcnow
from segment_store import SegmentStore
from transcoding import HlsProfile

logger = logging.getLogger(__name__)

DISK_FULL_MARKERS = ("No space left on device", "Disk quota exceeded")


@dataclass
class ProcessEvent:
    kind: ProcessEventKind
    channel_key: str
    pid: Optional[int] = None
    returncode: Optional[int] = None
    detail: str = ""
    timestamp: float = field(default_factory=time.time)


class ProcessHandle:
    """A launched transcoder for one channel."""

    def __init__(self, channel_key: str, command: List[str], process: asyncio.subprocess.Process,
                 playlist_path: str, playlist_snapshot: Optional[Tuple[int, int, int]]):
        self.channel_key = channel_key
        self.command = command
        self.process = process
        self.pid = process.pid
        self.playlist_path = playlist_path
        self.playlist_snapshot = playlist_snapshot
        self.started_at = utcnow()
        self.stop_requested = False
        self.stderr_tail: Deque[str] = deque(maxlen=20)
        self._watch_task: Optional[asyncio.Task] = None

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    def is_alive(self) -> bool:
        return self.process.returncode is None

    def playlist_written(self) -> bool:
        """True once the playlist differs from what was on disk before launch."""
        return _stat_snapshot(self.playlist_path) not in (None, self.playlist_snapshot)

    def reports_disk_full(self) -> bool:
        return any(marker in line for line in self.stderr_tail for marker in DISK_FULL_MARKERS)

    async def wait_exit(self) -> ProcessEvent:
        """Wait for the process to end and return its terminal event."""
        return await asyncio.shield(self._watch_task)

    def describe_exit(self) -> str:
        last = self.stderr_tail[-1] if self.stderr_tail else ""
        return f"exit code {self.returncode}" + (f": {last}" if last else "")


class TranscodeSupervisor:
    def __init__(self,
                 store: SegmentStore,
                 profile: Optional[HlsProfile] = None,
                 stop_timeout: Optional[float] = None,
                 listener: Optional[Callable[[ProcessEvent], Any]] = None):
        self.store = store
        self.profile = profile or HlsProfile.from_settings()
        self.stop_timeout = settings.PROCESS_STOP_TIMEOUT if stop_timeout is None else stop_timeout
        self.listener = listener
        self.handles: Dict[str, ProcessHandle] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def build_command(self, key: str, locator: str) -> List[str]:
        return self.profile.render(locator, self.store.playlist_path(key), self.store.segment_pattern(key))

    async def start(self, key: str, locator: str) -> ProcessHandle:
        """Stop whatever runs for ``key``, then launch a fresh transcoder."""
        # Shielded so a cancelled caller never leaves an unregistered process behind
        return await asyncio.shield(self._start_locked(key, locator))

    async def _start_locked(self, key: str, locator: str) -> ProcessHandle:
        async with self._lock(key):
            existing = self.handles.pop(key, None)
            if existing:
                logger.info(f"Replacing transcoder for channel {key} (PID {existing.pid})")
                await self._terminate(existing)
            return await self._launch(key, locator)

    async def _launch(self, key: str, locator: str) -> ProcessHandle:
        cmd = self.build_command(key, locator)
        playlist_path = self.store.playlist_path(key)
        snapshot = _stat_snapshot(playlist_path)

        logger.info(f"Starting FFmpeg for channel {key}")
        logger.debug(f"FFmpeg command: {' '.join(cmd)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise ProcessStartFailure(f"Failed to launch transcoder for {key}: {e}") from e

        handle = ProcessHandle(key, cmd, process, playlist_path, snapshot)
        handle._watch_task = asyncio.create_task(self._watch(handle))
        self.handles[key] = handle
        logger.info(f"FFmpeg process for channel {key} started with PID: {process.pid}")
        self._emit(ProcessEvent(ProcessEventKind.STARTED, key, pid=process.pid))
        return handle

    async def _watch(self, handle: ProcessHandle) -> ProcessEvent:
        """Drain stderr until EOF, then report how the process ended."""
        stream = handle.process.stderr
        try:
            while stream is not None:
                line = await stream.readline()
                if not line:
                    break
                line_str = line.decode("utf-8", errors="ignore").strip()
                if line_str:
                    handle.stderr_tail.append(line_str)
                    logger.debug(f"FFmpeg [{handle.channel_key}]: {line_str}")
        except Exception as e:
            logger.error(f"Error reading FFmpeg stderr for {handle.channel_key}: {e}")

        returncode = await handle.process.wait()
        if handle.stop_requested:
            kind = ProcessEventKind.STOPPED
        elif returncode == 0:
            kind = ProcessEventKind.EXITED_OK
        elif returncode < 0:
            kind = ProcessEventKind.CRASHED
        else:
            kind = ProcessEventKind.EXITED_ERROR

        if kind in (ProcessEventKind.CRASHED, ProcessEventKind.EXITED_ERROR):
            logger.warning(
                f"FFmpeg process for channel {handle.channel_key} has exited with code {returncode}.")
        else:
            logger.info(f"FFmpeg process for channel {handle.channel_key} ended ({kind.value})")

        event = ProcessEvent(kind, handle.channel_key, pid=handle.pid, returncode=returncode,
                             detail=handle.stderr_tail[-1] if handle.stderr_tail else "")
        self._emit(event)
        return event

    def _emit(self, event: ProcessEvent):
        if self.listener:
            try:
                self.listener(event)
            except Exception as e:
                logger.error(f"Error in process event listener: {e}")

    async def wait_until_live(self, handle: ProcessHandle, timeout: float, poll_interval: float = 0.1):
        """Wait for the process to start writing its playlist."""
        deadline = time.monotonic() + timeout
        while True:
            if not handle.is_alive():
                # let the watcher collect the stderr tail before describing the exit
                await handle.wait_exit()
                raise ProcessStartFailure(
                    f"Transcoder for {handle.channel_key} exited during startup ({handle.describe_exit()})")
            if handle.playlist_written():
                logger.info(f"Channel {handle.channel_key} is producing segments")
                return
            if time.monotonic() >= deadline:
                raise ProcessStartFailure(
                    f"HLS playlist not produced within {timeout}s for channel {handle.channel_key}")
            await asyncio.sleep(poll_interval)

    def is_alive(self, handle: ProcessHandle) -> bool:
        return handle.is_alive()

    def get(self, key: str) -> Optional[ProcessHandle]:
        return self.handles.get(key)

    def busy(self, key: str) -> bool:
        """True while a start or stop for ``key`` is in flight."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def live_count(self, key: str) -> int:
        handle = self.handles.get(key)
        return 1 if handle and handle.is_alive() else 0

    async def stop(self, handle: ProcessHandle):
        """Stop ``handle``, unregistering it if it is still the current process for its channel."""
        async with self._lock(handle.channel_key):
            if self.handles.get(handle.channel_key) is handle:
                del self.handles[handle.channel_key]
            await self._terminate(handle)

    async def stop_channel(self, key: str) -> bool:
        async with self._lock(key):
            handle = self.handles.pop(key, None)
            if handle is None:
                return False
            await self._terminate(handle)
            return True

    async def stop_all(self):
        # keys with a launch in flight have no handle yet but hold their lock
        pending = {key for key, lock in self._locks.items() if lock.locked()}
        for key in sorted(set(self.handles) | pending):
            await self.stop_channel(key)

    async def _terminate(self, handle: ProcessHandle):
        handle.stop_requested = True
        process = handle.process
        if process.returncode is None:
            logger.info(f"Terminating FFmpeg process for channel {handle.channel_key} (PID {handle.pid})")
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=self.stop_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"FFmpeg process didn't terminate cleanly, killing it")
                process.kill()
                await process.wait()
            except ProcessLookupError:
                pass
        if handle._watch_task is not None:
            await asyncio.shield(handle._watch_task)

    def snapshot(self) -> List[Dict[str, Any]]:
        return [
            {
                "channel": key,
                "pid": handle.pid,
                "alive": handle.is_alive(),
                "started_at": handle.started_at.isoformat(),
                "returncode": handle.returncode,
            }
            for key, handle in self.handles.items()
        ]


def _stat_snapshot(path: str) -> Optional[Tuple[int, int, int]]:
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return None
    return (st.st_ino, st.st_size, st.st_mtime_ns)
