"""
Segment store

On-disk area holding one directory per channel with the rolling playlist and
its media segments. FFmpeg writes and evicts segments itself; the store only
reads them, prepares directories and deletes whole channel trees.
"""

import logging
import os
import shutil
import time
import uuid
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

import m3u8

from config import settings
from errors import StoreFailure
from models import CHANNEL_KEY_PATTERN

logger = logging.getLogger(__name__)

SEGMENT_SUFFIX = ".ts"
PLAYLIST_SUFFIX = ".m3u8"


@dataclass
class SegmentDescriptor:
    sequence: int
    filename: str
    duration: float


@dataclass
class SegmentWindow:
    media_sequence: int
    target_duration: Optional[float] = None
    segments: List[SegmentDescriptor] = field(default_factory=list)

    @property
    def filenames(self) -> List[str]:
        return [segment.filename for segment in self.segments]


class SegmentStore:
    def __init__(self, base_dir: Optional[str] = None,
                 public_path: Optional[str] = None,
                 min_free_bytes: Optional[int] = None):
        self.base_dir = os.path.abspath(base_dir or settings.STREAMS_DIR)
        self.public_path = (public_path or settings.PUBLIC_STREAMS_PATH).rstrip("/")
        self.min_free_bytes = settings.STORE_MIN_FREE_BYTES if min_free_bytes is None else min_free_bytes

    # Addressing

    def channel_dir(self, key: str) -> str:
        if not CHANNEL_KEY_PATTERN.match(key):
            raise ValueError(f"Invalid channel key: {key!r}")
        return os.path.join(self.base_dir, key)

    def playlist_path(self, key: str) -> str:
        return os.path.join(self.channel_dir(key), f"{key}{PLAYLIST_SUFFIX}")

    def segment_pattern(self, key: str) -> str:
        return os.path.join(self.channel_dir(key), f"{key}_%05d{SEGMENT_SUFFIX}")

    def playlist_url(self, key: str) -> str:
        return f"{self.public_path}/{key}{PLAYLIST_SUFFIX}"

    def resolve_public_file(self, filename: str) -> Optional[str]:
        """Map a public file name (``gma7.m3u8``, ``gma7_00012.ts``) to the file on disk."""
        if "/" in filename or "\\" in filename:
            return None

        if filename.endswith(PLAYLIST_SUFFIX):
            key = filename[:-len(PLAYLIST_SUFFIX)]
        elif filename.endswith(SEGMENT_SUFFIX):
            key, sep, number = filename[:-len(SEGMENT_SUFFIX)].rpartition("_")
            if not sep or not number.isdigit():
                return None
        else:
            return None

        if not CHANNEL_KEY_PATTERN.match(key):
            return None

        path = os.path.join(self.channel_dir(key), filename)
        return path if os.path.isfile(path) else None

    @staticmethod
    def retention_limit(list_size: int, delete_threshold: int) -> int:
        """Most segment files a channel directory holds while its transcoder runs:
        the advertised window, the unreferenced grace segments and the one being written."""
        return list_size + delete_threshold + 1

    # Lifecycle

    def prepare(self, key: str):
        """Make sure the channel directory exists, is writable and has room."""
        directory = self.channel_dir(key)
        try:
            os.makedirs(directory, exist_ok=True)
            probe = os.path.join(directory, f".probe-{uuid.uuid4().hex[:8]}")
            with open(probe, "wb") as fh:
                fh.write(b"\0")
            os.remove(probe)
            free = shutil.disk_usage(directory).free
        except OSError as e:
            raise StoreFailure(f"Output path {directory} is not writable: {e}") from e

        if free < self.min_free_bytes:
            raise StoreFailure(
                f"Output path {directory} has {free} bytes free, need at least {self.min_free_bytes}")

    def remove(self, key: str) -> bool:
        """Delete the whole channel tree. Only call once its process is stopped."""
        directory = self.channel_dir(key)
        if not os.path.exists(directory):
            return False
        try:
            shutil.rmtree(directory)
        except OSError as e:
            raise StoreFailure(f"Could not remove {directory}: {e}") from e
        logger.info(f"Removed segment store for channel {key}")
        return True

    def exists(self, key: str) -> bool:
        return os.path.isdir(self.channel_dir(key))

    # Inspection

    def read_playlist(self, key: str) -> Optional[str]:
        try:
            with open(self.playlist_path(key), "r", encoding="utf-8") as fh:
                return fh.read()
        except FileNotFoundError:
            return None

    def read_window(self, key: str) -> Optional[SegmentWindow]:
        text = self.read_playlist(key)
        if not text:
            return None

        playlist = m3u8.loads(text)
        media_sequence = playlist.media_sequence or 0
        window = SegmentWindow(media_sequence=media_sequence,
                               target_duration=playlist.target_duration)
        for offset, segment in enumerate(playlist.segments):
            window.segments.append(SegmentDescriptor(
                sequence=media_sequence + offset,
                filename=os.path.basename(segment.uri),
                duration=segment.duration or 0.0,
            ))
        return window

    def stored_segments(self, key: str) -> List[str]:
        directory = self.channel_dir(key)
        try:
            names = os.listdir(directory)
        except FileNotFoundError:
            return []
        return sorted(name for name in names if name.endswith(SEGMENT_SUFFIX))

    def dangling_references(self, key: str) -> List[str]:
        """Segments the playlist advertises that are missing on disk."""
        window = self.read_window(key)
        if window is None:
            return []
        stored = set(self.stored_segments(key))
        return [name for name in window.filenames if name not in stored]

    def prune_unreferenced(self, key: str) -> int:
        """
        Delete segments and temp files the current playlist does not reference.
        Must only run while no transcoder is writing to the channel.
        """
        directory = self.channel_dir(key)
        if not os.path.isdir(directory):
            return 0

        window = self.read_window(key)
        referenced = set(window.filenames) if window else set()
        removed = 0
        for name in os.listdir(directory):
            stale_segment = name.endswith(SEGMENT_SUFFIX) and name not in referenced
            if stale_segment or name.endswith(".tmp"):
                try:
                    os.remove(os.path.join(directory, name))
                    removed += 1
                except FileNotFoundError:
                    pass
        if removed:
            logger.info(f"Pruned {removed} stale files for channel {key}")
        return removed

    def channel_keys(self) -> List[str]:
        try:
            names = os.listdir(self.base_dir)
        except FileNotFoundError:
            return []
        return sorted(
            name for name in names
            if CHANNEL_KEY_PATTERN.match(name) and os.path.isdir(os.path.join(self.base_dir, name))
        )

    def collect_orphans(self, active_keys: Iterable[str], age_threshold: float) -> List[str]:
        """Remove channel directories no registered channel owns and nothing touched recently."""
        active = set(active_keys)
        removed = []
        now = time.time()
        for key in self.channel_keys():
            if key in active:
                continue
            directory = self.channel_dir(key)
            try:
                age = now - os.path.getmtime(directory)
            except FileNotFoundError:
                continue
            if age < age_threshold:
                continue
            shutil.rmtree(directory, ignore_errors=True)
            logger.warning(f"Removed orphaned segment directory {directory} (age {int(age)}s)")
            removed.append(key)
        return removed
