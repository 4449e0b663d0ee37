"""
HLS Output Profile

Renders the FFmpeg argument vector for a live channel. The vector depends
only on the locator, the channel's output paths and the profile values, so
the same inputs always launch the same command.
"""

import logging
import shlex
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from config import settings

logger = logging.getLogger(__name__)

HLS_FLAGS = "delete_segments+append_list+omit_endlist"


@dataclass
class HlsProfile:
    """Rolling-window HLS output settings."""
    segment_duration: int = 10
    list_size: int = 3
    delete_threshold: int = 1
    video_codec: str = "copy"
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"
    loglevel: str = "warning"
    command: List[str] = field(default_factory=lambda: ["ffmpeg"])

    @classmethod
    def from_settings(cls, command: Optional[Sequence[str]] = None) -> "HlsProfile":
        return cls(
            segment_duration=settings.HLS_SEGMENT_DURATION,
            list_size=settings.HLS_LIST_SIZE,
            delete_threshold=settings.HLS_DELETE_THRESHOLD,
            video_codec=settings.VIDEO_CODEC,
            audio_codec=settings.AUDIO_CODEC,
            audio_bitrate=settings.AUDIO_BITRATE,
            loglevel=settings.FFMPEG_LOGLEVEL,
            command=list(command) if command else shlex.split(settings.FFMPEG_COMMAND),
        )

    def render(self, locator: str, playlist_path: str, segment_pattern: str) -> List[str]:
        """
        Render the full command line.

        Args:
            locator: Directly fetchable media URL
            playlist_path: Where FFmpeg writes the rolling playlist
            segment_pattern: printf-style segment filename pattern

        Returns:
            List of command arguments, executable first
        """
        args = [
            *self.command,
            "-hide_banner",
            "-loglevel", self.loglevel,
            "-nostdin",
            "-y",
            "-i", locator,
            "-map", "0:v:0?",
            "-map", "0:a:0?",
            "-c:v", self.video_codec,
            "-c:a", self.audio_codec,
        ]
        if self.audio_codec != "copy":
            args.extend(["-b:a", self.audio_bitrate])
        args.extend([
            "-f", "hls",
            "-hls_time", str(self.segment_duration),
            "-hls_list_size", str(self.list_size),
            "-hls_delete_threshold", str(self.delete_threshold),
            "-hls_flags", HLS_FLAGS,
            "-hls_segment_filename", segment_pattern,
            playlist_path,
        ])
        return args
