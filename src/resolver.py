"""
Locator resolution

Turns a channel's source reference (a live video page URL) into a directly
fetchable media locator by running an external yt-dlp compatible tool.
Locators are short-lived, so nothing here caches them.
"""

import asyncio
import logging
import shlex
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

from config import settings
from errors import ResolutionTimeout, ResolverUnavailable, SourceNotFound
from models import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Locator:
    url: str
    source_reference: str
    resolved_at: datetime


class LocatorResolver:
    """Runs the resolver tool with a timeout and classifies its failures."""

    def __init__(self,
                 command: Optional[Sequence[str]] = None,
                 format_selector: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.command = list(command) if command else shlex.split(settings.RESOLVER_COMMAND)
        self.format_selector = format_selector or settings.RESOLVER_FORMAT
        self.timeout = timeout if timeout is not None else settings.RESOLVER_TIMEOUT

    def build_command(self, source_reference: str) -> List[str]:
        return [
            *self.command,
            "--no-warnings",
            "--no-playlist",
            "-f", self.format_selector,
            "--get-url",
            source_reference,
        ]

    async def resolve(self, source_reference: str) -> Locator:
        cmd = self.build_command(source_reference)
        logger.info(f"Resolving locator for {source_reference}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ResolverUnavailable(f"Resolver not runnable ({cmd[0]}): {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            raise ResolutionTimeout(
                f"Resolver did not answer within {self.timeout}s for {source_reference}")
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        diagnostics = _tail(stderr)
        for line in diagnostics:
            logger.debug(f"resolver: {line}")

        if process.returncode is not None and process.returncode < 0:
            raise ResolverUnavailable(
                f"Resolver crashed (signal {-process.returncode}) for {source_reference}")

        if process.returncode != 0:
            reason = diagnostics[-1] if diagnostics else f"exit code {process.returncode}"
            raise SourceNotFound(f"Could not resolve {source_reference}: {reason}")

        # Merged formats print one URL per stream; the first one is the video
        urls = [line.strip() for line in stdout.decode("utf-8", errors="ignore").splitlines() if line.strip()]
        if not urls:
            raise SourceNotFound(f"Resolver returned no locator for {source_reference}")

        logger.info(f"Resolved locator for {source_reference}")
        return Locator(url=urls[0], source_reference=source_reference, resolved_at=utcnow())

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process):
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()


def _tail(stderr: Optional[bytes], limit: int = 5) -> List[str]:
    if not stderr:
        return []
    lines = deque(maxlen=limit)
    for line in stderr.decode("utf-8", errors="ignore").splitlines():
        if line.strip():
            lines.append(line.strip())
    return list(lines)
