"""
Channel event fan-out.

Pipeline and process lifecycle events are queued without blocking the
channel workers and delivered by one background task, first to in-process
handlers, then to every webhook subscribed to the event type (and, when the
webhook names channels, to that channel). Events still queued when the
manager stops are delivered before the worker exits.
"""

import asyncio
import aiohttp
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from models import ChannelEvent, WebhookConfig


logger = logging.getLogger(__name__)

MAX_WEBHOOK_DELAY = 30


@dataclass
class DeliveryStats:
    delivered: int = 0
    failed: int = 0
    last_error: Optional[str] = None


class EventManager:
    """Fans channel lifecycle events out to local handlers and webhooks."""

    def __init__(self, drain_timeout: float = 5.0):
        self.webhooks: List[WebhookConfig] = []
        self.event_queue: asyncio.Queue = asyncio.Queue()
        self.event_handlers: List[Callable] = []
        self.delivery_stats: Dict[str, DeliveryStats] = {}
        self.drain_timeout = drain_timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._worker_task: Optional[asyncio.Task] = None

    async def start(self):
        self._worker_task = asyncio.create_task(self._process_events())
        logger.info("Event manager started")

    async def stop(self):
        """Deliver what is already queued, then stop the worker and close the HTTP session."""
        if self._worker_task:
            self.event_queue.put_nowait(None)
            try:
                await asyncio.wait_for(self._worker_task, timeout=self.drain_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Dropping {self.event_queue.qsize()} undelivered event(s)")
            self._worker_task = None
        if self._session is not None:
            await self._session.close()
            self._session = None
        logger.info("Event manager stopped")

    def add_webhook(self, webhook: WebhookConfig):
        # re-adding a URL replaces its subscription
        self.remove_webhook(str(webhook.url))
        self.webhooks.append(webhook)
        self.delivery_stats.setdefault(str(webhook.url), DeliveryStats())
        logger.info(f"Added webhook for {webhook.url}")

    def remove_webhook(self, webhook_url: str) -> bool:
        remaining = [wh for wh in self.webhooks if str(wh.url) != webhook_url]
        if len(remaining) == len(self.webhooks):
            return False
        self.webhooks = remaining
        self.delivery_stats.pop(webhook_url, None)
        logger.info(f"Removed webhook {webhook_url}")
        return True

    def add_handler(self, handler: Callable):
        self.event_handlers.append(handler)
        logger.info(f"Added event handler: {handler.__name__}")

    def emit_nowait(self, event: ChannelEvent):
        """Queue an event from synchronous code (the pipeline workers)."""
        self.event_queue.put_nowait(event)
        logger.debug(f"Queued {event.event_type.value} for channel {event.channel}")

    async def emit_event(self, event: ChannelEvent):
        await self.event_queue.put(event)
        logger.debug(f"Queued {event.event_type.value} for channel {event.channel}")

    def subscribers(self, event: ChannelEvent) -> List[WebhookConfig]:
        return [
            webhook for webhook in self.webhooks
            if event.event_type in webhook.events
            and (not webhook.channels or event.channel in webhook.channels)
        ]

    async def _process_events(self):
        while True:
            event = await self.event_queue.get()
            if event is None:
                return
            try:
                await self._dispatch(event)
            except Exception as e:
                logger.error(f"Error dispatching {event.event_type.value} for {event.channel}: {e}")

    async def _dispatch(self, event: ChannelEvent):
        for handler in self.event_handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Error in event handler {handler.__name__}: {e}")

        targets = self.subscribers(event)
        if targets:
            await asyncio.gather(*(self._send_webhook(webhook, event) for webhook in targets))

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _send_webhook(self, webhook: WebhookConfig, event: ChannelEvent) -> bool:
        """POST one event, retrying with exponential backoff; True once a 2xx/3xx is seen."""
        url = str(webhook.url)
        stats = self.delivery_stats.setdefault(url, DeliveryStats())
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "live-hls-relay-webhook/1.0",
            **webhook.headers
        }
        payload = event.model_dump(mode="json")
        timeout = aiohttp.ClientTimeout(total=webhook.timeout)

        for attempt in range(webhook.retry_attempts + 1):
            if attempt:
                await asyncio.sleep(min(2 ** (attempt - 1), MAX_WEBHOOK_DELAY))
            try:
                async with self._get_session().post(url, json=payload, headers=headers,
                                                    timeout=timeout) as response:
                    if response.status < 400:
                        stats.delivered += 1
                        return True
                    stats.last_error = f"HTTP {response.status}"
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                stats.last_error = str(e) or type(e).__name__
            logger.warning(f"Webhook {url} attempt {attempt + 1} for {event.event_type.value} "
                           f"failed: {stats.last_error}")

        stats.failed += 1
        logger.error(f"Giving up on webhook {url} for {event.event_type.value} ({event.channel})")
        return False
