"""
Channel metadata records.

One record per channel (source reference, playlist address, status, last
update) in an external key-value store. Redis is used when enabled; the
in-memory store keeps single-process deployments and tests dependency free.
"""

import logging
from typing import Dict, List, Optional

import redis.asyncio as redis

from models import ChannelRecord

logger = logging.getLogger(__name__)


class InMemoryChannelRecordStore:
    """Process-local record store."""

    def __init__(self):
        self.records: Dict[str, ChannelRecord] = {}

    async def connect(self):
        return None

    async def close(self):
        return None

    async def get(self, key: str) -> Optional[ChannelRecord]:
        return self.records.get(key)

    async def put(self, record: ChannelRecord):
        self.records[record.channel_key] = record.model_copy()

    async def delete(self, key: str) -> bool:
        return self.records.pop(key, None) is not None

    async def list(self) -> List[ChannelRecord]:
        return [self.records[key] for key in sorted(self.records)]


class RedisChannelRecordStore:
    """Redis-backed record store: one hash per channel under ``channel:<key>``."""

    def __init__(self, redis_url: str = "redis://localhost:6379/0", prefix: str = "channel:"):
        self.redis_url = redis_url
        self.prefix = prefix
        self.redis_client: Optional[redis.Redis] = None

    async def connect(self):
        """Initialize Redis connection"""
        self.redis_client = redis.from_url(self.redis_url, decode_responses=True)
        await self.redis_client.ping()
        logger.info("Redis connected for channel records")

    async def close(self):
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Optional[ChannelRecord]:
        data = await self.redis_client.hgetall(self._key(key))
        if not data:
            return None
        return ChannelRecord.model_validate(data)

    async def put(self, record: ChannelRecord):
        mapping = record.model_dump(mode="json")
        await self.redis_client.hset(self._key(record.channel_key), mapping=mapping)

    async def delete(self, key: str) -> bool:
        return bool(await self.redis_client.delete(self._key(key)))

    async def list(self) -> List[ChannelRecord]:
        records = []
        async for redis_key in self.redis_client.scan_iter(match=f"{self.prefix}*"):
            data = await self.redis_client.hgetall(redis_key)
            if not data:
                continue
            try:
                records.append(ChannelRecord.model_validate(data))
            except ValueError as e:
                logger.warning(f"Skipping malformed channel record {redis_key}: {e}")
        return sorted(records, key=lambda record: record.channel_key)
