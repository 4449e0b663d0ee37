"""
Tests for the channel record stores and Redis configuration
"""
import os
import sys
from unittest.mock import AsyncMock, patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import pytest

from channel_records import InMemoryChannelRecordStore, RedisChannelRecordStore
from models import ChannelRecord, PipelineState


def _record(key="gma7", status=PipelineState.STREAMING):
    return ChannelRecord(
        channel_key=key,
        source_reference=f"https://www.youtube.com/watch?v={key}",
        playlist_url=f"/streams/{key}.m3u8",
        status=status,
    )


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the record store."""

    def __init__(self):
        self.hashes = {}
        self.ping = AsyncMock(return_value=True)
        self.aclose = AsyncMock()

    async def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def delete(self, key):
        return 1 if self.hashes.pop(key, None) is not None else 0

    async def scan_iter(self, match=None):
        prefix = match.rstrip("*") if match else ""
        for key in list(self.hashes):
            if key.startswith(prefix):
                yield key


class TestInMemoryStore:

    @pytest.mark.asyncio
    async def test_put_get_list_delete(self):
        store = InMemoryChannelRecordStore()
        await store.connect()

        await store.put(_record("gma7"))
        await store.put(_record("abscbn"))

        record = await store.get("gma7")
        assert record.source_reference == "https://www.youtube.com/watch?v=gma7"
        assert [r.channel_key for r in await store.list()] == ["abscbn", "gma7"]

        assert await store.delete("gma7") is True
        assert await store.delete("gma7") is False
        assert await store.get("gma7") is None
        await store.close()

    @pytest.mark.asyncio
    async def test_put_overwrites_status(self):
        store = InMemoryChannelRecordStore()
        await store.put(_record())
        await store.put(_record(status=PipelineState.FAILED))
        assert (await store.get("gma7")).status == PipelineState.FAILED


class TestRedisStore:

    @pytest.fixture
    def redis_store(self):
        store = RedisChannelRecordStore("redis://localhost:6379/0")
        store.redis_client = FakeRedis()
        return store

    @pytest.mark.asyncio
    async def test_connect_pings(self):
        fake = FakeRedis()
        with patch("channel_records.redis.from_url", return_value=fake) as from_url:
            store = RedisChannelRecordStore("redis://example:6379/2")
            await store.connect()
        from_url.assert_called_once_with("redis://example:6379/2", decode_responses=True)
        fake.ping.assert_awaited_once()

        await store.close()
        fake.aclose.assert_awaited_once()
        assert store.redis_client is None

    @pytest.mark.asyncio
    async def test_record_round_trip_through_hash(self, redis_store):
        original = _record()
        await redis_store.put(original)

        stored = redis_store.redis_client.hashes["channel:gma7"]
        assert stored["status"] == "streaming"
        assert stored["playlist_url"] == "/streams/gma7.m3u8"

        record = await redis_store.get("gma7")
        assert record == original

    @pytest.mark.asyncio
    async def test_missing_record(self, redis_store):
        assert await redis_store.get("nothing") is None
        assert await redis_store.delete("nothing") is False

    @pytest.mark.asyncio
    async def test_list_skips_malformed(self, redis_store):
        await redis_store.put(_record("gma7"))
        await redis_store.put(_record("abscbn", status=PipelineState.FAILED))
        redis_store.redis_client.hashes["channel:broken"] = {"channel_key": "broken"}
        redis_store.redis_client.hashes["other:gma7"] = {"x": "y"}

        records = await redis_store.list()

        assert [r.channel_key for r in records] == ["abscbn", "gma7"]
        assert records[0].status == PipelineState.FAILED


class TestRedisConfig:

    def test_url_from_components(self, monkeypatch):
        from config import settings
        from redis_config import get_redis_config
        monkeypatch.setattr(settings, "REDIS_URL", None)
        monkeypatch.setattr(settings, "REDIS_PASSWORD", None)
        monkeypatch.setattr(settings, "REDIS_HOST", "cache")
        monkeypatch.setattr(settings, "REDIS_SERVER_PORT", 6380)
        monkeypatch.setattr(settings, "REDIS_DB", 3)
        assert get_redis_config()["redis_url"] == "redis://cache:6380/3"

    def test_url_with_password(self, monkeypatch):
        from config import settings
        from redis_config import get_redis_config
        monkeypatch.setattr(settings, "REDIS_URL", None)
        monkeypatch.setattr(settings, "REDIS_PASSWORD", "s3cret")
        monkeypatch.setattr(settings, "REDIS_HOST", "cache")
        monkeypatch.setattr(settings, "REDIS_SERVER_PORT", 6379)
        monkeypatch.setattr(settings, "REDIS_DB", 0)
        assert get_redis_config()["redis_url"] == "redis://:s3cret@cache:6379/0"

    def test_explicit_url_wins(self, monkeypatch):
        from config import settings
        from redis_config import get_redis_config, should_use_redis
        monkeypatch.setattr(settings, "REDIS_URL", "rediss://managed.example.com:6379/0")
        monkeypatch.setattr(settings, "REDIS_ENABLED", True)
        assert get_redis_config()["redis_url"] == "rediss://managed.example.com:6379/0"
        assert should_use_redis() is True
