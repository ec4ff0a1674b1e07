"""Pytest configuration and shared fixtures."""

import asyncio
import fnmatch
from typing import Any, Dict, List
from unittest.mock import AsyncMock, Mock

import pytest
from redis.exceptions import ConnectionError

from registration_sync.clients.upstream_rest import UpstreamClient
from registration_sync.config.settings import (
    BufferConfig,
    RedisConfig,
    RetryConfig,
    ServiceSettings,
    SyncConfig,
    WebhookConfig,
)
from registration_sync.kv_store import KeyValueStore
from registration_sync.record_cache import RecordCache


class FakePubSub:
    """Minimal stand-in for redis.asyncio PubSub."""

    def __init__(self, server: "FakeRedis"):
        self.server = server
        self.channels: List[str] = []
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def subscribe(self, *channels):
        for channel in channels:
            self.channels.append(channel)
            self.server.subscribers.setdefault(channel, []).append(self)

    async def unsubscribe(self, *channels):
        for channel in channels or list(self.channels):
            if self in self.server.subscribers.get(channel, []):
                self.server.subscribers[channel].remove(self)
            if channel in self.channels:
                self.channels.remove(channel)

    async def listen(self):
        while True:
            yield await self.queue.get()

    async def aclose(self):
        self.closed = True


class FakeRedis:
    """In-memory async Redis client speaking the subset KeyValueStore uses."""

    def __init__(self):
        self.values: Dict[str, str] = {}
        self.lists: Dict[str, List[str]] = {}
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.expiries: Dict[str, int] = {}
        self.subscribers: Dict[str, List[FakePubSub]] = {}
        self.published: List[tuple] = []
        self.fail = False
        self.closed = False

    def _check(self):
        if self.fail:
            raise ConnectionError("Connection refused")

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        self.closed = True

    async def get(self, key):
        self._check()
        return self.values.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.values[key] = value
        if ex:
            self.expiries[key] = ex
        return True

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            for space in (self.values, self.lists, self.hashes):
                if key in space:
                    del space[key]
                    removed += 1
        return removed

    async def exists(self, key):
        self._check()
        return int(key in self.values or key in self.lists or key in self.hashes)

    async def keys(self, pattern):
        self._check()
        every = list(self.values) + list(self.lists) + list(self.hashes)
        return [k for k in every if fnmatch.fnmatchcase(k, pattern)]

    async def lpush(self, key, *values):
        self._check()
        lst = self.lists.setdefault(key, [])
        for value in values:
            lst.insert(0, value)
        return len(lst)

    async def rpush(self, key, *values):
        self._check()
        lst = self.lists.setdefault(key, [])
        lst.extend(values)
        return len(lst)

    async def rpop(self, key):
        self._check()
        lst = self.lists.get(key)
        if not lst:
            return None
        return lst.pop()

    @staticmethod
    def _slice(lst, start, end):
        return lst[start:] if end == -1 else lst[start:end + 1]

    async def lrange(self, key, start, end):
        self._check()
        return self._slice(self.lists.get(key, []), start, end)

    async def llen(self, key):
        self._check()
        return len(self.lists.get(key, []))

    async def lrem(self, key, count, value):
        self._check()
        lst = self.lists.get(key, [])
        kept = [v for v in lst if v != value]
        removed = len(lst) - len(kept)
        self.lists[key] = kept
        return removed

    async def ltrim(self, key, start, end):
        self._check()
        self.lists[key] = self._slice(self.lists.get(key, []), start, end)
        return True

    async def hset(self, key, field, value):
        self._check()
        bucket = self.hashes.setdefault(key, {})
        created = field not in bucket
        bucket[field] = value
        return int(created)

    async def hget(self, key, field):
        self._check()
        return self.hashes.get(key, {}).get(field)

    async def hgetall(self, key):
        self._check()
        return dict(self.hashes.get(key, {}))

    async def hdel(self, key, *fields):
        self._check()
        bucket = self.hashes.get(key, {})
        removed = 0
        for field in fields:
            if field in bucket:
                del bucket[field]
                removed += 1
        return removed

    async def publish(self, channel, message):
        self._check()
        self.published.append((channel, message))
        receivers = self.subscribers.get(channel, [])
        for pubsub in receivers:
            pubsub.queue.put_nowait({"type": "message", "channel": channel, "data": message})
        return len(receivers)

    def pubsub(self):
        return FakePubSub(self)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def test_settings() -> ServiceSettings:
    """Create test configuration."""
    return ServiceSettings(
        service_name="test-registration-sync",
        environment="test",
        redis=RedisConfig(host="localhost", port=6379),
        retry=RetryConfig(max_attempts=2, initial_backoff_seconds=0.01, jitter=False),
        sync=SyncConfig(sync_interval_seconds=0.05, sync_threshold_minutes=15),
        buffer=BufferConfig(max_attempts=3, backoff_base_seconds=0, sweep_delay_seconds=0),
        webhook=WebhookConfig(monitored_entity="All_Registrations", quarantine_max_length=5),
    )


@pytest.fixture
def store(fake_redis, test_settings) -> KeyValueStore:
    return KeyValueStore(test_settings.redis, test_settings.retry, client=fake_redis)


@pytest.fixture
def cache(store) -> RecordCache:
    return RecordCache(store)


@pytest.fixture
def mock_upstream() -> Mock:
    """Upstream client double with every coroutine method mocked."""
    upstream = Mock(spec=UpstreamClient)
    upstream.session = Mock()
    upstream.get_events = AsyncMock(return_value=[])
    upstream.get_event_records = AsyncMock(return_value=[])
    upstream.get_records_modified_since = AsyncMock(return_value=[])
    upstream.count_event_records = AsyncMock(return_value=0)
    upstream.create_record = AsyncMock(return_value={"ID": "9001"})
    upstream.open = AsyncMock()
    upstream.close = AsyncMock()
    return upstream


def make_registration(record_id: str, event_id: str, **fields: Any) -> Dict[str, Any]:
    """Upstream-shaped registration payload."""
    payload = {
        "ID": record_id,
        "Event_Info": {"ID": event_id, "display_value": f"Event {event_id}"},
        "Full_Name": f"Visitor {record_id}",
        "Email": f"visitor{record_id}@example.com",
        "Check_In_Status": "Not Checked In",
        "Group_Registration": "false",
    }
    payload.update(fields)
    return payload


@pytest.fixture
def sample_registration() -> Dict[str, Any]:
    return make_registration("R1", "E1", Modified_Time="15-Mar-2024 10:20:30")
