"""Tests for the Redis-backed key/value store."""

import asyncio
import json

import pytest

from registration_sync.config.settings import RedisConfig, RetryConfig
from registration_sync.exceptions import StoreUnavailableError
from registration_sync.kv_store import KeyValueStore


class TestKeyValueStore:

    @pytest.mark.asyncio
    async def test_json_roundtrip_without_expiry(self, store, fake_redis):
        assert await store.set_json("record:R1", {"id": "R1", "tags": [1, 2]})

        assert await store.get_json("record:R1") == {"id": "R1", "tags": [1, 2]}
        assert "record:R1" not in fake_redis.expiries

    @pytest.mark.asyncio
    async def test_ttl(self, store, fake_redis):
        await store.set_json("temp", 1, ttl_seconds=30)
        assert fake_redis.expiries["temp"] == 30

    @pytest.mark.asyncio
    async def test_miss_returns_none(self, store):
        assert await store.get_json("record:missing") is None
        assert await store.exists("record:missing") is False

    @pytest.mark.asyncio
    async def test_delete_and_keys(self, store):
        await store.set_json("event:E1:meta", {})
        await store.set_json("event:E2:meta", {})
        await store.set_json("record:R1", {})

        assert sorted(await store.keys("event:*:meta")) == ["event:E1:meta", "event:E2:meta"]
        assert await store.delete("event:E1:meta") is True
        assert await store.keys("event:*:meta") == ["event:E2:meta"]

    @pytest.mark.asyncio
    async def test_key_prefix_is_applied_and_stripped(self, fake_redis):
        store = KeyValueStore(RedisConfig(key_prefix="regs"), client=fake_redis)

        await store.set_json("event:E1:meta", {"total_records": 1})

        assert "regs:event:E1:meta" in fake_redis.values
        assert await store.keys("event:*:meta") == ["event:E1:meta"]

    @pytest.mark.asyncio
    async def test_list_fifo(self, store):
        for n in range(3):
            await store.push_left("queue", {"n": n})

        assert await store.list_length("queue") == 3
        assert [await store.pop_right("queue") for _ in range(3)] == [{"n": 0}, {"n": 1}, {"n": 2}]
        assert await store.pop_right("queue") is None

    @pytest.mark.asyncio
    async def test_remove_and_trim(self, store):
        for n in range(5):
            await store.push_left("items", {"n": n})

        assert await store.remove_from_list("items", {"n": 2}) == 1
        assert await store.trim_list("items", 2)
        assert await store.list_range("items") == [{"n": 4}, {"n": 3}]

    @pytest.mark.asyncio
    async def test_hash_ops(self, store):
        await store.hash_set("ledger", "a", {"status": "pending"})
        await store.hash_set("ledger", "b", {"status": "failed"})

        assert await store.hash_get("ledger", "a") == {"status": "pending"}
        assert set(await store.hash_get_all("ledger")) == {"a", "b"}
        assert await store.hash_delete("ledger", "a") == 1
        assert await store.hash_get("ledger", "a") is None

    @pytest.mark.asyncio
    async def test_failures_return_sentinels(self, store, fake_redis):
        fake_redis.fail = True

        assert await store.get_json("k") is None
        assert await store.set_json("k", 1) is False
        assert await store.keys("*") == []
        assert await store.list_length("q") is None
        assert await store.push_left("q", 1) is False
        assert await store.hash_get_all("h") == {}
        assert await store.publish("ch", {}) == 0
        assert store.stats["connection_errors"] > 0

    @pytest.mark.asyncio
    async def test_unready_store_returns_sentinels(self):
        store = KeyValueStore(RedisConfig())

        assert store.is_ready is False
        assert await store.get_json("k") is None
        assert await store.set_json("k", 1) is False
        assert (await store.health_check())["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_initialize_raises_when_unreachable(self, fake_redis):
        fake_redis.fail = True
        store = KeyValueStore(
            RedisConfig(),
            RetryConfig(max_attempts=2, initial_backoff_seconds=0, jitter=False),
            client=fake_redis
        )

        with pytest.raises(StoreUnavailableError):
            await store.initialize()

    @pytest.mark.asyncio
    async def test_close_leaves_injected_client_open(self, store, fake_redis):
        await store.initialize()
        await store.close()
        assert fake_redis.closed is False


class TestPubSub:

    @pytest.mark.asyncio
    async def test_publish_envelope(self, store, fake_redis):
        await store.publish("registrations:updates", {"event_id": "E1"})

        channel, raw = fake_redis.published[0]
        envelope = json.loads(raw)
        assert channel == "registrations:updates"
        assert envelope["data"] == {"event_id": "E1"}
        assert "timestamp" in envelope

    @pytest.mark.asyncio
    async def test_subscribe_and_unsubscribe(self, store, fake_redis):
        received = []
        delivered = asyncio.Event()

        async def handler(data, timestamp):
            received.append((data, timestamp))
            delivered.set()

        channel = store.channel("registrations:updates")
        subscription = await channel.subscribe(handler)

        assert await channel.publish({"action": "upsert"}) == 1
        await asyncio.wait_for(delivered.wait(), timeout=1)

        assert received[0][0] == {"action": "upsert"}
        assert received[0][1] is not None

        await subscription.unsubscribe()
        assert subscription.active is False
        assert await channel.publish({"action": "delete"}) == 0
