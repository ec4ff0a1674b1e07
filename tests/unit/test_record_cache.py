"""Tests for the record cache."""

import json
from datetime import datetime, timezone

import pytest

from conftest import make_registration
from registration_sync.models import CHECKED_IN, REGISTERED, normalize_record
from registration_sync.record_cache import CACHE_METADATA_KEY, RegistrationFilters, UPDATES_CHANNEL


def record(record_id, event_id="E1", **fields):
    return normalize_record(make_registration(record_id, event_id, **fields))


class TestRecords:

    @pytest.mark.asyncio
    async def test_store_and_get(self, cache):
        assert await cache.store_record("R1", record("R1"))

        stored = await cache.get_record("R1")
        assert stored == record("R1")

    @pytest.mark.asyncio
    async def test_get_missing(self, cache):
        assert await cache.get_record("nope") is None

    @pytest.mark.asyncio
    async def test_get_records_drops_misses(self, cache):
        await cache.store_record("R1", record("R1"))
        await cache.store_record("R3", record("R3"))

        found = await cache.get_records(["R1", "R2", "R3"])
        assert [r.id for r in found] == ["R1", "R3"]


class TestEventIndex:

    @pytest.mark.asyncio
    async def test_update_is_idempotent(self, cache):
        r1 = record("R1", Modified_Time="15-Mar-2024 10:20:30")

        assert await cache.update_event_index("E1", r1)
        assert await cache.update_event_index("E1", r1)

        assert await cache.get_event_record_ids("E1") == ["R1"]
        assert await cache.get_event_count("E1") == 1
        assert await cache.get_record("R1") == r1

    @pytest.mark.asyncio
    async def test_update_overwrites_record(self, cache):
        await cache.update_event_index("E1", record("R1"))
        await cache.update_event_index("E1", record("R1", Check_In_Status="Checked In"))

        page = await cache.get_event_registrations("E1")
        assert page.count == 1
        assert page.data[0].status == CHECKED_IN

    @pytest.mark.asyncio
    async def test_meta_and_publish(self, cache, fake_redis):
        await cache.update_event_index("E1", record("R1"), source="webhook_sync")

        meta = await cache.get_event_meta("E1")
        assert meta["total_records"] == 1
        assert meta["source"] == "webhook_sync"

        channel, raw = fake_redis.published[-1]
        assert channel == UPDATES_CHANNEL
        assert json.loads(raw)["data"]["record_id"] == "R1"

    @pytest.mark.asyncio
    async def test_remove_keeps_record_key(self, cache):
        await cache.update_event_index("E1", record("R1"))
        await cache.update_event_index("E1", record("R2"))

        assert await cache.remove_event_record("E1", "R1")

        assert await cache.get_event_record_ids("E1") == ["R2"]
        assert await cache.get_event_count("E1") == 1
        assert await cache.get_record("R1") is not None

    @pytest.mark.asyncio
    async def test_remove_from_uncached_event(self, cache):
        assert await cache.remove_event_record("E404", "R1")
        assert await cache.get_event_count("E404") is None

    @pytest.mark.asyncio
    async def test_replace_event(self, cache):
        await cache.update_event_index("E1", record("OLD"))

        records = [record("R1"), record("R2"), record("R1")]
        assert await cache.replace_event("E1", records)

        ids = await cache.get_event_record_ids("E1")
        assert ids == ["R1", "R2"]
        assert await cache.get_event_count("E1") == len(ids)
        assert all([await cache.get_record(i) for i in ids])
        assert (await cache.get_event_meta("E1"))["source"] == "sync_worker"

    @pytest.mark.asyncio
    async def test_write_failure_returns_false(self, cache, fake_redis):
        fake_redis.fail = True
        assert await cache.update_event_index("E1", record("R1")) is False


class TestReads:

    async def _populate(self, cache):
        await cache.replace_event("E1", [
            record("R1", Check_In_Status="Checked In"),
            record("R2", Check_In_Status=True),
            record("R3", Check_In_Status="checked_in", Group_Registration="true"),
            record("R4"),
            record("R5", Group_Registration=True),
        ])

    @pytest.mark.asyncio
    async def test_miss(self, cache):
        page = await cache.get_event_registrations("E9")
        assert page.cached is False
        assert page.data == []

    @pytest.mark.asyncio
    async def test_checked_in_filter_matches_every_encoding(self, cache):
        await self._populate(cache)

        for status in ("Checked In", True, "checked_in"):
            page = await cache.get_event_registrations("E1", RegistrationFilters(status=status))
            assert [r.id for r in page.data] == ["R1", "R2", "R3"]

        page = await cache.get_event_registrations("E1", RegistrationFilters(status="not_yet"))
        assert [r.id for r in page.data] == ["R4", "R5"]
        assert all(r.status == REGISTERED for r in page.data)

    @pytest.mark.asyncio
    async def test_all_and_group_filters(self, cache):
        await self._populate(cache)

        page = await cache.get_event_registrations("E1", RegistrationFilters(status="all"))
        assert page.total == 5

        page = await cache.get_event_registrations("E1", RegistrationFilters(group_only="true"))
        assert [r.id for r in page.data] == ["R3", "R5"]

    @pytest.mark.asyncio
    async def test_pagination_total_before_slicing(self, cache):
        await self._populate(cache)

        page = await cache.get_event_registrations("E1", RegistrationFilters(limit=2, offset=1))

        assert page.total == 5
        assert page.count == 2
        assert [r.id for r in page.data] == ["R2", "R3"]
        assert page.source == "per_record"

    @pytest.mark.asyncio
    async def test_legacy_registrations_fallback(self, cache, store):
        await store.set_json("event:E7:registrations", [make_registration("L1", "E7")])

        page = await cache.get_event_registrations("E7")

        assert page.cached is True
        assert page.source == "event_registrations"
        assert page.data[0].id == "L1"


class TestStats:

    @pytest.mark.asyncio
    async def test_cache_stats_rewrites_metadata(self, cache, store):
        await cache.replace_event("E1", [record("R1"), record("R2")])
        await cache.replace_event("E2", [record("R3", "E2")])

        stats = await cache.get_cache_stats()

        assert stats.total_records == 3
        assert stats.total_events == 2
        assert stats.cache_valid is True
        assert (await store.get_json(CACHE_METADATA_KEY))["total_records"] == 3

    @pytest.mark.asyncio
    async def test_last_sync_cursor(self, cache):
        when = datetime(2024, 3, 15, 10, 0, tzinfo=timezone.utc)
        assert await cache.get_last_sync("E1") is None
        await cache.set_last_sync("E1", when)
        assert await cache.get_last_sync("E1") == when
