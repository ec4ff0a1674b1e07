"""Per-record and per-event registration cache built on the key/value store."""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .kv_store import KeyValueStore
from .models import Record, normalize_boolean, normalize_status_filter
from .models import parse_timestamp


logger = logging.getLogger(__name__)

UPDATES_CHANNEL = "registrations:updates"
CACHE_METADATA_KEY = "cache:metadata"

_META_KEY_PATTERN = re.compile(r"^event:(.+):meta$")


def record_key(record_id: str) -> str:
    return f"record:{record_id}"


def event_key(event_id: str, suffix: str) -> str:
    return f"event:{event_id}:{suffix}"


@dataclass
class RegistrationFilters:
    """Read filters; status accepts any upstream check-in encoding."""
    status: Any = None
    group_only: Any = False
    limit: Optional[int] = None
    offset: int = 0


@dataclass
class RegistrationPage:
    data: List[Record] = field(default_factory=list)
    total: int = 0
    count: int = 0
    cached: bool = False
    source: str = "miss"


@dataclass
class CacheStats:
    total_records: int = 0
    total_events: int = 0
    last_updated: Optional[str] = None
    cache_valid: bool = False
    events: List[Dict[str, Any]] = field(default_factory=list)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RecordCache:
    """
    Registration cache keyed by record and by event.

    Reads never raise: a miss or an unavailable store yields an explicit empty
    result so callers can fall back to the upstream. Writes return a bool.
    Multi-key updates are sequential and not atomic; the next sync repairs any
    aggregate left inconsistent by a crash between writes.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store
        self.updates = store.channel(UPDATES_CHANNEL)

    # ==================== Records ====================

    async def store_record(self, record_id: str, record: Record) -> bool:
        stored = await self.store.set_json(record_key(record_id), record.to_dict())
        if not stored:
            logger.warning(f"Failed to store record {record_id}")
        return stored

    async def get_record(self, record_id: str) -> Optional[Record]:
        data = await self.store.get_json(record_key(record_id))
        if not isinstance(data, dict):
            return None
        try:
            return Record.from_dict(data)
        except Exception as e:
            logger.error(f"Stored record {record_id} is unreadable: {e}")
            return None

    async def get_records(self, record_ids: Iterable[str]) -> List[Record]:
        """Resolve records concurrently, preserving order and dropping misses."""
        records = await asyncio.gather(*(self.get_record(rid) for rid in record_ids))
        return [r for r in records if r is not None]

    # ==================== Event aggregates ====================

    async def get_event_record_ids(self, event_id: str) -> Optional[List[str]]:
        ids = await self.store.get_json(event_key(event_id, "record_ids"))
        if not isinstance(ids, list):
            return None
        return [str(i) for i in ids]

    async def get_event_count(self, event_id: str) -> Optional[int]:
        value = await self.store.get_json(event_key(event_id, "count"))
        # Older entries stored {"count": n}
        if isinstance(value, dict):
            value = value.get("count")
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    async def get_event_meta(self, event_id: str) -> Optional[Dict[str, Any]]:
        meta = await self.store.get_json(event_key(event_id, "meta"))
        return meta if isinstance(meta, dict) else None

    async def get_last_sync(self, event_id: str) -> Optional[datetime]:
        return parse_timestamp(await self.store.get_json(event_key(event_id, "last_sync")))

    async def set_last_sync(self, event_id: str, when: datetime) -> bool:
        return await self.store.set_json(event_key(event_id, "last_sync"), when.isoformat())

    async def list_cached_event_ids(self) -> List[str]:
        event_ids = []
        for key in await self.store.keys(event_key("*", "meta")):
            match = _META_KEY_PATTERN.match(key)
            if match:
                event_ids.append(match.group(1))
        return event_ids

    async def _write_aggregate(
        self,
        event_id: str,
        record_ids: List[str],
        registrations: List[Dict[str, Any]],
        source: str
    ) -> bool:
        count = len(record_ids)
        results = [
            await self.store.set_json(event_key(event_id, "record_ids"), record_ids),
            await self.store.set_json(event_key(event_id, "registrations"), registrations),
            await self.store.set_json(event_key(event_id, "count"), count),
            await self.store.set_json(event_key(event_id, "meta"), {
                "total_records": count,
                "last_updated": _now_iso(),
                "source": source
            }),
        ]
        return all(results)

    async def _load_registrations(self, event_id: str) -> List[Dict[str, Any]]:
        registrations = await self.store.get_json(event_key(event_id, "registrations"))
        return registrations if isinstance(registrations, list) else []

    async def update_event_index(
        self,
        event_id: str,
        record: Record,
        record_id: Optional[str] = None,
        source: str = "webhook_sync"
    ) -> bool:
        """Upsert a record and make sure the event aggregate references it."""
        record_id = str(record_id or record.id)

        if not await self.store_record(record_id, record):
            return False

        record_ids = await self.get_event_record_ids(event_id) or []
        if record_id not in record_ids:
            record_ids.append(record_id)

        registrations = [
            r for r in await self._load_registrations(event_id)
            if str(r.get("id")) != record_id
        ]
        registrations.append(record.to_dict())

        if not await self._write_aggregate(event_id, record_ids, registrations, source):
            logger.error(f"Failed to update aggregate for event {event_id}")
            return False

        await self.updates.publish({
            "event_id": event_id,
            "record_id": record_id,
            "action": "upsert",
            "source": source
        })

        logger.info(f"Updated event {event_id} record {record_id}: {len(record_ids)} total records")
        return True

    async def remove_event_record(
        self,
        event_id: str,
        record_id: str,
        source: str = "webhook_sync"
    ) -> bool:
        """Drop a record from the event aggregate; record:{id} itself is left in place."""
        record_id = str(record_id)

        record_ids = await self.get_event_record_ids(event_id)
        registrations = await self._load_registrations(event_id)
        if record_ids is None and not registrations:
            logger.debug(f"Event {event_id} not cached, nothing to remove")
            return True

        record_ids = [rid for rid in (record_ids or []) if rid != record_id]
        registrations = [r for r in registrations if str(r.get("id")) != record_id]

        if not await self._write_aggregate(event_id, record_ids, registrations, source):
            logger.error(f"Failed to update aggregate for event {event_id}")
            return False

        await self.updates.publish({
            "event_id": event_id,
            "record_id": record_id,
            "action": "delete",
            "source": source
        })

        logger.info(f"Removed event {event_id} record {record_id}: {len(record_ids)} remaining records")
        return True

    async def replace_event(
        self,
        event_id: str,
        records: List[Record],
        source: str = "sync_worker"
    ) -> bool:
        """Wholesale replace an event's aggregate with records."""
        stored = [await self.store_record(r.id, r) for r in records]
        if not all(stored):
            logger.error(f"Failed to store {stored.count(False)} records for event {event_id}")
            return False

        # Keep first occurrence if upstream returned duplicates
        unique: Dict[str, Record] = {}
        for r in records:
            unique.setdefault(r.id, r)

        ok = await self._write_aggregate(
            event_id,
            list(unique.keys()),
            [r.to_dict() for r in unique.values()],
            source
        )
        if ok:
            await self.updates.publish({
                "event_id": event_id,
                "action": "refresh",
                "count": len(unique),
                "source": source
            })
        return ok

    # ==================== Reads ====================

    async def get_event_registrations(
        self,
        event_id: str,
        filters: Optional[RegistrationFilters] = None
    ) -> RegistrationPage:
        """Registrations of an event, filtered on normalized check-in status and group flag."""
        filters = filters or RegistrationFilters()

        record_ids = await self.get_event_record_ids(event_id)
        if record_ids is not None:
            records = await self.get_records(record_ids)
            source = "per_record"
        else:
            legacy = await self._load_registrations(event_id)
            if not legacy:
                logger.debug(f"Cache MISS: event {event_id}")
                return RegistrationPage()
            records = []
            for entry in legacy:
                try:
                    records.append(Record.from_dict(entry))
                except Exception as e:
                    logger.warning(f"Skipping unreadable legacy entry in event {event_id}: {e}")
            source = "event_registrations"

        status = normalize_status_filter(filters.status)
        if status is not None:
            records = [r for r in records if r.status == status]

        if normalize_boolean(filters.group_only):
            records = [r for r in records if r.is_group]

        total = len(records)
        if filters.offset:
            records = records[filters.offset:]
        if filters.limit is not None:
            records = records[:filters.limit]

        return RegistrationPage(
            data=records,
            total=total,
            count=len(records),
            cached=True,
            source=source
        )

    async def get_cache_stats(self) -> CacheStats:
        """Sum per-event counts and rewrite the process-wide cache metadata."""
        events = []
        total_records = 0

        for event_id in await self.list_cached_event_ids():
            count = await self.get_event_count(event_id)
            if count is None:
                continue
            total_records += count
            events.append({"event_id": event_id, "registrations": count})

        stats = CacheStats(
            total_records=total_records,
            total_events=len(events),
            last_updated=_now_iso(),
            cache_valid=total_records > 0,
            events=events
        )

        await self.store.set_json(CACHE_METADATA_KEY, {
            "total_records": stats.total_records,
            "total_events": stats.total_events,
            "last_updated": stats.last_updated
        })

        return stats
