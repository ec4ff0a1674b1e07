"""Reconciliation of the record cache against the upstream system of record."""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .clients.upstream_rest import UpstreamClient
from .config.settings import SyncConfig
from .exceptions import ListingTruncatedError, RecordNormalizationError, StoreUnavailableError
from .kv_store import KeyValueStore
from .models import Record, extract_reference_id, lookup_field, normalize_record
from .record_cache import RecordCache
from .utils.logging import log_performance


logger = logging.getLogger(__name__)

SYNC_METADATA_KEY = "sync:metadata"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class SyncStats:
    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    records_added: int = 0
    records_updated: int = 0
    records_removed: int = 0
    last_sync_duration: float = 0.0


@dataclass
class FullSyncReport:
    total_events: int = 0
    synced_events: int = 0
    total_records: int = 0
    failed_events: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0


@dataclass
class IncrementalSyncReport:
    skipped: bool = False
    candidates: List[str] = field(default_factory=list)
    synced_events: int = 0
    total_changes: int = 0
    failed_events: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0


@dataclass
class Discrepancy:
    event_id: str
    cached_count: Optional[int] = None
    upstream_count: Optional[int] = None
    difference: Optional[int] = None
    needs_sync: bool = False
    error: Optional[str] = None


@dataclass
class DiscrepancyReport:
    total_events: int = 0
    events_needing_sync: int = 0
    discrepancies: List[Discrepancy] = field(default_factory=list)


@dataclass
class ForceSyncResult:
    success: bool
    event_id: str
    record_count: int = 0
    error: Optional[str] = None


class SyncWorker:
    """
    Keeps cached events converged with the upstream.

    A full sync replaces every event's aggregate wholesale; incremental syncs
    only upsert records created or modified since the event's cursor and never
    delete. Deletions are caught by the next full or forced sync.
    """

    def __init__(
        self,
        cache: RecordCache,
        store: KeyValueStore,
        upstream: UpstreamClient,
        config: SyncConfig
    ):
        self.cache = cache
        self.store = store
        self.upstream = upstream
        self.config = config

        self.stats = SyncStats()
        self.last_sync_time: Optional[datetime] = None
        self._running = False
        self._timer_task: Optional[asyncio.Task] = None
        self._current_run: Optional[asyncio.Task] = None

        logger.info(
            f"Sync worker initialized: interval={config.sync_interval_seconds}s, "
            f"threshold={config.sync_threshold_minutes}min, auto_sync={config.enable_auto_sync}"
        )

    @property
    def is_running(self) -> bool:
        return self._running

    # ==================== Lifecycle ====================

    async def start(self):
        """Run an initial full sync, then arm the periodic incremental timer."""
        if self._running:
            logger.warning("Sync worker is already running")
            return

        self._running = True
        logger.info("Starting sync worker...")

        try:
            await self._shielded(self.perform_full_sync())
        except Exception as e:
            logger.error(f"Initial full sync failed: {e}", exc_info=True)

        if self.config.enable_auto_sync and self._running:
            self._timer_task = asyncio.create_task(self._sync_loop())
            logger.info(f"Scheduled incremental sync every {self.config.sync_interval_seconds}s")

    async def stop(self):
        """Cancel the timer; a run already in flight is allowed to finish."""
        if not self._running:
            logger.warning("Sync worker is not running")
            return

        self._running = False

        if self._timer_task:
            self._timer_task.cancel()
            await asyncio.gather(self._timer_task, return_exceptions=True)
            self._timer_task = None

        if self._current_run and not self._current_run.done():
            logger.info("Waiting for in-flight sync to finish")
            await asyncio.gather(self._current_run, return_exceptions=True)

        logger.info("Sync worker stopped")

    async def _shielded(self, coro):
        self._current_run = asyncio.ensure_future(coro)
        return await asyncio.shield(self._current_run)

    async def _sync_loop(self):
        while self._running:
            await self._wait_for_next_sync()
            if not self._running:
                break

            try:
                await self._shielded(self.perform_incremental_sync())
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Incremental sync loop error: {e}", exc_info=True)

    async def _wait_for_next_sync(self):
        interval = self.config.sync_interval_seconds
        # Short sleeps keep shutdown responsive
        sleep_interval = min(60, interval)
        waited = 0.0

        while waited < interval and self._running:
            current_sleep = min(sleep_interval, interval - waited)
            await asyncio.sleep(current_sleep)
            waited += current_sleep

    # ==================== Full sync ====================

    async def perform_full_sync(self) -> FullSyncReport:
        """
        Replace every upstream event's cached aggregate.

        Failures on individual events are logged and skipped; sync metadata is
        written even after partial failure.

        Raises:
            UpstreamError: if the event list cannot be fetched
        """
        start = time.monotonic()
        logger.info("Starting full sync...")

        try:
            events = await self.upstream.get_events()
        except Exception as e:
            self.stats.total_syncs += 1
            self.stats.failed_syncs += 1
            logger.error(f"Full sync failed: {e}", exc_info=True)
            raise

        report = FullSyncReport(total_events=len(events))
        logger.info(f"Found {len(events)} events upstream")

        for event in events:
            event_id = extract_reference_id(lookup_field(event, ("ID", "id")))
            if not event_id:
                logger.warning(f"Skipping upstream event without ID: {event}")
                continue

            try:
                record_count = await self.sync_event_data(event_id)
                report.total_records += record_count
                report.synced_events += 1
                logger.info(f"Synced event {event_id}: {record_count} records")
            except Exception as e:
                report.failed_events.append(event_id)
                logger.error(f"Failed to sync event {event_id}: {e}")

        report.duration_seconds = time.monotonic() - start
        self.last_sync_time = datetime.now(timezone.utc)

        self.stats.total_syncs += 1
        self.stats.successful_syncs += 1
        self.stats.last_sync_duration = report.duration_seconds

        await self.update_sync_metadata({
            "last_full_sync": self.last_sync_time.isoformat(),
            "total_events": report.total_events,
            "synced_events": report.synced_events,
            "total_records": report.total_records
        })

        log_performance(
            logger, "full_sync", report.duration_seconds * 1000,
            events=report.synced_events, records=report.total_records
        )
        logger.info(
            f"Full sync completed in {report.duration_seconds:.2f}s: "
            f"{report.synced_events}/{report.total_events} events, {report.total_records} records"
        )
        return report

    def _normalize_rows(self, event_id: str, rows: List[Dict[str, Any]]) -> List[Record]:
        records = []
        for row in rows:
            try:
                records.append(normalize_record(row, event_id=event_id))
            except RecordNormalizationError as e:
                logger.warning(f"Skipping unnormalizable record in event {event_id}: {e}")
        return records

    async def sync_event_data(self, event_id: str) -> int:
        """Fetch every record of an event and replace its aggregate; returns the record count."""
        fetch_started = datetime.now(timezone.utc)

        try:
            rows = await self.upstream.get_event_records(event_id)
        except ListingTruncatedError as e:
            await self._merge_partial(event_id, e.records)
            raise

        records = self._normalize_rows(event_id, rows)
        logger.info(f"Found {len(records)} records upstream for event {event_id}")

        previous = set(await self.cache.get_event_record_ids(event_id) or [])
        current = {r.id for r in records}

        if not await self.cache.replace_event(event_id, records, source="sync_worker"):
            raise StoreUnavailableError(f"Failed to replace cached aggregate for event {event_id}")

        await self.cache.set_last_sync(event_id, fetch_started)

        self.stats.records_added += len(current - previous)
        self.stats.records_updated += len(current & previous)
        self.stats.records_removed += len(previous - current)

        return len(current)

    async def _merge_partial(self, event_id: str, rows: List[Dict[str, Any]]):
        """Upsert a truncated listing without removing anything or moving the cursor."""
        logger.warning(
            f"Event {event_id}: upstream listing truncated at {len(rows)} records, "
            f"merging without replacing the cached aggregate"
        )
        for record in self._normalize_rows(event_id, rows):
            known = await self.cache.get_record(record.id)
            if await self.cache.update_event_index(event_id, record, source="sync_worker_partial"):
                if known is None:
                    self.stats.records_added += 1
                else:
                    self.stats.records_updated += 1

    # ==================== Incremental sync ====================

    async def perform_incremental_sync(self) -> IncrementalSyncReport:
        if not self.config.enable_incremental_sync:
            logger.debug("Incremental sync disabled, skipping")
            return IncrementalSyncReport(skipped=True)

        start = time.monotonic()
        logger.info("Starting incremental sync...")

        report = IncrementalSyncReport()
        try:
            report.candidates = await self.get_events_needing_sync()
        except Exception as e:
            self.stats.total_syncs += 1
            self.stats.failed_syncs += 1
            logger.error(f"Incremental sync failed: {e}", exc_info=True)
            return report

        if not report.candidates:
            logger.info("No events need incremental sync")
            return report

        logger.info(f"Found {len(report.candidates)} events needing sync")

        for event_id in report.candidates:
            try:
                report.total_changes += await self.sync_event_incremental(event_id)
                report.synced_events += 1
            except Exception as e:
                report.failed_events.append(event_id)
                logger.error(f"Failed incremental sync for event {event_id}: {e}")

        report.duration_seconds = time.monotonic() - start
        self.last_sync_time = datetime.now(timezone.utc)
        self.stats.total_syncs += 1
        self.stats.successful_syncs += 1
        self.stats.last_sync_duration = report.duration_seconds

        log_performance(
            logger, "incremental_sync", report.duration_seconds * 1000,
            events=len(report.candidates), changes=report.total_changes
        )
        return report

    async def get_events_needing_sync(self) -> List[str]:
        """Cached events whose cursor is older than the threshold, oldest cursor first."""
        threshold = timedelta(minutes=self.config.sync_threshold_minutes)
        now = datetime.now(timezone.utc)

        candidates = []
        for event_id in await self.cache.list_cached_event_ids():
            cursor = await self.cache.get_last_sync(event_id) or _EPOCH
            if now - cursor > threshold:
                candidates.append((cursor, event_id))

        candidates.sort()
        return [event_id for _, event_id in candidates]

    async def sync_event_incremental(self, event_id: str) -> int:
        """Upsert records changed since the event's cursor; returns the number written."""
        cursor = await self.cache.get_last_sync(event_id) or _EPOCH
        fetch_started = datetime.now(timezone.utc)
        logger.info(f"Event {event_id}: last sync at {cursor.isoformat()}")

        rows = await self.upstream.get_records_modified_since(event_id, cursor)
        if not rows:
            logger.debug(f"Event {event_id}: no new records since last sync")
            await self.cache.set_last_sync(event_id, max(cursor, fetch_started))
            return 0

        synced = 0
        failed = 0
        for record in self._normalize_rows(event_id, rows):
            known = await self.cache.get_record(record.id)
            if await self.cache.update_event_index(event_id, record, source="incremental_sync"):
                synced += 1
                if known is None:
                    self.stats.records_added += 1
                else:
                    self.stats.records_updated += 1
            else:
                failed += 1

        # Leave the cursor in place so failed writes are picked up next run
        if failed:
            logger.warning(f"Event {event_id}: {failed} records failed to cache, cursor not advanced")
        else:
            await self.cache.set_last_sync(event_id, max(cursor, fetch_started))

        logger.info(f"Event {event_id}: incremental sync completed - {synced} records synced")
        return synced

    # ==================== Repair ====================

    async def detect_discrepancies(self) -> DiscrepancyReport:
        """Compare cached and upstream counts per cached event; reports only, never repairs."""
        report = DiscrepancyReport()

        for event_id in await self.cache.list_cached_event_ids():
            try:
                cached_count = await self.cache.get_event_count(event_id) or 0
                upstream_count = await self.upstream.count_event_records(event_id)
                difference = upstream_count - cached_count
                entry = Discrepancy(
                    event_id=event_id,
                    cached_count=cached_count,
                    upstream_count=upstream_count,
                    difference=difference,
                    needs_sync=difference != 0
                )
            except Exception as e:
                logger.error(f"Error checking discrepancy for event {event_id}: {e}")
                entry = Discrepancy(event_id=event_id, needs_sync=True, error=str(e))

            report.discrepancies.append(entry)

        report.total_events = len(report.discrepancies)
        report.events_needing_sync = sum(1 for d in report.discrepancies if d.needs_sync)
        logger.info(
            f"Discrepancy check: {report.events_needing_sync}/{report.total_events} events need sync"
        )
        return report

    async def force_sync_event(self, event_id: str) -> ForceSyncResult:
        logger.info(f"Force syncing event {event_id}...")

        try:
            record_count = await self.sync_event_data(event_id)
        except Exception as e:
            logger.error(f"Force sync failed for event {event_id}: {e}")
            return ForceSyncResult(success=False, event_id=event_id, error=str(e))

        logger.info(f"Force sync completed for event {event_id}: {record_count} records")
        return ForceSyncResult(success=True, event_id=event_id, record_count=record_count)

    # ==================== Status ====================

    async def update_sync_metadata(self, data: Dict[str, Any]) -> bool:
        metadata = {
            **data,
            "sync_stats": asdict(self.stats),
            "worker_status": {
                "is_running": self._running,
                "last_sync_time": datetime.now(timezone.utc).isoformat()
            }
        }
        if not await self.store.set_json(SYNC_METADATA_KEY, metadata):
            logger.error("Error updating sync metadata")
            return False
        return True

    async def get_sync_metadata(self) -> Optional[Dict[str, Any]]:
        return await self.store.get_json(SYNC_METADATA_KEY)

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self._running,
            "config": self.config.model_dump(),
            "stats": asdict(self.stats),
            "last_sync_time": self.last_sync_time.isoformat() if self.last_sync_time else None
        }
