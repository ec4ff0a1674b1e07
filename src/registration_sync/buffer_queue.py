"""Durable retry queue for registration writes the upstream refused."""

import asyncio
import logging
import secrets
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .clients.upstream_rest import UpstreamClient
from .config.settings import BufferConfig
from .exceptions import (
    BufferConfigurationError,
    RateLimitedError,
    StoreUnavailableError,
    UpstreamError,
    UpstreamValidationError,
)
from .kv_store import KeyValueStore
from .models import FIELD_ALIASES, extract_reference_id, lookup_field, parse_timestamp
from .utils.logging import log_with_context


logger = logging.getLogger(__name__)

QUEUE_KEY = "buffer:queue"
LEDGER_KEY = "buffer:submissions"

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

STATUSES = (PENDING, PROCESSING, COMPLETED, FAILED)

SubmitFn = Callable[[Dict[str, Any]], Awaitable[Any]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def generate_buffer_id() -> str:
    return f"buf_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


@dataclass
class BufferItem:
    id: str
    payload: Dict[str, Any]
    reason: str
    event_id: Optional[str] = None
    created_at: str = field(default_factory=lambda: _now().isoformat())
    attempts: int = 0
    max_attempts: int = 5
    status: str = PENDING
    last_attempt_at: Optional[str] = None
    last_error: Optional[str] = None
    result: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BufferItem":
        return cls(
            id=data["id"],
            payload=data.get("payload") or {},
            reason=data.get("reason", "unknown"),
            event_id=data.get("event_id"),
            created_at=data.get("created_at") or _now().isoformat(),
            attempts=int(data.get("attempts", 0)),
            max_attempts=int(data.get("max_attempts", 5)),
            status=data.get("status", PENDING),
            last_attempt_at=data.get("last_attempt_at"),
            last_error=data.get("last_error"),
            result=data.get("result"),
        )

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


@dataclass
class DrainResult:
    outcome: str
    item: Optional[BufferItem] = None
    error: Optional[str] = None


@dataclass
class SubmissionResult:
    status: str
    record_id: Optional[str] = None
    buffer_id: Optional[str] = None
    error: Optional[str] = None
    data: Any = None

    @property
    def success(self) -> bool:
        return self.status in ("created", "queued")


class BufferQueue:
    """
    FIFO of buffered submissions plus a ledger of every item's latest state.

    Items enter at the left and drain from the right. A failed attempt puts the
    item back after backoff_base_seconds * attempts; the delay runs as a
    background task so callers are never blocked. Once attempts reach
    max_attempts the item is marked failed and only retry_one can revive it.
    """

    def __init__(self, store: KeyValueStore, config: BufferConfig):
        self.store = store
        self.config = config
        self._requeues: Dict[asyncio.Task, BufferItem] = {}

    async def _save(self, item: BufferItem) -> bool:
        return await self.store.hash_set(LEDGER_KEY, item.id, item.to_dict())

    async def enqueue(
        self,
        payload: Dict[str, Any],
        reason: str,
        event_id: Optional[str] = None
    ) -> BufferItem:
        """
        Buffer a payload for later replay.

        Raises:
            StoreUnavailableError: if the item could not be persisted
        """
        item = BufferItem(
            id=generate_buffer_id(),
            payload=payload,
            reason=reason,
            event_id=event_id,
            max_attempts=self.config.max_attempts
        )

        if not await self._save(item) or not await self.store.push_left(QUEUE_KEY, item.to_dict()):
            raise StoreUnavailableError(f"Could not buffer submission ({reason})")

        logger.info(f"Buffered submission {item.id} ({reason})")
        return item

    async def get_item(self, item_id: str) -> Optional[BufferItem]:
        data = await self.store.hash_get(LEDGER_KEY, item_id)
        return BufferItem.from_dict(data) if isinstance(data, dict) else None

    async def list_by_status(self, status: Optional[str] = None) -> List[BufferItem]:
        """Ledger items, oldest first, optionally restricted to one status."""
        items = [
            BufferItem.from_dict(data)
            for data in (await self.store.hash_get_all(LEDGER_KEY)).values()
            if isinstance(data, dict)
        ]
        if status:
            items = [i for i in items if i.status == status]
        return sorted(items, key=lambda i: i.created_at)

    async def drain_one(self, submit_fn: SubmitFn) -> DrainResult:
        """Pop the oldest queued item and attempt it once."""
        entry = await self.store.pop_right(QUEUE_KEY)
        if not isinstance(entry, dict) or "id" not in entry:
            return DrainResult("empty")

        # The ledger holds the latest state; the queue copy is the fallback
        item = await self.get_item(entry["id"]) or BufferItem.from_dict(entry)

        # Stale copy of an item that already finished; replaying it would submit twice
        if item.status in (COMPLETED, FAILED):
            logger.info(f"Discarding stale queue entry for {item.status} submission {item.id}")
            return DrainResult("skipped", item, f"Item is {item.status}")

        return await self._attempt(item, submit_fn, entry)

    async def _attempt(self, item: BufferItem, submit_fn: SubmitFn, entry: Dict[str, Any]) -> DrainResult:
        if item.exhausted:
            item.status = FAILED
            await self._save(item)
            logger.warning(f"Buffered submission {item.id} exhausted after {item.attempts} attempts")
            return DrainResult(FAILED, item, item.last_error)

        previous_status = item.status
        item.status = PROCESSING
        item.last_attempt_at = _now().isoformat()
        await self._save(item)

        try:
            result = await submit_fn(item.payload)
        except BufferConfigurationError:
            # Setup failure, not the item's fault: put it back untouched at the head
            item.status = previous_status
            await self._save(item)
            await self.store.push_right(QUEUE_KEY, entry)
            logger.error(f"Buffer replay misconfigured, returned {item.id} to the queue")
            raise
        except Exception as e:
            item.attempts += 1
            item.last_error = str(e)

            if item.exhausted:
                item.status = FAILED
                await self._save(item)
                log_with_context(
                    logger, logging.ERROR,
                    f"Buffered submission {item.id} failed permanently after {item.attempts} attempts: {e}",
                    buffer_id=item.id, event_id=item.event_id, reason=item.reason
                )
                return DrainResult(FAILED, item, str(e))

            item.status = PENDING
            await self._save(item)
            delay = self.config.backoff_base_seconds * item.attempts
            self._schedule_requeue(item, delay)
            logger.warning(
                f"Retry {item.attempts}/{item.max_attempts} failed for {item.id}: {e}. "
                f"Re-queued in {delay:.0f}s"
            )
            return DrainResult("retry_scheduled", item, str(e))

        item.status = COMPLETED
        item.result = result
        item.last_error = None
        await self._save(item)
        logger.info(f"Buffered submission {item.id} completed")
        return DrainResult(COMPLETED, item)

    def _schedule_requeue(self, item: BufferItem, delay: float):
        task = asyncio.create_task(self._requeue_later(item, delay))
        self._requeues[task] = item
        task.add_done_callback(lambda t: self._requeues.pop(t, None))

    async def _requeue_later(self, item: BufferItem, delay: float):
        if delay > 0:
            await asyncio.sleep(delay)
        if not await self.store.push_left(QUEUE_KEY, item.to_dict()):
            logger.error(f"Failed to re-queue buffered submission {item.id}")

    async def _cancel_requeues(self, item_id: str):
        tasks = [task for task, item in self._requeues.items() if item.id == item_id]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for task in tasks:
            self._requeues.pop(task, None)

    async def wait_for_requeues(self):
        """Wait until every scheduled re-enqueue has landed back in the queue."""
        if self._requeues:
            await asyncio.gather(*list(self._requeues), return_exceptions=True)

    async def close(self):
        """Cancel pending re-enqueue delays and put their items back immediately."""
        pending = list(self._requeues.items())
        for task, _ in pending:
            task.cancel()
        await asyncio.gather(*(task for task, _ in pending), return_exceptions=True)

        for task, item in pending:
            if task.cancelled():
                await self.store.push_left(QUEUE_KEY, item.to_dict())
        self._requeues.clear()

    async def retry_sweep(self, submit_fn: SubmitFn, sweep_delay: Optional[float] = None) -> Dict[str, int]:
        """Drain at most the current queue length, pausing between items."""
        counts = {"processed": 0, "successful": 0, "retry_scheduled": 0, "failed": 0}
        delay = self.config.sweep_delay_seconds if sweep_delay is None else sweep_delay

        length = await self.store.list_length(QUEUE_KEY) or 0
        logger.info(f"Processing retry queue: {length} submissions")

        for index in range(length):
            result = await self.drain_one(submit_fn)
            if result.outcome == "empty":
                break
            if result.outcome == "skipped":
                continue

            counts["processed"] += 1
            if result.outcome == COMPLETED:
                counts["successful"] += 1
            elif result.outcome == FAILED:
                counts["failed"] += 1
            else:
                counts["retry_scheduled"] += 1

            if delay > 0 and index < length - 1:
                await asyncio.sleep(delay)

        logger.info(
            f"Processed {counts['processed']} submissions: {counts['successful']} successful, "
            f"{counts['retry_scheduled']} rescheduled, {counts['failed']} failed"
        )
        return counts

    async def retry_one(self, item_id: str, submit_fn: SubmitFn) -> Optional[DrainResult]:
        """
        Attempt a single pending or failed item now.

        A failed item is granted exactly one more attempt. Returns None when the
        item is unknown.
        """
        item = await self.get_item(item_id)
        if item is None:
            return None

        if item.status not in (PENDING, FAILED):
            return DrainResult("skipped", item, f"Item is {item.status}")

        if item.status == FAILED:
            item.max_attempts = item.attempts + 1
            item.status = PENDING
            await self._save(item)

        # Drop delayed and queued copies so the item is not replayed twice
        await self._cancel_requeues(item_id)
        for entry in await self.store.list_range(QUEUE_KEY):
            if isinstance(entry, dict) and entry.get("id") == item_id:
                await self.store.remove_from_list(QUEUE_KEY, entry)

        logger.info(f"Manual retry of buffered submission {item_id}")
        return await self._attempt(item, submit_fn, item.to_dict())

    async def cleanup_completed(self, older_than: Optional[timedelta] = None) -> int:
        """Remove completed items whose last attempt is older than the retention window."""
        retention = older_than if older_than is not None else timedelta(days=self.config.completed_retention_days)
        cutoff = _now() - retention

        stale = []
        for item in await self.list_by_status(COMPLETED):
            finished = parse_timestamp(item.last_attempt_at or item.created_at)
            if finished is not None and finished < cutoff:
                stale.append(item.id)

        cleaned = await self.store.hash_delete(LEDGER_KEY, *stale) if stale else 0
        logger.info(f"Cleaned up {cleaned} completed submissions")
        return cleaned

    async def status(self) -> Dict[str, Any]:
        queue_length = await self.store.list_length(QUEUE_KEY)
        counts = {s: 0 for s in STATUSES}
        for item in await self.list_by_status():
            counts[item.status] = counts.get(item.status, 0) + 1

        return {
            "connected": queue_length is not None,
            "queue_length": queue_length or 0,
            "scheduled_requeues": len(self._requeues),
            "counts": counts,
            "total": sum(counts.values()),
        }


class RegistrationSubmitter:
    """Write path for new registrations; refused writes are buffered rather than lost."""

    def __init__(self, upstream: UpstreamClient, queue: BufferQueue, form: Optional[str] = None):
        self.upstream = upstream
        self.queue = queue
        self.form = form

    async def submit(self, payload: Dict[str, Any]) -> SubmissionResult:
        event_id = extract_reference_id(lookup_field(payload, FIELD_ALIASES["event_id"]))

        try:
            created = await self.upstream.create_record(payload, self.form)
        except RateLimitedError as e:
            item = await self.queue.enqueue(payload, "rate_limited", event_id)
            logger.warning(f"Upstream rate limited, buffered submission as {item.id}")
            return SubmissionResult("queued", buffer_id=item.id, error=str(e))
        except UpstreamValidationError as e:
            logger.warning(f"Upstream rejected submission: {e}")
            return SubmissionResult("rejected", error=str(e))
        except UpstreamError as e:
            item = await self.queue.enqueue(payload, "network_error", event_id)
            logger.warning(f"Upstream unavailable ({e}), buffered submission as {item.id}")
            return SubmissionResult("queued", buffer_id=item.id, error=str(e))

        record_id = created.get("ID") if isinstance(created, dict) else None
        return SubmissionResult("created", record_id=str(record_id) if record_id else None, data=created)

    async def submit_direct(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Replay function for the buffer; raises on any failure."""
        if self.upstream.session is None:
            raise BufferConfigurationError("Upstream client is not open")
        return await self.upstream.create_record(payload, self.form)


class BufferScheduler:
    """Periodic retry sweeps and cleanup of the buffer queue."""

    def __init__(self, queue: BufferQueue, submit_fn: SubmitFn, config: BufferConfig):
        self.queue = queue
        self.submit_fn = submit_fn
        self.config = config
        self._running = False
        self._tasks: List[asyncio.Task] = []
        self.last_sweep: Optional[Dict[str, Any]] = None
        self.last_cleanup: Optional[Dict[str, Any]] = None

        logger.info(
            f"Buffer scheduler initialized: retry every {config.retry_interval_seconds}s, "
            f"cleanup every {config.cleanup_interval_seconds}s"
        )

    async def start(self):
        if self._running:
            logger.warning("Buffer scheduler already running")
            return

        self._running = True
        self._tasks = [
            asyncio.create_task(self._loop(self.config.retry_interval_seconds, self.run_retry_sweep)),
            asyncio.create_task(self._loop(self.config.cleanup_interval_seconds, self.run_cleanup)),
        ]
        logger.info("Buffer scheduler started")

    async def stop(self):
        if not self._running:
            logger.warning("Buffer scheduler not running")
            return

        logger.info("Stopping buffer scheduler")
        self._running = False

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self._tasks.clear()
        logger.info("Buffer scheduler stopped")

    async def _loop(self, interval: float, job: Callable[[], Awaitable[Any]]):
        while self._running:
            await self._wait(interval)
            if not self._running:
                break
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Buffer scheduler job error: {e}", exc_info=True)

    async def _wait(self, interval: float):
        sleep_interval = min(60, interval)
        waited = 0.0
        while waited < interval and self._running:
            current_sleep = min(sleep_interval, interval - waited)
            await asyncio.sleep(current_sleep)
            waited += current_sleep

    async def run_retry_sweep(self) -> Dict[str, int]:
        counts = await self.queue.retry_sweep(self.submit_fn)
        self.last_sweep = {"at": _now().isoformat(), **counts}
        return counts

    async def run_cleanup(self) -> int:
        cleaned = await self.queue.cleanup_completed()
        self.last_cleanup = {"at": _now().isoformat(), "cleaned": cleaned}
        return cleaned

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self._running,
            "active_tasks": sum(1 for t in self._tasks if not t.done()),
            "retry_interval_seconds": self.config.retry_interval_seconds,
            "cleanup_interval_seconds": self.config.cleanup_interval_seconds,
            "last_sweep": self.last_sweep,
            "last_cleanup": self.last_cleanup,
        }
