"""Ingestion of upstream change notifications into the record cache."""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from .config.settings import WebhookConfig
from .exceptions import RecordNormalizationError, StoreUnavailableError, WebhookValidationError
from .kv_store import KeyValueStore
from .models import FIELD_ALIASES, extract_reference_id, lookup_field, normalize_record
from .record_cache import RecordCache


logger = logging.getLogger(__name__)

QUARANTINE_KEY = "webhook:quarantine"

CREATE = "create"
UPDATE = "update"
DELETE = "delete"

EVENT_TYPE_ALIASES = {
    "record.create": CREATE,
    "create": CREATE,
    "record_created": CREATE,
    "record.update": UPDATE,
    "update": UPDATE,
    "record_updated": UPDATE,
    "record.delete": DELETE,
    "delete": DELETE,
    "record_deleted": DELETE,
}

_ACTIONS = {CREATE: "created", UPDATE: "updated", DELETE: "deleted"}


@dataclass
class WebhookNotification:
    event_type: Optional[str]
    target_entity_name: Optional[str]
    record_payload: Any = None
    record_id: Optional[str] = None

    @classmethod
    def from_message(cls, message: Mapping[str, Any]) -> "WebhookNotification":
        """Accept both the canonical field names and the short aliases (event, form, record)."""
        def pick(*names):
            for name in names:
                value = message.get(name)
                if value is not None and value != "":
                    return value
            return None

        record_id = pick("record_id", "recordId")
        return cls(
            event_type=pick("event_type", "event"),
            target_entity_name=pick("target_entity_name", "form"),
            record_payload=pick("record_payload", "record"),
            record_id=str(record_id) if record_id is not None else None,
        )


@dataclass
class WebhookResult:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)


def parse_record_payload(payload: Any) -> Dict[str, Any]:
    """
    Decode a record payload that may arrive as an object or a JSON string.

    Form-encoded deliveries double-escape quotes; when the text does not parse
    as-is, it is retried with \\" unescaped.

    Raises:
        WebhookValidationError: if the payload is not an object after decoding
    """
    if isinstance(payload, Mapping):
        return dict(payload)
    if payload is None:
        raise WebhookValidationError("Webhook carries no record payload")
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8", errors="replace")
    if not isinstance(payload, str):
        raise WebhookValidationError(f"Unsupported record payload type: {type(payload).__name__}")

    try:
        decoded = json.loads(payload)
    except ValueError as e:
        if '\\"' not in payload:
            raise WebhookValidationError(f"Record payload is not valid JSON: {e}") from e
        try:
            decoded = json.loads(payload.replace('\\"', '"'))
        except ValueError as unescaped_error:
            raise WebhookValidationError(
                f"Record payload is not valid JSON: {unescaped_error}"
            ) from unescaped_error

    if not isinstance(decoded, dict):
        raise WebhookValidationError("Record payload must decode to an object")
    return decoded


class WebhookIngester:
    """
    Applies create/update/delete notifications from the upstream to the cache.

    Malformed messages are answered with 400 and kept in a bounded quarantine
    list for inspection; they are never retried. Store failures raise
    StoreUnavailableError so the transport can answer 500 and the upstream
    re-delivers.
    """

    def __init__(self, cache: RecordCache, store: KeyValueStore, config: WebhookConfig):
        self.cache = cache
        self.store = store
        self.config = config

        self.stats = {
            "received": 0,
            "applied": 0,
            "ignored": 0,
            "rejected": 0,
        }

    async def ingest(self, message: Mapping[str, Any]) -> WebhookResult:
        self.stats["received"] += 1

        if not isinstance(message, Mapping):
            return await self._reject(message, "Webhook body must be an object")

        notification = WebhookNotification.from_message(message)

        if notification.target_entity_name != self.config.monitored_entity:
            self.stats["ignored"] += 1
            logger.debug(f"Ignoring webhook for entity {notification.target_entity_name}")
            return WebhookResult(200, {
                "success": True,
                "message": f"Entity not processed (not {self.config.monitored_entity})",
                "action": "ignored"
            })

        kind = EVENT_TYPE_ALIASES.get(str(notification.event_type or "").strip().lower())
        if kind is None:
            return await self._reject(message, f"Unknown event type: {notification.event_type}")

        try:
            if kind == DELETE:
                event_id, record_id = await self._apply_delete(notification)
            else:
                event_id, record_id = await self._apply_upsert(notification)
        except (WebhookValidationError, RecordNormalizationError) as e:
            return await self._reject(message, str(e))

        await self.cache.get_cache_stats()

        action = _ACTIONS[kind]
        self.stats["applied"] += 1
        logger.info(f"Webhook processed: {action} record {record_id} for event {event_id}")

        return WebhookResult(200, {
            "success": True,
            "message": f"Record {action} successfully",
            "action": action,
            "event_id": event_id,
            "record_id": record_id
        })

    async def _apply_upsert(self, notification: WebhookNotification):
        payload = parse_record_payload(notification.record_payload)
        record = normalize_record(payload, record_id=notification.record_id)

        # The notification's record ID wins over the one embedded in the payload
        record_id = notification.record_id or record.id
        record.id = record_id

        if not await self.cache.update_event_index(record.event_id, record, record_id):
            raise StoreUnavailableError(f"Failed to cache record {record_id} for event {record.event_id}")

        return record.event_id, record_id

    async def _apply_delete(self, notification: WebhookNotification):
        payload: Dict[str, Any] = {}
        if notification.record_payload is not None:
            payload = parse_record_payload(notification.record_payload)

        record_id = notification.record_id or extract_reference_id(lookup_field(payload, FIELD_ALIASES["id"]))
        if not record_id:
            raise WebhookValidationError("Delete notification has no record ID")

        event_id = extract_reference_id(lookup_field(payload, FIELD_ALIASES["event_id"]))
        if not event_id:
            cached = await self.cache.get_record(record_id)
            event_id = cached.event_id if cached else None
        if not event_id:
            raise WebhookValidationError(f"No event ID found for deleted record {record_id}")

        if not await self.cache.remove_event_record(event_id, record_id):
            raise StoreUnavailableError(f"Failed to remove record {record_id} from event {event_id}")

        return event_id, record_id

    async def _reject(self, message: Any, reason: str) -> WebhookResult:
        self.stats["rejected"] += 1
        logger.warning(f"Rejected webhook: {reason}")
        await self.quarantine(message, reason)
        return WebhookResult(400, {"success": False, "message": reason})

    async def quarantine(self, message: Any, reason: str) -> bool:
        entry = {
            "received_at": datetime.now(timezone.utc).isoformat(),
            "reason": reason,
            "message": message,
        }
        if not await self.store.push_left(QUARANTINE_KEY, entry):
            logger.error(f"Failed to quarantine webhook message: {reason}")
            return False
        await self.store.trim_list(QUARANTINE_KEY, self.config.quarantine_max_length)
        return True

    async def list_quarantined(self, limit: int = 100):
        return await self.store.list_range(QUARANTINE_KEY, 0, limit - 1)
