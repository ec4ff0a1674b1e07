"""Canonical registration record and normalization of upstream payloads."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional

from .exceptions import RecordNormalizationError


CHECKED_IN = "checked_in"
REGISTERED = "registered"

_CHECKED_IN_VALUES = {"checked_in", "checkedin", "checked", "true", "yes", "1"}
_TRUTHY_STRINGS = {"true", "yes", "1"}

# Upstream spellings per canonical field, matched case-insensitively
FIELD_ALIASES = {
    "id": ("ID", "id", "record_id", "recordId"),
    "event_id": ("Event_Info", "event_id", "eventId", "Event_ID", "event"),
    "full_name": ("Full_Name", "full_name", "name", "fullName"),
    "email": ("Email", "email", "Email_Address"),
    "phone": ("Phone_Number", "phone", "mobile_number", "phoneNumber"),
    "company": ("Company_Name", "company", "companyName"),
    "redeem_id": ("Redeem_ID", "redeem_id", "redeemId"),
    "status": ("Check_In_Status", "check_in_status", "checkInStatus", "status"),
    "is_group": ("Group_Registration", "group_registration", "is_group", "isGroup"),
}

_TIMESTAMP_ALIASES = ("Modified_Time", "Updated_At", "updated_at", "Created_Time", "created_at")

# Upstream platform renders datetimes as "15-Mar-2024 10:20:30"
_UPSTREAM_TIME_FORMATS = ("%d-%b-%Y %H:%M:%S", "%d-%b-%Y")


@dataclass
class Record:
    """A registration belonging to one event."""
    id: str
    event_id: str
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    redeem_id: Optional[str] = None
    status: str = REGISTERED
    is_group: bool = False
    version: int = 0
    updated_at: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def checked_in(self) -> bool:
        return self.status == CHECKED_IN

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Record":
        """Rebuild a stored Record, normalizing legacy raw upstream entries."""
        if "raw" in data and "event_id" in data and "id" in data:
            return cls(
                id=str(data["id"]),
                event_id=str(data["event_id"]),
                full_name=data.get("full_name"),
                email=data.get("email"),
                phone=data.get("phone"),
                company=data.get("company"),
                redeem_id=data.get("redeem_id"),
                status=normalize_check_in_status(data.get("status")),
                is_group=normalize_boolean(data.get("is_group")),
                version=int(data.get("version") or 0),
                updated_at=data.get("updated_at"),
                raw=dict(data.get("raw") or {}),
            )
        return normalize_record(data)


def normalize_check_in_status(value: Any) -> str:
    """Map upstream check-in encodings ("Checked In", True, "true") to the fixed vocabulary."""
    if isinstance(value, bool):
        return CHECKED_IN if value else REGISTERED
    if value is None:
        return REGISTERED

    text = str(value).strip().lower().replace("-", "_").replace(" ", "_")
    if text in _CHECKED_IN_VALUES:
        return CHECKED_IN
    return REGISTERED


def normalize_status_filter(value: Any) -> Optional[str]:
    """Normalize a check-in filter; None means no filtering."""
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip().lower().replace(" ", "_")
        if text in ("", "all"):
            return None
        if text == "not_yet":
            return REGISTERED
    return normalize_check_in_status(value)


def normalize_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY_STRINGS
    if isinstance(value, (int, float)):
        return bool(value)
    return False


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 or upstream-formatted timestamps into aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    else:
        text = str(value).strip()
        parsed = None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            for fmt in _UPSTREAM_TIME_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
        if parsed is None:
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def lookup_field(payload: Mapping[str, Any], aliases: Iterable[str]) -> Any:
    lowered = {str(key).lower(): value for key, value in payload.items()}
    for alias in aliases:
        value = lowered.get(alias.lower())
        if value is not None and value != "":
            return value
    return None


def extract_reference_id(value: Any) -> Optional[str]:
    """Lookup fields arrive as {"ID": "...", "display_value": "..."} or as a bare ID."""
    if isinstance(value, Mapping):
        value = lookup_field(value, ("ID", "id"))
    if value is None or value == "":
        return None
    return str(value)


def record_version(payload: Mapping[str, Any]) -> int:
    """Version in epoch milliseconds from the upstream last-modified time, 0 when absent."""
    for alias in _TIMESTAMP_ALIASES:
        parsed = parse_timestamp(lookup_field(payload, (alias,)))
        if parsed is not None:
            return int(parsed.timestamp() * 1000)
    return 0


def normalize_record(
    payload: Mapping[str, Any],
    record_id: Optional[str] = None,
    event_id: Optional[str] = None
) -> Record:
    """
    Map an upstream payload with arbitrary field spellings onto a Record.

    Args:
        payload: Upstream record as received
        record_id: ID to use when the payload does not carry one
        event_id: Event to use when the payload does not reference one

    Raises:
        RecordNormalizationError: if no record ID or event ID can be resolved
    """
    if not isinstance(payload, Mapping):
        raise RecordNormalizationError(f"Record payload must be an object, got {type(payload).__name__}")

    resolved_id = extract_reference_id(lookup_field(payload, FIELD_ALIASES["id"])) or (
        str(record_id) if record_id else None
    )
    if not resolved_id:
        raise RecordNormalizationError("Record payload has no ID")

    resolved_event = extract_reference_id(lookup_field(payload, FIELD_ALIASES["event_id"])) or (
        str(event_id) if event_id else None
    )
    if not resolved_event:
        raise RecordNormalizationError(f"Record {resolved_id} has no event reference")

    updated_at = lookup_field(payload, _TIMESTAMP_ALIASES)

    return Record(
        id=resolved_id,
        event_id=resolved_event,
        full_name=lookup_field(payload, FIELD_ALIASES["full_name"]),
        email=lookup_field(payload, FIELD_ALIASES["email"]),
        phone=lookup_field(payload, FIELD_ALIASES["phone"]),
        company=lookup_field(payload, FIELD_ALIASES["company"]),
        redeem_id=lookup_field(payload, FIELD_ALIASES["redeem_id"]),
        status=normalize_check_in_status(lookup_field(payload, FIELD_ALIASES["status"])),
        is_group=normalize_boolean(lookup_field(payload, FIELD_ALIASES["is_group"])),
        version=record_version(payload),
        updated_at=str(updated_at) if updated_at is not None else None,
        raw=dict(payload),
    )
