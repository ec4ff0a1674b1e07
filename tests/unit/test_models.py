"""Tests for record normalization."""

import pytest

from registration_sync.exceptions import RecordNormalizationError
from registration_sync.models import (
    CHECKED_IN,
    REGISTERED,
    Record,
    normalize_boolean,
    normalize_check_in_status,
    normalize_record,
    normalize_status_filter,
    parse_timestamp,
    record_version,
)


class TestCheckInStatus:

    @pytest.mark.parametrize("value", [True, "true", "TRUE", "yes", "1", "checked", "Checked In", "checked_in", "checked-in"])
    def test_checked_in_encodings(self, value):
        assert normalize_check_in_status(value) == CHECKED_IN

    @pytest.mark.parametrize("value", [False, None, "", "not_yet", "Not Checked In", "registered", 0])
    def test_everything_else_is_registered(self, value):
        assert normalize_check_in_status(value) == REGISTERED

    def test_status_filter(self):
        assert normalize_status_filter(None) is None
        assert normalize_status_filter("") is None
        assert normalize_status_filter("all") is None
        assert normalize_status_filter("not_yet") == REGISTERED
        assert normalize_status_filter("not yet") == REGISTERED
        assert normalize_status_filter("Checked In") == CHECKED_IN
        assert normalize_status_filter(True) == CHECKED_IN

    def test_normalize_boolean(self):
        assert normalize_boolean(True) is True
        assert normalize_boolean("Yes") is True
        assert normalize_boolean("1") is True
        assert normalize_boolean("false") is False
        assert normalize_boolean(2) is True
        assert normalize_boolean(0) is False
        assert normalize_boolean(None) is False


class TestNormalizeRecord:

    def test_upstream_spelling(self, sample_registration):
        record = normalize_record(sample_registration)

        assert record.id == "R1"
        assert record.event_id == "E1"
        assert record.full_name == "Visitor R1"
        assert record.status == REGISTERED
        assert record.is_group is False
        assert record.version > 0
        assert record.raw == sample_registration

    def test_mixed_casing_and_aliases(self):
        record = normalize_record({
            "id": 42,
            "eventId": "E9",
            "check_in_status": "Checked In",
            "IS_GROUP": "yes",
        })

        assert record.id == "42"
        assert record.event_id == "E9"
        assert record.checked_in
        assert record.is_group is True

    def test_fallback_ids(self):
        record = normalize_record({"Full_Name": "Ann"}, record_id="R5", event_id="E5")
        assert (record.id, record.event_id) == ("R5", "E5")

    def test_missing_id_raises(self):
        with pytest.raises(RecordNormalizationError):
            normalize_record({"Event_Info": "E1"})

    def test_missing_event_raises(self):
        with pytest.raises(RecordNormalizationError):
            normalize_record({"ID": "R1"})

    def test_non_mapping_raises(self):
        with pytest.raises(RecordNormalizationError):
            normalize_record(["R1"])

    def test_version_is_zero_without_timestamp(self):
        payload = {"ID": "R1", "Event_Info": "E1"}
        assert record_version(payload) == 0
        assert normalize_record(payload) == normalize_record(payload)

    def test_roundtrip_through_dict(self, sample_registration):
        record = normalize_record(sample_registration)
        assert Record.from_dict(record.to_dict()) == record

    def test_from_dict_accepts_raw_upstream_entry(self, sample_registration):
        assert Record.from_dict(sample_registration).id == "R1"


class TestParseTimestamp:

    def test_iso(self):
        parsed = parse_timestamp("2024-03-15T10:20:30Z")
        assert parsed.tzinfo is not None
        assert parsed.hour == 10

    def test_upstream_format(self):
        parsed = parse_timestamp("15-Mar-2024 10:20:30")
        assert (parsed.year, parsed.month, parsed.day) == (2024, 3, 15)

    def test_garbage(self):
        assert parse_timestamp("not a date") is None
        assert parse_timestamp(None) is None
