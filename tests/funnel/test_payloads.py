"""Raw event parsing tests.

Tests for:
- unwrap / parse_datetime helpers
- booking-system webhook envelopes (client and record resources)
- records-log flat entries
- messaging-platform pushes
"""
import json
from datetime import datetime

import pytest

from funnel.errors import ParseError
from funnel.events import (
    KIND_BOOKING, KIND_BOOKING_DELETED, KIND_IDENTITY, SOURCE_MESSAGING, SOURCE_BOOKING_SYSTEM,
)
from funnel.payloads import (
    unwrap, parse_datetime, split_full_name, parse_webhook_entry, parse_records_entry,
)


def record_envelope(**data_overrides):
    data = {
        "datetime": "2024-05-15T11:00:00+03:00",
        "services": [{"title": "Консультація", "cost": 0}],
        "staff": {"id": 7, "name": "Olena"},
        "client": {"id": 100, "name": "Anna Smith",
                   "custom_fields": [{"code": "instagram", "value": "@Anna.Hair"}]},
        "attendance": 0,
    }
    data.update(data_overrides)
    return {
        "receivedAt": "2024-05-10T09:00:00Z",
        "body": {"resource": "record", "status": "create", "resource_id": 555, "data": data},
    }


class TestHelpers:
    """Tests for the low-level parsing helpers."""

    def test_unwrap_nested_value(self):
        inner = json.dumps({"receivedAt": "2024-05-10T09:00:00Z"})
        wrapped = json.dumps({"value": inner})
        assert unwrap(wrapped) == {"receivedAt": "2024-05-10T09:00:00Z"}

    @pytest.mark.parametrize("raw", ["{not json", "[1, 2]", "42"])
    def test_unwrap_rejects_garbage(self, raw):
        with pytest.raises(ParseError):
            unwrap(raw)

    def test_parse_datetime_to_naive_utc(self):
        assert parse_datetime("2024-05-15T11:00:00+03:00") == datetime(2024, 5, 15, 8, 0)
        assert parse_datetime("2024-05-15T11:00:00Z") == datetime(2024, 5, 15, 11, 0)
        assert parse_datetime("2024-05-15 11:00:00") == datetime(2024, 5, 15, 11, 0)
        assert parse_datetime(None) is None

        with pytest.raises(ParseError):
            parse_datetime("tomorrow")

    def test_split_full_name(self):
        assert split_full_name("Anna Maria Smith") == ("Anna", "Maria Smith")
        assert split_full_name("Anna") == ("Anna", None)
        assert split_full_name("{{full_name}}") == (None, None)


class TestWebhookEnvelope:
    """Tests for booking-system webhook envelopes."""

    def test_record_event(self):
        event = parse_webhook_entry(json.dumps(record_envelope()))

        assert event.kind == KIND_BOOKING
        assert event.source == SOURCE_BOOKING_SYSTEM
        assert event.received_at == datetime(2024, 5, 10, 9, 0)
        assert event.appointment_at == datetime(2024, 5, 15, 8, 0)
        assert event.effective_at == event.appointment_at
        assert event.services == [{"title": "Консультація", "cost": 0}]
        assert event.attendance_code == 0
        assert event.staff_id == 7
        assert event.staff_name == "Olena"

        identity = event.identity
        assert identity.external_booking_id == 100
        assert identity.handle == "anna.hair"
        assert (identity.given_name, identity.family_name) == ("Anna", "Smith")

    def test_visit_attendance_fallback(self):
        entry = record_envelope(attendance=None, visit_attendance=1)
        assert parse_webhook_entry(entry).attendance_code == 1

    def test_client_event_with_dict_custom_fields(self):
        entry = {
            "receivedAt": "2024-05-10T09:00:00Z",
            "body": {
                "resource": "client", "status": "update", "resource_id": "200",
                "data": {"name": "Iryna", "custom_fields": {"instagram-username": "iryna_k"}},
            },
        }
        event = parse_webhook_entry(entry)
        assert event.kind == KIND_IDENTITY
        assert event.effective_at == event.received_at
        assert event.identity.external_booking_id == 200
        assert event.identity.handle == "iryna_k"

    def test_declined_handle(self):
        entry = record_envelope(client={"id": 100, "custom_fields": [{"title": "Instagram", "value": "немає"}]})
        identity = parse_webhook_entry(entry).identity
        assert identity.handle is None
        assert identity.handle_declined is True

    @pytest.mark.parametrize("resource, status", [
        ("client", "delete"),
        ("goods_transaction", "create"),
    ])
    def test_ignored_events(self, resource, status):
        entry = record_envelope()
        entry["body"]["resource"] = resource
        entry["body"]["status"] = status
        assert parse_webhook_entry(entry) is None

    def test_record_delete(self):
        entry = record_envelope()
        entry["body"]["status"] = "delete"

        event = parse_webhook_entry(entry)
        assert event.kind == KIND_BOOKING_DELETED
        assert event.appointment_at == datetime(2024, 5, 15, 8, 0)
        assert event.effective_at == event.received_at
        assert event.identity.external_booking_id == 100
        assert event.services == []

    @pytest.mark.parametrize("overrides", [
        {"staff": "Olena"},
        {"client": "Anna Smith"},
        {"services": "Консультація"},
        {"datetime": 10 ** 20},
    ])
    def test_malformed_record_fields(self, overrides):
        with pytest.raises(ParseError):
            parse_webhook_entry(record_envelope(**overrides))

    def test_malformed_data(self):
        entry = record_envelope()
        entry["body"]["data"] = "oops"
        with pytest.raises(ParseError):
            parse_webhook_entry(entry)

    def test_missing_received_at(self):
        entry = record_envelope()
        del entry["receivedAt"]
        with pytest.raises(ParseError):
            parse_webhook_entry(entry)


class TestRecordsEntry:
    """Tests for flat records-log entries."""

    def test_flat_entry(self):
        entry = {
            "receivedAt": "2024-05-10T09:00:00Z",
            "recordId": 555,
            "clientId": 100,
            "clientName": "Anna Smith",
            "staffId": 7,
            "staffName": "Olena",
            "serviceName": "Нарощування волосся",
            "datetime": "2024-05-15T08:00:00Z",
            "attendance": 1,
        }
        event = parse_records_entry(json.dumps(entry))

        assert event.kind == KIND_BOOKING
        assert event.identity.external_booking_id == 100
        assert event.identity.given_name == "Anna"
        assert event.services == [{"title": "Нарощування волосся", "cost": None}]
        assert event.staff_name == "Olena"
        assert event.attendance_code == 1

    @pytest.mark.parametrize("entry", [
        {"receivedAt": "2024-05-10T09:00:00Z", "data": "oops"},
        {"receivedAt": "2024-05-10T09:00:00Z", "data": {"client": "Anna"}},
        {"receivedAt": "2024-05-10T09:00:00Z", "data": {"staff": ["Olena"]}},
    ])
    def test_malformed_flat_entry(self, entry):
        with pytest.raises(ParseError):
            parse_records_entry(entry)

    def test_envelope_passes_through(self):
        event = parse_records_entry(record_envelope())
        assert event.identity.external_booking_id == 100


class TestMessaging:
    """Tests for messaging-platform pushes."""

    def test_flat_push(self):
        entry = {
            "receivedAt": "2024-05-10T09:00:00Z",
            "ig_username": "@Anna.Hair",
            "first_name": "Anna",
            "last_name": "Smith",
            "last_input_text": "Скільки коштує нарощування?",
        }
        event = parse_webhook_entry(entry)

        assert event.source == SOURCE_MESSAGING
        assert event.kind == KIND_IDENTITY
        assert event.identity.handle == "anna.hair"
        assert event.identity.external_booking_id is None
        assert event.identity.family_name == "Smith"
        assert event.message_text == "Скільки коштує нарощування?"

    def test_raw_body_push(self):
        body = {"subscriber": {"username": "iryna_k"}, "full_name": "{{full_name}}"}
        entry = {"receivedAt": "2024-05-10T09:00:00Z", "rawBody": json.dumps(body)}
        event = parse_webhook_entry(entry)

        assert event.identity.handle == "iryna_k"
        assert event.identity.given_name is None
        assert event.message_text is None
