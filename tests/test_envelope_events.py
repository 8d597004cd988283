"""Tests for DocuSign Connect payload decoding."""

from datetime import datetime, timezone

import pytest

from coliving_platform.domain.envelope_events import (
    EnvelopeCompleted,
    EnvelopeDeclined,
    EnvelopeDelivered,
    EnvelopeSent,
    EnvelopeVoided,
    MalformedEnvelopeEvent,
    UnknownEnvelopeEvent,
    parse_envelope_event,
    parse_provider_timestamp,
)


def _payload(status, envelope_id="env-123", **summary_fields):
    summary = {"status": status, **summary_fields}
    return {
        "event": f"envelope-{status}",
        "generatedDateTime": "2026-10-16T10:00:00.000Z",
        "data": {"envelopeId": envelope_id, "envelopeSummary": summary},
    }


class TestParseEnvelopeEvent:

    @pytest.mark.parametrize("status,event_type", [
        ("sent", EnvelopeSent),
        ("delivered", EnvelopeDelivered),
        ("completed", EnvelopeCompleted),
        ("declined", EnvelopeDeclined),
        ("voided", EnvelopeVoided),
    ])
    def test_status_mapping(self, status, event_type):
        event = parse_envelope_event(_payload(status))
        assert isinstance(event, event_type)
        assert event.envelope_id == "env-123"

    def test_status_is_case_insensitive(self):
        assert isinstance(parse_envelope_event(_payload("Completed")), EnvelopeCompleted)

    def test_unknown_status(self):
        event = parse_envelope_event(_payload("correct"))
        assert isinstance(event, UnknownEnvelopeEvent)
        assert event.raw_status == "correct"

    def test_status_from_event_name(self):
        payload = {"event": "envelope-delivered", "data": {"envelopeId": "env-9"}}
        event = parse_envelope_event(payload)
        assert isinstance(event, EnvelopeDelivered)
        assert event.envelope_id == "env-9"

    def test_envelope_id_from_summary(self):
        payload = {"data": {"envelopeSummary": {"envelopeId": "env-7", "status": "sent"}}}
        assert parse_envelope_event(payload).envelope_id == "env-7"

    def test_milestone_timestamp_preferred(self):
        event = parse_envelope_event(_payload("completed", completedDateTime="2026-10-15T08:30:00Z"))
        assert event.occurred_at == datetime(2026, 10, 15, 8, 30, tzinfo=timezone.utc)

    def test_falls_back_to_generated_time(self):
        event = parse_envelope_event(_payload("sent"))
        assert event.occurred_at == datetime(2026, 10, 16, 10, 0, tzinfo=timezone.utc)

    def test_decline_reason(self):
        event = parse_envelope_event(_payload("declined", declinedReason="Found another place"))
        assert event.reason == "Found another place"

    @pytest.mark.parametrize("payload", [
        {},
        {"data": {"envelopeSummary": {"status": "sent"}}},
        {"data": "not-an-object"},
        ["not", "a", "dict"],
    ])
    def test_malformed(self, payload):
        with pytest.raises(MalformedEnvelopeEvent):
            parse_envelope_event(payload)


class TestParseProviderTimestamp:

    def test_offset_converted_to_utc(self):
        assert parse_provider_timestamp("2026-10-16T12:00:00+02:00") == datetime(
            2026, 10, 16, 10, 0, tzinfo=timezone.utc
        )

    def test_naive_assumed_utc(self):
        assert parse_provider_timestamp("2026-10-16T12:00:00") == datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, "", "yesterday", 12345])
    def test_unparseable(self, value):
        assert parse_provider_timestamp(value) is None
