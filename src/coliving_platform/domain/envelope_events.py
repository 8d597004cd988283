"""Typed DocuSign Connect envelope events.

Connect posts JSON shaped like::

    {
      "event": "envelope-completed",
      "generatedDateTime": "2026-03-01T12:00:00.000Z",
      "data": {
        "envelopeId": "...",
        "envelopeSummary": {"status": "completed", "completedDateTime": "..."}
      }
    }

The payload is decoded exactly once, here, into one of the event classes
below. Everything downstream dispatches on the class.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Union

from coliving_platform.domain.enums import EnvelopeStatus


@dataclass(frozen=True)
class _EnvelopeEvent:
    envelope_id: str
    occurred_at: Optional[datetime]


@dataclass(frozen=True)
class EnvelopeSent(_EnvelopeEvent):
    pass


@dataclass(frozen=True)
class EnvelopeDelivered(_EnvelopeEvent):
    pass


@dataclass(frozen=True)
class EnvelopeCompleted(_EnvelopeEvent):
    documents_uri: Optional[str] = None


@dataclass(frozen=True)
class EnvelopeDeclined(_EnvelopeEvent):
    reason: Optional[str] = None


@dataclass(frozen=True)
class EnvelopeVoided(_EnvelopeEvent):
    reason: Optional[str] = None


@dataclass(frozen=True)
class UnknownEnvelopeEvent(_EnvelopeEvent):
    raw_status: str = ""


EnvelopeEvent = Union[
    EnvelopeSent,
    EnvelopeDelivered,
    EnvelopeCompleted,
    EnvelopeDeclined,
    EnvelopeVoided,
    UnknownEnvelopeEvent,
]


class MalformedEnvelopeEvent(ValueError):
    """Payload is not a Connect envelope event (no envelope id)."""


def parse_provider_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 provider timestamp into an aware UTC datetime."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _status_from_event_name(event_name: str) -> str:
    # "envelope-completed" -> "completed"
    if event_name.startswith("envelope-"):
        return event_name[len("envelope-"):]
    return ""


def parse_envelope_event(payload: dict) -> EnvelopeEvent:
    """Decode a Connect payload into a typed envelope event.

    Raises MalformedEnvelopeEvent when no envelope id can be found.
    """
    if not isinstance(payload, dict):
        raise MalformedEnvelopeEvent("payload is not an object")

    data = payload.get("data")
    if not isinstance(data, dict):
        data = {}
    summary = data.get("envelopeSummary")
    if not isinstance(summary, dict):
        summary = {}

    envelope_id = data.get("envelopeId") or summary.get("envelopeId") or payload.get("envelopeId")
    if not envelope_id:
        raise MalformedEnvelopeEvent("missing envelopeId")

    raw_status = summary.get("status") or payload.get("status") or ""
    if not raw_status:
        raw_status = _status_from_event_name(str(payload.get("event") or "").lower())
    status = str(raw_status).strip().lower()

    changed_at = parse_provider_timestamp(summary.get("statusChangedDateTime")) or parse_provider_timestamp(
        payload.get("generatedDateTime")
    )

    if status == EnvelopeStatus.SENT.value:
        return EnvelopeSent(envelope_id, parse_provider_timestamp(summary.get("sentDateTime")) or changed_at)
    if status == EnvelopeStatus.DELIVERED.value:
        return EnvelopeDelivered(
            envelope_id, parse_provider_timestamp(summary.get("deliveredDateTime")) or changed_at
        )
    if status == EnvelopeStatus.COMPLETED.value:
        return EnvelopeCompleted(
            envelope_id,
            parse_provider_timestamp(summary.get("completedDateTime")) or changed_at,
            documents_uri=summary.get("documentsUri"),
        )
    if status == EnvelopeStatus.DECLINED.value:
        return EnvelopeDeclined(
            envelope_id,
            parse_provider_timestamp(summary.get("declinedDateTime")) or changed_at,
            reason=summary.get("declinedReason"),
        )
    if status == EnvelopeStatus.VOIDED.value:
        return EnvelopeVoided(
            envelope_id,
            parse_provider_timestamp(summary.get("voidedDateTime")) or changed_at,
            reason=summary.get("voidedReason"),
        )
    return UnknownEnvelopeEvent(envelope_id, changed_at, raw_status=status)
