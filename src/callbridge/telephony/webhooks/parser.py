"""
Explicit mapping from Twilio webhook payloads to correlator events.

Anything the mapping does not cover raises ``WebhookParseError``; the router
records such deliveries as dropped and still acknowledges them.
"""

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any
from uuid import UUID

from callbridge.calls.models import BridgeAction, CallStatus
from callbridge.correlation.events import (
    BridgeEvent,
    CallStatusEvent,
    ChannelMessageEvent,
    ConsentReplyEvent,
    InboundCallEvent,
    RecordingEvent,
)
from callbridge.permissions.models import ConsentDecision
from callbridge.shared.exceptions import ValidationError

IDEMPOTENCY_HEADER = "I-Twilio-Idempotency-Token"

# Body of the quick-reply sent back when the customer taps a button on the
# call permission template.
CONSENT_REPLY_BODY = "VOICE_CALL_REQUEST"
CONSENT_ACCEPTED_PAYLOAD = "ACCEPTED"

TWILIO_STATUS_MAP: dict[str, CallStatus] = {
    "queued": CallStatus.INITIATED,
    "initiated": CallStatus.INITIATED,
    "ringing": CallStatus.RINGING,
    "in-progress": CallStatus.IN_PROGRESS,
    "answered": CallStatus.IN_PROGRESS,
    "completed": CallStatus.COMPLETED,
    "busy": CallStatus.BUSY,
    "no-answer": CallStatus.NO_ANSWER,
    "failed": CallStatus.FAILED,
    "canceled": CallStatus.CANCELED,
}

CONFERENCE_EVENT_MAP: dict[str, BridgeAction] = {
    "conference-start": BridgeAction.START,
    "participant-join": BridgeAction.JOIN,
    "participant-leave": BridgeAction.LEAVE,
    "conference-end": BridgeAction.END,
}


class WebhookParseError(ValidationError):
    """Webhook payload does not map to any event."""


def _require(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not value:
        raise WebhookParseError(f"Missing {key} in webhook payload", {"field": key})
    return str(value)


def _optional_int(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _optional_uuid(value: Any) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _timestamp(payload: dict[str, Any]) -> datetime:
    raw = payload.get("Timestamp")
    if raw:
        try:
            return parsedate_to_datetime(str(raw))
        except (TypeError, ValueError):
            pass
        try:
            return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        except ValueError:
            pass
    return datetime.now(timezone.utc)


def map_call_status(raw: str | None) -> CallStatus:
    status = TWILIO_STATUS_MAP.get((raw or "").strip().lower())
    if status is None:
        raise WebhookParseError(f"Unmapped call status: {raw!r}", {"CallStatus": raw})
    return status


def parse_inbound_call(payload: dict[str, Any], idempotency_token: str | None = None) -> InboundCallEvent:
    call_sid = _require(payload, "CallSid")
    return InboundCallEvent(
        event_id=idempotency_token or f"inbound:{call_sid}",
        external_call_id=call_sid,
        from_address=_require(payload, "From"),
        to_address=str(payload.get("To") or ""),
        display_name=payload.get("ProfileName") or payload.get("CallerName") or None,
        occurred_at=_timestamp(payload),
        raw_payload=payload,
    )


def parse_call_status(
    payload: dict[str, Any],
    call_id: str | UUID | None = None,
    idempotency_token: str | None = None,
) -> CallStatusEvent:
    call_sid = _require(payload, "CallSid")
    raw_status = _require(payload, "CallStatus")
    status = map_call_status(raw_status)

    error_code = payload.get("ErrorCode") or payload.get("SipResponseCode")
    return CallStatusEvent(
        event_id=idempotency_token or f"status:{call_sid}:{raw_status.lower()}",
        external_call_id=call_sid,
        status=status,
        call_id=_optional_uuid(call_id or payload.get("call_id")),
        duration_seconds=_optional_int(payload.get("CallDuration")),
        recording_url=payload.get("RecordingUrl") or None,
        error_code=str(error_code) if error_code else None,
        error_message=payload.get("ErrorMessage") or None,
        occurred_at=_timestamp(payload),
        raw_payload=payload,
    )


def parse_conference_event(
    payload: dict[str, Any],
    call_id: str | UUID | None,
    idempotency_token: str | None = None,
) -> BridgeEvent:
    raw_event = _require(payload, "StatusCallbackEvent")
    action = CONFERENCE_EVENT_MAP.get(raw_event)
    if action is None:
        raise WebhookParseError(
            f"Unmapped conference event: {raw_event!r}",
            {"StatusCallbackEvent": raw_event},
        )

    conference_sid = payload.get("ConferenceSid") or None
    participant = payload.get("CallSid") or None
    sequence = payload.get("SequenceNumber") or ""
    return BridgeEvent(
        event_id=idempotency_token
        or f"conference:{conference_sid}:{raw_event}:{participant or ''}:{sequence}",
        call_id=_optional_uuid(call_id),
        action=action,
        conference_sid=conference_sid,
        participant_ref=participant,
        occurred_at=_timestamp(payload),
        raw_payload=payload,
    )


def parse_recording(
    payload: dict[str, Any],
    call_id: str | UUID | None,
    idempotency_token: str | None = None,
) -> RecordingEvent:
    recording_url = _require(payload, "RecordingUrl")
    recording_sid = payload.get("RecordingSid") or None
    recording_status = str(payload.get("RecordingStatus") or "completed").lower()
    return RecordingEvent(
        event_id=idempotency_token or f"recording:{recording_sid or recording_url}:{recording_status}",
        call_id=_optional_uuid(call_id),
        external_call_id=payload.get("CallSid") or None,
        recording_sid=recording_sid,
        recording_url=recording_url,
        recording_status=recording_status,
        duration_seconds=_optional_int(payload.get("RecordingDuration")),
        occurred_at=_timestamp(payload),
        raw_payload=payload,
    )


def parse_channel_message(
    payload: dict[str, Any],
    idempotency_token: str | None = None,
) -> ConsentReplyEvent | ChannelMessageEvent:
    """A consent button reply, or any other inbound message."""
    message_sid = _require(payload, "MessageSid")
    from_address = _require(payload, "From")
    body = str(payload.get("Body") or "")
    button_payload = payload.get("ButtonPayload")
    event_id = idempotency_token or message_sid

    if body == CONSENT_REPLY_BODY and button_payload:
        decision = (
            ConsentDecision.ACCEPTED
            if button_payload == CONSENT_ACCEPTED_PAYLOAD
            else ConsentDecision.REJECTED
        )
        return ConsentReplyEvent(
            event_id=event_id,
            from_address=from_address,
            decision=decision,
            message_id=message_sid,
            replied_to_message_id=payload.get("OriginalRepliedMessageSid") or None,
            occurred_at=_timestamp(payload),
            raw_payload=payload,
        )

    return ChannelMessageEvent(
        event_id=event_id,
        from_address=from_address,
        body=body,
        message_id=message_sid,
        occurred_at=_timestamp(payload),
        raw_payload=payload,
    )


__all__ = [
    "IDEMPOTENCY_HEADER",
    "WebhookParseError",
    "map_call_status",
    "parse_call_status",
    "parse_channel_message",
    "parse_conference_event",
    "parse_inbound_call",
    "parse_recording",
]
