"""
Typed events fed to the correlator.

Webhook payloads are mapped onto these models by
``callbridge.telephony.webhooks.parser``; every event carries an ``event_id``
used as its idempotency key.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from callbridge.calls.models import BridgeAction, CallStatus
from callbridge.permissions.models import ConsentDecision


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BaseEvent(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    event_id: str
    occurred_at: datetime = Field(default_factory=_utcnow)
    raw_payload: dict[str, Any] = Field(default_factory=dict)


class InboundCallEvent(BaseEvent):
    """A customer is calling the business number."""

    external_call_id: str
    from_address: str
    to_address: str
    display_name: str | None = None


class CallStatusEvent(BaseEvent):
    """Provider status callback for one call leg."""

    external_call_id: str
    status: CallStatus
    call_id: UUID | None = None
    duration_seconds: int | None = None
    recording_url: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class BridgeEvent(BaseEvent):
    """Conference lifecycle callback."""

    call_id: UUID | None
    action: BridgeAction
    conference_sid: str | None = None
    participant_ref: str | None = None


class RecordingEvent(BaseEvent):
    call_id: UUID | None
    external_call_id: str | None = None
    recording_sid: str | None = None
    recording_url: str
    recording_status: str = "completed"
    duration_seconds: int | None = None


class ConsentReplyEvent(BaseEvent):
    """Customer pressed a consent button on the permission prompt."""

    from_address: str
    decision: ConsentDecision
    message_id: str | None = None
    replied_to_message_id: str | None = None


class ChannelMessageEvent(BaseEvent):
    """Any other inbound message on the channel."""

    from_address: str
    body: str = ""
    message_id: str | None = None


CorrelatedEvent = (
    InboundCallEvent
    | CallStatusEvent
    | BridgeEvent
    | RecordingEvent
    | ConsentReplyEvent
    | ChannelMessageEvent
)


__all__ = [
    "BridgeEvent",
    "CallStatusEvent",
    "ChannelMessageEvent",
    "ConsentReplyEvent",
    "CorrelatedEvent",
    "InboundCallEvent",
    "RecordingEvent",
]
