"""
Pydantic schemas for the calls API.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from callbridge.calls.models import (
    Call,
    CallDirection,
    CallEvent,
    CallStatus,
    EventOutcome,
    EventSource,
)


class OutboundCallRequest(BaseModel):
    """Schema for placing an agent-initiated call."""

    contact_ref: str = Field(..., min_length=1, max_length=100, description="CRM contact reference")
    destination: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Customer address in E.164 format (channel prefix optional)",
    )
    agent_identity: str = Field(..., min_length=1, max_length=100)
    notes: str | None = Field(default=None, max_length=2000)


class CallResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    external_call_id: str | None
    contact_ref: str | None
    permission_id: UUID | None
    direction: CallDirection
    status: CallStatus
    from_address: str
    to_address: str
    start_time: datetime
    answered_at: datetime | None
    end_time: datetime | None
    duration_seconds: int | None
    recording_url: str | None
    notes: str | None
    conference_name: str | None
    agent_identity: str | None = None
    # Attribute name first: ``Call.metadata`` is the SQLAlchemy MetaData.
    call_metadata: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("call_metadata", "metadata"),
        serialization_alias="metadata",
    )

    @classmethod
    def from_call(cls, call: Call) -> "CallResponse":
        response = cls.model_validate(call)
        return response.model_copy(update={"agent_identity": call.get_meta("agent_identity")})


class CallEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    kind: str
    source: EventSource
    outcome: EventOutcome
    status: str | None
    external_event_id: str | None
    external_ref: str | None
    message: str | None
    data: dict[str, Any]
    occurred_at: datetime | None
    recorded_at: datetime


class CallDetailResponse(BaseModel):
    call: CallResponse
    events: list[CallEventResponse]

    @classmethod
    def build(cls, call: Call, events: list[CallEvent]) -> "CallDetailResponse":
        return cls(
            call=CallResponse.from_call(call),
            events=[CallEventResponse.model_validate(e) for e in events],
        )


class CallHistoryResponse(BaseModel):
    """Paginated call history for a contact, newest first."""

    calls: list[CallResponse]
    total: int
    limit: int
    offset: int
    has_more: bool
