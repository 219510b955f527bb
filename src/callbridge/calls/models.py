"""
SQLAlchemy models for calls and their append-only event log.
"""

import time
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, ForeignKey, Index, Integer, String, Text, Uuid, event
from sqlalchemy.orm import Mapped, mapped_column, validates

from callbridge.shared.database import Base
from callbridge.shared.types import JSONType, UTCDateTime, utcnow, value_enum


class CallDirection(str, Enum):
    """Who started the call."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


class CallStatus(str, Enum):
    """Call lifecycle status, using the provider's vocabulary."""

    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BUSY = "busy"
    NO_ANSWER = "no-answer"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        CallStatus.COMPLETED,
        CallStatus.FAILED,
        CallStatus.BUSY,
        CallStatus.NO_ANSWER,
        CallStatus.CANCELED,
    }
)


class BridgeAction(str, Enum):
    """Lifecycle of the two-party bridge (conference) a call runs in."""

    START = "start"
    JOIN = "join"
    LEAVE = "leave"
    END = "end"


class EventSource(str, Enum):
    PROVIDER = "provider"
    MESSAGING = "messaging"
    CRM = "crm"
    SYSTEM = "system"


class EventOutcome(str, Enum):
    """What happened to an event when it was processed."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    DROPPED = "dropped"
    FAILED = "failed"


CALL_METADATA_KEYS = frozenset(
    {
        "agent_identity",
        "conference_sid",
        "agent_joined",
        "customer_joined",
        "error_code",
        "error_message",
        "crm_sync_status",
    }
)


class Call(Base):
    """One voice call between a customer and an agent."""

    __tablename__ = "calls"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    external_call_id: Mapped[str | None] = mapped_column(
        String(64),
        unique=True,
        nullable=True,
        index=True,
    )
    contact_ref: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    permission_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("call_permissions.id"),
        nullable=True,
        index=True,
    )
    direction: Mapped[CallDirection] = mapped_column(
        value_enum(CallDirection, "call_direction"),
        nullable=False,
    )
    status: Mapped[CallStatus] = mapped_column(
        value_enum(CallStatus, "call_status"),
        nullable=False,
        default=CallStatus.INITIATED,
        index=True,
    )
    from_address: Mapped[str] = mapped_column(String(64), nullable=False)
    to_address: Mapped[str] = mapped_column(String(64), nullable=False)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    answered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recording_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    conference_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    call_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    @validates("external_call_id")
    def _validate_external_call_id(self, key: str, value: str | None) -> str | None:
        current = self.external_call_id
        if current is not None and value != current:
            raise ValueError(f"external_call_id is immutable once set ({current})")
        return value

    @validates("duration_seconds")
    def _validate_duration(self, key: str, value: int | None) -> int | None:
        if value is not None and value < 0:
            raise ValueError("duration_seconds must be non-negative")
        return value

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def get_meta(self, key: str, default: Any = None) -> Any:
        return (self.call_metadata or {}).get(key, default)

    def set_meta(self, key: str, value: Any) -> None:
        if key not in CALL_METADATA_KEYS:
            raise ValueError(f"Unknown call metadata key: {key}")
        metadata = dict(self.call_metadata or {})
        metadata[key] = value
        # Reassign so the JSON column is flagged dirty.
        self.call_metadata = metadata

    def __repr__(self) -> str:
        return (
            f"<Call(id={self.id}, external_call_id={self.external_call_id}, "
            f"direction={self.direction}, status={self.status})>"
        )


class CallEvent(Base):
    """Append-only record of every event seen for a call or permission."""

    __tablename__ = "call_events"
    __table_args__ = (
        Index("ix_call_events_call_recorded", "call_id", "recorded_at"),
        Index("ix_call_events_dedupe", "call_id", "external_event_id"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    # Tie-breaker for rows recorded within the same timestamp.
    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, default=time.time_ns)
    call_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("calls.id"),
        nullable=True,
    )
    permission_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("call_permissions.id"),
        nullable=True,
        index=True,
    )
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    source: Mapped[EventSource] = mapped_column(
        value_enum(EventSource, "event_source"),
        nullable=False,
    )
    external_event_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    external_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    outcome: Mapped[EventOutcome] = mapped_column(
        value_enum(EventOutcome, "event_outcome"),
        nullable=False,
        default=EventOutcome.APPLIED,
    )
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    occurred_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return (
            f"<CallEvent(kind={self.kind}, call_id={self.call_id}, "
            f"status={self.status}, outcome={self.outcome})>"
        )


@event.listens_for(CallEvent, "before_update")
def _reject_event_update(mapper: Any, connection: Any, target: CallEvent) -> None:
    raise ValueError("call_events rows are append-only")


@event.listens_for(CallEvent, "before_delete")
def _reject_event_delete(mapper: Any, connection: Any, target: CallEvent) -> None:
    raise ValueError("call_events rows are append-only")
