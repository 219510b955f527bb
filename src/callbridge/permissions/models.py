"""
SQLAlchemy models for call permissions (consent grants).
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import Index, Integer, String, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from callbridge.shared.database import Base
from callbridge.shared.types import JSONType, UTCDateTime, utcnow, value_enum


class PermissionStatus(str, Enum):
    """Consent grant lifecycle state."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    FAILED = "failed"


class ConsentDecision(str, Enum):
    """Customer reply to a consent prompt."""

    ACCEPTED = "accepted"
    REJECTED = "rejected"


class PermissionOutcome(str, Enum):
    """Outbound call outcomes that feed back into the ledger."""

    ANSWERED = "answered"
    NO_ANSWER = "no_answer"


PERMISSION_METADATA_KEYS = frozenset({"failure_reason", "superseded_by", "expired_reason"})


class CallPermission(Base):
    """Consent for a contact to be called on one destination address."""

    __tablename__ = "call_permissions"
    __table_args__ = (
        Index("ix_call_permissions_pair", "contact_ref", "destination"),
        Index(
            "uq_call_permissions_one_approved",
            "contact_ref",
            "destination",
            unique=True,
            postgresql_where=text("status = 'approved'"),
            sqlite_where=text("status = 'approved'"),
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    contact_ref: Mapped[str] = mapped_column(String(100), nullable=False)
    destination: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status: Mapped[PermissionStatus] = mapped_column(
        value_enum(PermissionStatus, "permission_status"),
        nullable=False,
        default=PermissionStatus.PENDING,
        index=True,
    )
    requested_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    responded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    calls_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    consecutive_missed_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    message_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    permission_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def set_meta(self, key: str, value: Any) -> None:
        if key not in PERMISSION_METADATA_KEYS:
            raise ValueError(f"Unknown permission metadata key: {key}")
        metadata = dict(self.permission_metadata or {})
        metadata[key] = value
        self.permission_metadata = metadata

    def __repr__(self) -> str:
        return (
            f"<CallPermission(id={self.id}, destination={self.destination}, "
            f"status={self.status}, calls_used={self.calls_used}/{self.max_calls})>"
        )
