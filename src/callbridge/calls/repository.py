"""
Repository for call and call event database operations.
"""

from collections.abc import Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from callbridge.calls.models import (
    Call,
    CallDirection,
    CallEvent,
    CallStatus,
    EventOutcome,
    EventSource,
)
from callbridge.shared.types import utcnow


def parse_call_ref(call_ref: str | UUID) -> UUID | None:
    """Return the internal id if ``call_ref`` is a UUID, else None."""
    if isinstance(call_ref, UUID):
        return call_ref
    try:
        return UUID(str(call_ref))
    except ValueError:
        return None


class CallRepository:
    """Repository for call database operations."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: Async database session.
        """
        self._session = session

    async def get_by_id(self, call_id: UUID, for_update: bool = False) -> Call | None:
        """Get call by internal id.

        Args:
            call_id: Call UUID.
            for_update: Lock the row (PostgreSQL) for the rest of the transaction.

        Returns:
            Call if found, None otherwise.
        """
        stmt = select(Call).where(Call.id == call_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_external_id(
        self, external_call_id: str, for_update: bool = False
    ) -> Call | None:
        """Get call by provider call identifier (e.g., Twilio CallSid)."""
        stmt = select(Call).where(Call.external_call_id == external_call_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def resolve(self, call_ref: str | UUID, for_update: bool = False) -> Call | None:
        """Find a call by internal id or by provider call id."""
        call_id = parse_call_ref(call_ref)
        if call_id is not None:
            call = await self.get_by_id(call_id, for_update=for_update)
            if call is not None:
                return call
        return await self.get_by_external_id(str(call_ref), for_update=for_update)

    async def create(
        self,
        *,
        direction: CallDirection,
        status: CallStatus,
        from_address: str,
        to_address: str,
        contact_ref: str | None = None,
        external_call_id: str | None = None,
        permission_id: UUID | None = None,
        notes: str | None = None,
        conference_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Call:
        """Insert a new call and flush it so the id is available."""
        call = Call(
            direction=direction,
            status=status,
            from_address=from_address,
            to_address=to_address,
            contact_ref=contact_ref,
            external_call_id=external_call_id,
            permission_id=permission_id,
            notes=notes,
            conference_name=conference_name,
            call_metadata=dict(metadata or {}),
            start_time=utcnow(),
        )
        self._session.add(call)
        await self._session.flush()
        return call

    async def list_for_contact(
        self,
        contact_ref: str,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[Sequence[Call], int]:
        """Calls for a contact, newest first, plus the total count."""
        stmt = (
            select(Call)
            .where(Call.contact_ref == contact_ref)
            .order_by(Call.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        calls = result.scalars().all()

        count_stmt = select(func.count()).select_from(Call).where(Call.contact_ref == contact_ref)
        total = (await self._session.execute(count_stmt)).scalar_one()
        return calls, int(total)

    async def add_event(
        self,
        *,
        kind: str,
        source: EventSource,
        outcome: EventOutcome = EventOutcome.APPLIED,
        call_id: UUID | None = None,
        permission_id: UUID | None = None,
        external_event_id: str | None = None,
        external_ref: str | None = None,
        status: str | None = None,
        message: str | None = None,
        data: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> CallEvent:
        """Append a row to the call event log."""
        call_event = CallEvent(
            kind=kind,
            source=source,
            outcome=outcome,
            call_id=call_id,
            permission_id=permission_id,
            external_event_id=external_event_id,
            external_ref=external_ref,
            status=status,
            message=message,
            data=dict(data or {}),
            occurred_at=occurred_at,
            recorded_at=utcnow(),
        )
        self._session.add(call_event)
        await self._session.flush()
        return call_event

    async def has_applied_event(
        self,
        external_event_id: str,
        call_id: UUID | None = None,
        permission_id: UUID | None = None,
    ) -> bool:
        """Whether an event with this idempotency key was already applied."""
        stmt = select(CallEvent.id).where(
            CallEvent.external_event_id == external_event_id,
            CallEvent.outcome == EventOutcome.APPLIED,
        )
        if call_id is not None:
            stmt = stmt.where(CallEvent.call_id == call_id)
        if permission_id is not None:
            stmt = stmt.where(CallEvent.permission_id == permission_id)
        result = await self._session.execute(stmt.limit(1))
        return result.first() is not None

    async def list_events(self, call_id: UUID) -> Sequence[CallEvent]:
        """Events for a call in recording order."""
        stmt = (
            select(CallEvent)
            .where(CallEvent.call_id == call_id)
            .order_by(CallEvent.recorded_at, CallEvent.seq)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def count_events(self, **filters: Any) -> int:
        stmt = select(func.count()).select_from(CallEvent)
        for column, value in filters.items():
            stmt = stmt.where(getattr(CallEvent, column) == value)
        return int((await self._session.execute(stmt)).scalar_one())


__all__ = ["CallRepository", "parse_call_ref"]
