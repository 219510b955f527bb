"""
Repository for call permission database operations.
"""

from collections.abc import Sequence
from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from callbridge.permissions.models import CallPermission, PermissionStatus
from callbridge.shared.types import utcnow


class PermissionRepository:
    """Repository for call permission database operations."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: Async database session.
        """
        self._session = session

    async def get_by_id(
        self, permission_id: UUID, for_update: bool = False
    ) -> CallPermission | None:
        stmt = select(CallPermission).where(CallPermission.id == permission_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        *,
        contact_ref: str,
        destination: str,
        expires_at: datetime,
        max_calls: int,
        requested_at: datetime | None = None,
    ) -> CallPermission:
        """Insert a pending permission and flush it."""
        permission = CallPermission(
            contact_ref=contact_ref,
            destination=destination,
            status=PermissionStatus.PENDING,
            requested_at=requested_at or utcnow(),
            expires_at=expires_at,
            max_calls=max_calls,
            calls_used=0,
            consecutive_missed_calls=0,
            permission_metadata={},
        )
        self._session.add(permission)
        await self._session.flush()
        return permission

    async def count_requests_since(
        self, contact_ref: str, destination: str, since: datetime
    ) -> tuple[int, datetime | None]:
        """Requests for the pair since ``since``: count and oldest timestamp.

        Every request counts whatever its current status, ``failed`` included.
        """
        stmt = select(func.count(), func.min(CallPermission.requested_at)).where(
            CallPermission.contact_ref == contact_ref,
            CallPermission.destination == destination,
            CallPermission.requested_at >= since,
        )
        count, oldest = (await self._session.execute(stmt)).one()
        return int(count), oldest

    async def latest_pending_for_destination(
        self, destination: str, message_id: str | None = None
    ) -> CallPermission | None:
        """Most recent pending permission for a destination.

        When ``message_id`` is given and matches a pending prompt, that one wins.
        """
        if message_id:
            stmt = select(CallPermission).where(
                CallPermission.destination == destination,
                CallPermission.message_id == message_id,
                CallPermission.status == PermissionStatus.PENDING,
            )
            found = (await self._session.execute(stmt)).scalar_one_or_none()
            if found is not None:
                return found

        stmt = (
            select(CallPermission)
            .where(
                CallPermission.destination == destination,
                CallPermission.status == PermissionStatus.PENDING,
            )
            .order_by(CallPermission.requested_at.desc())
            .limit(1)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def list_approved(
        self, contact_ref: str, destination: str, for_update: bool = False
    ) -> Sequence[CallPermission]:
        stmt = select(CallPermission).where(
            CallPermission.contact_ref == contact_ref,
            CallPermission.destination == destination,
            CallPermission.status == PermissionStatus.APPROVED,
        )
        if for_update:
            stmt = stmt.with_for_update()
        return (await self._session.execute(stmt)).scalars().all()

    async def latest_for_pair(self, contact_ref: str, destination: str) -> CallPermission | None:
        stmt = (
            select(CallPermission)
            .where(
                CallPermission.contact_ref == contact_ref,
                CallPermission.destination == destination,
            )
            .order_by(CallPermission.requested_at.desc())
            .limit(1)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def find_placeable(
        self,
        contact_ref: str,
        destination: str,
        now: datetime,
        missed_call_threshold: int,
    ) -> CallPermission | None:
        stmt = (
            select(CallPermission)
            .where(
                CallPermission.contact_ref == contact_ref,
                CallPermission.destination == destination,
                CallPermission.status == PermissionStatus.APPROVED,
                CallPermission.expires_at > now,
                CallPermission.calls_used < CallPermission.max_calls,
                CallPermission.consecutive_missed_calls < missed_call_threshold,
            )
            .order_by(CallPermission.responded_at.desc())
            .limit(1)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def reserve_slot(
        self,
        permission_id: UUID,
        now: datetime,
        missed_call_threshold: int,
    ) -> int | None:
        """Atomically take one call slot.

        Returns the new ``calls_used`` or None when the permission is no longer
        placeable (concurrent reservations can never overshoot ``max_calls``).
        """
        stmt = (
            update(CallPermission)
            .where(
                CallPermission.id == permission_id,
                CallPermission.status == PermissionStatus.APPROVED,
                CallPermission.expires_at > now,
                CallPermission.calls_used < CallPermission.max_calls,
                CallPermission.consecutive_missed_calls < missed_call_threshold,
            )
            .values(calls_used=CallPermission.calls_used + 1, updated_at=now)
            .returning(CallPermission.calls_used)
            .execution_options(synchronize_session="fetch")
        )
        row = (await self._session.execute(stmt)).first()
        if not row:
            return None
        return int(row[0])

    async def release_slot(self, permission_id: UUID) -> bool:
        stmt = (
            update(CallPermission)
            .where(CallPermission.id == permission_id, CallPermission.calls_used > 0)
            .values(calls_used=CallPermission.calls_used - 1, updated_at=utcnow())
            .returning(CallPermission.calls_used)
            .execution_options(synchronize_session="fetch")
        )
        return (await self._session.execute(stmt)).first() is not None

    async def expire_if_elapsed(self, permission_id: UUID, now: datetime) -> bool:
        """Conditionally move one pending or approved permission to ``expired``.

        The expiry condition is re-checked in the UPDATE itself.
        """
        stmt = (
            update(CallPermission)
            .where(
                CallPermission.id == permission_id,
                CallPermission.status.in_([PermissionStatus.PENDING, PermissionStatus.APPROVED]),
                CallPermission.expires_at <= now,
            )
            .values(status=PermissionStatus.EXPIRED, updated_at=now)
            .returning(CallPermission.id)
            .execution_options(synchronize_session="fetch")
        )
        return (await self._session.execute(stmt)).first() is not None

    async def list_elapsed(self, now: datetime, limit: int = 500) -> Sequence[CallPermission]:
        """Pending or approved permissions whose expiry has passed."""
        stmt = (
            select(CallPermission)
            .where(
                CallPermission.status.in_([PermissionStatus.PENDING, PermissionStatus.APPROVED]),
                CallPermission.expires_at <= now,
            )
            .limit(limit)
        )
        return (await self._session.execute(stmt)).scalars().all()


__all__ = ["PermissionRepository"]
