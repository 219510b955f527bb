"""
Permission ledger: consent requests, replies and outbound call slots.

A contact must grant permission before they may be called on a destination.
Requests are rate limited per (contact, destination) pair; an approved grant
carries a fixed expiry, a cap on placed calls and a limit on consecutive
unanswered calls.

Serialization:
- request/response mutate under the pair scope (``permission-pair:...``),
  plus a transaction advisory lock on PostgreSQL;
- slot and outcome updates run under the permission scope;
- the consent prompt is sent with no scope held.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from callbridge.config import Settings, get_settings
from callbridge.messaging.interface import MessagingProvider
from callbridge.permissions.models import (
    CallPermission,
    ConsentDecision,
    PermissionOutcome,
    PermissionStatus,
)
from callbridge.permissions.repository import PermissionRepository
from callbridge.shared.addresses import normalize_destination
from callbridge.shared.exceptions import (
    CollaboratorError,
    NoPendingRequestError,
    RateLimitedError,
    ValidationError,
)
from callbridge.shared.locks import (
    EntityLockRegistry,
    acquire_advisory_xact_lock,
    pair_key,
    permission_key,
)
from callbridge.shared.logging import get_logger
from callbridge.shared.types import utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class PermissionSnapshot:
    """Where a (contact, destination) pair stands with respect to calling."""

    contact_ref: str
    destination: str
    permission: CallPermission | None
    can_place_call: bool
    can_request: bool
    calls_remaining: int
    retry_after_seconds: int | None = None


class PermissionLedger:
    """Owns every state change of ``CallPermission`` rows."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: EntityLockRegistry,
        messaging: MessagingProvider,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._locks = locks
        self._messaging = messaging
        self._settings = settings or get_settings()

    @property
    def missed_call_threshold(self) -> int:
        return self._settings.permission_missed_call_threshold

    # ------------------------------------------------------------------
    # Predicates
    # ------------------------------------------------------------------

    def can_place_call(self, permission: CallPermission, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return (
            permission.status == PermissionStatus.APPROVED
            and now < permission.expires_at
            and permission.calls_used < permission.max_calls
            and permission.consecutive_missed_calls < self.missed_call_threshold
        )

    async def _check_rate_limit(
        self,
        repo: PermissionRepository,
        contact_ref: str,
        destination: str,
        now: datetime,
    ) -> None:
        windows = (
            ("day", timedelta(days=1), self._settings.permission_max_requests_per_day),
            ("week", timedelta(days=7), self._settings.permission_max_requests_per_week),
        )
        for window, span, limit in windows:
            count, oldest = await repo.count_requests_since(contact_ref, destination, now - span)
            if count >= limit:
                retry_after = None
                if oldest is not None:
                    retry_after = max(0, int((oldest + span - now).total_seconds()))
                raise RateLimitedError(window, limit, retry_after)

    # ------------------------------------------------------------------
    # Requests and replies
    # ------------------------------------------------------------------

    async def request_permission(
        self,
        contact_ref: str,
        destination: str,
        now: datetime | None = None,
    ) -> CallPermission:
        """Create a pending permission and send the consent prompt.

        Raises:
            ValidationError: Bad contact or destination.
            RateLimitedError: Daily or weekly request limit reached for the pair.
            CollaboratorError: The prompt could not be sent; the row is ``failed``.
        """
        if not contact_ref or not contact_ref.strip():
            raise ValidationError("contact_ref is required")
        contact_ref = contact_ref.strip()
        destination = normalize_destination(destination)
        now = now or utcnow()
        key = pair_key(contact_ref, destination)

        async with self._locks.hold(key):
            async with self._session_factory() as session:
                await acquire_advisory_xact_lock(session, key)
                repo = PermissionRepository(session)
                await self._check_rate_limit(repo, contact_ref, destination, now)
                permission = await repo.create(
                    contact_ref=contact_ref,
                    destination=destination,
                    requested_at=now,
                    expires_at=now + timedelta(days=self._settings.permission_ttl_days),
                    max_calls=self._settings.permission_max_calls,
                )
                await session.commit()

        logger.info(
            "Permission requested",
            extra={
                "permission_id": str(permission.id),
                "contact_ref": contact_ref,
                "destination": destination,
            },
        )

        try:
            message_id = await self._messaging.send_consent_prompt(
                destination, self._settings.consent_template_ref
            )
        except CollaboratorError as exc:
            logger.error(
                "Consent prompt dispatch failed",
                extra={"permission_id": str(permission.id), "error": exc.message},
            )
            await self._mark_failed(permission.id, exc.message)
            raise

        return await self._store_message_id(permission.id, message_id)

    async def _mark_failed(self, permission_id: UUID, reason: str) -> None:
        async with self._locks.hold(permission_key(permission_id)):
            async with self._session_factory() as session:
                permission = await PermissionRepository(session).get_by_id(
                    permission_id, for_update=True
                )
                if permission is None or permission.status != PermissionStatus.PENDING:
                    return
                permission.status = PermissionStatus.FAILED
                permission.set_meta("failure_reason", reason)
                await session.commit()

    async def _store_message_id(self, permission_id: UUID, message_id: str) -> CallPermission:
        async with self._locks.hold(permission_key(permission_id)):
            async with self._session_factory() as session:
                permission = await PermissionRepository(session).get_by_id(
                    permission_id, for_update=True
                )
                if permission is None:
                    raise LookupError(f"Permission vanished: {permission_id}")
                permission.message_id = message_id
                await session.commit()
                return permission

    async def record_response(
        self,
        destination: str,
        decision: ConsentDecision,
        message_id: str | None = None,
        now: datetime | None = None,
    ) -> CallPermission:
        """Apply a consent reply to the latest non-expired pending request.

        An approval supersedes (expires) any older approved permission for the
        same pair. No other permission is touched.

        Raises:
            NoPendingRequestError: Nothing pending for the destination.
        """
        destination = normalize_destination(destination)
        now = now or utcnow()

        async with self._session_factory() as session:
            candidate = await PermissionRepository(session).latest_pending_for_destination(
                destination, message_id
            )
        if candidate is None:
            raise NoPendingRequestError(destination)

        key = pair_key(candidate.contact_ref, destination)
        async with self._locks.hold(key):
            # Only this scope approves rows for the pair, so the approved set
            # read here can only shrink before the row locks are held.
            async with self._session_factory() as session:
                approved = await PermissionRepository(session).list_approved(
                    candidate.contact_ref, destination
                )
            row_keys = [permission_key(p.id) for p in approved] + [permission_key(candidate.id)]
            async with self._locks.hold_many(row_keys), self._session_factory() as session:
                await acquire_advisory_xact_lock(session, key)
                repo = PermissionRepository(session)
                permission = await repo.get_by_id(candidate.id, for_update=True)
                if permission is None or permission.status != PermissionStatus.PENDING:
                    raise NoPendingRequestError(destination)

                if permission.is_expired(now):
                    permission.status = PermissionStatus.EXPIRED
                    permission.set_meta("expired_reason", "ttl_elapsed")
                    await session.commit()
                    logger.info(
                        "Consent reply matched an expired request",
                        extra={"permission_id": str(permission.id), "destination": destination},
                    )
                    raise NoPendingRequestError(destination)

                if decision == ConsentDecision.ACCEPTED:
                    for previous in await repo.list_approved(
                        permission.contact_ref, destination, for_update=True
                    ):
                        previous.status = PermissionStatus.EXPIRED
                        previous.set_meta("expired_reason", "superseded")
                        previous.set_meta("superseded_by", str(permission.id))
                    # Old grants must leave ``approved`` before the new one enters it.
                    await session.flush()
                    permission.status = PermissionStatus.APPROVED
                else:
                    permission.status = PermissionStatus.REJECTED
                permission.responded_at = now
                await session.commit()

        logger.info(
            "Consent reply recorded",
            extra={
                "permission_id": str(permission.id),
                "destination": destination,
                "status": permission.status.value,
            },
        )
        return permission

    # ------------------------------------------------------------------
    # Call slots
    # ------------------------------------------------------------------

    async def find_placeable(
        self,
        contact_ref: str,
        destination: str,
        now: datetime | None = None,
    ) -> CallPermission | None:
        async with self._session_factory() as session:
            return await PermissionRepository(session).find_placeable(
                contact_ref,
                normalize_destination(destination),
                now or utcnow(),
                self.missed_call_threshold,
            )

    async def reserve_call(
        self, permission_id: UUID, now: datetime | None = None
    ) -> CallPermission | None:
        """Take one call slot; None when the permission is no longer placeable."""
        now = now or utcnow()
        async with self._locks.hold(permission_key(permission_id)):
            async with self._session_factory() as session:
                repo = PermissionRepository(session)
                calls_used = await repo.reserve_slot(permission_id, now, self.missed_call_threshold)
                if calls_used is None:
                    await session.rollback()
                    return None
                permission = await repo.get_by_id(permission_id)
                await session.commit()

        logger.info(
            "Call slot reserved",
            extra={"permission_id": str(permission_id), "calls_used": calls_used},
        )
        return permission

    async def reserve_for_pair(
        self,
        contact_ref: str,
        destination: str,
        now: datetime | None = None,
    ) -> CallPermission | None:
        """Find a placeable permission for the pair and reserve a slot on it."""
        # Retry once: a concurrent reservation may take the last slot between
        # the lookup and the conditional update.
        for _ in range(2):
            permission = await self.find_placeable(contact_ref, destination, now)
            if permission is None:
                return None
            reserved = await self.reserve_call(permission.id, now)
            if reserved is not None:
                return reserved
        return None

    async def release_call(self, permission_id: UUID) -> None:
        """Give back a slot taken for a call that was never placed."""
        async with self._locks.hold(permission_key(permission_id)):
            async with self._session_factory() as session:
                released = await PermissionRepository(session).release_slot(permission_id)
                await session.commit()
        logger.info(
            "Call slot released",
            extra={"permission_id": str(permission_id), "released": released},
        )

    async def record_outcome(
        self,
        permission_id: UUID,
        outcome: PermissionOutcome,
    ) -> CallPermission | None:
        """Track answered vs. unanswered outbound calls.

        Reaching the consecutive missed call threshold expires the permission.
        """
        async with self._locks.hold(permission_key(permission_id)):
            async with self._session_factory() as session:
                permission = await PermissionRepository(session).get_by_id(
                    permission_id, for_update=True
                )
                if permission is None:
                    logger.warning(
                        "Outcome for unknown permission",
                        extra={"permission_id": str(permission_id)},
                    )
                    return None

                if outcome == PermissionOutcome.ANSWERED:
                    permission.consecutive_missed_calls = 0
                else:
                    permission.consecutive_missed_calls += 1
                    if (
                        permission.consecutive_missed_calls >= self.missed_call_threshold
                        and permission.status == PermissionStatus.APPROVED
                    ):
                        permission.status = PermissionStatus.EXPIRED
                        permission.set_meta("expired_reason", "missed_call_limit")
                        logger.info(
                            "Permission expired after consecutive missed calls",
                            extra={
                                "permission_id": str(permission_id),
                                "missed": permission.consecutive_missed_calls,
                            },
                        )
                await session.commit()
                return permission

    # ------------------------------------------------------------------
    # Expiry and status
    # ------------------------------------------------------------------

    async def expire_elapsed(self, now: datetime | None = None) -> int:
        """Move pending/approved permissions past their expiry to ``expired``."""
        now = now or utcnow()
        async with self._session_factory() as session:
            candidates = [p.id for p in await PermissionRepository(session).list_elapsed(now)]

        expired = 0
        for permission_id in candidates:
            async with self._locks.hold(permission_key(permission_id)):
                async with self._session_factory() as session:
                    repo = PermissionRepository(session)
                    if not await repo.expire_if_elapsed(permission_id, now):
                        await session.rollback()
                        continue
                    permission = await repo.get_by_id(permission_id, for_update=True)
                    if permission is not None:
                        permission.set_meta("expired_reason", "ttl_elapsed")
                    await session.commit()
                    expired += 1

        if expired:
            logger.info("Expired elapsed permissions", extra={"count": expired})
        return expired

    async def get_permission_status(
        self,
        contact_ref: str,
        destination: str,
        now: datetime | None = None,
    ) -> PermissionSnapshot:
        destination = normalize_destination(destination)
        now = now or utcnow()
        async with self._session_factory() as session:
            repo = PermissionRepository(session)
            placeable = await repo.find_placeable(
                contact_ref, destination, now, self.missed_call_threshold
            )
            latest = placeable or await repo.latest_for_pair(contact_ref, destination)
            try:
                await self._check_rate_limit(repo, contact_ref, destination, now)
                can_request, retry_after = True, None
            except RateLimitedError as exc:
                can_request, retry_after = False, exc.retry_after_seconds

        return PermissionSnapshot(
            contact_ref=contact_ref,
            destination=destination,
            permission=latest,
            can_place_call=placeable is not None,
            can_request=can_request and placeable is None,
            calls_remaining=(placeable.max_calls - placeable.calls_used) if placeable else 0,
            retry_after_seconds=retry_after,
        )


async def run_expiry_sweeper(ledger: PermissionLedger, interval_seconds: int) -> None:
    """Background loop expiring elapsed permissions until cancelled."""
    logger.info("Permission expiry sweeper starting", extra={"interval_seconds": interval_seconds})
    while True:
        try:
            await ledger.expire_elapsed()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Permission expiry sweep failed")
        await asyncio.sleep(interval_seconds)


__all__ = ["PermissionLedger", "PermissionSnapshot", "run_expiry_sweeper"]
