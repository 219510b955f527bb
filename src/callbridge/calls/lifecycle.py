"""
Call lifecycle manager.

Owns every state change of ``Call`` rows. Each kind of event maps to exactly
one mutation function (``mutate_status``, ``mutate_bridge``,
``mutate_recording``); the public operations and the event correlator both go
through them while holding the call's serialization scope.

Collaborators (dial, terminate, CRM) are never awaited while a call scope is
held. Effects that follow a committed change (permission outcome, CRM
activity, observer notification) run in ``after_commit``.
"""

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from callbridge.calls.models import (
    TERMINAL_STATUSES,
    BridgeAction,
    Call,
    CallDirection,
    CallEvent,
    CallStatus,
    EventOutcome,
    EventSource,
)
from callbridge.calls.repository import CallRepository
from callbridge.calls.state_machine import (
    TransitionKind,
    TransitionResult,
    compute_duration,
    plan_transition,
)
from callbridge.config import Settings, get_settings
from callbridge.crm.interface import CallSummary, ContactHints, ContactResolver, CrmSync
from callbridge.notifications.fanout import NotificationFanout, call_digest
from callbridge.permissions.ledger import PermissionLedger
from callbridge.permissions.models import PermissionOutcome
from callbridge.shared.addresses import normalize_destination, strip_channel
from callbridge.shared.exceptions import (
    CallNotFoundError,
    CollaboratorError,
    DuplicateExternalIdError,
    PermissionRequiredError,
    ValidationError,
)
from callbridge.shared.locks import EntityLockRegistry, call_key
from callbridge.shared.logging import get_logger
from callbridge.shared.types import utcnow
from callbridge.telephony.config import TelephonyConfig
from callbridge.telephony.interface import DialRequest, TelephonyProvider

logger = get_logger(__name__)

DEFAULT_OUTBOUND_NUMBER = "+10000000000"


def outcome_for(transition: TransitionResult) -> EventOutcome:
    return EventOutcome.APPLIED if transition.changed else EventOutcome.IGNORED


def ledger_outcome_for(call: Call, transition: TransitionResult) -> PermissionOutcome | None:
    """What an applied transition means for the permission's missed call count."""
    if not transition.changed or call.permission_id is None:
        return None
    if transition.current == CallStatus.IN_PROGRESS:
        return PermissionOutcome.ANSWERED
    # Connected call whose in-progress callback had not arrived yet.
    if (
        transition.current == CallStatus.COMPLETED
        and transition.previous != CallStatus.IN_PROGRESS
        and call.answered_at is not None
    ):
        return PermissionOutcome.ANSWERED
    if transition.current == CallStatus.NO_ANSWER and call.answered_at is None:
        return PermissionOutcome.NO_ANSWER
    return None


@dataclass(frozen=True)
class StatusUpdateResult:
    call: Call
    transition: TransitionResult


class CallLifecycleManager:
    """Creates calls and moves them through their lifecycle."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: EntityLockRegistry,
        ledger: PermissionLedger,
        telephony: TelephonyProvider,
        fanout: NotificationFanout,
        telephony_config: TelephonyConfig,
        contact_resolver: ContactResolver | None = None,
        crm: CrmSync | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._locks = locks
        self._ledger = ledger
        self._telephony = telephony
        self._fanout = fanout
        self._telephony_config = telephony_config
        self._contact_resolver = contact_resolver
        self._crm = crm
        self._settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Scopes
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def locked_call(
        self, call_id: UUID
    ) -> AsyncIterator[tuple[AsyncSession, CallRepository, Call]]:
        """Hold the call's scope with the row loaded for update.

        Commits on normal exit; rolls back if the body raises.
        """
        async with self._locks.hold(call_key(call_id)):
            async with self._session_factory() as session:
                repo = CallRepository(session)
                call = await repo.get_by_id(call_id, for_update=True)
                if call is None:
                    raise CallNotFoundError(str(call_id))
                yield session, repo, call
                await session.commit()

    async def resolve_call_id(self, call_ref: str | UUID) -> UUID:
        async with self._session_factory() as session:
            call = await CallRepository(session).resolve(call_ref)
        if call is None:
            raise CallNotFoundError(str(call_ref))
        return call.id

    # ------------------------------------------------------------------
    # Mutation functions (caller holds the call scope)
    # ------------------------------------------------------------------

    def mutate_status(
        self,
        call: Call,
        reported: CallStatus,
        observed_at: datetime | None = None,
        extra: dict[str, Any] | None = None,
    ) -> TransitionResult:
        """Apply a reported status to ``call`` in place."""
        extra = extra or {}
        transition = plan_transition(call.status, reported)

        if transition.kind == TransitionKind.APPLIED:
            when = observed_at or utcnow()
            call.status = reported
            if reported == CallStatus.IN_PROGRESS and call.answered_at is None:
                call.answered_at = when
            if reported in TERMINAL_STATUSES:
                if call.end_time is None:
                    call.end_time = when
                if reported == CallStatus.COMPLETED and call.duration_seconds is None:
                    reported_duration = extra.get("duration_seconds")
                    call.duration_seconds = compute_duration(
                        call.end_time,
                        call.answered_at,
                        call.start_time,
                        reported_duration,
                    )
                    # A provider duration proves the call connected.
                    if call.answered_at is None and reported_duration and call.duration_seconds > 0:
                        call.answered_at = call.end_time - timedelta(seconds=call.duration_seconds)
            if extra.get("error_code"):
                call.set_meta("error_code", str(extra["error_code"]))
                call.set_meta("error_message", extra.get("error_message"))

        if extra.get("recording_url"):
            self.mutate_recording(call, extra["recording_url"])

        return transition

    def mutate_bridge(
        self,
        call: Call,
        action: BridgeAction,
        participant_ref: str | None = None,
        conference_sid: str | None = None,
        observed_at: datetime | None = None,
    ) -> TransitionResult | None:
        """Apply a bridge lifecycle event.

        Only ``end`` can change the call status: no agent leg ever joined
        means ``no-answer``, otherwise ``completed``.
        """
        if conference_sid and call.get_meta("conference_sid") != conference_sid:
            call.set_meta("conference_sid", conference_sid)

        if action == BridgeAction.JOIN:
            is_customer = participant_ref is not None and participant_ref == call.external_call_id
            call.set_meta("customer_joined" if is_customer else "agent_joined", True)
            return None

        if action == BridgeAction.END:
            if call.get_meta("agent_joined"):
                return self.mutate_status(call, CallStatus.COMPLETED, observed_at)
            return self.mutate_status(call, CallStatus.NO_ANSWER, observed_at)

        return None

    def mutate_recording(self, call: Call, recording_url: str) -> bool:
        """Attach a recording; allowed in any status."""
        if call.recording_url == recording_url:
            return False
        call.recording_url = recording_url
        return True

    # ------------------------------------------------------------------
    # Effects after commit
    # ------------------------------------------------------------------

    async def after_commit(
        self,
        call: Call,
        kind: str,
        transition: TransitionResult | None = None,
    ) -> None:
        """Run effects of a committed change; never raises for collaborator failures."""
        if transition is not None:
            outcome = ledger_outcome_for(call, transition)
            if outcome is not None and call.permission_id is not None:
                await self._ledger.record_outcome(call.permission_id, outcome)

            if transition.changed and transition.current in TERMINAL_STATUSES:
                await self._sync_crm(call)

        self._fanout.publish(call_digest(call, "call_updated", change=kind))

    async def _sync_crm(self, call: Call) -> None:
        if self._crm is None:
            return
        if not call.contact_ref:
            logger.info("Skipping CRM sync: call has no contact", extra={"call_id": str(call.id)})
            return

        summary = CallSummary(
            call_id=str(call.id),
            direction=call.direction.value,
            status=call.status.value,
            from_address=call.from_address,
            to_address=call.to_address,
            start_time=call.start_time,
            duration_seconds=call.duration_seconds,
            recording_url=call.recording_url,
            notes=call.notes,
        )
        try:
            await self._crm.log_call_activity(call.contact_ref, summary)
        except CollaboratorError as exc:
            logger.warning(
                "CRM call activity sync failed",
                extra={"call_id": str(call.id), "error": exc.message},
            )
            async with self.locked_call(call.id) as (_, repo, locked):
                locked.set_meta("crm_sync_status", "failed")
                await repo.add_event(
                    kind="crm_sync_failed",
                    source=EventSource.CRM,
                    outcome=EventOutcome.FAILED,
                    call_id=locked.id,
                    message=exc.message,
                    data={"error_code": exc.error_code},
                )
            return

        async with self.locked_call(call.id) as (_, _, locked):
            locked.set_meta("crm_sync_status", "synced")

    async def _resolve_contact(self, address: str, display_name: str | None) -> str | None:
        if self._contact_resolver is None:
            return None
        try:
            return await self._contact_resolver.find_or_create_contact(
                ContactHints(address=address, display_name=display_name)
            )
        except CollaboratorError as exc:
            logger.warning(
                "Contact resolution failed; continuing without contact",
                extra={"address": address, "error": exc.message},
            )
            return None

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create_inbound(
        self,
        from_address: str,
        to_address: str,
        external_call_id: str,
        display_name: str | None = None,
        event_id: str | None = None,
    ) -> Call:
        """Register a customer-initiated call in ``ringing``.

        Raises:
            ValidationError: Missing provider call id or bad caller address.
            DuplicateExternalIdError: A call with this provider id exists.
        """
        if not external_call_id:
            raise ValidationError("external_call_id is required")
        caller = normalize_destination(from_address)
        business = strip_channel(to_address) or self._outbound_number()

        contact_ref = await self._resolve_contact(caller, display_name)

        async with self._locks.hold(f"external:{external_call_id}"):
            async with self._session_factory() as session:
                repo = CallRepository(session)
                if await repo.get_by_external_id(external_call_id) is not None:
                    raise DuplicateExternalIdError(external_call_id)

                call = await repo.create(
                    direction=CallDirection.INBOUND,
                    status=CallStatus.RINGING,
                    from_address=caller,
                    to_address=business,
                    contact_ref=contact_ref,
                    external_call_id=external_call_id,
                    conference_name=f"whatsapp-call-{external_call_id}",
                )
                await repo.add_event(
                    kind="inbound_call_received",
                    source=EventSource.PROVIDER,
                    call_id=call.id,
                    external_event_id=event_id or f"inbound:{external_call_id}",
                    external_ref=external_call_id,
                    status=CallStatus.RINGING.value,
                    data={"from": caller, "to": business},
                )
                try:
                    await session.commit()
                except IntegrityError as e:
                    # Another worker bound the same provider id first.
                    await session.rollback()
                    raise DuplicateExternalIdError(external_call_id) from e

        logger.info(
            "Inbound call created",
            extra={
                "call_id": str(call.id),
                "external_call_id": external_call_id,
                "contact_ref": contact_ref,
            },
        )
        self._fanout.publish(call_digest(call, "incoming_call"))
        return call

    def _outbound_number(self) -> str:
        return self._telephony_config.twilio_from_number or DEFAULT_OUTBOUND_NUMBER

    async def create_outbound(
        self,
        contact_ref: str,
        destination: str,
        agent_identity: str,
        notes: str | None = None,
    ) -> Call:
        """Place an agent-initiated call to a consenting contact.

        Raises:
            ValidationError: Bad input.
            PermissionRequiredError: No placeable permission for the pair.
            CollaboratorError: The dial failed; the call is ``failed`` and the
                slot released. ``details["call_id"]`` names the call.
        """
        if not contact_ref or not contact_ref.strip():
            raise ValidationError("contact_ref is required")
        if not agent_identity or not agent_identity.strip():
            raise ValidationError("agent_identity is required")
        contact_ref = contact_ref.strip()
        destination = normalize_destination(destination)

        permission = await self._ledger.reserve_for_pair(contact_ref, destination)
        if permission is None:
            snapshot = await self._ledger.get_permission_status(contact_ref, destination)
            raise PermissionRequiredError(
                contact_ref,
                destination,
                can_request=snapshot.can_request,
                reason=self._blocked_reason(snapshot.permission),
            )

        try:
            async with self._session_factory() as session:
                repo = CallRepository(session)
                call = await repo.create(
                    direction=CallDirection.OUTBOUND,
                    status=CallStatus.INITIATED,
                    from_address=self._outbound_number(),
                    to_address=destination,
                    contact_ref=contact_ref,
                    permission_id=permission.id,
                    notes=notes,
                    metadata={"agent_identity": agent_identity.strip()},
                )
                call.conference_name = f"outbound-call-{call.id}"
                await repo.add_event(
                    kind="call_created",
                    source=EventSource.SYSTEM,
                    call_id=call.id,
                    permission_id=permission.id,
                    status=CallStatus.INITIATED.value,
                    data={"agent_identity": agent_identity.strip()},
                )
                await session.commit()
        except Exception:
            await self._ledger.release_call(permission.id)
            raise

        self._fanout.publish(call_digest(call, "call_created"))

        cfg = self._telephony_config
        request = DialRequest(
            call_id=call.id,
            to_address=destination,
            from_address=call.from_address,
            answer_url=cfg.get_webhook_url(f"/webhooks/voice/outbound/{call.id}"),
            status_callback_url=cfg.get_webhook_url(f"/webhooks/voice/status?call_id={call.id}"),
            recording_callback_url=cfg.get_webhook_url(f"/webhooks/voice/recording/{call.id}"),
            metadata={"contact_ref": contact_ref},
        )

        try:
            result = await self._telephony.dial(request)
        except CollaboratorError as exc:
            logger.error(
                "Outbound dial failed",
                extra={"call_id": str(call.id), "error": exc.message, "error_code": exc.error_code},
            )
            await self._fail_dial(
                call.id,
                permission.id,
                exc.error_code or "DIAL_FAILED",
                exc.message,
                exc.provider_response,
            )
            exc.details = {**exc.details, "call_id": str(call.id)}
            raise
        except Exception as exc:
            logger.exception(
                "Unexpected error while dialing",
                extra={"call_id": str(call.id)},
            )
            await self._fail_dial(
                call.id, permission.id, "DIAL_ERROR", str(exc) or type(exc).__name__
            )
            raise

        async with self.locked_call(call.id) as (_, repo, locked):
            if locked.external_call_id is None:
                locked.external_call_id = result.external_call_id
            await repo.add_event(
                kind="dial_placed",
                source=EventSource.PROVIDER,
                call_id=locked.id,
                external_ref=result.external_call_id,
                status=result.status,
            )

        logger.info(
            "Outbound call placed",
            extra={
                "call_id": str(locked.id),
                "external_call_id": locked.external_call_id,
                "permission_id": str(permission.id),
            },
        )
        return locked

    async def _fail_dial(
        self,
        call_id: UUID,
        permission_id: UUID,
        error_code: str,
        message: str,
        provider_response: dict[str, Any] | None = None,
    ) -> None:
        """Mark a never-placed call ``failed`` and give its slot back."""
        async with self.locked_call(call_id) as (_, repo, locked):
            transition = self.mutate_status(
                locked,
                CallStatus.FAILED,
                extra={"error_code": error_code, "error_message": message},
            )
            await repo.add_event(
                kind="dial_failed",
                source=EventSource.PROVIDER,
                outcome=EventOutcome.FAILED,
                call_id=locked.id,
                permission_id=permission_id,
                status=locked.status.value,
                message=message,
                data={"error_code": error_code, "provider_response": provider_response},
            )
        await self._ledger.release_call(permission_id)
        if transition.changed:
            self._fanout.publish(call_digest(locked, "call_updated", change="dial_failed"))

    @staticmethod
    def _blocked_reason(permission: Any) -> str:
        if permission is None:
            return "no permission requested"
        status = permission.status.value
        if status == "approved":
            return "permission exhausted"
        return f"permission {status}"

    async def apply_status_update(
        self,
        call_ref: str | UUID,
        new_status: CallStatus,
        observed_at: datetime | None = None,
        extra: dict[str, Any] | None = None,
    ) -> StatusUpdateResult:
        """Apply a reported status. Idempotent; terminal statuses win."""
        call_id = await self.resolve_call_id(call_ref)
        async with self.locked_call(call_id) as (_, repo, call):
            transition = self.mutate_status(call, new_status, observed_at, extra)
            await repo.add_event(
                kind="status_update",
                source=EventSource.SYSTEM,
                outcome=outcome_for(transition),
                call_id=call.id,
                status=new_status.value,
                message=transition.reason,
                occurred_at=observed_at,
            )

        if transition.changed:
            await self.after_commit(call, "status_update", transition)
        return StatusUpdateResult(call=call, transition=transition)

    async def hangup(self, call_ref: str | UUID) -> Call:
        """End a call. Always ends ``completed`` locally, even if the provider fails."""
        call_id = await self.resolve_call_id(call_ref)
        async with self._session_factory() as session:
            current = await CallRepository(session).get_by_id(call_id)
        if current is None:
            raise CallNotFoundError(str(call_ref))
        if current.is_terminal:
            return current

        terminate_error: CollaboratorError | None = None
        if current.external_call_id:
            try:
                await self._telephony.terminate(current.external_call_id)
            except CollaboratorError as exc:
                terminate_error = exc
                logger.warning(
                    "Provider hangup failed; completing locally",
                    extra={"call_id": str(call_id), "error": exc.message},
                )

        async with self.locked_call(call_id) as (_, repo, call):
            if terminate_error is not None:
                await repo.add_event(
                    kind="hangup_provider_failed",
                    source=EventSource.PROVIDER,
                    outcome=EventOutcome.FAILED,
                    call_id=call.id,
                    external_ref=call.external_call_id,
                    message=terminate_error.message,
                    data={"error_code": terminate_error.error_code},
                )
            transition = self.mutate_status(call, CallStatus.COMPLETED)
            await repo.add_event(
                kind="call_hangup",
                source=EventSource.SYSTEM,
                outcome=outcome_for(transition),
                call_id=call.id,
                status=call.status.value,
                message=transition.reason,
            )

        if transition.changed:
            await self.after_commit(call, "call_hangup", transition)
        return call

    async def attach_recording(
        self,
        call_ref: str | UUID,
        recording_url: str,
    ) -> Call:
        if not recording_url:
            raise ValidationError("recording_url is required")
        call_id = await self.resolve_call_id(call_ref)
        async with self.locked_call(call_id) as (_, repo, call):
            changed = self.mutate_recording(call, recording_url)
            await repo.add_event(
                kind="recording_available",
                source=EventSource.SYSTEM,
                outcome=EventOutcome.APPLIED if changed else EventOutcome.IGNORED,
                call_id=call.id,
                data={"recording_url": recording_url},
            )
        if changed:
            await self.after_commit(call, "recording_available")
        return call

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def get_call(self, call_ref: str | UUID) -> tuple[Call, Sequence[CallEvent]]:
        async with self._session_factory() as session:
            repo = CallRepository(session)
            call = await repo.resolve(call_ref)
            if call is None:
                raise CallNotFoundError(str(call_ref))
            events = await repo.list_events(call.id)
        return call, events

    async def list_calls_for_contact(
        self,
        contact_ref: str,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[Sequence[Call], int]:
        async with self._session_factory() as session:
            return await CallRepository(session).list_for_contact(contact_ref, limit, offset)

    async def list_events(self, call_id: UUID) -> Sequence[CallEvent]:
        async with self._session_factory() as session:
            return await CallRepository(session).list_events(call_id)


__all__ = [
    "CallLifecycleManager",
    "StatusUpdateResult",
    "ledger_outcome_for",
    "outcome_for",
]
