"""
Event correlator: routes provider and channel events to their owner.

Every event is resolved to a target first (``resolve_target``), then applied
under the target's serialization scope:

- call events go to the lifecycle manager's mutation functions, deduplicated
  by ``event_id`` against the call's applied events;
- consent replies go to the permission ledger only;
- ordinary channel messages are recorded and ignored;
- events that resolve to nothing are recorded as dropped.

Every delivery leaves exactly one row in ``call_events``.
"""

from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from callbridge.calls.lifecycle import CallLifecycleManager
from callbridge.calls.models import Call, EventOutcome, EventSource
from callbridge.calls.repository import CallRepository
from callbridge.calls.state_machine import TransitionResult
from callbridge.correlation.events import (
    BridgeEvent,
    CallStatusEvent,
    ChannelMessageEvent,
    ConsentReplyEvent,
    CorrelatedEvent,
    InboundCallEvent,
    RecordingEvent,
)
from callbridge.notifications.fanout import NotificationFanout, permission_digest
from callbridge.permissions.ledger import PermissionLedger
from callbridge.shared.addresses import normalize_destination
from callbridge.shared.exceptions import (
    DuplicateExternalIdError,
    NoPendingRequestError,
    ValidationError,
)
from callbridge.shared.locks import EntityLockRegistry
from callbridge.shared.logging import get_logger

logger = get_logger(__name__)

# Payload fields copied into the log row for deliveries that fail to parse.
_KEPT_FIELDS = frozenset(
    {
        "CallSid",
        "CallStatus",
        "ConferenceSid",
        "StatusCallbackEvent",
        "RecordingSid",
        "RecordingStatus",
        "MessageSid",
        "MessageType",
        "From",
        "To",
    }
)


@dataclass(frozen=True)
class CallTarget:
    call_id: UUID
    # Provider id to bind when the call does not have one yet.
    bind_external_id: str | None = None


@dataclass(frozen=True)
class PermissionTarget:
    destination: str


@dataclass(frozen=True)
class CreateInbound:
    pass


@dataclass(frozen=True)
class Unresolved:
    reason: str


Target = CallTarget | PermissionTarget | CreateInbound | Unresolved


@dataclass(frozen=True)
class ProcessResult:
    outcome: EventOutcome
    kind: str
    call: Call | None = None
    permission_id: UUID | None = None
    transition: TransitionResult | None = None
    reason: str | None = None

    @property
    def call_id(self) -> UUID | None:
        return self.call.id if self.call is not None else None


def event_kind(event: CorrelatedEvent) -> str:
    match event:
        case InboundCallEvent():
            return "inbound_call_received"
        case CallStatusEvent():
            return "status_update"
        case BridgeEvent(action=action):
            return f"conference_{action.value}"
        case RecordingEvent():
            return "recording_available"
        case ConsentReplyEvent():
            return "consent_response"
        case ChannelMessageEvent():
            return "channel_message"
    raise TypeError(f"Unsupported event type: {type(event).__name__}")


def event_source(event: CorrelatedEvent) -> EventSource:
    if isinstance(event, (ConsentReplyEvent, ChannelMessageEvent)):
        return EventSource.MESSAGING
    return EventSource.PROVIDER


def event_external_ref(event: CorrelatedEvent) -> str | None:
    match event:
        case InboundCallEvent(external_call_id=ref) | CallStatusEvent(external_call_id=ref):
            return ref
        case BridgeEvent(conference_sid=ref):
            return ref
        case RecordingEvent(recording_sid=ref):
            return ref
        case ConsentReplyEvent(message_id=ref) | ChannelMessageEvent(message_id=ref):
            return ref
    return None


def event_data(event: CorrelatedEvent) -> dict[str, Any]:
    """Fields worth keeping in the log row (never the whole raw payload)."""
    return event.model_dump(
        mode="json",
        exclude={"event_id", "occurred_at", "raw_payload"},
        exclude_none=True,
    )


async def resolve_target(repo: CallRepository, event: CorrelatedEvent) -> Target:
    """Map an event to what it mutates. Total: never raises for unknown input."""
    match event:
        case InboundCallEvent(external_call_id=external_call_id):
            existing = await repo.get_by_external_id(external_call_id)
            if existing is not None:
                return CallTarget(existing.id)
            return CreateInbound()

        case CallStatusEvent(external_call_id=external_call_id, call_id=call_id):
            call = await repo.get_by_external_id(external_call_id)
            if call is not None:
                return CallTarget(call.id)
            if call_id is None:
                return Unresolved(f"no call for provider id {external_call_id}")
            call = await repo.get_by_id(call_id)
            if call is None:
                return Unresolved(f"no call {call_id}")
            if call.external_call_id is None:
                return CallTarget(call.id, bind_external_id=external_call_id)
            return Unresolved(
                f"call {call_id} is bound to {call.external_call_id}, not {external_call_id}"
            )

        case BridgeEvent(call_id=call_id):
            if call_id is not None and await repo.get_by_id(call_id) is not None:
                return CallTarget(call_id)
            return Unresolved(f"no call {call_id}")

        case RecordingEvent(call_id=call_id, external_call_id=external_call_id):
            if call_id is not None and await repo.get_by_id(call_id) is not None:
                return CallTarget(call_id)
            if external_call_id:
                call = await repo.get_by_external_id(external_call_id)
                if call is not None:
                    return CallTarget(call.id)
            return Unresolved(f"no call {call_id or external_call_id}")

        case ConsentReplyEvent(from_address=from_address):
            try:
                return PermissionTarget(normalize_destination(from_address))
            except ValidationError:
                return Unresolved(f"invalid sender address {from_address!r}")

        case ChannelMessageEvent():
            return Unresolved("ordinary channel message")

    return Unresolved(f"unsupported event {type(event).__name__}")


class EventCorrelator:
    """Applies correlated events exactly once each."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: EntityLockRegistry,
        lifecycle: CallLifecycleManager,
        ledger: PermissionLedger,
        fanout: NotificationFanout,
    ) -> None:
        self._session_factory = session_factory
        self._locks = locks
        self._lifecycle = lifecycle
        self._ledger = ledger
        self._fanout = fanout

    async def handle(self, event: CorrelatedEvent) -> ProcessResult:
        async with self._session_factory() as session:
            target = await resolve_target(CallRepository(session), event)

        match target:
            case CreateInbound():
                return await self._create_inbound(event)
            case CallTarget():
                return await self._apply_to_call(target, event)
            case PermissionTarget():
                return await self._apply_consent(target, event)
            case Unresolved(reason=reason):
                outcome = (
                    EventOutcome.IGNORED
                    if isinstance(event, ChannelMessageEvent)
                    else EventOutcome.DROPPED
                )
                return await self._record_unattached(event, outcome, reason)

        raise TypeError(f"Unsupported target: {target!r}")

    async def record_unparsed(
        self,
        kind: str,
        reason: str,
        payload: dict[str, Any],
        source: EventSource = EventSource.PROVIDER,
        event_id: str | None = None,
    ) -> None:
        """Log a delivery the webhook parser could not map to an event."""
        logger.warning(
            "Dropping unparseable webhook",
            extra={"kind": kind, "reason": reason, "event_id": event_id},
        )
        async with self._session_factory() as session:
            await CallRepository(session).add_event(
                kind=kind,
                source=source,
                outcome=EventOutcome.DROPPED,
                external_event_id=event_id,
                external_ref=payload.get("CallSid") or payload.get("MessageSid"),
                message=reason,
                data={key: payload[key] for key in sorted(payload) if key in _KEPT_FIELDS},
            )
            await session.commit()

    async def _record_unattached(
        self,
        event: CorrelatedEvent,
        outcome: EventOutcome,
        reason: str,
        permission_id: UUID | None = None,
    ) -> ProcessResult:
        kind = event_kind(event)
        if outcome == EventOutcome.DROPPED:
            logger.warning(
                "Dropping unresolved event",
                extra={"kind": kind, "event_id": event.event_id, "reason": reason},
            )
        async with self._session_factory() as session:
            await CallRepository(session).add_event(
                kind=kind,
                source=event_source(event),
                outcome=outcome,
                permission_id=permission_id,
                external_event_id=event.event_id,
                external_ref=event_external_ref(event),
                message=reason,
                data=event_data(event),
                occurred_at=event.occurred_at,
            )
            await session.commit()
        return ProcessResult(outcome=outcome, kind=kind, permission_id=permission_id, reason=reason)

    async def _create_inbound(self, event: InboundCallEvent) -> ProcessResult:
        kind = event_kind(event)
        try:
            call = await self._lifecycle.create_inbound(
                event.from_address,
                event.to_address,
                event.external_call_id,
                display_name=event.display_name,
                event_id=event.event_id,
            )
        except DuplicateExternalIdError:
            # Lost a race with a concurrent delivery of the same call.
            async with self._session_factory() as session:
                existing = await CallRepository(session).get_by_external_id(event.external_call_id)
            if existing is None:
                raise
            return await self._apply_to_call(CallTarget(existing.id), event)
        except ValidationError as exc:
            return await self._record_unattached(event, EventOutcome.DROPPED, exc.message)

        return ProcessResult(outcome=EventOutcome.APPLIED, kind=kind, call=call)

    async def _apply_to_call(self, target: CallTarget, event: CorrelatedEvent) -> ProcessResult:
        kind = event_kind(event)
        transition: TransitionResult | None = None
        changed = False
        reason: str | None = None

        async with self._lifecycle.locked_call(target.call_id) as (_, repo, call):
            duplicate = isinstance(event, InboundCallEvent) or await repo.has_applied_event(
                event.event_id, call_id=call.id
            )
            if duplicate:
                outcome = EventOutcome.DUPLICATE
                reason = "duplicate delivery"
            else:
                if target.bind_external_id and call.external_call_id is None:
                    call.external_call_id = target.bind_external_id
                transition, changed = self._mutate(call, event)
                if transition is not None:
                    reason = transition.reason
                outcome = EventOutcome.APPLIED if changed else EventOutcome.IGNORED

            await repo.add_event(
                kind=kind,
                source=event_source(event),
                outcome=outcome,
                call_id=call.id,
                external_event_id=event.event_id,
                external_ref=event_external_ref(event),
                status=event.status.value if isinstance(event, CallStatusEvent) else None,
                message=reason,
                data=event_data(event),
                occurred_at=event.occurred_at,
            )

        if duplicate:
            logger.info(
                "Duplicate event delivery",
                extra={"kind": kind, "event_id": event.event_id, "call_id": str(call.id)},
            )
        elif changed:
            await self._lifecycle.after_commit(call, kind, transition)

        return ProcessResult(
            outcome=outcome,
            kind=kind,
            call=call,
            transition=transition,
            reason=reason,
        )

    def _mutate(self, call: Call, event: CorrelatedEvent) -> tuple[TransitionResult | None, bool]:
        """Dispatch to the one mutation function for the event type."""
        match event:
            case CallStatusEvent():
                transition = self._lifecycle.mutate_status(
                    call,
                    event.status,
                    event.occurred_at,
                    {
                        "duration_seconds": event.duration_seconds,
                        "recording_url": event.recording_url,
                        "error_code": event.error_code,
                        "error_message": event.error_message,
                    },
                )
                return transition, transition.changed

            case BridgeEvent():
                before = dict(call.call_metadata or {})
                transition = self._lifecycle.mutate_bridge(
                    call,
                    event.action,
                    participant_ref=event.participant_ref,
                    conference_sid=event.conference_sid,
                    observed_at=event.occurred_at,
                )
                changed = (transition is not None and transition.changed) or (
                    call.call_metadata != before
                )
                return transition, changed

            case RecordingEvent():
                if event.recording_status != "completed":
                    return None, False
                return None, self._lifecycle.mutate_recording(call, event.recording_url)

        return None, False

    async def _apply_consent(
        self, target: PermissionTarget, event: ConsentReplyEvent
    ) -> ProcessResult:
        kind = event_kind(event)
        async with self._locks.hold(f"consent:{target.destination}"):
            async with self._session_factory() as session:
                seen = await CallRepository(session).has_applied_event(event.event_id)
            if seen:
                return await self._record_unattached(
                    event, EventOutcome.DUPLICATE, "duplicate delivery"
                )

            try:
                permission = await self._ledger.record_response(
                    target.destination,
                    event.decision,
                    message_id=event.replied_to_message_id,
                    now=event.occurred_at,
                )
            except NoPendingRequestError as exc:
                return await self._record_unattached(event, EventOutcome.DROPPED, exc.message)

            result = await self._record_unattached(
                event,
                EventOutcome.APPLIED,
                f"permission {permission.status.value}",
                permission_id=permission.id,
            )

        self._fanout.publish(permission_digest(permission))
        return result


__all__ = [
    "CallTarget",
    "CreateInbound",
    "EventCorrelator",
    "PermissionTarget",
    "ProcessResult",
    "Unresolved",
    "event_kind",
    "resolve_target",
]
