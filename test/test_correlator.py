"""Tests for event correlation, deduplication and routing."""

import asyncio
from uuid import uuid4

import pytest

from callbridge.calls.lifecycle import CallLifecycleManager
from callbridge.calls.models import (
    BridgeAction,
    Call,
    CallDirection,
    CallStatus,
    EventOutcome,
)
from callbridge.calls.repository import CallRepository
from callbridge.correlation.correlator import EventCorrelator
from callbridge.correlation.events import (
    BridgeEvent,
    CallStatusEvent,
    ChannelMessageEvent,
    ConsentReplyEvent,
    InboundCallEvent,
    RecordingEvent,
)
from callbridge.crm.memory_adapter import InMemoryCrm
from callbridge.permissions.ledger import PermissionLedger
from callbridge.permissions.models import ConsentDecision, PermissionStatus
from callbridge.shared.database import DatabaseManager
from conftest import BUSINESS_NUMBER, CONTACT, DESTINATION, RecordingObserver


def _inbound(sid: str = "CA_IN_1", event_id: str | None = None) -> InboundCallEvent:
    return InboundCallEvent(
        event_id=event_id or f"inbound:{sid}",
        external_call_id=sid,
        from_address=f"whatsapp:{DESTINATION}",
        to_address=f"whatsapp:{BUSINESS_NUMBER}",
    )


def _status(sid: str, status: CallStatus, call_id=None, **extra) -> CallStatusEvent:
    return CallStatusEvent(
        event_id=f"status:{sid}:{status.value}",
        external_call_id=sid,
        status=status,
        call_id=call_id,
        **extra,
    )


def _bridge(call_id, action: BridgeAction, participant: str | None = None, seq: int = 0) -> BridgeEvent:
    return BridgeEvent(
        event_id=f"conference:CF_1:{action.value}:{participant}:{seq}",
        call_id=call_id,
        action=action,
        conference_sid="CF_1",
        participant_ref=participant,
    )


async def _count(db: DatabaseManager, **filters) -> int:
    async with db.session_factory() as session:
        return await CallRepository(session).count_events(**filters)


async def _unbound_outbound(db: DatabaseManager) -> Call:
    """An outbound call whose dial result has not come back yet."""
    async with db.session_factory() as session:
        call = await CallRepository(session).create(
            direction=CallDirection.OUTBOUND,
            status=CallStatus.INITIATED,
            from_address=BUSINESS_NUMBER,
            to_address=DESTINATION,
            contact_ref=CONTACT,
        )
        await session.commit()
    return call


class TestInboundCorrelation:
    @pytest.mark.asyncio
    async def test_unknown_inbound_creates_call(
        self,
        correlator: EventCorrelator,
        db: DatabaseManager,
    ) -> None:
        result = await correlator.handle(_inbound())

        assert result.outcome == EventOutcome.APPLIED
        assert result.call is not None
        assert result.call.status == CallStatus.RINGING
        assert await _count(db, kind="inbound_call_received") == 1

    @pytest.mark.asyncio
    async def test_redelivered_inbound_is_duplicate(
        self,
        correlator: EventCorrelator,
        db: DatabaseManager,
    ) -> None:
        first = await correlator.handle(_inbound())
        second = await correlator.handle(_inbound(event_id="retry-token"))

        assert second.outcome == EventOutcome.DUPLICATE
        assert second.call is not None
        assert second.call.id == first.call.id
        assert await _count(db, kind="inbound_call_received") == 2
        assert await _count(db, kind="inbound_call_received", outcome=EventOutcome.APPLIED) == 1

    @pytest.mark.asyncio
    async def test_concurrent_inbound_creates_one_call(
        self,
        correlator: EventCorrelator,
        lifecycle: CallLifecycleManager,
        crm: InMemoryCrm,
    ) -> None:
        results = await asyncio.gather(*(correlator.handle(_inbound("CA_RACE")) for _ in range(5)))

        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes == ["applied"] + ["duplicate"] * 4
        assert len({r.call.id for r in results}) == 1

        calls, total = await lifecycle.list_calls_for_contact(crm.contacts[DESTINATION])
        assert total == 1

    @pytest.mark.asyncio
    async def test_invalid_caller_is_dropped(
        self,
        correlator: EventCorrelator,
        db: DatabaseManager,
    ) -> None:
        event = InboundCallEvent(
            event_id="inbound:CA_BAD",
            external_call_id="CA_BAD",
            from_address="client:anonymous",
            to_address=BUSINESS_NUMBER,
        )

        result = await correlator.handle(event)

        assert result.outcome == EventOutcome.DROPPED
        assert result.call is None
        assert await _count(db, outcome=EventOutcome.DROPPED) == 1


class TestStatusCorrelation:
    @pytest.mark.asyncio
    async def test_duplicate_status_delivery(
        self,
        correlator: EventCorrelator,
        db: DatabaseManager,
    ) -> None:
        created = await correlator.handle(_inbound("CA_S1"))

        first = await correlator.handle(_status("CA_S1", CallStatus.IN_PROGRESS))
        again = await correlator.handle(_status("CA_S1", CallStatus.IN_PROGRESS))

        assert first.outcome == EventOutcome.APPLIED
        assert again.outcome == EventOutcome.DUPLICATE
        assert again.call.status == CallStatus.IN_PROGRESS
        assert await _count(db, call_id=created.call.id, kind="status_update") == 2

    @pytest.mark.asyncio
    async def test_out_of_order_statuses(
        self,
        correlator: EventCorrelator,
        observer: RecordingObserver,
    ) -> None:
        await correlator.handle(_inbound("CA_S2"))

        done = await correlator.handle(_status("CA_S2", CallStatus.COMPLETED, duration_seconds=12))
        late = await correlator.handle(_status("CA_S2", CallStatus.IN_PROGRESS))

        assert done.outcome == EventOutcome.APPLIED
        assert late.outcome == EventOutcome.IGNORED
        assert late.call.status == CallStatus.COMPLETED

        await observer.wait_for(2)
        assert observer.types() == ["incoming_call", "call_updated"]

    @pytest.mark.asyncio
    async def test_status_before_dial_binds_provider_id(
        self,
        correlator: EventCorrelator,
        db: DatabaseManager,
    ) -> None:
        call = await _unbound_outbound(db)

        result = await correlator.handle(_status("CA_EARLY", CallStatus.RINGING, call.id))

        assert result.outcome == EventOutcome.APPLIED
        assert result.call.external_call_id == "CA_EARLY"
        assert result.call.status == CallStatus.RINGING

    @pytest.mark.asyncio
    async def test_conflicting_provider_id_is_dropped(
        self,
        correlator: EventCorrelator,
        db: DatabaseManager,
    ) -> None:
        call = await _unbound_outbound(db)
        await correlator.handle(_status("CA_FIRST", CallStatus.RINGING, call.id))

        result = await correlator.handle(_status("CA_OTHER", CallStatus.COMPLETED, call.id))

        assert result.outcome == EventOutcome.DROPPED
        assert "CA_FIRST" in result.reason
        async with db.session_factory() as session:
            stored = await CallRepository(session).get_by_id(call.id)
        assert stored.status == CallStatus.RINGING

    @pytest.mark.asyncio
    async def test_unknown_call_is_dropped(
        self,
        correlator: EventCorrelator,
        db: DatabaseManager,
    ) -> None:
        result = await correlator.handle(_status("CA_GHOST", CallStatus.COMPLETED))
        missing = await correlator.handle(_status("CA_GHOST2", CallStatus.COMPLETED, uuid4()))

        assert result.outcome == EventOutcome.DROPPED
        assert missing.outcome == EventOutcome.DROPPED
        assert await _count(db, outcome=EventOutcome.DROPPED, kind="status_update") == 2


class TestBridgeCorrelation:
    @pytest.mark.asyncio
    async def test_end_with_agent_completes(self, correlator: EventCorrelator) -> None:
        created = await correlator.handle(_inbound("CA_B1"))
        call_id = created.call.id

        await correlator.handle(_bridge(call_id, BridgeAction.START))
        await correlator.handle(_bridge(call_id, BridgeAction.JOIN, "CA_B1", seq=1))
        await correlator.handle(_bridge(call_id, BridgeAction.JOIN, "CA_AGENT", seq=2))
        ended = await correlator.handle(_bridge(call_id, BridgeAction.END, seq=3))

        assert ended.outcome == EventOutcome.APPLIED
        assert ended.call.status == CallStatus.COMPLETED
        assert ended.call.get_meta("customer_joined") is True
        assert ended.call.get_meta("agent_joined") is True
        assert ended.call.get_meta("conference_sid") == "CF_1"

    @pytest.mark.asyncio
    async def test_end_without_agent_is_no_answer(self, correlator: EventCorrelator) -> None:
        created = await correlator.handle(_inbound("CA_B2"))
        call_id = created.call.id

        await correlator.handle(_bridge(call_id, BridgeAction.JOIN, "CA_B2", seq=1))
        ended = await correlator.handle(_bridge(call_id, BridgeAction.END, seq=2))

        assert ended.call.status == CallStatus.NO_ANSWER
        assert ended.call.get_meta("agent_joined") is None

    @pytest.mark.asyncio
    async def test_unknown_bridge_is_dropped(self, correlator: EventCorrelator) -> None:
        result = await correlator.handle(_bridge(uuid4(), BridgeAction.END))

        assert result.outcome == EventOutcome.DROPPED


class TestRecordingCorrelation:
    @pytest.mark.asyncio
    async def test_completed_recording_attached(self, correlator: EventCorrelator) -> None:
        created = await correlator.handle(_inbound("CA_R1"))

        result = await correlator.handle(
            RecordingEvent(
                event_id="recording:RE1:completed",
                call_id=created.call.id,
                recording_sid="RE1",
                recording_url="https://api.twilio.com/recordings/RE1",
            )
        )

        assert result.outcome == EventOutcome.APPLIED
        assert result.call.recording_url == "https://api.twilio.com/recordings/RE1"

    @pytest.mark.asyncio
    async def test_in_progress_recording_ignored(self, correlator: EventCorrelator) -> None:
        created = await correlator.handle(_inbound("CA_R2"))

        result = await correlator.handle(
            RecordingEvent(
                event_id="recording:RE2:in-progress",
                call_id=created.call.id,
                recording_sid="RE2",
                recording_url="https://api.twilio.com/recordings/RE2",
                recording_status="in-progress",
            )
        )

        assert result.outcome == EventOutcome.IGNORED
        assert result.call.recording_url is None

    @pytest.mark.asyncio
    async def test_concurrent_completion_and_recording_both_land(
        self,
        correlator: EventCorrelator,
        lifecycle: CallLifecycleManager,
    ) -> None:
        created = await correlator.handle(_inbound("CA_R3"))
        await correlator.handle(_status("CA_R3", CallStatus.IN_PROGRESS))

        completed, recorded = await asyncio.gather(
            correlator.handle(_status("CA_R3", CallStatus.COMPLETED, duration_seconds=30)),
            correlator.handle(
                RecordingEvent(
                    event_id="recording:RE3:completed",
                    call_id=created.call.id,
                    recording_sid="RE3",
                    recording_url="https://api.twilio.com/recordings/RE3",
                )
            ),
        )

        assert completed.outcome == EventOutcome.APPLIED
        assert recorded.outcome == EventOutcome.APPLIED
        call, _ = await lifecycle.get_call(created.call.id)
        assert call.status == CallStatus.COMPLETED
        assert call.duration_seconds == 30
        assert call.recording_url == "https://api.twilio.com/recordings/RE3"


class TestConsentRouting:
    @staticmethod
    def _reply(decision: ConsentDecision, event_id: str = "MM_REPLY_1") -> ConsentReplyEvent:
        return ConsentReplyEvent(
            event_id=event_id,
            from_address=f"whatsapp:{DESTINATION}",
            decision=decision,
            message_id=event_id,
        )

    @pytest.mark.asyncio
    async def test_accept_approves_pending(
        self,
        correlator: EventCorrelator,
        ledger: PermissionLedger,
        observer: RecordingObserver,
    ) -> None:
        pending = await ledger.request_permission(CONTACT, DESTINATION)

        result = await correlator.handle(self._reply(ConsentDecision.ACCEPTED))

        assert result.outcome == EventOutcome.APPLIED
        assert result.permission_id == pending.id
        assert result.call is None
        snapshot = await ledger.get_permission_status(CONTACT, DESTINATION)
        assert snapshot.can_place_call is True

        await observer.wait_for(1)
        assert observer.messages[-1]["type"] == "permission_updated"
        assert observer.messages[-1]["status"] == "approved"

    @pytest.mark.asyncio
    async def test_reject(self, correlator: EventCorrelator, ledger: PermissionLedger) -> None:
        await ledger.request_permission(CONTACT, DESTINATION)

        await correlator.handle(self._reply(ConsentDecision.REJECTED))

        snapshot = await ledger.get_permission_status(CONTACT, DESTINATION)
        assert snapshot.permission.status == PermissionStatus.REJECTED
        assert snapshot.can_place_call is False

    @pytest.mark.asyncio
    async def test_duplicate_reply(self, correlator: EventCorrelator, ledger: PermissionLedger) -> None:
        await ledger.request_permission(CONTACT, DESTINATION)

        await correlator.handle(self._reply(ConsentDecision.ACCEPTED))
        again = await correlator.handle(self._reply(ConsentDecision.ACCEPTED))

        assert again.outcome == EventOutcome.DUPLICATE

    @pytest.mark.asyncio
    async def test_reply_without_request_is_dropped(self, correlator: EventCorrelator) -> None:
        result = await correlator.handle(self._reply(ConsentDecision.ACCEPTED))

        assert result.outcome == EventOutcome.DROPPED
        assert result.permission_id is None

    @pytest.mark.asyncio
    async def test_ordinary_message_ignored(
        self,
        correlator: EventCorrelator,
        db: DatabaseManager,
    ) -> None:
        result = await correlator.handle(
            ChannelMessageEvent(
                event_id="MM_HELLO",
                from_address=f"whatsapp:{DESTINATION}",
                body="hello",
                message_id="MM_HELLO",
            )
        )

        assert result.outcome == EventOutcome.IGNORED
        assert await _count(db, kind="channel_message", outcome=EventOutcome.IGNORED) == 1


class TestUnparsedDeliveries:
    @pytest.mark.asyncio
    async def test_record_unparsed_keeps_known_fields(
        self,
        correlator: EventCorrelator,
        db: DatabaseManager,
    ) -> None:
        await correlator.record_unparsed(
            "status_update",
            "CallSid is required",
            {"CallStatus": "completed", "AuthToken": "secret", "From": DESTINATION},
            event_id="token-1",
        )

        async with db.session_factory() as session:
            assert await CallRepository(session).count_events(outcome=EventOutcome.DROPPED) == 1
            assert await CallRepository(session).count_events(external_event_id="token-1") == 1
