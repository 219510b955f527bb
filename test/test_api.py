"""HTTP-level tests: REST API, provider webhooks and error mapping."""

import pytest
from httpx import AsyncClient

from callbridge.calls.lifecycle import CallLifecycleManager
from callbridge.calls.models import CallStatus
from callbridge.crm.memory_adapter import InMemoryCrm
from callbridge.permissions.ledger import PermissionLedger
from callbridge.telephony.config import TelephonyConfig
from callbridge.telephony.mock_adapter import MockTelephonyAdapter
from conftest import BUSINESS_NUMBER, CONTACT, DESTINATION

OUTBOUND_BODY = {
    "contact_ref": CONTACT,
    "destination": DESTINATION,
    "agent_identity": "agent-7",
    "notes": "renewal",
}


class TestOutboundCallApi:
    @pytest.mark.asyncio
    async def test_without_permission_is_forbidden(self, api_client: AsyncClient) -> None:
        response = await api_client.post("/api/calls/outbound", json=OUTBOUND_BODY)

        assert response.status_code == 403
        detail = response.json()["detail"]
        assert detail["code"] == "PERMISSION_REQUIRED"
        assert detail["details"]["can_request"] is True
        assert detail["details"]["requires_permission"] is True

    @pytest.mark.asyncio
    async def test_places_call(self, api_client: AsyncClient, approve) -> None:
        await approve()

        response = await api_client.post("/api/calls/outbound", json=OUTBOUND_BODY)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "initiated"
        assert body["direction"] == "outbound"
        assert body["external_call_id"] == "MOCK_CALL_000001"
        assert body["agent_identity"] == "agent-7"
        assert body["metadata"]["agent_identity"] == "agent-7"
        assert body["from_address"] == BUSINESS_NUMBER

    @pytest.mark.asyncio
    async def test_dial_failure_is_bad_gateway(
        self,
        api_client: AsyncClient,
        approve,
        telephony: MockTelephonyAdapter,
    ) -> None:
        await approve()
        telephony.configure_failure(error_message="Account suspended", error_code="20003")

        response = await api_client.post("/api/calls/outbound", json=OUTBOUND_BODY)

        assert response.status_code == 502
        detail = response.json()["detail"]
        assert detail["code"] == "COLLABORATOR_ERROR"
        assert "Account suspended" not in response.text
        assert set(detail["details"]) == {"call_id"}

    @pytest.mark.asyncio
    async def test_bad_destination(self, api_client: AsyncClient) -> None:
        response = await api_client.post(
            "/api/calls/outbound", json={**OUTBOUND_BODY, "destination": "not-a-number"}
        )

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_missing_fields_use_validation_format(self, api_client: AsyncClient) -> None:
        response = await api_client.post("/api/calls/outbound", json={"contact_ref": CONTACT})

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["code"] == "VALIDATION_ERROR"
        fields = {error["field"] for error in detail["errors"]}
        assert "body.destination" in fields
        assert "body.agent_identity" in fields


class TestCallReadApi:
    @pytest.mark.asyncio
    async def test_get_call_with_events(
        self,
        api_client: AsyncClient,
        lifecycle: CallLifecycleManager,
    ) -> None:
        call = await lifecycle.create_inbound(DESTINATION, BUSINESS_NUMBER, "CA_API_1")

        by_id = await api_client.get(f"/api/calls/{call.id}")
        by_sid = await api_client.get("/api/calls/CA_API_1")

        assert by_id.status_code == 200
        assert by_id.json()["call"]["id"] == str(call.id)
        assert [e["kind"] for e in by_id.json()["events"]] == ["inbound_call_received"]
        assert by_sid.json()["call"]["id"] == str(call.id)

    @pytest.mark.asyncio
    async def test_unknown_call(self, api_client: AsyncClient) -> None:
        response = await api_client.get("/api/calls/CA_NOPE")

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "CALL_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_hangup_by_provider_id(
        self,
        api_client: AsyncClient,
        lifecycle: CallLifecycleManager,
        telephony: MockTelephonyAdapter,
    ) -> None:
        await lifecycle.create_inbound(DESTINATION, BUSINESS_NUMBER, "CA_API_2")

        response = await api_client.post("/api/calls/CA_API_2/hangup")
        again = await api_client.post("/api/calls/CA_API_2/hangup")

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert again.status_code == 200
        assert telephony.terminated == ["CA_API_2"]

    @pytest.mark.asyncio
    async def test_history_paging(
        self,
        api_client: AsyncClient,
        lifecycle: CallLifecycleManager,
        crm: InMemoryCrm,
    ) -> None:
        for n in range(3):
            await lifecycle.create_inbound(DESTINATION, BUSINESS_NUMBER, f"CA_PAGE_{n}")
        contact_ref = crm.contacts[DESTINATION]

        first = await api_client.get(f"/api/calls/history/{contact_ref}", params={"limit": 2})
        rest = await api_client.get(
            f"/api/calls/history/{contact_ref}", params={"limit": 2, "offset": 2}
        )

        assert first.json()["total"] == 3
        assert first.json()["has_more"] is True
        assert len(first.json()["calls"]) == 2
        assert rest.json()["has_more"] is False
        assert [c["external_call_id"] for c in rest.json()["calls"]] == ["CA_PAGE_0"]

    @pytest.mark.asyncio
    async def test_history_limit_bounds(self, api_client: AsyncClient) -> None:
        response = await api_client.get("/api/calls/history/contact-1", params={"limit": 500})

        assert response.status_code == 422


class TestPermissionApi:
    @pytest.mark.asyncio
    async def test_request_then_rate_limited(self, api_client: AsyncClient) -> None:
        body = {"contact_ref": CONTACT, "destination": DESTINATION}

        first = await api_client.post("/api/permissions/request", json=body)
        second = await api_client.post("/api/permissions/request", json=body)

        assert first.status_code == 201
        assert first.json()["status"] == "pending"
        assert first.json()["message_id"] == "MOCK_MSG_000001"
        assert second.status_code == 429
        assert second.json()["detail"]["code"] == "RATE_LIMITED"
        assert int(second.headers["Retry-After"]) > 0

    @pytest.mark.asyncio
    async def test_status(self, api_client: AsyncClient, approve) -> None:
        empty = await api_client.get(
            "/api/permissions/status", params={"contact_ref": CONTACT, "destination": DESTINATION}
        )
        await approve()
        approved = await api_client.get(
            "/api/permissions/status", params={"contact_ref": CONTACT, "destination": DESTINATION}
        )

        assert empty.json()["can_place_call"] is False
        assert empty.json()["can_request"] is True
        assert empty.json()["permission"] is None
        assert approved.json()["can_place_call"] is True
        assert approved.json()["calls_remaining"] == 5
        assert approved.json()["permission"]["status"] == "approved"


class TestVoiceWebhooks:
    @pytest.mark.asyncio
    async def test_inbound_call_is_bridged(self, api_client: AsyncClient) -> None:
        response = await api_client.post(
            "/webhooks/voice/inbound",
            data={
                "CallSid": "CA_WEB_1",
                "From": f"whatsapp:{DESTINATION}",
                "To": f"whatsapp:{BUSINESS_NUMBER}",
            },
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert "<Conference" in response.text
        assert ">whatsapp-call-CA_WEB_1</Conference>" in response.text

    @pytest.mark.asyncio
    async def test_inbound_without_sid_apologises(self, api_client: AsyncClient) -> None:
        response = await api_client.post("/webhooks/voice/inbound", data={"From": DESTINATION})

        assert response.status_code == 200
        assert "<Say>" in response.text
        assert "<Conference" not in response.text

    @pytest.mark.asyncio
    async def test_outbound_answer_joins_bridge(
        self,
        api_client: AsyncClient,
        approve,
        lifecycle: CallLifecycleManager,
    ) -> None:
        await approve()
        call = await lifecycle.create_outbound(CONTACT, DESTINATION, "agent-7")

        response = await api_client.post(
            f"/webhooks/voice/outbound/{call.id}",
            data={"CallSid": call.external_call_id, "CallStatus": "in-progress"},
        )

        assert 'startConferenceOnEnter="false"' in response.text
        assert f">outbound-call-{call.id}</Conference>" in response.text
        stored, _ = await lifecycle.get_call(call.id)
        assert stored.status == CallStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_outbound_not_answered_says_why(
        self,
        api_client: AsyncClient,
        approve,
        lifecycle: CallLifecycleManager,
    ) -> None:
        await approve()
        call = await lifecycle.create_outbound(CONTACT, DESTINATION, "agent-7")

        response = await api_client.post(
            f"/webhooks/voice/outbound/{call.id}",
            data={"CallSid": call.external_call_id, "DialCallStatus": "busy"},
        )

        assert "busy" in response.text
        assert "<Conference" not in response.text

    @pytest.mark.asyncio
    async def test_status_callbacks_always_acked(
        self,
        api_client: AsyncClient,
        lifecycle: CallLifecycleManager,
    ) -> None:
        call = await lifecycle.create_inbound(DESTINATION, BUSINESS_NUMBER, "CA_WEB_2")

        applied = await api_client.post(
            "/webhooks/voice/status",
            data={"CallSid": "CA_WEB_2", "CallStatus": "completed", "CallDuration": "33"},
        )
        unknown = await api_client.post(
            "/webhooks/voice/status", data={"CallSid": "CA_UNKNOWN", "CallStatus": "completed"}
        )
        garbage = await api_client.post("/webhooks/voice/status", data={"CallStatus": "completed"})

        for response in (applied, unknown, garbage):
            assert response.status_code == 200
            assert response.json() == {"ok": True}

        stored, _ = await lifecycle.get_call(call.id)
        assert stored.status == CallStatus.COMPLETED
        assert stored.duration_seconds == 33

    @pytest.mark.asyncio
    async def test_conference_and_recording_callbacks(
        self,
        api_client: AsyncClient,
        lifecycle: CallLifecycleManager,
    ) -> None:
        call = await lifecycle.create_inbound(DESTINATION, BUSINESS_NUMBER, "CA_WEB_3")

        for event, participant in (("participant-join", "CA_AGENT"), ("conference-end", "")):
            response = await api_client.post(
                f"/webhooks/voice/conference/{call.id}",
                data={
                    "StatusCallbackEvent": event,
                    "ConferenceSid": "CF_WEB",
                    "CallSid": participant,
                },
            )
            assert response.json() == {"ok": True}
        recording = await api_client.post(
            f"/webhooks/voice/recording/{call.id}",
            data={"RecordingUrl": "https://rec/RE_WEB", "RecordingSid": "RE_WEB"},
        )

        assert recording.json() == {"ok": True}
        stored, _ = await lifecycle.get_call(call.id)
        assert stored.status == CallStatus.COMPLETED
        assert stored.recording_url == "https://rec/RE_WEB"

    @pytest.mark.asyncio
    async def test_bad_signature_rejected(
        self,
        api_client: AsyncClient,
        telephony: MockTelephonyAdapter,
        telephony_config: TelephonyConfig,
    ) -> None:
        telephony_config.validate_signatures = True
        telephony.signature_valid = False

        response = await api_client.post(
            "/webhooks/voice/status",
            data={"CallSid": "CA1", "CallStatus": "completed"},
            headers={"X-Twilio-Signature": "forged"},
        )

        assert response.status_code == 403


class TestMessagingWebhook:
    @pytest.mark.asyncio
    async def test_consent_button_approves(
        self,
        api_client: AsyncClient,
        ledger: PermissionLedger,
    ) -> None:
        pending = await ledger.request_permission(CONTACT, DESTINATION)

        response = await api_client.post(
            "/webhooks/messaging",
            data={
                "MessageSid": "MM_WEB_1",
                "From": f"whatsapp:{DESTINATION}",
                "Body": "VOICE_CALL_REQUEST",
                "ButtonPayload": "ACCEPTED",
                "OriginalRepliedMessageSid": pending.message_id,
            },
        )

        assert response.status_code == 200
        assert response.text.strip().endswith("</Response>")
        snapshot = await ledger.get_permission_status(CONTACT, DESTINATION)
        assert snapshot.can_place_call is True

    @pytest.mark.asyncio
    async def test_ordinary_message_acked(self, api_client: AsyncClient) -> None:
        response = await api_client.post(
            "/webhooks/messaging",
            data={"MessageSid": "MM_WEB_2", "From": f"whatsapp:{DESTINATION}", "Body": "hi"},
        )

        assert response.status_code == 200


class TestPlumbing:
    @pytest.mark.asyncio
    async def test_health(self, api_client: AsyncClient) -> None:
        response = await api_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, api_client: AsyncClient) -> None:
        response = await api_client.get("/health", headers={"X-Request-ID": "req-abc"})
        generated = await api_client.get("/health")

        assert response.headers["X-Request-ID"] == "req-abc"
        assert generated.headers["X-Request-ID"]
