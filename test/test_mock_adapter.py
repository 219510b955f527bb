"""Tests for the mock telephony adapter."""

from uuid import uuid4

import pytest

from callbridge.telephony.interface import BridgeRequest, BridgeRole, DialError, DialRequest, TerminateError
from callbridge.telephony.mock_adapter import MockTelephonyAdapter


@pytest.fixture
def mock_adapter() -> MockTelephonyAdapter:
    return MockTelephonyAdapter()


@pytest.fixture
def dial_request() -> DialRequest:
    return DialRequest(
        call_id=uuid4(),
        to_address="+14155551234",
        from_address="+14155550000",
        answer_url="https://example.com/answer",
        status_callback_url="https://example.com/status",
    )


class TestMockDial:
    @pytest.mark.asyncio
    async def test_dial_assigns_sequential_ids(
        self,
        mock_adapter: MockTelephonyAdapter,
        dial_request: DialRequest,
    ) -> None:
        first = await mock_adapter.dial(dial_request)
        second = await mock_adapter.dial(dial_request)

        assert first.external_call_id == "MOCK_CALL_000001"
        assert second.external_call_id == "MOCK_CALL_000002"
        assert first.status == "queued"
        assert first.raw_response["mock"] is True
        assert mock_adapter.get_last_dial() == dial_request
        assert len(mock_adapter.dials) == 2

    @pytest.mark.asyncio
    async def test_configured_dial_failure(
        self,
        mock_adapter: MockTelephonyAdapter,
        dial_request: DialRequest,
    ) -> None:
        mock_adapter.configure_failure(error_message="No route", error_code="13224")

        with pytest.raises(DialError) as exc_info:
            await mock_adapter.dial(dial_request)

        assert exc_info.value.error_code == "13224"
        assert mock_adapter.dials == []

    @pytest.mark.asyncio
    async def test_reset(self, mock_adapter: MockTelephonyAdapter, dial_request: DialRequest) -> None:
        mock_adapter.configure_failure()
        mock_adapter.signature_valid = False

        mock_adapter.reset()

        result = await mock_adapter.dial(dial_request)
        assert result.external_call_id == "MOCK_CALL_000001"
        assert mock_adapter.validate_webhook_signature("https://x", {}, "") is True


class TestMockTerminate:
    @pytest.mark.asyncio
    async def test_records_terminations(self, mock_adapter: MockTelephonyAdapter) -> None:
        await mock_adapter.terminate("CA1")

        assert mock_adapter.terminated == ["CA1"]

    @pytest.mark.asyncio
    async def test_configured_terminate_failure(self, mock_adapter: MockTelephonyAdapter) -> None:
        mock_adapter.configure_failure(dial=False, terminate=True)

        with pytest.raises(TerminateError):
            await mock_adapter.terminate("CA1")
        assert mock_adapter.terminated == []


def test_bridge_instructions_skip_music_and_recording(mock_adapter: MockTelephonyAdapter) -> None:
    xml = mock_adapter.bridge_instructions(
        BridgeRequest(
            call_id=uuid4(),
            conference_name="whatsapp-call-CA1",
            role=BridgeRole.INBOUND_CUSTOMER,
            status_callback_url="https://example.com/conf",
            recording_callback_url="https://example.com/rec",
        )
    )

    assert "whatsapp-call-CA1" in xml
    assert "waitUrl" not in xml
    assert "record=" not in xml
