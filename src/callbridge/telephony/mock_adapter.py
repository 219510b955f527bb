"""
Mock telephony provider adapter for development and testing.
"""

from datetime import datetime, timezone

from callbridge.shared.logging import get_logger
from callbridge.telephony import twiml
from callbridge.telephony.interface import (
    BridgeRequest,
    DialError,
    DialRequest,
    DialResult,
    TelephonyProvider,
    TerminateError,
)

logger = get_logger(__name__)


class MockTelephonyAdapter(TelephonyProvider):
    """In-memory telephony provider that records what it was asked to do."""

    def __init__(self) -> None:
        self._dials: list[DialRequest] = []
        self._terminated: list[str] = []
        self._next_call_id: int = 1
        self._dial_fails: bool = False
        self._terminate_fails: bool = False
        self._fail_error: str = "Mock failure"
        self._fail_code: str = "MOCK_ERROR"
        self.signature_valid: bool = True

    def reset(self) -> None:
        self._dials.clear()
        self._terminated.clear()
        self._next_call_id = 1
        self._dial_fails = False
        self._terminate_fails = False
        self._fail_error = "Mock failure"
        self._fail_code = "MOCK_ERROR"
        self.signature_valid = True

    def configure_failure(
        self,
        dial: bool = True,
        terminate: bool = False,
        error_message: str = "Mock failure",
        error_code: str = "MOCK_ERROR",
    ) -> None:
        self._dial_fails = dial
        self._terminate_fails = terminate
        self._fail_error = error_message
        self._fail_code = error_code

    @property
    def dials(self) -> list[DialRequest]:
        return self._dials.copy()

    @property
    def terminated(self) -> list[str]:
        return self._terminated.copy()

    def get_last_dial(self) -> DialRequest | None:
        return self._dials[-1] if self._dials else None

    async def dial(self, request: DialRequest) -> DialResult:
        logger.info(
            "Mock: Initiating call",
            extra={"to": request.to_address, "call_id": str(request.call_id)},
        )

        if self._dial_fails:
            raise DialError(message=self._fail_error, error_code=self._fail_code)

        self._dials.append(request)
        external_call_id = f"MOCK_CALL_{self._next_call_id:06d}"
        self._next_call_id += 1

        return DialResult(
            external_call_id=external_call_id,
            status="queued",
            created_at=datetime.now(timezone.utc),
            raw_response={"mock": True, "call_id": str(request.call_id)},
        )

    async def terminate(self, external_call_id: str) -> None:
        logger.info("Mock: Terminating call", extra={"external_call_id": external_call_id})
        if self._terminate_fails:
            raise TerminateError(message=self._fail_error, error_code=self._fail_code)
        self._terminated.append(external_call_id)

    def bridge_instructions(self, request: BridgeRequest) -> str:
        return twiml.conference_bridge(request, hold_music_url="", record=False)

    def unavailable_instructions(self, message: str) -> str:
        return twiml.say(message)

    def validate_webhook_signature(
        self,
        url: str,
        params: dict[str, str],
        signature: str,
    ) -> bool:
        return self.signature_valid
