"""
Twilio telephony provider adapter.

Calls are placed to the customer's WhatsApp address through the Calls REST
resource; bridging is a named conference rendered as TwiML.
"""

import hashlib
import hmac
from base64 import b64encode
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from callbridge.shared.addresses import channel_address
from callbridge.shared.logging import get_logger
from callbridge.telephony import twiml
from callbridge.telephony.config import TelephonyConfig, get_telephony_config
from callbridge.telephony.interface import (
    BridgeRequest,
    DialError,
    DialRequest,
    DialResult,
    TelephonyProvider,
    TerminateError,
)

logger = get_logger(__name__)


def _parse_twilio_date(value: str | None) -> datetime:
    # Twilio returns RFC 2822 dates ("Tue, 31 Aug 2010 20:36:28 +0000").
    if not value:
        return datetime.now(timezone.utc)
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)


def _error_payload(response: httpx.Response) -> dict[str, Any]:
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {"body": response.text}
    return data if isinstance(data, dict) else {"body": data}


def compute_signature(auth_token: str, url: str, params: dict[str, str]) -> str:
    """Twilio request signature: HMAC-SHA1 over URL + sorted key/value pairs."""
    data_str = url
    for key in sorted(params.keys()):
        data_str += key + str(params[key])
    digest = hmac.new(
        auth_token.encode("utf-8"),
        data_str.encode("utf-8"),
        hashlib.sha1,
    ).digest()
    return b64encode(digest).decode("utf-8")


class TwilioAdapter(TelephonyProvider):
    """Twilio telephony provider adapter over httpx."""

    def __init__(
        self,
        config: TelephonyConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or get_telephony_config()
        self._http_client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.http_timeout_seconds)
            )
        return self._http_client

    async def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _get_auth(self) -> tuple[str, str]:
        return (self._config.twilio_account_sid, self._config.twilio_auth_token)

    def _get_api_url(self, endpoint: str) -> str:
        base = self._config.twilio_api_base_url.rstrip("/")
        return f"{base}/Accounts/{self._config.twilio_account_sid}{endpoint}"

    async def dial(self, request: DialRequest) -> DialResult:
        """Place an outbound WhatsApp call via Twilio."""
        payload: dict[str, Any] = {
            "To": channel_address(request.to_address),
            "From": channel_address(request.from_address),
            "Url": request.answer_url,
            "Method": "POST",
            "StatusCallback": request.status_callback_url,
            "StatusCallbackEvent": ["initiated", "ringing", "answered", "completed"],
            "StatusCallbackMethod": "POST",
            "Timeout": self._config.call_timeout_seconds,
        }
        if self._config.record_calls and request.recording_callback_url:
            payload["Record"] = "true"
            payload["RecordingStatusCallback"] = request.recording_callback_url

        logger.info(
            "Initiating Twilio call",
            extra={"to": request.to_address, "call_id": str(request.call_id)},
        )

        try:
            response = await self._get_client().post(
                self._get_api_url("/Calls.json"),
                data=payload,
                auth=self._get_auth(),
            )
        except httpx.HTTPError as e:
            logger.exception(
                "HTTP error during Twilio call initiation",
                extra={"call_id": str(request.call_id)},
            )
            raise DialError(
                message=f"HTTP error: {e!s}",
                error_code="HTTP_ERROR",
            ) from e

        if response.status_code >= 400:
            error_data = _error_payload(response)
            logger.error(
                "Twilio call initiation failed",
                extra={
                    "status_code": response.status_code,
                    "error": error_data,
                    "call_id": str(request.call_id),
                },
            )
            raise DialError(
                message=error_data.get("message", "Call initiation failed"),
                error_code=str(error_data.get("code", response.status_code)),
                provider_response=error_data,
            )

        try:
            data = response.json()
        except ValueError as e:
            logger.error(
                "Twilio returned a non-JSON call response",
                extra={"status_code": response.status_code, "call_id": str(request.call_id)},
            )
            raise DialError(
                message="Provider returned a malformed response",
                error_code="MALFORMED_RESPONSE",
                provider_response={"body": response.text},
            ) from e
        if not isinstance(data, dict):
            raise DialError(
                message="Provider returned a malformed response",
                error_code="MALFORMED_RESPONSE",
                provider_response={"body": data},
            )
        if not data.get("sid"):
            raise DialError(
                message="Provider response missing call sid",
                error_code="MISSING_CALL_SID",
                provider_response=data,
            )

        return DialResult(
            external_call_id=data["sid"],
            status=data.get("status", "queued"),
            created_at=_parse_twilio_date(data.get("date_created")),
            raw_response=data,
        )

    async def terminate(self, external_call_id: str) -> None:
        """Hang up by moving the live call to ``completed``."""
        url = self._get_api_url(f"/Calls/{external_call_id}.json")
        try:
            response = await self._get_client().post(
                url,
                data={"Status": "completed"},
                auth=self._get_auth(),
            )
        except httpx.HTTPError as e:
            logger.exception(
                "HTTP error during Twilio hangup",
                extra={"external_call_id": external_call_id},
            )
            raise TerminateError(
                message=f"HTTP error: {e!s}",
                error_code="HTTP_ERROR",
            ) from e

        if response.status_code >= 400:
            error_data = _error_payload(response)
            logger.error(
                "Twilio hangup failed",
                extra={
                    "status_code": response.status_code,
                    "error": error_data,
                    "external_call_id": external_call_id,
                },
            )
            raise TerminateError(
                message=error_data.get("message", "Hangup failed"),
                error_code=str(error_data.get("code", response.status_code)),
                provider_response=error_data,
            )

    def bridge_instructions(self, request: BridgeRequest) -> str:
        return twiml.conference_bridge(
            request,
            hold_music_url=self._config.hold_music_url,
            record=self._config.record_calls,
        )

    def unavailable_instructions(self, message: str) -> str:
        return twiml.say(message)

    def validate_webhook_signature(
        self,
        url: str,
        params: dict[str, str],
        signature: str,
    ) -> bool:
        if not self._config.twilio_auth_token:
            logger.warning("No auth token configured, skipping signature validation")
            return True
        if not signature:
            return False

        expected = compute_signature(self._config.twilio_auth_token, url, params)
        return hmac.compare_digest(expected, signature)
