"""
Twilio messaging adapter (WhatsApp content templates).
"""

from typing import Any

import httpx

from callbridge.messaging.config import MessagingConfig, get_messaging_config
from callbridge.messaging.interface import MessagingProvider, SendError
from callbridge.shared.addresses import channel_address
from callbridge.shared.logging import get_logger

logger = get_logger(__name__)


class TwilioMessagingAdapter(MessagingProvider):
    """Sends consent prompts through the Messages REST resource."""

    def __init__(
        self,
        config: MessagingConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or get_messaging_config()
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

    def _messages_url(self) -> str:
        base = self._config.twilio_api_base_url.rstrip("/")
        return f"{base}/Accounts/{self._config.twilio_account_sid}/Messages.json"

    async def send_consent_prompt(self, destination: str, template_ref: str) -> str:
        if not template_ref:
            raise SendError(message="No consent template configured", error_code="NO_TEMPLATE")

        payload = {
            "To": channel_address(destination),
            "From": channel_address(self._config.twilio_from_number),
            "ContentSid": template_ref,
        }

        try:
            response = await self._get_client().post(
                self._messages_url(),
                data=payload,
                auth=(self._config.twilio_account_sid, self._config.twilio_auth_token),
            )
        except httpx.HTTPError as e:
            logger.exception("HTTP error sending consent prompt", extra={"to": destination})
            raise SendError(message=f"HTTP error: {e!s}", error_code="HTTP_ERROR") from e

        try:
            data: dict[str, Any] = response.json() if response.content else {}
        except ValueError:
            data = {"body": response.text}
        if response.status_code >= 400:
            logger.error(
                "Consent prompt rejected by Twilio",
                extra={"status_code": response.status_code, "error": data, "to": destination},
            )
            raise SendError(
                message=data.get("message", "Message send failed"),
                error_code=str(data.get("code", response.status_code)),
                provider_response=data,
            )

        message_id = data.get("sid")
        if not message_id:
            raise SendError(
                message="Provider response missing message sid",
                error_code="MISSING_MESSAGE_SID",
                provider_response=data,
            )

        logger.info("Consent prompt sent", extra={"to": destination, "message_id": message_id})
        return message_id
