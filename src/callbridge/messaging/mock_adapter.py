"""
Mock messaging adapter for development and testing.
"""

from dataclasses import dataclass

from callbridge.messaging.interface import MessagingProvider, SendError
from callbridge.shared.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SentPrompt:
    destination: str
    template_ref: str
    message_id: str


class MockMessagingAdapter(MessagingProvider):
    def __init__(self) -> None:
        self._sent: list[SentPrompt] = []
        self._next_id = 1
        self._should_fail = False

    def configure_failure(self, should_fail: bool = True) -> None:
        self._should_fail = should_fail

    @property
    def sent(self) -> list[SentPrompt]:
        return self._sent.copy()

    async def send_consent_prompt(self, destination: str, template_ref: str) -> str:
        if self._should_fail:
            raise SendError(message="Mock failure", error_code="MOCK_ERROR")
        message_id = f"MOCK_MSG_{self._next_id:06d}"
        self._next_id += 1
        self._sent.append(SentPrompt(destination, template_ref, message_id))
        logger.info("Mock: consent prompt sent", extra={"to": destination, "message_id": message_id})
        return message_id
