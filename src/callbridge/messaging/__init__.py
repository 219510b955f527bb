"""
Messaging provider integration (consent prompts).
"""

from callbridge.messaging.config import MessagingConfig, MessagingProviderType
from callbridge.messaging.interface import MessagingProvider, SendError
from callbridge.messaging.mock_adapter import MockMessagingAdapter
from callbridge.messaging.twilio_adapter import TwilioMessagingAdapter


def build_messaging_provider(cfg: MessagingConfig | None = None) -> MessagingProvider:
    cfg = cfg or MessagingConfig()
    if cfg.provider_type == MessagingProviderType.TWILIO:
        return TwilioMessagingAdapter(cfg)
    return MockMessagingAdapter()


__all__ = [
    "MessagingProvider",
    "MockMessagingAdapter",
    "SendError",
    "TwilioMessagingAdapter",
    "build_messaging_provider",
]
