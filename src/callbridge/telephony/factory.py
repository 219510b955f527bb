"""
Telephony provider factory.

Configuration comes only from TelephonyConfig (environment + .env).
"""

from functools import lru_cache

from callbridge.shared.logging import get_logger
from callbridge.telephony.config import ProviderType, TelephonyConfig
from callbridge.telephony.config import get_telephony_config as _load_telephony_config
from callbridge.telephony.interface import TelephonyProvider
from callbridge.telephony.mock_adapter import MockTelephonyAdapter
from callbridge.telephony.twilio_adapter import TwilioAdapter

logger = get_logger(__name__)


def _mask(s: str, keep: int = 6) -> str:
    if not s:
        return ""
    if len(s) <= keep:
        return "*" * len(s)
    return f"{s[:keep]}***"


@lru_cache(maxsize=1)
def get_telephony_config() -> TelephonyConfig:
    return _load_telephony_config()


def build_telephony_provider(cfg: TelephonyConfig | None = None) -> TelephonyProvider:
    """Create the telephony provider selected by ``provider_type``."""
    cfg = cfg or get_telephony_config()

    logger.info(
        "Telephony config resolved",
        extra={
            "provider_type": cfg.provider_type.value,
            "twilio_account_sid": _mask(cfg.twilio_account_sid),
            "twilio_from_number": cfg.twilio_from_number,
            "webhook_base_url": cfg.webhook_base_url,
            "validate_signatures": cfg.validate_signatures,
        },
    )

    if cfg.provider_type == ProviderType.TWILIO:
        return TwilioAdapter(cfg)

    if cfg.provider_type == ProviderType.MOCK:
        return MockTelephonyAdapter()

    raise ValueError(f"Unsupported telephony provider_type: {cfg.provider_type}")
