"""
Telephony provider configuration.
"""

from enum import Enum

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderType(str, Enum):
    """Supported telephony provider types."""

    TWILIO = "twilio"
    MOCK = "mock"


class TelephonyConfig(BaseSettings):
    """Telephony provider configuration from environment."""

    model_config = SettingsConfigDict(
        env_prefix="TELEPHONY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Provider selection
    provider_type: ProviderType = Field(default=ProviderType.MOCK)

    # Provider credentials
    twilio_account_sid: str = Field(default="")
    twilio_auth_token: str = Field(default="")
    # Business number calls and prompts are sent from (bare E.164, no channel prefix)
    twilio_from_number: str = Field(default="")
    twilio_api_base_url: str = Field(default="https://api.twilio.com/2010-04-01")

    # Public base URL the provider calls back into
    webhook_base_url: str = Field(default="http://localhost:8000")

    call_timeout_seconds: int = Field(default=60, ge=10, le=300)
    http_timeout_seconds: float = Field(default=15.0, gt=0)
    record_calls: bool = Field(default=True)
    hold_music_url: str = Field(
        default="http://twimlets.com/holdmusic?Bucket=com.twilio.music.ambient"
    )

    # Reject webhooks whose X-Twilio-Signature does not verify
    validate_signatures: bool = Field(default=False)

    def get_webhook_url(self, path: str) -> str:
        base = self.webhook_base_url.rstrip("/")
        return f"{base}{path}"


def get_telephony_config() -> TelephonyConfig:
    return TelephonyConfig()
