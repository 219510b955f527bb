"""
Messaging provider configuration.
"""

from enum import Enum

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class MessagingProviderType(str, Enum):
    TWILIO = "twilio"
    MOCK = "mock"


class MessagingConfig(BaseSettings):
    """Messaging (consent prompt) provider configuration from environment."""

    model_config = SettingsConfigDict(
        env_prefix="MESSAGING_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    provider_type: MessagingProviderType = Field(default=MessagingProviderType.MOCK)

    twilio_account_sid: str = Field(default="")
    twilio_auth_token: str = Field(default="")
    twilio_from_number: str = Field(default="")
    twilio_api_base_url: str = Field(default="https://api.twilio.com/2010-04-01")

    http_timeout_seconds: float = Field(default=15.0, gt=0)


def get_messaging_config() -> MessagingConfig:
    return MessagingConfig()
