"""
CRM provider configuration.
"""

from enum import Enum

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CrmProviderType(str, Enum):
    HUBSPOT = "hubspot"
    MEMORY = "memory"


class CrmConfig(BaseSettings):
    """CRM provider configuration from environment."""

    model_config = SettingsConfigDict(
        env_prefix="CRM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    provider_type: CrmProviderType = Field(default=CrmProviderType.MEMORY)

    hubspot_access_token: str = Field(default="")
    hubspot_api_base_url: str = Field(default="https://api.hubapi.com")
    # Custom contact property holding the WhatsApp number
    hubspot_whatsapp_property: str = Field(default="whatsapp_number")

    http_timeout_seconds: float = Field(default=15.0, gt=0)


def get_crm_config() -> CrmConfig:
    return CrmConfig()
