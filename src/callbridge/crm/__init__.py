"""
CRM integration: call activity logging and contact resolution.
"""

from callbridge.crm.config import CrmConfig, CrmProviderType
from callbridge.crm.hubspot_adapter import HubSpotAdapter
from callbridge.crm.interface import CallSummary, ContactHints, ContactResolver, CrmSync, SyncError
from callbridge.crm.memory_adapter import InMemoryCrm


def build_crm(cfg: CrmConfig | None = None) -> HubSpotAdapter | InMemoryCrm:
    """Build the CRM adapter; it serves both the sync and resolver roles."""
    cfg = cfg or CrmConfig()
    if cfg.provider_type == CrmProviderType.HUBSPOT:
        return HubSpotAdapter(cfg)
    return InMemoryCrm()


__all__ = [
    "CallSummary",
    "ContactHints",
    "ContactResolver",
    "CrmSync",
    "HubSpotAdapter",
    "InMemoryCrm",
    "SyncError",
    "build_crm",
]
