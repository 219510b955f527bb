"""
Call permission (consent) ledger.
"""

from callbridge.permissions.models import (
    CallPermission,
    ConsentDecision,
    PermissionOutcome,
    PermissionStatus,
)

__all__ = [
    "CallPermission",
    "ConsentDecision",
    "PermissionOutcome",
    "PermissionStatus",
]
