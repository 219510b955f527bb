"""
Telephony provider integration: dialing, hangup, bridging and webhooks.
"""

from callbridge.telephony.interface import (
    BridgeRequest,
    BridgeRole,
    DialError,
    DialRequest,
    DialResult,
    TelephonyProvider,
    TelephonyProviderError,
    TerminateError,
)

__all__ = [
    "BridgeRequest",
    "BridgeRole",
    "DialError",
    "DialRequest",
    "DialResult",
    "TelephonyProvider",
    "TelephonyProviderError",
    "TerminateError",
]
