"""
Address helpers for the WhatsApp voice channel.

Destinations are stored bare (``+14155550100``); the channel prefix is only
added when talking to the provider.
"""

import re

from callbridge.shared.exceptions import ValidationError

CHANNEL_PREFIX = "whatsapp:"

_E164 = re.compile(r"^\+[1-9]\d{6,14}$")


def normalize_destination(address: str | None) -> str:
    """Strip the channel prefix and whitespace and validate E.164 format."""
    if not address or not str(address).strip():
        raise ValidationError("Destination address is required")

    value = str(address).strip()
    if value.lower().startswith(CHANNEL_PREFIX):
        value = value[len(CHANNEL_PREFIX):]
    value = value.replace(" ", "").replace("-", "")

    if not _E164.match(value):
        raise ValidationError(
            "Destination must be an E.164 phone number",
            {"destination": address},
        )
    return value


def channel_address(address: str) -> str:
    """Return the provider-facing address (``whatsapp:+1...``)."""
    if address.lower().startswith(CHANNEL_PREFIX):
        return address
    return f"{CHANNEL_PREFIX}{address}"


def strip_channel(address: str | None) -> str:
    """Drop the channel prefix without validating (provider-side numbers)."""
    value = (address or "").strip()
    if value.lower().startswith(CHANNEL_PREFIX):
        value = value[len(CHANNEL_PREFIX):]
    return value
