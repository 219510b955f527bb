"""
Telephony provider interface definition.

The provider places calls, hangs them up, renders the instructions that bridge
a customer leg with an agent, and authenticates its own webhooks. Status
reporting flows back through webhooks and is never polled.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from callbridge.shared.exceptions import CollaboratorError


class BridgeRole(str, Enum):
    """Which leg is being placed into the bridge."""

    INBOUND_CUSTOMER = "inbound_customer"
    OUTBOUND_CUSTOMER = "outbound_customer"


@dataclass(frozen=True)
class DialRequest:
    """Request to place an outbound call."""

    call_id: UUID
    to_address: str
    from_address: str
    answer_url: str
    status_callback_url: str
    recording_callback_url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DialResult:
    """Provider acknowledgement of a placed call."""

    external_call_id: str
    status: str
    created_at: datetime
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BridgeRequest:
    """What the provider needs to drop a leg into a two-party bridge."""

    call_id: UUID
    conference_name: str
    role: BridgeRole
    status_callback_url: str
    recording_callback_url: str | None = None


class TelephonyProviderError(CollaboratorError):
    """Base exception for telephony provider errors."""


class DialError(TelephonyProviderError):
    """Error while placing an outbound call."""


class TerminateError(TelephonyProviderError):
    """Error while hanging up a call."""


class TelephonyProvider(ABC):
    """Abstract interface for telephony providers."""

    @abstractmethod
    async def dial(self, request: DialRequest) -> DialResult:
        """Place an outbound call.

        Raises:
            DialError: The provider refused or could not be reached.
        """
        ...

    @abstractmethod
    async def terminate(self, external_call_id: str) -> None:
        """Hang up a live call.

        Raises:
            TerminateError: The provider refused or could not be reached.
        """
        ...

    @abstractmethod
    def bridge_instructions(self, request: BridgeRequest) -> str:
        """Render provider instructions that place the leg into the bridge."""
        ...

    @abstractmethod
    def unavailable_instructions(self, message: str) -> str:
        """Render instructions that apologise and end the leg."""
        ...

    @abstractmethod
    def validate_webhook_signature(
        self,
        url: str,
        params: dict[str, str],
        signature: str,
    ) -> bool:
        """Validate webhook signature for authenticity."""
        ...

    async def close(self) -> None:
        """Release any held network resources."""
        return None
