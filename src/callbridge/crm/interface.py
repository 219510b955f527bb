"""
CRM collaborator interfaces.

Two roles: recording a finished call on the contact's timeline, and turning
an inbound caller's address into a CRM contact reference.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

from callbridge.shared.exceptions import CollaboratorError


class SyncError(CollaboratorError):
    """Error while writing to the CRM."""


@dataclass(frozen=True)
class CallSummary:
    """What the CRM is told about a finished call."""

    call_id: str
    direction: str
    status: str
    from_address: str
    to_address: str
    start_time: datetime | None
    duration_seconds: int | None = None
    recording_url: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class ContactHints:
    """What is known about a caller before they are matched to a contact."""

    address: str
    display_name: str | None = None


class CrmSync(ABC):
    @abstractmethod
    async def log_call_activity(self, contact_ref: str, summary: CallSummary) -> None:
        """Attach a call record to the contact.

        Raises:
            SyncError: The CRM refused or could not be reached.
        """
        ...

    async def close(self) -> None:
        return None


class ContactResolver(ABC):
    @abstractmethod
    async def find_or_create_contact(self, hints: ContactHints) -> str:
        """Return the contact reference for the caller, creating one if needed."""
        ...
