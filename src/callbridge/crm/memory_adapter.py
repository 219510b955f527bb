"""
In-memory CRM adapter for development and testing.
"""

from callbridge.crm.interface import CallSummary, ContactHints, ContactResolver, CrmSync, SyncError


class InMemoryCrm(CrmSync, ContactResolver):
    def __init__(self) -> None:
        self.contacts: dict[str, str] = {}
        self.activities: list[tuple[str, CallSummary]] = []
        self._should_fail = False
        self._next_id = 1

    def configure_failure(self, should_fail: bool = True) -> None:
        self._should_fail = should_fail

    async def log_call_activity(self, contact_ref: str, summary: CallSummary) -> None:
        if self._should_fail:
            raise SyncError(message="Mock failure", error_code="MOCK_ERROR")
        self.activities.append((contact_ref, summary))

    async def find_or_create_contact(self, hints: ContactHints) -> str:
        contact_ref = self.contacts.get(hints.address)
        if contact_ref is None:
            contact_ref = f"contact-{self._next_id}"
            self._next_id += 1
            self.contacts[hints.address] = contact_ref
        return contact_ref
