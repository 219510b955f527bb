"""
Pydantic schemas for the permissions API.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from callbridge.permissions.ledger import PermissionSnapshot
from callbridge.permissions.models import PermissionStatus


class PermissionRequestBody(BaseModel):
    contact_ref: str = Field(..., min_length=1, max_length=100)
    destination: str = Field(..., min_length=1, max_length=64, description="E.164 address")


class PermissionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contact_ref: str
    destination: str
    status: PermissionStatus
    requested_at: datetime
    responded_at: datetime | None
    expires_at: datetime
    calls_used: int
    max_calls: int
    consecutive_missed_calls: int
    message_id: str | None


class PermissionStatusResponse(BaseModel):
    contact_ref: str
    destination: str
    can_place_call: bool
    can_request: bool
    calls_remaining: int
    retry_after_seconds: int | None = None
    permission: PermissionResponse | None = None

    @classmethod
    def from_snapshot(cls, snapshot: PermissionSnapshot) -> "PermissionStatusResponse":
        permission = (
            PermissionResponse.model_validate(snapshot.permission)
            if snapshot.permission is not None
            else None
        )
        return cls(
            contact_ref=snapshot.contact_ref,
            destination=snapshot.destination,
            can_place_call=snapshot.can_place_call,
            can_request=snapshot.can_request,
            calls_remaining=snapshot.calls_remaining,
            retry_after_seconds=snapshot.retry_after_seconds,
            permission=permission,
        )
