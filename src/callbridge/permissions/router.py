"""
API router for call permission requests.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from callbridge.dependencies import get_fanout, get_ledger
from callbridge.notifications.fanout import NotificationFanout, permission_digest
from callbridge.permissions.ledger import PermissionLedger
from callbridge.permissions.schemas import (
    PermissionRequestBody,
    PermissionResponse,
    PermissionStatusResponse,
)
from callbridge.shared.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/permissions", tags=["permissions"])

Ledger = Annotated[PermissionLedger, Depends(get_ledger)]


@router.post(
    "/request",
    response_model=PermissionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Ask a contact for permission to call",
    description="Sends the consent prompt. At most one request per day and two "
    "per week are sent for a contact/destination pair; beyond that 429 is returned.",
)
async def request_permission(
    body: PermissionRequestBody,
    ledger: Ledger,
    fanout: Annotated[NotificationFanout, Depends(get_fanout)],
) -> PermissionResponse:
    permission = await ledger.request_permission(body.contact_ref, body.destination)
    fanout.publish(permission_digest(permission))
    return PermissionResponse.model_validate(permission)


@router.get("/status", response_model=PermissionStatusResponse)
async def permission_status(
    ledger: Ledger,
    contact_ref: Annotated[str, Query(min_length=1)],
    destination: Annotated[str, Query(min_length=1)],
) -> PermissionStatusResponse:
    snapshot = await ledger.get_permission_status(contact_ref, destination)
    return PermissionStatusResponse.from_snapshot(snapshot)
