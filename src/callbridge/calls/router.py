"""
API router for call operations.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from callbridge.calls.lifecycle import CallLifecycleManager
from callbridge.calls.schemas import (
    CallDetailResponse,
    CallHistoryResponse,
    CallResponse,
    OutboundCallRequest,
)
from callbridge.dependencies import get_lifecycle
from callbridge.shared.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/calls", tags=["calls"])

Lifecycle = Annotated[CallLifecycleManager, Depends(get_lifecycle)]


@router.post(
    "/outbound",
    response_model=CallResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Place an outbound call",
    description="Dial a contact that has an approved, unexhausted call permission. "
    "Returns 403 with can_request when no permission allows the call.",
)
async def create_outbound_call(
    body: OutboundCallRequest,
    lifecycle: Lifecycle,
) -> CallResponse:
    call = await lifecycle.create_outbound(
        body.contact_ref,
        body.destination,
        body.agent_identity,
        notes=body.notes,
    )
    logger.info(
        "Outbound call requested via API",
        extra={"call_id": str(call.id), "agent_identity": body.agent_identity},
    )
    return CallResponse.from_call(call)


@router.post("/{call_ref}/hangup", response_model=CallResponse)
async def hangup_call(call_ref: str, lifecycle: Lifecycle) -> CallResponse:
    """Hang up a call by internal id or provider call id."""
    call = await lifecycle.hangup(call_ref)
    return CallResponse.from_call(call)


@router.get("/history/{contact_ref}", response_model=CallHistoryResponse)
async def call_history(
    contact_ref: str,
    lifecycle: Lifecycle,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> CallHistoryResponse:
    calls, total = await lifecycle.list_calls_for_contact(contact_ref, limit=limit, offset=offset)
    return CallHistoryResponse(
        calls=[CallResponse.from_call(c) for c in calls],
        total=total,
        limit=limit,
        offset=offset,
        has_more=offset + len(calls) < total,
    )


@router.get("/{call_ref}", response_model=CallDetailResponse)
async def get_call(call_ref: str, lifecycle: Lifecycle) -> CallDetailResponse:
    call, events = await lifecycle.get_call(call_ref)
    return CallDetailResponse.build(call, list(events))
