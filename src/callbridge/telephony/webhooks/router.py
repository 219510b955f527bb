"""
FastAPI router for provider webhooks.

Key constraints:
- Twilio must get an answer fast: handlers parse, hand the event to the
  correlator and return.
- Status-style callbacks are always ACKed with 200 once the outcome is
  recorded, including for payloads that did not parse.
- Voice answer webhooks always return TwiML; failures fall back to an apology.
"""

from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Depends, Request, Response, status

from callbridge.calls.models import EventSource
from callbridge.correlation.correlator import EventCorrelator
from callbridge.dependencies import (
    get_correlator,
    get_lifecycle,
    get_telephony,
    get_telephony_cfg,
)
from callbridge.calls.lifecycle import CallLifecycleManager
from callbridge.shared.logging import get_logger
from callbridge.telephony import twiml
from callbridge.telephony.config import TelephonyConfig
from callbridge.telephony.interface import BridgeRequest, BridgeRole, TelephonyProvider
from callbridge.telephony.webhooks.parser import (
    IDEMPOTENCY_HEADER,
    WebhookParseError,
    parse_call_status,
    parse_channel_message,
    parse_conference_event,
    parse_inbound_call,
    parse_recording,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "X-Twilio-Signature"

UNAVAILABLE_MESSAGE = "We are currently unable to take your call. Please try again later."
OUTBOUND_FAILURE_MESSAGES = {
    "busy": "The number you are calling is busy. Please try again later.",
    "no-answer": "There was no answer. Please try again later.",
    "failed": "The call could not be completed. Please check the number and try again.",
}
ANSWERED_STATUSES = ("in-progress", "answered")

Correlator = Annotated[EventCorrelator, Depends(get_correlator)]
Provider = Annotated[TelephonyProvider, Depends(get_telephony)]
ProviderConfig = Annotated[TelephonyConfig, Depends(get_telephony_cfg)]


def _xml(content: str) -> Response:
    return Response(content=content, media_type="application/xml")


async def _read_payload(request: Request) -> tuple[dict[str, str], dict[str, str]]:
    """Return (form, payload); payload is form merged with query params."""
    try:
        form = {key: str(value) for key, value in (await request.form()).items()}
    except Exception:
        form = {}

    payload = dict(form)
    payload.update(dict(request.query_params))
    return form, payload


def _signature_ok(
    request: Request,
    provider: TelephonyProvider,
    cfg: TelephonyConfig,
    form: dict[str, str],
) -> bool:
    if not cfg.validate_signatures:
        return True

    # Twilio signs the public URL it called, query string included.
    path = request.url.path
    if request.url.query:
        path = f"{path}?{request.url.query}"
    url = cfg.get_webhook_url(path)

    valid = provider.validate_webhook_signature(
        url, form, request.headers.get(SIGNATURE_HEADER, "")
    )
    if not valid:
        logger.warning("Rejected webhook with invalid signature", extra={"path": request.url.path})
    return valid


def _forbidden() -> Response:
    return Response(status_code=status.HTTP_403_FORBIDDEN)


def _bridge_request(
    cfg: TelephonyConfig,
    call_id: UUID,
    conference_name: str,
    role: BridgeRole,
) -> BridgeRequest:
    return BridgeRequest(
        call_id=call_id,
        conference_name=conference_name,
        role=role,
        status_callback_url=cfg.get_webhook_url(f"/webhooks/voice/conference/{call_id}"),
        recording_callback_url=cfg.get_webhook_url(f"/webhooks/voice/recording/{call_id}"),
    )


@router.post("/voice/inbound")
async def inbound_call(
    request: Request,
    correlator: Correlator,
    provider: Provider,
    cfg: ProviderConfig,
) -> Response:
    form, payload = await _read_payload(request)
    if not _signature_ok(request, provider, cfg, form):
        return _forbidden()

    token = request.headers.get(IDEMPOTENCY_HEADER)
    try:
        event = parse_inbound_call(payload, token)
    except WebhookParseError as exc:
        await correlator.record_unparsed("inbound_call_received", exc.message, payload, event_id=token)
        return _xml(provider.unavailable_instructions(UNAVAILABLE_MESSAGE))

    try:
        result = await correlator.handle(event)
    except Exception:
        logger.exception("Inbound call handling failed", extra={"external_call_id": event.external_call_id})
        return _xml(provider.unavailable_instructions(UNAVAILABLE_MESSAGE))

    call = result.call
    if call is None or call.is_terminal or not call.conference_name:
        return _xml(provider.unavailable_instructions(UNAVAILABLE_MESSAGE))

    return _xml(
        provider.bridge_instructions(
            _bridge_request(cfg, call.id, call.conference_name, BridgeRole.INBOUND_CUSTOMER)
        )
    )


@router.post("/voice/outbound/{call_id}")
async def outbound_answered(
    call_id: UUID,
    request: Request,
    correlator: Correlator,
    lifecycle: Annotated[CallLifecycleManager, Depends(get_lifecycle)],
    provider: Provider,
    cfg: ProviderConfig,
) -> Response:
    form, payload = await _read_payload(request)
    if not _signature_ok(request, provider, cfg, form):
        return _forbidden()

    raw_status = (payload.get("DialCallStatus") or payload.get("CallStatus") or "").lower()
    if raw_status not in ANSWERED_STATUSES:
        message = OUTBOUND_FAILURE_MESSAGES.get(raw_status, OUTBOUND_FAILURE_MESSAGES["failed"])
        return _xml(provider.unavailable_instructions(message))

    payload.setdefault("CallStatus", raw_status)
    try:
        event = parse_call_status(payload, call_id, request.headers.get(IDEMPOTENCY_HEADER))
        result = await correlator.handle(event)
        call = result.call
        if call is None:
            call, _ = await lifecycle.get_call(call_id)
    except Exception:
        logger.exception("Outbound answer handling failed", extra={"call_id": str(call_id)})
        return _xml(provider.unavailable_instructions(OUTBOUND_FAILURE_MESSAGES["failed"]))

    if call.is_terminal or not call.conference_name:
        return _xml(provider.unavailable_instructions(OUTBOUND_FAILURE_MESSAGES["failed"]))

    return _xml(
        provider.bridge_instructions(
            _bridge_request(cfg, call.id, call.conference_name, BridgeRole.OUTBOUND_CUSTOMER)
        )
    )


@router.post("/voice/status", status_code=status.HTTP_200_OK)
async def call_status(
    request: Request,
    correlator: Correlator,
    provider: Provider,
    cfg: ProviderConfig,
) -> Any:
    form, payload = await _read_payload(request)
    if not _signature_ok(request, provider, cfg, form):
        return _forbidden()

    token = request.headers.get(IDEMPOTENCY_HEADER)
    try:
        event = parse_call_status(payload, payload.get("call_id"), token)
    except WebhookParseError as exc:
        await correlator.record_unparsed("status_update", exc.message, payload, event_id=token)
        return {"ok": True}

    try:
        await correlator.handle(event)
    except Exception:
        logger.exception("Failed to process status callback (ACKing 200 to Twilio)")

    return {"ok": True}


@router.post("/voice/conference/{call_id}", status_code=status.HTTP_200_OK)
async def conference_event(
    call_id: UUID,
    request: Request,
    correlator: Correlator,
    provider: Provider,
    cfg: ProviderConfig,
) -> Any:
    form, payload = await _read_payload(request)
    if not _signature_ok(request, provider, cfg, form):
        return _forbidden()

    token = request.headers.get(IDEMPOTENCY_HEADER)
    try:
        event = parse_conference_event(payload, call_id, token)
    except WebhookParseError as exc:
        await correlator.record_unparsed("conference_event", exc.message, payload, event_id=token)
        return {"ok": True}

    try:
        await correlator.handle(event)
    except Exception:
        logger.exception("Failed to process conference event (ACKing 200 to Twilio)")

    return {"ok": True}


@router.post("/voice/recording/{call_id}", status_code=status.HTTP_200_OK)
async def recording(
    call_id: UUID,
    request: Request,
    correlator: Correlator,
    provider: Provider,
    cfg: ProviderConfig,
) -> Any:
    form, payload = await _read_payload(request)
    if not _signature_ok(request, provider, cfg, form):
        return _forbidden()

    token = request.headers.get(IDEMPOTENCY_HEADER)
    try:
        event = parse_recording(payload, call_id, token)
    except WebhookParseError as exc:
        await correlator.record_unparsed("recording_available", exc.message, payload, event_id=token)
        return {"ok": True}

    try:
        await correlator.handle(event)
    except Exception:
        logger.exception("Failed to process recording callback (ACKing 200 to Twilio)")

    return {"ok": True}


@router.post("/messaging")
async def inbound_message(
    request: Request,
    correlator: Correlator,
    provider: Provider,
    cfg: ProviderConfig,
) -> Response:
    form, payload = await _read_payload(request)
    if not _signature_ok(request, provider, cfg, form):
        return _forbidden()

    token = request.headers.get(IDEMPOTENCY_HEADER)
    try:
        event = parse_channel_message(payload, token)
    except WebhookParseError as exc:
        await correlator.record_unparsed(
            "channel_message", exc.message, payload, source=EventSource.MESSAGING, event_id=token
        )
        return _xml(twiml.empty())

    try:
        await correlator.handle(event)
    except Exception:
        logger.exception("Failed to process inbound message (ACKing 200 to Twilio)")

    return _xml(twiml.empty())
