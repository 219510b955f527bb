"""
HubSpot CRM adapter over the v3 REST API.
"""

from typing import Any

import httpx

from callbridge.crm.config import CrmConfig, get_crm_config
from callbridge.crm.interface import CallSummary, ContactHints, ContactResolver, CrmSync, SyncError
from callbridge.shared.logging import get_logger

logger = get_logger(__name__)

HUBSPOT_CALL_STATUS: dict[str, str] = {
    "initiated": "CALLING_CRM_USER",
    "ringing": "RINGING",
    "in-progress": "IN_PROGRESS",
    "completed": "COMPLETED",
    "failed": "FAILED",
    "busy": "BUSY",
    "no-answer": "NO_ANSWER",
    "canceled": "CANCELED",
}

# HubSpot-defined association type: call -> contact.
CALL_TO_CONTACT_ASSOCIATION = 194

_CONTACT_PROPERTIES = ["firstname", "lastname", "phone", "mobilephone"]


class HubSpotAdapter(CrmSync, ContactResolver):
    """Logs calls as HubSpot call engagements and resolves callers to contacts."""

    def __init__(
        self,
        config: CrmConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or get_crm_config()
        self._http_client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self._config.hubspot_api_base_url.rstrip("/"),
                timeout=httpx.Timeout(self._config.http_timeout_seconds),
                headers={"Authorization": f"Bearer {self._config.hubspot_access_token}"},
            )
        return self._http_client

    async def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def _request(self, method: str, path: str, json: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._get_client().request(method, path, json=json)
        except httpx.HTTPError as e:
            logger.exception("HTTP error talking to HubSpot", extra={"path": path})
            raise SyncError(message=f"HTTP error: {e!s}", error_code="HTTP_ERROR") from e

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {"body": response.text}

        if response.status_code >= 400:
            logger.error(
                "HubSpot request failed",
                extra={"path": path, "status_code": response.status_code, "error": data},
            )
            raise SyncError(
                message=data.get("message", "HubSpot request failed"),
                error_code=str(data.get("category", response.status_code)),
                provider_response=data,
            )
        return data

    async def log_call_activity(self, contact_ref: str, summary: CallSummary) -> None:
        timestamp = summary.start_time.isoformat() if summary.start_time else None
        properties: dict[str, Any] = {
            "hs_timestamp": timestamp,
            "hs_call_direction": "INBOUND" if summary.direction == "inbound" else "OUTBOUND",
            "hs_call_status": HUBSPOT_CALL_STATUS.get(summary.status, "COMPLETED"),
            "hs_call_duration": str((summary.duration_seconds or 0) * 1000),
            "hs_call_from_number": summary.from_address,
            "hs_call_to_number": summary.to_address,
            "hs_call_title": "WhatsApp Business Call",
            "hs_call_body": summary.notes or "",
        }
        if summary.recording_url:
            properties["hs_call_recording_url"] = summary.recording_url

        body = {
            "properties": properties,
            "associations": [
                {
                    "to": {"id": contact_ref},
                    "types": [
                        {
                            "associationCategory": "HUBSPOT_DEFINED",
                            "associationTypeId": CALL_TO_CONTACT_ASSOCIATION,
                        }
                    ],
                }
            ],
        }
        data = await self._request("POST", "/crm/v3/objects/calls", body)
        logger.info(
            "Call activity logged to HubSpot",
            extra={"contact_ref": contact_ref, "call_id": summary.call_id, "activity_id": data.get("id")},
        )

    async def find_or_create_contact(self, hints: ContactHints) -> str:
        whatsapp_property = self._config.hubspot_whatsapp_property
        search = {
            "filterGroups": [
                {"filters": [{"propertyName": prop, "operator": "EQ", "value": hints.address}]}
                for prop in (whatsapp_property, "mobilephone", "phone")
            ],
            "properties": [*_CONTACT_PROPERTIES, whatsapp_property],
            "limit": 1,
        }
        data = await self._request("POST", "/crm/v3/objects/contacts/search", search)
        results = data.get("results") or []
        if results:
            return str(results[0]["id"])

        properties = {whatsapp_property: hints.address, "mobilephone": hints.address}
        if hints.display_name:
            properties["firstname"] = hints.display_name
        created = await self._request("POST", "/crm/v3/objects/contacts", {"properties": properties})
        logger.info("Contact created in HubSpot", extra={"contact_ref": created.get("id")})
        return str(created["id"])
