import os
from typing import Any, Dict, Optional

import httpx

from schedform import monitoring
from schedform.flows.notifications import FlowNotification


HUBSPOT_API_URL = "https://api.hubapi.com/crm/v3/objects/deals"
DEFAULT_TIMEOUT = float(os.getenv("HUBSPOT_TIMEOUT_SECONDS", "10"))

DEAL_STAGES = {
    "qualified": "qualifiedtobuy",
    "booking_pending": "appointmentscheduled",
    "booking_confirmed": "presentationscheduled",
    "booking_failed": "closedlost",
}


def _token() -> str:
    token = os.getenv("HUBSPOT_PRIVATE_APP_TOKEN")
    if not token:
        raise RuntimeError("HubSpot private app token not configured")
    return token


def is_configured() -> bool:
    return bool(os.getenv("HUBSPOT_PRIVATE_APP_TOKEN"))


def _build_payload(notification: FlowNotification) -> Dict[str, Any]:
    payload = notification.payload or {}
    properties = {
        "dealname": f"SchedForm flow {notification.flow_id}",
        "pipeline": os.getenv("HUBSPOT_PIPELINE_ID", "default"),
        "dealstage": DEAL_STAGES.get(notification.new_status or "", "appointmentscheduled"),
        "schedform_flow_status": notification.new_status,
    }
    if "score" in payload:
        properties["schedform_qualification_score"] = payload["score"]
    if payload.get("start_time"):
        properties["schedform_meeting_start"] = payload["start_time"]
    return {"properties": properties}


async def push_flow_deal(
    notification: FlowNotification, *, client: Optional[httpx.AsyncClient] = None
) -> Dict[str, Any]:
    token = _token()
    payload = _build_payload(notification)
    headers = {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
    }

    if client is None:
        async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT) as owned:
            response = await owned.post(HUBSPOT_API_URL, json=payload, headers=headers)
    else:
        response = await client.post(HUBSPOT_API_URL, json=payload, headers=headers)
    try:
        response.raise_for_status()
        data = response.json()
    except Exception as exc:
        monitoring.capture_exception(exc)
        raise RuntimeError(f"HubSpot request failed: {exc}") from exc

    return data
