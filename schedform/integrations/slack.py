import os
from typing import Any, Dict, Optional

import httpx

from schedform import monitoring
from schedform.flows.notifications import FlowNotification


SLACK_API_URL = "https://slack.com/api/chat.postMessage"
DEFAULT_TIMEOUT = float(os.getenv("SLACK_TIMEOUT_SECONDS", "10"))

STATUS_EMOJI = {
    "qualified": ":white_check_mark:",
    "disqualified": ":no_entry:",
    "spam_detected": ":warning:",
    "booking_confirmed": ":calendar:",
    "booking_failed": ":x:",
    "abandoned": ":hourglass:",
}


def _token() -> str:
    token = os.getenv("SLACK_BOT_TOKEN")
    if not token:
        raise RuntimeError("Slack bot token not configured")
    return token


def is_configured() -> bool:
    return bool(os.getenv("SLACK_BOT_TOKEN"))


async def send_message(channel: str, text: str, *, client: Optional[httpx.AsyncClient] = None) -> Dict[str, Any]:
    token = _token()
    payload = {"channel": channel, "text": text}
    headers = {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json; charset=utf-8",
    }

    if client is None:
        async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT) as owned:
            response = await owned.post(SLACK_API_URL, json=payload, headers=headers)
    else:
        response = await client.post(SLACK_API_URL, json=payload, headers=headers)
    try:
        response.raise_for_status()
        data = response.json()
    except Exception as exc:
        monitoring.capture_exception(exc)
        raise RuntimeError(f"Slack request failed: {exc}") from exc

    if not data.get("ok", False):
        error = data.get("error", "unknown_error")
        raise RuntimeError(f"Slack API error: {error}")
    return data


def format_flow_message(notification: FlowNotification) -> str:
    payload = notification.payload or {}
    emoji = STATUS_EMOJI.get(notification.new_status or "", ":speech_balloon:")
    text = f"{emoji} Flow `{notification.flow_id}` {notification.previous_status or 'new'} → {notification.new_status}"
    if "score" in payload:
        text += f" (score {payload['score']:g})"
    if payload.get("kind") == "abandonment" and payload.get("recovery"):
        text += " - recovery follow-up queued"
    if payload.get("reason"):
        text += f"\nReason: {payload['reason']}"
    return text


def flow_subscriber(channel: str):
    async def notify_slack(notification: FlowNotification) -> None:
        await send_message(channel, format_flow_message(notification))

    return notify_slack
