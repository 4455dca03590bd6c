"""
push.py — Mobile push notification channel (Expo).

Delivery mechanism:
    • Expo push API: POST https://exp.host/--/api/v2/push/send
    • Payload: JSON with to, title, body, data, priority, sound
    • Delivery confirmation from the push ticket in the response

Expo ticket format:

    {"data": {"status": "ok", "id": "XXXX-..."}}
    {"data": {"status": "error", "message": "...", "details": {...}}}

An error ticket raises DeliveryFailure so the fan-out records a failed
attempt and may retry. Simulation mode logs and succeeds.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict

import httpx

from backend.app.core.errors import DeliveryFailure
from backend.app.notifications.models import (
    DeliveryAttempt,
    DeliveryChannel,
    DeliveryStatus,
    NotificationMessage,
    NotificationPriority,
    Recipient,
)

logger = logging.getLogger(__name__)

DEFAULT_EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"


def _build_push_payload(message: NotificationMessage, token: str) -> Dict[str, Any]:
    urgent = message.priority >= NotificationPriority.URGENT
    return {
        "to": token,
        "title": message.title,
        "body": message.body,
        "data": {"message_id": message.message_id, **message.data},
        "priority": "high" if urgent else "default",
        "sound": "default",
        "channelId": "emergency" if urgent else "default",
    }


def _parse_ticket(body: Any) -> Dict[str, Any]:
    data = body.get("data") if isinstance(body, dict) else None
    if isinstance(data, list):
        data = data[0] if data else None
    if not isinstance(data, dict):
        return {"status": "error", "message": "Malformed push ticket"}
    return data


async def send(
    message: NotificationMessage,
    recipient: Recipient,
    *,
    provider: str = "simulation",
    push_url: str = DEFAULT_EXPO_PUSH_URL,
    timeout_seconds: float = 5.0,
) -> DeliveryAttempt:
    """
    Send a push notification to a recipient.

    Parameters
    ----------
    message : NotificationMessage
    recipient : Recipient
        Must have push_token for delivery.
    provider : str
        "simulation" or "expo".
    push_url : str
        Expo push endpoint.
    timeout_seconds : float
        HTTP timeout for the push service call.

    Raises
    ------
    DeliveryFailure
        Provider rejected the message or is unknown.
    """
    attempt = DeliveryAttempt(
        channel=DeliveryChannel.PUSH,
        recipient_id=recipient.recipient_id,
    )

    if not recipient.push_token:
        attempt.status = DeliveryStatus.SKIPPED
        attempt.completed_at = datetime.now(timezone.utc)
        attempt.error_message = "No push token on file"
        return attempt

    push_data = _build_push_payload(message, recipient.push_token)

    if provider == "simulation":
        logger.info(
            "[PUSH] %s → %s (%s): %s",
            message.message_id,
            recipient.recipient_id,
            recipient.name,
            message.title,
        )
        attempt.provider_response = {
            "mode": "simulated",
            "priority": push_data["priority"],
            "token_prefix": recipient.push_token[:12] + "...",
        }

    elif provider == "expo":
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            try:
                response = await client.post(
                    push_url,
                    json=push_data,
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise DeliveryFailure("push", recipient.recipient_id, str(e)) from e

        ticket = _parse_ticket(response.json())
        if ticket.get("status") != "ok":
            raise DeliveryFailure(
                "push", recipient.recipient_id,
                ticket.get("message", "Push ticket error"),
            )
        attempt.provider_response = {"mode": "expo", "ticket_id": ticket.get("id")}

    else:
        raise DeliveryFailure(
            "push", recipient.recipient_id, f"Unknown push provider: {provider}",
        )

    attempt.status = DeliveryStatus.DELIVERED
    attempt.completed_at = datetime.now(timezone.utc)
    return attempt
