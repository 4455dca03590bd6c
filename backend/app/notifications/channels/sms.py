"""
sms.py — SMS delivery channel via gateway integration.

Delivery mechanism:
    • Twilio REST API over httpx
    • Payload: body split into segments by the carrier
      (160 chars GSM 7-bit, 70 chars UCS-2 when emoji/unicode present)

═══════════════════════════════════════════════════════════════════════════
SMS GATEWAY ARCHITECTURE
═══════════════════════════════════════════════════════════════════════════

    Engine  →  HTTP POST  →  Twilio Messages API  →  Carrier  →  Handset

    POST https://api.twilio.com/2010-04-01/Accounts/{SID}/Messages.json
         form: To, From, Body      auth: (SID, AUTH_TOKEN)

Default: simulation mode for development.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from backend.app.core.errors import DeliveryFailure
from backend.app.notifications.models import (
    DeliveryAttempt,
    DeliveryChannel,
    DeliveryStatus,
    NotificationMessage,
    Recipient,
)

logger = logging.getLogger(__name__)

# Maximum SMS segment lengths
SMS_MAX_GSM7 = 160      # GSM 7-bit encoding
SMS_MAX_UCS2 = 70       # Unicode (UCS-2) encoding

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


def count_segments(body: str) -> int:
    """Carrier segments needed for ``body``."""
    limit = SMS_MAX_GSM7 if body.isascii() else SMS_MAX_UCS2
    return max(1, 1 + (len(body) - 1) // limit)


async def send(
    message: NotificationMessage,
    recipient: Recipient,
    *,
    provider: str = "simulation",
    account_sid: Optional[str] = None,
    auth_token: Optional[str] = None,
    from_number: Optional[str] = None,
    timeout_seconds: float = 10.0,
) -> DeliveryAttempt:
    """
    Send an SMS to a recipient.

    Parameters
    ----------
    message : NotificationMessage
    recipient : Recipient
        Must have .phone set (E.164 format).
    provider : str
        "simulation" or "twilio".
    account_sid, auth_token, from_number : str | None
        Twilio credentials (not needed for simulation).
    timeout_seconds : float
        HTTP timeout for gateway call.

    Raises
    ------
    DeliveryFailure
        Gateway rejected the message, credentials missing, or provider unknown.
    """
    attempt = DeliveryAttempt(
        channel=DeliveryChannel.SMS,
        recipient_id=recipient.recipient_id,
    )

    if not recipient.phone:
        attempt.status = DeliveryStatus.SKIPPED
        attempt.completed_at = datetime.now(timezone.utc)
        attempt.error_message = "No phone number on file"
        return attempt

    sms_body = message.body

    if provider == "simulation":
        logger.info(
            "[SMS] %s → %s (%s): %d chars → '%s'",
            message.message_id,
            recipient.phone,
            recipient.name,
            len(sms_body),
            sms_body[:80] + ("..." if len(sms_body) > 80 else ""),
        )
        attempt.provider_response = {
            "mode": "simulated",
            "message_length": len(sms_body),
            "segments": count_segments(sms_body),
            "phone": recipient.phone,
        }

    elif provider == "twilio":
        if not (account_sid and auth_token and from_number):
            raise DeliveryFailure(
                "sms", recipient.recipient_id, "Twilio credentials not configured",
            )
        url = f"{TWILIO_API_BASE}/Accounts/{account_sid}/Messages.json"
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            try:
                response = await client.post(
                    url,
                    data={"To": recipient.phone, "From": from_number, "Body": sms_body},
                    auth=(account_sid, auth_token),
                )
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise DeliveryFailure("sms", recipient.recipient_id, str(e)) from e

        data = response.json()
        attempt.provider_response = {
            "mode": "twilio",
            "sid": data.get("sid"),
            "status": data.get("status"),
            "segments": data.get("num_segments"),
        }

    else:
        raise DeliveryFailure(
            "sms", recipient.recipient_id, f"Unknown SMS provider: {provider}",
        )

    attempt.status = DeliveryStatus.DELIVERED
    attempt.completed_at = datetime.now(timezone.utc)
    return attempt
