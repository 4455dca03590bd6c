"""
email_alert.py — Email delivery channel.

Delivery mechanism:
    • SMTP with STARTTLS (smtplib + email.mime), run in a worker thread so
      the event loop never blocks on the socket
    • multipart/alternative: plain text + HTML

═══════════════════════════════════════════════════════════════════════════
EMAIL TEMPLATE STRUCTURE
═══════════════════════════════════════════════════════════════════════════

    Subject: {icon} [PRIORITY] {title}
    Body:
        ┌─────────────────────────────────────────┐
        │  CAMPUS SAFETY — {title}                 │
        ├─────────────────────────────────────────┤
        │  {body}                                  │
        │                                          │
        │  Sent {timestamp} UTC                    │
        └─────────────────────────────────────────┘
"""

from __future__ import annotations

import asyncio
import html
import logging
import smtplib
import ssl
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from backend.app.core.errors import DeliveryFailure
from backend.app.notifications.models import (
    DeliveryAttempt,
    DeliveryChannel,
    DeliveryStatus,
    NotificationMessage,
    Recipient,
)

logger = logging.getLogger(__name__)

# Priority → icon for email subject
_PRIORITY_ICONS = {
    1: "ℹ️",   # ROUTINE
    2: "⚠️",   # ELEVATED
    3: "🚨",   # URGENT
    4: "🆘",   # CRITICAL
}

_PRIORITY_COLOURS = {
    1: "#4CAF50",   # green
    2: "#FF9800",   # orange
    3: "#F44336",   # red
    4: "#B71C1C",   # dark red
}


def _build_subject(message: NotificationMessage) -> str:
    icon = _PRIORITY_ICONS.get(int(message.priority), "⚠️")
    return f"{icon} [{message.priority.name}] {message.title}"


def _build_html_body(message: NotificationMessage) -> str:
    colour = _PRIORITY_COLOURS.get(int(message.priority), "#FF9800")
    body = html.escape(message.body).replace("\n", "<br>")
    return f"""
    <div style="font-family:Arial,sans-serif;max-width:600px;margin:auto;">
      <div style="background:{colour};color:white;padding:16px;border-radius:8px 8px 0 0;">
        <h2 style="margin:0;">CAMPUS SAFETY — {html.escape(message.title)}</h2>
      </div>
      <div style="border:1px solid #ddd;border-top:none;padding:16px;border-radius:0 0 8px 8px;">
        <p>{body}</p>
        <hr>
        <p><small>Sent {message.created_at.strftime('%Y-%m-%d %H:%M UTC')}</small></p>
      </div>
    </div>
    """


def _build_plain_body(message: NotificationMessage) -> str:
    return (
        f"CAMPUS SAFETY — {message.title}\n\n"
        f"{message.body}\n\n"
        f"Sent {message.created_at.strftime('%Y-%m-%d %H:%M UTC')}\n"
    )


def _smtp_send(
    host: str,
    port: int,
    user: Optional[str],
    password: Optional[str],
    use_tls: bool,
    from_address: str,
    to_address: str,
    mime: MIMEMultipart,
    timeout_seconds: float,
) -> None:
    with smtplib.SMTP(host, port, timeout=timeout_seconds) as server:
        if use_tls:
            server.starttls(context=ssl.create_default_context())
        if user and password:
            server.login(user, password)
        server.sendmail(from_address, [to_address], mime.as_string())


async def send(
    message: NotificationMessage,
    recipient: Recipient,
    *,
    provider: str = "simulation",
    smtp_host: Optional[str] = None,
    smtp_port: int = 587,
    smtp_user: Optional[str] = None,
    smtp_password: Optional[str] = None,
    smtp_use_tls: bool = True,
    from_address: str = "noreply@campus-safety.local",
    timeout_seconds: float = 15.0,
) -> DeliveryAttempt:
    """
    Send an email to a recipient.

    Parameters
    ----------
    message : NotificationMessage
    recipient : Recipient
        Must have .email set.
    provider : str
        "simulation" or "smtp".
    smtp_host, smtp_port, smtp_user, smtp_password, smtp_use_tls
        SMTP server config (for provider="smtp").
    from_address : str
        Sender address.
    timeout_seconds : float

    Raises
    ------
    DeliveryFailure
        SMTP error, missing host, or unknown provider.
    """
    attempt = DeliveryAttempt(
        channel=DeliveryChannel.EMAIL,
        recipient_id=recipient.recipient_id,
    )

    if not recipient.email:
        attempt.status = DeliveryStatus.SKIPPED
        attempt.completed_at = datetime.now(timezone.utc)
        attempt.error_message = "No email address on file"
        return attempt

    subject = _build_subject(message)

    if provider == "simulation":
        logger.info(
            "[EMAIL] %s → %s (%s): Subject='%s'",
            message.message_id,
            recipient.email,
            recipient.name,
            subject,
        )
        attempt.provider_response = {
            "mode": "simulated",
            "subject": subject,
            "to": recipient.email,
        }

    elif provider == "smtp":
        if not smtp_host:
            raise DeliveryFailure("email", recipient.recipient_id, "SMTP host not configured")

        mime = MIMEMultipart("alternative")
        mime["Subject"] = subject
        mime["From"] = from_address
        mime["To"] = recipient.email
        mime.attach(MIMEText(_build_plain_body(message), "plain", "utf-8"))
        mime.attach(MIMEText(_build_html_body(message), "html", "utf-8"))

        try:
            await asyncio.to_thread(
                _smtp_send,
                smtp_host, smtp_port, smtp_user, smtp_password, smtp_use_tls,
                from_address, recipient.email, mime, timeout_seconds,
            )
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryFailure("email", recipient.recipient_id, str(e)) from e

        attempt.provider_response = {"mode": "smtp", "to": recipient.email}

    else:
        raise DeliveryFailure(
            "email", recipient.recipient_id, f"Unknown email provider: {provider}",
        )

    attempt.status = DeliveryStatus.DELIVERED
    attempt.completed_at = datetime.now(timezone.utc)
    return attempt
