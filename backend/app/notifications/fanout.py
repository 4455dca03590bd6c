"""
fanout.py — Parallel multi-channel notification delivery.

This is the shared delivery engine behind SOS, Guardian, Follow Me and
safety-alert broadcasts. It:
    1. Selects channels per recipient from their contact info
    2. Dispatches every (recipient, channel) pair concurrently
    3. Bounds each attempt with a per-channel timeout
    4. Retries failed attempts with backoff
    5. Converts every exception / timeout into a failed attempt
    6. Produces a FanoutResult

═══════════════════════════════════════════════════════════════════════════
ORCHESTRATION FLOW
═══════════════════════════════════════════════════════════════════════════

    notify(recipients, message, priority)
              │
              ▼
    ┌─────────────────────┐
    │  Channel selection  │  push if token, SMS if phone, email if email
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐     ┌──────────────┐
    │  asyncio.gather     │ ──▶ │ (r1, push)   │  wait_for(timeout)
    │  over all pairs     │ ──▶ │ (r1, sms)    │  retry w/ backoff
    │                     │ ──▶ │ (r2, email)  │  failure → FAILED
    └─────────┬───────────┘     └──────────────┘
              │   all settled
              ▼
    ┌─────────────────────┐
    │  FanoutResult       │  per-recipient records + counts
    └─────────────────────┘

═══════════════════════════════════════════════════════════════════════════
FAILURE POLICY
═══════════════════════════════════════════════════════════════════════════

    • One failed delivery never blocks or cancels the others
    • Failures are logged at WARNING and reported only in the result
    • No de-duplication: a recipient listed twice is notified twice
    • No escalation: priority shapes presentation, not channel choice

Backoff formula (exponential):
    delay = base × 2^(attempt - 1)
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from backend.app.core.config import Settings
from backend.app.notifications.channels import email_alert, push, sms
from backend.app.notifications.models import (
    DeliveryAttempt,
    DeliveryChannel,
    DeliveryStatus,
    FanoutResult,
    NotificationMessage,
    NotificationPriority,
    Recipient,
    RecipientDeliveryRecord,
)

logger = logging.getLogger(__name__)

Dispatcher = Callable[[NotificationMessage, Recipient], Awaitable[DeliveryAttempt]]


# ═══════════════════════════════════════════════════════════════════════════
# Retry Configuration
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RetryConfig:
    """Per-channel retry and timeout parameters."""
    max_retries: int
    backoff_base_seconds: float
    timeout_seconds: float
    backoff_type: str = "exponential"  # "exponential" or "linear"


DEFAULT_RETRY_CONFIG = RetryConfig(0, 0.0, 10.0)


def _compute_backoff(config: RetryConfig, attempt: int) -> float:
    """Delay in seconds before retry number ``attempt`` (1-based)."""
    if config.backoff_type == "exponential":
        return config.backoff_base_seconds * (2 ** (attempt - 1))
    return config.backoff_base_seconds * attempt


def build_retry_configs(cfg: Settings) -> Dict[DeliveryChannel, RetryConfig]:
    base = cfg.DELIVERY_BACKOFF_BASE_SECONDS
    return {
        DeliveryChannel.PUSH:  RetryConfig(cfg.PUSH_MAX_RETRIES, base, cfg.PUSH_TIMEOUT_SECONDS),
        DeliveryChannel.SMS:   RetryConfig(cfg.SMS_MAX_RETRIES, base, cfg.SMS_TIMEOUT_SECONDS),
        DeliveryChannel.EMAIL: RetryConfig(cfg.EMAIL_MAX_RETRIES, base, cfg.EMAIL_TIMEOUT_SECONDS),
    }


# ═══════════════════════════════════════════════════════════════════════════
# Channel Dispatcher Registry
# ═══════════════════════════════════════════════════════════════════════════

def build_default_dispatchers(cfg: Settings) -> Dict[DeliveryChannel, Dispatcher]:
    """Bind each channel's send coroutine to the configured provider."""
    return {
        DeliveryChannel.PUSH: functools.partial(
            push.send,
            provider=cfg.PUSH_PROVIDER,
            push_url=cfg.EXPO_PUSH_URL,
            timeout_seconds=cfg.PUSH_TIMEOUT_SECONDS,
        ),
        DeliveryChannel.SMS: functools.partial(
            sms.send,
            provider=cfg.SMS_PROVIDER,
            account_sid=cfg.TWILIO_ACCOUNT_SID,
            auth_token=cfg.TWILIO_AUTH_TOKEN,
            from_number=cfg.TWILIO_FROM_NUMBER,
            timeout_seconds=cfg.SMS_TIMEOUT_SECONDS,
        ),
        DeliveryChannel.EMAIL: functools.partial(
            email_alert.send,
            provider=cfg.EMAIL_PROVIDER,
            smtp_host=cfg.SMTP_HOST,
            smtp_port=cfg.SMTP_PORT,
            smtp_user=cfg.SMTP_USER,
            smtp_password=cfg.SMTP_PASSWORD,
            smtp_use_tls=cfg.SMTP_USE_TLS,
            from_address=cfg.EMAIL_FROM,
            timeout_seconds=cfg.EMAIL_TIMEOUT_SECONDS,
        ),
    }


def _failed_attempt(
    channel: DeliveryChannel,
    recipient_id: str,
    error: str,
    retry_count: int = 0,
) -> DeliveryAttempt:
    now = datetime.now(timezone.utc)
    return DeliveryAttempt(
        channel=channel,
        recipient_id=recipient_id,
        status=DeliveryStatus.FAILED,
        completed_at=now,
        retry_count=retry_count,
        error_message=error,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Fan-out
# ═══════════════════════════════════════════════════════════════════════════

class NotificationFanout:
    """
    Deliver one message to many recipients over every channel they support.

    Parameters
    ----------
    dispatchers : dict
        DeliveryChannel → async send callable. Channels without a
        dispatcher produce a failed attempt.
    retry_configs : dict
        DeliveryChannel → RetryConfig.
    sleep : callable
        Awaitable used for backoff (tests pass a no-op).
    """

    def __init__(
        self,
        dispatchers: Dict[DeliveryChannel, Dispatcher],
        retry_configs: Optional[Dict[DeliveryChannel, RetryConfig]] = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.dispatchers = dict(dispatchers)
        self.retry_configs = dict(retry_configs or {})
        self._sleep = sleep

    @classmethod
    def from_settings(cls, cfg: Settings) -> "NotificationFanout":
        return cls(build_default_dispatchers(cfg), build_retry_configs(cfg))

    # ── Single (recipient, channel) with timeout + retry ──

    async def _deliver_via_channel(
        self,
        channel: DeliveryChannel,
        message: NotificationMessage,
        recipient: Recipient,
    ) -> DeliveryAttempt:
        dispatcher = self.dispatchers.get(channel)
        if dispatcher is None:
            return _failed_attempt(
                channel, recipient.recipient_id,
                f"No dispatcher for channel: {channel.value}",
            )

        config = self.retry_configs.get(channel, DEFAULT_RETRY_CONFIG)
        result: Optional[DeliveryAttempt] = None

        for attempt_num in range(1, config.max_retries + 2):  # initial + retries
            try:
                result = await asyncio.wait_for(
                    dispatcher(message, recipient), timeout=config.timeout_seconds,
                )
            except asyncio.TimeoutError:
                result = _failed_attempt(
                    channel, recipient.recipient_id,
                    f"Timed out after {config.timeout_seconds:.1f}s",
                )
            except Exception as exc:
                result = _failed_attempt(channel, recipient.recipient_id, str(exc))

            result.retry_count = attempt_num - 1

            if result.status in (DeliveryStatus.DELIVERED, DeliveryStatus.SKIPPED):
                return result

            if attempt_num <= config.max_retries:
                delay = _compute_backoff(config, attempt_num)
                logger.info(
                    "Retry %d/%d for %s via %s in %.1fs",
                    attempt_num, config.max_retries,
                    recipient.recipient_id, channel.value, delay,
                )
                await self._sleep(delay)

        logger.warning(
            "Delivery to %s via %s failed after %d attempt(s): %s",
            recipient.recipient_id, channel.value,
            result.retry_count + 1, result.error_message,
            extra={"channel": channel.value},
        )
        return result

    # ── Public API ──

    async def notify(
        self,
        recipients: Iterable[Recipient],
        message: NotificationMessage,
        priority: Optional[NotificationPriority] = None,
    ) -> FanoutResult:
        """
        Deliver ``message`` to every recipient concurrently.

        Suspends until every delivery has settled; never raises for
        delivery problems.
        """
        if priority is not None:
            message.priority = priority

        result = FanoutResult(message=message)
        pairs: List[Tuple[RecipientDeliveryRecord, DeliveryChannel, Recipient]] = []

        for recipient in recipients:
            record = RecipientDeliveryRecord(
                recipient_id=recipient.recipient_id,
                name=recipient.name,
            )
            result.records.append(record)
            channels = recipient.channels
            if not channels:
                logger.debug("No reachable channel for %s", recipient.recipient_id)
            for channel in channels:
                record.channels_attempted.append(channel)
                pairs.append((record, channel, recipient))

        outcomes = await asyncio.gather(
            *(self._deliver_via_channel(ch, message, r) for _, ch, r in pairs),
            return_exceptions=True,
        )

        for (record, channel, recipient), outcome in zip(pairs, outcomes):
            if isinstance(outcome, BaseException):
                outcome = _failed_attempt(channel, recipient.recipient_id, repr(outcome))
            record.attempts.append(outcome)
            if outcome.status == DeliveryStatus.DELIVERED:
                record.channels_delivered.append(channel)
            elif outcome.status == DeliveryStatus.FAILED:
                record.channels_failed.append(channel)

        result.completed_at = datetime.now(timezone.utc)

        logger.info(
            "Fan-out %s [%s] complete: %d/%d reached, %d attempts (%d failed)",
            message.message_id, message.priority.name,
            result.recipients_reached, result.total_recipients,
            result.total_attempts, result.failed_attempts,
            extra={"recipient_count": result.total_recipients},
        )
        return result
