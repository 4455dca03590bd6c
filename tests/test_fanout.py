"""
test_fanout.py — Tests for the multi-channel notification fan-out.

Covers:
    • Channel selection from recipient capabilities
    • Partial failure: one bad channel never blocks the others
    • Timeouts, retries and backoff
    • Message builders (priorities, text)
    • Channel senders in simulation mode

Run with:
    pytest tests/test_fanout.py -v
"""

from __future__ import annotations

from typing import List

import pytest

from backend.app.notifications import messages
from backend.app.notifications.channels import email_alert, push, sms
from backend.app.notifications.fanout import (
    NotificationFanout,
    RetryConfig,
    _compute_backoff,
    build_retry_configs,
)
from backend.app.notifications.models import (
    DeliveryChannel,
    DeliveryStatus,
    NotificationMessage,
    NotificationPriority,
    Recipient,
)
from backend.app.safety.models import (
    Location,
    SafetyAlert,
    SafetyAlertCategory,
    Severity,
    SOSAlert,
)


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

async def no_sleep(_seconds: float) -> None:
    return None


def _make_recipient(
    rid: str = "C1",
    phone: str = "+15550001",
    email: str = "c1@example.edu",
    push_token: str = "ExponentPushToken[abc]",
) -> Recipient:
    return Recipient(recipient_id=rid, name=f"Contact {rid}", phone=phone, email=email, push_token=push_token)


def _make_message(priority: NotificationPriority = NotificationPriority.URGENT) -> NotificationMessage:
    return NotificationMessage(title="Test", body="Test body", priority=priority)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Models
# ═══════════════════════════════════════════════════════════════════════════

class TestRecipientChannels:

    def test_all_channels(self):
        assert _make_recipient().channels == [
            DeliveryChannel.PUSH, DeliveryChannel.SMS, DeliveryChannel.EMAIL,
        ]

    def test_phone_only(self):
        r = _make_recipient(email=None, push_token=None)
        assert r.channels == [DeliveryChannel.SMS]

    def test_no_contact_info(self):
        r = Recipient(recipient_id="X")
        assert r.channels == []

    def test_priority_ordering(self):
        assert NotificationPriority.ROUTINE < NotificationPriority.URGENT < NotificationPriority.CRITICAL


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Fan-out
# ═══════════════════════════════════════════════════════════════════════════

class TestFanout:

    @pytest.mark.asyncio
    async def test_delivers_over_every_channel(self, fanout, channels):
        result = await fanout.notify([_make_recipient("C1"), _make_recipient("C2")], _make_message())

        assert result.total_recipients == 2
        assert result.recipients_reached == 2
        assert result.total_attempts == 6
        assert result.failed_attempts == 0
        for fake in channels.values():
            assert sorted(fake.recipients()) == ["C1", "C2"]

    @pytest.mark.asyncio
    async def test_partial_failure_is_isolated(self, fanout, channels):
        channels[DeliveryChannel.SMS].failing.add("C1")

        result = await fanout.notify([_make_recipient("C1"), _make_recipient("C2")], _make_message())

        c1 = result.record_for("C1")
        assert c1.is_reached
        assert c1.channels_failed == [DeliveryChannel.SMS]
        assert set(c1.channels_delivered) == {DeliveryChannel.PUSH, DeliveryChannel.EMAIL}
        assert result.record_for("C2").channels_failed == []
        assert result.failed_attempts == 1
        assert result.recipients_reached == 2

    @pytest.mark.asyncio
    async def test_all_channels_fail(self, fanout, channels):
        for fake in channels.values():
            fake.failing.add("C1")

        result = await fanout.notify([_make_recipient("C1")], _make_message())

        assert result.recipients_reached == 0
        assert result.recipients_failed == 1
        failed = result.record_for("C1").attempts
        assert all(a.status == DeliveryStatus.FAILED for a in failed)
        assert all("provider rejected" in a.error_message for a in failed)

    @pytest.mark.asyncio
    async def test_recipient_without_channels_is_unreached(self, fanout):
        result = await fanout.notify([Recipient(recipient_id="X")], _make_message())

        record = result.record_for("X")
        assert record.attempts == []
        assert not record.is_reached
        assert result.recipients_failed == 1

    @pytest.mark.asyncio
    async def test_timeout_becomes_failed_attempt(self, fanout, channels):
        channels[DeliveryChannel.PUSH].hang.add("C1")

        result = await fanout.notify([_make_recipient("C1")], _make_message())

        record = result.record_for("C1")
        assert record.channels_failed == [DeliveryChannel.PUSH]
        push_attempt = [a for a in record.attempts if a.channel == DeliveryChannel.PUSH][0]
        assert "Timed out" in push_attempt.error_message

    @pytest.mark.asyncio
    async def test_missing_dispatcher(self, channels):
        fanout = NotificationFanout({DeliveryChannel.SMS: channels[DeliveryChannel.SMS]}, sleep=no_sleep)

        result = await fanout.notify([_make_recipient("C1")], _make_message())

        record = result.record_for("C1")
        assert record.channels_delivered == [DeliveryChannel.SMS]
        assert set(record.channels_failed) == {DeliveryChannel.PUSH, DeliveryChannel.EMAIL}

    @pytest.mark.asyncio
    async def test_priority_override(self, fanout):
        message = _make_message(NotificationPriority.ROUTINE)
        result = await fanout.notify([_make_recipient()], message, NotificationPriority.CRITICAL)
        assert result.message.priority == NotificationPriority.CRITICAL

    @pytest.mark.asyncio
    async def test_empty_recipient_list(self, fanout):
        result = await fanout.notify([], _make_message())
        assert result.total_recipients == 0
        assert result.completed_at is not None


class TestRetry:

    def test_exponential_backoff(self):
        config = RetryConfig(3, 1.0, 5.0)
        assert [_compute_backoff(config, n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_linear_backoff(self):
        config = RetryConfig(3, 1.5, 5.0, backoff_type="linear")
        assert [_compute_backoff(config, n) for n in (1, 2, 3)] == [1.5, 3.0, 4.5]

    def test_configs_follow_settings(self, test_settings):
        configs = build_retry_configs(test_settings)
        assert configs[DeliveryChannel.SMS].max_retries == test_settings.SMS_MAX_RETRIES
        assert configs[DeliveryChannel.EMAIL].timeout_seconds == test_settings.EMAIL_TIMEOUT_SECONDS

    @pytest.mark.asyncio
    async def test_retries_until_success(self, channels):
        sleeps: List[float] = []

        async def record_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        sms_fake = channels[DeliveryChannel.SMS]
        calls = {"n": 0}

        async def flaky(message, recipient):
            calls["n"] += 1
            if calls["n"] < 3:
                raise RuntimeError("gateway busy")
            return await sms_fake(message, recipient)

        fanout = NotificationFanout(
            {DeliveryChannel.SMS: flaky},
            {DeliveryChannel.SMS: RetryConfig(2, 0.5, 1.0)},
            sleep=record_sleep,
        )
        result = await fanout.notify([_make_recipient(email=None, push_token=None)], _make_message())

        attempt = result.record_for("C1").attempts[0]
        assert attempt.status == DeliveryStatus.DELIVERED
        assert attempt.retry_count == 2
        assert sleeps == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted(self, channels):
        channels[DeliveryChannel.SMS].failing.add("C1")
        fanout = NotificationFanout(
            {DeliveryChannel.SMS: channels[DeliveryChannel.SMS]},
            {DeliveryChannel.SMS: RetryConfig(2, 0.0, 1.0)},
            sleep=no_sleep,
        )
        result = await fanout.notify([_make_recipient(email=None, push_token=None)], _make_message())

        attempt = result.record_for("C1").attempts[0]
        assert attempt.status == DeliveryStatus.FAILED
        assert attempt.retry_count == 2
        assert len(channels[DeliveryChannel.SMS].calls) == 3


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Message builders
# ═══════════════════════════════════════════════════════════════════════════

class TestMessages:

    def test_sos_message_is_critical(self, clock):
        alert = SOSAlert(user_id="U1", location=Location(12.9716, 77.5946, address="Library"), created_at=clock())
        message = messages.sos_emergency(alert, "Asha")

        assert message.priority == NotificationPriority.CRITICAL
        assert "EMERGENCY ALERT" in message.body
        assert "Asha" in message.body
        assert "Library" in message.body
        assert "HIGH" in message.body
        assert message.data["alert_id"] == alert.id

    def test_sos_message_without_name(self, clock):
        alert = SOSAlert(user_id="U1", location=Location.placeholder(), created_at=clock())
        assert "A campus user" in messages.sos_emergency(alert, None).body

    def test_safety_alert_priority(self):
        def _alert(severity):
            return SafetyAlert(
                reporter_id="U1", title="Fire", description="Smoke near lab",
                category=SafetyAlertCategory.FIRE, severity=severity,
                location=Location(12.97, 77.59), radius_m=500,
            )

        assert messages.safety_alert(_alert(Severity.CRITICAL)).priority == NotificationPriority.CRITICAL
        assert messages.safety_alert(_alert(Severity.MEDIUM)).priority == NotificationPriority.URGENT


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Channel senders (simulation mode)
# ═══════════════════════════════════════════════════════════════════════════

class TestChannelSenders:

    @pytest.mark.asyncio
    async def test_push_simulation(self):
        attempt = await push.send(_make_message(), _make_recipient())
        assert attempt.status == DeliveryStatus.DELIVERED
        assert attempt.channel == DeliveryChannel.PUSH

    @pytest.mark.asyncio
    async def test_push_without_token_skipped(self):
        attempt = await push.send(_make_message(), _make_recipient(push_token=None))
        assert attempt.status == DeliveryStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_sms_simulation(self):
        attempt = await sms.send(_make_message(), _make_recipient())
        assert attempt.status == DeliveryStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_email_without_address_skipped(self):
        attempt = await email_alert.send(_make_message(), _make_recipient(email=None))
        assert attempt.status == DeliveryStatus.SKIPPED

    def test_sms_segments(self):
        assert sms.count_segments("x" * 160) == 1
        assert sms.count_segments("x" * 161) == 2
