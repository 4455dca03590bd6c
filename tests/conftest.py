"""
Shared fixtures: a fixed clock, fake channel senders and a fully wired
engine over the in-memory store and publisher.

Nothing here touches the network; every sleep is a no-op.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Set, Tuple

import pytest

from backend.app.core.config import Settings
from backend.app.core.errors import DeliveryFailure
from backend.app.engine import build_engine
from backend.app.notifications.fanout import NotificationFanout, RetryConfig
from backend.app.notifications.models import (
    DeliveryAttempt,
    DeliveryChannel,
    DeliveryStatus,
    NotificationMessage,
    Recipient,
)
from backend.app.realtime.publisher import InMemoryPublisher
from backend.app.store.memory import InMemoryStore

START = datetime(2026, 3, 2, 21, 0, tzinfo=timezone.utc)


async def no_sleep(_seconds: float) -> None:
    # Yield once so concurrent tasks still interleave
    await asyncio.sleep(0)


class FixedClock:
    """Deterministic clock; ``advance`` moves time forward."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeChannel:
    """Records every send; recipients in ``failing`` raise DeliveryFailure."""

    def __init__(self, channel: DeliveryChannel):
        self.channel = channel
        self.calls: List[Tuple[NotificationMessage, Recipient]] = []
        self.failing: Set[str] = set()
        self.hang: Set[str] = set()

    async def __call__(self, message: NotificationMessage, recipient: Recipient) -> DeliveryAttempt:
        self.calls.append((message, recipient))
        if recipient.recipient_id in self.hang:
            await asyncio.sleep(10)
        if recipient.recipient_id in self.failing:
            raise DeliveryFailure(self.channel.value, recipient.recipient_id, "provider rejected")
        return DeliveryAttempt(
            channel=self.channel,
            recipient_id=recipient.recipient_id,
            status=DeliveryStatus.DELIVERED,
            completed_at=datetime.now(timezone.utc),
        )

    def recipients(self) -> List[str]:
        return [r.recipient_id for _, r in self.calls]


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def channels() -> Dict[DeliveryChannel, FakeChannel]:
    return {ch: FakeChannel(ch) for ch in DeliveryChannel}


@pytest.fixture
def fanout(channels) -> NotificationFanout:
    retry = {ch: RetryConfig(max_retries=0, backoff_base_seconds=0.0, timeout_seconds=0.2) for ch in channels}
    return NotificationFanout(channels, retry, sleep=no_sleep)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def publisher() -> InMemoryPublisher:
    return InMemoryPublisher()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        STORE_BACKEND="memory",
        REALTIME_BACKEND="memory",
        FOLLOW_ME_MAX_HISTORY_POINTS=100,
    )


@pytest.fixture
def engine(test_settings, store, publisher, fanout, clock):
    return build_engine(
        test_settings,
        store=store,
        publisher=publisher,
        fanout=fanout,
        clock=clock,
        job_sleep=no_sleep,
    )
