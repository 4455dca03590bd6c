"""
publisher.py — Real-time event channel for dashboards and viewers.

Events are published to named groups:

    Group             Events                                   Audience
    ──────────────    ─────────────────────────────────────    ──────────────────
    security          sos-alert, sos-resolved, safety-alert    campus security desk
    user:{user_id}    followMeUpdate, routeWarning             one user's devices

Payloads carry ids, names and locations so a dashboard can render an
event without a follow-up query.

Publishing is best-effort: a broken channel is logged and the action that
produced the event still succeeds. Stored state is the source of truth;
clients reconcile by reading it.
"""

from __future__ import annotations

import abc
import inspect
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


# ── Groups & event names ──

SECURITY_GROUP = "security"

SOS_ALERT = "sos-alert"
SOS_RESOLVED = "sos-resolved"
SAFETY_ALERT = "safety-alert"
FOLLOW_ME_UPDATE = "followMeUpdate"
ROUTE_WARNING = "routeWarning"


def user_group(user_id: str) -> str:
    return f"user:{user_id}"


@dataclass
class PublishedEvent:
    group: str
    event: str
    payload: Dict[str, Any]
    published_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group": self.group,
            "event": self.event,
            "payload": self.payload,
            "published_at": self.published_at.isoformat(),
        }


class Publisher(abc.ABC):
    """Publish/subscribe fabric for real-time events."""

    @abc.abstractmethod
    async def publish(self, group: str, event: str, payload: Dict[str, Any]) -> bool:
        """Deliver ``event`` to every subscriber of ``group``. Never raises."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


# ═══════════════════════════════════════════════════════════════════════════
# In-process channel (development, tests)
# ═══════════════════════════════════════════════════════════════════════════

Subscriber = Callable[[PublishedEvent], Any]


class InMemoryPublisher(Publisher):
    """Keeps a log of published events and fans them out to local subscribers."""

    def __init__(self) -> None:
        self.events: List[PublishedEvent] = []
        self._subscribers: Dict[str, List[Subscriber]] = {}

    def subscribe(self, group: str, callback: Subscriber) -> None:
        self._subscribers.setdefault(group, []).append(callback)

    def events_for(self, group: str, event: Optional[str] = None) -> List[PublishedEvent]:
        return [
            e for e in self.events
            if e.group == group and (event is None or e.event == event)
        ]

    def clear(self) -> None:
        self.events.clear()

    async def publish(self, group: str, event: str, payload: Dict[str, Any]) -> bool:
        published = PublishedEvent(group=group, event=event, payload=payload)
        self.events.append(published)
        logger.debug("Event %s → %s", event, group)

        for callback in self._subscribers.get(group, []):
            try:
                result = callback(published)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning("Subscriber for %s failed on %s: %s", group, event, e)
        return True


# ═══════════════════════════════════════════════════════════════════════════
# Redis pub/sub channel (production)
# ═══════════════════════════════════════════════════════════════════════════

class RedisPublisher(Publisher):
    """
    JSON messages on Redis pub/sub channel ``{prefix}:{group}``.

    The client is created lazily on first publish.
    """

    def __init__(self, redis_url: str, *, prefix: str = "campus-safety"):
        self.redis_url = redis_url
        self.prefix = prefix
        self._client: Optional[aioredis.Redis] = None

    def channel_for(self, group: str) -> str:
        return f"{self.prefix}:{group}"

    async def _get_redis(self) -> aioredis.Redis:
        """Get or create async Redis client."""
        if self._client is None:
            self._client = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("Redis publisher connected: %s", self.redis_url.split("@")[-1])
        return self._client

    async def publish(self, group: str, event: str, payload: Dict[str, Any]) -> bool:
        message = PublishedEvent(group=group, event=event, payload=payload)
        try:
            client = await self._get_redis()
            await client.publish(
                self.channel_for(group),
                json.dumps(message.to_dict(), default=str),
            )
            return True
        except Exception as e:
            logger.warning("Publish %s → %s failed: %s", event, group, e)
            return False

    async def ping(self) -> bool:
        client = await self._get_redis()
        return bool(await client.ping())

    async def close(self) -> None:
        """Close Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Redis publisher closed")


def build_publisher(backend: str, *, redis_url: str = "", prefix: str = "campus-safety") -> Publisher:
    if backend == "memory":
        return InMemoryPublisher()
    if backend == "redis":
        return RedisPublisher(redis_url, prefix=prefix)
    raise ValueError(f"Unknown realtime backend: {backend}")
