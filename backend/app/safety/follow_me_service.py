"""
follow_me_service.py — Time-boxed live location sharing.

═══════════════════════════════════════════════════════════════════════════
SESSION RULES
═══════════════════════════════════════════════════════════════════════════

    • One active session per user (checked under ``follow-me:{user_id}``,
      enforced again by the store)
    • Viewers are a subset of the owner's trusted circle at start time
    • History keeps the newest ``max_history_points`` locations
    • Expiry is lazy: the first update after ``expires_at`` moves the
      session to ``expired`` and is rejected with SessionExpiredError

═══════════════════════════════════════════════════════════════════════════
EVENTS
═══════════════════════════════════════════════════════════════════════════

    followMeUpdate  ──▶ user:{viewer_id}   one per viewer per update
    routeWarning    ──▶ user:{owner_id}    when hazard routes are nearby
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from backend.app.core.errors import (
    NoActiveSessionError,
    SessionAlreadyActiveError,
    SessionExpiredError,
    ValidationError,
)
from backend.app.core.locks import KeyedLock
from backend.app.notifications import messages
from backend.app.notifications.fanout import NotificationFanout
from backend.app.realtime.publisher import FOLLOW_ME_UPDATE, ROUTE_WARNING, Publisher, user_group
from backend.app.safety.models import (
    FollowMeSession,
    FollowMeSettings,
    FollowMeStatus,
    HazardRoute,
    Location,
    SafetyLevel,
    SharedViewer,
)
from backend.app.store.base import Store

logger = logging.getLogger(__name__)

SESSION_KIND = "Follow Me session"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FollowMeUpdate:
    """Outcome of one location update."""
    session: FollowMeSession
    location: Location
    warnings: List[HazardRoute] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session.id,
            "location": self.location.to_dict(),
            "warnings": [w.to_summary() for w in self.warnings],
            "hazard_count": len(self.warnings),
        }


class FollowMeService:
    """Starts, feeds and stops Follow Me sessions."""

    def __init__(
        self,
        store: Store,
        fanout: NotificationFanout,
        publisher: Publisher,
        locks: KeyedLock,
        *,
        default_duration_seconds: int = 3600,
        default_settings: Optional[FollowMeSettings] = None,
        hazard_radius_m: float = 200.0,
        warning_levels: Sequence[str] = ("avoid", "moderate"),
        clock: Callable[[], datetime] = _now,
    ):
        self.store = store
        self.fanout = fanout
        self.publisher = publisher
        self.locks = locks
        self.default_duration_seconds = default_duration_seconds
        self.default_settings = default_settings or FollowMeSettings()
        self.hazard_radius_m = hazard_radius_m
        self.warning_levels = {SafetyLevel(level) for level in warning_levels}
        self._clock = clock

    # ── Helpers ──

    async def _expire_if_stale(self, session: FollowMeSession, now: datetime) -> bool:
        """Move a time-expired active session to ``expired``. Returns True if it did."""
        if not session.is_active or not session.is_expired_at(now):
            return False
        session.status = FollowMeStatus.EXPIRED
        session.ended_at = now
        await self.store.update_follow_me(session)
        logger.info(
            "Follow Me %s expired", session.id,
            extra={"session_id": session.id, "user_id": session.user_id},
        )
        return True

    async def _active_or_raise(self, user_id: str) -> FollowMeSession:
        session = await self.store.get_active_follow_me(user_id)
        if session is None:
            raise NoActiveSessionError(SESSION_KIND, user_id=user_id)
        return session

    async def _notify_viewers(self, session: FollowMeSession, build) -> None:
        viewers = set(session.viewer_ids)
        contacts = [
            c for c in await self.store.list_trusted_contacts(session.user_id)
            if c.id in viewers and c.notifications_enabled
        ]
        if contacts:
            await self.fanout.notify(
                [c.to_recipient() for c in contacts], build(session, session.user_name),
            )

    async def _hazards_near(self, location: Location) -> List[HazardRoute]:
        nearby = await self.store.find_hazard_routes_near(location, self.hazard_radius_m / 1000.0)
        return [route for route, _ in nearby if route.safety_level in self.warning_levels]

    # ── Start ──

    async def start(
        self,
        user_id: str,
        location: Location,
        duration_seconds: Optional[int] = None,
        share_with_contact_ids: Iterable[str] = (),
        settings: Optional[FollowMeSettings] = None,
    ) -> FollowMeSession:
        if not user_id:
            raise ValidationError("User id is required", field="user_id")
        duration = duration_seconds if duration_seconds is not None else self.default_duration_seconds
        if duration <= 0:
            raise ValidationError("Duration must be positive", field="duration_seconds")
        settings = settings or FollowMeSettings(**self.default_settings.to_dict())
        if settings.max_history_points < 1:
            raise ValidationError("History size must be at least 1", field="max_history_points")

        async with self.locks.hold(f"follow-me:{user_id}"):
            now = self._clock()
            existing = await self.store.get_active_follow_me(user_id)
            if existing is not None and not await self._expire_if_stale(existing, now):
                raise SessionAlreadyActiveError(SESSION_KIND, user_id, existing.id)

            circle = {c.id for c in await self.store.list_trusted_contacts(user_id)}
            viewers: List[SharedViewer] = []
            for contact_id in share_with_contact_ids:
                if contact_id not in circle:
                    logger.debug("Dropping viewer %s: not in %s's trusted circle", contact_id, user_id)
                    continue
                if contact_id not in {v.contact_id for v in viewers}:
                    viewers.append(SharedViewer(contact_id, now))

            user = await self.store.get_user(user_id)
            location = location.stamped(now)
            session = FollowMeSession(
                user_id=user_id,
                user_name=user.name if user else None,
                started_at=now,
                expires_at=now + timedelta(seconds=duration),
                current_location=location,
                location_history=[location],
                sharing_with=viewers,
                settings=settings,
            )
            await self.store.insert_follow_me(session)

        logger.info(
            "Follow Me %s started for %s (%d viewer(s), %ds)",
            session.id, user_id, len(viewers), duration,
            extra={"session_id": session.id, "user_id": user_id},
        )
        await self._notify_viewers(session, messages.follow_me_started)
        return session

    # ── Location updates ──

    async def update_location(self, user_id: str, location: Location) -> FollowMeUpdate:
        async with self.locks.hold(f"follow-me:{user_id}"):
            session = await self._active_or_raise(user_id)
            now = self._clock()
            if await self._expire_if_stale(session, now):
                raise SessionExpiredError(SESSION_KIND, session.id)

            location = location.stamped(now)
            session.current_location = location
            session.location_history.append(location)
            overflow = len(session.location_history) - session.settings.max_history_points
            if overflow > 0:
                del session.location_history[:overflow]
            await self.store.update_follow_me(session)

        shared = location if session.settings.share_address else location.without_address()
        for viewer_id in session.viewer_ids:
            await self.publisher.publish(user_group(viewer_id), FOLLOW_ME_UPDATE, {
                "session_id": session.id,
                "user_id": user_id,
                "user_name": session.user_name,
                "location": shared.to_dict(),
                "timestamp": now.isoformat(),
            })

        warnings = await self._hazards_near(location)
        if warnings:
            await self.publisher.publish(user_group(user_id), ROUTE_WARNING, {
                "session_id": session.id,
                "message": f"⚠️ Near {len(warnings)} potentially unsafe route(s)",
                "routes": [w.to_summary() for w in warnings],
                "location": location.to_dict(),
            })
        return FollowMeUpdate(session, location, warnings)

    # ── Stop ──

    async def stop(self, user_id: str) -> FollowMeSession:
        async with self.locks.hold(f"follow-me:{user_id}"):
            session = await self._active_or_raise(user_id)
            now = self._clock()
            if await self._expire_if_stale(session, now):
                raise SessionExpiredError(SESSION_KIND, session.id)
            session.status = FollowMeStatus.STOPPED
            session.ended_at = now
            await self.store.update_follow_me(session)

        logger.info(
            "Follow Me %s stopped", session.id,
            extra={"session_id": session.id, "user_id": user_id},
        )
        await self._notify_viewers(session, messages.follow_me_stopped)
        return session

    # ── Settings ──

    async def update_settings(
        self,
        user_id: str,
        *,
        update_interval_seconds: Optional[int] = None,
        max_history_points: Optional[int] = None,
        share_address: Optional[bool] = None,
    ) -> FollowMeSettings:
        if update_interval_seconds is not None and update_interval_seconds <= 0:
            raise ValidationError("Update interval must be positive", field="update_interval_seconds")
        if max_history_points is not None and max_history_points < 1:
            raise ValidationError("History size must be at least 1", field="max_history_points")

        async with self.locks.hold(f"follow-me:{user_id}"):
            session = await self._active_or_raise(user_id)
            if update_interval_seconds is not None:
                session.settings.update_interval_seconds = update_interval_seconds
            if max_history_points is not None:
                session.settings.max_history_points = max_history_points
                overflow = len(session.location_history) - max_history_points
                if overflow > 0:
                    del session.location_history[:overflow]
            if share_address is not None:
                session.settings.share_address = share_address
            await self.store.update_follow_me(session)
        return session.settings

    # ── Queries ──

    async def get_active(self, user_id: str) -> Optional[FollowMeSession]:
        session = await self.store.get_active_follow_me(user_id)
        if session is not None and session.is_expired_at(self._clock()):
            return None
        return session

    async def shared_with(self, contact_id: str) -> List[FollowMeSession]:
        """Active, unexpired sessions the contact may view."""
        now = self._clock()
        return [
            s for s in await self.store.list_active_follow_me_for_viewer(contact_id)
            if not s.is_expired_at(now)
        ]

    async def history(self, user_id: str, *, limit: int = 20, offset: int = 0) -> List[FollowMeSession]:
        return await self.store.list_follow_me(user_id, limit=limit, offset=offset)
