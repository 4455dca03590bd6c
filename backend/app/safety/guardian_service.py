"""
guardian_service.py — Guardian escort sessions.

A user walking somewhere invites trusted contacts to watch the journey.
The planned route is fixed at start; every location update is checked
against it and a deviation beyond the threshold alerts the contacts.

═══════════════════════════════════════════════════════════════════════════
LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    start ──▶ active ──update_location*──▶ complete ──▶ completed
                 │                                     (contacts: arrived)
                 └────────────────────────── cancel ──▶ cancelled
                                                       (contacts: cancelled)

    update_location on deviation:
        +1 route_deviations entry
        +1 alerts_sent entry (type "route_deviation", sent_to = recipients)
        +1 URGENT fan-out batch to the same recipients

Mutations happen under ``guardian:{session_id}``; the one-active-session
check happens under ``guardian-user:{user_id}`` and again in the store.
Fan-out runs after the lock is released so slow providers never block
the next location update.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from backend.app.core.errors import (
    NoActiveSessionError,
    NotFoundError,
    SessionAlreadyActiveError,
    ValidationError,
)
from backend.app.core.locks import KeyedLock
from backend.app.notifications import messages
from backend.app.notifications.fanout import NotificationFanout
from backend.app.notifications.models import FanoutResult, NotificationMessage
from backend.app.safety.models import (
    CheckIn,
    CheckInStatus,
    GuardianContact,
    GuardianSession,
    GuardianStatus,
    Location,
    RouteDeviation,
    SentAlert,
    TrustedContact,
)
from backend.app.spatial.route_deviation import DeviationCheck, RouteDeviationDetector, RoutePlanner
from backend.app.store.base import Store

logger = logging.getLogger(__name__)

SESSION_KIND = "Guardian session"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class GuardianUpdate:
    """Outcome of one location update."""
    session: GuardianSession
    check_in: CheckIn
    deviation: DeviationCheck
    fanout: Optional[FanoutResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session": self.session.to_dict(),
            "check_in": self.check_in.to_dict(),
            "deviation": self.deviation.to_dict(),
            "notifications": self.fanout.to_dict() if self.fanout else None,
        }


class GuardianService:
    """Starts, tracks and ends Guardian sessions."""

    def __init__(
        self,
        store: Store,
        fanout: NotificationFanout,
        locks: KeyedLock,
        route_planner: RoutePlanner,
        detector: Optional[RouteDeviationDetector] = None,
        *,
        clock: Callable[[], datetime] = _now,
    ):
        self.store = store
        self.fanout = fanout
        self.locks = locks
        self.route_planner = route_planner
        self.detector = detector or RouteDeviationDetector()
        self._clock = clock

    # ── Helpers ──

    async def _watchers(self, session: GuardianSession) -> List[TrustedContact]:
        """Invited contacts that still accept notifications."""
        invited = set(session.contact_ids)
        return [
            c for c in await self.store.list_trusted_contacts(session.user_id)
            if c.id in invited and c.notifications_enabled
        ]

    async def _user_name(self, user_id: str) -> Optional[str]:
        user = await self.store.get_user(user_id)
        return user.name if user else None

    async def _notify(self, contacts: List[TrustedContact], message: NotificationMessage) -> Optional[FanoutResult]:
        if not contacts:
            return None
        return await self.fanout.notify([c.to_recipient() for c in contacts], message)

    async def _owned_active(self, session_id: str, user_id: str) -> GuardianSession:
        session = await self.store.get_guardian(session_id)
        if session is None or session.user_id != user_id:
            raise NotFoundError("GuardianSession", session_id=session_id, user_id=user_id)
        if not session.is_active:
            raise NoActiveSessionError(SESSION_KIND, session_id=session_id, user_id=user_id)
        return session

    # ── Start ──

    async def start(
        self,
        user_id: str,
        destination: str,
        destination_coords: Location,
        estimated_duration_minutes: int,
        trusted_contact_ids: Iterable[str] = (),
        current_location: Optional[Location] = None,
    ) -> GuardianSession:
        if not user_id:
            raise ValidationError("User id is required", field="user_id")
        if not destination or not destination.strip():
            raise ValidationError("Destination is required", field="destination")
        if estimated_duration_minutes is None or estimated_duration_minutes <= 0:
            raise ValidationError(
                "Estimated duration must be a positive number of minutes",
                field="estimated_duration_minutes",
            )

        async with self.locks.hold(f"guardian-user:{user_id}"):
            existing = await self.store.get_active_guardian(user_id)
            if existing is not None:
                raise SessionAlreadyActiveError(SESSION_KIND, user_id, existing.id)

            user = await self.store.get_user(user_id)
            origin = current_location or (user.last_known_location if user else None)
            if origin is None:
                raise ValidationError(
                    "Current location is required when no last known location is on file",
                    field="current_location",
                )

            route = await self.route_planner.plan(origin, destination_coords)

            circle = {c.id for c in await self.store.list_trusted_contacts(user_id)}
            invited: List[str] = []
            for contact_id in trusted_contact_ids:
                if contact_id in circle and contact_id not in invited:
                    invited.append(contact_id)
                elif contact_id not in circle:
                    logger.debug("Dropping contact %s: not in %s's trusted circle", contact_id, user_id)

            now = self._clock()
            origin = origin.stamped(now)
            session = GuardianSession(
                user_id=user_id,
                destination=destination.strip(),
                destination_coords=destination_coords,
                estimated_duration_minutes=int(estimated_duration_minutes),
                estimated_arrival=now + timedelta(minutes=estimated_duration_minutes),
                route=[Location(p.latitude, p.longitude) for p in route],
                trusted_contacts=[GuardianContact(cid) for cid in invited],
                check_ins=[CheckIn(origin, CheckInStatus.ON_TIME, now, "Journey started")],
                started_at=now,
            )
            await self.store.insert_guardian(session)

        logger.info(
            "Guardian %s started for %s to %s (%d contact(s), %d route point(s))",
            session.id, user_id, session.destination, len(invited), len(session.route),
            extra={"session_id": session.id, "user_id": user_id},
        )

        name = user.name if user else None
        result = await self._notify(await self._watchers(session), messages.guardian_started(session, name))
        if result is None:
            return session

        async with self.locks.hold(f"guardian:{session.id}"):
            current = await self.store.get_guardian(session.id)
            if current is None or not current.is_active:
                return current or session
            sent_to = {r.recipient_id for r in result.records}
            for contact in current.trusted_contacts:
                if contact.contact_id in sent_to:
                    contact.notified = True
            current.alerts_sent.append(SentAlert(
                "started", result.message.body, [r.recipient_id for r in result.records], self._clock(),
            ))
            await self.store.update_guardian(current)
        return current

    # ── Location updates ──

    async def update_location(
        self,
        session_id: str,
        user_id: str,
        location: Location,
        status: Union[CheckInStatus, str, None] = None,
        message: Optional[str] = None,
    ) -> GuardianUpdate:
        if status is not None and not isinstance(status, CheckInStatus):
            try:
                status = CheckInStatus(status)
            except ValueError:
                raise ValidationError(f"Invalid check-in status '{status}'", field="status")

        outgoing: Optional[NotificationMessage] = None
        watchers: List[TrustedContact] = []

        async with self.locks.hold(f"guardian:{session_id}"):
            session = await self._owned_active(session_id, user_id)
            now = self._clock()
            location = location.stamped(now)

            deviation = self.detector.check(location, session.route)
            if status is None:
                status = CheckInStatus.OFF_ROUTE if deviation.deviated else CheckInStatus.ON_TIME
            check_in = CheckIn(location, status, now, message)
            session.check_ins.append(check_in)

            if deviation.deviated:
                session.route_deviations.append(RouteDeviation(location, deviation.distance_m, now))
                watchers = await self._watchers(session)
                outgoing = messages.guardian_deviation(
                    session, await self._user_name(user_id), location, deviation.distance_m,
                )
                session.alerts_sent.append(SentAlert(
                    "route_deviation", outgoing.body, [c.id for c in watchers], now,
                ))
                logger.warning(
                    "Guardian %s: %s is %.0fm off route",
                    session_id, user_id, deviation.distance_m,
                    extra={"session_id": session_id, "user_id": user_id},
                )
            await self.store.update_guardian(session)

        result = await self._notify(watchers, outgoing) if outgoing else None
        return GuardianUpdate(session, check_in, deviation, result)

    # ── End of session ──

    async def _finish(
        self,
        session_id: str,
        user_id: str,
        status: GuardianStatus,
        build: Callable[[GuardianSession, Optional[str]], NotificationMessage],
    ) -> GuardianSession:
        async with self.locks.hold(f"guardian:{session_id}"):
            session = await self._owned_active(session_id, user_id)
            now = self._clock()
            session.status = status
            session.ended_at = now
            if status == GuardianStatus.COMPLETED:
                session.actual_arrival = now

            watchers = await self._watchers(session)
            outgoing = build(session, await self._user_name(user_id))
            session.alerts_sent.append(SentAlert(status.value, outgoing.body, [c.id for c in watchers], now))
            await self.store.update_guardian(session)

        logger.info(
            "Guardian %s %s", session_id, status.value,
            extra={"session_id": session_id, "user_id": user_id},
        )
        await self._notify(watchers, outgoing)
        return session

    async def complete(self, session_id: str, user_id: str) -> GuardianSession:
        return await self._finish(session_id, user_id, GuardianStatus.COMPLETED, messages.guardian_completed)

    async def cancel(self, session_id: str, user_id: str) -> GuardianSession:
        return await self._finish(session_id, user_id, GuardianStatus.CANCELLED, messages.guardian_cancelled)

    # ── Queries ──

    async def get_active(self, user_id: str) -> Optional[GuardianSession]:
        return await self.store.get_active_guardian(user_id)

    async def history(self, user_id: str, *, limit: int = 20, offset: int = 0) -> List[GuardianSession]:
        return await self.store.list_guardian(user_id, limit=limit, offset=offset)
