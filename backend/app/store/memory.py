"""
memory.py — In-process store (default for development and tests).

Entities are kept as ``to_dict()`` snapshots so callers always receive
fresh copies. Every write completes without an await, which makes each
check-and-insert atomic on the event loop.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from backend.app.core.errors import SessionAlreadyActiveError
from backend.app.safety.models import (
    AlertStatus,
    FollowMeSession,
    GuardianSession,
    HazardRoute,
    SOSAlert,
    TrustedContact,
    UserProfile,
)
from backend.app.spatial.radius_utils import find_within_radius
from backend.app.store.base import Store, hazards_near

logger = logging.getLogger(__name__)


def _page(items: List[Any], limit: int, offset: int) -> List[Any]:
    return items[offset: offset + limit]


class InMemoryStore(Store):
    """Dict-backed store; insertion order doubles as creation order."""

    def __init__(self) -> None:
        self._users: Dict[str, Dict[str, Any]] = {}
        self._contacts: Dict[str, Dict[str, Any]] = {}
        self._hazards: Dict[str, Dict[str, Any]] = {}
        self._sos: Dict[str, Dict[str, Any]] = {}
        self._guardian: Dict[str, Dict[str, Any]] = {}
        self._follow_me: Dict[str, Dict[str, Any]] = {}
        self._jobs: Dict[str, Dict[str, Any]] = {}
        # user_id → id of that user's active session
        self._active_guardian: Dict[str, str] = {}
        self._active_follow_me: Dict[str, str] = {}

    # ── Seeding helpers (sync, for fixtures and bootstrap) ──

    def add_user(self, user: UserProfile) -> UserProfile:
        self._users[user.id] = user.to_dict()
        return user

    def add_trusted_contact(self, contact: TrustedContact) -> TrustedContact:
        self._contacts[contact.id] = contact.to_dict()
        return contact

    def add_hazard_route(self, route: HazardRoute) -> HazardRoute:
        self._hazards[route.id] = route.to_dict()
        return route

    # ── Reference data ──

    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        data = self._users.get(user_id)
        return UserProfile.from_dict(data) if data else None

    async def save_user(self, user: UserProfile) -> None:
        self.add_user(user)

    async def list_trusted_contacts(self, owner_id: str) -> List[TrustedContact]:
        return [
            TrustedContact.from_dict(c)
            for c in self._contacts.values()
            if c["owner_id"] == owner_id
        ]

    async def save_trusted_contact(self, contact: TrustedContact) -> None:
        self.add_trusted_contact(contact)

    async def save_hazard_route(self, route: HazardRoute) -> None:
        self.add_hazard_route(route)

    async def find_users_near(self, center: Any, radius_km: float) -> List[Tuple[UserProfile, float]]:
        users = [UserProfile.from_dict(u) for u in self._users.values()]
        return find_within_radius(
            center, users, radius_km,
            location_of=lambda u: u.last_known_location,
            key_of=lambda u: u.id,
        )

    async def find_hazard_routes_near(self, center: Any, radius_km: float) -> List[Tuple[HazardRoute, float]]:
        routes = [HazardRoute.from_dict(r) for r in self._hazards.values()]
        return hazards_near(routes, center, radius_km)

    # ── SOS ──

    async def insert_sos(self, alert: SOSAlert) -> None:
        self._sos[alert.id] = alert.to_dict()

    async def update_sos(self, alert: SOSAlert) -> None:
        self._sos[alert.id] = alert.to_dict()

    async def get_sos(self, alert_id: str) -> Optional[SOSAlert]:
        data = self._sos.get(alert_id)
        return SOSAlert.from_dict(data) if data else None

    async def list_sos(
        self,
        *,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[SOSAlert]:
        rows = [
            a for a in reversed(list(self._sos.values()))
            if (status is None or a["status"] == status)
            and (user_id is None or a["user_id"] == user_id)
        ]
        return [SOSAlert.from_dict(a) for a in _page(rows, limit, offset)]

    async def find_active_sos_near(self, center: Any, radius_km: float) -> List[Tuple[SOSAlert, float]]:
        active = [
            SOSAlert.from_dict(a) for a in self._sos.values()
            if a["status"] == AlertStatus.ACTIVE.value
        ]
        return find_within_radius(
            center, active, radius_km,
            location_of=lambda a: None if a.location.is_placeholder else a.location,
            key_of=lambda a: a.id,
        )

    # ── Guardian ──

    async def insert_guardian(self, session: GuardianSession) -> None:
        if session.is_active:
            existing = self._active_guardian.get(session.user_id)
            if existing is not None:
                raise SessionAlreadyActiveError("Guardian session", session.user_id, existing)
            self._active_guardian[session.user_id] = session.id
        self._guardian[session.id] = session.to_dict()

    async def update_guardian(self, session: GuardianSession) -> None:
        self._guardian[session.id] = session.to_dict()
        if not session.is_active and self._active_guardian.get(session.user_id) == session.id:
            del self._active_guardian[session.user_id]

    async def get_guardian(self, session_id: str) -> Optional[GuardianSession]:
        data = self._guardian.get(session_id)
        return GuardianSession.from_dict(data) if data else None

    async def get_active_guardian(self, user_id: str) -> Optional[GuardianSession]:
        session_id = self._active_guardian.get(user_id)
        return await self.get_guardian(session_id) if session_id else None

    async def list_guardian(self, user_id: str, *, limit: int = 20, offset: int = 0) -> List[GuardianSession]:
        rows = [s for s in reversed(list(self._guardian.values())) if s["user_id"] == user_id]
        return [GuardianSession.from_dict(s) for s in _page(rows, limit, offset)]

    # ── Follow Me ──

    async def insert_follow_me(self, session: FollowMeSession) -> None:
        if session.is_active:
            existing = self._active_follow_me.get(session.user_id)
            if existing is not None:
                raise SessionAlreadyActiveError("Follow Me session", session.user_id, existing)
            self._active_follow_me[session.user_id] = session.id
        self._follow_me[session.id] = session.to_dict()

    async def update_follow_me(self, session: FollowMeSession) -> None:
        self._follow_me[session.id] = session.to_dict()
        if not session.is_active and self._active_follow_me.get(session.user_id) == session.id:
            del self._active_follow_me[session.user_id]

    async def get_active_follow_me(self, user_id: str) -> Optional[FollowMeSession]:
        session_id = self._active_follow_me.get(user_id)
        if not session_id:
            return None
        return FollowMeSession.from_dict(self._follow_me[session_id])

    async def list_follow_me(self, user_id: str, *, limit: int = 20, offset: int = 0) -> List[FollowMeSession]:
        rows = [s for s in reversed(list(self._follow_me.values())) if s["user_id"] == user_id]
        return [FollowMeSession.from_dict(s) for s in _page(rows, limit, offset)]

    async def list_active_follow_me_for_viewer(self, contact_id: str) -> List[FollowMeSession]:
        out = []
        for session_id in self._active_follow_me.values():
            data = self._follow_me[session_id]
            if any(v["contact_id"] == contact_id for v in data["sharing_with"]):
                out.append(FollowMeSession.from_dict(data))
        return out

    # ── Background jobs ──

    async def save_job(self, task_id: str, data: Dict[str, Any]) -> None:
        self._jobs[task_id] = dict(data)

    async def delete_job(self, task_id: str) -> None:
        self._jobs.pop(task_id, None)

    async def list_jobs(self) -> List[Dict[str, Any]]:
        return [dict(j) for j in self._jobs.values()]
