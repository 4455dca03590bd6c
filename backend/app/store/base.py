"""
base.py — Store capability: durable per-entity state for the safety engine.

Contract shared by every backend:

    • Point lookups by id, filtered lists ordered newest first
    • Radius queries returning (entity, distance_km) ordered by
      (distance, id)
    • Single-document writes are atomic
    • At most one ``active`` Guardian session and one ``active`` Follow Me
      session per user; a violating insert raises SessionAlreadyActiveError
    • Returned entities are copies: mutating them does not change stored
      state until written back

Reference data (users, trusted contacts, hazard routes) is owned by
external systems; the ``save_*`` methods exist for seeding and sync jobs.
"""

from __future__ import annotations

import abc
from typing import Any, Dict, Iterable, List, Optional, Tuple

from backend.app.safety.models import (
    FollowMeSession,
    GuardianSession,
    HazardRoute,
    SOSAlert,
    TrustedContact,
    UserProfile,
)
from backend.app.spatial.radius_utils import bounding_box, haversine, inside_bbox


def hazards_near(
    routes: Iterable[HazardRoute],
    center: Any,
    radius_km: float,
) -> List[Tuple[HazardRoute, float]]:
    """Active routes whose start or end lies within ``radius_km`` of ``center``."""
    if radius_km <= 0:
        raise ValueError(f"Radius must be positive, got {radius_km}")

    bbox = bounding_box(center, radius_km)
    matched: List[Tuple[HazardRoute, float]] = []
    for route in routes:
        if not route.is_active:
            continue
        distances = [
            haversine(center, end)
            for end in (route.start, route.end)
            if inside_bbox(end.latitude, end.longitude, *bbox)
        ]
        if distances and min(distances) <= radius_km:
            matched.append((route, min(distances)))

    matched.sort(key=lambda pair: (pair[1], pair[0].id))
    return matched


class Store(abc.ABC):
    """Persistence capability used by every safety service."""

    # ── Lifecycle ──

    async def init(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    # ── Reference data ──

    @abc.abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserProfile]: ...

    @abc.abstractmethod
    async def save_user(self, user: UserProfile) -> None: ...

    @abc.abstractmethod
    async def list_trusted_contacts(self, owner_id: str) -> List[TrustedContact]: ...

    @abc.abstractmethod
    async def save_trusted_contact(self, contact: TrustedContact) -> None: ...

    @abc.abstractmethod
    async def save_hazard_route(self, route: HazardRoute) -> None: ...

    @abc.abstractmethod
    async def find_users_near(self, center: Any, radius_km: float) -> List[Tuple[UserProfile, float]]:
        """Users whose last known location is within the radius."""

    @abc.abstractmethod
    async def find_hazard_routes_near(self, center: Any, radius_km: float) -> List[Tuple[HazardRoute, float]]:
        """Active hazard routes with an endpoint within the radius."""

    # ── SOS ──

    @abc.abstractmethod
    async def insert_sos(self, alert: SOSAlert) -> None: ...

    @abc.abstractmethod
    async def update_sos(self, alert: SOSAlert) -> None: ...

    @abc.abstractmethod
    async def get_sos(self, alert_id: str) -> Optional[SOSAlert]: ...

    @abc.abstractmethod
    async def list_sos(
        self,
        *,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[SOSAlert]: ...

    @abc.abstractmethod
    async def find_active_sos_near(self, center: Any, radius_km: float) -> List[Tuple[SOSAlert, float]]: ...

    # ── Guardian ──

    @abc.abstractmethod
    async def insert_guardian(self, session: GuardianSession) -> None:
        """Raises SessionAlreadyActiveError if the user already has one active."""

    @abc.abstractmethod
    async def update_guardian(self, session: GuardianSession) -> None: ...

    @abc.abstractmethod
    async def get_guardian(self, session_id: str) -> Optional[GuardianSession]: ...

    @abc.abstractmethod
    async def get_active_guardian(self, user_id: str) -> Optional[GuardianSession]: ...

    @abc.abstractmethod
    async def list_guardian(self, user_id: str, *, limit: int = 20, offset: int = 0) -> List[GuardianSession]: ...

    # ── Follow Me ──

    @abc.abstractmethod
    async def insert_follow_me(self, session: FollowMeSession) -> None:
        """Raises SessionAlreadyActiveError if the user already has one active."""

    @abc.abstractmethod
    async def update_follow_me(self, session: FollowMeSession) -> None: ...

    @abc.abstractmethod
    async def get_active_follow_me(self, user_id: str) -> Optional[FollowMeSession]: ...

    @abc.abstractmethod
    async def list_follow_me(self, user_id: str, *, limit: int = 20, offset: int = 0) -> List[FollowMeSession]: ...

    @abc.abstractmethod
    async def list_active_follow_me_for_viewer(self, contact_id: str) -> List[FollowMeSession]: ...

    # ── Background jobs ──

    @abc.abstractmethod
    async def save_job(self, task_id: str, data: Dict[str, Any]) -> None: ...

    @abc.abstractmethod
    async def delete_job(self, task_id: str) -> None: ...

    @abc.abstractmethod
    async def list_jobs(self) -> List[Dict[str, Any]]: ...
