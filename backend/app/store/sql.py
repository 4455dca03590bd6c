"""
sql.py — SQL store on SQLAlchemy 2.0 async (PostgreSQL via asyncpg,
SQLite via aiosqlite for tests).

Radius queries run a bounding-box filter in SQL on the indexed coordinate
columns, then the exact Haversine check and (distance, id) ordering in
Python. The one-active-session rule is enforced by partial unique indexes;
an IntegrityError on insert becomes SessionAlreadyActiveError.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from sqlalchemy import and_, delete, or_, select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from backend.app.core.database import close_db, create_engine, create_session_factory, init_db
from backend.app.core.errors import SessionAlreadyActiveError, StoreFailure
from backend.app.safety.models import (
    AlertStatus,
    FollowMeSession,
    FollowMeStatus,
    GuardianSession,
    GuardianStatus,
    HazardRoute,
    SOSAlert,
    TrustedContact,
    UserProfile,
)
from backend.app.spatial.radius_utils import bounding_box, find_within_radius
from backend.app.store.base import Store, hazards_near
from backend.app.store.orm import (
    FollowMeSessionRow,
    GuardianSessionRow,
    HazardRouteRow,
    JobRow,
    SOSAlertRow,
    TrustedContactRow,
    UserRow,
)

logger = logging.getLogger(__name__)


class SqlStore(Store):
    """Store backed by a relational database."""

    def __init__(self, url: Optional[str] = None, *, engine: Optional[AsyncEngine] = None):
        self.engine = engine or create_engine(url)
        self._sessions = create_session_factory(self.engine)

    # ── Lifecycle ──

    async def init(self) -> None:
        await init_db(self.engine)

    async def close(self) -> None:
        await close_db(self.engine)

    async def ping(self) -> bool:
        async with self._read("ping") as session:
            await session.execute(text("SELECT 1"))
        return True

    @asynccontextmanager
    async def _write(self, operation: str) -> AsyncIterator[AsyncSession]:
        """One transaction; IntegrityError propagates for the caller to map."""
        async with self._sessions() as session:
            try:
                async with session.begin():
                    yield session
            except IntegrityError:
                raise
            except SQLAlchemyError as e:
                logger.error("Store %s failed: %s", operation, e)
                raise StoreFailure(operation, str(e)) from e

    @asynccontextmanager
    async def _read(self, operation: str) -> AsyncIterator[AsyncSession]:
        async with self._sessions() as session:
            try:
                yield session
            except SQLAlchemyError as e:
                logger.error("Store %s failed: %s", operation, e)
                raise StoreFailure(operation, str(e)) from e

    # ── Reference data ──

    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        async with self._read("get_user") as session:
            row = await session.get(UserRow, user_id)
            return UserProfile.from_dict(row.body) if row else None

    async def save_user(self, user: UserProfile) -> None:
        loc = user.last_known_location
        async with self._write("save_user") as session:
            await session.merge(UserRow(
                id=user.id,
                latitude=loc.latitude if loc else None,
                longitude=loc.longitude if loc else None,
                body=user.to_dict(),
            ))

    async def list_trusted_contacts(self, owner_id: str) -> List[TrustedContact]:
        async with self._read("list_trusted_contacts") as session:
            result = await session.execute(
                select(TrustedContactRow)
                .where(TrustedContactRow.user_id == owner_id)
                .order_by(TrustedContactRow.id)
            )
            return [TrustedContact.from_dict(r.body) for r in result.scalars()]

    async def save_trusted_contact(self, contact: TrustedContact) -> None:
        async with self._write("save_trusted_contact") as session:
            await session.merge(TrustedContactRow(
                id=contact.id, user_id=contact.owner_id, body=contact.to_dict(),
            ))

    async def save_hazard_route(self, route: HazardRoute) -> None:
        async with self._write("save_hazard_route") as session:
            await session.merge(HazardRouteRow(
                id=route.id,
                status="active" if route.is_active else "inactive",
                start_latitude=route.start.latitude,
                start_longitude=route.start.longitude,
                end_latitude=route.end.latitude,
                end_longitude=route.end.longitude,
                body=route.to_dict(),
            ))

    async def find_users_near(self, center: Any, radius_km: float) -> List[Tuple[UserProfile, float]]:
        min_lat, max_lat, min_lon, max_lon = bounding_box(center, radius_km)
        async with self._read("find_users_near") as session:
            result = await session.execute(
                select(UserRow).where(
                    UserRow.latitude.between(min_lat, max_lat),
                    UserRow.longitude.between(min_lon, max_lon),
                )
            )
            users = [UserProfile.from_dict(r.body) for r in result.scalars()]
        return find_within_radius(
            center, users, radius_km,
            location_of=lambda u: u.last_known_location,
            key_of=lambda u: u.id,
        )

    async def find_hazard_routes_near(self, center: Any, radius_km: float) -> List[Tuple[HazardRoute, float]]:
        min_lat, max_lat, min_lon, max_lon = bounding_box(center, radius_km)
        async with self._read("find_hazard_routes_near") as session:
            result = await session.execute(
                select(HazardRouteRow).where(
                    HazardRouteRow.status == "active",
                    or_(
                        and_(
                            HazardRouteRow.start_latitude.between(min_lat, max_lat),
                            HazardRouteRow.start_longitude.between(min_lon, max_lon),
                        ),
                        and_(
                            HazardRouteRow.end_latitude.between(min_lat, max_lat),
                            HazardRouteRow.end_longitude.between(min_lon, max_lon),
                        ),
                    ),
                )
            )
            routes = [HazardRoute.from_dict(r.body) for r in result.scalars()]
        return hazards_near(routes, center, radius_km)

    # ── SOS ──

    def _sos_row(self, alert: SOSAlert) -> SOSAlertRow:
        return SOSAlertRow(
            id=alert.id,
            user_id=alert.user_id,
            status=alert.status.value,
            latitude=alert.location.latitude,
            longitude=alert.location.longitude,
            created_at=alert.created_at,
            body=alert.to_dict(),
        )

    async def insert_sos(self, alert: SOSAlert) -> None:
        async with self._write("insert_sos") as session:
            session.add(self._sos_row(alert))

    async def update_sos(self, alert: SOSAlert) -> None:
        async with self._write("update_sos") as session:
            await session.merge(self._sos_row(alert))

    async def get_sos(self, alert_id: str) -> Optional[SOSAlert]:
        async with self._read("get_sos") as session:
            row = await session.get(SOSAlertRow, alert_id)
            return SOSAlert.from_dict(row.body) if row else None

    async def list_sos(
        self,
        *,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[SOSAlert]:
        query = select(SOSAlertRow)
        if status is not None:
            query = query.where(SOSAlertRow.status == status)
        if user_id is not None:
            query = query.where(SOSAlertRow.user_id == user_id)
        query = query.order_by(SOSAlertRow.created_at.desc(), SOSAlertRow.id).limit(limit).offset(offset)
        async with self._read("list_sos") as session:
            result = await session.execute(query)
            return [SOSAlert.from_dict(r.body) for r in result.scalars()]

    async def find_active_sos_near(self, center: Any, radius_km: float) -> List[Tuple[SOSAlert, float]]:
        min_lat, max_lat, min_lon, max_lon = bounding_box(center, radius_km)
        async with self._read("find_active_sos_near") as session:
            result = await session.execute(
                select(SOSAlertRow).where(
                    SOSAlertRow.status == AlertStatus.ACTIVE.value,
                    SOSAlertRow.latitude.between(min_lat, max_lat),
                    SOSAlertRow.longitude.between(min_lon, max_lon),
                )
            )
            alerts = [SOSAlert.from_dict(r.body) for r in result.scalars()]
        return find_within_radius(
            center, alerts, radius_km,
            location_of=lambda a: None if a.location.is_placeholder else a.location,
            key_of=lambda a: a.id,
        )

    # ── Guardian ──

    def _guardian_row(self, session: GuardianSession) -> GuardianSessionRow:
        return GuardianSessionRow(
            id=session.id,
            user_id=session.user_id,
            status=session.status.value,
            created_at=session.started_at,
            body=session.to_dict(),
        )

    async def insert_guardian(self, session: GuardianSession) -> None:
        try:
            async with self._write("insert_guardian") as db:
                db.add(self._guardian_row(session))
        except IntegrityError as e:
            existing = await self.get_active_guardian(session.user_id)
            if existing is None:
                raise StoreFailure("insert_guardian", str(e)) from e
            raise SessionAlreadyActiveError("Guardian session", session.user_id, existing.id) from e

    async def update_guardian(self, session: GuardianSession) -> None:
        async with self._write("update_guardian") as db:
            await db.merge(self._guardian_row(session))

    async def get_guardian(self, session_id: str) -> Optional[GuardianSession]:
        async with self._read("get_guardian") as db:
            row = await db.get(GuardianSessionRow, session_id)
            return GuardianSession.from_dict(row.body) if row else None

    async def get_active_guardian(self, user_id: str) -> Optional[GuardianSession]:
        async with self._read("get_active_guardian") as db:
            result = await db.execute(
                select(GuardianSessionRow).where(
                    GuardianSessionRow.user_id == user_id,
                    GuardianSessionRow.status == GuardianStatus.ACTIVE.value,
                )
            )
            row = result.scalars().first()
            return GuardianSession.from_dict(row.body) if row else None

    async def list_guardian(self, user_id: str, *, limit: int = 20, offset: int = 0) -> List[GuardianSession]:
        async with self._read("list_guardian") as db:
            result = await db.execute(
                select(GuardianSessionRow)
                .where(GuardianSessionRow.user_id == user_id)
                .order_by(GuardianSessionRow.created_at.desc(), GuardianSessionRow.id)
                .limit(limit).offset(offset)
            )
            return [GuardianSession.from_dict(r.body) for r in result.scalars()]

    # ── Follow Me ──

    def _follow_me_row(self, session: FollowMeSession) -> FollowMeSessionRow:
        return FollowMeSessionRow(
            id=session.id,
            user_id=session.user_id,
            status=session.status.value,
            created_at=session.started_at,
            body=session.to_dict(),
        )

    async def insert_follow_me(self, session: FollowMeSession) -> None:
        try:
            async with self._write("insert_follow_me") as db:
                db.add(self._follow_me_row(session))
        except IntegrityError as e:
            existing = await self.get_active_follow_me(session.user_id)
            if existing is None:
                raise StoreFailure("insert_follow_me", str(e)) from e
            raise SessionAlreadyActiveError("Follow Me session", session.user_id, existing.id) from e

    async def update_follow_me(self, session: FollowMeSession) -> None:
        async with self._write("update_follow_me") as db:
            await db.merge(self._follow_me_row(session))

    async def get_active_follow_me(self, user_id: str) -> Optional[FollowMeSession]:
        async with self._read("get_active_follow_me") as db:
            result = await db.execute(
                select(FollowMeSessionRow).where(
                    FollowMeSessionRow.user_id == user_id,
                    FollowMeSessionRow.status == FollowMeStatus.ACTIVE.value,
                )
            )
            row = result.scalars().first()
            return FollowMeSession.from_dict(row.body) if row else None

    async def list_follow_me(self, user_id: str, *, limit: int = 20, offset: int = 0) -> List[FollowMeSession]:
        async with self._read("list_follow_me") as db:
            result = await db.execute(
                select(FollowMeSessionRow)
                .where(FollowMeSessionRow.user_id == user_id)
                .order_by(FollowMeSessionRow.created_at.desc(), FollowMeSessionRow.id)
                .limit(limit).offset(offset)
            )
            return [FollowMeSession.from_dict(r.body) for r in result.scalars()]

    async def list_active_follow_me_for_viewer(self, contact_id: str) -> List[FollowMeSession]:
        async with self._read("list_active_follow_me_for_viewer") as db:
            result = await db.execute(
                select(FollowMeSessionRow).where(
                    FollowMeSessionRow.status == FollowMeStatus.ACTIVE.value,
                )
            )
            sessions = [FollowMeSession.from_dict(r.body) for r in result.scalars()]
        return [s for s in sessions if contact_id in s.viewer_ids]

    # ── Background jobs ──

    async def save_job(self, task_id: str, data: Dict[str, Any]) -> None:
        async with self._write("save_job") as db:
            await db.merge(JobRow(id=task_id, status=data.get("status", "pending"), body=dict(data)))

    async def delete_job(self, task_id: str) -> None:
        async with self._write("delete_job") as db:
            await db.execute(delete(JobRow).where(JobRow.id == task_id))

    async def list_jobs(self) -> List[Dict[str, Any]]:
        async with self._read("list_jobs") as db:
            result = await db.execute(select(JobRow).order_by(JobRow.id))
            return [dict(r.body) for r in result.scalars()]
