"""
orm.py — SQLAlchemy tables backing the SQL store.

One table per collection. Indexed columns hold what queries filter on
(owner, status, coordinates, creation time); the full entity lives in the
JSON ``body`` column.

Active-session uniqueness is a partial unique index:

    CREATE UNIQUE INDEX uq_guardian_sessions_active_user
        ON guardian_sessions (user_id) WHERE status = 'active';
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, DateTime, Float, Index, String, text
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.core.database import Base

_ACTIVE = text("status = 'active'")


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    body: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)

    __table_args__ = (Index("ix_users_lat_lon", "latitude", "longitude"),)


class TrustedContactRow(Base):
    __tablename__ = "trusted_contacts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    body: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)


class HazardRouteRow(Base):
    __tablename__ = "hazard_routes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(16), index=True)
    start_latitude: Mapped[float] = mapped_column(Float)
    start_longitude: Mapped[float] = mapped_column(Float)
    end_latitude: Mapped[float] = mapped_column(Float)
    end_longitude: Mapped[float] = mapped_column(Float)
    body: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)


class SOSAlertRow(Base):
    __tablename__ = "sos_alerts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(16), index=True)
    latitude: Mapped[float] = mapped_column(Float)
    longitude: Mapped[float] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    body: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)


class GuardianSessionRow(Base):
    __tablename__ = "guardian_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(16))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    body: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)

    __table_args__ = (
        Index(
            "uq_guardian_sessions_active_user", "user_id",
            unique=True, sqlite_where=_ACTIVE, postgresql_where=_ACTIVE,
        ),
    )


class FollowMeSessionRow(Base):
    __tablename__ = "follow_me_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(16))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    body: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)

    __table_args__ = (
        Index(
            "uq_follow_me_sessions_active_user", "user_id",
            unique=True, sqlite_where=_ACTIVE, postgresql_where=_ACTIVE,
        ),
    )


class JobRow(Base):
    __tablename__ = "background_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(16))
    body: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
