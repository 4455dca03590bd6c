"""
models.py — Domain entities for the campus safety engine.

Defines:
    • Location, UserProfile, TrustedContact, HazardRoute — reference data
    • SOSAlert           — emergency alert with media, actions, notifications
    • GuardianSession    — escorted journey with check-ins and deviations
    • FollowMeSession    — time-boxed live location sharing
    • SafetyAlert        — community report broadcast to nearby users

Every entity round-trips through ``to_dict()`` / ``from_dict()``; the store
persists those dicts and real-time events carry them. Timestamps are
timezone-aware UTC datetimes serialised as ISO-8601.

═══════════════════════════════════════════════════════════════════════════
STATE MACHINES
═══════════════════════════════════════════════════════════════════════════

    SOSAlert:          active ──resolve──▶ resolved

    GuardianSession:   active ──complete──▶ completed
                          └────cancel────▶ cancelled

    FollowMeSession:   active ──stop──────▶ stopped
                          └──(now > expires_at)──▶ expired

Terminal states are never mutated again (SOS enrichment is the single
exception: a resolved alert still receives its audit-trail enrichment).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from backend.app.notifications.models import Recipient
from backend.app.spatial.radius_utils import validate_coordinates


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class UserRole(str, Enum):
    STUDENT  = "student"
    STAFF    = "staff"
    SECURITY = "security"
    ADMIN    = "admin"


class Severity(str, Enum):
    LOW      = "low"
    MEDIUM   = "medium"
    HIGH     = "high"
    CRITICAL = "critical"


class TriggerSource(str, Enum):
    MANUAL         = "manual"
    AUTO           = "auto"
    HIDDEN_GESTURE = "hidden-gesture"


class AlertStatus(str, Enum):
    ACTIVE   = "active"
    RESOLVED = "resolved"


class GuardianStatus(str, Enum):
    ACTIVE    = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CheckInStatus(str, Enum):
    ON_TIME   = "on_time"
    DELAYED   = "delayed"
    OFF_ROUTE = "off_route"


class FollowMeStatus(str, Enum):
    ACTIVE  = "active"
    STOPPED = "stopped"
    EXPIRED = "expired"


class SafetyLevel(str, Enum):
    VERY_SAFE = "very_safe"
    SAFE      = "safe"
    MODERATE  = "moderate"
    AVOID     = "avoid"


class SafetyAlertCategory(str, Enum):
    THEFT   = "theft"
    ASSAULT = "assault"
    FIRE    = "fire"
    MEDICAL = "medical"
    WEATHER = "weather"
    TRAFFIC = "traffic"
    OTHER   = "other"


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _generate_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _location_or_none(data: Optional[Dict[str, Any]]) -> Optional["Location"]:
    return Location.from_dict(data) if data else None


PLACEHOLDER_ADDRESS = "Location not available"


# ═══════════════════════════════════════════════════════════════════════════
# Reference data
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Location:
    """A reported position, optionally with GPS accuracy and street address."""
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    address: Optional[str] = None
    timestamp: Optional[datetime] = None

    def __post_init__(self) -> None:
        validate_coordinates(self.latitude, self.longitude)

    @classmethod
    def placeholder(cls, timestamp: Optional[datetime] = None) -> "Location":
        """(0, 0) stand-in used when an SOS is raised without a fix."""
        return cls(0.0, 0.0, address=PLACEHOLDER_ADDRESS, timestamp=timestamp)

    @property
    def is_placeholder(self) -> bool:
        return self.address == PLACEHOLDER_ADDRESS and self.latitude == 0.0 and self.longitude == 0.0

    def stamped(self, timestamp: datetime) -> "Location":
        """Copy with ``timestamp`` filled in when the caller left it empty."""
        return self if self.timestamp else replace(self, timestamp=timestamp)

    def without_address(self) -> "Location":
        return replace(self, address=None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
            "address": self.address,
            "timestamp": _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Location":
        return cls(
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            accuracy=data.get("accuracy"),
            address=data.get("address"),
            timestamp=_parse_dt(data.get("timestamp")),
        )


@dataclass
class UserProfile:
    """User record owned by the external account system (read-only here)."""
    id: str
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    push_token: Optional[str] = None
    role: UserRole = UserRole.STUDENT
    last_known_location: Optional[Location] = None
    safety_alerts_opt_in: bool = True

    def to_recipient(self) -> Recipient:
        return Recipient(
            recipient_id=self.id,
            name=self.name,
            phone=self.phone,
            email=self.email,
            push_token=self.push_token,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "push_token": self.push_token,
            "role": self.role.value,
            "last_known_location": (
                self.last_known_location.to_dict() if self.last_known_location else None
            ),
            "safety_alerts_opt_in": self.safety_alerts_opt_in,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserProfile":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            phone=data.get("phone"),
            email=data.get("email"),
            push_token=data.get("push_token"),
            role=UserRole(data.get("role", UserRole.STUDENT.value)),
            last_known_location=_location_or_none(data.get("last_known_location")),
            safety_alerts_opt_in=data.get("safety_alerts_opt_in", True),
        )


@dataclass
class TrustedContact:
    """One entry of a user's trusted circle."""
    id: str
    owner_id: str
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    push_token: Optional[str] = None
    relationship: str = "other"
    is_primary: bool = False
    notifications_enabled: bool = True

    def to_recipient(self) -> Recipient:
        return Recipient(
            recipient_id=self.id,
            name=self.name,
            phone=self.phone,
            email=self.email,
            push_token=self.push_token,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "push_token": self.push_token,
            "relationship": self.relationship,
            "is_primary": self.is_primary,
            "notifications_enabled": self.notifications_enabled,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrustedContact":
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            name=data.get("name", ""),
            phone=data.get("phone"),
            email=data.get("email"),
            push_token=data.get("push_token"),
            relationship=data.get("relationship", "other"),
            is_primary=data.get("is_primary", False),
            notifications_enabled=data.get("notifications_enabled", True),
        )


@dataclass
class HazardRoute:
    """A known unsafe route or area, from the campus route catalogue."""
    id: str
    name: str
    start: Location
    end: Location
    safety_level: SafetyLevel = SafetyLevel.SAFE
    waypoints: List[Location] = field(default_factory=list)
    is_active: bool = True

    @property
    def points(self) -> List[Location]:
        return [self.start, *self.waypoints, self.end]

    def to_summary(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "safety_level": self.safety_level.value}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "start": self.start.to_dict(),
            "end": self.end.to_dict(),
            "safety_level": self.safety_level.value,
            "waypoints": [w.to_dict() for w in self.waypoints],
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HazardRoute":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            start=Location.from_dict(data["start"]),
            end=Location.from_dict(data["end"]),
            safety_level=SafetyLevel(data.get("safety_level", SafetyLevel.SAFE.value)),
            waypoints=[Location.from_dict(w) for w in data.get("waypoints", [])],
            is_active=data.get("is_active", True),
        )


# ═══════════════════════════════════════════════════════════════════════════
# SOS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class SOSMedia:
    """Reference to captured evidence (the bytes live in object storage)."""
    kind: str  # "photo" | "video"
    url: str
    captured_at: datetime
    duration_seconds: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "url": self.url,
            "captured_at": _iso(self.captured_at),
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SOSMedia":
        return cls(
            kind=data["kind"],
            url=data["url"],
            captured_at=_parse_dt(data["captured_at"]),
            duration_seconds=data.get("duration_seconds"),
        )


@dataclass
class SOSActions:
    photo_captured: bool = False
    video_recording: bool = False
    location_obtained: bool = False
    contacts_notified: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "photo_captured": self.photo_captured,
            "video_recording": self.video_recording,
            "location_obtained": self.location_obtained,
            "contacts_notified": self.contacts_notified,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SOSActions":
        return cls(**{k: bool(data.get(k, False)) for k in cls().to_dict()})


@dataclass
class ContactNotification:
    """Outcome of notifying one trusted contact about an SOS."""
    contact_id: str
    notified_at: datetime
    status: str  # "delivered" | "failed"
    channels_delivered: List[str] = field(default_factory=list)
    channels_failed: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contact_id": self.contact_id,
            "notified_at": _iso(self.notified_at),
            "status": self.status,
            "channels_delivered": list(self.channels_delivered),
            "channels_failed": list(self.channels_failed),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContactNotification":
        return cls(
            contact_id=data["contact_id"],
            notified_at=_parse_dt(data["notified_at"]),
            status=data["status"],
            channels_delivered=list(data.get("channels_delivered", [])),
            channels_failed=list(data.get("channels_failed", [])),
        )


@dataclass
class SOSAlert:
    """An emergency raised by a user. Never deleted."""
    user_id: str
    location: Location
    message: str = "Emergency SOS activated"
    summary: Optional[str] = None
    severity: Severity = Severity.HIGH
    trigger_source: TriggerSource = TriggerSource.MANUAL
    status: AlertStatus = AlertStatus.ACTIVE
    id: str = field(default_factory=lambda: _generate_id("SOS"))
    user_name: Optional[str] = None
    media: List[SOSMedia] = field(default_factory=list)
    actions: SOSActions = field(default_factory=SOSActions)
    notifications: List[ContactNotification] = field(default_factory=list)
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    created_at: datetime = field(default_factory=_now)

    @property
    def is_active(self) -> bool:
        return self.status == AlertStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "message": self.message,
            "summary": self.summary,
            "severity": self.severity.value,
            "location": self.location.to_dict(),
            "trigger_source": self.trigger_source.value,
            "status": self.status.value,
            "media": [m.to_dict() for m in self.media],
            "actions": self.actions.to_dict(),
            "notifications": [n.to_dict() for n in self.notifications],
            "resolved_by": self.resolved_by,
            "resolved_at": _iso(self.resolved_at),
            "resolution_notes": self.resolution_notes,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SOSAlert":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            user_name=data.get("user_name"),
            location=Location.from_dict(data["location"]),
            message=data.get("message", "Emergency SOS activated"),
            summary=data.get("summary"),
            severity=Severity(data.get("severity", Severity.HIGH.value)),
            trigger_source=TriggerSource(data.get("trigger_source", TriggerSource.MANUAL.value)),
            status=AlertStatus(data.get("status", AlertStatus.ACTIVE.value)),
            media=[SOSMedia.from_dict(m) for m in data.get("media", [])],
            actions=SOSActions.from_dict(data.get("actions", {})),
            notifications=[ContactNotification.from_dict(n) for n in data.get("notifications", [])],
            resolved_by=data.get("resolved_by"),
            resolved_at=_parse_dt(data.get("resolved_at")),
            resolution_notes=data.get("resolution_notes"),
            created_at=_parse_dt(data.get("created_at")) or _now(),
        )


# ═══════════════════════════════════════════════════════════════════════════
# Guardian
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class GuardianContact:
    contact_id: str
    notified: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"contact_id": self.contact_id, "notified": self.notified}


@dataclass
class CheckIn:
    location: Location
    status: CheckInStatus
    timestamp: datetime
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "location": self.location.to_dict(),
            "status": self.status.value,
            "message": self.message,
            "timestamp": _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CheckIn":
        return cls(
            location=Location.from_dict(data["location"]),
            status=CheckInStatus(data["status"]),
            message=data.get("message"),
            timestamp=_parse_dt(data["timestamp"]),
        )


@dataclass
class RouteDeviation:
    location: Location
    distance_from_route_m: float
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "location": self.location.to_dict(),
            "distance_from_route_m": self.distance_from_route_m,
            "timestamp": _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RouteDeviation":
        return cls(
            location=Location.from_dict(data["location"]),
            distance_from_route_m=float(data["distance_from_route_m"]),
            timestamp=_parse_dt(data["timestamp"]),
        )


@dataclass
class SentAlert:
    """Audit entry for a notification batch sent during a session."""
    type: str  # "started" | "route_deviation" | "completed" | "cancelled"
    message: str
    sent_to: List[str]
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "message": self.message,
            "sent_to": list(self.sent_to),
            "timestamp": _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SentAlert":
        return cls(
            type=data["type"],
            message=data["message"],
            sent_to=list(data.get("sent_to", [])),
            timestamp=_parse_dt(data["timestamp"]),
        )


@dataclass
class GuardianSession:
    """An escorted journey watched by trusted contacts."""
    user_id: str
    destination: str
    destination_coords: Location
    estimated_duration_minutes: int
    estimated_arrival: datetime
    id: str = field(default_factory=lambda: _generate_id("GRD"))
    route: List[Location] = field(default_factory=list)
    trusted_contacts: List[GuardianContact] = field(default_factory=list)
    check_ins: List[CheckIn] = field(default_factory=list)
    route_deviations: List[RouteDeviation] = field(default_factory=list)
    alerts_sent: List[SentAlert] = field(default_factory=list)
    status: GuardianStatus = GuardianStatus.ACTIVE
    started_at: datetime = field(default_factory=_now)
    ended_at: Optional[datetime] = None
    actual_arrival: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == GuardianStatus.ACTIVE

    @property
    def contact_ids(self) -> List[str]:
        return [c.contact_id for c in self.trusted_contacts]

    def to_summary(self) -> Dict[str, Any]:
        return {
            "session_id": self.id,
            "destination": self.destination,
            "estimated_arrival": _iso(self.estimated_arrival),
            "trusted_contacts": [c.to_dict() for c in self.trusted_contacts],
            "status": self.status.value,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "destination": self.destination,
            "destination_coords": self.destination_coords.to_dict(),
            "estimated_duration_minutes": self.estimated_duration_minutes,
            "estimated_arrival": _iso(self.estimated_arrival),
            "route": [p.to_dict() for p in self.route],
            "trusted_contacts": [c.to_dict() for c in self.trusted_contacts],
            "check_ins": [c.to_dict() for c in self.check_ins],
            "route_deviations": [d.to_dict() for d in self.route_deviations],
            "alerts_sent": [a.to_dict() for a in self.alerts_sent],
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "actual_arrival": _iso(self.actual_arrival),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GuardianSession":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            destination=data["destination"],
            destination_coords=Location.from_dict(data["destination_coords"]),
            estimated_duration_minutes=int(data["estimated_duration_minutes"]),
            estimated_arrival=_parse_dt(data["estimated_arrival"]),
            route=[Location.from_dict(p) for p in data.get("route", [])],
            trusted_contacts=[
                GuardianContact(c["contact_id"], c.get("notified", False))
                for c in data.get("trusted_contacts", [])
            ],
            check_ins=[CheckIn.from_dict(c) for c in data.get("check_ins", [])],
            route_deviations=[RouteDeviation.from_dict(d) for d in data.get("route_deviations", [])],
            alerts_sent=[SentAlert.from_dict(a) for a in data.get("alerts_sent", [])],
            status=GuardianStatus(data.get("status", GuardianStatus.ACTIVE.value)),
            started_at=_parse_dt(data.get("started_at")) or _now(),
            ended_at=_parse_dt(data.get("ended_at")),
            actual_arrival=_parse_dt(data.get("actual_arrival")),
        )


# ═══════════════════════════════════════════════════════════════════════════
# Follow Me
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class FollowMeSettings:
    update_interval_seconds: int = 30
    max_history_points: int = 100
    share_address: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "update_interval_seconds": self.update_interval_seconds,
            "max_history_points": self.max_history_points,
            "share_address": self.share_address,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FollowMeSettings":
        defaults = cls()
        return cls(
            update_interval_seconds=int(data.get("update_interval_seconds", defaults.update_interval_seconds)),
            max_history_points=int(data.get("max_history_points", defaults.max_history_points)),
            share_address=bool(data.get("share_address", defaults.share_address)),
        )


@dataclass
class SharedViewer:
    contact_id: str
    added_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"contact_id": self.contact_id, "added_at": _iso(self.added_at)}


@dataclass
class FollowMeSession:
    """Live location sharing with a fixed expiry."""
    user_id: str
    expires_at: datetime
    current_location: Location
    id: str = field(default_factory=lambda: _generate_id("FLW"))
    user_name: Optional[str] = None
    status: FollowMeStatus = FollowMeStatus.ACTIVE
    started_at: datetime = field(default_factory=_now)
    ended_at: Optional[datetime] = None
    sharing_with: List[SharedViewer] = field(default_factory=list)
    location_history: List[Location] = field(default_factory=list)
    settings: FollowMeSettings = field(default_factory=FollowMeSettings)

    @property
    def is_active(self) -> bool:
        return self.status == FollowMeStatus.ACTIVE

    @property
    def viewer_ids(self) -> List[str]:
        return [v.contact_id for v in self.sharing_with]

    def is_expired_at(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "expires_at": _iso(self.expires_at),
            "ended_at": _iso(self.ended_at),
            "sharing_with": [v.to_dict() for v in self.sharing_with],
            "current_location": self.current_location.to_dict(),
            "location_history": [p.to_dict() for p in self.location_history],
            "settings": self.settings.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FollowMeSession":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            user_name=data.get("user_name"),
            status=FollowMeStatus(data.get("status", FollowMeStatus.ACTIVE.value)),
            started_at=_parse_dt(data.get("started_at")) or _now(),
            expires_at=_parse_dt(data["expires_at"]),
            ended_at=_parse_dt(data.get("ended_at")),
            sharing_with=[
                SharedViewer(v["contact_id"], _parse_dt(v["added_at"]))
                for v in data.get("sharing_with", [])
            ],
            current_location=Location.from_dict(data["current_location"]),
            location_history=[Location.from_dict(p) for p in data.get("location_history", [])],
            settings=FollowMeSettings.from_dict(data.get("settings", {})),
        )


# ═══════════════════════════════════════════════════════════════════════════
# Safety alerts
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class SafetyAlert:
    """A community safety report broadcast to opted-in users nearby."""
    reporter_id: str
    title: str
    description: str
    category: SafetyAlertCategory
    severity: Severity
    location: Location
    radius_m: float
    id: str = field(default_factory=lambda: _generate_id("SAF"))
    is_anonymous: bool = False
    recipients_targeted: int = 0
    recipients_reached: int = 0
    created_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "reporter_id": None if self.is_anonymous else self.reporter_id,
            "title": self.title,
            "description": self.description,
            "category": self.category.value,
            "severity": self.severity.value,
            "location": self.location.to_dict(),
            "radius_m": self.radius_m,
            "is_anonymous": self.is_anonymous,
            "recipients_targeted": self.recipients_targeted,
            "recipients_reached": self.recipients_reached,
            "created_at": _iso(self.created_at),
        }
