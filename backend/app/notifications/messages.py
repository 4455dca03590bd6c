"""
messages.py — Notification text for every safety flow.

Each builder returns a NotificationMessage whose ``body`` is short enough to
read on a lock screen and whose ``data`` lets the mobile app deep-link to
the source entity.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from backend.app.notifications.models import NotificationMessage, NotificationPriority
from backend.app.safety.models import (
    FollowMeSession,
    GuardianSession,
    Location,
    SafetyAlert,
    Severity,
    SOSAlert,
)
from backend.app.spatial.radius_utils import format_distance


def _clock(value: datetime) -> str:
    return f"{value:%H:%M} UTC"


def _where(location: Location) -> str:
    if location.address:
        return location.address
    return f"{location.latitude:.5f}, {location.longitude:.5f}"


def _display(name: Optional[str]) -> str:
    return name or "A campus user"


# ── SOS ──

def sos_emergency(alert: SOSAlert, user_name: Optional[str]) -> NotificationMessage:
    loc = alert.location
    body = (
        f"🚨 EMERGENCY ALERT: {_display(user_name)} activated SOS at {_where(loc)}.\n"
        f"Time: {_clock(alert.created_at)}\n"
        f"Coordinates: {loc.latitude:.5f}, {loc.longitude:.5f}\n"
        f"Severity: {alert.severity.value.upper()}"
    )
    if alert.message:
        body += f"\nMessage: {alert.message}"
    return NotificationMessage(
        title="Emergency SOS",
        body=body,
        priority=NotificationPriority.CRITICAL,
        data={"type": "sos", "alert_id": alert.id},
    )


# ── Guardian ──

def guardian_started(session: GuardianSession, user_name: Optional[str]) -> NotificationMessage:
    return NotificationMessage(
        title="Guardian session started",
        body=(
            f"{_display(user_name)} has started a Guardian session to "
            f"{session.destination}. Estimated arrival: {_clock(session.estimated_arrival)}."
        ),
        priority=NotificationPriority.ROUTINE,
        data={"type": "guardian_started", "session_id": session.id},
    )


def guardian_deviation(
    session: GuardianSession,
    user_name: Optional[str],
    location: Location,
    distance_m: float,
) -> NotificationMessage:
    return NotificationMessage(
        title="Guardian: off planned route",
        body=(
            f"⚠️ {_display(user_name)} is {format_distance(distance_m / 1000.0)} "
            f"off the planned route to {session.destination}. "
            f"Last location: {_where(location)}."
        ),
        priority=NotificationPriority.URGENT,
        data={
            "type": "route_deviation",
            "session_id": session.id,
            "latitude": location.latitude,
            "longitude": location.longitude,
        },
    )


def guardian_completed(session: GuardianSession, user_name: Optional[str]) -> NotificationMessage:
    return NotificationMessage(
        title="Arrived safely",
        body=f"✅ {_display(user_name)} has safely arrived at {session.destination}.",
        priority=NotificationPriority.ROUTINE,
        data={"type": "guardian_completed", "session_id": session.id},
    )


def guardian_cancelled(session: GuardianSession, user_name: Optional[str]) -> NotificationMessage:
    return NotificationMessage(
        title="Guardian session ended",
        body=f"{_display(user_name)} cancelled their Guardian session to {session.destination}.",
        priority=NotificationPriority.ROUTINE,
        data={"type": "guardian_cancelled", "session_id": session.id},
    )


# ── Follow Me ──

def follow_me_started(session: FollowMeSession, user_name: Optional[str]) -> NotificationMessage:
    return NotificationMessage(
        title="Live location shared",
        body=(
            f"📍 {_display(user_name)} is sharing their live location with you "
            f"until {_clock(session.expires_at)}."
        ),
        priority=NotificationPriority.ROUTINE,
        data={"type": "follow_me_started", "session_id": session.id},
    )


def follow_me_stopped(session: FollowMeSession, user_name: Optional[str]) -> NotificationMessage:
    return NotificationMessage(
        title="Live location stopped",
        body=f"{_display(user_name)} has stopped sharing their location.",
        priority=NotificationPriority.ROUTINE,
        data={"type": "follow_me_stopped", "session_id": session.id},
    )


# ── Safety alerts ──

def safety_alert(alert: SafetyAlert) -> NotificationMessage:
    priority = (
        NotificationPriority.CRITICAL
        if alert.severity == Severity.CRITICAL
        else NotificationPriority.URGENT
    )
    return NotificationMessage(
        title=f"Safety alert: {alert.title}",
        body=(
            f"[{alert.severity.value.upper()}] {alert.title} near {_where(alert.location)}. "
            f"{alert.description}"
        ),
        priority=priority,
        data={"type": "safety_alert", "alert_id": alert.id, "category": alert.category.value},
    )
