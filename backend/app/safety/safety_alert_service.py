"""
safety_alert_service.py — Community safety reports broadcast to nearby users.

Recipients are users whose last known location lies within the alert
radius, who opted in to safety alerts, excluding the reporter. Anonymous
reports reach the security dashboard only.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from backend.app.core.errors import ValidationError
from backend.app.notifications import messages
from backend.app.notifications.fanout import NotificationFanout
from backend.app.realtime.publisher import SAFETY_ALERT, SECURITY_GROUP, Publisher
from backend.app.safety.models import Location, SafetyAlert, SafetyAlertCategory, Severity
from backend.app.store.base import Store

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SafetyAlertBroadcaster:

    def __init__(
        self,
        store: Store,
        fanout: NotificationFanout,
        publisher: Publisher,
        *,
        default_radius_m: float = 1000.0,
        clock: Callable[[], datetime] = _now,
    ):
        self.store = store
        self.fanout = fanout
        self.publisher = publisher
        self.default_radius_m = default_radius_m
        self._clock = clock

    async def broadcast(
        self,
        reporter_id: str,
        title: str,
        description: str,
        category: Union[SafetyAlertCategory, str],
        severity: Union[Severity, str],
        location: Location,
        radius_m: Optional[float] = None,
        is_anonymous: bool = False,
    ) -> SafetyAlert:
        if not reporter_id:
            raise ValidationError("Reporter id is required", field="reporter_id")
        if not title or not title.strip():
            raise ValidationError("Title is required", field="title")
        if not description or not description.strip():
            raise ValidationError("Description is required", field="description")
        try:
            category = SafetyAlertCategory(category)
            severity = Severity(severity)
        except ValueError as e:
            raise ValidationError(str(e))
        radius_m = self.default_radius_m if radius_m is None else radius_m
        if radius_m <= 0:
            raise ValidationError("Radius must be positive", field="radius_m")

        now = self._clock()
        alert = SafetyAlert(
            reporter_id=reporter_id,
            title=title.strip(),
            description=description.strip(),
            category=category,
            severity=severity,
            location=location.stamped(now),
            radius_m=radius_m,
            is_anonymous=is_anonymous,
            created_at=now,
        )

        if not is_anonymous:
            nearby = await self.store.find_users_near(alert.location, radius_m / 1000.0)
            recipients = [
                user.to_recipient() for user, _ in nearby
                if user.safety_alerts_opt_in and user.id != reporter_id
            ]
            alert.recipients_targeted = len(recipients)
            if recipients:
                result = await self.fanout.notify(recipients, messages.safety_alert(alert))
                alert.recipients_reached = result.recipients_reached

        logger.info(
            "Safety alert %s (%s/%s): %d/%d nearby user(s) reached",
            alert.id, category.value, severity.value,
            alert.recipients_reached, alert.recipients_targeted,
            extra={"alert_id": alert.id, "recipient_count": alert.recipients_targeted},
        )
        await self.publisher.publish(SECURITY_GROUP, SAFETY_ALERT, alert.to_dict())
        return alert
