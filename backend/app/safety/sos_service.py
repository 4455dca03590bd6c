"""
sos_service.py — SOS alert lifecycle: trigger, enrichment, resolve.

═══════════════════════════════════════════════════════════════════════════
TRIGGER PATH (synchronous, must never wait on delivery)
═══════════════════════════════════════════════════════════════════════════

    trigger(user_id, ...)
        │  validate user id           ──▶ ValidationError
        │  persist active alert       (placeholder location if none)
        │  publish sos-alert          ──▶ group "security"
        │  queue sos.enrich           (delay SOS_ENRICHMENT_DELAY_SECONDS)
        ▼
    return alert                      caller is unblocked here

═══════════════════════════════════════════════════════════════════════════
ENRICHMENT (background job, at-least-once)
═══════════════════════════════════════════════════════════════════════════

    1. attach photo + video placeholders      (skipped if already attached)
    2. mark actions                           persist
    3. fan out CRITICAL emergency message     trusted contacts with
                                              notifications enabled
    4. record one notification per contact    persist

A resolved alert is still enriched so the audit trail is complete.
Delivery failures never change the alert status. Contacts already
notified on a previous run are not notified again.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from backend.app.core.errors import AlreadyResolvedError, NotFoundError, ValidationError
from backend.app.core.locks import KeyedLock
from backend.app.notifications import messages
from backend.app.notifications.fanout import NotificationFanout
from backend.app.notifications.models import DeliveryStatus
from backend.app.realtime.publisher import SECURITY_GROUP, SOS_ALERT, SOS_RESOLVED, Publisher
from backend.app.safety.jobs import BackgroundJobQueue
from backend.app.safety.models import (
    AlertStatus,
    ContactNotification,
    Location,
    Severity,
    SOSAlert,
    SOSMedia,
    TriggerSource,
)
from backend.app.store.base import Store

logger = logging.getLogger(__name__)

ENRICH_JOB = "sos.enrich"
VIDEO_DURATION_SECONDS = 120


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_enum(enum_cls, value, field_name: str):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ValidationError(
            f"Invalid {field_name} '{value}' (allowed: {allowed})", field=field_name,
        )


class SOSService:
    """Raises, enriches and resolves SOS alerts."""

    def __init__(
        self,
        store: Store,
        fanout: NotificationFanout,
        publisher: Publisher,
        jobs: BackgroundJobQueue,
        locks: KeyedLock,
        *,
        enrichment_delay_seconds: float = 1.0,
        media_base_path: str = "/uploads/sos",
        clock: Callable[[], datetime] = _now,
    ):
        self.store = store
        self.fanout = fanout
        self.publisher = publisher
        self.jobs = jobs
        self.locks = locks
        self.enrichment_delay_seconds = enrichment_delay_seconds
        self.media_base_path = media_base_path.rstrip("/")
        self._clock = clock
        jobs.register(ENRICH_JOB, self.handle_enrich_job)

    # ── Trigger ──

    async def trigger(
        self,
        user_id: str,
        message: Optional[str] = None,
        severity: Union[Severity, str, None] = None,
        location: Optional[Location] = None,
        trigger_source: Union[TriggerSource, str, None] = None,
        summary: Optional[str] = None,
    ) -> SOSAlert:
        """Persist an active alert, tell security, queue enrichment."""
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("User id is required to trigger an SOS", field="user_id")

        severity = _parse_enum(Severity, severity, "severity") or Severity.HIGH
        trigger_source = (
            _parse_enum(TriggerSource, trigger_source, "trigger_source") or TriggerSource.MANUAL
        )

        now = self._clock()
        # Absent profile must not block an emergency
        user = await self.store.get_user(user_id)

        alert = SOSAlert(
            user_id=user_id,
            user_name=user.name if user else None,
            location=location.stamped(now) if location else Location.placeholder(now),
            message=message or "Emergency SOS activated",
            summary=summary,
            severity=severity,
            trigger_source=trigger_source,
            created_at=now,
        )
        await self.store.insert_sos(alert)

        logger.warning(
            "SOS %s triggered by %s (%s, %s)",
            alert.id, user_id, severity.value, trigger_source.value,
            extra={"alert_id": alert.id, "user_id": user_id},
        )

        await self.publisher.publish(SECURITY_GROUP, SOS_ALERT, {
            "alert_id": alert.id,
            "user": {
                "id": user_id,
                "name": alert.user_name,
                "phone": user.phone if user else None,
            },
            "location": alert.location.to_dict(),
            "address": alert.location.address,
            "severity": severity.value,
            "trigger_source": trigger_source.value,
            "message": alert.message,
            "triggered_at": now.isoformat(),
        })

        await self.jobs.submit(
            ENRICH_JOB, {"alert_id": alert.id},
            delay_seconds=self.enrichment_delay_seconds,
        )
        return alert

    # ── Enrichment ──

    async def handle_enrich_job(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        alert = await self.enrich(payload["alert_id"])
        if alert is None:
            return None
        return {"alert_id": alert.id, "notifications": len(alert.notifications)}

    def _placeholder_media(self, alert: SOSAlert, now: datetime) -> List[SOSMedia]:
        ts = int(now.timestamp() * 1000)
        base = f"{self.media_base_path}/{alert.id}"
        return [
            SOSMedia("photo", f"{base}/photo-{ts}.jpg", now),
            SOSMedia("video", f"{base}/video-{ts}.mp4", now, VIDEO_DURATION_SECONDS),
        ]

    async def enrich(self, alert_id: str) -> Optional[SOSAlert]:
        """Attach media references and notify trusted contacts. Safe to re-run."""
        async with self.locks.hold(f"sos:{alert_id}"):
            alert = await self.store.get_sos(alert_id)
            if alert is None:
                logger.warning("Enrichment skipped: SOS %s no longer exists", alert_id)
                return None

            now = self._clock()
            if not alert.media:
                alert.media.extend(self._placeholder_media(alert, now))
            alert.actions.photo_captured = True
            alert.actions.video_recording = True
            alert.actions.location_obtained = not alert.location.is_placeholder
            await self.store.update_sos(alert)

        already = {n.contact_id for n in alert.notifications}
        contacts = [
            c for c in await self.store.list_trusted_contacts(alert.user_id)
            if c.notifications_enabled and c.id not in already
        ]

        result = None
        if contacts:
            user = await self.store.get_user(alert.user_id)
            name = user.name if user else alert.user_name
            result = await self.fanout.notify(
                [c.to_recipient() for c in contacts],
                messages.sos_emergency(alert, name),
            )

        async with self.locks.hold(f"sos:{alert_id}"):
            alert = await self.store.get_sos(alert_id)
            if alert is None:
                return None
            if result is not None:
                notified_at = self._clock()
                recorded = {n.contact_id for n in alert.notifications}
                for record in result.records:
                    if record.recipient_id in recorded:
                        continue
                    alert.notifications.append(ContactNotification(
                        contact_id=record.recipient_id,
                        notified_at=notified_at,
                        status=(
                            DeliveryStatus.DELIVERED.value if record.is_reached
                            else DeliveryStatus.FAILED.value
                        ),
                        channels_delivered=[c.value for c in record.channels_delivered],
                        channels_failed=[c.value for c in record.channels_failed],
                    ))
            alert.actions.contacts_notified = True
            await self.store.update_sos(alert)

        logger.info(
            "SOS %s enriched: %d contact(s) notified",
            alert_id, len(alert.notifications),
            extra={"alert_id": alert_id, "recipient_count": len(alert.notifications)},
        )
        return alert

    # ── Resolve ──

    async def resolve(self, alert_id: str, resolver_id: str, notes: Optional[str] = None) -> SOSAlert:
        if not resolver_id:
            raise ValidationError("Resolver id is required", field="resolver_id")

        async with self.locks.hold(f"sos:{alert_id}"):
            alert = await self.store.get_sos(alert_id)
            if alert is None:
                raise NotFoundError("SOSAlert", alert_id=alert_id)
            if alert.status == AlertStatus.RESOLVED:
                raise AlreadyResolvedError(alert_id)

            now = self._clock()
            alert.status = AlertStatus.RESOLVED
            alert.resolved_by = resolver_id
            alert.resolved_at = now
            alert.resolution_notes = notes
            await self.store.update_sos(alert)

        logger.info(
            "SOS %s resolved by %s", alert_id, resolver_id,
            extra={"alert_id": alert_id, "user_id": resolver_id},
        )
        await self.publisher.publish(SECURITY_GROUP, SOS_RESOLVED, {
            "alert_id": alert_id,
            "resolved_by": resolver_id,
            "resolved_at": now.isoformat(),
            "notes": notes,
        })
        return alert

    # ── Queries ──

    async def get(self, alert_id: str) -> SOSAlert:
        alert = await self.store.get_sos(alert_id)
        if alert is None:
            raise NotFoundError("SOSAlert", alert_id=alert_id)
        return alert

    async def list_alerts(
        self,
        status: Union[AlertStatus, str, None] = None,
        *,
        user_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[SOSAlert]:
        status = _parse_enum(AlertStatus, status, "status")
        return await self.store.list_sos(
            status=status.value if status else None,
            user_id=user_id,
            limit=limit,
            offset=offset,
        )
