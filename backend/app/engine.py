"""
engine.py — Wires the safety services to their capabilities.

    Settings ──▶ build_engine()
                    │
                    ├── Store            memory | sql
                    ├── Publisher        memory | redis
                    ├── NotificationFanout  (push / sms / email providers)
                    ├── RoutePlanner     straight_line | osrm
                    ├── BackgroundJobQueue
                    │
                    ├── SOSService
                    ├── GuardianService
                    ├── FollowMeService
                    └── SafetyAlertBroadcaster

Every collaborator can be overridden, so tests build an engine over an
InMemoryStore, an InMemoryPublisher and fake channel senders.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional

from backend.app.core.config import Settings, get_settings
from backend.app.core.locks import KeyedLock
from backend.app.notifications.fanout import NotificationFanout
from backend.app.realtime.publisher import Publisher, build_publisher
from backend.app.safety.follow_me_service import FollowMeService
from backend.app.safety.guardian_service import GuardianService
from backend.app.safety.jobs import BackgroundJobQueue
from backend.app.safety.models import FollowMeSettings
from backend.app.safety.safety_alert_service import SafetyAlertBroadcaster
from backend.app.safety.sos_service import SOSService
from backend.app.spatial.route_deviation import RouteDeviationDetector, RoutePlanner, build_route_planner
from backend.app.store.base import Store
from backend.app.store.memory import InMemoryStore

logger = logging.getLogger(__name__)


def build_store(cfg: Settings) -> Store:
    if cfg.STORE_BACKEND == "memory":
        return InMemoryStore()
    if cfg.STORE_BACKEND == "sql":
        # Imported lazily so the memory backend works without a DB driver
        from backend.app.store.sql import SqlStore
        return SqlStore(cfg.DATABASE_URL)
    raise ValueError(f"Unknown store backend: {cfg.STORE_BACKEND}")


@dataclass
class SafetyEngine:
    settings: Settings
    store: Store
    publisher: Publisher
    fanout: NotificationFanout
    route_planner: RoutePlanner
    jobs: BackgroundJobQueue
    sos: SOSService
    guardian: GuardianService
    follow_me: FollowMeService
    safety_alerts: SafetyAlertBroadcaster

    async def start(self) -> None:
        await self.store.init()
        recovered = await self.jobs.recover()
        logger.info(
            "Safety engine started (store=%s, realtime=%s, recovered_jobs=%d)",
            self.settings.STORE_BACKEND, self.settings.REALTIME_BACKEND, recovered,
        )

    async def shutdown(self) -> None:
        await self.jobs.stop()
        await self.route_planner.close()
        await self.publisher.close()
        await self.store.close()
        logger.info("Safety engine stopped")


def build_engine(
    cfg: Optional[Settings] = None,
    *,
    store: Optional[Store] = None,
    publisher: Optional[Publisher] = None,
    fanout: Optional[NotificationFanout] = None,
    route_planner: Optional[RoutePlanner] = None,
    clock: Optional[Callable[[], datetime]] = None,
    job_sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> SafetyEngine:
    cfg = cfg or get_settings()
    store = store or build_store(cfg)
    publisher = publisher or build_publisher(
        cfg.REALTIME_BACKEND,
        redis_url=cfg.REDIS_URL,
        prefix=cfg.REALTIME_CHANNEL_PREFIX,
    )
    fanout = fanout or NotificationFanout.from_settings(cfg)
    route_planner = route_planner or build_route_planner(
        cfg.ROUTE_PROVIDER,
        base_url=cfg.OSRM_BASE_URL,
        timeout_seconds=cfg.ROUTE_TIMEOUT_SECONDS,
    )

    timing = {"clock": clock} if clock else {}
    job_kwargs = dict(timing)
    if job_sleep:
        job_kwargs["sleep"] = job_sleep

    locks = KeyedLock()
    jobs = BackgroundJobQueue(
        store,
        max_attempts=cfg.JOB_MAX_ATTEMPTS,
        retry_backoff_seconds=cfg.JOB_RETRY_BACKOFF_SECONDS,
        retention_hours=cfg.JOB_RETENTION_HOURS,
        max_finished=cfg.JOB_MAX_FINISHED,
        **job_kwargs,
    )

    sos = SOSService(
        store, fanout, publisher, jobs, locks,
        enrichment_delay_seconds=cfg.SOS_ENRICHMENT_DELAY_SECONDS,
        media_base_path=cfg.SOS_MEDIA_BASE_PATH,
        **timing,
    )
    guardian = GuardianService(
        store, fanout, locks, route_planner,
        RouteDeviationDetector(cfg.ROUTE_DEVIATION_THRESHOLD_M),
        **timing,
    )
    follow_me = FollowMeService(
        store, fanout, publisher, locks,
        default_duration_seconds=cfg.FOLLOW_ME_DEFAULT_DURATION_SECONDS,
        default_settings=FollowMeSettings(
            update_interval_seconds=cfg.FOLLOW_ME_UPDATE_INTERVAL_SECONDS,
            max_history_points=cfg.FOLLOW_ME_MAX_HISTORY_POINTS,
        ),
        hazard_radius_m=cfg.HAZARD_RADIUS_M,
        warning_levels=cfg.HAZARD_WARNING_LEVELS,
        **timing,
    )
    safety_alerts = SafetyAlertBroadcaster(
        store, fanout, publisher,
        default_radius_m=cfg.SAFETY_ALERT_DEFAULT_RADIUS_M,
        **timing,
    )

    return SafetyEngine(
        settings=cfg,
        store=store,
        publisher=publisher,
        fanout=fanout,
        route_planner=route_planner,
        jobs=jobs,
        sos=sos,
        guardian=guardian,
        follow_me=follow_me,
        safety_alerts=safety_alerts,
    )
