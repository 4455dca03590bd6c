"""
Component checks behind ``/health`` and ``/health/ready``.

    store               ping; failure → unhealthy (503 on readiness)
    realtime            ping; failure → degraded, events are best effort
    delivery_providers  configuration sanity for push / SMS / email
    job_queue           number of background jobs in flight
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List

from backend.app.core.config import settings

if TYPE_CHECKING:
    from backend.app.engine import SafetyEngine

logger = logging.getLogger(__name__)

# Jobs waiting or running above this count mark the queue degraded
JOB_BACKLOG_WARNING = 100


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


# Process start, for uptime reporting
_STARTED = time.monotonic()

_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.UNHEALTHY: 2}


def _redact(url: str) -> str:
    return url.split("@")[-1]


async def _check(comp: ComponentHealth, ping, on_failure: HealthStatus, ok_message: str) -> ComponentHealth:
    start = time.monotonic()
    try:
        await ping()
        comp.message = ok_message
    except Exception as e:
        comp.status = on_failure
        comp.message = f"{type(e).__name__}: {e}"
        logger.error("%s check failed: %s", comp.name, e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_store(engine: "SafetyEngine") -> ComponentHealth:
    """An unreachable store takes the service out of rotation."""
    cfg = engine.settings
    comp = ComponentHealth(name="store", details={"backend": cfg.STORE_BACKEND})
    if cfg.STORE_BACKEND == "sql":
        comp.details["url"] = _redact(cfg.DATABASE_URL)
    return await _check(comp, engine.store.ping, HealthStatus.UNHEALTHY, "Store reachable")


async def check_realtime(engine: "SafetyEngine") -> ComponentHealth:
    """Real-time events are best effort, so a dead channel only degrades."""
    cfg = engine.settings
    comp = ComponentHealth(name="realtime", details={"backend": cfg.REALTIME_BACKEND})
    if cfg.REALTIME_BACKEND == "redis":
        comp.details["url"] = _redact(cfg.REDIS_URL)
    return await _check(comp, engine.publisher.ping, HealthStatus.DEGRADED, "Channel available")


async def check_delivery_providers(engine: "SafetyEngine") -> ComponentHealth:
    """Configured providers; simulation outside development is a warning."""
    cfg = engine.settings
    providers = {"push": cfg.PUSH_PROVIDER, "sms": cfg.SMS_PROVIDER, "email": cfg.EMAIL_PROVIDER}
    comp = ComponentHealth(name="delivery_providers", details=dict(providers))

    problems = []
    if cfg.SMS_PROVIDER == "twilio" and not (cfg.TWILIO_ACCOUNT_SID and cfg.TWILIO_AUTH_TOKEN):
        problems.append("twilio credentials missing")
    if cfg.EMAIL_PROVIDER == "smtp" and not cfg.SMTP_HOST:
        problems.append("SMTP host missing")
    simulated = sorted(name for name, provider in providers.items() if provider == "simulation")
    if simulated and cfg.is_production:
        problems.append(f"simulated channels in production: {', '.join(simulated)}")

    if problems:
        comp.status = HealthStatus.DEGRADED
    comp.message = "; ".join(problems) or "Providers configured"
    return comp


async def check_job_queue(engine: "SafetyEngine") -> ComponentHealth:
    in_flight = engine.jobs.in_flight
    comp = ComponentHealth(name="job_queue", details={"in_flight": in_flight})
    if in_flight > JOB_BACKLOG_WARNING:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"Backlog of {in_flight} jobs"
    else:
        comp.message = f"{in_flight} job(s) in flight"
    return comp


async def run_health_check(engine: "SafetyEngine") -> HealthReport:
    """Run every check; the report takes the worst component status."""
    components = await asyncio.gather(
        check_store(engine),
        check_realtime(engine),
        check_delivery_providers(engine),
        check_job_queue(engine),
    )
    return HealthReport(
        status=max((c.status for c in components), key=_SEVERITY.__getitem__),
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _STARTED,
        components=list(components),
    )
