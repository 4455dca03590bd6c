"""
Service health checks.

    GET /health        — full component report
    GET /health/live   — process liveness
    GET /health/ready  — 503 when a required component is down
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from backend.app.api.deps import get_engine
from backend.app.core.health import HealthStatus, run_health_check
from backend.app.engine import SafetyEngine

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health_report(engine: SafetyEngine = Depends(get_engine)):
    return (await run_health_check(engine)).to_dict()


@router.get("/live")
async def liveness():
    return {"status": "alive"}


@router.get("/ready")
async def readiness(engine: SafetyEngine = Depends(get_engine)):
    report = await run_health_check(engine)
    if report.status == HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()
