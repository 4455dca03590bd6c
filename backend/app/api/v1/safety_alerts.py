"""
FastAPI route: community safety alerts.

    POST /api/v1/safety-alerts   — report an incident; nearby opted-in
                                   users are notified
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from backend.app.api.deps import get_engine
from backend.app.api.schemas import SafetyAlertRequest, SafetyAlertResponse
from backend.app.engine import SafetyEngine

router = APIRouter(prefix="/api/v1/safety-alerts", tags=["safety-alerts"])


@router.post("", response_model=SafetyAlertResponse, status_code=201, summary="Broadcast a safety alert")
async def create_safety_alert(request: SafetyAlertRequest, engine: SafetyEngine = Depends(get_engine)):
    alert = await engine.safety_alerts.broadcast(
        request.reporter_id,
        request.title,
        request.description,
        request.category,
        request.severity,
        request.location.to_location(),
        radius_m=request.radius_m,
        is_anonymous=request.is_anonymous,
    )
    return SafetyAlertResponse(
        alert_id=alert.id,
        severity=alert.severity.value,
        category=alert.category.value,
        radius_m=alert.radius_m,
        recipients_targeted=alert.recipients_targeted,
        recipients_reached=alert.recipients_reached,
        created_at=alert.created_at.isoformat(),
    )
