"""
FastAPI route: SOS emergency alerts.

Provides endpoints to:
    POST /api/v1/sos                      — raise an SOS (returns at once)
    GET  /api/v1/sos                      — list alerts (security dashboard)
    GET  /api/v1/sos/{alert_id}           — alert detail
    POST /api/v1/sos/{alert_id}/resolve   — resolve an alert
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from backend.app.api.deps import get_engine
from backend.app.api.schemas import SOSResolveRequest, SOSTriggerRequest, SOSTriggerResponse
from backend.app.engine import SafetyEngine
from backend.app.safety.models import AlertStatus

router = APIRouter(prefix="/api/v1/sos", tags=["sos"])


@router.post(
    "",
    response_model=SOSTriggerResponse,
    status_code=201,
    summary="Trigger an SOS",
    description=(
        "Persists the alert and notifies the security dashboard immediately. "
        "Media capture and trusted-contact notification run in the background."
    ),
)
async def trigger_sos(request: SOSTriggerRequest, engine: SafetyEngine = Depends(get_engine)):
    alert = await engine.sos.trigger(
        request.user_id,
        message=request.message,
        severity=request.severity,
        location=request.location_value(),
        trigger_source=request.trigger_source,
        summary=request.summary,
    )
    return SOSTriggerResponse(
        alert_id=alert.id,
        status=alert.status.value,
        created_at=alert.created_at.isoformat(),
    )


@router.get("", summary="List SOS alerts")
async def list_sos(
    status: Optional[AlertStatus] = Query(None),
    user_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    engine: SafetyEngine = Depends(get_engine),
) -> List[Dict[str, Any]]:
    alerts = await engine.sos.list_alerts(status, user_id=user_id, limit=limit, offset=offset)
    return [a.to_dict() for a in alerts]


@router.get("/{alert_id}", summary="Get an SOS alert")
async def get_sos(alert_id: str, engine: SafetyEngine = Depends(get_engine)) -> Dict[str, Any]:
    alert = await engine.sos.get(alert_id)
    return alert.to_dict()


@router.post("/{alert_id}/resolve", summary="Resolve an SOS alert")
async def resolve_sos(
    alert_id: str,
    request: SOSResolveRequest,
    engine: SafetyEngine = Depends(get_engine),
) -> Dict[str, Any]:
    alert = await engine.sos.resolve(alert_id, request.resolver_id, request.notes)
    return alert.to_dict()
