"""
FastAPI route: Guardian escort sessions.

Provides endpoints to:
    POST /api/v1/guardian/start              — start a session
    POST /api/v1/guardian/location           — location update / check-in
    POST /api/v1/guardian/complete           — arrived safely
    POST /api/v1/guardian/cancel             — cancel the session
    GET  /api/v1/guardian/active/{user_id}   — current session, or null
    GET  /api/v1/guardian/history/{user_id}  — past sessions
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from backend.app.api.deps import get_engine
from backend.app.api.schemas import GuardianEndRequest, GuardianLocationRequest, GuardianStartRequest
from backend.app.engine import SafetyEngine

router = APIRouter(prefix="/api/v1/guardian", tags=["guardian"])


@router.post("/start", status_code=201, summary="Start a Guardian session")
async def start_session(
    request: GuardianStartRequest,
    engine: SafetyEngine = Depends(get_engine),
) -> Dict[str, Any]:
    session = await engine.guardian.start(
        request.user_id,
        request.destination,
        request.destination_coords.to_location(),
        request.estimated_duration_minutes,
        request.trusted_contact_ids,
        current_location=(
            request.current_location.to_location() if request.current_location else None
        ),
    )
    return session.to_summary()


@router.post("/location", summary="Report a location during a Guardian session")
async def update_location(
    request: GuardianLocationRequest,
    engine: SafetyEngine = Depends(get_engine),
) -> Dict[str, Any]:
    update = await engine.guardian.update_location(
        request.session_id,
        request.user_id,
        request.location.to_location(),
        status=request.status,
        message=request.message,
    )
    return {
        "session": update.session.to_dict(),
        "deviation": update.deviation.to_dict(),
        "contacts_alerted": update.fanout.recipients_reached if update.fanout else 0,
    }


@router.post("/complete", summary="Complete a Guardian session")
async def complete_session(
    request: GuardianEndRequest,
    engine: SafetyEngine = Depends(get_engine),
) -> Dict[str, Any]:
    session = await engine.guardian.complete(request.session_id, request.user_id)
    return {
        "session_id": session.id,
        "status": session.status.value,
        "actual_arrival": session.actual_arrival.isoformat() if session.actual_arrival else None,
        "message": "Arrived safely. Trusted contacts have been notified.",
    }


@router.post("/cancel", summary="Cancel a Guardian session")
async def cancel_session(
    request: GuardianEndRequest,
    engine: SafetyEngine = Depends(get_engine),
) -> Dict[str, Any]:
    session = await engine.guardian.cancel(request.session_id, request.user_id)
    return {
        "session_id": session.id,
        "status": session.status.value,
        "message": "Guardian session cancelled.",
    }


@router.get("/active/{user_id}", summary="Current Guardian session")
async def active_session(user_id: str, engine: SafetyEngine = Depends(get_engine)) -> Optional[Dict[str, Any]]:
    session = await engine.guardian.get_active(user_id)
    return session.to_dict() if session else None


@router.get("/history/{user_id}", summary="Guardian session history")
async def session_history(
    user_id: str,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    engine: SafetyEngine = Depends(get_engine),
) -> List[Dict[str, Any]]:
    sessions = await engine.guardian.history(user_id, limit=limit, offset=offset)
    return [s.to_dict() for s in sessions]
