"""
FastAPI route: Follow Me live location sharing.

Provides endpoints to:
    POST  /api/v1/follow-me/start                 — start sharing
    POST  /api/v1/follow-me/location              — location update
    POST  /api/v1/follow-me/stop                  — stop sharing
    PATCH /api/v1/follow-me/settings              — change settings
    GET   /api/v1/follow-me/active/{user_id}      — current session, or null
    GET   /api/v1/follow-me/shared/{contact_id}   — sessions shared with a contact
    GET   /api/v1/follow-me/history/{user_id}     — past sessions
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from backend.app.api.deps import get_engine
from backend.app.api.schemas import (
    FollowMeLocationRequest,
    FollowMeSettingsRequest,
    FollowMeStartRequest,
    FollowMeStartResponse,
    FollowMeStopRequest,
)
from backend.app.engine import SafetyEngine

router = APIRouter(prefix="/api/v1/follow-me", tags=["follow-me"])


@router.post("/start", response_model=FollowMeStartResponse, status_code=201, summary="Start sharing location")
async def start_sharing(request: FollowMeStartRequest, engine: SafetyEngine = Depends(get_engine)):
    settings = (
        request.settings.merged_with(engine.follow_me.default_settings)
        if request.settings else None
    )
    session = await engine.follow_me.start(
        request.user_id,
        request.location.to_location(),
        duration_seconds=request.duration_seconds,
        share_with_contact_ids=request.share_with_contact_ids,
        settings=settings,
    )
    return FollowMeStartResponse(
        session_id=session.id,
        expires_at=session.expires_at.isoformat(),
        sharing_with=session.viewer_ids,
    )


@router.post("/location", summary="Report a location while sharing")
async def update_location(
    request: FollowMeLocationRequest,
    engine: SafetyEngine = Depends(get_engine),
) -> Dict[str, Any]:
    update = await engine.follow_me.update_location(request.user_id, request.location.to_location())
    return update.to_dict()


@router.post("/stop", summary="Stop sharing location")
async def stop_sharing(request: FollowMeStopRequest, engine: SafetyEngine = Depends(get_engine)) -> Dict[str, Any]:
    session = await engine.follow_me.stop(request.user_id)
    return {
        "session_id": session.id,
        "status": session.status.value,
        "message": "Location sharing stopped.",
    }


@router.patch("/settings", summary="Update sharing settings")
async def update_settings(
    request: FollowMeSettingsRequest,
    engine: SafetyEngine = Depends(get_engine),
) -> Dict[str, Any]:
    settings = await engine.follow_me.update_settings(
        request.user_id,
        update_interval_seconds=request.update_interval_seconds,
        max_history_points=request.max_history_points,
        share_address=request.share_address,
    )
    return settings.to_dict()


@router.get("/active/{user_id}", summary="Current Follow Me session")
async def active_session(user_id: str, engine: SafetyEngine = Depends(get_engine)) -> Optional[Dict[str, Any]]:
    session = await engine.follow_me.get_active(user_id)
    return session.to_dict() if session else None


@router.get("/shared/{contact_id}", summary="Sessions shared with a contact")
async def shared_with(contact_id: str, engine: SafetyEngine = Depends(get_engine)) -> List[Dict[str, Any]]:
    sessions = await engine.follow_me.shared_with(contact_id)
    return [
        {
            "session_id": s.id,
            "user_id": s.user_id,
            "user_name": s.user_name,
            "expires_at": s.expires_at.isoformat(),
            "current_location": (
                s.current_location if s.settings.share_address
                else s.current_location.without_address()
            ).to_dict(),
        }
        for s in sessions
    ]


@router.get("/history/{user_id}", summary="Follow Me session history")
async def session_history(
    user_id: str,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    engine: SafetyEngine = Depends(get_engine),
) -> List[Dict[str, Any]]:
    sessions = await engine.follow_me.history(user_id, limit=limit, offset=offset)
    return [s.to_dict() for s in sessions]
