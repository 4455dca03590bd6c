"""FastAPI dependencies shared by the v1 routers."""

from __future__ import annotations

from fastapi import Request

from backend.app.engine import SafetyEngine


def get_engine(request: Request) -> SafetyEngine:
    """The engine built by the application lifespan."""
    return request.app.state.engine
