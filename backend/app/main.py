"""
ASGI entry point for the campus safety engine.

    uvicorn backend.app.main:app --port 8000

``create_app`` accepts a pre-built ``SafetyEngine`` so tests can run the
whole HTTP surface against the in-memory store and fake senders.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.app.api import health
from backend.app.api.v1 import follow_me, guardian, safety_alerts, sos
from backend.app.core.config import settings
from backend.app.core.errors import register_error_handlers
from backend.app.core.logging_config import get_logger, setup_logging
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.engine import SafetyEngine, build_engine

setup_logging()
logger = get_logger(__name__)

FEATURES = ["sos", "guardian", "follow-me", "safety-alerts", "notification-fanout"]


def _lifespan(engine: Optional[SafetyEngine]):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.engine = engine or build_engine(settings)
        logger.info("%s %s starting (%s)", settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT)
        await app.state.engine.start()
        try:
            yield
        finally:
            await app.state.engine.shutdown()
            logger.info("%s stopped", settings.APP_NAME)

    return lifespan


def _install_middleware(app: FastAPI) -> None:
    # Added last runs first: request logging wraps CORS
    origins = ["*"] if settings.CORS_ALLOW_ALL else settings.CORS_ORIGINS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)


def create_app(engine: Optional[SafetyEngine] = None) -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description=(
            "Coordinates campus safety: SOS alerts with trusted-contact "
            "notification, Guardian walk sessions with route deviation "
            "checks, Follow Me location sharing with hazard warnings, and "
            "community safety broadcasts."
        ),
        lifespan=_lifespan(engine),
    )

    _install_middleware(app)
    register_error_handlers(app)

    for module in (sos, guardian, follow_me, safety_alerts, health):
        app.include_router(module.router)

    @app.get("/", tags=["root"])
    async def index():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "modules": FEATURES,
            "docs": app.docs_url,
        }

    return app


app = create_app()
