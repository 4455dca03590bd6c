"""
Error types raised by the safety services and their HTTP mapping.

Every domain error carries an HTTP status, a stable machine code and a
``details`` dict. ``register_error_handlers`` turns them into the JSON
envelope the API returns:

    {"error": {"code": "ALREADY_RESOLVED", "message": "...", "status": 409,
               "details": {"alert_id": "SOS-1A2B3C"}}}

Where they are raised:
    ValidationError / NotFoundError / ConflictError come out of an action
    before any notification work starts. DeliveryFailure only leaves a
    channel sender and the fan-out always records it as a failed attempt.
    StoreFailure wraps driver errors from the persistence layer.
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Domain errors
# ═══════════════════════════════════════════════════════════════════════════

class SafetyEngineError(Exception):
    """Root of every error the engine raises on purpose."""

    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str = "Safety engine failure",
        *,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "code": self.error_code,
            "message": self.message,
            "status": self.status_code,
        }
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(SafetyEngineError):
    status_code = 422
    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class NotFoundError(SafetyEngineError):
    status_code = 404
    error_code = "NOT_FOUND"

    def __init__(self, resource: str, *, error_code: Optional[str] = None, **identifiers: Any):
        super().__init__(
            f"{resource} not found",
            error_code=error_code,
            details={"resource": resource, **identifiers},
        )


class NoActiveSessionError(NotFoundError):
    """No active Guardian / Follow Me session for the user."""

    error_code = "NO_ACTIVE_SESSION"

    def __init__(self, session_kind: str, **identifiers: Any):
        super().__init__(f"Active {session_kind}", **identifiers)


class ConflictError(SafetyEngineError):
    status_code = 409
    error_code = "CONFLICT"

    def __init__(self, message: str, *, error_code: Optional[str] = None, **details: Any):
        super().__init__(message, error_code=error_code, details=details)


class SessionAlreadyActiveError(ConflictError):
    """A user may hold at most one active session of each kind."""

    error_code = "SESSION_ALREADY_ACTIVE"

    def __init__(self, session_kind: str, user_id: str, session_id: Optional[str] = None):
        extra = {"session_id": session_id} if session_id else {}
        super().__init__(
            f"{session_kind} already active for user {user_id}",
            session_kind=session_kind,
            user_id=user_id,
            **extra,
        )


class AlreadyResolvedError(ConflictError):
    error_code = "ALREADY_RESOLVED"

    def __init__(self, alert_id: str):
        super().__init__(f"SOS alert {alert_id} already resolved", alert_id=alert_id)


class SessionExpiredError(SafetyEngineError):
    """The session ran past ``expires_at`` and was closed on access."""

    status_code = 410
    error_code = "SESSION_EXPIRED"

    def __init__(self, session_kind: str, session_id: str):
        super().__init__(
            f"{session_kind} {session_id} has expired",
            details={"session_kind": session_kind, "session_id": session_id},
        )


class ExternalServiceError(SafetyEngineError):
    status_code = 502
    error_code = "EXTERNAL_SERVICE_ERROR"

    def __init__(self, service: str, message: str = "", *, error_code: Optional[str] = None, **details: Any):
        super().__init__(
            f"{service} call failed: {message}" if message else f"{service} call failed",
            error_code=error_code,
            details={"service": service, **details},
        )


class RouteCalculationError(ExternalServiceError):
    error_code = "ROUTE_CALCULATION_FAILED"

    def __init__(self, message: str = "", **details: Any):
        super().__init__("route_planner", message, **details)


class DeliveryFailure(SafetyEngineError):
    """
    One send on one channel did not go through.

    Channel senders raise it; ``NotificationFanout`` catches it and stores
    a failed ``DeliveryAttempt``. Callers of an action never see it.
    """

    error_code = "DELIVERY_FAILED"

    def __init__(self, channel: str, recipient_id: str, message: str = ""):
        self.channel = channel
        self.recipient_id = recipient_id
        super().__init__(
            f"{channel} delivery to {recipient_id} failed: {message}",
            details={"channel": channel, "recipient_id": recipient_id},
        )


class StoreFailure(SafetyEngineError):
    error_code = "STORE_FAILURE"

    def __init__(self, operation: str, message: str = ""):
        super().__init__(
            f"store.{operation} failed: {message}",
            details={"operation": operation},
        )


# ═══════════════════════════════════════════════════════════════════════════
# HTTP mapping
# ═══════════════════════════════════════════════════════════════════════════

def _envelope(request: Request, status_code: int, error: Dict[str, Any]) -> JSONResponse:
    if not settings.is_production:
        error["path"] = request.url.path
        error["method"] = request.method
    return JSONResponse(status_code=status_code, content={"error": error})


def jsonable_errors(exc: RequestValidationError) -> List[Dict[str, Any]]:
    """Pydantic error entries without their (non-JSON) ``ctx``."""
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


def register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(SafetyEngineError)
    async def on_engine_error(request: Request, exc: SafetyEngineError):
        logger.log(
            logging.ERROR if exc.status_code >= 500 else logging.WARNING,
            "%s %s -> %s: %s",
            request.method, request.url.path, exc.error_code, exc.message,
            extra={"status_code": exc.status_code, "endpoint": request.url.path},
        )
        return _envelope(request, exc.status_code, exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def on_bad_payload(request: Request, exc: RequestValidationError):
        errors = jsonable_errors(exc)
        logger.warning("Rejected payload on %s: %s", request.url.path, errors)
        return _envelope(request, 422, {
            "code": "VALIDATION_ERROR",
            "message": "Request payload failed validation",
            "status": 422,
            "details": {"errors": errors},
        })

    @app.exception_handler(Exception)
    async def on_unexpected(request: Request, exc: Exception):
        logger.critical("Unhandled %s on %s", type(exc).__name__, request.url.path, exc_info=exc)
        error: Dict[str, Any] = {
            "code": "INTERNAL_ERROR",
            "message": str(exc) if settings.DEBUG else "Internal server error",
            "status": 500,
        }
        if settings.DEBUG:
            error["details"] = {"traceback": traceback.format_exception(type(exc), exc, exc.__traceback__)}
        return _envelope(request, 500, error)
