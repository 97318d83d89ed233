"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain exception classes for the dispatch core
    • Consistent JSON error response format
    • Automatic logging of unhandled errors

Taxonomy:

    ValidationError     resolved locally, never reaches the alert store
        InvalidCoordinate, InvalidTransition, DuplicateActiveAlert
    TransportError      store / SMS gateway / subscription failures
    PartialFailure      fan-out where some (not all) recipients failed
    ResourceConflict    helper already holds an active response
        ResponseConflict

Usage:
    from backend.app.core.errors import InvalidTransition, register_error_handlers

    raise InvalidTransition("resolved", "active", actor="helper")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class SafeGuardError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class ValidationError(SafeGuardError):
    """Input or state validation failed (422)."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        status_code: int = 422,
        error_code: str = "VALIDATION_ERROR",
        **details: Any,
    ):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=status_code,
            error_code=error_code,
            details=d,
        )


class InvalidCoordinate(ValidationError):
    """Latitude or longitude outside its valid range."""

    def __init__(self, field: str, value: float, low: float, high: float):
        super().__init__(
            f"{field.capitalize()} must be in [{low:g}, {high:g}], got {value}",
            field=field,
            error_code="INVALID_COORDINATE",
            value=value,
        )


class InvalidTransition(ValidationError):
    """Requested lifecycle transition is not allowed."""

    def __init__(self, current: str, target: str, *, actor: Optional[str] = None):
        who = f" by {actor}" if actor else ""
        super().__init__(
            f"Transition {current} -> {target}{who} is not allowed",
            status_code=409,
            error_code="INVALID_TRANSITION",
            current=current,
            target=target,
            actor=actor,
        )


class DuplicateActiveAlert(ValidationError):
    """Requester already has a non-terminal alert."""

    def __init__(self, requester_id: str, alert_id: Optional[str] = None):
        super().__init__(
            f"Requester {requester_id} already has an active alert",
            status_code=409,
            error_code="DUPLICATE_ACTIVE_ALERT",
            requester_id=requester_id,
            alert_id=alert_id,
        )


class NotFoundError(SafeGuardError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class TransportError(SafeGuardError):
    """Network / store / gateway call failed (502)."""

    def __init__(self, service: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Transport '{service}' failed: {message}",
            status_code=502,
            error_code="TRANSPORT_ERROR",
            details={"service": service, **details},
        )
        self.service = service


class PartialFailure(SafeGuardError):
    """Fan-out where at least one but not all recipients failed (207)."""

    def __init__(self, alert_id: str, attempted: int, failed: int):
        super().__init__(
            message=(
                f"Alert {alert_id}: {failed} of {attempted} "
                f"notifications failed"
            ),
            status_code=207,
            error_code="PARTIAL_FAILURE",
            details={
                "alert_id": alert_id,
                "attempted": attempted,
                "failed": failed,
            },
        )


class ResourceConflict(SafeGuardError):
    """Resource already held by another operation (409)."""

    def __init__(self, message: str, *, error_code: str = "RESOURCE_CONFLICT", **details: Any):
        super().__init__(
            message=message,
            status_code=409,
            error_code=error_code,
            details=details,
        )


class ResponseConflict(ResourceConflict):
    """Helper already holds a non-terminal response."""

    def __init__(self, helper_id: str, active_alert_id: str, requested_alert_id: str):
        super().__init__(
            f"Helper {helper_id} is already responding to alert {active_alert_id}",
            error_code="RESPONSE_CONFLICT",
            helper_id=helper_id,
            active_alert_id=active_alert_id,
            requested_alert_id=requested_alert_id,
        )


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    # Include request path in non-production
    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(SafeGuardError)
    async def handle_safeguard_error(request: Request, exc: SafeGuardError):
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(
            level,
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        return _build_error_response(500, "INTERNAL_ERROR", message, request=request)
