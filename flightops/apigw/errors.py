"""Gestion standardisée des erreurs API avec enveloppes d'erreur.

Ce module fournit une gestion centralisée des erreurs avec des enveloppes standardisées
`{code, message, trace_id, details?}` et traduit les erreurs métier (check-in, réservation) et
les erreurs du backend géré en réponses HTTP.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from flightops.core.http_constants import (
    HTTP_BAD_GATEWAY,
    HTTP_BAD_REQUEST,
    HTTP_CONFLICT,
    HTTP_FORBIDDEN,
    HTTP_INTERNAL_SERVER_ERROR,
    HTTP_NOT_FOUND,
    HTTP_STATUS_CLIENT_ERROR_MIN,
    HTTP_STATUS_SERVER_ERROR_MIN,
    HTTP_UNAUTHORIZED,
    HTTP_UNPROCESSABLE_ENTITY,
)
from flightops.domain.errors import (
    BookingConflictError,
    CheckinError,
    CheckinStateError,
    LineItemNotFoundError,
)
from flightops.infra.backend_client import BackendHTTPError, BackendNetworkError

log = structlog.get_logger(__name__).bind(component="api_errors")


@dataclass
class ErrorEnvelope:
    """Standard error envelope for API responses."""

    code: str
    message: str
    trace_id: str | None = None
    details: dict[str, Any] | None = None


class ErrorCodes:
    """Standard error codes for the API."""

    BAD_REQUEST = "BAD_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
    CONFLICT = "CONFLICT"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RATE_LIMITED = "RATE_LIMITED"

    INTERNAL_ERROR = "INTERNAL_ERROR"
    BAD_GATEWAY = "BAD_GATEWAY"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    GATEWAY_TIMEOUT = "GATEWAY_TIMEOUT"

    BACKEND_ERROR = "BACKEND_ERROR"
    BACKEND_UNAVAILABLE = "BACKEND_UNAVAILABLE"


HTTP_ERROR_CODES = {
    400: ErrorCodes.BAD_REQUEST,
    401: ErrorCodes.UNAUTHORIZED,
    403: ErrorCodes.FORBIDDEN,
    404: ErrorCodes.NOT_FOUND,
    405: ErrorCodes.METHOD_NOT_ALLOWED,
    409: ErrorCodes.CONFLICT,
    422: ErrorCodes.VALIDATION_ERROR,
    429: ErrorCodes.RATE_LIMITED,
    500: ErrorCodes.INTERNAL_ERROR,
    502: ErrorCodes.BAD_GATEWAY,
    503: ErrorCodes.SERVICE_UNAVAILABLE,
    504: ErrorCodes.GATEWAY_TIMEOUT,
}

# Statuts du backend relayés tels quels; les autres erreurs client deviennent 400.
PASSTHROUGH_BACKEND_STATUSES = {
    HTTP_UNAUTHORIZED,
    HTTP_FORBIDDEN,
    HTTP_NOT_FOUND,
    HTTP_CONFLICT,
}


def create_error_response(
    status_code: int,
    code: str,
    message: str,
    trace_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """Create a standardized error response."""
    envelope = ErrorEnvelope(code=code, message=message, trace_id=trace_id, details=details)
    return JSONResponse(
        status_code=status_code,
        content={
            "code": envelope.code,
            "message": envelope.message,
            "trace_id": envelope.trace_id,
            **({"details": envelope.details} if envelope.details else {}),
        },
    )


def extract_trace_id(request: Request) -> str | None:
    """Extract trace ID from request headers or request state."""
    trace_id = request.headers.get("X-Trace-ID")
    if trace_id:
        return trace_id
    return getattr(request.state, "trace_id", None)


def checkin_error_status(exc: CheckinError) -> int:
    if isinstance(exc, LineItemNotFoundError):
        return HTTP_NOT_FOUND
    if isinstance(exc, CheckinStateError | BookingConflictError):
        return HTTP_CONFLICT
    return HTTP_BAD_REQUEST


def handle_checkin_error(request: Request, exc: CheckinError) -> JSONResponse:
    """Erreurs métier: message utilisateur, code métier, 400/404/409."""
    trace_id = extract_trace_id(request)
    status_code = checkin_error_status(exc)
    details = {"conflicts": exc.conflicts} if isinstance(exc, BookingConflictError) else None
    log.info(
        "domain_error",
        code=exc.code,
        error_message=exc.message,
        status_code=status_code,
        trace_id=trace_id,
    )
    return create_error_response(status_code, exc.code, exc.message, trace_id, details)


def backend_error_status(status_code: int) -> int:
    if status_code in PASSTHROUGH_BACKEND_STATUSES:
        return status_code
    if HTTP_STATUS_CLIENT_ERROR_MIN <= status_code < HTTP_STATUS_SERVER_ERROR_MIN:
        return HTTP_BAD_REQUEST
    return HTTP_BAD_GATEWAY


def handle_backend_http_error(request: Request, exc: BackendHTTPError) -> JSONResponse:
    """Refus du backend: message extrait du corps, statut relayé ou 400/502."""
    trace_id = extract_trace_id(request)
    status_code = backend_error_status(exc.status_code)
    log.warning(
        "backend_error",
        backend_status=exc.status_code,
        error_message=exc.message,
        status_code=status_code,
        trace_id=trace_id,
    )
    return create_error_response(
        status_code,
        HTTP_ERROR_CODES.get(status_code, ErrorCodes.BACKEND_ERROR),
        exc.message,
        trace_id,
    )


def handle_backend_network_error(request: Request, exc: BackendNetworkError) -> JSONResponse:
    trace_id = extract_trace_id(request)
    log.error("backend_unavailable", error_message=str(exc), trace_id=trace_id)
    return create_error_response(
        HTTP_BAD_GATEWAY,
        ErrorCodes.BACKEND_UNAVAILABLE,
        "Backend service unavailable",
        trace_id,
    )


def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTPException with standard envelope."""
    trace_id = extract_trace_id(request)
    code = HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    log.info("http_exception", code=code, status_code=exc.status_code, trace_id=trace_id)
    return create_error_response(exc.status_code, code, str(exc.detail), trace_id)


def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    trace_id = extract_trace_id(request)
    errors = [
        {"path": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return create_error_response(
        HTTP_UNPROCESSABLE_ENTITY,
        ErrorCodes.VALIDATION_ERROR,
        "Invalid request payload",
        trace_id,
        {"errors": errors},
    )


def handle_generic_exception(request: Request, exc: Exception) -> JSONResponse:
    """Handle generic exceptions with standard envelope."""
    trace_id = extract_trace_id(request)
    log.error(
        "unexpected_error",
        trace_id=trace_id,
        exception_type=type(exc).__name__,
        exc_info=exc,
    )
    return create_error_response(
        HTTP_INTERNAL_SERVER_ERROR,
        ErrorCodes.INTERNAL_ERROR,
        "An unexpected error occurred",
        trace_id,
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CheckinError, handle_checkin_error)
    app.add_exception_handler(BackendHTTPError, handle_backend_http_error)
    app.add_exception_handler(BackendNetworkError, handle_backend_network_error)
    app.add_exception_handler(HTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.add_exception_handler(Exception, handle_generic_exception)
