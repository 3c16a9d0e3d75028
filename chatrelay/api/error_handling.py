from __future__ import annotations

from typing import Any, Mapping, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from chatrelay.api.schemas import ErrorBody
from chatrelay.logging import get_logger
from chatrelay.service.errors import ServiceError
from chatrelay.service.validation import format_errors
from chatrelay.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

INTERNAL_ERROR = "Internal server error"


def error_response(
    status_code: int,
    message: str,
    details: Any = None,
    *,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    """Render the ``{"error": ..., "details"?: ...}`` body used by every route."""
    body = ErrorBody(error=message, details=details)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(exclude_none=True),
        headers=dict(headers or {}),
    )


def _log_for_status(status_code: int):
    return logger.error if status_code >= 500 else logger.warning


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers mapping domain and storage errors onto HTTP responses."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log_for_status(exc.status_code)(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return error_response(exc.status_code, exc.message, exc.details, headers=exc.headers)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            field=exc.field,
        )
        return error_response(409, exc.message)

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error(
            "store_unavailable",
            path=request.url.path,
            method=request.method,
            error=str(exc),
        )
        return error_response(500, INTERNAL_ERROR)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = format_errors(exc) or ["Validation failed"]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=errors,
        )
        return error_response(400, "Validation failed", errors)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        _log_for_status(exc.status_code)(
            "http_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            message=message,
        )
        return error_response(exc.status_code, message, headers=exc.headers)
