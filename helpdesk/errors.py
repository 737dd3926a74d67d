"""HTTP error taxonomy and application-wide exception handlers."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger("helpdesk.errors")


class AppError(HTTPException):
    status_code = 500
    default_detail = "Internal server error"

    def __init__(self, detail: Any = None, status_code: int | None = None) -> None:
        super().__init__(
            status_code=status_code or self.status_code,
            detail=detail if detail is not None else self.default_detail,
        )


class AuthenticationRequired(AppError):
    status_code = 401
    default_detail = "Authentication required"

    def __init__(self, detail: Any = None) -> None:
        super().__init__(detail)
        self.headers = {"WWW-Authenticate": "Bearer"}


class AccessDenied(AppError):
    status_code = 403
    default_detail = "Access denied"


class NotFound(AppError):
    status_code = 404
    default_detail = "Not found"


class ValidationFailed(AppError):
    """400 carrying field-level detail."""

    status_code = 400
    default_detail = "Validation error"

    def __init__(self, detail: Any = None, errors: list[dict] | None = None) -> None:
        super().__init__(detail)
        self.errors = errors or []


class Conflict(AppError):
    """Unique-constraint style failures surface as 400 with a specific message."""

    status_code = 400
    default_detail = "Resource already exists"


class UpstreamServiceError(AppError):
    status_code = 500
    default_detail = "Upstream service failed"


class TokenAllocationError(AppError):
    status_code = 503
    default_detail = "Could not allocate a unique tracking token, please retry"


def _field_errors(exc: RequestValidationError) -> list[dict]:
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        errors.append({"field": ".".join(loc), "message": err.get("msg", "Invalid value")})
    return errors


async def _validation_failed_handler(request: Request, exc: ValidationFailed) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "errors": jsonable_encoder(exc.errors)},
    )


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"detail": "Validation error", "errors": _field_errors(exc)},
    )


async def _unhandled_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled error",
        extra={"method": request.method, "path": request.url.path},
        exc_info=exc,
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def register_error_handlers(app: FastAPI) -> None:
    """Install the 400 validation shape and the logged generic 500."""
    app.add_exception_handler(ValidationFailed, _validation_failed_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(Exception, _unhandled_handler)
