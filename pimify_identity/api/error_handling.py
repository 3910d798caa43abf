from __future__ import annotations

import math
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from pimify_identity.api.schemas import Envelope
from pimify_identity.logging import get_logger
from pimify_identity.service.errors import ErrorKind, RateLimitedError, ServiceError
from pimify_identity.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_KIND = {
    400: ErrorKind.VALIDATION_ERROR,
    401: ErrorKind.AUTH_INVALID_TOKEN,
    403: ErrorKind.AUTH_FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    409: ErrorKind.VALIDATION_ERROR,
    422: ErrorKind.VALIDATION_ERROR,
    429: ErrorKind.RATE_LIMIT_EXCEEDED,
}


def error_response(
    status_code: int,
    kind: str,
    message: str,
    details: Optional[dict] = None,
    *,
    headers: Optional[dict] = None,
) -> JSONResponse:
    envelope = Envelope(success=False, error=kind, message=message, details=details or None)
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(envelope.model_dump()),
        headers=headers,
    )


def retry_after_header(retry_after_ms: int) -> dict:
    return {"Retry-After": str(max(1, math.ceil(retry_after_ms / 1000)))}


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-shaped handlers for domain, storage and framework errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return error_response(409, ErrorKind.VALIDATION_ERROR.value, exc.message, exc.detail)

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        headers = None
        if isinstance(exc, RateLimitedError):
            headers = retry_after_header(exc.retry_after_ms)
            if "limit" in exc.detail:
                headers["X-RateLimit-Limit"] = str(exc.detail["limit"])
                headers["X-RateLimit-Window-Ms"] = str(exc.detail.get("window_ms", ""))
        return error_response(
            exc.status_code, exc.error_code, exc.message, exc.detail, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors: list[dict[str, Any]] = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        logger.info("request_validation_failed", path=request.url.path, errors=len(errors))
        return error_response(
            422, ErrorKind.VALIDATION_ERROR.value, "request validation failed", {"errors": errors}
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        kind = _STATUS_TO_KIND.get(exc.status_code, ErrorKind.INTERNAL_ERROR)
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error("http_error", path=request.url.path, status_code=exc.status_code)
        return error_response(exc.status_code, kind.value, message, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return error_response(500, ErrorKind.INTERNAL_ERROR.value, "internal server error")


__all__ = ["error_response", "register_exception_handlers", "retry_after_header"]
