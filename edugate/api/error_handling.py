from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from edugate.api.schemas import Envelope, ErrorBody
from edugate.logging import get_correlation_id, get_logger
from edugate.service.errors import ServiceError, TooManyAttemptsError
from edugate.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "too_many_attempts",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    error_body = ErrorBody(code=code or _error_code_for_status(status_code), message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(envelope.model_dump()),
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain, storage, HTTP and validation errors onto the error envelope."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

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
        if isinstance(exc, TooManyAttemptsError) and exc.retry_after is not None:
            headers = {"Retry-After": str(exc.retry_after)}
        return _error_response(
            exc.status_code, exc.message, exc.detail or None, code=exc.error_code, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "invalid value")}
            for err in exc.errors()
        ]
        logger.info("request_validation_failed", path=request.url.path, errors=len(errors))
        return _error_response(400, "invalid request", errors, code="validation_error")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        # detail produced by _http_error()
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            message = error_obj.get("message", "http error")
            code = error_obj.get("code")
            if exc.status_code >= 500:
                logger.error("http_error", path=request.url.path, status_code=exc.status_code, error_code=code)
            else:
                logger.warning(
                    "http_client_error", path=request.url.path, status_code=exc.status_code, error_code=code
                )
            return _error_response(
                exc.status_code, message, error_obj.get("details"), code=code, headers=exc.headers
            )
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        return _error_response(exc.status_code, message, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
