from __future__ import annotations

from typing import Mapping, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from lawmakers_auth.api.schemas import Envelope, ErrorBody
from lawmakers_auth.logging import get_logger
from lawmakers_auth.service.errors import RateLimitedError, ServiceError
from lawmakers_auth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Stable error codes for statuses raised without an explicit code
_STATUS_TO_CODE = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    429: "RATE_LIMITED",
    500: "SERVER_ERROR",
}

# Body fields whose validation failures carry their own code
_FIELD_TO_CODE = {
    "email": "INVALID_EMAIL",
    "password": "INVALID_PASSWORD",
}


def _error_code_for_status(status_code: int) -> str:
    if status_code >= 500:
        return "SERVER_ERROR"
    return _STATUS_TO_CODE.get(status_code, "VALIDATION_ERROR")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    """Create an error response envelope."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details or None)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(),
        headers=dict(headers) if headers else None,
    )


def _clean_validation_message(message: str) -> str:
    prefix = "Value error, "
    return message[len(prefix):] if message.startswith(prefix) else message


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(400, "an account with this email already exists", code="USER_EXISTS")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        error_code = getattr(exc, "error_code", None)
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=error_code,
            message=exc.message,
        )
        headers = None
        if isinstance(exc, RateLimitedError) and exc.retry_after > 0:
            headers = {"Retry-After": str(exc.retry_after)}
        return _error_response(
            exc.status_code, exc.message, exc.detail, code=error_code, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = []
        code = None
        message = "invalid request body"
        for err in exc.errors():
            loc = [str(part) for part in err.get("loc", ())]
            err_message = _clean_validation_message(str(err.get("msg", "invalid value")))
            details.append({"field": ".".join(loc), "message": err_message})
            field = loc[-1] if loc else None
            if code is None and field in _FIELD_TO_CODE:
                code = _FIELD_TO_CODE[field]
                message = err_message
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            error_code=code or "VALIDATION_ERROR",
            fields=[d["field"] for d in details],
        )
        return _error_response(400, message, details, code=code or "VALIDATION_ERROR")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        # Envelope-shaped detail produced by routes._http_error()
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            message = error_obj.get("message", "http error")
            code = error_obj.get("code")
            details = error_obj.get("details")
        else:
            message = str(exc.detail) if exc.detail else "http error"
            code = None
            details = None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=code,
                message=message,
            )
        elif exc.status_code >= 400:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=code,
                message=message,
            )
        return _error_response(
            exc.status_code, message, details, code=code, headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="SERVER_ERROR")
