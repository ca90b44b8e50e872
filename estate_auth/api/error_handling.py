from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from estate_auth.api.schemas import Envelope, ErrorBody
from estate_auth.logging import get_logger, sanitize_error_message
from estate_auth.service.errors import RateLimitedError, ServiceError
from estate_auth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    423: "locked",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details or None)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def _scrub_details(detail: dict) -> dict:
    return {
        key: sanitize_error_message(value) if isinstance(value, str) else value
        for key, value in detail.items()
    }


def _validation_details(exc: RequestValidationError) -> list:
    details = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part != "body"]
        details.append({"field": ".".join(location) or None, "message": error.get("msg", "invalid")})
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers mapping domain, validation and unexpected errors to the envelope."""

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
            headers = {"Retry-After": str(exc.retry_after)}
        if exc.status_code >= 500:
            # Internal detail stays in the log
            return _error_response(exc.status_code, "internal server error", code=exc.error_code)
        return _error_response(
            exc.status_code, exc.message, exc.detail, code=exc.error_code, headers=headers
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
        )
        return _error_response(
            400,
            sanitize_error_message(exc.message),
            _scrub_details(exc.detail),
            code="validation_error",
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[d["field"] for d in details],
        )
        return _error_response(400, "invalid request", details, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            return _error_response(
                exc.status_code,
                error_obj.get("message", "http error"),
                error_obj.get("details"),
                code=error_obj.get("code"),
                headers=exc.headers,
            )
        message = sanitize_error_message(exc.detail) if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
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
