from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from authsession.api.cookies import clear_session_cookies
from authsession.api.schemas import Envelope, ErrorBody
from authsession.config import get_settings
from authsession.logging import get_logger, sanitize_error_message
from authsession.service.errors import RateLimitedError, ServiceError
from authsession.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Stable error codes mapped to HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
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
) -> JSONResponse:
    """Create an error response envelope."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json"))


def _validation_details(exc: RequestValidationError) -> list[dict]:
    details = []
    for error in exc.errors():
        details.append(
            {
                "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
                "message": str(error.get("msg", "invalid value")).removeprefix("Value error, "),
            }
        )
    return details


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
        return _error_response(409, exc.message, exc.detail, code="conflict")

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
            detail=exc.detail,
        )
        response = _error_response(
            exc.status_code, exc.message, exc.detail or None, code=error_code
        )
        if exc.clear_session_cookies:
            clear_session_cookies(response, get_settings())
        if isinstance(exc, RateLimitedError) and exc.retry_after:
            response.headers["Retry-After"] = str(exc.retry_after)
        return response

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            fields=[d["field"] for d in details],
        )
        message = details[0]["message"] if details else "invalid request"
        return _error_response(400, message, details, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, dict) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        elif exc.status_code >= 400:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        response = _error_response(exc.status_code, message, details)
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return _error_response(500, "internal server error", code="server_error")
