from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from assistant_relay.api.schemas import Envelope, ErrorBody
from assistant_relay.logging import get_logger
from assistant_relay.service.errors import RateLimitExceeded, ServiceError
from assistant_relay.service.fs import PathTraversalError
from assistant_relay.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_failed",
    401: "authentication_required",
    404: "not_found",
    405: "validation_failed",
    409: "conflict",
    413: "validation_failed",
    422: "validation_failed",
    429: "rate_limit_exceeded",
    500: "internal_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "internal_error")


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
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(), headers=headers
    )


def _first_violation(exc: RequestValidationError) -> tuple[str, dict]:
    errors = exc.errors()
    if not errors:
        return "invalid request", {}
    first = errors[0]
    loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
    field = ".".join(loc)
    message = str(first.get("msg", "invalid value"))
    # pydantic prefixes custom validator messages
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    details = {"field": field} if field else {}
    return (f"{field}: {message}" if field else message), details


def register_exception_handlers(app: FastAPI) -> None:
    """Install the envelope-producing handlers for domain, storage and framework errors."""

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        message, details = _first_violation(exc)
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            message=message,
        )
        return _error_response(400, message, details, code="validation_failed")

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
            cause=repr(exc.__cause__) if exc.__cause__ else None,
        )
        headers = None
        if isinstance(exc, RateLimitExceeded) and exc.retry_after:
            headers = {"Retry-After": str(exc.retry_after)}
        # 5xx bodies carry only the public message; causes stay in the log
        details = exc.detail if exc.status_code < 500 else None
        return _error_response(
            exc.status_code, exc.message, details, code=exc.error_code, headers=headers
        )

    @app.exception_handler(PathTraversalError)
    async def handle_path_traversal_error(request: Request, exc: PathTraversalError):
        logger.warning(
            "path_traversal_attempt",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            client_ip=request.client.host if request.client else None,
        )
        return _error_response(400, "invalid file path", code="validation_failed")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        # framework errors: unknown routes, wrong methods, oversized bodies
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        logger.info(
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
        return _error_response(500, "Internal server error", code="internal_error")
