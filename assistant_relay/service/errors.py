from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:
    - authentication_required (401)
    - rate_limit_exceeded (429)
    - validation_failed (400)
    - assistant_not_configured (400)
    - not_found (404)
    - conflict (409)
    - service_not_configured (500)
    - thread_create_failed (500)
    - message_send_failed (500)
    - run_start_failed (500)
    - chat_completion_failed (500)
    - internal_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_failed"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationFailed(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_failed"


class AssistantNotConfigured(ServiceError):
    """The user has no active assistant (400)."""
    status_code = 400
    error_code = "assistant_not_configured"


class AuthenticationRequired(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "authentication_required"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitExceeded(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limit_exceeded"

    def __init__(self, message: str, *, retry_after: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class InternalError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "internal_error"


class ServiceConfigError(InternalError):
    """A required upstream credential or setting is missing."""
    error_code = "service_not_configured"


class ThreadCreateFailed(InternalError):
    error_code = "thread_create_failed"


class MessageSendFailed(InternalError):
    error_code = "message_send_failed"


class RunStartFailed(InternalError):
    error_code = "run_start_failed"


class ChatCompletionFailed(InternalError):
    error_code = "chat_completion_failed"


__all__ = [
    "ServiceError",
    "ValidationFailed",
    "AssistantNotConfigured",
    "AuthenticationRequired",
    "NotFoundError",
    "ConflictError",
    "RateLimitExceeded",
    "InternalError",
    "ServiceConfigError",
    "ThreadCreateFailed",
    "MessageSendFailed",
    "RunStartFailed",
    "ChatCompletionFailed",
]
