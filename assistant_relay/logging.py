from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# X-Request-ID of the request being served; echoed in error envelopes
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_SECRET_MARKERS = ("secret", "token", "api_key", "apikey", "authorization", "password")
# upstream bodies and user text can be large; log lines stay bounded
MAX_LOGGED_VALUE_CHARS = 500


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Use the caller's request id, or mint one, for the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    structlog.contextvars.clear_contextvars()
    return cid


def bind_user(user_id: str) -> None:
    """Attach the authenticated user to every later log line of this request."""
    structlog.contextvars.bind_contextvars(user_id=user_id)


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if isinstance(value, str) and any(m in key.lower() for m in _SECRET_MARKERS):
            event_dict[key] = "***"
    return event_dict


def _clip_long_values(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if key != "event" and isinstance(value, str) and len(value) > MAX_LOGGED_VALUE_CHARS:
            event_dict[key] = f"{value[:MAX_LOGGED_VALUE_CHARS]}...[{len(value)} chars]"
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the processor chain.

    JSON lines in production; coloured console output when
    ``development_mode`` is set or JSON is turned off.
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_secrets,
        _clip_long_values,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        renderers = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_relay_transition(
    stage: str, *, user_id: Optional[str] = None, logger: Optional[Any] = None, **context: Any
) -> None:
    """Log a relay state-machine transition (authenticated, thread_ready, ...)."""
    log = logger or get_logger("relay")
    log.info("relay_transition", stage=stage, user_id=user_id, **context)
