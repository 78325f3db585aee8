from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse, urlunparse

import httpx

from assistant_relay.config import get_settings, reset_settings_cache
from assistant_relay.logging import get_logger
from assistant_relay.service.assistants import AssistantResolver
from assistant_relay.service.attachments import AttachmentPipeline
from assistant_relay.service.auth import AuthService
from assistant_relay.service.chat import ChatService
from assistant_relay.service.fs import LocalObjectStore
from assistant_relay.service.rate_limit import RateLimiter
from assistant_relay.service.relay import RelayService, RunDispatcher
from assistant_relay.service.threads import ThreadManager
from assistant_relay.service.upstream import AssistantsClient, ChatCompletionsClient
from assistant_relay.storage.memory import MemoryStore
from assistant_relay.storage.postgres import PostgresStore
from assistant_relay.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, upstream_transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits are "
                    "per-process only."
                ),
                mode=fallback_mode,
            )

        self.auth = AuthService(self.settings)
        self.rate_limiter = RateLimiter(
            self.cache,
            default_limit=self.settings.relay_rate_limit,
            default_window_seconds=self.settings.relay_rate_window_seconds,
        )
        self.object_store = LocalObjectStore(Path(self.settings.shared_fs_root) / "objects")
        self.resolver = AssistantResolver(
            self.store, default_catalogue=self.settings.default_assistants
        )

        # Without an API key the relay reports service_not_configured; the
        # rest of the REST surface keeps working.
        self.upstream: Optional[AssistantsClient] = None
        self.threads: Optional[ThreadManager] = None
        self.attachments: Optional[AttachmentPipeline] = None
        self.dispatcher: Optional[RunDispatcher] = None
        self.completions: Optional[ChatCompletionsClient] = None
        if self.settings.openai_api_key:
            self.upstream = AssistantsClient(
                self.settings.openai_api_key,
                base_url=self.settings.openai_base_url,
                beta_header=self.settings.openai_beta_header,
                timeout_seconds=self.settings.upstream_timeout_seconds,
                transport=upstream_transport,
            )
            self.threads = ThreadManager(self.store, self.upstream)
            self.attachments = AttachmentPipeline(
                self.object_store,
                self.upstream,
                self.store,
                max_upload_bytes=self.settings.max_upload_bytes,
                mode=self.settings.attachment_mode,
            )
            self.dispatcher = RunDispatcher(self.upstream)
            self.completions = ChatCompletionsClient(self.upstream)
        else:
            logger.warning("upstream_not_configured", missing="OPENAI_API_KEY")

        self.relay = RelayService(
            self.store,
            self.rate_limiter,
            self.resolver,
            self.threads,
            self.attachments,
            self.dispatcher,
            relay_limit=self.settings.relay_rate_limit,
            relay_window_seconds=self.settings.relay_rate_window_seconds,
        )
        self.chat = ChatService(
            self.rate_limiter,
            self.completions,
            default_model=self.settings.chat_default_model,
            rate_limit=self.settings.chat_rate_limit,
            window_seconds=self.settings.chat_rate_window_seconds,
            max_completion_tokens=self.settings.chat_max_completion_tokens,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            upstream_configured=self.upstream is not None,
            auth_mode=self.settings.auth_mode.value,
            attachment_mode=self.settings.attachment_mode.value,
        )

    async def aclose(self) -> None:
        if self.upstream is not None:
            await self.upstream.close()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists; the locked re-check prevents two concurrent creations.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(
    *, upstream_transport: Optional[httpx.AsyncBaseTransport] = None
) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(upstream_transport=upstream_transport)
        return runtime
