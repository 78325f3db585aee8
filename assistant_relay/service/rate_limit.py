from __future__ import annotations

import asyncio
import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional, Tuple

from assistant_relay.logging import get_logger
from assistant_relay.service.errors import RateLimitExceeded
from assistant_relay.storage.redis_cache import RedisCache

logger = get_logger(__name__)

RELAY_ENDPOINT = "assistant-relay"
CHAT_ENDPOINT = "chat"


@dataclass
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_after: int = 0

    def apply_headers(self, response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(self.remaining)


class RateLimiter:
    """Per-user sliding-window admission control.

    Every admitted request is logged with its timestamp; a request is
    admitted only while fewer than ``limit`` admitted requests fall inside
    the trailing ``window_seconds``. Redis holds the log when configured so
    all workers share it. Without Redis an in-process log guarded by an
    ``asyncio.Lock`` is used, which only holds within one process.
    """

    def __init__(
        self,
        cache: Optional[RedisCache],
        *,
        default_limit: int = 20,
        default_window_seconds: int = 60,
        clock=time.monotonic,
    ) -> None:
        self.cache = cache
        self.default_limit = default_limit
        self.default_window_seconds = default_window_seconds
        self._clock = clock
        self._local_logs: Dict[Tuple[str, str], Deque[float]] = {}
        self._local_lock = asyncio.Lock()

    async def check(
        self,
        user_id: str,
        endpoint: str,
        *,
        limit: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> RateDecision:
        limit = self.default_limit if limit is None else limit
        window_seconds = (
            self.default_window_seconds if window_seconds is None else window_seconds
        )
        if limit <= 0:
            return RateDecision(True, limit, limit)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                endpoint=endpoint,
                window_seconds=window_seconds,
            )
            window_seconds = 60
        if self.cache:
            allowed, remaining, reset_after = await self.cache.check_rate_limit(
                user_id, endpoint, limit, window_seconds
            )
            return RateDecision(allowed, limit, remaining, reset_after)
        return await self._check_local(user_id, endpoint, limit, window_seconds)

    async def _check_local(
        self, user_id: str, endpoint: str, limit: int, window_seconds: int
    ) -> RateDecision:
        async with self._local_lock:
            now = self._clock()
            log = self._local_logs.setdefault((user_id, endpoint), deque())
            while log and log[0] <= now - window_seconds:
                log.popleft()
            if len(log) >= limit:
                reset_after = max(1, math.ceil(log[0] + window_seconds - now))
                return RateDecision(False, limit, 0, reset_after)
            log.append(now)
            return RateDecision(True, limit, limit - len(log))

    async def admit(
        self,
        user_id: str,
        endpoint: str = RELAY_ENDPOINT,
        *,
        limit: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> bool:
        decision = await self.check(
            user_id, endpoint, limit=limit, window_seconds=window_seconds
        )
        return decision.allowed

    async def enforce(
        self,
        user_id: str,
        endpoint: str = RELAY_ENDPOINT,
        *,
        limit: Optional[int] = None,
        window_seconds: Optional[int] = None,
        response=None,
    ) -> RateDecision:
        """Admit the request or raise ``RateLimitExceeded`` with a retry hint."""
        decision = await self.check(
            user_id, endpoint, limit=limit, window_seconds=window_seconds
        )
        if response is not None:
            decision.apply_headers(response)
        if not decision.allowed:
            logger.info(
                "rate_limit_denied",
                user_id=user_id,
                endpoint=endpoint,
                retry_after=decision.reset_after,
            )
            raise RateLimitExceeded(
                "Rate limit exceeded. Please try again later.",
                retry_after=decision.reset_after,
                detail={"retry_after": decision.reset_after},
            )
        return decision
