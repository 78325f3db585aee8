from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional

from assistant_relay.logging import get_logger, log_relay_transition
from assistant_relay.service.auth import AuthContext
from assistant_relay.service.errors import ChatCompletionFailed, ServiceConfigError
from assistant_relay.service.rate_limit import CHAT_ENDPOINT, RateLimiter
from assistant_relay.service.upstream import ChatCompletionsClient, UpstreamError

logger = get_logger(__name__)


@dataclass
class ChatRequest:
    messages: List[Dict[str, str]]
    conversation_id: str
    model: Optional[str] = None


class ChatService:
    """Stateless chat-completions relay.

    The caller sends the whole history; the completion stream is passed back
    unchanged. Nothing is stored and no assistant or thread is involved.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        completions: Optional[ChatCompletionsClient],
        *,
        default_model: str,
        rate_limit: int = 20,
        window_seconds: int = 60,
        max_completion_tokens: int = 4096,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.completions = completions
        self.default_model = default_model
        self.rate_limit = rate_limit
        self.window_seconds = window_seconds
        self.max_completion_tokens = max_completion_tokens

    async def stream(self, principal: AuthContext, request: ChatRequest) -> AsyncIterator[bytes]:
        user_id = principal.user_id
        log_relay_transition("authenticated", user_id=user_id, logger=logger, route="chat")
        if self.completions is None:
            logger.error("upstream_api_key_missing", user_id=user_id, route="chat")
            raise ServiceConfigError("Chat service is not configured")

        await self.rate_limiter.enforce(
            user_id, CHAT_ENDPOINT, limit=self.rate_limit, window_seconds=self.window_seconds
        )
        model = request.model or self.default_model
        logger.info(
            "chat_request",
            user_id=user_id,
            model=model,
            conversation_id=request.conversation_id,
            history_length=len(request.messages),
        )
        try:
            stream = await self.completions.stream(
                model, request.messages, max_completion_tokens=self.max_completion_tokens
            )
        except UpstreamError as exc:
            logger.error("chat_completion_failed", user_id=user_id, model=model)
            raise ChatCompletionFailed("AI service error") from exc
        log_relay_transition("run_streaming", user_id=user_id, logger=logger, route="chat")
        return stream.iter_bytes()
