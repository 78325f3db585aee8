from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional, Sequence

from assistant_relay.client.sse import EventStreamDecoder
from assistant_relay.client.stream import StreamAccumulator
from assistant_relay.logging import get_logger, log_relay_transition
from assistant_relay.service.assistants import AssistantResolver
from assistant_relay.service.attachments import (
    AttachmentPipeline,
    FileDescriptor,
    build_message_payload,
)
from assistant_relay.service.auth import AuthContext
from assistant_relay.service.errors import (
    MessageSendFailed,
    NotFoundError,
    RunStartFailed,
    ServiceConfigError,
)
from assistant_relay.service.rate_limit import RELAY_ENDPOINT, RateLimiter
from assistant_relay.service.threads import ThreadManager
from assistant_relay.service.upstream import AssistantsClient, UpstreamError, UpstreamStream
from assistant_relay.storage.models import AssistantSettings, Attachment, Conversation

logger = get_logger(__name__)

TITLE_MAX_CHARS = 50


@dataclass
class RelayRequest:
    message: str
    thread_id: Optional[str] = None
    conversation_id: Optional[str] = None
    files: List[FileDescriptor] = field(default_factory=list)


@dataclass
class RelayResult:
    thread_id: str
    body: AsyncIterator[bytes]


class RunDispatcher:
    """Posts the user turn and opens the streamed run."""

    def __init__(self, upstream: AssistantsClient) -> None:
        self.upstream = upstream

    async def dispatch(
        self,
        thread_id: str,
        message: str,
        assistant_id: str,
        settings: AssistantSettings,
        refs: Sequence[Attachment] = (),
        *,
        user_id: Optional[str] = None,
    ) -> UpstreamStream:
        content, attachments = build_message_payload(message, refs)
        try:
            await self.upstream.append_message(thread_id, content, attachments=attachments)
        except UpstreamError as exc:
            logger.error("message_send_failed", user_id=user_id, thread_id=thread_id)
            raise MessageSendFailed("Failed to send message") from exc
        log_relay_transition("message_sent", user_id=user_id, logger=logger, thread_id=thread_id)
        try:
            stream = await self.upstream.create_run_stream(
                thread_id, assistant_id, **settings.run_overrides()
            )
        except UpstreamError as exc:
            logger.error("run_start_failed", user_id=user_id, thread_id=thread_id)
            raise RunStartFailed("Failed to start run") from exc
        log_relay_transition("run_streaming", user_id=user_id, logger=logger, thread_id=thread_id)
        return stream


class RelayService:
    """One relay request: admit, resolve, prepare the thread, stream the run.

    Each stage either advances or raises its own ``ServiceError``; nothing is
    retried. When the request names a conversation the user turn and the
    finished assistant reply are also written to the store.
    """

    def __init__(
        self,
        store,
        rate_limiter: RateLimiter,
        resolver: AssistantResolver,
        threads: Optional[ThreadManager],
        attachments: Optional[AttachmentPipeline],
        dispatcher: Optional[RunDispatcher],
        *,
        relay_limit: int = 20,
        relay_window_seconds: int = 60,
    ) -> None:
        self.store = store
        self.rate_limiter = rate_limiter
        self.resolver = resolver
        self.threads = threads
        self.attachments = attachments
        self.dispatcher = dispatcher
        self.relay_limit = relay_limit
        self.relay_window_seconds = relay_window_seconds

    async def relay(self, principal: AuthContext, request: RelayRequest) -> RelayResult:
        user_id = principal.user_id
        log_relay_transition("authenticated", user_id=user_id, logger=logger)
        if self.dispatcher is None or self.threads is None:
            logger.error("upstream_api_key_missing", user_id=user_id)
            raise ServiceConfigError("Assistant service is not configured")

        await self.rate_limiter.enforce(
            user_id,
            RELAY_ENDPOINT,
            limit=self.relay_limit,
            window_seconds=self.relay_window_seconds,
        )
        log_relay_transition("rate_checked", user_id=user_id, logger=logger)

        assistant_id, settings = await self.resolver.resolve(user_id)
        log_relay_transition(
            "assistant_resolved", user_id=user_id, logger=logger, assistant_id=assistant_id
        )

        conversation = await self._owned_conversation(user_id, request.conversation_id)
        thread_id = await self.threads.ensure_thread(
            request.thread_id, conversation, user_id=user_id
        )
        log_relay_transition("thread_ready", user_id=user_id, logger=logger, thread_id=thread_id)

        staged: List[Attachment] = []
        if request.files and self.attachments is not None:
            staged = await self.attachments.stage(
                user_id, request.files, conversation, thread_id=thread_id
            )
            log_relay_transition(
                "attachments_staged", user_id=user_id, logger=logger, count=len(staged)
            )

        stream = await self.dispatcher.dispatch(
            thread_id, request.message, assistant_id, settings, staged, user_id=user_id
        )
        if conversation is not None:
            await self._record_user_turn(conversation, request.message, staged)
        return RelayResult(
            thread_id=thread_id,
            body=self._relay_body(stream, conversation, user_id=user_id, thread_id=thread_id),
        )

    async def _owned_conversation(
        self, user_id: str, conversation_id: Optional[str]
    ) -> Optional[Conversation]:
        if not conversation_id:
            return None
        conversation = await asyncio.to_thread(
            self.store.get_conversation, conversation_id, user_id=user_id
        )
        if conversation is None:
            raise NotFoundError(
                "conversation not found", detail={"conversation_id": conversation_id}
            )
        return conversation

    async def _record_user_turn(
        self, conversation: Conversation, message: str, staged: Sequence[Attachment]
    ) -> None:
        try:
            await asyncio.to_thread(
                self.store.append_message,
                conversation.id,
                "user",
                message,
                [a.metadata() for a in staged],
            )
            await asyncio.to_thread(
                self.store.set_title_if_empty, conversation.id, message[:TITLE_MAX_CHARS]
            )
        except Exception as exc:
            logger.error(
                "transcript_user_turn_failed",
                user_id=conversation.user_id,
                conversation_id=conversation.id,
                error=str(exc),
            )

    async def _relay_body(
        self,
        stream: UpstreamStream,
        conversation: Optional[Conversation],
        *,
        user_id: str,
        thread_id: str,
    ) -> AsyncIterator[bytes]:
        decoder = EventStreamDecoder() if conversation is not None else None
        accumulator = StreamAccumulator()
        try:
            async for chunk in stream.iter_bytes():
                if decoder is not None:
                    for event in decoder.feed(chunk):
                        accumulator.apply(event)
                yield chunk
        except Exception as exc:
            # headers are already sent; end the body and keep the transcript clean
            logger.error(
                "relay_stream_broken", user_id=user_id, thread_id=thread_id, error=str(exc)
            )
            return
        finally:
            await stream.aclose()
        log_relay_transition("done", user_id=user_id, logger=logger, thread_id=thread_id)
        if decoder is None:
            return
        for event in decoder.flush():
            accumulator.apply(event)
        if accumulator.error is not None:
            logger.info(
                "run_ended_without_reply",
                user_id=user_id,
                thread_id=thread_id,
                run_event=accumulator.error.event,
            )
            return
        if not accumulator.finished or not accumulator.text:
            return
        try:
            await asyncio.to_thread(
                self.store.append_message, conversation.id, "assistant", accumulator.text
            )
        except Exception as exc:
            logger.error(
                "transcript_assistant_turn_failed",
                user_id=user_id,
                conversation_id=conversation.id,
                error=str(exc),
            )
