from __future__ import annotations

import asyncio
from typing import Optional

from assistant_relay.logging import get_logger
from assistant_relay.service.errors import ThreadCreateFailed
from assistant_relay.service.upstream import AssistantsClient, UpstreamError
from assistant_relay.storage.models import Conversation

logger = get_logger(__name__)


class ThreadManager:
    """Maps a conversation to exactly one upstream thread."""

    def __init__(self, store, upstream: AssistantsClient) -> None:
        self.store = store
        self.upstream = upstream

    async def ensure_thread(
        self,
        existing_thread_id: Optional[str],
        conversation: Optional[Conversation] = None,
        *,
        user_id: Optional[str] = None,
    ) -> str:
        """Return the thread to post into, creating one upstream if needed.

        A thread already stored on the conversation wins over the id the
        caller sent. Known ids are reused as-is without checking upstream.
        """
        if conversation is not None and conversation.thread_id:
            if existing_thread_id and existing_thread_id != conversation.thread_id:
                logger.warning(
                    "thread_id_mismatch",
                    user_id=user_id,
                    conversation_id=conversation.id,
                    supplied=existing_thread_id,
                    stored=conversation.thread_id,
                )
            return conversation.thread_id
        if existing_thread_id:
            thread_id = existing_thread_id
        else:
            try:
                thread_id = await self.upstream.create_thread()
            except UpstreamError as exc:
                logger.error("thread_create_failed", user_id=user_id, error=str(exc))
                raise ThreadCreateFailed("Failed to create thread") from exc
            logger.info("thread_created", user_id=user_id, thread_id=thread_id)
        if conversation is not None:
            thread_id = await self._persist(conversation, thread_id, user_id=user_id)
        return thread_id

    async def _persist(self, conversation: Conversation, thread_id: str, *, user_id) -> str:
        try:
            stored = await asyncio.to_thread(
                self.store.set_conversation_thread, conversation.id, thread_id
            )
        except Exception as exc:
            # the relay continues on the new thread; the next call creates another
            logger.error(
                "thread_persist_failed",
                user_id=user_id,
                conversation_id=conversation.id,
                thread_id=thread_id,
                error=str(exc),
            )
            return thread_id
        conversation.thread_id = stored
        if stored != thread_id:
            # another request won the compare-and-set; follow it
            logger.info(
                "thread_persist_lost_race",
                conversation_id=conversation.id,
                kept=stored,
                discarded=thread_id,
            )
        return stored
