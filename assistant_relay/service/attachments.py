from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

from assistant_relay.config import AttachmentMode
from assistant_relay.content_types import (
    SNIFF_PREFIX_BYTES,
    is_allowed_mime,
    normalize_mime,
    sniff_matches,
    tool_for,
)
from assistant_relay.logging import get_logger
from assistant_relay.service.fs import LocalObjectStore, PathTraversalError
from assistant_relay.service.upstream import AssistantsClient, UpstreamError
from assistant_relay.storage.errors import ConstraintViolation
from assistant_relay.storage.models import Attachment, Conversation

logger = get_logger(__name__)

__all__ = [
    "AttachmentPipeline",
    "FileDescriptor",
    "build_message_payload",
    "sniff_matches",
]


@dataclass
class FileDescriptor:
    """A file the caller already put in the object store."""

    name: str
    url: str
    type: str
    size: int


def build_message_payload(
    text: str, attachments: Sequence[Attachment]
) -> tuple[Union[str, List[Dict[str, Any]]], List[Dict[str, Any]]]:
    """Return ``(content, attachments)`` for the upstream message-append call.

    Images become ``image_file`` content parts next to the text; other files
    are listed as attachments with the tool that should read them.
    """
    images = [a for a in attachments if a.is_image and a.file_id]
    content: Union[str, List[Dict[str, Any]]] = text
    if images:
        content = [{"type": "text", "text": text}] + [
            {"type": "image_file", "image_file": {"file_id": a.file_id}} for a in images
        ]
    refs = [
        {"file_id": a.file_id, "tools": [{"type": tool} for tool in a.tools]}
        for a in attachments
        if a.file_id and a.tools and not a.is_image
    ]
    return content, refs


class AttachmentPipeline:
    """Moves caller files from the object store into the upstream file store.

    Files are staged concurrently. A file that fails any step (type, size,
    signature, download, upload) is logged and left out; the rest continue.
    """

    def __init__(
        self,
        object_store: LocalObjectStore,
        upstream: AssistantsClient,
        store,
        *,
        max_upload_bytes: int = 10 * 1024 * 1024,
        mode: AttachmentMode = AttachmentMode.MESSAGE,
    ) -> None:
        self.object_store = object_store
        self.upstream = upstream
        self.store = store
        self.max_upload_bytes = max_upload_bytes
        self.mode = mode

    async def stage(
        self,
        user_id: str,
        files: Sequence[FileDescriptor],
        conversation: Optional[Conversation] = None,
        *,
        thread_id: Optional[str] = None,
    ) -> List[Attachment]:
        if not files:
            return []
        results = await asyncio.gather(
            *(self._stage_one(user_id, f) for f in files), return_exceptions=True
        )
        staged: List[Attachment] = []
        for descriptor, result in zip(files, results):
            if isinstance(result, Exception):
                self._skip(
                    user_id,
                    descriptor,
                    "staging_error",
                    error=str(result),
                    error_type=type(result).__name__,
                )
            elif isinstance(result, BaseException):
                raise result
            elif result is not None:
                staged.append(result)
        if (
            self.mode == AttachmentMode.VECTOR_STORE
            and conversation is not None
            and thread_id
        ):
            await self._index_documents(user_id, staged, conversation, thread_id)
        logger.info(
            "attachments_staged",
            user_id=user_id,
            requested=len(files),
            staged=len(staged),
        )
        return staged

    async def _stage_one(self, user_id: str, descriptor: FileDescriptor) -> Optional[Attachment]:
        mime = normalize_mime(descriptor.type)
        if not is_allowed_mime(mime):
            return self._skip(user_id, descriptor, "mime_not_allowed")
        if descriptor.size > self.max_upload_bytes:
            return self._skip(user_id, descriptor, "too_large")
        try:
            data = await self.object_store.get(user_id, descriptor.url)
        except (PathTraversalError, OSError) as exc:
            return self._skip(user_id, descriptor, "download_failed", error=str(exc))
        if len(data) > self.max_upload_bytes:
            return self._skip(user_id, descriptor, "too_large")
        if not sniff_matches(data[:SNIFF_PREFIX_BYTES], mime):
            return self._skip(user_id, descriptor, "signature_mismatch")
        tool = tool_for(mime)
        purpose = "vision" if tool == "image" else "assistants"
        try:
            file_id = await self.upstream.upload_file(
                descriptor.name, data, mime, purpose=purpose
            )
        except UpstreamError as exc:
            return self._skip(user_id, descriptor, "upload_failed", error=str(exc))
        return Attachment(
            name=descriptor.name,
            path=descriptor.url,
            mime_type=mime,
            size=len(data),
            file_id=file_id,
            tools=[tool],
        )

    def _skip(self, user_id: str, descriptor: FileDescriptor, reason: str, **extra) -> None:
        logger.warning(
            "attachment_skipped",
            user_id=user_id,
            file_name=descriptor.name,
            file_type=descriptor.type,
            reason=reason,
            **extra,
        )
        return None

    async def _index_documents(
        self,
        user_id: str,
        staged: List[Attachment],
        conversation: Conversation,
        thread_id: str,
    ) -> None:
        """Add retrieval documents to the conversation's vector store.

        Indexed documents no longer travel as message attachments; the thread's
        tool resources point at the store instead. If the store cannot be
        prepared the documents stay attached to the message.
        """
        documents = [a for a in staged if "file_search" in a.tools]
        if not documents:
            return
        try:
            vector_store_id = await self._ensure_vector_store(conversation, thread_id)
        except (UpstreamError, ConstraintViolation) as exc:
            logger.error(
                "vector_store_unavailable",
                user_id=user_id,
                conversation_id=conversation.id,
                error=str(exc),
            )
            return

        async def _add(doc: Attachment) -> None:
            try:
                await self.upstream.add_vector_store_file(vector_store_id, doc.file_id)
            except UpstreamError as exc:
                logger.warning(
                    "vector_store_add_failed",
                    user_id=user_id,
                    file_name=doc.name,
                    error=str(exc),
                )
                return
            doc.tools = [t for t in doc.tools if t != "file_search"]

        await asyncio.gather(*(_add(doc) for doc in documents))

    async def _ensure_vector_store(self, conversation: Conversation, thread_id: str) -> str:
        """Return the conversation's store, attached to ``thread_id``.

        The attach call is repeated on every request; a thread whose earlier
        attach failed picks the store up again on the next one.
        """
        vector_store_id = conversation.vector_store_id
        if not vector_store_id:
            created = await self.upstream.create_vector_store(f"conversation-{conversation.id}")
            vector_store_id = await asyncio.to_thread(
                self.store.set_conversation_vector_store, conversation.id, created
            )
            conversation.vector_store_id = vector_store_id
        await self.upstream.attach_vector_store(thread_id, vector_store_id)
        return vector_store_id
