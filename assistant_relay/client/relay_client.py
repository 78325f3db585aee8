from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx

from assistant_relay.client.files import LocalFile, validate_files
from assistant_relay.client.sse import EventStreamDecoder
from assistant_relay.client.stream import StreamAccumulator
from assistant_relay.client.timeline import MessageTimeline
from assistant_relay.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0


class RelayError(Exception):
    """The relay call did not produce an assistant reply."""

    def __init__(
        self, message: str, *, code: str = "internal_error", status_code: Optional[int] = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code


@dataclass
class ChatTurn:
    thread_id: Optional[str]
    text: str


class RelayClient:
    """Async client for the relay API with optimistic timeline updates.

    A send adds the user message locally, streams the reply into a local
    assistant placeholder, and then swaps both for the stored copies when
    the turn belongs to a conversation. Any failure before the reply has
    finished streaming (the overall timeout and task cancellation included)
    removes both local messages before the error propagates. A failed
    reload after a finished reply keeps the local turn.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {token}"},
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "RelayClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    @staticmethod
    async def _raise_for_error(resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        await resp.aread()
        code, message = "internal_error", f"request failed ({resp.status_code})"
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            code = body["error"].get("code", code)
            message = body["error"].get("message", message)
        raise RelayError(message, code=code, status_code=resp.status_code)

    async def _get_json(self, path: str, **params: Any) -> Dict[str, Any]:
        resp = await self.client.get(path, params=params or None)
        await self._raise_for_error(resp)
        return resp.json().get("data") or {}

    async def list_assistants(self) -> List[Dict[str, Any]]:
        data = await self._get_json("/v1/assistants")
        return data.get("items", [])

    async def list_messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        data = await self._get_json(f"/v1/conversations/{conversation_id}/messages")
        return data.get("messages", [])

    async def upload_files(self, files: Sequence[LocalFile]) -> List[Dict[str, Any]]:
        validate_files(files)
        refs = []
        for item in files:
            resp = await self.client.post(
                "/v1/files", files={"file": (item.name, item.data, item.type)}
            )
            await self._raise_for_error(resp)
            refs.append(resp.json()["data"])
        return refs

    async def send_message(
        self,
        timeline: MessageTimeline,
        message: str,
        *,
        conversation_id: Optional[str] = None,
        thread_id: Optional[str] = None,
        files: Sequence[LocalFile] = (),
        on_delta: Optional[Callable[[str], None]] = None,
    ) -> ChatTurn:
        # rejects bad selections before the timeline or network is touched
        validate_files(files)
        attachments = [
            {"file_name": f.name, "file_size": f.size, "file_type": f.type} for f in files
        ]
        user_local = timeline.add_local("user", message, attachments)
        assistant_local = None

        async def _run() -> ChatTurn:
            nonlocal assistant_local
            refs = await self.upload_files(files) if files else []
            body: Dict[str, Any] = {"message": message}
            if thread_id:
                body["threadId"] = thread_id
            if conversation_id:
                body["conversationId"] = conversation_id
            if refs:
                body["files"] = refs
            assistant_local = timeline.add_local("assistant", "")
            return await self._stream_reply(body, timeline, assistant_local.id, on_delta)

        try:
            turn = await asyncio.wait_for(_run(), self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            self._rollback(timeline, user_local.id, assistant_local)
            raise RelayError("Request timed out", code="timeout") from exc
        except httpx.HTTPError as exc:
            self._rollback(timeline, user_local.id, assistant_local)
            raise RelayError(str(exc) or "network error", code="network_error") from exc
        except BaseException:
            # cancellation and anything unexpected leave no optimistic turn behind
            self._rollback(timeline, user_local.id, assistant_local)
            raise

        if conversation_id:
            await self._reconcile(timeline, conversation_id)
        return turn

    async def _reconcile(self, timeline: MessageTimeline, conversation_id: str) -> None:
        """Swap local messages for stored copies; on failure keep the local turn."""
        try:
            timeline.reconcile(await self.list_messages(conversation_id))
        except (RelayError, httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "relay_reconcile_failed", conversation_id=conversation_id, error=str(exc)
            )

    @staticmethod
    def _rollback(timeline: MessageTimeline, user_local_id: str, assistant_local) -> None:
        timeline.remove(user_local_id)
        if assistant_local is not None:
            timeline.remove(assistant_local.id)
        logger.info("relay_send_rolled_back")

    async def _stream_reply(
        self,
        body: Dict[str, Any],
        timeline: MessageTimeline,
        placeholder_id: str,
        on_delta: Optional[Callable[[str], None]],
    ) -> ChatTurn:
        decoder = EventStreamDecoder()
        accumulator = StreamAccumulator()
        async with self.client.stream(
            "POST",
            "/v1/assistant-relay",
            json=body,
            timeout=httpx.Timeout(self.timeout_seconds, connect=10.0, read=None),
        ) as resp:
            await self._raise_for_error(resp)
            thread_id = resp.headers.get("X-Thread-Id")
            async for chunk in resp.aiter_bytes():
                for event in decoder.feed(chunk):
                    self._apply(event, accumulator, timeline, placeholder_id, on_delta)
                if accumulator.error is not None:
                    break
            for event in decoder.flush():
                self._apply(event, accumulator, timeline, placeholder_id, on_delta)
        if accumulator.error is not None:
            raise RelayError(accumulator.error.message, code="run_failed")
        if not accumulator.text:
            raise RelayError("No response received", code="empty_response")
        return ChatTurn(thread_id=thread_id, text=accumulator.text)

    @staticmethod
    def _apply(event, accumulator, timeline, placeholder_id, on_delta) -> None:
        added = accumulator.apply(event)
        if added:
            timeline.append_delta(placeholder_id, added)
            if on_delta is not None:
                on_delta(added)
