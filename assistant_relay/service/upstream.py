from __future__ import annotations

from typing import Any, AsyncIterator, Dict, List, Optional, Union

import httpx

from assistant_relay.logging import get_logger

logger = get_logger(__name__)

# Upstream error bodies are logged, never returned; keep log lines bounded.
_MAX_LOGGED_BODY = 2000


class UpstreamError(Exception):
    """A call to the assistants API failed (transport error or non-2xx)."""

    def __init__(
        self, operation: str, *, status_code: Optional[int] = None, body: str = ""
    ) -> None:
        super().__init__(f"{operation} failed ({status_code or 'transport error'})")
        self.operation = operation
        self.status_code = status_code
        self.body = body


class UpstreamStream:
    """An open streamed run. Iterate once; always close."""

    def __init__(self, response: httpx.Response) -> None:
        self.response = response
        self._closed = False

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.response.aiter_bytes():
                if chunk:
                    yield chunk
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if not self._closed:
            self._closed = True
            await self.response.aclose()


class AssistantsClient:
    """Minimal client for the assistants v2 HTTP API.

    Only the calls the relay needs are implemented. Every failure surfaces as
    ``UpstreamError`` after the raw body has been logged.
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.openai.com/v1",
        beta_header: str = "assistants=v2",
        timeout_seconds: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "OpenAI-Beta": beta_header,
            },
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    async def close(self) -> None:
        await self.client.aclose()

    def _fail(self, operation: str, exc: Optional[Exception], resp: Optional[httpx.Response]):
        status_code = resp.status_code if resp is not None else None
        body = ""
        if resp is not None:
            body = resp.text[:_MAX_LOGGED_BODY]
        logger.error(
            "upstream_request_failed",
            operation=operation,
            status_code=status_code,
            body=body,
            error=str(exc) if exc else None,
        )
        return UpstreamError(operation, status_code=status_code, body=body)

    async def _post(
        self,
        operation: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            resp = await self.client.post(path, json=json, files=files, data=data)
        except httpx.HTTPError as exc:
            raise self._fail(operation, exc, None) from exc
        if resp.status_code >= 400:
            raise self._fail(operation, None, resp)
        try:
            payload = resp.json()
        except ValueError as exc:
            raise self._fail(operation, exc, resp) from exc
        return payload if isinstance(payload, dict) else {}

    async def create_thread(self) -> str:
        payload = await self._post("create_thread", "/threads", json={})
        thread_id = payload.get("id")
        if not thread_id:
            raise UpstreamError("create_thread", body="missing id")
        return thread_id

    async def attach_vector_store(self, thread_id: str, vector_store_id: str) -> None:
        await self._post(
            "update_thread",
            f"/threads/{thread_id}",
            json={"tool_resources": {"file_search": {"vector_store_ids": [vector_store_id]}}},
        )

    async def append_message(
        self,
        thread_id: str,
        content: Union[str, List[Dict[str, Any]]],
        *,
        attachments: Optional[List[Dict[str, Any]]] = None,
    ) -> str:
        body: Dict[str, Any] = {"role": "user", "content": content}
        if attachments:
            body["attachments"] = attachments
        payload = await self._post("append_message", f"/threads/{thread_id}/messages", json=body)
        return payload.get("id", "")

    async def open_stream(
        self, operation: str, path: str, body: Dict[str, Any]
    ) -> UpstreamStream:
        request = self.client.build_request(
            "POST",
            path,
            json=body,
            # long-lived response; only connect and write are bounded
            timeout=httpx.Timeout(self.timeout_seconds, connect=10.0, read=None),
        )
        try:
            resp = await self.client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise self._fail(operation, exc, None) from exc
        if resp.status_code >= 400:
            try:
                await resp.aread()
            finally:
                await resp.aclose()
            raise self._fail(operation, None, resp)
        return UpstreamStream(resp)

    async def create_run_stream(
        self, thread_id: str, assistant_id: str, **overrides: Any
    ) -> UpstreamStream:
        """Start a streamed run and return the open response.

        The caller owns the returned stream and must iterate or close it.
        """
        body: Dict[str, Any] = {"assistant_id": assistant_id, "stream": True, **overrides}
        return await self.open_stream("create_run", f"/threads/{thread_id}/runs", body)

    async def upload_file(
        self, name: str, data: bytes, mime_type: str, *, purpose: str = "assistants"
    ) -> str:
        payload = await self._post(
            "upload_file",
            "/files",
            files={"file": (name, data, mime_type)},
            data={"purpose": purpose},
        )
        file_id = payload.get("id")
        if not file_id:
            raise UpstreamError("upload_file", body="missing id")
        return file_id

    async def create_vector_store(self, name: str) -> str:
        payload = await self._post("create_vector_store", "/vector_stores", json={"name": name})
        store_id = payload.get("id")
        if not store_id:
            raise UpstreamError("create_vector_store", body="missing id")
        return store_id

    async def add_vector_store_file(self, vector_store_id: str, file_id: str) -> None:
        await self._post(
            "add_vector_store_file",
            f"/vector_stores/{vector_store_id}/files",
            json={"file_id": file_id},
        )


class ChatCompletionsClient:
    """Streamed chat completions over the assistants client's connection pool."""

    def __init__(self, upstream: AssistantsClient) -> None:
        self.upstream = upstream

    async def stream(
        self,
        model: str,
        messages: List[Dict[str, str]],
        *,
        max_completion_tokens: int = 4096,
    ) -> UpstreamStream:
        body = {
            "model": model,
            "messages": messages,
            "stream": True,
            "max_completion_tokens": max_completion_tokens,
        }
        return await self.upstream.open_stream("chat_completion", "/chat/completions", body)
