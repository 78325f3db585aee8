import asyncio
import inspect
import json
import os
import sys
import tempfile
import uuid
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="assistant_relay_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Rate limits fall back to the in-process log
os.environ["REDIS_URL"] = ""
os.environ.setdefault("OPENAI_API_KEY", "sk-test")
os.environ.setdefault("OPENAI_BASE_URL", "https://upstream.test/v1")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from assistant_relay.service.runtime import reset_runtime_for_tests  # noqa: E402


def sse_event(event: str, data) -> bytes:
    payload = data if isinstance(data, str) else json.dumps(data)
    return f"event: {event}\ndata: {payload}\n\n".encode()


def delta_event(text: str) -> bytes:
    return sse_event(
        "thread.message.delta",
        {"delta": {"content": [{"index": 0, "type": "text", "text": {"value": text}}]}},
    )


def run_stream(*parts: str) -> bytes:
    body = sse_event("thread.run.created", {"id": "run_1", "status": "queued"})
    for part in parts:
        body += delta_event(part)
    body += sse_event(
        "thread.message.completed",
        {"content": [{"type": "text", "text": {"value": "".join(parts)}}]},
    )
    body += sse_event("thread.run.completed", {"id": "run_1", "status": "completed"})
    body += sse_event("done", "[DONE]")
    return body


class FakeUpstream:
    """Scriptable stand-in for the assistants API, served through MockTransport."""

    def __init__(self) -> None:
        self.requests = []
        self.thread_ids = iter(f"thread_{n}" for n in range(1, 1000))
        self.file_ids = iter(f"file_{n}" for n in range(1, 1000))
        self.run_body = run_stream("Hel", "lo!")
        self.chat_body = (
            b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\n'
            b'data: {"choices":[{"delta":{"content":" there"}}]}\n\n'
            b"data: [DONE]\n\n"
        )
        self.fail = {}
        # suffix -> status, answered once
        self.fail_once = {}

    @property
    def paths(self):
        return [(r.method, r.url.path) for r in self.requests]

    def json_bodies(self, suffix: str):
        return [
            json.loads(r.content)
            for r in self.requests
            if r.url.path.endswith(suffix) and r.headers.get("content-type") == "application/json"
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        for fragment, status in self.fail.items():
            if path.endswith(fragment):
                return httpx.Response(status, json={"error": {"message": "upstream broke"}})
        for fragment in list(self.fail_once):
            if path.endswith(fragment):
                status = self.fail_once.pop(fragment)
                return httpx.Response(status, json={"error": {"message": "upstream broke"}})
        if path == "/v1/threads":
            return httpx.Response(200, json={"id": next(self.thread_ids)})
        if path.endswith("/messages"):
            return httpx.Response(200, json={"id": "msg_1"})
        if path.endswith("/runs"):
            return httpx.Response(
                200,
                content=self.run_body,
                headers={"content-type": "text/event-stream"},
            )
        if path == "/v1/chat/completions":
            return httpx.Response(
                200, content=self.chat_body, headers={"content-type": "text/event-stream"}
            )
        if path == "/v1/files":
            return httpx.Response(200, json={"id": next(self.file_ids)})
        if path == "/v1/vector_stores":
            return httpx.Response(200, json={"id": "vs_1"})
        if path.startswith("/v1/vector_stores/") or path.startswith("/v1/threads/"):
            return httpx.Response(200, json={"id": "ok"})
        return httpx.Response(404, json={"error": {"message": "unknown path"}})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def relay_runtime(upstream):
    """Fresh runtime whose assistants client talks to ``upstream``."""
    return reset_runtime_for_tests(upstream_transport=upstream.transport())


@pytest.fixture
def user_id():
    return f"user-{uuid.uuid4().hex[:12]}"


@pytest.fixture
def auth_headers(relay_runtime, user_id):
    token = relay_runtime.auth.encode_token(user_id, email=f"{user_id}@example.com")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def active_assistant(relay_runtime, user_id):
    return relay_runtime.store.add_user_assistant(
        user_id, "asst_primary", "Primary", is_active=True
    )


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
