"""End-to-end relay calls against a scripted upstream."""

import json

import pytest
from conftest import delta_event, sse_event
from fastapi.testclient import TestClient

from assistant_relay import app as app_module
from assistant_relay.service.runtime import reset_runtime_for_tests

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _relay(client, headers, **body):
    return client.post("/v1/assistant-relay", headers=headers, json=body)


class TestHappyPath:
    def test_streams_run_events(self, client, auth_headers, active_assistant, upstream):
        resp = _relay(client, auth_headers, message="Hello there")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.headers["x-thread-id"] == "thread_1"
        assert resp.headers["cache-control"] == "no-cache"
        assert resp.content == upstream.run_body

        assert upstream.paths == [
            ("POST", "/v1/threads"),
            ("POST", "/v1/threads/thread_1/messages"),
            ("POST", "/v1/threads/thread_1/runs"),
        ]
        assert upstream.requests[0].headers["authorization"] == "Bearer sk-test"
        assert upstream.requests[0].headers["openai-beta"] == "assistants=v2"
        assert upstream.json_bodies("/messages") == [{"role": "user", "content": "Hello there"}]
        assert upstream.json_bodies("/runs") == [{"assistant_id": "asst_primary", "stream": True}]

    def test_known_thread_is_reused(self, client, auth_headers, active_assistant, upstream):
        resp = _relay(client, auth_headers, message="again", threadId="thread_abc")
        assert resp.status_code == 200
        assert resp.headers["x-thread-id"] == "thread_abc"
        assert ("POST", "/v1/threads") not in upstream.paths

    def test_settings_forwarded_as_run_overrides(
        self, client, auth_headers, active_assistant, relay_runtime, user_id, upstream
    ):
        relay_runtime.store.update_assistant_settings(
            user_id, "asst_primary", model="gpt-4o-mini", temperature=0.3
        )
        assert _relay(client, auth_headers, message="hi").status_code == 200
        run_body = upstream.json_bodies("/runs")[0]
        assert run_body["model"] == "gpt-4o-mini"
        assert run_body["temperature"] == 0.3

    def test_failed_run_is_still_relayed(self, client, auth_headers, active_assistant, upstream):
        upstream.run_body = delta_event("par") + sse_event(
            "thread.run.failed", {"last_error": {"message": "quota"}}
        )
        resp = _relay(client, auth_headers, message="hi")
        assert resp.status_code == 200
        assert b"thread.run.failed" in resp.content


class TestRejections:
    def test_missing_token(self, client, upstream, relay_runtime):
        resp = _relay(client, {}, message="hi")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "authentication_required"
        assert upstream.requests == []

    def test_auth_checked_before_body(self, client, upstream, relay_runtime):
        resp = _relay(client, {"Authorization": "Bearer nope"}, message="")
        assert resp.status_code == 401

    def test_no_active_assistant(self, client, auth_headers, upstream):
        resp = _relay(client, auth_headers, message="hi")
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "assistant_not_configured"
        assert error["message"] == (
            "No active assistant configured. Please configure an assistant in settings."
        )
        assert upstream.requests == []

    @pytest.mark.parametrize("message", ["", "   ", "x" * 4001])
    def test_invalid_message(self, client, auth_headers, active_assistant, upstream, message):
        resp = _relay(client, auth_headers, message=message)
        assert resp.status_code == 400
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_failed"
        assert body["error"]["details"] == {"field": "message"}
        assert body["error"]["message"].startswith("message: ")
        assert upstream.requests == []

    def test_message_at_limit_is_accepted(self, client, auth_headers, active_assistant):
        assert _relay(client, auth_headers, message="x" * 4000).status_code == 200

    def test_too_many_files(self, client, auth_headers, active_assistant, upstream, user_id):
        files = [
            {"name": f"f{i}.png", "url": f"{user_id}/1_f{i}.png", "type": "image/png", "size": 10}
            for i in range(6)
        ]
        resp = _relay(client, auth_headers, message="hi", files=files)
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "files: max 5 files per message"
        assert upstream.requests == []

    def test_foreign_conversation_is_404(self, client, auth_headers, active_assistant, relay_runtime):
        other = relay_runtime.store.create_conversation("someone-else")
        resp = _relay(client, auth_headers, message="hi", conversationId=other.id)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_rate_limit_denies_twenty_first(self, client, auth_headers, active_assistant, upstream):
        for _ in range(20):
            assert _relay(client, auth_headers, message="hi").status_code == 200
        resp = _relay(client, auth_headers, message="hi")
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limit_exceeded"
        assert int(resp.headers["retry-after"]) >= 1
        assert upstream.paths.count(("POST", "/v1/threads")) == 20

    def test_missing_api_key(self, client, monkeypatch, user_id):
        monkeypatch.setenv("OPENAI_API_KEY", "")
        runtime = reset_runtime_for_tests()
        runtime.store.add_user_assistant(user_id, "asst_primary", "Primary", is_active=True)
        headers = {"Authorization": f"Bearer {runtime.auth.encode_token(user_id)}"}
        resp = _relay(client, headers, message="hi")
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "service_not_configured"


class TestUpstreamFailures:
    @pytest.mark.parametrize(
        "fragment,code",
        [
            ("/threads", "thread_create_failed"),
            ("/messages", "message_send_failed"),
            ("/runs", "run_start_failed"),
        ],
    )
    def test_stage_failure_codes(
        self, client, auth_headers, active_assistant, upstream, fragment, code
    ):
        upstream.fail[fragment] = 502
        resp = _relay(client, auth_headers, message="hi")
        assert resp.status_code == 500
        error = resp.json()["error"]
        assert error["code"] == code
        # upstream bodies never reach the caller
        assert "upstream broke" not in resp.text
        assert error["details"] is None

    def test_run_failure_after_message_posted(self, client, auth_headers, active_assistant, upstream):
        upstream.fail["/runs"] = 500
        _relay(client, auth_headers, message="hi")
        assert ("POST", "/v1/threads/thread_1/messages") in upstream.paths


class TestConversationTranscript:
    def test_turns_are_persisted(
        self, client, auth_headers, active_assistant, relay_runtime, user_id
    ):
        conv = relay_runtime.store.create_conversation(user_id, "asst_primary")
        resp = _relay(client, auth_headers, message="What is the weather like?", conversationId=conv.id)
        assert resp.status_code == 200
        assert resp.headers["x-thread-id"] == "thread_1"

        stored = relay_runtime.store.get_conversation(conv.id)
        assert stored.thread_id == "thread_1"
        assert stored.title == "What is the weather like?"
        messages = relay_runtime.store.list_messages(conv.id)
        assert [(m.role, m.content) for m in messages] == [
            ("user", "What is the weather like?"),
            ("assistant", "Hello!"),
        ]

        # the conversation's thread is reused and no second thread is created
        resp = _relay(client, auth_headers, message="And tomorrow?", conversationId=conv.id)
        assert resp.headers["x-thread-id"] == "thread_1"
        assert len(relay_runtime.store.list_messages(conv.id)) == 4

    def test_long_first_message_titles_conversation(
        self, client, auth_headers, active_assistant, relay_runtime, user_id
    ):
        conv = relay_runtime.store.create_conversation(user_id)
        _relay(client, auth_headers, message="y" * 80, conversationId=conv.id)
        assert relay_runtime.store.get_conversation(conv.id).title == "y" * 50

    def test_failed_run_persists_only_user_turn(
        self, client, auth_headers, active_assistant, relay_runtime, user_id, upstream
    ):
        upstream.run_body = delta_event("par") + sse_event(
            "thread.run.failed", {"last_error": {"message": "quota"}}
        )
        conv = relay_runtime.store.create_conversation(user_id)
        _relay(client, auth_headers, message="hi", conversationId=conv.id)
        messages = relay_runtime.store.list_messages(conv.id)
        assert [m.role for m in messages] == ["user"]

    def test_messages_endpoint_lists_transcript(
        self, client, auth_headers, active_assistant, relay_runtime, user_id
    ):
        conv = relay_runtime.store.create_conversation(user_id)
        _relay(client, auth_headers, message="hi", conversationId=conv.id)
        resp = client.get(f"/v1/conversations/{conv.id}/messages", headers=auth_headers)
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert [m["role"] for m in data["messages"]] == ["user", "assistant"]
        assert [m["seq"] for m in data["messages"]] == [0, 1]


class TestRelayWithFiles:
    def _upload(self, client, headers, name, data, mime):
        resp = client.post("/v1/files", headers=headers, files={"file": (name, data, mime)})
        assert resp.status_code == 201, resp.text
        return resp.json()["data"]

    def test_image_sent_as_content_part(self, client, auth_headers, active_assistant, upstream):
        ref = self._upload(client, auth_headers, "cat.png", PNG, "image/png")
        resp = _relay(client, auth_headers, message="what is this?", files=[ref])
        assert resp.status_code == 200
        message_body = upstream.json_bodies("/messages")[0]
        assert message_body["content"] == [
            {"type": "text", "text": "what is this?"},
            {"type": "image_file", "image_file": {"file_id": "file_1"}},
        ]
        assert "attachments" not in message_body

    def test_bad_file_is_skipped_and_relay_continues(
        self, client, auth_headers, active_assistant, upstream, user_id, relay_runtime
    ):
        doc = self._upload(client, auth_headers, "notes.txt", b"plain notes", "text/plain")
        fake_path = f"{user_id}/1_fake.png"
        (relay_runtime.object_store.root / user_id).mkdir(parents=True, exist_ok=True)
        (relay_runtime.object_store.root / fake_path).write_bytes(b"MZ" * 20)
        fake = {"name": "fake.png", "url": fake_path, "type": "image/png", "size": 40}

        resp = _relay(client, auth_headers, message="read these", files=[doc, fake])
        assert resp.status_code == 200
        message_body = upstream.json_bodies("/messages")[0]
        assert message_body["content"] == "read these"
        assert message_body["attachments"] == [
            {"file_id": "file_1", "tools": [{"type": "file_search"}]}
        ]
        uploads = [r for r in upstream.requests if r.url.path == "/v1/files"]
        assert len(uploads) == 1

    def test_nul_byte_path_does_not_fail_relay(
        self, client, auth_headers, active_assistant, upstream, user_id
    ):
        doc = self._upload(client, auth_headers, "notes.txt", b"plain notes", "text/plain")
        broken = {"name": "x.png", "url": f"{user_id}/x\x00.png", "type": "image/png", "size": 10}
        resp = _relay(client, auth_headers, message="read these", files=[broken, doc])
        assert resp.status_code == 200
        assert upstream.json_bodies("/messages")[0]["attachments"] == [
            {"file_id": "file_1", "tools": [{"type": "file_search"}]}
        ]

    def test_attachment_metadata_on_user_turn(
        self, client, auth_headers, active_assistant, relay_runtime, user_id
    ):
        conv = relay_runtime.store.create_conversation(user_id)
        ref = self._upload(client, auth_headers, "cat.png", PNG, "image/png")
        _relay(client, auth_headers, message="see", files=[ref], conversationId=conv.id)
        user_turn = relay_runtime.store.list_messages(conv.id)[0]
        assert user_turn.attachments == [
            {"file_name": "cat.png", "file_size": len(PNG), "file_type": "image/png"}
        ]


def test_envelope_body_is_json(client, auth_headers, upstream):
    resp = _relay(client, auth_headers, message="hi")
    payload = json.loads(resp.text)
    assert set(payload) == {"status", "data", "error", "request_id"}
    assert payload["request_id"] == resp.headers["x-request-id"]
