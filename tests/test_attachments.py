"""Staging caller files into the upstream file store."""

import pytest

from assistant_relay.config import AttachmentMode
from assistant_relay.content_types import object_path, sanitize_file_name, sniff_matches
from assistant_relay.service.attachments import (
    AttachmentPipeline,
    FileDescriptor,
    build_message_payload,
)
from assistant_relay.service.fs import LocalObjectStore, PathTraversalError
from assistant_relay.service.upstream import AssistantsClient
from assistant_relay.storage.memory import MemoryStore
from assistant_relay.storage.models import Attachment

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
PDF = b"%PDF-1.7\n" + b"x" * 32
WEBP = b"RIFF\x00\x00\x00\x00WEBPVP8 " + b"\x00" * 16


@pytest.fixture
def object_store(tmp_path):
    return LocalObjectStore(tmp_path / "objects")


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "db"))


@pytest.fixture
def client(upstream):
    return AssistantsClient("sk-test", base_url="https://upstream.test/v1", transport=upstream.transport())


def _pipeline(object_store, client, store, **kwargs):
    return AttachmentPipeline(object_store, client, store, **kwargs)


async def _put(object_store, user_id, name, data, mime):
    path = object_path(user_id, name, timestamp_ms=1)
    await object_store.put(user_id, path, data)
    return FileDescriptor(name=name, url=path, type=mime, size=len(data))


class TestSniffing:
    def test_known_signatures(self):
        assert sniff_matches(PNG[:16], "image/png")
        assert sniff_matches(PDF[:16], "application/pdf")
        assert sniff_matches(WEBP[:16], "image/webp")
        assert sniff_matches(b"\xff\xd8\xff\xe0", "image/jpeg")
        assert sniff_matches(b"GIF89a", "image/gif")

    def test_mismatch_and_unknown(self):
        assert not sniff_matches(b"not a png at all", "image/png")
        assert not sniff_matches(b"RIFF\x00\x00\x00\x00WAVE", "image/webp")
        assert not sniff_matches(PNG[:16], "application/x-msdownload")

    def test_text_types_need_no_signature(self):
        assert sniff_matches(b"a,b,c\n1,2,3", "text/csv; charset=utf-8")

    def test_object_path_is_sanitized(self):
        assert object_path("u1", "../my report.pdf", timestamp_ms=5) == "u1/5__my_report.pdf"
        assert sanitize_file_name("...") == "file"


class TestObjectStore:
    @pytest.mark.asyncio
    async def test_caller_prefix_enforced(self, object_store):
        with pytest.raises(PathTraversalError):
            await object_store.put("u1", "u2/1_x.txt", b"x")
        with pytest.raises(PathTraversalError):
            await object_store.get("u1", "u1/../u2/1_x.txt")

    @pytest.mark.asyncio
    async def test_nul_byte_in_path_is_rejected(self, object_store):
        with pytest.raises(ValueError):
            await object_store.get("u1", "u1/x\x00.png")


class TestPipeline:
    @pytest.mark.asyncio
    async def test_image_uploaded_for_vision(self, object_store, client, store, upstream):
        desc = await _put(object_store, "u1", "cat.png", PNG, "image/png")
        staged = await _pipeline(object_store, client, store).stage("u1", [desc])
        assert len(staged) == 1
        assert staged[0].file_id == "file_1"
        assert staged[0].is_image
        upload = [r for r in upstream.requests if r.url.path == "/v1/files"][0]
        assert b'name="purpose"\r\n\r\nvision' in upload.content

    @pytest.mark.asyncio
    async def test_document_uploaded_for_assistants(self, object_store, client, store, upstream):
        desc = await _put(object_store, "u1", "report.pdf", PDF, "application/pdf")
        staged = await _pipeline(object_store, client, store).stage("u1", [desc])
        assert staged[0].tools == ["file_search"]
        upload = [r for r in upstream.requests if r.url.path == "/v1/files"][0]
        assert b'name="purpose"\r\n\r\nassistants' in upload.content

    @pytest.mark.asyncio
    async def test_csv_goes_to_code_interpreter(self, object_store, client, store):
        desc = await _put(object_store, "u1", "data.csv", b"a,b\n1,2\n", "text/csv")
        staged = await _pipeline(object_store, client, store).stage("u1", [desc])
        assert staged[0].tools == ["code_interpreter"]

    @pytest.mark.asyncio
    async def test_signature_mismatch_is_skipped(self, object_store, client, store, upstream):
        desc = await _put(object_store, "u1", "fake.png", b"MZ\x90\x00" * 8, "image/png")
        staged = await _pipeline(object_store, client, store).stage("u1", [desc])
        assert staged == []
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_one_bad_file_does_not_block_others(self, object_store, client, store):
        good = await _put(object_store, "u1", "cat.png", PNG, "image/png")
        missing = FileDescriptor(name="gone.pdf", url="u1/404_gone.pdf", type="application/pdf", size=10)
        foreign = FileDescriptor(name="x.pdf", url="u2/1_x.pdf", type="application/pdf", size=10)
        exe = FileDescriptor(name="x.exe", url="u1/1_x.exe", type="application/x-msdownload", size=10)
        doc = await _put(object_store, "u1", "report.pdf", PDF, "application/pdf")
        staged = await _pipeline(object_store, client, store).stage(
            "u1", [good, missing, foreign, exe, doc]
        )
        assert sorted(a.name for a in staged) == ["cat.png", "report.pdf"]

    @pytest.mark.asyncio
    async def test_oversized_file_is_skipped(self, object_store, client, store):
        desc = await _put(object_store, "u1", "big.pdf", PDF, "application/pdf")
        staged = await _pipeline(object_store, client, store, max_upload_bytes=8).stage("u1", [desc])
        assert staged == []

    @pytest.mark.asyncio
    async def test_upload_failure_is_skipped(self, object_store, client, store, upstream):
        upstream.fail["/files"] = 500
        desc = await _put(object_store, "u1", "report.pdf", PDF, "application/pdf")
        staged = await _pipeline(object_store, client, store).stage("u1", [desc])
        assert staged == []

    @pytest.mark.asyncio
    async def test_vector_store_mode_indexes_documents(self, object_store, client, store, upstream):
        conv = store.create_conversation("u1")
        doc = await _put(object_store, "u1", "report.pdf", PDF, "application/pdf")
        img = await _put(object_store, "u1", "cat.png", PNG, "image/png")
        pipeline = _pipeline(object_store, client, store, mode=AttachmentMode.VECTOR_STORE)
        staged = await pipeline.stage("u1", [doc, img], conv, thread_id="thread_1")

        by_name = {a.name: a for a in staged}
        assert by_name["report.pdf"].tools == []
        assert by_name["cat.png"].is_image
        assert store.get_conversation(conv.id).vector_store_id == "vs_1"
        assert ("POST", "/v1/vector_stores/vs_1/files") in upstream.paths
        assert ("POST", "/v1/threads/thread_1") in upstream.paths

        # second request reuses the conversation's store
        again = await _put(object_store, "u1", "notes.txt", b"hello", "text/plain")
        await pipeline.stage("u1", [again], store.get_conversation(conv.id), thread_id="thread_1")
        assert upstream.paths.count(("POST", "/v1/vector_stores")) == 1

    @pytest.mark.asyncio
    async def test_vector_store_failure_keeps_message_attachment(
        self, object_store, client, store, upstream
    ):
        upstream.fail["/vector_stores"] = 500
        conv = store.create_conversation("u1")
        doc = await _put(object_store, "u1", "report.pdf", PDF, "application/pdf")
        pipeline = _pipeline(object_store, client, store, mode=AttachmentMode.VECTOR_STORE)
        staged = await pipeline.stage("u1", [doc], conv, thread_id="thread_1")
        assert staged[0].tools == ["file_search"]
        assert store.get_conversation(conv.id).vector_store_id is None

    @pytest.mark.asyncio
    async def test_nul_byte_path_is_skipped(self, object_store, client, store):
        good = await _put(object_store, "u1", "cat.png", PNG, "image/png")
        broken = FileDescriptor(name="x.png", url="u1/x\x00.png", type="image/png", size=10)
        staged = await _pipeline(object_store, client, store).stage("u1", [good, broken])
        assert [a.name for a in staged] == ["cat.png"]

    @pytest.mark.asyncio
    async def test_unexpected_error_only_drops_that_file(
        self, object_store, client, store, monkeypatch
    ):
        original = client.upload_file

        async def flaky_upload(name, data, mime_type, *, purpose="assistants"):
            if name == "boom.pdf":
                raise RuntimeError("decoder bug")
            return await original(name, data, mime_type, purpose=purpose)

        monkeypatch.setattr(client, "upload_file", flaky_upload)
        boom = await _put(object_store, "u1", "boom.pdf", PDF, "application/pdf")
        fine = await _put(object_store, "u1", "fine.pdf", PDF, "application/pdf")
        staged = await _pipeline(object_store, client, store).stage("u1", [boom, fine])
        assert [a.name for a in staged] == ["fine.pdf"]

    @pytest.mark.asyncio
    async def test_failed_thread_attach_is_retried(self, object_store, client, store, upstream):
        upstream.fail_once["/threads/thread_1"] = 500
        conv = store.create_conversation("u1")
        pipeline = _pipeline(object_store, client, store, mode=AttachmentMode.VECTOR_STORE)

        first = await _put(object_store, "u1", "a.pdf", PDF, "application/pdf")
        staged = await pipeline.stage("u1", [first], conv, thread_id="thread_1")
        # not searchable through the store yet, so it stays on the message
        assert staged[0].tools == ["file_search"]

        second = await _put(object_store, "u1", "b.pdf", PDF, "application/pdf")
        staged = await pipeline.stage(
            "u1", [second], store.get_conversation(conv.id), thread_id="thread_1"
        )
        assert staged[0].tools == []
        assert upstream.paths.count(("POST", "/v1/threads/thread_1")) == 2
        assert upstream.paths.count(("POST", "/v1/vector_stores")) == 1
        assert store.get_conversation(conv.id).vector_store_id == "vs_1"


class TestMessagePayload:
    def test_text_only(self):
        content, refs = build_message_payload("hi", [])
        assert content == "hi"
        assert refs == []

    def test_images_become_content_parts(self):
        attachments = [
            Attachment("cat.png", "u1/1_cat.png", "image/png", 10, "file_img", ["image"]),
            Attachment("r.pdf", "u1/1_r.pdf", "application/pdf", 10, "file_doc", ["file_search"]),
        ]
        content, refs = build_message_payload("look", attachments)
        assert content == [
            {"type": "text", "text": "look"},
            {"type": "image_file", "image_file": {"file_id": "file_img"}},
        ]
        assert refs == [{"file_id": "file_doc", "tools": [{"type": "file_search"}]}]
