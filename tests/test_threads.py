"""Thread creation and reuse for conversations."""

import asyncio

import pytest

from assistant_relay.service.errors import ThreadCreateFailed
from assistant_relay.service.threads import ThreadManager
from assistant_relay.service.upstream import UpstreamError
from assistant_relay.storage.memory import MemoryStore


class StubUpstream:
    def __init__(self, fail: bool = False) -> None:
        self.created = []
        self.fail = fail

    async def create_thread(self) -> str:
        await asyncio.sleep(0)
        if self.fail:
            raise UpstreamError("create_thread", status_code=500)
        thread_id = f"thread_{len(self.created) + 1}"
        self.created.append(thread_id)
        return thread_id


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.mark.asyncio
async def test_creates_thread_when_none_known(store):
    upstream = StubUpstream()
    thread_id = await ThreadManager(store, upstream).ensure_thread(None)
    assert thread_id == "thread_1"
    assert upstream.created == ["thread_1"]


@pytest.mark.asyncio
async def test_supplied_thread_is_reused_without_upstream_call(store):
    upstream = StubUpstream()
    thread_id = await ThreadManager(store, upstream).ensure_thread("thread_existing")
    assert thread_id == "thread_existing"
    assert upstream.created == []


@pytest.mark.asyncio
async def test_new_thread_is_stored_on_conversation(store):
    upstream = StubUpstream()
    conv = store.create_conversation("user-1")
    manager = ThreadManager(store, upstream)
    first = await manager.ensure_thread(None, conv, user_id="user-1")
    fresh = store.get_conversation(conv.id)
    assert fresh.thread_id == first
    second = await manager.ensure_thread(None, fresh, user_id="user-1")
    assert second == first
    assert upstream.created == [first]


@pytest.mark.asyncio
async def test_stored_thread_wins_over_supplied(store):
    upstream = StubUpstream()
    conv = store.create_conversation("user-1")
    store.set_conversation_thread(conv.id, "thread_stored")
    conv = store.get_conversation(conv.id)
    thread_id = await ThreadManager(store, upstream).ensure_thread(
        "thread_from_client", conv, user_id="user-1"
    )
    assert thread_id == "thread_stored"
    assert upstream.created == []


@pytest.mark.asyncio
async def test_supplied_thread_adopted_by_conversation_without_one(store):
    conv = store.create_conversation("user-1")
    thread_id = await ThreadManager(store, StubUpstream()).ensure_thread(
        "thread_from_client", conv, user_id="user-1"
    )
    assert thread_id == "thread_from_client"
    assert store.get_conversation(conv.id).thread_id == "thread_from_client"


@pytest.mark.asyncio
async def test_concurrent_first_calls_settle_on_one_thread(store):
    upstream = StubUpstream()
    conv = store.create_conversation("user-1")
    manager = ThreadManager(store, upstream)
    copies = [store.get_conversation(conv.id) for _ in range(3)]
    results = await asyncio.gather(
        *(manager.ensure_thread(None, copy, user_id="user-1") for copy in copies)
    )
    stored = store.get_conversation(conv.id).thread_id
    assert stored is not None
    assert set(results) == {stored}


@pytest.mark.asyncio
async def test_create_failure_maps_to_thread_create_failed(store):
    with pytest.raises(ThreadCreateFailed) as exc_info:
        await ThreadManager(store, StubUpstream(fail=True)).ensure_thread(None)
    assert exc_info.value.status_code == 500
    assert exc_info.value.error_code == "thread_create_failed"


@pytest.mark.asyncio
async def test_persist_failure_does_not_abort(store, monkeypatch):
    conv = store.create_conversation("user-1")

    def _broken(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(store, "set_conversation_thread", _broken)
    thread_id = await ThreadManager(store, StubUpstream()).ensure_thread(
        None, conv, user_id="user-1"
    )
    assert thread_id == "thread_1"
    assert store.get_conversation(conv.id).thread_id is None
