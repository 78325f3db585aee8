"""Event-stream decoding and reply accumulation."""

from conftest import delta_event, run_stream, sse_event

from assistant_relay.client.sse import EventStreamDecoder, ServerEvent
from assistant_relay.client.stream import StreamAccumulator


def _decode_all(body: bytes, chunk_size: int):
    decoder = EventStreamDecoder()
    events = []
    for start in range(0, len(body), chunk_size):
        events.extend(decoder.feed(body[start : start + chunk_size]))
    events.extend(decoder.flush())
    return decoder, events


def test_chunk_boundaries_do_not_change_events():
    body = run_stream("Hé", "llo ", "wörld")
    whole_decoder, whole = _decode_all(body, len(body))
    for size in (1, 2, 3, 7, 64):
        _, split = _decode_all(body, size)
        assert split == whole
    assert whole_decoder.done
    assert [e.event for e in whole] == [
        "thread.run.created",
        "thread.message.delta",
        "thread.message.delta",
        "thread.message.delta",
        "thread.message.completed",
        "thread.run.completed",
        "done",
    ]


def test_comments_and_crlf_are_handled():
    decoder = EventStreamDecoder()
    events = decoder.feed(b": keep-alive\r\nevent: ping\r\ndata: {}\r\n\r\n")
    assert events == [ServerEvent(event="ping", data="{}")]


def test_multiline_data_is_joined():
    decoder = EventStreamDecoder()
    events = decoder.feed(b"data: line one\ndata: line two\n\n")
    assert events[0].data == "line one\nline two"
    assert events[0].event is None


def test_flush_dispatches_unterminated_event():
    decoder = EventStreamDecoder()
    assert decoder.feed(b"event: done\ndata: [DONE]") == []
    events = decoder.flush()
    assert events[0].is_done
    assert decoder.done


def test_accumulator_concatenates_deltas():
    _, events = _decode_all(run_stream("Hel", "lo!"), 5)
    acc = StreamAccumulator()
    added = [acc.apply(e) for e in events]
    assert acc.text == "Hello!"
    assert [a for a in added if a] == ["Hel", "lo!"]
    assert acc.finished
    assert acc.error is None


def test_completed_message_fills_missing_deltas():
    body = sse_event(
        "thread.message.completed",
        {"content": [{"type": "text", "text": {"value": "all at once"}}]},
    )
    _, events = _decode_all(body, 10)
    acc = StreamAccumulator()
    for event in events:
        acc.apply(event)
    assert acc.text == "all at once"
    assert acc.finished


def test_completed_message_does_not_duplicate_deltas():
    body = delta_event("abc") + sse_event(
        "thread.message.completed",
        {"content": [{"type": "text", "text": {"value": "abc"}}]},
    )
    _, events = _decode_all(body, 4)
    acc = StreamAccumulator()
    for event in events:
        acc.apply(event)
    assert acc.text == "abc"


def test_failed_run_records_error_and_stops():
    body = (
        delta_event("partial")
        + sse_event("thread.run.failed", {"last_error": {"code": "server_error", "message": "boom"}})
        + delta_event("ignored")
    )
    _, events = _decode_all(body, 9)
    acc = StreamAccumulator()
    for event in events:
        acc.apply(event)
    assert acc.error is not None
    assert acc.error.event == "thread.run.failed"
    assert acc.error.message == "boom"
    assert acc.text == "partial"
    assert not acc.finished


def test_error_event_uses_default_message():
    acc = StreamAccumulator()
    acc.apply(ServerEvent(event="thread.run.expired", data="{}"))
    assert acc.error.message == "Run expired"


def test_non_text_parts_are_ignored():
    body = sse_event(
        "thread.message.delta",
        {"delta": {"content": [{"index": 0, "type": "image_file", "image_file": {"file_id": "f"}}]}},
    )
    _, events = _decode_all(body, 16)
    acc = StreamAccumulator()
    assert acc.apply(events[0]) == ""
    assert acc.text == ""
