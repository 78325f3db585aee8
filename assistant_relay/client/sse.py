from __future__ import annotations

import codecs
import json
from dataclasses import dataclass
from typing import Any, List, Optional, Union

DONE_SENTINEL = "[DONE]"


@dataclass
class ServerEvent:
    event: Optional[str]
    data: str

    @property
    def is_done(self) -> bool:
        return self.data == DONE_SENTINEL

    def json(self) -> Any:
        """Decoded ``data`` payload, or ``None`` when it is not JSON."""
        if self.is_done:
            return None
        try:
            return json.loads(self.data)
        except ValueError:
            return None


class EventStreamDecoder:
    """Incremental text/event-stream parser.

    Feed it byte chunks as they arrive; chunks may split lines or even
    multi-byte characters. ``event:`` and ``data:`` fields accumulate until a
    blank line dispatches the event. Comment lines (``:``) are ignored.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._event: Optional[str] = None
        self._data: List[str] = []
        self.done = False

    def feed(self, chunk: Union[bytes, str]) -> List[ServerEvent]:
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._buffer += text
        events: List[ServerEvent] = []
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            self._handle_line(line.rstrip("\r"), events)
        return events

    def flush(self) -> List[ServerEvent]:
        """Dispatch whatever is pending once the stream has ended."""
        events: List[ServerEvent] = []
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        if tail:
            self._handle_line(tail.rstrip("\r"), events)
        self._dispatch(events)
        return events

    def _handle_line(self, line: str, events: List[ServerEvent]) -> None:
        if not line:
            self._dispatch(events)
            return
        if line.startswith(":"):
            return
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)

    def _dispatch(self, events: List[ServerEvent]) -> None:
        if not self._data:
            self._event = None
            return
        event = ServerEvent(event=self._event, data="\n".join(self._data))
        self._event = None
        self._data = []
        if event.is_done:
            self.done = True
        events.append(event)
