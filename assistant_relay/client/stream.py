from __future__ import annotations

from typing import Any, Iterable, Optional

from assistant_relay.client.sse import ServerEvent

MESSAGE_DELTA = "thread.message.delta"
MESSAGE_COMPLETED = "thread.message.completed"
RUN_COMPLETED = "thread.run.completed"
RUN_FAILED = "thread.run.failed"
RUN_CANCELLED = "thread.run.cancelled"
RUN_EXPIRED = "thread.run.expired"

_RUN_ERRORS = {
    RUN_FAILED: "Run failed",
    RUN_CANCELLED: "Run was cancelled",
    RUN_EXPIRED: "Run expired",
}


class RunFailed(Exception):
    def __init__(self, event: str, message: str) -> None:
        super().__init__(message)
        self.event = event
        self.message = message


def _text_parts(content: Any) -> Iterable[str]:
    if not isinstance(content, list):
        return
    for part in content:
        if isinstance(part, dict) and part.get("type") == "text":
            text = part.get("text") or {}
            value = text.get("value") if isinstance(text, dict) else None
            if isinstance(value, str):
                yield value


class StreamAccumulator:
    """Builds the assistant reply from decoded run events.

    Deltas are appended as they arrive. A completed message only supplies
    the text when no deltas were seen. Run failure, cancellation and expiry
    are recorded as ``error`` and end accumulation.
    """

    def __init__(self) -> None:
        self.text = ""
        self.error: Optional[RunFailed] = None
        self.done = False
        self.message_completed = False
        self.run_completed = False

    @property
    def finished(self) -> bool:
        return self.error is None and (
            self.done or self.run_completed or self.message_completed
        )

    def apply(self, event: ServerEvent) -> str:
        """Apply one event; returns the text appended by it (may be empty)."""
        if self.error is not None:
            return ""
        if event.is_done:
            self.done = True
            return ""
        name = event.event
        payload = event.json()
        if name == MESSAGE_DELTA:
            delta = (payload or {}).get("delta") if isinstance(payload, dict) else None
            added = "".join(_text_parts((delta or {}).get("content")))
            self.text += added
            return added
        if name == MESSAGE_COMPLETED:
            self.message_completed = True
            if not self.text and isinstance(payload, dict):
                self.text = "".join(_text_parts(payload.get("content")))
                return self.text
            return ""
        if name == RUN_COMPLETED:
            self.run_completed = True
            return ""
        if name in _RUN_ERRORS or name == "error":
            self.error = RunFailed(name or "error", self._error_message(name, payload))
        return ""

    @staticmethod
    def _error_message(name: Optional[str], payload: Any) -> str:
        if isinstance(payload, dict):
            last_error = payload.get("last_error")
            if isinstance(last_error, dict) and last_error.get("message"):
                return str(last_error["message"])
            if name == "error" and payload.get("message"):
                return str(payload["message"])
        return _RUN_ERRORS.get(name or "", "Stream error")
