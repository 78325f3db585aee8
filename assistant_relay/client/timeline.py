from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

LOCAL_ID_PREFIX = "temp-"


@dataclass
class TimelineMessage:
    id: str
    role: str
    content: str
    created_at: datetime = field(default_factory=datetime.utcnow)
    attachments: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_local(self) -> bool:
        return self.id.startswith(LOCAL_ID_PREFIX)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TimelineMessage":
        created = payload.get("created_at")
        if isinstance(created, str):
            created = datetime.fromisoformat(created.replace("Z", "+00:00"))
        return cls(
            id=str(payload["id"]),
            role=payload["role"],
            content=payload["content"],
            created_at=created or datetime.utcnow(),
            attachments=list(payload.get("attachments") or []),
        )


class MessageTimeline:
    """Ordered messages of one conversation as the user sees them.

    Local (optimistic) messages carry a ``temp-`` id and are the only ones
    ever mutated. A persisted message replaces the local one with the same
    role and content; persisted ids are never duplicated.
    """

    def __init__(self) -> None:
        self.messages: List[TimelineMessage] = []

    def __iter__(self):
        return iter(self.messages)

    def __len__(self) -> int:
        return len(self.messages)

    def add_local(
        self, role: str, content: str, attachments: Optional[List[Dict[str, Any]]] = None
    ) -> TimelineMessage:
        message = TimelineMessage(
            id=f"{LOCAL_ID_PREFIX}{uuid.uuid4()}",
            role=role,
            content=content,
            attachments=list(attachments or []),
        )
        self.messages.append(message)
        return message

    def append_delta(self, message_id: str, text: str) -> None:
        for message in self.messages:
            if message.id == message_id:
                if not message.is_local:
                    raise ValueError("persisted messages are immutable")
                message.content += text
                return

    def remove(self, message_id: str) -> bool:
        before = len(self.messages)
        self.messages = [m for m in self.messages if m.id != message_id]
        return len(self.messages) != before

    def apply_persisted(self, payload: Dict[str, Any]) -> TimelineMessage:
        persisted = TimelineMessage.from_payload(payload)
        for existing in self.messages:
            if existing.id == persisted.id:
                return existing
        for index, existing in enumerate(self.messages):
            if (
                existing.is_local
                and existing.role == persisted.role
                and existing.content == persisted.content
            ):
                self.messages[index] = persisted
                return persisted
        self.messages.append(persisted)
        return persisted

    def reconcile(self, payloads: List[Dict[str, Any]]) -> None:
        """Fold a freshly loaded message list into the timeline."""
        for payload in payloads:
            self.apply_persisted(payload)

    def local_messages(self) -> List[TimelineMessage]:
        return [m for m in self.messages if m.is_local]
