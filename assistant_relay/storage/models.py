from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional


@dataclass
class UserAssistant:
    """An upstream assistant made available to one user."""

    id: str
    user_id: str
    assistant_id: str
    name: str
    is_active: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def new(
        cls, user_id: str, assistant_id: str, name: str, *, is_active: bool = False
    ) -> "UserAssistant":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            assistant_id=assistant_id,
            name=name,
            is_active=is_active,
        )


# Fields a caller may change through the settings endpoint.
SETTINGS_MUTABLE_FIELDS = (
    "enable_function_calling",
    "enable_web_search",
    "model",
    "temperature",
    "max_tokens",
    "custom_instructions",
)


@dataclass
class AssistantSettings:
    user_id: str
    assistant_id: str
    enable_function_calling: bool = True
    enable_web_search: bool = False
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    custom_instructions: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def run_overrides(self) -> Dict:
        """Optional run parameters, present only when configured."""
        overrides: Dict = {}
        if self.model:
            overrides["model"] = self.model
        if self.temperature is not None:
            overrides["temperature"] = self.temperature
        if self.max_tokens is not None:
            overrides["max_completion_tokens"] = self.max_tokens
        if self.custom_instructions:
            overrides["additional_instructions"] = self.custom_instructions
        return overrides


@dataclass
class Conversation:
    id: str
    user_id: str
    created_at: datetime
    updated_at: datetime
    assistant_id: Optional[str] = None
    title: Optional[str] = None
    thread_id: Optional[str] = None
    vector_store_id: Optional[str] = None
    last_message_at: Optional[datetime] = None
    is_deleted: bool = False


@dataclass
class Message:
    id: str
    conversation_id: str
    role: str
    content: str
    seq: int
    created_at: datetime
    attachments: List[Dict] = field(default_factory=list)
    meta: Dict | None = None


@dataclass
class Attachment:
    """A file staged for a single relay request; never persisted as a row."""

    name: str
    path: str
    mime_type: str
    size: int
    file_id: Optional[str] = None
    tools: List[str] = field(default_factory=list)

    @property
    def is_image(self) -> bool:
        return "image" in self.tools

    def metadata(self) -> Dict:
        return {"file_name": self.name, "file_size": self.size, "file_type": self.mime_type}
