from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from assistant_relay.logging import get_logger
from assistant_relay.storage.errors import ConstraintViolation
from assistant_relay.storage.models import (
    SETTINGS_MUTABLE_FIELDS,
    AssistantSettings,
    Conversation,
    Message,
    UserAssistant,
)


class MemoryStore:
    """In-process store used for tests and single-node development.

    State is snapshotted to ``<fs_root>/state/memory_store.json`` after each
    mutation so a restarted dev server keeps its conversations.
    """

    def __init__(self, fs_root: str = "/tmp/assistant-relay") -> None:
        self.logger = get_logger(__name__)
        self.assistants: Dict[str, List[UserAssistant]] = {}
        self.settings: Dict[tuple[str, str], AssistantSettings] = {}
        self.conversations: Dict[str, Conversation] = {}
        self.messages: Dict[str, List[Message]] = {}
        # RLock so helpers can be called while a mutation holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def verify_connection(self) -> None:
        self._state_path()

    # assistants
    def list_user_assistants(self, user_id: str) -> List[UserAssistant]:
        with self._data_lock:
            return list(self.assistants.get(user_id, []))

    def get_active_assistant(self, user_id: str) -> Optional[UserAssistant]:
        with self._data_lock:
            for assistant in self.assistants.get(user_id, []):
                if assistant.is_active:
                    return assistant
        return None

    def add_user_assistant(
        self, user_id: str, assistant_id: str, name: str, *, is_active: bool = False
    ) -> UserAssistant:
        with self._data_lock:
            rows = self.assistants.setdefault(user_id, [])
            if any(row.assistant_id == assistant_id for row in rows):
                raise ConstraintViolation(
                    "assistant already assigned",
                    {"assistant_id": assistant_id},
                    constraint="user_assistant_unique",
                )
            if is_active:
                for row in rows:
                    row.is_active = False
            assistant = UserAssistant.new(user_id, assistant_id, name, is_active=is_active)
            rows.append(assistant)
            self._persist_state()
            return assistant

    def seed_user_assistants(
        self, user_id: str, catalogue: Iterable[Dict[str, str]]
    ) -> List[UserAssistant]:
        """Assign the catalogue to a user with no assistants; first entry active."""
        with self._data_lock:
            existing = self.assistants.get(user_id)
            if existing:
                return list(existing)
            rows = [
                UserAssistant.new(
                    user_id, entry["assistant_id"], entry["name"], is_active=index == 0
                )
                for index, entry in enumerate(catalogue)
            ]
            if rows:
                self.assistants[user_id] = rows
                self._persist_state()
            return list(rows)

    def activate_assistant(self, user_id: str, assistant_id: str) -> Optional[UserAssistant]:
        with self._data_lock:
            rows = self.assistants.get(user_id, [])
            target = next((row for row in rows if row.assistant_id == assistant_id), None)
            if target is None:
                return None
            for row in rows:
                row.is_active = row is target
            self._persist_state()
            return target

    # settings
    def get_assistant_settings(
        self, user_id: str, assistant_id: str
    ) -> Optional[AssistantSettings]:
        with self._data_lock:
            return self.settings.get((user_id, assistant_id))

    def ensure_assistant_settings(self, user_id: str, assistant_id: str) -> AssistantSettings:
        with self._data_lock:
            key = (user_id, assistant_id)
            current = self.settings.get(key)
            if current is None:
                current = AssistantSettings(user_id=user_id, assistant_id=assistant_id)
                self.settings[key] = current
                self._persist_state()
            return current

    def update_assistant_settings(
        self, user_id: str, assistant_id: str, **changes: Any
    ) -> AssistantSettings:
        with self._data_lock:
            current = self.ensure_assistant_settings(user_id, assistant_id)
            for key, value in changes.items():
                if key in SETTINGS_MUTABLE_FIELDS:
                    setattr(current, key, value)
            current.updated_at = datetime.utcnow()
            self._persist_state()
            return current

    # conversations
    def create_conversation(
        self,
        user_id: str,
        assistant_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Conversation:
        with self._data_lock:
            now = datetime.utcnow()
            conv = Conversation(
                id=str(uuid.uuid4()),
                user_id=user_id,
                created_at=now,
                updated_at=now,
                assistant_id=assistant_id,
                title=title,
            )
            self.conversations[conv.id] = conv
            self.messages[conv.id] = []
            self._persist_state()
            return conv

    def get_conversation(
        self,
        conversation_id: str,
        *,
        user_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> Optional[Conversation]:
        conv = self.conversations.get(conversation_id)
        if not conv:
            return None
        if user_id and conv.user_id != user_id:
            return None
        if conv.is_deleted and not include_deleted:
            return None
        return conv

    def list_conversations(self, user_id: str, limit: int = 50) -> List[Conversation]:
        with self._data_lock:
            convs = [
                c
                for c in self.conversations.values()
                if c.user_id == user_id and not c.is_deleted
            ]
        convs.sort(key=lambda c: c.last_message_at or c.updated_at, reverse=True)
        return convs[:limit]

    def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        with self._data_lock:
            conv = self._require_conversation(conversation_id)
            conv.title = title
            conv.updated_at = datetime.utcnow()
            self._persist_state()
            return conv

    def set_title_if_empty(self, conversation_id: str, title: str) -> bool:
        with self._data_lock:
            conv = self._require_conversation(conversation_id)
            if conv.title:
                return False
            conv.title = title
            conv.updated_at = datetime.utcnow()
            self._persist_state()
            return True

    def set_conversation_thread(self, conversation_id: str, thread_id: str) -> str:
        """Compare-and-set the thread id; returns whichever id the row ends up with."""
        with self._data_lock:
            conv = self._require_conversation(conversation_id)
            if conv.thread_id is None:
                conv.thread_id = thread_id
                conv.updated_at = datetime.utcnow()
                self._persist_state()
            return conv.thread_id

    def set_conversation_vector_store(self, conversation_id: str, vector_store_id: str) -> str:
        with self._data_lock:
            conv = self._require_conversation(conversation_id)
            if conv.vector_store_id is None:
                conv.vector_store_id = vector_store_id
                conv.updated_at = datetime.utcnow()
                self._persist_state()
            return conv.vector_store_id

    def soft_delete_conversation(self, conversation_id: str) -> bool:
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
            if conv is None or conv.is_deleted:
                return False
            conv.is_deleted = True
            conv.updated_at = datetime.utcnow()
            self._persist_state()
            return True

    def _require_conversation(self, conversation_id: str) -> Conversation:
        conv = self.conversations.get(conversation_id)
        if conv is None:
            raise ConstraintViolation(
                "conversation not found",
                {"conversation_id": conversation_id},
                constraint="conversation_missing",
            )
        return conv

    # messages
    def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        attachments: Optional[List[Dict]] = None,
        meta: Optional[Dict] = None,
    ) -> Message:
        with self._data_lock:
            conv = self._require_conversation(conversation_id)
            seq = len(self.messages.get(conversation_id, []))
            msg = Message(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                role=role,
                content=content,
                seq=seq,
                created_at=datetime.utcnow(),
                attachments=list(attachments or []),
                meta=meta,
            )
            self.messages.setdefault(conversation_id, []).append(msg)
            conv.updated_at = msg.created_at
            conv.last_message_at = msg.created_at
            self._persist_state()
            return msg

    def list_messages(
        self,
        conversation_id: str,
        limit: Optional[int] = None,
        *,
        user_id: Optional[str] = None,
    ) -> List[Message]:
        conv = self.get_conversation(conversation_id, user_id=user_id)
        if not conv:
            return []
        msgs = self.messages.get(conversation_id, [])
        if limit is None:
            return list(msgs)
        return msgs[-limit:]

    # persistence
    def _persist_state(self) -> None:
        state = {
            "assistants": [
                self._serialize_assistant(a)
                for rows in self.assistants.values()
                for a in rows
            ],
            "settings": [self._serialize_settings(s) for s in self.settings.values()],
            "conversations": [
                self._serialize_conversation(c) for c in self.conversations.values()
            ],
            "messages": [
                self._serialize_message(m)
                for msgs in self.messages.values()
                for m in msgs
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_store_snapshot_corrupt", path=str(path), error=str(exc))
            return False
        self.assistants = {}
        for raw in data.get("assistants", []):
            assistant = self._deserialize_assistant(raw)
            self.assistants.setdefault(assistant.user_id, []).append(assistant)
        self.settings = {}
        for raw in data.get("settings", []):
            settings = self._deserialize_settings(raw)
            self.settings[(settings.user_id, settings.assistant_id)] = settings
        self.conversations = {
            c["id"]: self._deserialize_conversation(c)
            for c in data.get("conversations", [])
        }
        self.messages = {conv_id: [] for conv_id in self.conversations}
        for raw in data.get("messages", []):
            msg = self._deserialize_message(raw)
            self.messages.setdefault(msg.conversation_id, []).append(msg)
        for convo_messages in self.messages.values():
            convo_messages.sort(key=lambda m: m.seq)
        return True

    def _serialize_assistant(self, assistant: UserAssistant) -> dict:
        return {
            "id": assistant.id,
            "user_id": assistant.user_id,
            "assistant_id": assistant.assistant_id,
            "name": assistant.name,
            "is_active": assistant.is_active,
            "created_at": self._serialize_datetime(assistant.created_at),
        }

    def _deserialize_assistant(self, data: dict) -> UserAssistant:
        return UserAssistant(
            id=data["id"],
            user_id=data["user_id"],
            assistant_id=data["assistant_id"],
            name=data["name"],
            is_active=bool(data.get("is_active")),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_settings(self, settings: AssistantSettings) -> dict:
        payload = {field: getattr(settings, field) for field in SETTINGS_MUTABLE_FIELDS}
        payload.update(
            user_id=settings.user_id,
            assistant_id=settings.assistant_id,
            created_at=self._serialize_datetime(settings.created_at),
            updated_at=self._serialize_datetime(settings.updated_at),
        )
        return payload

    def _deserialize_settings(self, data: dict) -> AssistantSettings:
        return AssistantSettings(
            user_id=data["user_id"],
            assistant_id=data["assistant_id"],
            enable_function_calling=data.get("enable_function_calling", True),
            enable_web_search=data.get("enable_web_search", False),
            model=data.get("model"),
            temperature=data.get("temperature"),
            max_tokens=data.get("max_tokens"),
            custom_instructions=data.get("custom_instructions"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_conversation(self, conversation: Conversation) -> dict:
        return {
            "id": conversation.id,
            "user_id": conversation.user_id,
            "assistant_id": conversation.assistant_id,
            "created_at": self._serialize_datetime(conversation.created_at),
            "updated_at": self._serialize_datetime(conversation.updated_at),
            "title": conversation.title,
            "thread_id": conversation.thread_id,
            "vector_store_id": conversation.vector_store_id,
            "last_message_at": self._serialize_datetime(conversation.last_message_at),
            "is_deleted": conversation.is_deleted,
        }

    def _deserialize_conversation(self, data: dict) -> Conversation:
        return Conversation(
            id=data["id"],
            user_id=data["user_id"],
            assistant_id=data.get("assistant_id"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
            title=data.get("title"),
            thread_id=data.get("thread_id"),
            vector_store_id=data.get("vector_store_id"),
            last_message_at=self._deserialize_datetime(data.get("last_message_at")),
            is_deleted=bool(data.get("is_deleted")),
        )

    def _serialize_message(self, message: Message) -> dict:
        return {
            "id": message.id,
            "conversation_id": message.conversation_id,
            "role": message.role,
            "content": message.content,
            "seq": message.seq,
            "created_at": self._serialize_datetime(message.created_at),
            "attachments": message.attachments,
            "meta": message.meta,
        }

    def _deserialize_message(self, data: dict) -> Message:
        return Message(
            id=data["id"],
            conversation_id=data["conversation_id"],
            role=data["role"],
            content=data["content"],
            seq=data.get("seq", 0),
            created_at=self._deserialize_datetime(data["created_at"]),
            attachments=data.get("attachments") or [],
            meta=data.get("meta"),
        )
