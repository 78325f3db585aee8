from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from assistant_relay.logging import get_logger
from assistant_relay.storage.errors import ConstraintViolation
from assistant_relay.storage.models import (
    SETTINGS_MUTABLE_FIELDS,
    AssistantSettings,
    Conversation,
    Message,
    UserAssistant,
)

REQUIRED_TABLES = (
    "user_assistant",
    "assistant_settings",
    "conversation",
    "message",
)


class PostgresStore:
    """Relay persistence backed by Postgres (psycopg3 connection pool)."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        """Fail fast when the relay tables are missing."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # assistants
    @staticmethod
    def _assistant_from_row(row: Dict[str, Any]) -> UserAssistant:
        return UserAssistant(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            assistant_id=row["assistant_id"],
            name=row["name"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
        )

    def list_user_assistants(self, user_id: str) -> List[UserAssistant]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_assistant WHERE user_id = %s ORDER BY created_at, name",
                (user_id,),
            ).fetchall()
        return [self._assistant_from_row(row) for row in rows]

    def get_active_assistant(self, user_id: str) -> Optional[UserAssistant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_assistant WHERE user_id = %s AND is_active LIMIT 1",
                (user_id,),
            ).fetchone()
        return self._assistant_from_row(row) if row else None

    def add_user_assistant(
        self, user_id: str, assistant_id: str, name: str, *, is_active: bool = False
    ) -> UserAssistant:
        assistant = UserAssistant.new(user_id, assistant_id, name, is_active=is_active)
        try:
            with self._connect() as conn:
                with conn.transaction():
                    if is_active:
                        conn.execute(
                            "UPDATE user_assistant SET is_active = FALSE WHERE user_id = %s",
                            (user_id,),
                        )
                    conn.execute(
                        "INSERT INTO user_assistant (id, user_id, assistant_id, name, is_active, created_at) VALUES (%s, %s, %s, %s, %s, %s)",
                        (
                            assistant.id,
                            user_id,
                            assistant_id,
                            name,
                            is_active,
                            assistant.created_at,
                        ),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "assistant already assigned",
                {"assistant_id": assistant_id},
                constraint="user_assistant_unique",
            )
        return assistant

    def seed_user_assistants(
        self, user_id: str, catalogue: Iterable[Dict[str, str]]
    ) -> List[UserAssistant]:
        entries = list(catalogue)
        with self._connect() as conn:
            with conn.transaction():
                # serialise concurrent first logins for the same user
                conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext(%s))", (f"seed:{user_id}",)
                )
                existing = conn.execute(
                    "SELECT 1 FROM user_assistant WHERE user_id = %s LIMIT 1", (user_id,)
                ).fetchone()
                if not existing:
                    now = datetime.utcnow()
                    for index, entry in enumerate(entries):
                        conn.execute(
                            "INSERT INTO user_assistant (id, user_id, assistant_id, name, is_active, created_at) VALUES (%s, %s, %s, %s, %s, %s) ON CONFLICT (user_id, assistant_id) DO NOTHING",
                            (
                                str(uuid.uuid4()),
                                user_id,
                                entry["assistant_id"],
                                entry["name"],
                                index == 0,
                                now,
                            ),
                        )
        return self.list_user_assistants(user_id)

    def activate_assistant(self, user_id: str, assistant_id: str) -> Optional[UserAssistant]:
        with self._connect() as conn:
            with conn.transaction():
                target = conn.execute(
                    "SELECT * FROM user_assistant WHERE user_id = %s AND assistant_id = %s FOR UPDATE",
                    (user_id, assistant_id),
                ).fetchone()
                if not target:
                    return None
                conn.execute(
                    "UPDATE user_assistant SET is_active = FALSE WHERE user_id = %s AND is_active",
                    (user_id,),
                )
                row = conn.execute(
                    "UPDATE user_assistant SET is_active = TRUE WHERE id = %s RETURNING *",
                    (target["id"],),
                ).fetchone()
        return self._assistant_from_row(row)

    # settings
    @staticmethod
    def _settings_from_row(row: Dict[str, Any]) -> AssistantSettings:
        temperature = row.get("temperature")
        return AssistantSettings(
            user_id=str(row["user_id"]),
            assistant_id=row["assistant_id"],
            enable_function_calling=bool(row["enable_function_calling"]),
            enable_web_search=bool(row["enable_web_search"]),
            model=row.get("model"),
            temperature=float(temperature) if temperature is not None else None,
            max_tokens=row.get("max_tokens"),
            custom_instructions=row.get("custom_instructions"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def get_assistant_settings(
        self, user_id: str, assistant_id: str
    ) -> Optional[AssistantSettings]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM assistant_settings WHERE user_id = %s AND assistant_id = %s",
                (user_id, assistant_id),
            ).fetchone()
        return self._settings_from_row(row) if row else None

    def ensure_assistant_settings(self, user_id: str, assistant_id: str) -> AssistantSettings:
        now = datetime.utcnow()
        with self._connect() as conn:
            # the unique key makes concurrent lazy creation a no-op
            conn.execute(
                "INSERT INTO assistant_settings (user_id, assistant_id, created_at, updated_at) VALUES (%s, %s, %s, %s) ON CONFLICT (user_id, assistant_id) DO NOTHING",
                (user_id, assistant_id, now, now),
            )
            row = conn.execute(
                "SELECT * FROM assistant_settings WHERE user_id = %s AND assistant_id = %s",
                (user_id, assistant_id),
            ).fetchone()
        return self._settings_from_row(row)

    def update_assistant_settings(
        self, user_id: str, assistant_id: str, **changes: Any
    ) -> AssistantSettings:
        self.ensure_assistant_settings(user_id, assistant_id)
        updates = {k: v for k, v in changes.items() if k in SETTINGS_MUTABLE_FIELDS}
        if not updates:
            return self.ensure_assistant_settings(user_id, assistant_id)
        # column names come from SETTINGS_MUTABLE_FIELDS, never from the caller
        assignments = ", ".join(f"{column} = %s" for column in updates)
        params = [*updates.values(), datetime.utcnow(), user_id, assistant_id]
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE assistant_settings SET {assignments}, updated_at = %s WHERE user_id = %s AND assistant_id = %s RETURNING *",
                params,
            ).fetchone()
        return self._settings_from_row(row)

    # conversations
    @staticmethod
    def _conversation_from_row(row: Dict[str, Any]) -> Conversation:
        return Conversation(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            assistant_id=row.get("assistant_id"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            title=row.get("title"),
            thread_id=row.get("thread_id"),
            vector_store_id=row.get("vector_store_id"),
            last_message_at=row.get("last_message_at"),
            is_deleted=bool(row.get("is_deleted")),
        )

    def create_conversation(
        self,
        user_id: str,
        assistant_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Conversation:
        conv_id = str(uuid.uuid4())
        now = datetime.utcnow()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO conversation (id, user_id, assistant_id, title, created_at, updated_at) VALUES (%s, %s, %s, %s, %s, %s)",
                (conv_id, user_id, assistant_id, title, now, now),
            )
        return Conversation(
            id=conv_id,
            user_id=user_id,
            assistant_id=assistant_id,
            title=title,
            created_at=now,
            updated_at=now,
        )

    def get_conversation(
        self,
        conversation_id: str,
        *,
        user_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> Optional[Conversation]:
        query = "SELECT * FROM conversation WHERE id = %s"
        params: list[Any] = [conversation_id]
        if user_id:
            query += " AND user_id = %s"
            params.append(user_id)
        if not include_deleted:
            query += " AND NOT is_deleted"
        try:
            with self._connect() as conn:
                row = conn.execute(query, params).fetchone()
        except errors.InvalidTextRepresentation:
            # malformed uuid from the client
            return None
        return self._conversation_from_row(row) if row else None

    def list_conversations(self, user_id: str, limit: int = 50) -> List[Conversation]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM conversation WHERE user_id = %s AND NOT is_deleted ORDER BY COALESCE(last_message_at, updated_at) DESC LIMIT %s",
                (user_id, limit),
            ).fetchall()
        return [self._conversation_from_row(row) for row in rows]

    def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE conversation SET title = %s, updated_at = %s WHERE id = %s RETURNING *",
                (title, datetime.utcnow(), conversation_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation(
                "conversation not found",
                {"conversation_id": conversation_id},
                constraint="conversation_missing",
            )
        return self._conversation_from_row(row)

    def set_title_if_empty(self, conversation_id: str, title: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE conversation SET title = %s, updated_at = %s WHERE id = %s AND (title IS NULL OR title = '') RETURNING id",
                (title, datetime.utcnow(), conversation_id),
            ).fetchone()
        return bool(row)

    def _compare_and_set(self, column: str, conversation_id: str, value: str) -> str:
        with self._connect() as conn:
            conn.execute(
                f"UPDATE conversation SET {column} = %s, updated_at = %s WHERE id = %s AND {column} IS NULL",
                (value, datetime.utcnow(), conversation_id),
            )
            row = conn.execute(
                f"SELECT {column} AS value FROM conversation WHERE id = %s",
                (conversation_id,),
            ).fetchone()
        if not row:
            raise ConstraintViolation(
                "conversation not found",
                {"conversation_id": conversation_id},
                constraint="conversation_missing",
            )
        return row["value"]

    def set_conversation_thread(self, conversation_id: str, thread_id: str) -> str:
        return self._compare_and_set("thread_id", conversation_id, thread_id)

    def set_conversation_vector_store(self, conversation_id: str, vector_store_id: str) -> str:
        return self._compare_and_set("vector_store_id", conversation_id, vector_store_id)

    def soft_delete_conversation(self, conversation_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE conversation SET is_deleted = TRUE, updated_at = %s WHERE id = %s AND NOT is_deleted RETURNING id",
                (datetime.utcnow(), conversation_id),
            ).fetchone()
        return bool(row)

    # messages
    def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        attachments: Optional[List[Dict]] = None,
        meta: Optional[Dict] = None,
    ) -> Message:
        attachments = list(attachments or [])
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        "SELECT 1 FROM conversation WHERE id = %s FOR UPDATE",
                        (conversation_id,),
                    )
                    seq_row = conn.execute(
                        "SELECT COUNT(*) AS c FROM message WHERE conversation_id = %s",
                        (conversation_id,),
                    ).fetchone()
                    seq = seq_row["c"] if seq_row else 0
                    msg_id = str(uuid.uuid4())
                    now = datetime.utcnow()
                    conn.execute(
                        "INSERT INTO message (id, conversation_id, role, content, seq, created_at, attachments, meta) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)",
                        (
                            msg_id,
                            conversation_id,
                            role,
                            content,
                            seq,
                            now,
                            json.dumps(attachments),
                            json.dumps(meta) if meta else None,
                        ),
                    )
                    conn.execute(
                        "UPDATE conversation SET updated_at = %s, last_message_at = %s WHERE id = %s",
                        (now, now, conversation_id),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "conversation not found",
                {"conversation_id": conversation_id},
                constraint="conversation_missing",
            )
        return Message(
            id=msg_id,
            conversation_id=conversation_id,
            role=role,
            content=content,
            seq=seq,
            created_at=now,
            attachments=attachments,
            meta=meta,
        )

    def list_messages(
        self,
        conversation_id: str,
        limit: Optional[int] = None,
        *,
        user_id: Optional[str] = None,
    ) -> List[Message]:
        if user_id and not self.get_conversation(conversation_id, user_id=user_id):
            return []
        query = "SELECT * FROM message WHERE conversation_id = %s ORDER BY seq"
        params: list[Any] = [conversation_id]
        if limit is not None:
            query = (
                "SELECT * FROM (SELECT * FROM message WHERE conversation_id = %s "
                "ORDER BY seq DESC LIMIT %s) recent ORDER BY seq"
            )
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        messages = []
        for row in rows:
            attachments = row.get("attachments") or []
            if isinstance(attachments, str):
                attachments = json.loads(attachments)
            meta = row.get("meta")
            if isinstance(meta, str):
                meta = json.loads(meta)
            messages.append(
                Message(
                    id=str(row["id"]),
                    conversation_id=str(row["conversation_id"]),
                    role=row["role"],
                    content=row["content"],
                    seq=row["seq"],
                    created_at=row["created_at"],
                    attachments=attachments,
                    meta=meta,
                )
            )
        return messages
