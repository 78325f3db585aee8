from __future__ import annotations

from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from assistant_relay.config import get_settings
from assistant_relay.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "authentication_required",
    "rate_limit_exceeded",
    "validation_failed",
    "assistant_not_configured",
    "service_not_configured",
    "thread_create_failed",
    "message_send_failed",
    "run_start_failed",
    "chat_completion_failed",
    "internal_error",
    "not_found",
    "conflict",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class FileRef(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    url: str = Field(..., min_length=1, max_length=1024, description="Object-store path")
    type: str = Field(..., min_length=1, max_length=100)
    size: int = Field(..., ge=0)


class RelayRequestBody(BaseModel):
    """Body of ``POST /v1/assistant-relay``. Field names follow the web client."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    message: str = Field(..., min_length=1)
    thread_id: Optional[str] = Field(None, alias="threadId", max_length=128)
    conversation_id: Optional[UUID] = Field(None, alias="conversationId")
    files: Optional[List[FileRef]] = None

    @field_validator("message")
    @classmethod
    def _validate_message(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message must not be blank")
        limit = get_settings().max_message_chars
        if len(value) > limit:
            raise ValueError(f"message must be at most {limit} characters")
        return value

    @field_validator("files")
    @classmethod
    def _validate_files(cls, value: Optional[List[FileRef]]) -> Optional[List[FileRef]]:
        if value is None:
            return value
        limit = get_settings().max_files_per_message
        if len(value) > limit:
            raise ValueError(f"max {limit} files per message")
        return value


class ChatMessageIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: Literal["user", "assistant", "system"]
    content: str = Field(..., min_length=1)

    @field_validator("content")
    @classmethod
    def _validate_content(cls, value: str) -> str:
        limit = get_settings().max_message_chars
        if len(value) > limit:
            raise ValueError(f"message must be at most {limit} characters")
        return value


class ChatRequestBody(BaseModel):
    """Body of ``POST /v1/chat``: the full history, oldest first."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    messages: List[ChatMessageIn]
    conversation_id: UUID = Field(..., alias="conversationId")
    model: Optional[str] = None

    @field_validator("messages")
    @classmethod
    def _validate_history(cls, value: List[ChatMessageIn]) -> List[ChatMessageIn]:
        if not value:
            raise ValueError("at least one message required")
        limit = get_settings().chat_max_history_messages
        if len(value) > limit:
            raise ValueError(f"at most {limit} messages per request")
        return value

    @field_validator("model")
    @classmethod
    def _validate_model(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        allowed = get_settings().chat_models
        if value not in allowed:
            raise ValueError(f"model must be one of: {', '.join(allowed)}")
        return value


class AssistantResponse(BaseModel):
    id: str
    assistant_id: str
    name: str
    is_active: bool
    created_at: datetime


class AssistantListResponse(BaseModel):
    items: List[AssistantResponse]


class AssistantSettingsResponse(BaseModel):
    assistant_id: str
    enable_function_calling: bool
    enable_web_search: bool
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    custom_instructions: Optional[str] = None
    updated_at: datetime


class AssistantSettingsUpdate(BaseModel):
    """Partial update; only fields present in the body are changed."""

    model_config = ConfigDict(extra="forbid")

    enable_function_calling: Optional[bool] = None
    enable_web_search: Optional[bool] = None
    model: Optional[str] = Field(None, max_length=100)
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(None, ge=1, le=128000)
    custom_instructions: Optional[str] = Field(None, max_length=4000)


class CreateConversationRequest(BaseModel):
    title: Optional[str] = Field(None, max_length=200)


class UpdateConversationRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)


class ConversationResponse(BaseModel):
    id: str
    assistant_id: Optional[str] = None
    title: Optional[str] = None
    thread_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    last_message_at: Optional[datetime] = None


class ConversationListResponse(BaseModel):
    items: List[ConversationResponse]


class AttachmentMeta(BaseModel):
    file_name: str
    file_size: int
    file_type: str


class MessageResponse(BaseModel):
    id: str
    role: str
    content: str
    seq: int
    attachments: List[AttachmentMeta] = Field(default_factory=list)
    created_at: datetime


class ConversationMessagesResponse(BaseModel):
    conversation_id: str
    messages: List[MessageResponse]


class FileUploadResponse(BaseModel):
    name: str
    url: str
    type: str
    size: int


class FileLimitsResponse(BaseModel):
    max_upload_bytes: int
    max_files_per_message: int
    allowed_types: List[str]
