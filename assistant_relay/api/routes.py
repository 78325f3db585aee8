from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, File, Header, Query, Response, UploadFile
from fastapi.responses import StreamingResponse

from assistant_relay.api.schemas import (
    AssistantListResponse,
    AssistantResponse,
    AssistantSettingsResponse,
    AssistantSettingsUpdate,
    ChatRequestBody,
    ConversationListResponse,
    ConversationMessagesResponse,
    ConversationResponse,
    CreateConversationRequest,
    Envelope,
    FileLimitsResponse,
    FileUploadResponse,
    MessageResponse,
    RelayRequestBody,
    UpdateConversationRequest,
)
from assistant_relay.config import ALLOWED_MIME_TYPES
from assistant_relay.content_types import (
    SNIFF_PREFIX_BYTES,
    is_allowed_mime,
    normalize_mime,
    object_path,
    sniff_matches,
)
from assistant_relay.logging import bind_user, get_logger
from assistant_relay.service.attachments import FileDescriptor
from assistant_relay.service.auth import AuthContext
from assistant_relay.service.chat import ChatRequest
from assistant_relay.service.errors import NotFoundError, ValidationFailed
from assistant_relay.service.relay import RelayRequest
from assistant_relay.service.runtime import get_runtime
from assistant_relay.storage.models import AssistantSettings, Conversation, UserAssistant

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_MAX_PAGE_SIZE = 200


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    principal = await runtime.auth.require(authorization)
    bind_user(principal.user_id)
    return principal


async def _enforce_read_limit(runtime, principal: AuthContext, response: Response) -> None:
    await runtime.rate_limiter.enforce(
        principal.user_id,
        "read",
        limit=runtime.settings.read_rate_limit_per_minute,
        window_seconds=60,
        response=response,
    )


async def _enforce_write_limit(runtime, principal: AuthContext, response: Response) -> None:
    await runtime.rate_limiter.enforce(
        principal.user_id,
        "write",
        limit=runtime.settings.write_rate_limit_per_minute,
        window_seconds=60,
        response=response,
    )


def _get_owned_conversation(runtime, conversation_id: str, principal: AuthContext) -> Conversation:
    conversation = runtime.store.get_conversation(conversation_id, user_id=principal.user_id)
    if not conversation:
        raise NotFoundError(
            "conversation not found", detail={"conversation_id": conversation_id}
        )
    return conversation


def _assistant_payload(assistant: UserAssistant) -> AssistantResponse:
    return AssistantResponse(
        id=assistant.id,
        assistant_id=assistant.assistant_id,
        name=assistant.name,
        is_active=assistant.is_active,
        created_at=assistant.created_at,
    )


def _settings_payload(settings: AssistantSettings) -> AssistantSettingsResponse:
    return AssistantSettingsResponse(
        assistant_id=settings.assistant_id,
        enable_function_calling=settings.enable_function_calling,
        enable_web_search=settings.enable_web_search,
        model=settings.model,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
        custom_instructions=settings.custom_instructions,
        updated_at=settings.updated_at,
    )


def _conversation_payload(conversation: Conversation) -> ConversationResponse:
    return ConversationResponse(
        id=conversation.id,
        assistant_id=conversation.assistant_id,
        title=conversation.title,
        thread_id=conversation.thread_id,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
        last_message_at=conversation.last_message_at,
    )


@router.post("/assistant-relay", tags=["relay"])
async def assistant_relay(
    body: RelayRequestBody,
    principal: AuthContext = Depends(get_user),
):
    """Relay one user message to the active assistant and stream the run back."""
    runtime = get_runtime()
    request = RelayRequest(
        message=body.message,
        thread_id=body.thread_id,
        conversation_id=str(body.conversation_id) if body.conversation_id else None,
        files=[
            FileDescriptor(name=f.name, url=f.url, type=f.type, size=f.size)
            for f in body.files or []
        ],
    )
    result = await runtime.relay.relay(principal, request)
    return StreamingResponse(
        result.body,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Thread-Id": result.thread_id,
        },
    )


@router.post("/chat", tags=["chat"])
async def chat_completion(
    body: ChatRequestBody,
    principal: AuthContext = Depends(get_user),
):
    """Stream a chat completion for a client-held message history."""
    runtime = get_runtime()
    request = ChatRequest(
        messages=[{"role": m.role, "content": m.content} for m in body.messages],
        conversation_id=str(body.conversation_id),
        model=body.model,
    )
    stream = await runtime.chat.stream(principal, request)
    return StreamingResponse(
        stream,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.get("/assistants", response_model=Envelope, tags=["assistants"])
async def list_assistants(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await _enforce_read_limit(runtime, principal, response)
    assistants = runtime.resolver.list_assistants(principal.user_id)
    return Envelope(
        status="ok",
        data=AssistantListResponse(items=[_assistant_payload(a) for a in assistants]),
    )


@router.post("/assistants/{assistant_id}/activate", response_model=Envelope, tags=["assistants"])
async def activate_assistant(
    assistant_id: str, response: Response, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await _enforce_write_limit(runtime, principal, response)
    activated = runtime.resolver.activate(principal.user_id, assistant_id)
    return Envelope(status="ok", data=_assistant_payload(activated))


@router.get(
    "/assistants/{assistant_id}/settings", response_model=Envelope, tags=["assistants"]
)
async def get_assistant_settings(
    assistant_id: str, response: Response, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await _enforce_read_limit(runtime, principal, response)
    settings = runtime.resolver.get_settings(principal.user_id, assistant_id)
    return Envelope(status="ok", data=_settings_payload(settings))


@router.patch(
    "/assistants/{assistant_id}/settings", response_model=Envelope, tags=["assistants"]
)
async def update_assistant_settings(
    assistant_id: str,
    body: AssistantSettingsUpdate,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_write_limit(runtime, principal, response)
    changes = body.model_dump(exclude_unset=True)
    for flag in ("enable_function_calling", "enable_web_search"):
        if flag in changes and changes[flag] is None:
            raise ValidationFailed(f"{flag} cannot be null")
    settings = runtime.resolver.update_settings(principal.user_id, assistant_id, changes)
    logger.info(
        "assistant_settings_updated",
        user_id=principal.user_id,
        assistant_id=assistant_id,
        fields=sorted(changes),
    )
    return Envelope(status="ok", data=_settings_payload(settings))


@router.post(
    "/conversations", response_model=Envelope, status_code=201, tags=["conversations"]
)
async def create_conversation(
    body: CreateConversationRequest,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_write_limit(runtime, principal, response)
    active = runtime.store.get_active_assistant(principal.user_id)
    conversation = runtime.store.create_conversation(
        principal.user_id,
        assistant_id=active.assistant_id if active else None,
        title=body.title,
    )
    return Envelope(status="ok", data=_conversation_payload(conversation))


@router.get("/conversations", response_model=Envelope, tags=["conversations"])
async def list_conversations(
    response: Response,
    limit: int = Query(50, ge=1, le=_MAX_PAGE_SIZE),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_read_limit(runtime, principal, response)
    conversations = runtime.store.list_conversations(principal.user_id, limit=limit)
    return Envelope(
        status="ok",
        data=ConversationListResponse(items=[_conversation_payload(c) for c in conversations]),
    )


@router.get("/conversations/{conversation_id}", response_model=Envelope, tags=["conversations"])
async def get_conversation(
    conversation_id: str, response: Response, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await _enforce_read_limit(runtime, principal, response)
    conversation = _get_owned_conversation(runtime, conversation_id, principal)
    return Envelope(status="ok", data=_conversation_payload(conversation))


@router.patch("/conversations/{conversation_id}", response_model=Envelope, tags=["conversations"])
async def rename_conversation(
    conversation_id: str,
    body: UpdateConversationRequest,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_write_limit(runtime, principal, response)
    _get_owned_conversation(runtime, conversation_id, principal)
    conversation = runtime.store.rename_conversation(conversation_id, body.title.strip())
    return Envelope(status="ok", data=_conversation_payload(conversation))


@router.delete("/conversations/{conversation_id}", response_model=Envelope, tags=["conversations"])
async def delete_conversation(
    conversation_id: str, response: Response, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await _enforce_write_limit(runtime, principal, response)
    _get_owned_conversation(runtime, conversation_id, principal)
    runtime.store.soft_delete_conversation(conversation_id)
    logger.info(
        "conversation_deleted", user_id=principal.user_id, conversation_id=conversation_id
    )
    return Envelope(status="ok", data={"id": conversation_id, "deleted": True})


@router.get(
    "/conversations/{conversation_id}/messages", response_model=Envelope, tags=["conversations"]
)
async def list_messages(
    conversation_id: str,
    response: Response,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_read_limit(runtime, principal, response)
    _get_owned_conversation(runtime, conversation_id, principal)
    msgs = runtime.store.list_messages(conversation_id, limit=limit, user_id=principal.user_id)
    return Envelope(
        status="ok",
        data=ConversationMessagesResponse(
            conversation_id=conversation_id,
            messages=[
                MessageResponse(
                    id=m.id,
                    role=m.role,
                    content=m.content,
                    seq=m.seq,
                    attachments=m.attachments,
                    created_at=m.created_at,
                )
                for m in msgs
            ],
        ),
    )


@router.post("/files", response_model=Envelope, status_code=201, tags=["files"])
async def upload_file(
    response: Response,
    file: UploadFile = File(...),
    principal: AuthContext = Depends(get_user),
):
    """Store a blob under the caller's prefix for a later relay request."""
    runtime = get_runtime()
    await _enforce_write_limit(runtime, principal, response)
    mime = normalize_mime(file.content_type)
    if not is_allowed_mime(mime):
        raise ValidationFailed("file type not allowed", detail={"type": mime})
    max_bytes = max(1, runtime.settings.max_upload_bytes)
    contents = await file.read(max_bytes + 1)
    if len(contents) > max_bytes:
        raise ValidationFailed("file too large", detail={"max_bytes": max_bytes})
    if not sniff_matches(contents[:SNIFF_PREFIX_BYTES], mime):
        raise ValidationFailed("invalid file", detail={"type": mime})
    name = file.filename or "file"
    path = object_path(principal.user_id, name)
    await runtime.object_store.put(principal.user_id, path, contents)
    logger.info(
        "file_uploaded", user_id=principal.user_id, file_type=mime, file_size=len(contents)
    )
    return Envelope(
        status="ok",
        data=FileUploadResponse(name=name, url=path, type=mime, size=len(contents)),
    )


@router.get("/files/limits", response_model=Envelope, tags=["files"])
async def file_limits(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=FileLimitsResponse(
            max_upload_bytes=runtime.settings.max_upload_bytes,
            max_files_per_message=runtime.settings.max_files_per_message,
            allowed_types=sorted(ALLOWED_MIME_TYPES),
        ),
    )
