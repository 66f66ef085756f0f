"""
Conversations API endpoints.

Sending a user message persists it and hands generation to the stream
coordinator; the reply arrives on the conversation's stream (SSE or
WebSocket), not in the POST response.
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query, Request, WebSocket
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from mcpchat.api.deps import get_current_user, http_error
from mcpchat.errors import StreamingError
from mcpchat.services.database import MESSAGE_ROLES
from mcpchat.services.store import ConversationData, MessageData, StoreError, store
from mcpchat.services.streaming import SSE_HEADERS, GenerationRequest, coordinator, transport

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/conversations", tags=["conversations"])


class ConversationResponse(BaseModel):
    """Conversation response."""

    id: int
    user_id: int
    title: str
    ai_connection_id: Optional[int] = None
    message_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MessageResponse(BaseModel):
    """Message response."""

    id: int
    conversation_id: int
    role: str
    content: str
    metadata: Optional[dict] = None
    created_at: Optional[datetime] = None


class ConversationWithHistory(BaseModel):
    """Conversation with message history."""

    conversation: ConversationResponse
    messages: list[MessageResponse]


class CreateConversationRequest(BaseModel):
    title: Optional[str] = None
    ai_connection_id: Optional[int] = None


class SendMessageRequest(BaseModel):
    content: str
    role: str = "user"
    ai_connection_id: Optional[int] = None
    model: Optional[str] = None
    stream: bool = True


class SendMessageResponse(BaseModel):
    success: bool
    message: MessageResponse
    streaming: bool


def _conversation_response(conversation: ConversationData) -> ConversationResponse:
    return ConversationResponse(
        id=conversation.id,
        user_id=conversation.user_id,
        title=conversation.title,
        ai_connection_id=conversation.ai_connection_id,
        message_count=conversation.message_count,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
    )


def _message_response(message: MessageData) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        conversation_id=message.conversation_id,
        role=message.role,
        content=message.content,
        metadata=message.metadata or None,
        created_at=message.created_at,
    )


def _store_failure(e: StoreError) -> HTTPException:
    return HTTPException(status_code=e.status_code or 500, detail=e.message)


async def _owned_conversation(conversation_id: int, user: dict) -> ConversationData:
    try:
        conversation = await store.get_conversation(conversation_id, user_id=user["id"])
    except StoreError as e:
        raise _store_failure(e)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


@router.get("", response_model=list[ConversationResponse])
async def list_conversations(
    limit: int = Query(20, ge=1, le=100),
    user: dict = Depends(get_current_user),
) -> list[ConversationResponse]:
    """Most recent conversations of the caller, with message counts."""
    try:
        conversations = await store.list_conversations(user["id"], limit=limit)
    except StoreError as e:
        raise _store_failure(e)
    return [_conversation_response(c) for c in conversations]


@router.post("", response_model=ConversationResponse, status_code=201)
async def create_conversation(
    body: CreateConversationRequest,
    user: dict = Depends(get_current_user),
) -> ConversationResponse:
    try:
        conversation = await store.create_conversation(
            user["id"],
            title=body.title,
            ai_connection_id=body.ai_connection_id,
        )
    except StoreError as e:
        raise _store_failure(e)
    logger.info("Created conversation %s for user %s", conversation.id, user["id"])
    return _conversation_response(conversation)


@router.get("/{conversation_id}", response_model=ConversationWithHistory)
async def get_conversation_with_history(
    conversation_id: int,
    user: dict = Depends(get_current_user),
) -> ConversationWithHistory:
    """Get conversation with message history."""
    conversation = await _owned_conversation(conversation_id, user)
    try:
        messages = await store.list_messages(conversation_id)
    except StoreError as e:
        raise _store_failure(e)

    conversation.message_count = len(messages)
    return ConversationWithHistory(
        conversation=_conversation_response(conversation),
        messages=[_message_response(m) for m in messages],
    )


@router.get("/{conversation_id}/messages", response_model=list[MessageResponse])
async def list_messages(
    conversation_id: int,
    user: dict = Depends(get_current_user),
) -> list[MessageResponse]:
    await _owned_conversation(conversation_id, user)
    try:
        messages = await store.list_messages(conversation_id)
    except StoreError as e:
        raise _store_failure(e)
    return [_message_response(m) for m in messages]


@router.post("/{conversation_id}/messages", response_model=SendMessageResponse, status_code=201)
async def send_message(
    conversation_id: int,
    body: SendMessageRequest,
    user: dict = Depends(get_current_user),
) -> SendMessageResponse:
    """
    Store a message and, for user messages, start generating the reply.

    Returns as soon as the message is stored. "streaming" tells the client
    whether to expect events on the conversation stream.
    """
    if not body.content.strip():
        raise HTTPException(status_code=400, detail="Message content cannot be empty")
    if body.role not in MESSAGE_ROLES:
        raise HTTPException(status_code=400, detail=f"Invalid message role: {body.role}")

    await _owned_conversation(conversation_id, user)
    try:
        message = await store.add_message(conversation_id, body.role, body.content)
        await store.touch_conversation(conversation_id)
    except StoreError as e:
        raise _store_failure(e)

    if body.role != "user":
        return SendMessageResponse(success=True, message=_message_response(message), streaming=False)

    request = GenerationRequest(
        conversation_id=conversation_id,
        user_message_id=message.id,
        ai_connection_id=body.ai_connection_id,
        model=body.model,
    )

    coordinator.submit(request)
    return SendMessageResponse(success=True, message=_message_response(message), streaming=body.stream)


@router.delete("/{conversation_id}")
async def delete_conversation(
    conversation_id: int,
    user: dict = Depends(get_current_user),
) -> dict:
    try:
        deleted = await store.delete_conversation(conversation_id, user["id"])
    except StoreError as e:
        raise _store_failure(e)
    if not deleted:
        raise HTTPException(status_code=404, detail="Conversation not found")
    logger.info("Deleted conversation %s", conversation_id)
    return {"success": True}


# ==================== Live stream ====================


@router.get("/{conversation_id}/stream")
async def stream_conversation(
    conversation_id: int,
    request: Request,
    token: Optional[str] = Query(None),
    authorization: Optional[str] = Header(None),
) -> StreamingResponse:
    """
    Server-sent events for a conversation.

    Events: connected, chunk, complete, error. The token may be passed as
    a query parameter since EventSource cannot set headers.
    """
    try:
        await transport.authorize(conversation_id, authorization=authorization, token=token)
    except StreamingError as e:
        raise http_error(e)

    subscription = transport.subscribe(conversation_id)
    # Runs after the body ends or the client disconnects
    cleanup = BackgroundTasks()
    cleanup.add_task(subscription.close)
    return StreamingResponse(
        subscription.sse(request.is_disconnected),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
        background=cleanup,
    )


@router.websocket("/{conversation_id}/ws")
async def websocket_conversation(
    websocket: WebSocket,
    conversation_id: int,
    token: Optional[str] = Query(None),
):
    """
    WebSocket alternative to the SSE stream.

    Outgoing messages are the same JSON events as the SSE stream. A failed
    check closes the socket with 4401 (unauthenticated) or 4404 (not found).
    """
    await websocket.accept()
    try:
        await transport.authorize(
            conversation_id,
            authorization=websocket.headers.get("authorization"),
            token=token,
        )
    except StreamingError as e:
        await websocket.close(code=4000 + (e.status_code or 500), reason=e.message)
        return

    subscription = transport.subscribe(conversation_id)
    await subscription.pump_websocket(websocket)
