"""Conversation history routes.

Provides:
- GET /api/chat/conversations - List the user's conversations
- POST /api/chat/conversations - Start an empty conversation
- GET /api/chat/conversations/{id}/messages - Messages of one conversation
- DELETE /api/chat/conversations/{id} - Delete conversation and its messages
- GET /api/chat/messages - All of the user's messages (deprecated)

Conversations owned by someone else are reported exactly like unknown ones.
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field
from sqlmodel import Session

from carechat.core.deps import get_conversation_store, get_current_user, get_db
from carechat.errors import PersistenceError
from carechat.models.conversation import Conversation, Message, MessageRole
from carechat.models.user import User
from carechat.services.conversation_store import ConversationStore

router = APIRouter(prefix="/api/chat", tags=["chat"])


class ConversationCreate(BaseModel):
    """Request model for starting a conversation."""
    title: Optional[str] = Field(default=None, max_length=255)


class ConversationSummary(BaseModel):
    """Response model for conversation list."""
    id: str
    title: str
    created_at: datetime
    updated_at: datetime


class MessageResponse(BaseModel):
    """Response model for a single message."""
    id: str
    conversation_id: str
    role: MessageRole
    content: str
    created_at: datetime


def _summary(conversation: Conversation) -> ConversationSummary:
    return ConversationSummary(
        id=conversation.id,
        title=conversation.title,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
    )


def _message(message: Message) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        conversation_id=message.conversation_id,
        role=message.role,
        content=message.content,
        created_at=message.created_at,
    )


def _unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Chat history temporarily unavailable",
    )


@router.get("/conversations", response_model=list[ConversationSummary])
def list_conversations(
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_db),
    store: ConversationStore = Depends(get_conversation_store),
) -> list[ConversationSummary]:
    """List conversations for the authenticated user, most recent first."""
    try:
        conversations = store.list_conversations(session, current_user.id)
    except PersistenceError:
        raise _unavailable()
    return [_summary(conv) for conv in conversations]


@router.post(
    "/conversations",
    response_model=ConversationSummary,
    status_code=status.HTTP_201_CREATED,
)
def create_conversation(
    request: ConversationCreate,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_db),
    store: ConversationStore = Depends(get_conversation_store),
) -> ConversationSummary:
    """Start an empty conversation."""
    try:
        conversation = store.create_conversation(session, current_user.id, request.title)
    except PersistenceError:
        raise _unavailable()
    return _summary(conversation)


@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=list[MessageResponse],
)
def get_conversation_messages(
    conversation_id: str,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_db),
    store: ConversationStore = Depends(get_conversation_store),
) -> list[MessageResponse]:
    """
    Get messages of one conversation, oldest first.

    Returns an empty list for unknown conversations and for conversations
    owned by another user.
    """
    try:
        messages = store.get_messages(session, conversation_id, current_user.id)
    except PersistenceError:
        raise _unavailable()
    return [_message(msg) for msg in messages]


@router.delete("/conversations/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_conversation(
    conversation_id: str,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_db),
    store: ConversationStore = Depends(get_conversation_store),
) -> Response:
    """Delete conversation and all messages."""
    try:
        deleted = store.delete_conversation(session, conversation_id, current_user.id)
    except PersistenceError:
        raise _unavailable()

    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Conversation not found",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/messages", response_model=list[MessageResponse], deprecated=True)
def get_all_messages(
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_db),
    store: ConversationStore = Depends(get_conversation_store),
) -> list[MessageResponse]:
    """All messages of the user across conversations. Use the per-conversation route."""
    try:
        messages = store.get_all_messages(session, current_user.id)
    except PersistenceError:
        raise _unavailable()
    return [_message(msg) for msg in messages]
