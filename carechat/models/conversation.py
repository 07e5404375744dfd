"""Conversation and Message SQLModel definitions.

Models:
- Conversation: chat thread owned by exactly one user
- Message: append-only entry in a conversation
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from sqlmodel import Field, Relationship, SQLModel

from carechat.models.timestamps import UTCDateTime, utcnow

DEFAULT_CONVERSATION_TITLE = "New Chat"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Conversation(SQLModel, table=True):
    """
    Conversation entity.

    Ownership: user_id is set at creation and never reassigned.
    All queries MUST filter by user_id.
    """
    __tablename__ = "conversations"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True, nullable=False)
    title: str = Field(default=DEFAULT_CONVERSATION_TITLE, max_length=255)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, index=True)

    messages: List["Message"] = Relationship(
        back_populates="conversation",
        sa_relationship_kwargs={
            "cascade": "all, delete-orphan",
            "order_by": "Message.created_at",
        },
    )


class Message(SQLModel, table=True):
    """
    Message entity.

    Denormalized user_id so the legacy per-user query needs no join.
    Never updated after insert.
    """
    __tablename__ = "messages"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    conversation_id: str = Field(
        foreign_key="conversations.id", index=True, nullable=False, ondelete="CASCADE"
    )
    user_id: str = Field(foreign_key="users.id", index=True, nullable=False)
    role: MessageRole = Field(nullable=False)
    content: str = Field()
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, index=True)

    conversation: Optional[Conversation] = Relationship(back_populates="messages")
