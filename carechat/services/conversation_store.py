"""Conversation and message persistence.

Handles:
- Conversation creation and listing (per owner)
- Message storage, the only path that creates messages
- Ownership checks, which fail closed as "not found"
"""
from datetime import datetime, timedelta
from typing import Optional
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from carechat.errors import PersistenceError
from carechat.models.conversation import (
    DEFAULT_CONVERSATION_TITLE,
    Conversation,
    Message,
    MessageRole,
)
from carechat.models.timestamps import as_utc, utcnow

logger = logging.getLogger(__name__)

TITLE_PREFIX_LENGTH = 30


def derive_title(role: MessageRole, content: str) -> str:
    """Title for a conversation opened by a message of the given role."""
    if role == MessageRole.USER:
        return content[:TITLE_PREFIX_LENGTH] + "..."
    return DEFAULT_CONVERSATION_TITLE


class ConversationStore:
    """Service layer for conversation and message persistence."""

    def create_conversation(
        self,
        session: Session,
        owner_id: str,
        title: Optional[str] = None,
    ) -> Conversation:
        """
        Create a conversation owned by owner_id.

        Args:
            session: Database session
            owner_id: Authenticated user ID
            title: Optional title, "New Chat" when omitted

        Returns:
            Persisted Conversation instance
        """
        conversation = self._new_conversation(owner_id, title)
        try:
            session.add(conversation)
            session.commit()
            session.refresh(conversation)
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError("Could not create conversation") from e
        return conversation

    def list_conversations(self, session: Session, owner_id: str) -> list[Conversation]:
        """
        List conversations owned by owner_id, most recently active first.

        Returns:
            List of Conversation instances (empty if none)
        """
        statement = (
            select(Conversation)
            .where(Conversation.user_id == owner_id)
            .order_by(Conversation.updated_at.desc())
        )
        return list(self._exec(session, statement))

    def get_owned_conversation(
        self,
        session: Session,
        conversation_id: Optional[str],
        owner_id: str,
    ) -> Optional[Conversation]:
        """Return the conversation if it exists and belongs to owner_id."""
        if not conversation_id:
            return None

        statement = select(Conversation).where(
            Conversation.id == conversation_id,
            Conversation.user_id == owner_id,
        )
        return self._exec(session, statement).first()

    def get_messages(
        self,
        session: Session,
        conversation_id: str,
        requester_id: str,
    ) -> list[Message]:
        """
        Get all messages of a conversation in chronological order.

        Unknown conversations and conversations owned by someone else both
        yield an empty list, so callers cannot tell them apart.

        Args:
            session: Database session
            conversation_id: Conversation ID
            requester_id: User ID (for ownership verification)

        Returns:
            List of Message instances, oldest first
        """
        conversation = self.get_owned_conversation(session, conversation_id, requester_id)
        if conversation is None:
            return []

        statement = (
            select(Message)
            .where(Message.conversation_id == conversation.id)
            .order_by(Message.created_at)
        )
        return list(self._exec(session, statement))

    def get_all_messages(self, session: Session, owner_id: str) -> list[Message]:
        """Deprecated: every message of a user across conversations, oldest first."""
        statement = (
            select(Message)
            .where(Message.user_id == owner_id)
            .order_by(Message.created_at)
        )
        return list(self._exec(session, statement))

    def append_message(
        self,
        session: Session,
        role: MessageRole,
        content: str,
        owner_id: str,
        conversation_id: Optional[str] = None,
    ) -> Message:
        """
        Store a message, resolving or creating its conversation.

        Flow:
        1. Look up conversation_id among owner_id's conversations
        2. Found: refresh its updated_at
        3. Otherwise: create a new conversation, titled from content for
           user messages
        4. Insert the message

        Args:
            session: Database session
            role: Message role
            content: Message content
            owner_id: User ID of the message author
            conversation_id: Target conversation, or None for a new one

        Returns:
            Stored Message instance
        """
        role = MessageRole(role)
        try:
            conversation = self.get_owned_conversation(session, conversation_id, owner_id)
            now = utcnow()

            if conversation is None:
                if conversation_id:
                    logger.debug(
                        f"Conversation {conversation_id} not owned by user={owner_id}, starting a new one"
                    )
                conversation = self._new_conversation(owner_id, derive_title(role, content), now)
                session.add(conversation)
            else:
                now = self._next_timestamp(session, conversation.id, now)
                conversation.updated_at = now
                session.add(conversation)

            message = Message(
                conversation_id=conversation.id,
                user_id=owner_id,
                role=role,
                content=content,
                created_at=now,
            )
            session.add(message)
            session.commit()
            session.refresh(message)
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError("Could not store message") from e

        return message

    def delete_conversation(
        self,
        session: Session,
        conversation_id: str,
        owner_id: str,
    ) -> bool:
        """
        Delete an owned conversation together with its messages.

        Returns:
            True if deleted, False if not found or not owned
        """
        conversation = self.get_owned_conversation(session, conversation_id, owner_id)
        if conversation is None:
            return False

        try:
            session.delete(conversation)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError("Could not delete conversation") from e
        return True

    def _new_conversation(
        self,
        owner_id: str,
        title: Optional[str],
        now: Optional[datetime] = None,
    ) -> Conversation:
        now = now or utcnow()
        return Conversation(
            user_id=owner_id,
            title=title or DEFAULT_CONVERSATION_TITLE,
            created_at=now,
            updated_at=now,
        )

    def _next_timestamp(self, session: Session, conversation_id: str, now: datetime) -> datetime:
        """Keep created_at strictly increasing within a conversation."""
        statement = (
            select(Message.created_at)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.desc())
            .limit(1)
        )
        latest = as_utc(session.exec(statement).first())
        if latest is not None and latest >= now:
            return latest + timedelta(microseconds=1)
        return now

    def _exec(self, session: Session, statement):
        try:
            return session.exec(statement)
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError("Could not query conversations") from e
