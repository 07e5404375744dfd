from .conversation import DEFAULT_CONVERSATION_TITLE, Conversation, Message, MessageRole
from .user import User

__all__ = [
    "DEFAULT_CONVERSATION_TITLE",
    "Conversation",
    "Message",
    "MessageRole",
    "User",
]
