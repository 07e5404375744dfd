"""FastAPI dependencies shared by HTTP routes and the socket gateway."""
from functools import lru_cache
from typing import Iterator

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session

from carechat import database
from carechat.core.security import IdentityVerifier
from carechat.errors import AuthenticationError
from carechat.models.user import User
from carechat.services.chat_service import ChatService
from carechat.services.conversation_store import ConversationStore

bearer_scheme = HTTPBearer(auto_error=False)


def get_db() -> Iterator[Session]:
    """Yield a database session for one request."""
    yield from database.get_session()


@lru_cache
def get_identity_verifier() -> IdentityVerifier:
    return IdentityVerifier(database.engine)


@lru_cache
def get_conversation_store() -> ConversationStore:
    return ConversationStore()


@lru_cache
def get_chat_service() -> ChatService:
    return ChatService(database.engine, store=get_conversation_store())


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    verifier: IdentityVerifier = Depends(get_identity_verifier),
) -> User:
    """Resolve the Authorization bearer token to a User or answer 401."""
    token = credentials.credentials if credentials else None
    try:
        return verifier.verify(token)
    except AuthenticationError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
