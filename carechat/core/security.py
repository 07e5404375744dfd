"""Bearer token verification.

Tokens are issued by the identity service; this module only checks them
and resolves the subject to a stored user.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from carechat.config import settings
from carechat.errors import AuthenticationError
from carechat.models.user import User


def create_access_token(subject: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode = {"exp": expire, "sub": subject}
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])


class IdentityVerifier:
    """Resolves a bearer token to a User."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def verify(self, token: Optional[str]) -> User:
        """
        Validate token and load its user.

        Raises:
            AuthenticationError: missing or invalid token, or unknown user
        """
        if not token:
            raise AuthenticationError("No token provided")

        try:
            payload = decode_token(token)
        except JWTError as e:
            raise AuthenticationError("Could not validate credentials") from e

        user_id = payload.get("sub")
        if not user_id:
            raise AuthenticationError("Could not validate credentials")

        try:
            with Session(self.engine, expire_on_commit=False) as session:
                user = session.get(User, str(user_id))
        except SQLAlchemyError as e:
            raise AuthenticationError("Could not load user") from e

        if user is None:
            raise AuthenticationError("User not found")
        return user
