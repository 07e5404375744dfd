"""Database engine and session helpers."""
import logging
from typing import Iterator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from carechat.config import settings

logger = logging.getLogger(__name__)


def build_engine(url: str, echo: bool = False, **kwargs) -> Engine:
    """Create an engine; SQLite connections get foreign keys switched on."""
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        # Store calls run in the thread pool
        connect_args.setdefault("check_same_thread", False)
        kwargs["connect_args"] = connect_args

    new_engine = create_engine(url, echo=echo, **kwargs)

    if url.startswith("sqlite"):
        @event.listens_for(new_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return new_engine


engine = build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)


def init_db(target: Engine = None) -> None:
    """Create all tables registered on SQLModel metadata."""
    from carechat.models.user import User  # noqa: F401
    from carechat.models.conversation import Conversation, Message  # noqa: F401

    SQLModel.metadata.create_all(target or engine)
    logger.info("Database tables ensured")


def get_session() -> Iterator[Session]:
    """Yield a session bound to the global engine."""
    with Session(engine) as session:
        yield session
