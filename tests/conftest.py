"""Shared fixtures: in-memory database, seeded users, scripted completion bridge."""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session

from carechat.core import deps
from carechat.core.security import IdentityVerifier, create_access_token
from carechat.database import build_engine, init_db
from carechat.main import app
from carechat.models.user import User
from carechat.services.chat_service import ChatService
from carechat.services.context_cache import ContextCache
from carechat.services.conversation_store import ConversationStore
from tests.fixtures.chat_fixtures import FEVER_FRAGMENTS, FakeBridge


@pytest.fixture
def engine():
    """Fresh in-memory SQLite database per test"""
    test_engine = build_engine("sqlite://", poolclass=StaticPool)
    init_db(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine, expire_on_commit=False) as db_session:
        yield db_session


def _create_user(engine, email: str, name: str) -> User:
    with Session(engine, expire_on_commit=False) as db_session:
        user = User(email=email, name=name)
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user


@pytest.fixture
def alice(engine) -> User:
    return _create_user(engine, "alice@example.com", "Alice")


@pytest.fixture
def bob(engine) -> User:
    return _create_user(engine, "bob@example.com", "Bob")


@pytest.fixture
def store() -> ConversationStore:
    return ConversationStore()


@pytest.fixture
def cache() -> ContextCache:
    return ContextCache()


@pytest.fixture
def bridge() -> FakeBridge:
    return FakeBridge(FEVER_FRAGMENTS)


@pytest.fixture
def chat_service(engine, bridge, store, cache) -> ChatService:
    return ChatService(engine, bridge=bridge, store=store, cache=cache)


@pytest.fixture
def client(engine, store, chat_service):
    """TestClient wired to the in-memory database and scripted bridge"""
    def _get_db():
        with Session(engine) as db_session:
            yield db_session

    app.dependency_overrides[deps.get_db] = _get_db
    app.dependency_overrides[deps.get_conversation_store] = lambda: store
    app.dependency_overrides[deps.get_chat_service] = lambda: chat_service
    app.dependency_overrides[deps.get_identity_verifier] = lambda: IdentityVerifier(engine)

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def alice_token(alice) -> str:
    return create_access_token(alice.id)


@pytest.fixture
def bob_token(bob) -> str:
    return create_access_token(bob.id)
