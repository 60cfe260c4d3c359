import os
import tempfile
from pathlib import Path
from typing import Any, AsyncGenerator, Generator

# Settings are read at import time, so the environment is prepared first
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="messenger-tests-"))
os.environ.setdefault("SECRET", "test-secret")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_ROOT / 'app.db'}"
os.environ["RUN_MIGRATIONS"] = "false"
os.environ["MEDIA_ROOT"] = str(_TEST_ROOT / "media")

import pytest  # noqa: E402
from asyncstdlib import anext  # noqa: E402
from fastapi import Depends, FastAPI  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from fastapi_users.db import SQLAlchemyUserDatabase  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool  # noqa: E402

from messenger import db  # noqa: E402
from messenger.auth_config import get_user_manager  # noqa: E402
from messenger.db import get_db_session, get_user_db  # noqa: E402
from messenger.main import app  # noqa: E402
from messenger.models import User, metadata  # noqa: E402
from messenger.realtime.gateway import RealtimeGateway  # noqa: E402
from messenger.repositories.conversation_repository import (  # noqa: E402
    ConversationRepository,
)
from messenger.repositories.message_repository import MessageRepository  # noqa: E402
from messenger.repositories.notification_repository import (  # noqa: E402
    NotificationRepository,
)
from messenger.repositories.post_repository import PostRepository  # noqa: E402
from messenger.repositories.user_repository import UserRepository  # noqa: E402
from messenger.schemas.user import UserCreate  # noqa: E402
from messenger.services.media_store import LocalMediaStore  # noqa: E402
from messenger.services.messaging_service import MessagingService  # noqa: E402
from messenger.services.notification_service import (  # noqa: E402
    NotificationDispatcher,
    NotificationService,
)

TEST_USER_EMAIL = "testuser@example.com"
TEST_USER_PASSWORD = "password123"


def _create_tables(database_path: Path) -> None:
    # Created synchronously so the file is ready for any event loop
    engine = create_engine(f"sqlite:///{database_path}")
    metadata.create_all(engine)
    engine.dispose()


# Every test gets its own SQLite file. NullPool keeps connections from
# outliving the event loop that opened them (TestClient runs its own loop).
@pytest.fixture(scope="function")
def database_path(tmp_path: Path) -> Path:
    path = tmp_path / "test.db"
    _create_tables(path)
    return path


@pytest.fixture(scope="function")
def test_engine(database_path: Path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{database_path}", poolclass=NullPool
    )
    yield engine
    engine.sync_engine.dispose()


@pytest.fixture(scope="function")
def db_test_session_manager(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(scope="function")
async def db_session(
    db_test_session_manager: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with db_test_session_manager() as session:
        yield session


@pytest.fixture(scope="function")
def override_get_db_session(db_test_session_manager: async_sessionmaker[AsyncSession]):
    async def _override_get_db_session() -> AsyncGenerator[AsyncSession, None]:
        async with db_test_session_manager() as session:
            yield session

    return _override_get_db_session


# Override for the FastAPI Users DB adapter dependency.
# FastAPI resolves get_db_session to its override here.
async def override_get_user_db(
    session: AsyncSession = Depends(get_db_session),
) -> SQLAlchemyUserDatabase[User, Any]:
    yield SQLAlchemyUserDatabase(session, User)


@pytest.fixture(scope="function")
def gateway() -> RealtimeGateway:
    gateway = RealtimeGateway()
    gateway.init()
    return gateway


@pytest.fixture(scope="function")
def media_store(tmp_path: Path) -> LocalMediaStore:
    return LocalMediaStore(tmp_path / "media", "/media")


@pytest.fixture(scope="function")
async def notification_dispatcher(
    override_get_db_session, gateway: RealtimeGateway
) -> AsyncGenerator[NotificationDispatcher, None]:
    dispatcher = NotificationDispatcher(override_get_db_session, gateway=gateway)
    yield dispatcher
    await dispatcher.shutdown()


@pytest.fixture(scope="function")
def messaging_service(
    db_session: AsyncSession,
    gateway: RealtimeGateway,
    media_store: LocalMediaStore,
    notification_dispatcher: NotificationDispatcher,
) -> MessagingService:
    return MessagingService(
        ConversationRepository(db_session),
        MessageRepository(db_session),
        UserRepository(db_session),
        gateway=gateway,
        media_store=media_store,
        notifier=notification_dispatcher,
    )


@pytest.fixture(scope="function")
def notification_service(
    db_session: AsyncSession,
    gateway: RealtimeGateway,
    notification_dispatcher: NotificationDispatcher,
) -> NotificationService:
    return NotificationService(
        NotificationRepository(db_session),
        PostRepository(db_session),
        gateway=gateway,
        recent_pushes=notification_dispatcher.recent_pushes,
    )


# Fixture for the FastAPI app with overridden dependencies
@pytest.fixture(scope="function")
def test_app(
    override_get_db_session,
    gateway: RealtimeGateway,
    notification_dispatcher: NotificationDispatcher,
    media_store: LocalMediaStore,
) -> FastAPI:
    app.dependency_overrides[get_db_session] = override_get_db_session
    app.dependency_overrides[get_user_db] = override_get_user_db

    # ASGITransport does not run the lifespan, so its collaborators are set here
    app.state.gateway = gateway
    app.state.notification_dispatcher = notification_dispatcher
    app.state.media_store = media_store

    yield app

    app.dependency_overrides.clear()
    for name in ("gateway", "notification_dispatcher", "media_store"):
        if hasattr(app.state, name):
            delattr(app.state, name)


# Fixture for the async test client
@pytest.fixture(scope="function")
async def test_client(test_app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=test_app), base_url="http://test"
    ) as client:
        yield client


# Fixture for a started app (lifespan included) driven through TestClient,
# needed for websocket tests
@pytest.fixture(scope="function")
def live_client(
    override_get_db_session, test_engine, monkeypatch
) -> Generator[TestClient, None, None]:
    # The startup health check inspects the test database
    monkeypatch.setattr(db, "engine", test_engine)
    app.dependency_overrides[get_db_session] = override_get_db_session
    app.dependency_overrides[get_user_db] = override_get_user_db

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    for name in ("gateway", "notification_dispatcher", "media_store"):
        if hasattr(app.state, name):
            delattr(app.state, name)


async def register_test_user(
    session_maker: async_sessionmaker[AsyncSession], user_data: UserCreate
) -> User:
    """Creates a user through the user manager so the password is hashed."""
    async with session_maker() as session:
        user_manager_gen = get_user_manager(SQLAlchemyUserDatabase(session, User))
        user_manager = await anext(user_manager_gen)
        try:
            user = await user_manager.create(user_data)
            await session.commit()
            await session.refresh(user)
            return user
        finally:
            await user_manager_gen.aclose()


# Fixture to provide an authenticated client
@pytest.fixture(scope="function")
async def authenticated_client(
    test_client: AsyncClient,
    db_test_session_manager: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncClient, None]:
    user_data = UserCreate(
        email=TEST_USER_EMAIL,
        password=TEST_USER_PASSWORD,
        username="testuser",
        display_name="Test User",
    )
    await register_test_user(db_test_session_manager, user_data)

    # fastapi-users uses the email as username for login
    res = await test_client.post(
        "/auth/jwt/login",
        data={"username": user_data.email, "password": user_data.password},
    )
    assert res.status_code == 204, res.text
    cookie = res.headers["Set-Cookie"]
    access_token = cookie.split(";")[0].split("=", 1)[1]

    test_client.headers["Cookie"] = f"fastapiusersauth={access_token}"
    yield test_client
    del test_client.headers["Cookie"]


# Fixture to provide the User object corresponding to the authenticated client
@pytest.fixture(scope="function")
async def logged_in_user(
    authenticated_client: AsyncClient,
    db_test_session_manager: async_sessionmaker[AsyncSession],
) -> User:
    async with db_test_session_manager() as session:
        user = await UserRepository(session).get_user_by_email(TEST_USER_EMAIL)
        if not user:
            pytest.fail(f"Test user '{TEST_USER_EMAIL}' not found in DB")
        return user
