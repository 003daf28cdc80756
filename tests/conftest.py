import os

os.environ["SECRET_KEY"] = "test-secret-key-with-enough-length-123"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JOB_WORKER_ENABLED"] = "false"
os.environ["LOG_JSON"] = "false"

import pytest
from typing import AsyncGenerator
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

import app.models  # noqa: F401
from app.auth.security import get_password_hash
from app.config import ChatConfig, get_chat_config, settings
from app.database import Base, get_db
from app.jobs.queue import JobContext
from app.main import app
from app.models.enums import Role
from app.models.service_request import ServiceRequest
from app.models.user import User
from app.services.storage_service import ChatStorageService, LocalDiskStorage, get_chat_storage

PASSWORD = "password123"


@pytest.fixture(scope="function")
async def db_engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def chat_config() -> ChatConfig:
    return ChatConfig(enabled=True, redact_messages=True, signed_url_ttl=900)


@pytest.fixture
def local_storage(tmp_path) -> LocalDiskStorage:
    return LocalDiskStorage(base_dir=str(tmp_path / "media"), public_base_url="http://test")


@pytest.fixture
def chat_storage(local_storage) -> ChatStorageService:
    return ChatStorageService(local_storage, allowed_image_mime=["image/jpeg", "image/png"])


@pytest.fixture
def job_context(chat_storage, chat_config) -> JobContext:
    return JobContext(storage=chat_storage, config_provider=lambda: chat_config)


@pytest.fixture(scope="function")
async def client(db_session, chat_storage, chat_config) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_chat_storage] = lambda: chat_storage
    app.dependency_overrides[get_chat_config] = lambda: chat_config
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db_session):
    async def _make_user(email: str, role: Role = Role.USER, password: str = PASSWORD, is_active: bool = True) -> User:
        user = User(
            email=email,
            hashed_password=get_password_hash(password),
            full_name=email.split("@")[0].title(),
            role=role,
            is_active=is_active,
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture
def make_request(db_session):
    async def _make_request(owner: User) -> ServiceRequest:
        service_request = ServiceRequest(user_id=owner.id)
        db_session.add(service_request)
        await db_session.commit()
        await db_session.refresh(service_request)
        return service_request

    return _make_request


@pytest.fixture
def login(client):
    async def _login(email: str, password: str = PASSWORD) -> dict[str, str]:
        response = await client.post(
            f"{settings.API_V1_STR}/auth/login",
            json={"email": email, "password": password},
        )
        assert response.status_code == 200
        token = response.json()["data"]["access_token"]
        return {"Authorization": f"Bearer {token}"}

    return _login


@pytest.fixture
async def admin_token_headers(make_user, login):
    await make_user("admin@test.com", role=Role.ADMIN)
    return await login("admin@test.com")
