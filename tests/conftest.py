"""Test fixtures for the Tenant Domain Service test suite."""

import os
import tempfile
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Point TEST_DATABASE_URL at PostgreSQL to exercise advisory locks and JSONB;
# otherwise a throwaway SQLite file is used.
TEST_DATABASE_URL = os.environ.get(
    "TEST_DATABASE_URL",
    "sqlite+aiosqlite:///" + os.path.join(tempfile.gettempdir(), "tenant_domains_test.db"),
)

# Set test environment variables BEFORE importing app modules
os.environ.update({
    "DATABASE_URL": TEST_DATABASE_URL,
    "AWS_ACCESS_KEY_ID": "test-key-id",
    "AWS_SECRET_ACCESS_KEY": "test-secret-key",
    "AWS_REGION": "us-east-1",
    "VERIFICATION_FROM_EMAIL": "verify@platform.example.com",
    "APP_BASE_URL": "http://localhost:8000",
    "VERIFICATION_SECRET": "test-secret-key-for-jwt-minimum-32bytes!",
    "ENVIRONMENT": "test",
    "LOG_LEVEL": "WARNING",
})

import app.models  # noqa: E402, F401
from app.database import Base, get_session  # noqa: E402
from app.main import create_app  # noqa: E402

# Track whether tables have been set up this session
_tables_created = False


def _make_engine():
    return create_async_engine(TEST_DATABASE_URL, echo=False)


@pytest.fixture(autouse=True)
async def _ensure_tables():
    """Create tables once per session, on the current event loop."""
    global _tables_created
    if not _tables_created:
        engine = _make_engine()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        await engine.dispose()
        _tables_created = True


@pytest.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    """Provide a transactional database session that rolls back after each test."""
    engine = _make_engine()
    factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )
    async with factory() as session:
        yield session
        await session.rollback()
    await engine.dispose()


@pytest.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory for tests that run independent, committing sessions concurrently."""
    engine = _make_engine()
    factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )
    yield factory
    await engine.dispose()


@pytest.fixture
def mock_ses_client():
    """Mock the SES client to avoid real AWS calls."""
    mock = AsyncMock()
    mock.send_email.return_value = "test-ses-message-id-123"
    with patch("app.services.tenant_domain_service.ses_client", mock):
        yield mock


@pytest.fixture
async def client(db: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client with database session override."""
    app = create_app()

    async def override_get_session():
        yield db

    app.dependency_overrides[get_session] = override_get_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
