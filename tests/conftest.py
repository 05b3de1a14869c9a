"""Test configuration and fixtures."""

import os

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment variables BEFORE importing the app
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["ENCRYPTION_SECRETS"] = '{"encryption-key": "old-rotation-secret", "encryption-key-v2": "new-rotation-secret"}'
os.environ["WEBHOOK_AUTH_ID"] = "test-auth-id"

from assist_adoption.config import Settings
from assist_adoption.models.base import Base
from assist_adoption.security.encryption import DeterministicEncryptionService
from assist_adoption.services.pause_state import PauseState
from assist_adoption.storage.sql import SqlTableStore

TEST_ASYNC_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

OLD_SECRET = "old-rotation-secret"
NEW_SECRET = "new-rotation-secret"


@pytest.fixture
def settings():
    """Settings with explicit values and no throttling delays."""
    return Settings(
        database_url=TEST_ASYNC_DATABASE_URL,
        encryption_key_secret_name="encryption-key",
        encryption_secrets={
            "encryption-key": OLD_SECRET,
            "encryption-key-v2": NEW_SECRET,
        },
        reminder_days=14,
        week_start="monday",
        rotation_batch_delay_seconds=0,
        rotation_page_delay_seconds=0,
        webhook_auth_id="test-auth-id",
    )


@pytest.fixture
async def session_factory():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_ASYNC_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return SqlTableStore(session_factory)


@pytest.fixture
def pause_state(store):
    return PauseState(store)


@pytest.fixture
def old_encryption():
    return DeterministicEncryptionService.from_secret(OLD_SECRET)


@pytest.fixture
def new_encryption():
    return DeterministicEncryptionService.from_secret(NEW_SECRET)


@pytest.fixture
def client():
    """Test client running the full application lifespan on a fresh in-memory database."""
    from fastapi.testclient import TestClient

    from assist_adoption.config import get_settings
    from assist_adoption.main import create_app

    get_settings.cache_clear()
    with TestClient(create_app()) as test_client:
        yield test_client
    get_settings.cache_clear()
