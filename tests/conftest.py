"""Test configuration and fixtures.

This file contains fixtures used across all tests.
Database fixtures run against a throwaway SQLite file per test, so neither
PostgreSQL nor Redis is needed.
"""

import os
from collections.abc import AsyncGenerator

import pytest

# Settings are read at import time, so these must be set before any src import
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("GITHUB_TOKEN", "test-token")


def pytest_configure(config):
    """Register integration test marker."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test requiring database"
    )


@pytest.fixture(scope="function")
def mock_settings(monkeypatch):
    """Mock settings for unit tests that don't need real configuration."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")
    monkeypatch.setenv("GITHUB_TOKEN", "test-token")


@pytest.fixture(scope="function")
def make_settings():
    """Build explicit Settings without touching the module-level instance."""
    from src.core.config import Settings

    def factory(**overrides):
        values = {
            "database_url": "sqlite+aiosqlite:///:memory:",
            "redis_url": "redis://localhost:6379/0",
            "github_token": "test-token",
        }
        values.update(overrides)
        return Settings(**values)

    return factory


@pytest.fixture(scope="function")
async def session_maker(tmp_path) -> AsyncGenerator:
    """Session maker bound to a fresh database with every table created."""
    from src.db.database import create_session_maker, create_tables

    maker = create_session_maker(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    engine = maker.kw["bind"]
    await create_tables(engine)

    yield maker

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator:
    """Create a fresh database session for each integration test."""
    async with session_maker() as session:
        yield session


@pytest.fixture(scope="function")
def dispatched() -> list[tuple[str, int]]:
    """Runs handed to the worker by the API, in dispatch order."""
    return []


@pytest.fixture(scope="function")
async def client(db_session, dispatched) -> AsyncGenerator:
    """Create a test client with overridden database and dispatch dependencies."""
    from httpx import ASGITransport, AsyncClient
    from sqlalchemy.ext.asyncio import AsyncSession

    from src.api.app import create_app
    from src.api.routes.pipelines import get_dispatcher
    from src.db import get_db

    app = create_app()

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    def override_get_dispatcher():
        def dispatch(pipeline_type: str, run_id: int, parameters: dict | None = None) -> None:
            dispatched.append((pipeline_type, run_id))

        return dispatch

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = override_get_dispatcher

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
