"""Test fixtures — create/drop tables around each async test."""

import os
from collections.abc import AsyncGenerator

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Force SQLite test database *before* any churnpilot import
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_churnpilot.db"
os.environ["BULK_BATCH_DELAY_SECONDS"] = "0"

from churnpilot.database import Base, async_session, engine  # noqa: E402
from churnpilot.main import app  # noqa: E402
import churnpilot.models  # noqa: E402,F401


@pytest_asyncio.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # Each test runs in its own event loop; don't carry pooled connections over
    await engine.dispose()


@pytest_asyncio.fixture
async def db():
    async with async_session() as session:
        yield session


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
