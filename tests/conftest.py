"""Test fixtures for Taskiq, async runtime and a throwaway SQLite store."""

import os
import sys
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from pathlib import Path

os.environ["TASKIQ_TESTING"] = "1"

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import src.models  # noqa: F401
from src.config import Settings
from src.models.base import Base
from src.taskiq_app.broker import broker
from src.taskiq_app.dedup import _MEMORY_LOCKS

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


@pytest.fixture(scope="function", autouse=True)
async def init_taskiq() -> AsyncIterator[None]:
    """Initialize broker per test when using InMemoryBroker."""

    _MEMORY_LOCKS.clear()
    await broker.startup()
    yield
    await broker.shutdown()
    _MEMORY_LOCKS.clear()


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
async def session_factory(tmp_path: Path) -> AsyncIterator[SessionFactory]:
    """Session factory bound to a fresh SQLite database file."""

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'radar.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    maker = async_sessionmaker(engine, expire_on_commit=False)

    @asynccontextmanager
    async def factory() -> AsyncIterator[AsyncSession]:
        session = maker()
        try:
            yield session
        finally:
            await session.close()

    yield factory
    await engine.dispose()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        governor_start_delay_seconds=1.0,
        governor_min_delay_seconds=1.0,
        governor_max_delay_seconds=6.0,
        governor_step_seconds=1.0,
        crawl_retry_base_delay_seconds=0.5,
        crawl_page_size=2,
        crawl_max_pages_per_tile=5,
        crawl_trade_types=["sale"],
    )
