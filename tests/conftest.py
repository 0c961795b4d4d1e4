from __future__ import annotations

import os
from collections.abc import AsyncIterator, Iterator
from pathlib import Path

import pytest
from alembic.config import Config
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from alembic import command
from reelwatch.db import models  # noqa: F401
from reelwatch.db.base import metadata
from reelwatch.services.store.sql import SqlVideoStore
from reelwatch.settings import settings
from tests.fakes import InMemoryVideoStore, RecordingTransport

RESET_SQL = text("TRUNCATE TABLE delivery_attempts, subscriptions, videos RESTART IDENTITY CASCADE")


def _resolve_test_database_url() -> str | None:
    return (os.getenv("TEST_DATABASE_URL") or "").strip() or None


def pytest_runtest_setup(item: pytest.Item) -> None:
    if "integration" in item.keywords and not _resolve_test_database_url():
        pytest.skip("TEST_DATABASE_URL is required for integration tests")


@pytest.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'reelwatch.db'}")
    async with engine.begin() as connection:
        await connection.run_sync(metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def sql_store(sqlite_engine: AsyncEngine) -> SqlVideoStore:
    return SqlVideoStore(async_sessionmaker(sqlite_engine, expire_on_commit=False))


@pytest.fixture(scope="session")
def migrated_postgres() -> Iterator[str]:
    database_url = _resolve_test_database_url()
    if not database_url:
        pytest.skip("TEST_DATABASE_URL is required for integration tests")
    config = Config("alembic.ini")
    config.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(config, "head")
    yield database_url


@pytest.fixture
async def postgres_store(migrated_postgres: str) -> AsyncIterator[SqlVideoStore]:
    engine = create_async_engine(migrated_postgres, pool_pre_ping=True)
    async with engine.begin() as connection:
        await connection.execute(RESET_SQL)
    yield SqlVideoStore(async_sessionmaker(engine, expire_on_commit=False))
    await engine.dispose()


@pytest.fixture
def memory_store() -> InMemoryVideoStore:
    return InMemoryVideoStore()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def restore_settings() -> Iterator[None]:
    snapshot = dict(settings.__dict__)
    yield
    for key, value in snapshot.items():
        object.__setattr__(settings, key, value)

