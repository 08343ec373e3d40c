"""pytest fixtures for UniGen tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- postgres_container: Session-scoped testcontainer PostgreSQL instance with migrations applied
- postgres_session_factory: Session factory on the container, tables emptied after each test
- session_factory: Function-scoped async session factory on a fresh SQLite file
- session: Function-scoped database session
- uow_factory: Function-scoped UnitOfWork factory
- make_provider: Persists a Provider row with sensible defaults
- no_sleep: Sleep replacement that records requested delays
"""

import os
import subprocess
import sys
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from docker.errors import DockerException
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import SQLModel
from testcontainers.postgres import PostgresContainer

from unigen import models  # noqa: F401  (registers tables)
from unigen.core.database import create_engine, setup_db_session
from unigen.models.provider import GenerationType, Provider
from unigen.uow import create_uow_factory


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests.

    Autouse fixture ensures TZ=UTC is set before any test runs.
    """
    os.environ["TZ"] = "UTC"
    yield


@pytest.fixture(scope="session")
def postgres_container():
    """Provide session-scoped PostgreSQL container with migrations applied.

    Container starts once per test session and is reused by every module that
    runs against PostgreSQL. Migrations run in a subprocess to avoid asyncio
    event loop conflicts with alembic's env.py.
    """
    container = PostgresContainer(
        image="postgres:17",
        username="test",
        password="test",
        dbname="test_unigen",
    ).with_bind_ports(5432, None)
    try:
        container.start()
    except DockerException as exc:
        pytest.skip(f"Docker is not available: {exc}")

    try:
        db_url = container.get_connection_url(driver="psycopg")

        # alembic env.py reads DATABASE_URL through Settings
        env = os.environ.copy()
        env["DATABASE_URL"] = db_url
        subprocess.run(
            [sys.executable, "-m", "alembic", "upgrade", "head"],
            check=True,
            capture_output=True,
            text=True,
            env=env,
            cwd=Path(__file__).resolve().parent.parent,
        )

        yield container
    finally:
        container.stop()


@pytest_asyncio.fixture(scope="function")
async def postgres_session_factory(
    postgres_container,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory on the migrated container; tables are emptied after each test."""
    db_url = postgres_container.get_connection_url(driver="psycopg")
    factory = setup_db_session(db_url, pool_size=5)

    yield factory

    # Children first because of the provider_id foreign key
    async with factory() as session:
        await session.execute(text("DELETE FROM generation_requests"))
        await session.execute(text("DELETE FROM providers"))
        await session.commit()
    await factory.kw["bind"].dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory bound to a per-test SQLite database with all tables created."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'unigen.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


@pytest_asyncio.fixture
async def make_provider(uow_factory):
    """Factory fixture: await make_provider(model_identifier=..., adapter_name=...)."""

    async def _make(**overrides) -> Provider:
        values = {
            "name": "Flux Pro",
            "model_identifier": "flux-pro",
            "adapter_name": "flux",
            "generation_type": GenerationType.IMAGE,
            "api_endpoint": "https://flux.test",
            "auth_key": "test-key",
        }
        values.update(overrides)
        provider = Provider(**values)
        async with await uow_factory() as uow:
            await uow.providers.add(provider)
        return provider

    return _make


class SleepRecorder:
    """Async sleep stand-in; records delays instead of waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def no_sleep() -> SleepRecorder:
    return SleepRecorder()
