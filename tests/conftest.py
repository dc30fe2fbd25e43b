"""
Pytest configuration and fixtures for script tracker tests.

Provides:
- Async test database with SQLite
- Run record store, lock manager and harness wired to it
- Factory fixtures for creating run records and script files
"""

import sys
import textwrap
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from loguru import logger
from sqlalchemy import StaticPool
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from script_tracker.config import Settings
from script_tracker.core.datetime_utils import utc_now
from script_tracker.models import Base, ExecutedScript, ScriptStatus
from script_tracker.services.harness import ScriptHarness
from script_tracker.services.locking import create_lock_manager
from script_tracker.services.run_store import RunRecordStore

# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(autouse=True)
def reset_loguru():
    """Restore the default loguru sink after tests that reconfigure logging."""
    yield
    logger.remove()
    logger.add(sys.stderr)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing at a temporary scripts directory."""
    scripts_path = tmp_path / "scripts"
    scripts_path.mkdir()
    return Settings(
        _env_file=None,
        database_url=TEST_DATABASE_URL,
        scripts_path=scripts_path,
        default_timeout_seconds=300,
    )


@pytest_asyncio.fixture
async def db_engine():
    """Create async test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def store(session_factory) -> RunRecordStore:
    return RunRecordStore(session_factory)


@pytest.fixture
def lock_manager(db_engine, session_factory):
    # SQLite resolves to the uniqueness strategy
    return create_lock_manager(db_engine, session_factory)


@pytest.fixture
def harness(session_factory, store, lock_manager) -> ScriptHarness:
    return ScriptHarness(session_factory, store, lock_manager, default_timeout=300)


# ============================================================================
# Factory Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def record_factory(session_factory):
    """Factory for inserting run records directly."""

    async def _create_record(
        identifier: str,
        status: ScriptStatus = ScriptStatus.RUNNING,
        started_at: datetime | None = None,
        started_ago: timedelta | None = None,
        timeout_seconds: float | None = None,
        output: str | None = None,
    ) -> ExecutedScript:
        if started_at is None:
            started_at = utc_now() - (started_ago or timedelta(0))

        record = ExecutedScript(
            identifier=identifier,
            status=status,
            started_at=started_at,
            timeout_seconds=timeout_seconds,
            output=output,
        )
        async with session_factory() as session:
            session.add(record)
            await session.commit()
            await session.refresh(record)
        return record

    return _create_record


@pytest.fixture
def script_file(settings):
    """Factory for writing script files into the scripts directory."""

    def _write(name: str, source: str) -> Path:
        path = settings.scripts_path / name
        path.write_text(textwrap.dedent(source))
        return path

    return _write
