"""Pytest configuration and fixtures."""

import os

# Keep the module-level engine off the production database
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")

from typing import Any, AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from capture_service.db.session import Base, create_session_factory
from capture_service.schemas.schemas import CaptureCreate
from capture_service.services.analysis_queue import AnalysisQueue
from capture_service.services.capture_store import capture_store
from tests.fakes import ScriptedAnalyzer


@pytest_asyncio.fixture
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Create a test database engine on a throwaway SQLite file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)

    # Let SQLAlchemy emit BEGIN itself, and take the write lock up front so
    # concurrent sessions queue up instead of failing with "database is locked"
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker:
    """Session factory bound to the test engine."""
    return create_session_factory(test_engine)


@pytest.fixture
def queue() -> AnalysisQueue:
    """Queue without backoff so retries are immediately claimable."""
    return AnalysisQueue(
        max_attempts=5,
        backoff_base_seconds=0,
        backoff_max_seconds=0,
        claim_timeout_seconds=600,
    )


@pytest.fixture
def make_capture(session_factory: async_sessionmaker):
    """Create (and optionally queue) a committed capture; returns its id."""

    async def _make(enqueue_with: Optional[AnalysisQueue] = None, **fields: Any) -> str:
        fields.setdefault("image_url", "https://bucket.s3.amazonaws.com/captures/test.jpg")
        data = CaptureCreate(**fields)
        async with session_factory() as db:
            if enqueue_with is not None:
                capture, _ = await capture_store.submit_capture(db, data, queue=enqueue_with)
            else:
                capture = await capture_store.create_capture(db, data)
            await db.commit()
            return capture.id

    return _make


@pytest.fixture
def analyzer() -> ScriptedAnalyzer:
    return ScriptedAnalyzer()
