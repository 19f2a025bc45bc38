import os

# Must be set before loadblock.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import pytest
import pytest_asyncio
from typing import AsyncGenerator
from uuid import uuid4
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from loadblock.database import Base
from loadblock.documents.store import InMemoryDocumentStore
from loadblock.ledger.client import InMemoryLedger
from loadblock.sync.locks import KeyedLocks
from loadblock.sync.orchestrator import SynchronizationOrchestrator
from factories import RecordingAuditSink, fast_retry

# Register every table on Base.metadata
from loadblock.drafts import models as draft_models  # noqa: F401
from loadblock.sync import models as sync_models  # noqa: F401
from loadblock.audit import models as audit_models  # noqa: F401


@pytest_asyncio.fixture(scope="function")
async def session_factory():
    """In-memory SQLite shared across sessions of one test."""
    test_engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    await test_engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def locks() -> KeyedLocks:
    return KeyedLocks()


@pytest.fixture
def documents() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def parties() -> dict:
    return {
        "shipper_id": uuid4(),
        "consignee_id": uuid4(),
        "carrier_id": uuid4(),
        "broker_id": uuid4(),
    }


@pytest.fixture
def orchestrator(db_session, documents, ledger, locks, audit_sink) -> SynchronizationOrchestrator:
    return SynchronizationOrchestrator(
        db_session,
        documents,
        ledger,
        locks=locks,
        audit_sink=audit_sink,
        retry=fast_retry(),
        admin_ids=[],
    )
