"""
Test configuration and fixtures.

Provides:
- A fresh SQLite database per test (schema from Base.metadata)
- A session factory for tests that need several concurrent sessions
- FixedClock, in-memory storage and a recording metrics sink
- HTTPX AsyncClient wired to the same session and clock
- Factories for files, policies, rules and legal holds
"""
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Generator

# Keep module-level engines away from the working directory
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STORAGE_BACKEND", "memory")

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.orm import Session, sessionmaker

from retention_engine.core.clock import FixedClock
from retention_engine.core.deps import get_clock, get_db
from retention_engine.db.base import Base
from retention_engine.db.enums import AccessLevel, FileStatus
from retention_engine.db.models import FileMetadata
from retention_engine.db.session import build_engine
from retention_engine.main import app
from retention_engine.services import compliance_service
from retention_engine.services.storage import InMemoryStorageBackend


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def engine(tmp_path):
    """File-backed SQLite so separate sessions see each other's commits."""
    test_engine = build_engine(f"sqlite:///{tmp_path / 'retention.db'}")
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# Collaborators
# =============================================================================

@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def storage() -> InMemoryStorageBackend:
    return InMemoryStorageBackend()


class RecordingMetricsSink:
    def __init__(self):
        self.records: list[tuple[str, dict[str, int]]] = []

    def record(self, run, counts):
        self.records.append((run, dict(counts)))

    def runs(self, run: str) -> list[dict[str, int]]:
        return [counts for name, counts in self.records if name == run]


@pytest.fixture
def metrics() -> RecordingMetricsSink:
    return RecordingMetricsSink()


# =============================================================================
# Factories
# =============================================================================

@pytest.fixture
def make_file(db: Session, clock: FixedClock, storage: InMemoryStorageBackend):
    def _make_file(
        *,
        entity_type: str = "DOCUMENT",
        entity_id: str = "doc-1",
        jurisdiction: str | None = "EU",
        age_days: float = 0,
        tags: list[str] | None = None,
        size: int = 1024,
        mime_type: str = "application/pdf",
        access_level: str = AccessLevel.PRIVATE.value,
        metadata: dict | None = None,
        status: str = FileStatus.READY.value,
    ) -> FileMetadata:
        file_id = uuid.uuid4()
        path = f"{entity_type.lower()}/{entity_id}/{file_id}.bin"
        file = FileMetadata(
            id=file_id,
            entity_type=entity_type,
            entity_id=entity_id,
            jurisdiction=jurisdiction,
            path=path,
            original_name="contract.pdf",
            mime_type=mime_type,
            size=size,
            uploaded_by="user-42",
            access_level=access_level,
            tags=tags or [],
            custom_metadata=metadata or {},
            status=status,
            created_at=clock.now() - timedelta(days=age_days),
        )
        db.add(file)
        db.commit()
        storage.put(path, b"payload")
        return file

    return _make_file


@pytest.fixture
def make_policy(db: Session, clock: FixedClock):
    def _make_policy(
        *,
        entity_type: str = "DOCUMENT",
        jurisdiction: str | None = "EU",
        retention_period_days: int = 30,
        name: str | None = None,
    ):
        return compliance_service.create_retention_policy(
            db,
            name=name or f"{entity_type} {jurisdiction or 'default'}",
            entity_type=entity_type,
            jurisdiction=jurisdiction,
            retention_period_days=retention_period_days,
            created_by="admin",
            clock=clock,
        )

    return _make_policy


@pytest.fixture
def make_rule(db: Session, clock: FixedClock):
    def _make_rule(policy, condition, *, action="DELETE", priority=0, retention_period_days=None, name=None):
        return compliance_service.create_rule(
            db,
            policy.id,
            condition=condition,
            action=action,
            priority=priority,
            retention_period_days=retention_period_days,
            name=name,
            clock=clock,
        )

    return _make_rule


@pytest.fixture
def make_hold(db: Session, clock: FixedClock):
    def _make_hold(scope: dict, *, name: str = "Litigation 2024-17", expires_at=None):
        return compliance_service.create_legal_hold(
            db,
            name=name,
            scope=scope,
            expires_at=expires_at,
            created_by="legal",
            clock=clock,
        )

    return _make_hold


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session, clock: FixedClock) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient sharing the test session and clock."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as c:
        yield c

    app.dependency_overrides.clear()
