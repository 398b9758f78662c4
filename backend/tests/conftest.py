"""Pytest configuration and shared fixtures.

This module provides centralized test fixtures for:
- HTTP client for API testing
- In-memory SQLite database sessions
- Common FHIR test data
"""

import os

# Configure before the application settings are first imported
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from fhirstore.auth import CurrentUser
from fhirstore.config import settings
from fhirstore.database import Base, get_db
from fhirstore.main import app
from fhirstore.repositories.fhir import FhirRepository

TEST_USER = CurrentUser(id="test-user", roles=("clinician",))


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def test_engine():
    """Create an in-memory SQLite engine with the schema created.

    All sessions share one connection so that they see the same database.
    pysqlite's implicit transaction handling is disabled so that
    SAVEPOINTs work the same way they do on PostgreSQL.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        echo=False,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncSession:
    """Create test database session with automatic rollback."""
    session_maker = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def repository(db_session) -> FhirRepository:
    """Repository bound to the test session, attributed to the test user."""
    return FhirRepository(db_session, TEST_USER)


# =============================================================================
# HTTP Client Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def client(test_engine):
    """Async test client for FastAPI app with test database.

    Overrides the app's get_db dependency to use the test database.
    """
    test_session_maker = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async def override_get_db():
        async with test_session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def api_headers() -> dict[str, str]:
    """Authentication headers for API requests."""
    return {"X-API-Key": settings.api_key, "X-User-Id": TEST_USER.id}


# =============================================================================
# FHIR Test Data
# =============================================================================


@pytest.fixture
def patient_resource() -> dict:
    return {
        "resourceType": "Patient",
        "id": "patient-1",
        "identifier": [{"system": "urn:mrn", "value": "MRN-001"}],
        "name": [{"family": "Smith", "given": ["Jane"]}],
        "gender": "female",
        "birthDate": "1980-04-02",
        "managingOrganization": {"reference": "Organization/org-1"},
    }


@pytest.fixture
def organization_resource() -> dict:
    return {"resourceType": "Organization", "id": "org-1", "name": "General Hospital"}


def make_observation(obs_id: str, patient_id: str = "patient-1", code: str = "8867-4") -> dict:
    """Build a minimal Observation for a patient."""
    return {
        "resourceType": "Observation",
        "id": obs_id,
        "status": "final",
        "code": {"coding": [{"system": "http://loinc.org", "code": code, "display": "Heart rate"}]},
        "subject": {"reference": f"Patient/{patient_id}"},
        "valueQuantity": {"value": 72, "unit": "beats/minute"},
    }


@pytest.fixture
def observation_resource() -> dict:
    return make_observation("obs-1")


@pytest.fixture
def observation_factory():
    """Factory for Observations: observation_factory(obs_id, patient_id=..., code=...)."""
    return make_observation


@pytest.fixture
def test_user() -> CurrentUser:
    return TEST_USER
