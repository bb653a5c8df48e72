"""Pytest fixtures for API tests.

Provides test client, database session, and sample data fixtures
for testing FastAPI endpoints.
"""

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from src.api.main import app
from src.db.connection import get_db
from src.db.models import Base, UserProfile


@pytest.fixture
def test_db() -> Generator[Session, None, None]:
    """Create an in-memory SQLite database for testing.

    Creates all tables, yields a session, and cleans up after test.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(test_db: Session) -> Generator[TestClient, None, None]:
    """Create a TestClient with overridden database dependency.

    Args:
        test_db: Test database session fixture.

    Yields:
        TestClient configured for testing.
    """

    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def api_users(test_db: Session, make_profile) -> dict[str, UserProfile]:
    """u1 requests, u2 owns Raymond, u3 is a bystander, mod is privileged."""
    return {
        "u1": make_profile(test_db, "u1", rank=5),
        "u2": make_profile(test_db, "u2", owned=["Raymond", "Marshal"], rank=5),
        "u3": make_profile(test_db, "u3", rank=5),
        "mod": make_profile(test_db, "mod", rank=0),
    }
