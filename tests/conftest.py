"""Root-level pytest fixtures for all tests.

Provides shared fixtures including:
- Database fixtures (in-memory and file-based SQLite)
- User profile factories
- A fixed reference time for timer-driven guards
"""

import os
import tempfile
from collections.abc import Callable, Generator
from datetime import UTC, datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from src.db.models import Base, UserProfile

# Reference time for tests that step through the 24h/48h timers
T0 = datetime(2026, 1, 5, 12, 0, tzinfo=UTC)


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Register custom markers and point the app engine at a scratch database."""
    config.addinivalue_line(
        "markers", "slow: marks tests that take a long time to run"
    )

    # src.db.connection builds its engine at import time; keep it off the
    # user's real data directory.
    if not os.environ.get("DATABASE_URL"):
        scratch_dir = tempfile.mkdtemp(prefix="dreamie-tests-")
        os.environ["DATABASE_URL"] = f"sqlite:///{scratch_dir}/app.db"
    os.environ.setdefault("DREAMIE_SWEEP_ON_STARTUP", "false")


@pytest.fixture(autouse=True)
def _reset_process_state() -> Generator[None, None, None]:
    """Clear process-global caches between tests."""
    from src.api.middleware.auth import reset_rate_limiter
    from src.services.profile_service import clear_profile_cache

    clear_profile_cache()
    reset_rate_limiter()
    yield
    clear_profile_cache()


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """In-memory SQLite session for testing."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def file_based_db(tmp_path) -> str:
    """Create a file-based SQLite database shared by several sessions."""
    url = f"sqlite:///{tmp_path / 'dreamie.db'}"
    engine = create_engine(url)
    Base.metadata.create_all(engine)
    engine.dispose()
    return url


# ============================================================================
# Test Data Fixtures
# ============================================================================


@pytest.fixture
def make_profile() -> Callable[..., UserProfile]:
    """Factory adding a committed UserProfile to a session."""

    def _make(
        session: Session,
        user_id: str,
        owned: list[str] | None = None,
        rank: int | None = None,
        **fields,
    ) -> UserProfile:
        profile = UserProfile(id=user_id, username=user_id, rank=rank, **fields)
        profile.owned_list = owned or []
        session.add(profile)
        session.commit()
        return profile

    return _make


@pytest.fixture
def users(db: Session, make_profile) -> dict[str, UserProfile]:
    """Standard cast: a requester, an owner of Raymond, a bystander, a moderator.

    u1 wants Raymond; u2 owns Raymond and Marshal; u3 owns Raymond too;
    mod has privileged rank 0.
    """
    return {
        "u1": make_profile(db, "u1", user_number=1, rank=5),
        "u2": make_profile(db, "u2", owned=["Raymond", "Marshal"], user_number=2, rank=5),
        "u3": make_profile(db, "u3", owned=["Raymond"], user_number=3, rank=5),
        "mod": make_profile(db, "mod", user_number=0, rank=0),
    }


@pytest.fixture
def t0() -> datetime:
    return T0
