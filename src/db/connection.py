"""Database connection management for Dreamie Exchange.

Provides synchronous database access using SQLAlchemy. Supports SQLite for
development with a PostgreSQL migration path for production.

Usage:
    # Sync (for FastAPI Depends)
    from src.db.connection import get_db, init_db

    init_db()  # Create tables
    db = next(get_db())
    # ... use db session
"""

import logging
import os
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import Session, sessionmaker

from src.db.models import Base

logger = logging.getLogger(__name__)


# Configuration
def get_database_url() -> str:
    """Get database URL from environment or use default SQLite.

    Precedence:
    1. DATABASE_URL (canonical)
    2. DREAMIE_DB_PATH (compat fallback, converted to sqlite URL)
    3. sqlite:///<platform data dir>/dreamie.db
    """
    database_url = os.environ.get("DATABASE_URL", "").strip()
    if database_url:
        return database_url

    db_path = os.environ.get("DREAMIE_DB_PATH", "").strip()
    if db_path:
        if db_path.startswith("sqlite:"):
            return db_path
        return f"sqlite:///{db_path}"

    from src.utils.paths import get_default_db_path
    return f"sqlite:///{get_default_db_path()}"


# Milliseconds a connection waits on a locked database
SQLITE_BUSY_TIMEOUT_MS = 5000

# Engine creation
DATABASE_URL = get_database_url()

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False}
    if DATABASE_URL.startswith("sqlite")
    else {},
    echo=os.environ.get("SQL_ECHO", "").lower() == "true",
)


# Enable foreign keys for SQLite
@event.listens_for(engine, "connect")
def set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
    """Configure SQLite pragmas for correctness and concurrency.

    Enables:
    - foreign_keys=ON: Referential integrity (disabled by default in SQLite).
    - journal_mode=WAL: Concurrent readers with a single writer, so live
      feed reloads do not block transitions.
    - synchronous=NORMAL: Commits are durable after WAL fsync.
    - busy_timeout=5000: Wait up to 5s for a competing writer instead of
      failing immediately with "database is locked".
    """
    if DATABASE_URL.startswith("sqlite"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS};")
        cursor.close()


# Session factories
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


# Dependency functions for FastAPI


def get_db() -> Generator[Session, None, None]:
    """Yield a database session for synchronous operations.

    Intended for use with FastAPI's Depends() for request-scoped sessions.

    Yields:
        Session: SQLAlchemy session that will be closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Context manager for database sessions outside of FastAPI.

    Usage:
        with get_db_context() as db:
            trade = db.get(TradeRequest, trade_id)
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# Initialization functions


def _ensure_columns_exist(conn: Any) -> None:
    """Add columns introduced after the first release to legacy tables (SQLite only).

    Early trade_requests tables predate acceptor_id, updated_at and the
    verification column. Uses PRAGMA table_info to introspect columns and
    ALTER TABLE to add missing ones. Idempotent.

    Args:
        conn: SQLAlchemy Connection.

    Raises:
        OperationalError: For non-duplicate-column DDL failures.
    """
    from sqlalchemy.exc import OperationalError

    if conn.dialect.name != "sqlite":
        return

    trades_exists = conn.execute(
        text(
            "SELECT 1 FROM sqlite_master WHERE type='table' "
            "AND name='trade_requests' LIMIT 1"
        )
    ).fetchone()
    if not trades_exists:
        return

    result = conn.execute(text("PRAGMA table_info(trade_requests)"))
    existing = {row[1] for row in result.fetchall()}

    migrations: list[tuple[str, str]] = [
        ("acceptor_id", "ALTER TABLE trade_requests ADD COLUMN acceptor_id VARCHAR(64)"),
        ("updated_at", "ALTER TABLE trade_requests ADD COLUMN updated_at VARCHAR(50)"),
        (
            "trader_verified",
            "ALTER TABLE trade_requests ADD COLUMN trader_verified BOOLEAN",
        ),
    ]

    for col_name, ddl in migrations:
        if col_name in existing:
            continue
        try:
            conn.execute(text(ddl))
            logger.info("Added column trade_requests.%s", col_name)
        except OperationalError as e:
            if "duplicate column" in str(e).lower():
                continue
            raise


def init_db() -> None:
    """Create all database tables synchronously.

    Uses the Base.metadata from models.py to create all defined tables.
    Safe to call multiple times - will not recreate existing tables.
    Runs column migration for new columns on existing tables.
    """
    Base.metadata.create_all(bind=engine)
    with engine.begin() as conn:
        _ensure_columns_exist(conn)


def close_db() -> None:
    """Close the sync engine and dispose of connection pool."""
    engine.dispose()
