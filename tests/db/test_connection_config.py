"""Tests for database URL configuration precedence and legacy column migration."""

from sqlalchemy import create_engine, inspect, text

from src.db.connection import _ensure_columns_exist, get_database_url


def test_get_database_url_prefers_database_url(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///./preferred.db")
    monkeypatch.setenv("DREAMIE_DB_PATH", "/tmp/fallback.db")

    assert get_database_url() == "sqlite:///./preferred.db"


def test_get_database_url_uses_db_path_fallback(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("DREAMIE_DB_PATH", "/tmp/dreamie.db")

    assert get_database_url() == "sqlite:////tmp/dreamie.db"


def test_get_database_url_defaults_to_data_dir(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("DREAMIE_DB_PATH", raising=False)

    url = get_database_url()
    assert url.startswith("sqlite:///")
    assert url.endswith("dreamie.db")


def test_legacy_trade_table_gains_new_columns():
    """Tables created before acceptor tracking are upgraded in place."""
    engine = create_engine("sqlite:///:memory:")
    with engine.begin() as conn:
        conn.execute(
            text(
                "CREATE TABLE trade_requests ("
                "id VARCHAR(36) PRIMARY KEY, requester_id VARCHAR(64) NOT NULL, "
                "item_name VARCHAR(100) NOT NULL, status VARCHAR(20) NOT NULL, "
                "step INTEGER NOT NULL, created_at VARCHAR(50) NOT NULL)"
            )
        )
        _ensure_columns_exist(conn)
        # Second run is a no-op
        _ensure_columns_exist(conn)

    columns = {c["name"] for c in inspect(engine).get_columns("trade_requests")}
    assert {"acceptor_id", "updated_at", "trader_verified"} <= columns
    engine.dispose()


def test_missing_trade_table_is_skipped():
    engine = create_engine("sqlite:///:memory:")
    with engine.begin() as conn:
        _ensure_columns_exist(conn)
    assert not inspect(engine).has_table("trade_requests")
    engine.dispose()


def test_app_engine_waits_on_locked_database():
    from src.db.connection import SQLITE_BUSY_TIMEOUT_MS, engine

    with engine.connect() as conn:
        assert conn.execute(text("PRAGMA busy_timeout")).scalar() == SQLITE_BUSY_TIMEOUT_MS
        assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1
