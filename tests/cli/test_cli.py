"""Tests for the operator CLI and its output formatting."""

import json
from contextlib import contextmanager
from datetime import timedelta

import pytest
from rich.console import Console
from typer.testing import CliRunner

import src.cli.main as cli_main
from src.cli.main import app
from src.cli.output import format_moderation_log
from src.db.models import TradeRequest, to_iso
from src.services.moderation_service import ModerationService

runner = CliRunner()


@pytest.fixture
def cli_db(db, users, monkeypatch):
    """Point the CLI at the in-memory test session."""

    @contextmanager
    def _context():
        yield db
        db.commit()

    monkeypatch.setattr(cli_main, "get_db_context", _context)
    monkeypatch.setattr(cli_main, "init_db", lambda: None)
    return db


class TestFormatModerationLog:
    def test_json_output(self, db, users, t0):
        ModerationService(db).ban("u2", moderator_id="mod", reason="Scam", now=t0)
        entries = ModerationService(db).list_log()
        data = json.loads(format_moderation_log(entries, as_json=True))
        assert data[0]["action"] == "ban"
        assert data[0]["target_user_id"] == "u2"
        assert data[0]["reason"] == "Scam"

    def test_table_output(self, db, users, t0):
        ModerationService(db).warn("u3", moderator_id="mod", reason="Spam", now=t0)
        table = format_moderation_log(ModerationService(db).list_log())
        console = Console(record=True, width=200)
        console.print(table)
        text = console.export_text()
        assert "Moderation Log" in text
        assert "warn" in text
        assert "2026-01-05 12:00:00" in text


class TestCommands:
    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "Dreamie Exchange" in result.output

    def test_log_json(self, cli_db, t0):
        ModerationService(cli_db).restrict("u2", moderator_id="mod", now=t0)
        result = runner.invoke(app, ["log", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.output)[0]["action"] == "restrict"

    def test_sweep(self, cli_db, t0):
        stale = to_iso(t0 - timedelta(days=30))
        cli_db.add(
            TradeRequest(
                requester_id="u1",
                acceptor_id="u2",
                item_name="Raymond",
                status="ongoing",
                step=3,
                created_at=stale,
                updated_at=stale,
            )
        )
        cli_db.commit()
        result = runner.invoke(app, ["sweep"])
        assert result.exit_code == 0
        assert "Reset 1 stale trade(s)." in result.output

    def test_backfill(self, cli_db, t0):
        cli_db.add(
            TradeRequest(
                requester_id="u1",
                item_name="Marshal",
                status="ongoing",
                step=1,
                created_at=to_iso(t0),
            )
        )
        cli_db.commit()
        result = runner.invoke(app, ["backfill-acceptors"])
        assert result.exit_code == 0
        assert "Backfilled 1 trade(s)." in result.output
