"""Operator CLI for Dreamie Exchange.

Runs the API server and the maintenance jobs that otherwise only happen
lazily: the expiry sweep and the one-time acceptor backfill for legacy
trades. Also prints the recent moderation log.

Usage:
    dreamie serve --port 8000
    dreamie sweep
    dreamie backfill-acceptors
    dreamie log --limit 20 --json
"""

import logging
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version

import typer
from rich.console import Console
from sqlalchemy.exc import SQLAlchemyError

from src.cli.output import format_moderation_log
from src.db.connection import get_db_context, init_db
from src.services.moderation_service import DEFAULT_LOG_LIMIT, ModerationService
from src.services.trade_service import TradeService

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="dreamie",
    help="Dreamie Exchange: villager trading service",
    no_args_is_help=True,
)

console = Console()


@app.command()
def version():
    """Show the installed version."""
    try:
        v = _pkg_version("dreamie-exchange")
    except PackageNotFoundError:
        v = "dev"
    console.print(f"[bold]Dreamie Exchange[/bold] v{v}")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Bind address"),
    port: int = typer.Option(8000, help="Bind port"),
    log_level: str = typer.Option("info", help="uvicorn log level"),
):
    """Run the API server."""
    import uvicorn

    logger.info("Starting API on %s:%d", host, port)
    uvicorn.run(
        "src.api.main:app",
        host=host,
        port=port,
        workers=1,
        log_level=log_level,
        lifespan="on",
    )


@app.command()
def sweep():
    """Reset ongoing trades inactive for 48 hours back to open."""
    init_db()
    try:
        with get_db_context() as db:
            reset = TradeService(db).expire_stale_trades()
    except SQLAlchemyError as e:
        console.print(f"[red]Sweep failed:[/red] {e}")
        raise typer.Exit(code=1) from e
    console.print(f"[green]Reset {reset} stale trade(s).[/green]")


@app.command("backfill-acceptors")
def backfill_acceptors():
    """Fill acceptor_id on legacy accepted trades from item ownership."""
    init_db()
    try:
        with get_db_context() as db:
            filled = TradeService(db).backfill_acceptor_ids()
    except SQLAlchemyError as e:
        console.print(f"[red]Backfill failed:[/red] {e}")
        raise typer.Exit(code=1) from e
    console.print(f"[green]Backfilled {filled} trade(s).[/green]")


@app.command("log")
def moderation_log(
    limit: int = typer.Option(DEFAULT_LOG_LIMIT, help="Number of entries"),
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Print the most recent moderation decisions."""
    init_db()
    with get_db_context() as db:
        entries = ModerationService(db).list_log(limit)
        output = format_moderation_log(entries, as_json=as_json)
    if as_json:
        typer.echo(output)
    else:
        console.print(output)


if __name__ == "__main__":
    app()
