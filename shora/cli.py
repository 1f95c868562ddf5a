"""
Shora - CLI Entry Point

Usage:
    # Run the API server
    shora serve --port 8000

    # Create database tables
    shora init-db

    # Show proposals whose voting deadline passed without resolution
    shora lapsed --place 6f1c...
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from shora.core.config import settings
from shora.core.database import Database
from shora.decisions.entities import required_votes, total_votes, vote_counts
from shora.decisions.repository import SqlDecisionRepository
from shora.decisions.services import DecisionLifecycleService

app = typer.Typer(
    name="shora",
    help="Council decision voting and lifecycle service",
    add_completion=False,
)
console = Console()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def print_banner() -> None:
    """Print the application banner."""
    console.print(Panel.fit(
        "[bold blue]Shora Decisions[/bold blue]\n"
        "[dim]Council voting and decision lifecycle[/dim]",
        border_style="blue",
    ))
    console.print()


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
) -> None:
    """Run the HTTP API."""
    import uvicorn

    configure_logging()
    uvicorn.run("shora.main:app", host=host, port=port, reload=reload)


@app.command("init-db")
def init_db() -> None:
    """
    Initialize the database schema.

    Creates the decision tables if they don't exist.
    """
    print_banner()
    configure_logging()

    async def run_init() -> None:
        async with Database(settings.database_url, create_tables=True):
            pass

    try:
        asyncio.run(run_init())
    except Exception as e:
        console.print(f"[red]Database initialization failed:[/red] {e}")
        raise typer.Exit(1) from e
    console.print("[green]Database schema ready[/green]")


@app.command()
def lapsed(
    place_id: Optional[UUID] = typer.Option(None, "--place", help="Only this place"),
) -> None:
    """
    List proposed decisions whose voting deadline has passed.

    These are not closed automatically; someone with approve permission has
    to resolve them.
    """
    print_banner()
    configure_logging("WARNING")

    async def run_report() -> list:
        async with Database(settings.database_url) as database:
            service = DecisionLifecycleService(
                SqlDecisionRepository(database),
                timeout=settings.persistence_timeout_seconds,
            )
            return await service.list_lapsed(place_id=place_id)

    decisions = asyncio.run(run_report())
    if not decisions:
        console.print("[green]No lapsed decisions[/green]")
        return

    now = datetime.now(timezone.utc)
    table = Table(title=f"Lapsed decisions ({len(decisions)})")
    table.add_column("ID", style="dim")
    table.add_column("Title")
    table.add_column("Deadline")
    table.add_column("Overdue", justify="right")
    table.add_column("Yes/No/Abstain", justify="center")
    table.add_column("Quorum", justify="right")

    for d in decisions:
        counts = vote_counts(d)
        overdue = now - d.voting_deadline
        table.add_row(
            str(d.id),
            d.title,
            d.voting_deadline.strftime("%Y-%m-%d %H:%M"),
            f"{overdue.days}d",
            f"{counts.yes}/{counts.no}/{counts.abstain}",
            f"{total_votes(d)}/{required_votes(d)}",
        )
    console.print(table)


if __name__ == "__main__":
    app()
