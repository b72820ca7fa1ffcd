"""
Operator commands for the teller.
"""

import asyncio
import sys

import typer
from rich.console import Console
from rich.table import Table

from teller.core.config import settings
from teller.core.database import init_database, close_database, DatabaseManager
from teller.core.exceptions import TellerException
from teller.core.logging import setup_logging, get_logger
from teller.services.queue_service import PriorityQueue

console = Console()
logger = get_logger(__name__)
app = typer.Typer(help="Moltbank teller commands")


def _run(coro_factory):
    """Run an async command body with logging and the database set up."""
    async def _wrapped():
        setup_logging()
        await init_database()
        try:
            return await coro_factory()
        finally:
            await close_database()

    return asyncio.run(_wrapped())


@app.command("init-db")
def init_db():
    """Create all tables."""
    async def _init():
        await DatabaseManager.create_tables()
        console.print("✅ Database initialized successfully!")

    _run(_init)


@app.command("reset-db")
def reset_db(yes: bool = typer.Option(False, "--yes", help="Skip confirmation")):
    """Drop all tables."""
    if not yes and not typer.confirm("Are you sure you want to drop all tables?"):
        console.print("❌ Operation cancelled")
        return

    async def _reset():
        await DatabaseManager.drop_tables()
        console.print("🗑️ All tables dropped!")

    _run(_reset)


@app.command()
def health():
    """Check database health."""
    async def _health():
        return await DatabaseManager.health_check()

    if _run(_health):
        console.print("✅ Database is healthy!")
    else:
        console.print("❌ Database health check failed!")
        sys.exit(1)


@app.command("queue-stats")
def queue_stats(pending: bool = typer.Option(False, "--pending", help="List pending entries")):
    """Show queue counts by status."""
    queue = PriorityQueue()

    async def _stats():
        stats = await queue.stats()
        entries = await queue.pending_entries() if pending else []
        return stats, entries

    stats, entries = _run(_stats)

    table = Table(title="Queue")
    table.add_column("Status")
    table.add_column("Entries", justify="right")
    table.add_row("pending", str(stats.pending_count))
    table.add_row("processing", str(stats.processing_count))
    table.add_row("completed", str(stats.completed_count))
    table.add_row("failed", str(stats.failed_count))
    console.print(table)

    if entries:
        pending_table = Table(title="Pending, in service order")
        for column in ("Position", "ID", "Tier", "Agent", "Payment"):
            pending_table.add_column(column)
        for entry in entries:
            pending_table.add_row(
                str(entry.position), str(entry.id), entry.tier, entry.agent_id, entry.payment_ref
            )
        console.print(pending_table)


@app.command("reconcile-processing")
def reconcile_processing(
    reason: str = typer.Option("interrupted", help="Failure reason to record"),
    yes: bool = typer.Option(False, "--yes", help="Skip confirmation"),
):
    """Mark entries stuck in processing as failed. Only run while no worker is active."""
    if not yes and not typer.confirm("Is every teller worker stopped?"):
        console.print("❌ Operation cancelled")
        return

    count = _run(lambda: PriorityQueue().reconcile_processing(reason))
    console.print(f"✅ Marked {count} stuck entries as failed")


@app.command()
def requeue(entry_id: int = typer.Argument(..., help="ID of a failed queue entry")):
    """Re-drive a failed entry at the back of its priority class."""
    try:
        entry = _run(lambda: PriorityQueue().requeue(entry_id))
    except TellerException as e:
        console.print(f"❌ {e.message}")
        sys.exit(1)

    console.print(f"✅ Entry {entry.id} requeued at position {entry.position}")


@app.command()
def serve(
    host: str = typer.Option(settings.host, help="Bind address"),
    port: int = typer.Option(settings.port, help="Bind port"),
):
    """Run the HTTP API (and the background loops unless disabled)."""
    import uvicorn

    uvicorn.run("teller.api.main:app", host=host, port=port, log_config=None)


@app.command("run-worker")
def run_worker():
    """Run only the background loops, without the HTTP API."""
    from teller.scheduler.main import main

    asyncio.run(main())


if __name__ == "__main__":
    app()
