"""Sync commands for BankSync CLI.

Runs a single connection on demand, starts the polling scheduler, and shows
the sync run history of a connection.
"""

import asyncio
import logging

import polars as pl
import typer

from banksync.config import get_database_path, get_settings
from banksync.errors import SyncError
from banksync.logging import setup_logging
from banksync.models import SyncRunStatus
from banksync.orchestrator import SyncOrchestrator
from banksync.scheduler import Scheduler
from banksync.storage import LedgerStore
from banksync.vault import get_vault

app = typer.Typer(help="Run syncs and the scheduler")
logger = logging.getLogger(__name__)


@app.command("run")
def sync_run(
    connection_id: str = typer.Argument(..., help="Connection id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Sync one connection now, outside its schedule."""
    setup_logging(cli_mode=True, verbose=verbose)

    try:
        with LedgerStore(get_database_path()) as store:
            orchestrator = SyncOrchestrator(store, get_vault(), get_settings())
            run = asyncio.run(orchestrator.run(connection_id))
    except SyncError as e:
        logger.error(f"❌ {e.describe()}")
        raise typer.Exit(1) from e

    if run.status == SyncRunStatus.FAILED:
        logger.error(f"❌ Sync failed: {run.error_message}")
        raise typer.Exit(1)

    logger.info(
        f"✅ Sync {run.status.value}: {run.inserted_count} inserted, "
        f"{run.skipped_count} skipped across {run.accounts_synced} account(s)"
    )
    if run.error_message:
        logger.warning(f"⚠️  {run.error_message}")


@app.command("scheduler")
def sync_scheduler(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Run the polling scheduler until interrupted."""
    setup_logging(cli_mode=False, verbose=verbose)

    try:
        settings = get_settings()
        with LedgerStore(get_database_path()) as store:
            scheduler = Scheduler(
                store, SyncOrchestrator(store, get_vault(), settings), settings
            )
            asyncio.run(scheduler.run_forever())
    except KeyboardInterrupt:
        logger.info("Scheduler interrupted")
    except SyncError as e:
        logger.error(f"❌ {e.describe()}")
        raise typer.Exit(1) from e


@app.command("runs")
def sync_runs(
    connection_id: str = typer.Argument(..., help="Connection id"),
    limit: int = typer.Option(20, "--limit", "-n", min=1, help="Number of runs to show"),
) -> None:
    """Show recent sync runs for a connection."""
    setup_logging(cli_mode=True)

    try:
        with LedgerStore(get_database_path()) as store:
            store.get_connection(connection_id)
            frame = store.sync_runs_frame(connection_id, limit)
    except SyncError as e:
        logger.error(f"❌ {e.describe()}")
        raise typer.Exit(1) from e

    if frame.is_empty():
        logger.info(f"No sync runs recorded for {connection_id}")
        return

    with pl.Config(tbl_rows=limit, fmt_str_lengths=80):
        logger.info(str(frame))
