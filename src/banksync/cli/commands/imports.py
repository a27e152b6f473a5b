"""Statement import commands for BankSync CLI."""

import logging
from pathlib import Path

import typer

from banksync.config import get_database_path
from banksync.errors import SyncError
from banksync.importer import StatementImporter
from banksync.logging import setup_logging
from banksync.models import QifDateOrder
from banksync.storage import LedgerStore

app = typer.Typer(help="Import statement files")
logger = logging.getLogger(__name__)


@app.command("statement")
def import_statement(
    file_path: Path = typer.Argument(..., help="OFX, QFX or QIF file to import"),
    user_id: str = typer.Option(..., "--user", "-u", help="Owner of the ledger"),
    account_id: str = typer.Option(
        None, "--account", "-a", help="Local account to import into"
    ),
    date_order: QifDateOrder = typer.Option(
        QifDateOrder.MDY, "--date-order", help="Day/month order of QIF dates"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Import a statement file; transactions already present are skipped."""
    setup_logging(cli_mode=True, verbose=verbose)

    try:
        with LedgerStore(get_database_path()) as store:
            results = StatementImporter(store).import_file(
                file_path, user_id, account_id, date_order
            )
    except FileNotFoundError as e:
        logger.error(f"❌ {e}")
        raise typer.Exit(1) from e
    except SyncError as e:
        logger.error(f"❌ {e.describe()}")
        raise typer.Exit(1) from e

    logger.info(f"📊 Imported {file_path.name}:")
    for result in results:
        logger.info(
            f"  {result.remote_account_id} -> {result.account_id}: "
            f"{result.inserted} inserted, {result.skipped} skipped"
        )
