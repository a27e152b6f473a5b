"""Main CLI application for BankSync.

This module provides the unified entry point for all BankSync CLI operations,
organizing commands into groups for connection management, syncing and manual
statement import.
"""

import logging
from typing import Annotated

import typer

from ..logging import setup_logging
from .commands import connections, imports, sync

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="banksync",
    help="BankSync: automated bank statement sync into a personal ledger",
    add_completion=False,
    rich_markup_mode="rich",
    no_args_is_help=True,
)


@app.callback()
def main_callback(
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-v",
            help="Enable verbose debug logging",
        ),
    ] = False,
) -> None:
    """Global options for BankSync CLI.

    Examples:
      banksync connections add --user me --name "Everyday" --institution bom
      banksync sync run <connection-id>
      banksync sync scheduler
      banksync import statement ~/Downloads/statement.qif --user me
    """
    setup_logging(cli_mode=True, verbose=verbose)


app.add_typer(
    connections.app, name="connections", help="Manage automated bank connections"
)
app.add_typer(sync.app, name="sync", help="Run syncs and the scheduler")
app.add_typer(imports.app, name="import", help="Import statement files")


def main() -> None:
    """Entry point for the BankSync CLI application."""
    app()


if __name__ == "__main__":
    main()
