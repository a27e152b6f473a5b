"""Connection management commands for BankSync CLI."""

import logging
from datetime import datetime, time

import typer

from banksync.config import get_database_path
from banksync.connections import ConnectionManager
from banksync.errors import SyncError
from banksync.logging import setup_logging
from banksync.models import Frequency, QifDateOrder
from banksync.storage import LedgerStore
from banksync.vault import get_vault

app = typer.Typer(help="Manage automated bank connections")
logger = logging.getLogger(__name__)


def _parse_time(value: str | None) -> time | None:
    if value is None:
        return None
    try:
        return datetime.strptime(value, "%H:%M").time()
    except ValueError as e:
        raise typer.BadParameter(f"Expected HH:MM, got {value!r}") from e


def _metadata(security_number: str | None) -> dict[str, str] | None:
    return {"security_number": security_number} if security_number else None


@app.command("add")
def add_connection(
    user_id: str = typer.Option(..., "--user", "-u", help="Owner of the connection"),
    name: str = typer.Option(..., "--name", "-n", help="Display name"),
    institution: str = typer.Option(
        ..., "--institution", "-i", help="Institution slug (e.g. bom, amex)"
    ),
    username: str = typer.Option(..., "--username", prompt=True, help="Portal username"),
    password: str = typer.Option(
        ..., "--password", prompt=True, hide_input=True, help="Portal password"
    ),
    security_number: str = typer.Option(
        None, "--security-number", help="Security number (Bank of Melbourne)"
    ),
    account_id: str = typer.Option(
        None, "--account", "-a", help="Local account to put every transaction in"
    ),
    date_format: QifDateOrder = typer.Option(
        QifDateOrder.MDY, "--date-format", help="Day/month order of QIF exports"
    ),
    frequency: Frequency = typer.Option(
        None, "--frequency", "-f", help="Create a schedule with this frequency"
    ),
    preferred_time: str = typer.Option(
        None, "--time", help="Preferred local run time (HH:MM)"
    ),
    timezone_name: str = typer.Option("UTC", "--timezone", help="Schedule timezone"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Add a connection; secrets are encrypted before they are stored."""
    setup_logging(cli_mode=True, verbose=verbose)

    try:
        with LedgerStore(get_database_path()) as store:
            manager = ConnectionManager(store, get_vault())
            connection = manager.create_connection(
                user_id=user_id,
                name=name,
                institution_slug=institution,
                username=username,
                password=password,
                metadata=_metadata(security_number),
                account_id=account_id,
                date_format=date_format,
                frequency=frequency,
                preferred_time=_parse_time(preferred_time),
                schedule_timezone=timezone_name,
            )
        logger.info(f"✅ Added connection {connection.name}: {connection.id}")
    except SyncError as e:
        logger.error(f"❌ {e.describe()}")
        raise typer.Exit(1) from e
    except ValueError as e:
        logger.error(f"❌ Invalid connection settings: {e}")
        raise typer.Exit(1) from e


@app.command("list")
def list_connections(
    user_id: str = typer.Option(None, "--user", "-u", help="Only this user's connections"),
) -> None:
    """List connections with their status and last error."""
    setup_logging(cli_mode=True)

    try:
        with LedgerStore(get_database_path()) as store:
            connections = store.list_connections(user_id)
    except Exception as e:
        logger.error(f"❌ Failed to list connections: {e}")
        raise typer.Exit(1) from e

    if not connections:
        logger.info("No connections configured")
        return

    for connection in connections:
        flag = " [suspended]" if connection.circuit_open else ""
        logger.info(
            f"  {connection.id}  {connection.name} ({connection.institution_slug}) "
            f"{connection.status.value}{flag}"
        )
        if connection.last_error:
            logger.info(f"      last error: {connection.last_error}")


@app.command("show")
def show_connection(connection_id: str = typer.Argument(..., help="Connection id")) -> None:
    """Show a connection's details without its secrets."""
    setup_logging(cli_mode=True)

    try:
        with LedgerStore(get_database_path()) as store:
            details = ConnectionManager(store, get_vault()).describe_connection(connection_id)
    except SyncError as e:
        logger.error(f"❌ {e.describe()}")
        raise typer.Exit(1) from e

    for key, value in details.items():
        logger.info(f"  {key}: {value}")


@app.command("credentials")
def update_credentials(
    connection_id: str = typer.Argument(..., help="Connection id"),
    username: str = typer.Option(..., "--username", prompt=True, help="Portal username"),
    password: str = typer.Option(
        ..., "--password", prompt=True, hide_input=True, help="Portal password"
    ),
    security_number: str = typer.Option(
        None, "--security-number", help="Security number (Bank of Melbourne)"
    ),
) -> None:
    """Re-save credentials and resume a suspended connection."""
    setup_logging(cli_mode=True)

    try:
        with LedgerStore(get_database_path()) as store:
            ConnectionManager(store, get_vault()).update_credentials(
                connection_id, username, password, _metadata(security_number)
            )
        logger.info(f"✅ Credentials updated for {connection_id}")
    except SyncError as e:
        logger.error(f"❌ {e.describe()}")
        raise typer.Exit(1) from e


@app.command("schedule")
def set_schedule(
    connection_id: str = typer.Argument(..., help="Connection id"),
    frequency: Frequency = typer.Option(..., "--frequency", "-f", help="Run frequency"),
    preferred_time: str = typer.Option(
        None, "--time", help="Preferred local run time (HH:MM)"
    ),
    timezone_name: str = typer.Option("UTC", "--timezone", help="Schedule timezone"),
    active: bool = typer.Option(True, "--active/--paused", help="Enable the schedule"),
) -> None:
    """Create or replace a connection's schedule."""
    setup_logging(cli_mode=True)

    try:
        with LedgerStore(get_database_path()) as store:
            schedule = ConnectionManager(store, get_vault()).set_schedule(
                connection_id,
                frequency,
                _parse_time(preferred_time),
                timezone_name,
                is_active=active,
            )
        logger.info(
            f"✅ {connection_id} scheduled {schedule.frequency.value}"
            + (f" at {schedule.preferred_time} {schedule.timezone}" if schedule.preferred_time else "")
        )
    except SyncError as e:
        logger.error(f"❌ {e.describe()}")
        raise typer.Exit(1) from e
    except ValueError as e:
        logger.error(f"❌ Invalid schedule: {e}")
        raise typer.Exit(1) from e


@app.command("remove")
def remove_connection(
    connection_id: str = typer.Argument(..., help="Connection id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete a connection and its schedule."""
    setup_logging(cli_mode=True)

    if not yes and not typer.confirm(f"Delete connection {connection_id}?"):
        raise typer.Exit(0)

    try:
        with LedgerStore(get_database_path()) as store:
            store.delete_connection(connection_id)
        logger.info(f"✅ Removed connection {connection_id}")
    except SyncError as e:
        logger.error(f"❌ {e.describe()}")
        raise typer.Exit(1) from e
