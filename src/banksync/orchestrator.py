"""Per-connection sync run state machine.

A run moves its connection ``idle -> running -> idle | error``:

1. Claim the connection (fails with ``ConnectionBusyError`` if a run is in flight)
2. Decrypt credentials and resolve the institution connector
3. Authenticate, list accounts and, per account, export -> parse -> reconcile
4. Release the browser session on every exit path
5. Record the outcome on the connection and append a ``SyncRun``

The whole run is bounded by ``sync.run_timeout_seconds``.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from banksync.config import BankSyncSettings, get_settings
from banksync.connectors import (
    AccountDescriptor,
    BankConnector,
    BankCredentials,
    DateWindow,
    create_connector,
)
from banksync.errors import (
    AuthError,
    AuthFailure,
    ConnectionBusyError,
    ParseError,
    ReconciliationError,
    SyncError,
    SyncTimeoutError,
    UnsupportedOperationError,
)
from banksync.models import Connection, SyncRun, SyncRunStatus
from banksync.parsers import parse_statement
from banksync.reconciliation import ReconciliationContext, ReconciliationEngine
from banksync.storage import LedgerStore, new_id
from banksync.vault import CredentialVault

logger = logging.getLogger(__name__)

ConnectorFactory = Callable[[str, BankSyncSettings], BankConnector]

# Failures confined to one account; the run continues with the next one
_ACCOUNT_ERRORS = (ParseError, ReconciliationError, UnsupportedOperationError)


@dataclass
class _RunOutcome:
    inserted: int = 0
    skipped: int = 0
    accounts_synced: int = 0
    account_errors: list[str] = field(default_factory=list)
    error: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncOrchestrator:
    """Execute one sync run for a connection."""

    def __init__(
        self,
        store: LedgerStore,
        vault: CredentialVault,
        settings: BankSyncSettings | None = None,
        connector_factory: ConnectorFactory = create_connector,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.vault = vault
        self.settings = settings or get_settings()
        self.connector_factory = connector_factory
        self.engine = ReconciliationEngine(store)
        self._now = now

    async def run(self, connection_id: str) -> SyncRun:
        """Run a sync for a connection and record its outcome.

        Returns:
            SyncRun: The appended run record

        Raises:
            ConnectionNotFoundError: If the connection does not exist
            ConnectionBusyError: If a run for the connection is already in flight
        """
        started_at = self._now()
        if not self.store.try_mark_running(connection_id, started_at):
            raise ConnectionBusyError(f"Connection {connection_id} is already running")

        connection = self.store.get_connection(connection_id)
        outcome = _RunOutcome()
        timeout = self.settings.sync.run_timeout_seconds
        logger.info(f"Starting sync for connection {connection.name} ({connection.id})")

        try:
            await asyncio.wait_for(self._execute(connection, outcome), timeout=timeout)
        except asyncio.TimeoutError:
            outcome.error = SyncTimeoutError(f"Run exceeded {timeout:g}s").describe()
        except SyncError as e:
            outcome.error = e.describe()
        except asyncio.CancelledError:
            outcome.error = "Cancelled: run interrupted"
            self._finish(connection, started_at, outcome)
            raise
        except Exception as e:
            logger.exception(f"Unexpected failure syncing connection {connection.id}")
            outcome.error = f"UnexpectedError: {type(e).__name__}: {e}"

        return self._finish(connection, started_at, outcome)

    async def _execute(self, connection: Connection, outcome: _RunOutcome) -> None:
        connector = self.connector_factory(connection.institution_slug, self.settings)
        session = await connector.authenticate(self._decrypt_credentials(connection))
        try:
            accounts = await connector.list_accounts(session)
            if not accounts:
                # Logged in, but the portal showed no accounts
                raise AuthError(
                    AuthFailure.UNKNOWN_UI_STATE,
                    "No accounts found after login; check the portal or credentials",
                )
            logger.info(f"{connection.name}: {len(accounts)} account(s) to sync")

            context = ReconciliationContext.from_connection(connection)
            window = DateWindow.last_days(self.settings.sync.lookback_days)
            for account in accounts:
                await self._sync_account(
                    connector, session, connection, account, context, window, outcome
                )
        finally:
            await connector.release_session(session)

    def _decrypt_credentials(self, connection: Connection) -> BankCredentials:
        return BankCredentials(
            username=self.vault.decrypt(connection.encrypted_username),
            password=self.vault.decrypt(connection.encrypted_password),
            metadata=self.vault.decrypt_metadata(
                connection.institution_slug, connection.encrypted_metadata
            ),
        )

    async def _sync_account(
        self,
        connector: BankConnector,
        session: Any,
        connection: Connection,
        account: AccountDescriptor,
        context: ReconciliationContext,
        window: DateWindow,
        outcome: _RunOutcome,
    ) -> None:
        try:
            artifact = await connector.export_with_retry(session, account, window)
            statements = parse_statement(
                artifact.content,
                artifact.format,
                artifact.date_order or connection.date_format,
            )
            for statement in statements:
                result = self.engine.reconcile_account(
                    context,
                    account.remote_id,
                    statement.transactions,
                    display_name=account.display_name,
                    account_type=statement.account_type or account.type,
                )
                outcome.inserted += result.inserted
                outcome.skipped += result.skipped
            outcome.accounts_synced += 1
        except _ACCOUNT_ERRORS as e:
            logger.warning(f"Skipping account {account.display_name}: {e.describe()}")
            outcome.account_errors.append(f"{account.display_name}: {e.describe()}")

    def _finish(
        self, connection: Connection, started_at: datetime, outcome: _RunOutcome
    ) -> SyncRun:
        if outcome.error is None:
            status = SyncRunStatus.PARTIAL if outcome.account_errors else SyncRunStatus.SUCCESS
            message = "; ".join(outcome.account_errors) or None
            self.store.mark_run_succeeded(connection.id, message)
        else:
            status = SyncRunStatus.FAILED
            message = outcome.error
            tripped = self.store.mark_run_failed(
                connection.id, message, self.settings.sync.circuit_breaker_threshold
            )
            if tripped:
                logger.error(
                    f"Connection {connection.name} suspended after "
                    f"{self.settings.sync.circuit_breaker_threshold} consecutive failures; "
                    "re-save its credentials to resume"
                )

        run = SyncRun(
            id=new_id(),
            connection_id=connection.id,
            status=status,
            started_at=started_at,
            finished_at=self._now(),
            inserted_count=outcome.inserted,
            skipped_count=outcome.skipped,
            accounts_synced=outcome.accounts_synced,
            error_message=message,
        )
        self.store.append_sync_run(run)

        log = logger.info if status == SyncRunStatus.SUCCESS else logger.warning
        log(
            f"Sync {status.value} for {connection.name}: {run.inserted_count} inserted, "
            f"{run.skipped_count} skipped"
            + (f" ({message})" if message else "")
        )
        return run
