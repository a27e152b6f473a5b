"""Create, edit and remove automated connections.

Secrets and institution metadata are validated and encrypted here, at the
vault boundary; nothing downstream of this module sees plaintext until a sync
run decrypts it.
"""

import logging
from datetime import datetime, time, timezone
from typing import Any

from banksync.connectors import get_connector_class
from banksync.errors import ReconciliationError
from banksync.models import Connection, Frequency, QifDateOrder, Schedule
from banksync.storage import LedgerStore, new_id
from banksync.vault import CredentialVault

logger = logging.getLogger(__name__)


class ConnectionManager:
    """User-facing operations on connections and their schedules."""

    def __init__(self, store: LedgerStore, vault: CredentialVault):
        self.store = store
        self.vault = vault

    def create_connection(
        self,
        user_id: str,
        name: str,
        institution_slug: str,
        username: str,
        password: str,
        metadata: dict[str, Any] | None = None,
        account_id: str | None = None,
        accounts_map: dict[str, str] | None = None,
        date_format: QifDateOrder = QifDateOrder.MDY,
        frequency: Frequency | None = None,
        preferred_time: time | None = None,
        schedule_timezone: str = "UTC",
    ) -> Connection:
        """Store a new connection with encrypted secrets.

        Args:
            user_id: Owner of the connection
            name: Display name
            institution_slug: Registered connector slug
            username: Portal username (encrypted before storage)
            password: Portal password (encrypted before storage)
            metadata: Institution-specific login fields
            account_id: Local account every remote account maps to
            accounts_map: Remote account id or name to local account id
            date_format: Day/month order of the institution's QIF exports
            frequency: Create a schedule with this frequency when given
            preferred_time: Local time of day for scheduled runs
            schedule_timezone: IANA timezone of ``preferred_time``

        Returns:
            Connection: The stored connection

        Raises:
            UnknownInstitutionError: If no connector has the slug
            InvalidMetadataError: If the metadata does not fit the institution
            ReconciliationError: If ``account_id`` is not the user's account
        """
        get_connector_class(institution_slug)
        if account_id is not None:
            self._check_account(user_id, account_id)

        connection = self.store.insert_connection(
            Connection(
                id=new_id(),
                user_id=user_id,
                name=name,
                institution_slug=institution_slug,
                encrypted_username=self.vault.encrypt(username),
                encrypted_password=self.vault.encrypt(password),
                encrypted_metadata=self.vault.encrypt_metadata(institution_slug, metadata),
                account_id=account_id,
                accounts_map=accounts_map or {},
                date_format=date_format,
                created_at=datetime.now(timezone.utc),
            )
        )
        logger.info(f"Created {institution_slug} connection '{name}' ({connection.id})")

        if frequency is not None:
            self.set_schedule(connection.id, frequency, preferred_time, schedule_timezone)
        return connection

    def update_credentials(
        self,
        connection_id: str,
        username: str,
        password: str,
        metadata: dict[str, Any] | None = None,
    ) -> Connection:
        """Re-save a connection's secrets.

        Clears the last error and closes the circuit breaker so the scheduler
        picks the connection up again.
        """
        connection = self.store.get_connection(connection_id)
        self.store.update_credentials(
            connection_id,
            self.vault.encrypt(username),
            self.vault.encrypt(password),
            self.vault.encrypt_metadata(connection.institution_slug, metadata),
        )
        logger.info(f"Updated credentials for connection {connection_id}")
        return self.store.get_connection(connection_id)

    def update_mapping(
        self,
        connection_id: str,
        account_id: str | None = None,
        accounts_map: dict[str, str] | None = None,
    ) -> Connection:
        """Change which local accounts a connection's data lands in."""
        connection = self.store.get_connection(connection_id)
        for target in [account_id, *(accounts_map or {}).values()]:
            if target is not None:
                self._check_account(connection.user_id, target)
        self.store.update_mapping(connection_id, account_id, accounts_map or {})
        return self.store.get_connection(connection_id)

    def set_schedule(
        self,
        connection_id: str,
        frequency: Frequency,
        preferred_time: time | None = None,
        schedule_timezone: str = "UTC",
        is_active: bool = True,
    ) -> Schedule:
        """Create or replace a connection's schedule.

        The schedule becomes due immediately; the first completed run sets
        the following due time.
        """
        self.store.get_connection(connection_id)
        schedule = self.store.upsert_schedule(
            Schedule(
                id=new_id(),
                connection_id=connection_id,
                frequency=frequency,
                preferred_time=preferred_time,
                timezone=schedule_timezone,
                is_active=is_active,
            )
        )
        logger.info(f"Scheduled connection {connection_id}: {frequency.value}")
        return schedule

    def delete_connection(self, connection_id: str) -> None:
        """Delete a connection and its schedule."""
        self.store.delete_connection(connection_id)

    def describe_connection(self, connection_id: str) -> dict[str, Any]:
        """Connection details safe to display; no secrets included."""
        connection = self.store.get_connection(connection_id)
        schedule = self.store.get_schedule(connection_id)
        return {
            "id": connection.id,
            "name": connection.name,
            "institution": connection.institution_slug,
            "status": connection.status.value,
            "last_run_at": connection.last_run_at,
            "last_error": connection.last_error,
            "circuit_open": connection.circuit_open,
            "account_id": connection.account_id,
            "accounts_map": dict(connection.accounts_map),
            "has_metadata": connection.encrypted_metadata is not None,
            "schedule": None
            if schedule is None
            else {
                "frequency": schedule.frequency.value,
                "preferred_time": schedule.preferred_time,
                "timezone": schedule.timezone,
                "is_active": schedule.is_active,
                "next_run_at": schedule.next_run_at,
            },
        }

    def _check_account(self, user_id: str, account_id: str) -> None:
        account = self.store.get_account(account_id)
        if account is None or account.user_id != user_id:
            raise ReconciliationError(f"Account {account_id} not found for this user")
