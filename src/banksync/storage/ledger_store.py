"""DuckDB-backed ledger store.

Holds connections, schedules, accounts, reconciled transactions and the sync
run log. The ``UNIQUE (account_id, provider_transaction_id)`` constraint on the
transactions table is what makes re-importing a statement idempotent.

Timestamps are stored as naive UTC ``TIMESTAMP`` values and returned as
timezone-aware UTC datetimes.
"""

import json
import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

import duckdb
import polars as pl

from banksync.errors import ConnectionNotFoundError
from banksync.models import (
    Account,
    Connection,
    ConnectionStatus,
    Institution,
    LedgerTransaction,
    Schedule,
    SyncRun,
)

logger = logging.getLogger(__name__)

SCHEMA_FILES = [
    "ledger_schema.sql",
    "ledger_institutions.sql",
    "ledger_connections.sql",
    "ledger_schedules.sql",
    "ledger_accounts.sql",
    "ledger_transactions.sql",
    "ledger_sync_runs.sql",
]

# DuckDB names the catalog after the database file stem; the two must differ
LEDGER_SCHEMA = "bank_ledger"

INTERRUPTED_RUN_ERROR = "System restart: execution interrupted"


def new_id() -> str:
    """Generate a new entity identifier."""
    return str(uuid.uuid4())


def _to_db(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        raise ValueError("Timestamps written to the ledger must be timezone-aware")
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


class LedgerStore:
    """Persistence for the sync pipeline on a single DuckDB connection."""

    def __init__(self, database_path: Path | str):
        """Open (and create if needed) the ledger database.

        Args:
            database_path: Path to the DuckDB file, or ``:memory:``

        Raises:
            ValueError: If the file stem equals the ledger schema name
        """
        self.database_path = database_path if str(database_path) == ":memory:" else Path(database_path)
        if isinstance(self.database_path, Path) and self.database_path.stem == LEDGER_SCHEMA:
            raise ValueError(
                f"Database file name '{self.database_path.name}' clashes with the "
                f"'{LEDGER_SCHEMA}' schema; choose another file name"
            )
        self.sql_dir = Path(__file__).parent.parent / "sql" / "schema"
        self._conn = duckdb.connect(str(self.database_path))
        self._in_transaction = False
        self.create_tables()
        logger.debug(f"Opened ledger store at {self.database_path}")

    def close(self) -> None:
        """Close the underlying database connection."""
        self._conn.close()

    def __enter__(self) -> "LedgerStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def create_tables(self) -> None:
        """Create the ledger tables by executing the SQL schema files in order."""
        for sql_file in SCHEMA_FILES:
            sql_path = self.sql_dir / sql_file
            if not sql_path.exists():
                raise FileNotFoundError(f"SQL schema file not found: {sql_path}")
            self._conn.execute(sql_path.read_text())
            logger.debug(f"Executed schema file: {sql_file}")

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed statements atomically."""
        if self._in_transaction:
            raise RuntimeError("Nested ledger transactions are not supported")

        self._conn.execute("BEGIN TRANSACTION")
        self._in_transaction = True
        try:
            yield
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise
        else:
            self._conn.execute("COMMIT")
        finally:
            self._in_transaction = False

    def _fetch_dicts(self, query: str, params: list[Any] | None = None) -> list[dict[str, Any]]:
        cursor = self._conn.execute(query, params or [])
        columns = [col[0] for col in cursor.description]
        return [dict(zip(columns, row, strict=True)) for row in cursor.fetchall()]

    # Institutions

    def upsert_institutions(self, institutions: list[Institution]) -> None:
        """Seed or refresh the institution registry table."""
        for institution in institutions:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO bank_ledger.institutions
                (slug, name, description, requires_security_number)
                VALUES (?, ?, ?, ?)
                """,
                [
                    institution.slug,
                    institution.name,
                    institution.description,
                    institution.requires_security_number,
                ],
            )
        logger.info(f"Seeded {len(institutions)} institution(s)")

    def list_institutions(self) -> list[Institution]:
        rows = self._fetch_dicts("SELECT * FROM bank_ledger.institutions ORDER BY slug")
        return [Institution(**row) for row in rows]

    # Connections

    def insert_connection(self, connection: Connection) -> Connection:
        """Store a new connection."""
        self._conn.execute(
            """
            INSERT INTO bank_ledger.connections
            (id, user_id, name, institution_slug, encrypted_username,
             encrypted_password, encrypted_metadata, account_id, accounts_map,
             date_format, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                connection.id,
                connection.user_id,
                connection.name,
                connection.institution_slug,
                connection.encrypted_username,
                connection.encrypted_password,
                connection.encrypted_metadata,
                connection.account_id,
                json.dumps(connection.accounts_map),
                connection.date_format.value,
                connection.status.value,
                _to_db(connection.created_at or datetime.now(timezone.utc)),
            ],
        )
        return self.get_connection(connection.id)

    def get_connection(self, connection_id: str) -> Connection:
        """Load a connection.

        Raises:
            ConnectionNotFoundError: If the id is unknown
        """
        rows = self._fetch_dicts(
            "SELECT * FROM bank_ledger.connections WHERE id = ?", [connection_id]
        )
        if not rows:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        return self._connection_from_row(rows[0])

    def list_connections(self, user_id: str | None = None) -> list[Connection]:
        if user_id is None:
            rows = self._fetch_dicts("SELECT * FROM bank_ledger.connections ORDER BY name")
        else:
            rows = self._fetch_dicts(
                "SELECT * FROM bank_ledger.connections WHERE user_id = ? ORDER BY name",
                [user_id],
            )
        return [self._connection_from_row(row) for row in rows]

    @staticmethod
    def _connection_from_row(row: dict[str, Any]) -> Connection:
        row["accounts_map"] = json.loads(row["accounts_map"] or "{}")
        row["last_run_at"] = _from_db(row["last_run_at"])
        row["created_at"] = _from_db(row["created_at"])
        return Connection(**row)

    def update_credentials(
        self,
        connection_id: str,
        encrypted_username: str,
        encrypted_password: str,
        encrypted_metadata: str | None,
    ) -> None:
        """Replace a connection's secrets and close its circuit breaker."""
        self.get_connection(connection_id)
        self._conn.execute(
            """
            UPDATE bank_ledger.connections
            SET encrypted_username = ?, encrypted_password = ?,
                encrypted_metadata = ?, status = 'idle', last_error = NULL,
                consecutive_failures = 0, circuit_open = FALSE
            WHERE id = ?
            """,
            [encrypted_username, encrypted_password, encrypted_metadata, connection_id],
        )

    def update_mapping(
        self,
        connection_id: str,
        account_id: str | None,
        accounts_map: dict[str, str],
    ) -> None:
        """Replace a connection's target account and account mapping."""
        self.get_connection(connection_id)
        self._conn.execute(
            "UPDATE bank_ledger.connections SET account_id = ?, accounts_map = ? WHERE id = ?",
            [account_id, json.dumps(accounts_map), connection_id],
        )

    def delete_connection(self, connection_id: str) -> None:
        """Delete a connection together with its schedule."""
        self.get_connection(connection_id)
        with self.transaction():
            self._conn.execute(
                "DELETE FROM bank_ledger.schedules WHERE connection_id = ?", [connection_id]
            )
            self._conn.execute(
                "DELETE FROM bank_ledger.connections WHERE id = ?", [connection_id]
            )
        logger.info(f"Deleted connection {connection_id}")

    def try_mark_running(self, connection_id: str, now: datetime) -> bool:
        """Move a connection to ``running`` unless a run is already in flight.

        Returns:
            bool: True if this caller now owns the run
        """
        with self.transaction():
            rows = self._fetch_dicts(
                "SELECT status FROM bank_ledger.connections WHERE id = ?", [connection_id]
            )
            if not rows:
                raise ConnectionNotFoundError(f"Connection {connection_id} not found")
            if rows[0]["status"] == ConnectionStatus.RUNNING.value:
                return False
            self._conn.execute(
                """
                UPDATE bank_ledger.connections SET status = 'running', last_run_at = ?
                WHERE id = ?
                """,
                [_to_db(now), connection_id],
            )
        return True

    def mark_run_succeeded(self, connection_id: str, last_error: str | None = None) -> None:
        """Return a connection to ``idle`` and reset its failure streak."""
        self._conn.execute(
            """
            UPDATE bank_ledger.connections
            SET status = 'idle', last_error = ?, consecutive_failures = 0,
                circuit_open = FALSE
            WHERE id = ?
            """,
            [last_error, connection_id],
        )

    def mark_run_failed(self, connection_id: str, error: str, breaker_threshold: int) -> bool:
        """Move a connection to ``error`` and count the failure.

        Returns:
            bool: True if this failure opened the circuit breaker
        """
        with self.transaction():
            rows = self._fetch_dicts(
                "SELECT consecutive_failures, circuit_open FROM bank_ledger.connections WHERE id = ?",
                [connection_id],
            )
            if not rows:
                raise ConnectionNotFoundError(f"Connection {connection_id} not found")
            failures = rows[0]["consecutive_failures"] + 1
            circuit_open = failures >= breaker_threshold
            self._conn.execute(
                """
                UPDATE bank_ledger.connections
                SET status = 'error', last_error = ?, consecutive_failures = ?,
                    circuit_open = ?
                WHERE id = ?
                """,
                [error, failures, circuit_open, connection_id],
            )
        return circuit_open and not rows[0]["circuit_open"]

    def reset_interrupted_runs(self) -> int:
        """Release connections left ``running`` by a previous process.

        Returns:
            int: Number of connections reset
        """
        with self.transaction():
            rows = self._fetch_dicts(
                "SELECT id FROM bank_ledger.connections WHERE status = 'running'"
            )
            self._conn.execute(
                """
                UPDATE bank_ledger.connections SET status = 'idle', last_error = ?
                WHERE status = 'running'
                """,
                [INTERRUPTED_RUN_ERROR],
            )
        return len(rows)

    # Schedules

    def upsert_schedule(self, schedule: Schedule) -> Schedule:
        """Create or replace the schedule of a connection."""
        self._conn.execute(
            """
            INSERT INTO bank_ledger.schedules
            (id, connection_id, frequency, preferred_time, timezone, is_active,
             next_run_at, last_successful_run_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (connection_id) DO UPDATE SET
                frequency = excluded.frequency,
                preferred_time = excluded.preferred_time,
                timezone = excluded.timezone,
                is_active = excluded.is_active,
                next_run_at = excluded.next_run_at
            """,
            [
                schedule.id,
                schedule.connection_id,
                schedule.frequency.value,
                schedule.preferred_time,
                schedule.timezone,
                schedule.is_active,
                _to_db(schedule.next_run_at),
                _to_db(schedule.last_successful_run_at),
            ],
        )
        result = self.get_schedule(schedule.connection_id)
        assert result is not None  # noqa: S101 - row was just written
        return result

    def get_schedule(self, connection_id: str) -> Schedule | None:
        rows = self._fetch_dicts(
            "SELECT * FROM bank_ledger.schedules WHERE connection_id = ?", [connection_id]
        )
        if not rows:
            return None
        row = rows[0]
        row.pop("created_at", None)
        row["next_run_at"] = _from_db(row["next_run_at"])
        row["last_successful_run_at"] = _from_db(row["last_successful_run_at"])
        return Schedule(**row)

    def advance_schedule(
        self,
        connection_id: str,
        next_run_at: datetime | None,
        succeeded_at: datetime | None = None,
    ) -> None:
        """Store the next due time after a run completes."""
        self._conn.execute(
            """
            UPDATE bank_ledger.schedules
            SET next_run_at = ?,
                last_successful_run_at = COALESCE(?, last_successful_run_at)
            WHERE connection_id = ?
            """,
            [_to_db(next_run_at), _to_db(succeeded_at), connection_id],
        )

    def find_due_connections(self, now: datetime) -> list[Connection]:
        """Select connections whose schedule is due and that may run now."""
        rows = self._fetch_dicts(
            """
            SELECT c.*
            FROM bank_ledger.connections c
            JOIN bank_ledger.schedules s ON c.id = s.connection_id
            WHERE s.is_active = TRUE
              AND s.frequency != 'manual'
              AND (s.next_run_at IS NULL OR s.next_run_at <= ?)
              AND c.status != 'running'
              AND c.circuit_open = FALSE
            ORDER BY s.next_run_at NULLS FIRST, c.id
            """,
            [_to_db(now)],
        )
        return [self._connection_from_row(row) for row in rows]

    # Accounts

    def create_account(self, account: Account) -> Account:
        self._conn.execute(
            """
            INSERT INTO bank_ledger.accounts
            (id, user_id, connection_id, remote_account_id, name, type, balance)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                account.id,
                account.user_id,
                account.connection_id,
                account.remote_account_id,
                account.name,
                account.type,
                account.balance,
            ],
        )
        return account

    def get_account(self, account_id: str) -> Account | None:
        rows = self._fetch_dicts(
            """
            SELECT id, user_id, connection_id, remote_account_id, name, type, balance
            FROM bank_ledger.accounts WHERE id = ?
            """,
            [account_id],
        )
        return Account(**rows[0]) if rows else None

    def find_account_by_remote_id(self, user_id: str, remote_account_id: str) -> Account | None:
        rows = self._fetch_dicts(
            """
            SELECT id, user_id, connection_id, remote_account_id, name, type, balance
            FROM bank_ledger.accounts
            WHERE user_id = ? AND remote_account_id = ?
            ORDER BY created_at
            LIMIT 1
            """,
            [user_id, remote_account_id],
        )
        return Account(**rows[0]) if rows else None

    def list_accounts(self, user_id: str) -> list[Account]:
        rows = self._fetch_dicts(
            """
            SELECT id, user_id, connection_id, remote_account_id, name, type, balance
            FROM bank_ledger.accounts WHERE user_id = ? ORDER BY name
            """,
            [user_id],
        )
        return [Account(**row) for row in rows]

    # Transactions

    def insert_transaction(
        self,
        account_id: str,
        provider_transaction_id: str,
        txn_date: date,
        description: str,
        amount: Decimal,
        status: str = "cleared",
    ) -> bool:
        """Insert a transaction unless its dedup key is already present.

        Returns:
            bool: True if a row was written, False on a key conflict
        """
        inserted = self._conn.execute(
            """
            INSERT INTO bank_ledger.transactions
            (id, account_id, provider_transaction_id, date, description, amount, status)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (account_id, provider_transaction_id) DO NOTHING
            RETURNING id
            """,
            [new_id(), account_id, provider_transaction_id, txn_date, description, amount, status],
        ).fetchall()
        return len(inserted) > 0

    def count_transactions(self, account_id: str) -> int:
        result = self._conn.execute(
            "SELECT COUNT(*) FROM bank_ledger.transactions WHERE account_id = ?", [account_id]
        ).fetchone()
        return int(result[0]) if result else 0

    def list_transactions(self, account_id: str) -> list[LedgerTransaction]:
        """Return an account's transactions ordered by posting date."""
        rows = self._fetch_dicts(
            """
            SELECT id, account_id, provider_transaction_id, date, description, amount, status
            FROM bank_ledger.transactions WHERE account_id = ?
            ORDER BY date, provider_transaction_id
            """,
            [account_id],
        )
        return [LedgerTransaction(**row) for row in rows]

    def transactions_frame(self, account_id: str) -> pl.DataFrame:
        """Return an account's transactions as a polars DataFrame."""
        return self._conn.execute(
            """
            SELECT provider_transaction_id, date, description, amount, status
            FROM bank_ledger.transactions WHERE account_id = ?
            ORDER BY date, provider_transaction_id
            """,
            [account_id],
        ).pl()

    # Sync runs

    def append_sync_run(self, run: SyncRun) -> SyncRun:
        """Append a run record to the sync log."""
        self._conn.execute(
            """
            INSERT INTO bank_ledger.sync_runs
            (id, connection_id, status, started_at, finished_at, inserted_count,
             skipped_count, accounts_synced, error_message)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                run.id,
                run.connection_id,
                run.status.value,
                _to_db(run.started_at),
                _to_db(run.finished_at),
                run.inserted_count,
                run.skipped_count,
                run.accounts_synced,
                run.error_message,
            ],
        )
        return run

    def list_sync_runs(self, connection_id: str, limit: int = 20) -> list[SyncRun]:
        rows = self._fetch_dicts(
            """
            SELECT * FROM bank_ledger.sync_runs WHERE connection_id = ?
            ORDER BY started_at DESC LIMIT ?
            """,
            [connection_id, limit],
        )
        for row in rows:
            row["started_at"] = _from_db(row["started_at"])
            row["finished_at"] = _from_db(row["finished_at"])
        return [SyncRun(**row) for row in rows]

    def sync_runs_frame(self, connection_id: str, limit: int = 20) -> pl.DataFrame:
        """Return recent sync runs as a polars DataFrame for display."""
        return self._conn.execute(
            """
            SELECT started_at, finished_at, status, inserted_count, skipped_count,
                   accounts_synced, error_message
            FROM bank_ledger.sync_runs WHERE connection_id = ?
            ORDER BY started_at DESC LIMIT ?
            """,
            [connection_id, limit],
        ).pl()
