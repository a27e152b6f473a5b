"""Idempotent merge of canonical transactions into the ledger.

Each remote account is resolved to a local account, then its transactions are
inserted keyed on ``(local account, external id)``. A key that is already
present counts as skipped, so importing overlapping statements any number of
times leaves exactly one row per transaction.
"""

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field

import duckdb

from banksync.errors import ReconciliationError
from banksync.models import Account, Connection
from banksync.parsers import CanonicalTransaction, synthesize_external_id
from banksync.storage import LedgerStore, new_id

logger = logging.getLogger(__name__)


def normalize_account_name(name: str) -> str:
    """Collapse an account name to lowercase alphanumerics joined by ``_``."""
    return re.sub(r"_+", "_", re.sub(r"[^a-z0-9]", "_", name.lower())).strip("_")


@dataclass(frozen=True)
class ReconciliationContext:
    """Who the data belongs to and where it should land."""

    user_id: str
    connection_id: str | None = None
    target_account_id: str | None = None
    accounts_map: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_connection(cls, connection: Connection) -> "ReconciliationContext":
        return cls(
            user_id=connection.user_id,
            connection_id=connection.id,
            target_account_id=connection.account_id,
            accounts_map=dict(connection.accounts_map),
        )

    def mapped_account_id(self, remote_account_id: str, display_name: str | None) -> str | None:
        """Find the explicitly mapped local account for a remote account."""
        for key in (remote_account_id, display_name):
            if key and key in self.accounts_map:
                return self.accounts_map[key]

        wanted = {
            normalize_account_name(key)
            for key in (remote_account_id, display_name)
            if key
        }
        for key, account_id in self.accounts_map.items():
            if normalize_account_name(key) in wanted:
                return account_id

        return self.target_account_id


@dataclass(frozen=True)
class AccountReconciliation:
    """Counts for one remote account."""

    account_id: str
    remote_account_id: str
    inserted: int = 0
    skipped: int = 0


class ReconciliationEngine:
    """Resolve local accounts and insert transactions exactly once."""

    def __init__(self, store: LedgerStore):
        self.store = store

    def reconcile_account(
        self,
        context: ReconciliationContext,
        remote_account_id: str,
        transactions: Iterable[CanonicalTransaction],
        display_name: str | None = None,
        account_type: str | None = None,
    ) -> AccountReconciliation:
        """Merge one remote account's transactions in a single DB transaction.

        Args:
            context: Owner and mapping of the data
            remote_account_id: Identifier the institution uses for the account
            transactions: Canonical records to merge
            display_name: Human-readable remote account name, if known
            account_type: Account type for a newly created placeholder

        Returns:
            AccountReconciliation: Inserted and skipped counts

        Raises:
            ReconciliationError: If the account cannot be resolved or the
                batch cannot be written; nothing from the batch is kept
        """
        inserted = 0
        skipped = 0
        try:
            with self.store.transaction():
                account = self._resolve_account(
                    context, remote_account_id, display_name, account_type
                )
                for txn in transactions:
                    external_id = txn.external_id or synthesize_external_id(
                        account.id, txn.transaction_date, txn.amount, txn.description
                    )
                    if self.store.insert_transaction(
                        account_id=account.id,
                        provider_transaction_id=external_id,
                        txn_date=txn.transaction_date,
                        description=txn.description,
                        amount=txn.amount,
                        status=txn.status_hint,
                    ):
                        inserted += 1
                    else:
                        skipped += 1
        except duckdb.Error as e:
            raise ReconciliationError(
                f"Failed to store transactions for {remote_account_id}: {e}"
            ) from e

        logger.info(
            f"Reconciled {remote_account_id} into {account.id}: "
            f"{inserted} inserted, {skipped} skipped"
        )
        return AccountReconciliation(
            account_id=account.id,
            remote_account_id=remote_account_id,
            inserted=inserted,
            skipped=skipped,
        )

    def _resolve_account(
        self,
        context: ReconciliationContext,
        remote_account_id: str,
        display_name: str | None,
        account_type: str | None,
    ) -> Account:
        mapped_id = context.mapped_account_id(remote_account_id, display_name)
        if mapped_id is not None:
            account = self.store.get_account(mapped_id)
            if account is None:
                raise ReconciliationError(
                    f"Mapped account {mapped_id} for {remote_account_id} does not exist"
                )
            if account.user_id != context.user_id:
                raise ReconciliationError(
                    f"Mapped account {mapped_id} for {remote_account_id} "
                    "belongs to another user"
                )
            return account

        linked = self.store.find_account_by_remote_id(context.user_id, remote_account_id)
        if linked is not None:
            return linked

        placeholder = Account(
            id=new_id(),
            user_id=context.user_id,
            name=display_name or f"Imported Account {remote_account_id}",
            type=account_type or "checking",
            connection_id=context.connection_id,
            remote_account_id=remote_account_id,
        )
        logger.info(f"Creating account '{placeholder.name}' for {remote_account_id}")
        return self.store.create_account(placeholder)
